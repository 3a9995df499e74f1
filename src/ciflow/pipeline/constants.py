"""Pipeline configuration constants."""

from __future__ import annotations

# Maximum stages per pipeline
MAX_STAGES_PER_PIPELINE: int = 64

# Maximum steps per stage
MAX_STEPS_PER_STAGE: int = 64

# Maximum nesting depth for composite steps
MAX_COMPOSITE_DEPTH: int = 8

# Default timeout per step (seconds)
DEFAULT_STEP_TIMEOUT: int = 600

# Seconds running steps get to honour a cancellation before being abandoned
DEFAULT_CANCEL_GRACE_SECONDS: int = 10

# Characters of stdout/stderr kept in each RunResult
OUTPUT_TAIL_CHARS: int = 4_000

# Capability used for `run:` steps
SHELL_CAPABILITY: str = "shell"

# Prefix for references to built-in pipelines in composite steps
BUILTIN_REF_PREFIX: str = "builtin:"

# Built-in pipeline IDs
BUILTIN_PIPELINE_IDS: set[str] = {"node_ci", "docker_publish", "package_release"}
