"""Run context: resolved inputs, secrets and the cancellation signal."""

from __future__ import annotations

import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

from ciflow.exceptions import UnresolvedInputError
from ciflow.pipeline.conditions import InputValue
from ciflow.pipeline.definition import PLACEHOLDER_RE, PipelineDefinition

logger = structlog.get_logger()


# ============================================================================
# Secret providers
# ============================================================================


@runtime_checkable
class SecretProvider(Protocol):
    """Supplies secret values to steps at execution time."""

    def get(self, name: str) -> str | None:
        """Return the secret value, or None if unknown."""
        ...


class StaticSecretProvider:
    """Secrets from an in-memory mapping."""

    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        self._secrets = dict(secrets or {})

    def get(self, name: str) -> str | None:
        return self._secrets.get(name)


class EnvSecretProvider:
    """Secrets read from the process environment.

    Attributes:
        prefix: Prefix prepended to the secret name (``CIFLOW_SECRET_`` makes
            ``NPM_TOKEN`` resolve from ``CIFLOW_SECRET_NPM_TOKEN``).
        allowed: If non-empty, only these names may be resolved.
    """

    def __init__(
        self,
        *,
        prefix: str = "",
        allowed: list[str] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.prefix = prefix
        self.allowed = set(allowed or [])
        self._environ = environ if environ is not None else os.environ

    def get(self, name: str) -> str | None:
        if self.allowed and name not in self.allowed:
            logger.warning("Secret not in allowlist", secret=name)
            return None
        return self._environ.get(f"{self.prefix}{name}")


# ============================================================================
# Inputs
# ============================================================================


def parse_input_value(raw: str) -> InputValue:
    """Parse a CLI ``--input`` value; ``true``/``false`` become booleans."""
    lowered = raw.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    return raw


def resolve_inputs(
    pipeline: PipelineDefinition,
    supplied: Mapping[str, Any] | None = None,
) -> dict[str, InputValue]:
    """Overlay supplied inputs on declared defaults.

    Declared inputs without a default and without a supplied value are left
    out of the map, so conditions that use them fail as unresolved.
    Undeclared supplied inputs are dropped with a warning.
    """
    supplied = dict(supplied or {})
    resolved: dict[str, InputValue] = {}
    for name, spec in pipeline.inputs.items():
        if name in supplied:
            value = supplied.pop(name)
            resolved[name] = value if isinstance(value, (bool, str)) else str(value)
        elif spec.default is not None:
            resolved[name] = spec.default
        elif spec.required:
            logger.warning("Required input not supplied", pipeline_id=pipeline.id, input=name)

    for name in supplied:
        logger.warning("Ignoring undeclared input", pipeline_id=pipeline.id, input=name)
    return resolved


def format_value(value: InputValue) -> str:
    """String form of an input value; booleans become ``true``/``false``."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


def render_value(value: InputValue, inputs: Mapping[str, InputValue]) -> InputValue:
    """Resolve ``${name}`` placeholders in a value.

    A value that is exactly one placeholder keeps the input's type, so
    ``${run_lint}`` stays a boolean when passed into a nested pipeline.

    Raises:
        UnresolvedInputError: If a placeholder names a missing input.
    """
    if isinstance(value, bool):
        return value

    whole = PLACEHOLDER_RE.fullmatch(value.strip())
    if whole:
        name = whole.group(1)
        if name not in inputs:
            raise UnresolvedInputError(name)
        return inputs[name]

    def _sub(match: Any) -> str:
        name = match.group(1)
        if name not in inputs:
            raise UnresolvedInputError(name)
        return format_value(inputs[name])

    return PLACEHOLDER_RE.sub(_sub, value)


def render_mapping(
    values: Mapping[str, InputValue],
    inputs: Mapping[str, InputValue],
) -> dict[str, InputValue]:
    return {key: render_value(value, inputs) for key, value in values.items()}


def render_text(value: str, inputs: Mapping[str, InputValue]) -> str:
    """Render placeholders, always producing a string."""
    return format_value(render_value(value, inputs))


# ============================================================================
# Step context
# ============================================================================


@dataclass
class StepContext:
    """Everything a step needs at execution time.

    Attributes:
        run_id: Run identifier.
        stage: Owning stage name.
        inputs: Resolved run inputs.
        secrets: Secret provider threaded through the run.
        cancel_event: Run-level cancellation signal.
        logs_dir: Directory for per-step logs (None disables log files).
        cwd: Working directory for commands.
        timeout_seconds: Default step timeout.
        dry_run: Log instead of invoking capabilities.
        depth: Composite nesting depth.
    """

    run_id: str
    stage: str
    inputs: dict[str, InputValue] = field(default_factory=dict)
    secrets: SecretProvider = field(default_factory=StaticSecretProvider)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    logs_dir: Path | None = None
    cwd: Path | None = None
    timeout_seconds: int | None = None
    dry_run: bool = False
    depth: int = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def for_stage(self, stage: str) -> StepContext:
        """Copy of this context bound to another stage."""
        return StepContext(
            run_id=self.run_id,
            stage=stage,
            inputs=self.inputs,
            secrets=self.secrets,
            cancel_event=self.cancel_event,
            logs_dir=self.logs_dir,
            cwd=self.cwd,
            timeout_seconds=self.timeout_seconds,
            dry_run=self.dry_run,
            depth=self.depth,
        )
