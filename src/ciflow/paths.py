"""Run directory layout management for ciflow."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.\-]+")


def generate_run_id() -> str:
    """Generate a unique run ID with timestamp prefix.

    Returns:
        A run ID in format: YYYYMMDD_HHMMSS_<short-uuid>

    Example:
        >>> run_id = generate_run_id()
        >>> len(run_id) > 20
        True
    """
    ts = datetime.now(tz=UTC).strftime("%Y%m%d_%H%M%S")
    short_uuid = uuid.uuid4().hex[:8]
    return f"{ts}_{short_uuid}"


def safe_name(name: str) -> str:
    """Make a stage or step name safe for use in a file name."""
    return _UNSAFE_CHARS.sub("_", name).strip("_") or "step"


def step_log_name(stage: str, step: str) -> str:
    """File name of a step log: ``<stage>__<step>.log``."""
    return f"{safe_name(stage)}__{safe_name(step)}.log"


@dataclass
class RunPaths:
    """Manages the directory structure for a single run.

    Layout::

        <runs_dir>/<run_id>/
            report.json      final structured report
            stages.jsonl     one line per finished stage
            logs/<stage>__<step>.log

    Example:
        >>> paths = RunPaths(Path("/project/.ciflow/runs"), "20240101_120000_abc12345")
        >>> paths.run_dir.name
        '20240101_120000_abc12345'
    """

    runs_dir: Path
    run_id: str

    @property
    def run_dir(self) -> Path:
        """Root directory for this specific run."""
        return self.runs_dir / self.run_id

    @property
    def logs_dir(self) -> Path:
        """Directory for step logs."""
        return self.run_dir / "logs"

    @property
    def report_json(self) -> Path:
        """Path to the final report."""
        return self.run_dir / "report.json"

    @property
    def stages_jsonl(self) -> Path:
        """Path to the per-stage event log."""
        return self.run_dir / "stages.jsonl"

    def step_log_path(self, stage: str, step: str) -> Path:
        """Log file for one step."""
        return self.logs_dir / step_log_name(stage, step)

    def create_directories(self) -> None:
        """Create the run directory tree."""
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def create_new(cls, runs_dir: Path, run_id: str | None = None) -> RunPaths:
        """Create paths for a new run and make the directories.

        Args:
            runs_dir: Directory holding all runs.
            run_id: Optional explicit run ID.
        """
        paths = cls(runs_dir=runs_dir, run_id=run_id or generate_run_id())
        paths.create_directories()
        return paths
