"""Run results for steps, stages and whole pipelines."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ciflow.exceptions import StateError
from ciflow.pipeline.state import FailureReason, RunStatus


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(tz=UTC).isoformat()


@dataclass(frozen=True)
class RunResult:
    """Outcome of one step in one run.

    Attributes:
        run_id: Run identifier.
        stage: Owning stage name.
        step: Step name.
        status: Final status.
        exit_code: Exit code reported by the capability, if it ran.
        reason: Why the step did not succeed (None on success).
        message: Human-readable detail.
        started_at: ISO timestamp when execution started.
        finished_at: ISO timestamp when execution finished.
        duration_ms: Wall-clock duration.
        stdout_tail: Tail of captured stdout.
        stderr_tail: Tail of captured stderr.
        log_path: Path of the full step log, if written.
    """

    run_id: str
    stage: str
    step: str
    status: RunStatus
    exit_code: int | None = None
    reason: FailureReason | None = None
    message: str = ""
    started_at: str | None = None
    finished_at: str | None = None
    duration_ms: int = 0
    stdout_tail: str = ""
    stderr_tail: str = ""
    log_path: str | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        """Storage key: (run id, stage, step)."""
        return (self.run_id, self.stage, self.step)

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    @classmethod
    def not_run(
        cls,
        run_id: str,
        stage: str,
        step: str,
        *,
        status: RunStatus,
        reason: FailureReason,
        message: str = "",
    ) -> RunResult:
        """Result for a step that never reached a capability."""
        now = utc_now()
        return cls(
            run_id=run_id,
            stage=stage,
            step=step,
            status=status,
            reason=reason,
            message=message,
            started_at=now,
            finished_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "stage": self.stage,
            "step": self.step,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "stdout_tail": self.stdout_tail,
            "stderr_tail": self.stderr_tail,
            "log_path": self.log_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunResult:
        """Create from dictionary."""
        reason = data.get("reason")
        return cls(
            run_id=data["run_id"],
            stage=data["stage"],
            step=data["step"],
            status=RunStatus(data["status"]),
            exit_code=data.get("exit_code"),
            reason=FailureReason(reason) if reason else None,
            message=data.get("message", ""),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            duration_ms=data.get("duration_ms", 0),
            stdout_tail=data.get("stdout_tail", ""),
            stderr_tail=data.get("stderr_tail", ""),
            log_path=data.get("log_path"),
        )


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage in one run."""

    stage: str
    status: RunStatus
    reason: FailureReason | None = None
    message: str = ""
    started_at: str | None = None
    finished_at: str | None = None
    duration_ms: int = 0
    steps: tuple[RunResult, ...] = ()

    def get_step(self, name: str) -> RunResult | None:
        for step in self.steps:
            if step.step == name:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "stage": self.stage,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class PipelineResult:
    """Result of a pipeline run."""

    run_id: str
    pipeline_id: str
    success: bool
    cancelled: bool = False
    stages: list[StageResult] = field(default_factory=list)
    inputs: dict[str, Any] = field(default_factory=dict)
    started_at: str | None = None
    finished_at: str | None = None
    total_duration_ms: int = 0

    def __bool__(self) -> bool:
        """Return success status."""
        return self.success

    def get_stage(self, name: str) -> StageResult | None:
        for stage in self.stages:
            if stage.stage == name:
                return stage
        return None

    def status_of(self, name: str) -> RunStatus:
        """Status of a stage by name.

        Raises:
            KeyError: If the stage is not part of the run.
        """
        stage = self.get_stage(name)
        if stage is None:
            raise KeyError(name)
        return stage.status

    @property
    def failed_stages(self) -> list[str]:
        return [s.stage for s in self.stages if s.status is RunStatus.FAILED]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "pipeline_id": self.pipeline_id,
            "success": self.success,
            "cancelled": self.cancelled,
            "inputs": self.inputs,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "total_duration_ms": self.total_duration_ms,
            "stages": [s.to_dict() for s in self.stages],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


class ResultStore:
    """Write-once storage of RunResults keyed by (run id, stage, step)."""

    def __init__(self) -> None:
        self._results: dict[tuple[str, str, str], RunResult] = {}

    def record(self, result: RunResult) -> None:
        """Store a result.

        Raises:
            StateError: If a result for the same key was already recorded.
        """
        if result.key in self._results:
            msg = f"Result already recorded for {'/'.join(result.key)}"
            raise StateError(msg, current_state=self._results[result.key].status.value, run_id=result.run_id)
        self._results[result.key] = result

    def get(self, run_id: str, stage: str, step: str) -> RunResult | None:
        return self._results.get((run_id, stage, step))

    def for_stage(self, run_id: str, stage: str) -> list[RunResult]:
        """Results of one stage in record order."""
        return [r for r in self._results.values() if r.run_id == run_id and r.stage == stage]

    def __len__(self) -> int:
        return len(self._results)
