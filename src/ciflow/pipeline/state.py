"""Per-run execution state for stages and steps."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum

import structlog

from ciflow.exceptions import StateError

logger = structlog.get_logger()


class RunStatus(str, Enum):
    """Status of a stage or step within a run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    SKIPPED_WITH_ERROR = "skipped_with_error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible."""
        return self in TERMINAL_STATES

    @property
    def is_skip(self) -> bool:
        return self in (RunStatus.SKIPPED, RunStatus.SKIPPED_WITH_ERROR)


class FailureReason(str, Enum):
    """Why a stage or step did not succeed."""

    EXIT_CODE = "exit_code"
    TIMEOUT = "timeout"
    CONFIGURATION_ERROR = "configuration_error"
    CONDITION_ERROR = "condition_error"
    CONDITION_FALSE = "condition_false"
    DEPENDENCY_FAILED = "dependency_failed"
    DEPENDENCY_SKIPPED = "dependency_skipped"
    CANCELLED = "cancelled"
    CONTINUED_ON_ERROR = "continued_on_error"


TERMINAL_STATES = frozenset(
    {
        RunStatus.SUCCEEDED,
        RunStatus.FAILED,
        RunStatus.SKIPPED,
        RunStatus.SKIPPED_WITH_ERROR,
        RunStatus.CANCELLED,
    }
)

ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset(
        {RunStatus.RUNNING, RunStatus.SKIPPED, RunStatus.SKIPPED_WITH_ERROR}
    ),
    RunStatus.RUNNING: frozenset(
        {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED}
    ),
}


class RunProgress:
    """Progress map of every stage in a run.

    Owned by the orchestrator's coordinating loop; workers never touch it.

    Example:
        >>> progress = RunProgress(["build", "test"], run_id="r1")
        >>> progress.transition("build", RunStatus.RUNNING)
        >>> progress.transition("build", RunStatus.SUCCEEDED)
        >>> progress.completed
        {'build'}
    """

    def __init__(self, stage_names: Iterable[str], *, run_id: str = "") -> None:
        self.run_id = run_id
        self._states: dict[str, RunStatus] = {name: RunStatus.PENDING for name in stage_names}

    def status(self, name: str) -> RunStatus:
        """Current status of a stage."""
        return self._states[name]

    def transition(self, name: str, new: RunStatus) -> None:
        """Move a stage to a new status.

        Raises:
            StateError: If the transition is not allowed.
        """
        current = self._states[name]
        if new not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            msg = f"Illegal transition for stage '{name}': {current.value} -> {new.value}"
            raise StateError(msg, current_state=current.value, run_id=self.run_id)
        self._states[name] = new
        logger.debug("Stage transition", run_id=self.run_id, stage=name, status=new.value)

    def _with(self, *statuses: RunStatus) -> set[str]:
        return {name for name, state in self._states.items() if state in statuses}

    @property
    def states(self) -> dict[str, RunStatus]:
        """Snapshot of all stage states."""
        return dict(self._states)

    @property
    def completed(self) -> set[str]:
        return self._with(RunStatus.SUCCEEDED)

    @property
    def failed(self) -> set[str]:
        """Stages that failed or were cancelled; both halt dependents."""
        return self._with(RunStatus.FAILED, RunStatus.CANCELLED)

    @property
    def skipped(self) -> set[str]:
        return self._with(RunStatus.SKIPPED, RunStatus.SKIPPED_WITH_ERROR)

    @property
    def running(self) -> set[str]:
        return self._with(RunStatus.RUNNING)

    @property
    def pending(self) -> list[str]:
        """Pending stages in insertion order."""
        return [name for name, state in self._states.items() if state is RunStatus.PENDING]

    @property
    def started(self) -> set[str]:
        """Stages that have left the pending state."""
        return {name for name, state in self._states.items() if state is not RunStatus.PENDING}

    def is_terminal(self) -> bool:
        """Whether every stage is in a terminal state."""
        return all(state.is_terminal for state in self._states.values())
