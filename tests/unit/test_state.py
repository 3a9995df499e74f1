"""Tests for per-run stage state."""

import pytest

from ciflow.exceptions import StateError
from ciflow.pipeline.state import RunProgress, RunStatus


@pytest.fixture
def progress() -> RunProgress:
    return RunProgress(["install", "test", "build"], run_id="r1")


def test_initial_state(progress: RunProgress) -> None:
    """All stages start pending, in declaration order."""
    assert progress.pending == ["install", "test", "build"]
    assert progress.started == set()
    assert not progress.is_terminal()


def test_happy_transitions(progress: RunProgress) -> None:
    progress.transition("install", RunStatus.RUNNING)
    assert progress.running == {"install"}
    progress.transition("install", RunStatus.SUCCEEDED)
    assert progress.completed == {"install"}
    assert progress.started == {"install"}


def test_failed_and_cancelled_both_halt(progress: RunProgress) -> None:
    progress.transition("install", RunStatus.RUNNING)
    progress.transition("install", RunStatus.FAILED)
    progress.transition("test", RunStatus.RUNNING)
    progress.transition("test", RunStatus.CANCELLED)
    assert progress.failed == {"install", "test"}


def test_skip_from_pending(progress: RunProgress) -> None:
    progress.transition("build", RunStatus.SKIPPED)
    progress.transition("test", RunStatus.SKIPPED_WITH_ERROR)
    assert progress.skipped == {"build", "test"}
    assert progress.pending == ["install"]


@pytest.mark.parametrize(
    ("first", "second"),
    [
        (RunStatus.SKIPPED, RunStatus.RUNNING),
        (RunStatus.RUNNING, RunStatus.SKIPPED),
        (RunStatus.RUNNING, RunStatus.PENDING),
    ],
)
def test_illegal_transitions(progress: RunProgress, first: RunStatus, second: RunStatus) -> None:
    progress.transition("install", first)
    with pytest.raises(StateError):
        progress.transition("install", second)


def test_pending_cannot_finish_without_running(progress: RunProgress) -> None:
    with pytest.raises(StateError):
        progress.transition("install", RunStatus.SUCCEEDED)


def test_terminal_states_are_final(progress: RunProgress) -> None:
    progress.transition("install", RunStatus.RUNNING)
    progress.transition("install", RunStatus.SUCCEEDED)
    with pytest.raises(StateError) as exc_info:
        progress.transition("install", RunStatus.FAILED)
    assert exc_info.value.current_state == "succeeded"
    assert exc_info.value.run_id == "r1"


def test_is_terminal(progress: RunProgress) -> None:
    for name in ["install", "test"]:
        progress.transition(name, RunStatus.RUNNING)
        progress.transition(name, RunStatus.SUCCEEDED)
    progress.transition("build", RunStatus.SKIPPED)
    assert progress.is_terminal()


def test_status_properties() -> None:
    assert RunStatus.SKIPPED_WITH_ERROR.is_skip
    assert RunStatus.CANCELLED.is_terminal
    assert not RunStatus.RUNNING.is_terminal
    assert not RunStatus.FAILED.is_skip
