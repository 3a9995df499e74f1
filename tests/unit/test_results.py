"""Tests for run results and the result store."""

import json

import pytest

from ciflow.exceptions import StateError
from ciflow.pipeline.results import PipelineResult, ResultStore, RunResult, StageResult
from ciflow.pipeline.state import FailureReason, RunStatus


def _result(step: str = "lint", status: RunStatus = RunStatus.SUCCEEDED) -> RunResult:
    return RunResult(run_id="r1", stage="quality", step=step, status=status, exit_code=0)


def test_run_result_is_immutable() -> None:
    result = _result()
    with pytest.raises(AttributeError):
        result.status = RunStatus.FAILED  # type: ignore[misc]


def test_not_run_has_no_exit_code() -> None:
    result = RunResult.not_run(
        "r1",
        "quality",
        "lint",
        status=RunStatus.SKIPPED,
        reason=FailureReason.CONDITION_FALSE,
    )
    assert result.exit_code is None
    assert result.started_at == result.finished_at
    assert not result.ok


def test_run_result_dict_roundtrip() -> None:
    result = RunResult(
        run_id="r1",
        stage="test",
        step="unit",
        status=RunStatus.FAILED,
        exit_code=2,
        reason=FailureReason.EXIT_CODE,
        message="Exited with code 2",
        stdout_tail="out",
        stderr_tail="err",
    )
    data = result.to_dict()
    assert data["status"] == "failed"
    assert data["reason"] == "exit_code"
    assert RunResult.from_dict(json.loads(json.dumps(data))) == result


class TestResultStore:
    """Tests for ResultStore."""

    def test_record_and_get(self) -> None:
        store = ResultStore()
        store.record(_result("lint"))
        store.record(_result("typecheck"))
        assert len(store) == 2
        assert store.get("r1", "quality", "lint") is not None
        assert [r.step for r in store.for_stage("r1", "quality")] == ["lint", "typecheck"]

    def test_write_once(self) -> None:
        store = ResultStore()
        store.record(_result("lint"))
        with pytest.raises(StateError):
            store.record(_result("lint", RunStatus.FAILED))
        assert store.get("r1", "quality", "lint").status is RunStatus.SUCCEEDED


class TestPipelineResult:
    """Tests for PipelineResult."""

    @pytest.fixture
    def result(self) -> PipelineResult:
        return PipelineResult(
            run_id="r1",
            pipeline_id="sample",
            success=False,
            stages=[
                StageResult(stage="quality", status=RunStatus.FAILED, reason=FailureReason.EXIT_CODE),
                StageResult(stage="test", status=RunStatus.SUCCEEDED, steps=(_result("unit"),)),
                StageResult(stage="build", status=RunStatus.SKIPPED, reason=FailureReason.DEPENDENCY_FAILED),
            ],
        )

    def test_bool(self, result: PipelineResult) -> None:
        assert not result

    def test_status_of(self, result: PipelineResult) -> None:
        assert result.status_of("build") is RunStatus.SKIPPED
        with pytest.raises(KeyError):
            result.status_of("deploy")

    def test_failed_stages(self, result: PipelineResult) -> None:
        assert result.failed_stages == ["quality"]

    def test_to_json(self, result: PipelineResult) -> None:
        data = json.loads(result.to_json())
        assert data["pipeline_id"] == "sample"
        assert [s["status"] for s in data["stages"]] == ["failed", "succeeded", "skipped"]
        assert data["stages"][1]["steps"][0]["step"] == "unit"
        assert data["stages"][2]["reason"] == "dependency_failed"
