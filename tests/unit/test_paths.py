"""Tests for RunPaths."""

from pathlib import Path

from ciflow.paths import RunPaths, generate_run_id, safe_name, step_log_name


def test_generate_run_id() -> None:
    """Test run ID generation."""
    run_id = generate_run_id()

    parts = run_id.split("_")
    assert len(parts) == 3
    assert len(parts[0]) == 8 and parts[0].isdigit()
    assert len(parts[1]) == 6 and parts[1].isdigit()
    assert len(parts[2]) == 8


def test_run_ids_are_unique() -> None:
    assert generate_run_id() != generate_run_id()


def test_run_paths_properties(tmp_path: Path) -> None:
    paths = RunPaths(tmp_path / "runs", "test_run")

    assert paths.run_dir == tmp_path / "runs" / "test_run"
    assert paths.logs_dir == paths.run_dir / "logs"
    assert paths.report_json == paths.run_dir / "report.json"
    assert paths.stages_jsonl == paths.run_dir / "stages.jsonl"
    assert paths.step_log_path("quality", "lint js") == paths.logs_dir / "quality__lint_js.log"


def test_create_new(tmp_path: Path) -> None:
    paths = RunPaths.create_new(tmp_path / "runs")
    assert paths.logs_dir.is_dir()
    assert paths.run_id


def test_safe_name() -> None:
    assert safe_name("docker/publish step") == "docker_publish_step"
    assert safe_name("///") == "step"


def test_step_log_name() -> None:
    assert step_log_name("build", "docker/push") == "build__docker_push.log"
