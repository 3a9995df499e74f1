"""Integration tests for the ciflow CLI."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog
import yaml
from typer.testing import CliRunner

from ciflow import __version__
from ciflow.cli import EXIT_DEFINITION_ERROR, EXIT_FAILED, EXIT_OK, app

runner = CliRunner()

SHELL_PIPELINE = """\
id: shell-ci
inputs:
  greet: true
  name: world
stages:
  - name: hello
    steps:
      - name: say
        run: echo hello ${name}
        if: greet
  - name: check
    needs: [hello]
    steps:
      - name: ok
        run: "true"
"""

FAILING_PIPELINE = """\
id: failing
stages:
  - name: broken
    steps:
      - name: boom
        run: exit 3
  - name: after
    needs: [broken]
    steps:
      - name: never
        run: echo never
"""

CYCLE_PIPELINE = """\
id: loop
stages:
  - name: a
    needs: [b]
    steps: [{name: s, run: "true"}]
  - name: b
    needs: [a]
    steps: [{name: s, run: "true"}]
"""

# Replace the npm-backed actions used by the sample pipeline.
NOOP_CONFIG = """\
capabilities:
  lint:
    command: ["true"]
  build:
    command: ["sh", "-c", "echo building {target}"]
"""


@pytest.fixture(autouse=True)
def cli_env(tmp_project: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Run each command from a scratch project with quiet logs."""
    runs_dir = tmp_project / "runs"
    monkeypatch.chdir(tmp_project)
    monkeypatch.setenv("CIFLOW_RUNS_DIR", str(runs_dir))
    monkeypatch.setenv("CIFLOW_LOG_LEVEL", "error")
    yield runs_dir
    # The CLI binds structlog to the runner's stderr, which is closed afterwards.
    structlog.reset_defaults()


def _write(directory: Path, name: str, content: str) -> Path:
    path = directory / name
    path.write_text(content)
    return path


def _only_report(runs_dir: Path) -> dict:
    reports = list(runs_dir.glob("*/report.json"))
    assert len(reports) == 1
    return json.loads(reports[0].read_text())


class TestRun:
    """Tests for the run command."""

    def test_success(self, tmp_project: Path, cli_env: Path) -> None:
        pipeline = _write(tmp_project, "ci.yaml", SHELL_PIPELINE)

        result = runner.invoke(app, ["run", str(pipeline)])

        assert result.exit_code == EXIT_OK, result.output
        assert "Result: SUCCESS" in result.output
        report = _only_report(cli_env)
        assert report["success"] is True
        assert [s["status"] for s in report["stages"]] == ["succeeded", "succeeded"]
        say = report["stages"][0]["steps"][0]
        assert say["stdout_tail"].strip() == "hello world"
        assert Path(say["log_path"]).exists()

    def test_failure_exit_code(self, tmp_project: Path, cli_env: Path) -> None:
        pipeline = _write(tmp_project, "fail.yaml", FAILING_PIPELINE)

        result = runner.invoke(app, ["run", str(pipeline)])

        assert result.exit_code == EXIT_FAILED
        assert "Result: FAILED" in result.output
        report = _only_report(cli_env)
        broken, after = report["stages"]
        assert broken["status"] == "failed"
        assert broken["steps"][0]["exit_code"] == 3
        assert after["status"] == "skipped"
        assert after["reason"] == "dependency_failed"

    def test_inputs(self, tmp_project: Path, cli_env: Path) -> None:
        pipeline = _write(tmp_project, "ci.yaml", SHELL_PIPELINE)

        result = runner.invoke(
            app, ["run", str(pipeline), "-i", "greet=false", "--input", "name=ciflow"]
        )

        assert result.exit_code == EXIT_OK, result.output
        report = _only_report(cli_env)
        assert report["inputs"] == {"greet": False, "name": "ciflow"}
        say = report["stages"][0]["steps"][0]
        assert say["status"] == "skipped"
        assert say["reason"] == "condition_false"

    def test_malformed_input(self, tmp_project: Path) -> None:
        pipeline = _write(tmp_project, "ci.yaml", SHELL_PIPELINE)

        result = runner.invoke(app, ["run", str(pipeline), "-i", "greet"])

        assert result.exit_code != EXIT_OK

    def test_json_output(self, tmp_project: Path) -> None:
        pipeline = _write(tmp_project, "ci.yaml", SHELL_PIPELINE)

        result = runner.invoke(app, ["run", str(pipeline), "--json"])

        assert result.exit_code == EXIT_OK, result.output
        data = json.loads(result.stdout)
        assert data["pipeline_id"] == "shell-ci"
        assert data["success"] is True

    def test_report_copy(self, tmp_project: Path) -> None:
        pipeline = _write(tmp_project, "fail.yaml", FAILING_PIPELINE)
        report_path = tmp_project / "out" / "report.json"

        result = runner.invoke(app, ["run", str(pipeline), "--report", str(report_path)])

        assert result.exit_code == EXIT_FAILED
        data = json.loads(report_path.read_text())
        assert data["success"] is False
        assert data["stages"][0]["reason"] == "exit_code"

    def test_dry_run(self, tmp_project: Path) -> None:
        pipeline = _write(tmp_project, "fail.yaml", FAILING_PIPELINE)

        result = runner.invoke(app, ["run", str(pipeline), "--dry-run"])

        assert result.exit_code == EXIT_OK, result.output

    def test_concurrency_must_be_positive(self, tmp_project: Path) -> None:
        pipeline = _write(tmp_project, "ci.yaml", SHELL_PIPELINE)

        result = runner.invoke(app, ["run", str(pipeline), "-j", "0"])

        assert result.exit_code != EXIT_OK

    def test_config_capabilities(self, sample_pipeline_file: Path, tmp_project: Path) -> None:
        config = _write(tmp_project, "ciflow.yaml", NOOP_CONFIG)

        result = runner.invoke(app, ["run", str(sample_pipeline_file), "-c", str(config), "--json"])

        assert result.exit_code == EXIT_OK, result.output
        data = json.loads(result.stdout)
        compile_step = data["stages"][2]["steps"][0]
        assert compile_step["stdout_tail"].strip() == "building staging"

    def test_config_picked_up_from_cwd(self, sample_pipeline_file: Path, tmp_project: Path) -> None:
        _write(tmp_project, "ciflow.yaml", NOOP_CONFIG)

        result = runner.invoke(app, ["run", str(sample_pipeline_file)])

        assert result.exit_code == EXIT_OK, result.output

    def test_invalid_config(self, sample_pipeline_file: Path, tmp_project: Path) -> None:
        config = _write(tmp_project, "bad.yaml", "run:\n  concurrency: 0\n")

        result = runner.invoke(app, ["run", str(sample_pipeline_file), "-c", str(config)])

        assert result.exit_code == EXIT_DEFINITION_ERROR

    def test_cycle_is_definition_error(self, tmp_project: Path, cli_env: Path) -> None:
        pipeline = _write(tmp_project, "loop.yaml", CYCLE_PIPELINE)

        result = runner.invoke(app, ["run", str(pipeline)])

        assert result.exit_code == EXIT_DEFINITION_ERROR
        assert not list(cli_env.glob("*/report.json"))

    def test_undeclared_condition_input(self, tmp_project: Path) -> None:
        pipeline = _write(
            tmp_project,
            "undeclared.yaml",
            "id: u\nstages:\n  - {name: a, if: deploy, steps: [{name: s, run: 'true'}]}\n",
        )

        result = runner.invoke(app, ["run", str(pipeline)])

        assert result.exit_code == EXIT_DEFINITION_ERROR

    def test_missing_file(self, tmp_project: Path) -> None:
        result = runner.invoke(app, ["run", str(tmp_project / "missing.yaml")])
        assert result.exit_code == EXIT_DEFINITION_ERROR


class TestInspect:
    """Tests for validate, graph and pipelines commands."""

    def test_validate(self, sample_pipeline_file: Path) -> None:
        result = runner.invoke(app, ["validate", str(sample_pipeline_file)])
        assert result.exit_code == EXIT_OK
        assert "OK: sample (3 stages, 3 steps)" in result.output

    def test_validate_cycle(self, tmp_project: Path) -> None:
        pipeline = _write(tmp_project, "loop.yaml", CYCLE_PIPELINE)
        result = runner.invoke(app, ["validate", str(pipeline)])
        assert result.exit_code == EXIT_DEFINITION_ERROR

    def test_validate_directory(self, tmp_project: Path) -> None:
        directory = tmp_project / "pipelines"
        directory.mkdir()
        result = runner.invoke(app, ["validate", str(directory)])
        assert result.exit_code == EXIT_DEFINITION_ERROR
        assert "Cannot read pipeline file" in result.output

    def test_validate_invalid_utf8(self, tmp_project: Path) -> None:
        pipeline = tmp_project / "binary.yaml"
        pipeline.write_bytes(b"\xff\xfeid: x\n")
        result = runner.invoke(app, ["validate", str(pipeline)])
        assert result.exit_code == EXIT_DEFINITION_ERROR

    def test_run_directory(self, tmp_project: Path) -> None:
        result = runner.invoke(app, ["run", str(tmp_project)])
        assert result.exit_code == EXIT_DEFINITION_ERROR

    def test_validate_builtin(self) -> None:
        result = runner.invoke(app, ["validate", "builtin:docker_publish"])
        assert result.exit_code == EXIT_OK
        assert "docker_publish" in result.output

    def test_graph_json(self, sample_pipeline_file: Path) -> None:
        result = runner.invoke(app, ["graph", str(sample_pipeline_file), "--json"])
        assert result.exit_code == EXIT_OK
        data = json.loads(result.stdout)
        assert data["levels"] == [["quality", "test"], ["build"]]
        assert data["dependencies"]["build"] == ["quality", "test"]

    def test_graph_text(self, sample_pipeline_file: Path) -> None:
        result = runner.invoke(app, ["graph", str(sample_pipeline_file)])
        assert result.exit_code == EXIT_OK
        assert "build  <- quality, test" in result.output

    def test_pipelines_list(self) -> None:
        result = runner.invoke(app, ["pipelines", "list", "--json"])
        assert result.exit_code == EXIT_OK
        ids = [p["id"] for p in json.loads(result.stdout)]
        assert ids == ["node_ci", "docker_publish", "package_release"]

    def test_pipelines_show(self) -> None:
        result = runner.invoke(app, ["pipelines", "show", "node_ci"])
        assert result.exit_code == EXIT_OK
        assert "lint: lint if run_lint" in result.output

    def test_pipelines_show_yaml(self) -> None:
        result = runner.invoke(app, ["pipelines", "show", "package_release", "--yaml"])
        assert result.exit_code == EXIT_OK
        data = yaml.safe_load(result.stdout)
        assert data["id"] == "package_release"

    def test_pipelines_show_unknown(self) -> None:
        result = runner.invoke(app, ["pipelines", "show", "nope"])
        assert result.exit_code == EXIT_FAILED

    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == EXIT_OK
        assert __version__ in result.output
