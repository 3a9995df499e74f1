"""Pytest fixtures for ciflow tests."""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

import pytest

from ciflow.capabilities import CapabilityRegistry, FakeCapability
from ciflow.infra.command import CommandRunner
from ciflow.paths import RunPaths
from ciflow.pipeline import PipelineDefinition, PipelineOrchestrator, PipelineRegistry
from ciflow.report import ReportWriter

CI_ACTIONS = (
    "shell",
    "install-dependencies",
    "lint",
    "typecheck",
    "test",
    "build",
    "docker-build",
    "docker-push",
    "security-scan",
    "release",
    "deploy",
)

SAMPLE_PIPELINE_YAML = """\
id: sample
name: Sample CI
inputs:
  run_lint: true
  target:
    default: staging
stages:
  - name: quality
    steps:
      - name: lint
        uses: lint
        if: run_lint == true
  - name: test
    steps:
      - name: unit
        run: echo testing
  - name: build
    needs: [quality, test]
    steps:
      - name: compile
        uses: build
        with:
          target: ${target}
"""


@pytest.fixture
def tmp_project(tmp_path: Path) -> Path:
    """Create a temporary project directory."""
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def run_paths(tmp_project: Path) -> RunPaths:
    """Create RunPaths for a test run."""
    return RunPaths.create_new(tmp_project / ".ciflow" / "runs", "test_run")


@pytest.fixture
def command_runner() -> CommandRunner:
    """Create a CommandRunner instance."""
    return CommandRunner(heartbeat_interval=0, grace_seconds=1.0)


@pytest.fixture
def dry_run_command_runner() -> CommandRunner:
    """Create a dry-run CommandRunner instance."""
    return CommandRunner(dry_run=True)


@pytest.fixture
def fake_capability() -> FakeCapability:
    """A fake capability that succeeds by default."""
    return FakeCapability()


@pytest.fixture
def capability_registry(fake_capability: FakeCapability) -> CapabilityRegistry:
    """Registry with the fake capability behind every CI action name."""
    registry = CapabilityRegistry()
    for name in CI_ACTIONS:
        registry.register(name, fake_capability)
    return registry


@pytest.fixture
def make_orchestrator(
    capability_registry: CapabilityRegistry,
) -> Callable[..., PipelineOrchestrator]:
    """Factory for orchestrators wired to the fake registry."""

    def _make(**kwargs) -> PipelineOrchestrator:
        kwargs.setdefault("pipeline_registry", PipelineRegistry())
        kwargs.setdefault("cancel_grace_seconds", 2.0)
        return PipelineOrchestrator(capability_registry, **kwargs)

    return _make


@pytest.fixture
def report_writer(run_paths: RunPaths) -> ReportWriter:
    return ReportWriter(run_paths)


@pytest.fixture
def sample_pipeline() -> PipelineDefinition:
    """The quality/test/build sample pipeline."""
    return PipelineDefinition.from_yaml(SAMPLE_PIPELINE_YAML)


@pytest.fixture
def sample_pipeline_file(tmp_project: Path) -> Path:
    path = tmp_project / "pipeline.yaml"
    path.write_text(SAMPLE_PIPELINE_YAML)
    return path
