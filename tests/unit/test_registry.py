"""Tests for PipelineRegistry."""

from pathlib import Path

import pytest

from ciflow.exceptions import CycleError, DefinitionError
from ciflow.pipeline.definition import PipelineDefinition
from ciflow.pipeline.graph import StageGraph
from ciflow.pipeline.registry import PipelineNotFoundError, PipelineRegistry


@pytest.fixture
def registry() -> PipelineRegistry:
    return PipelineRegistry()


def test_builtin_pipelines(registry: PipelineRegistry) -> None:
    ids = [p.id for p in registry.pipelines]
    assert ids == ["node_ci", "docker_publish", "package_release"]
    assert all(p.builtin for p in registry.pipelines)


@pytest.mark.parametrize("pipeline_id", ["node_ci", "docker_publish", "package_release"])
def test_builtins_are_valid(registry: PipelineRegistry, pipeline_id: str) -> None:
    pipeline = registry.get(pipeline_id)
    StageGraph.from_pipeline(pipeline)
    pipeline.validate_references()


def test_node_ci_shape(registry: PipelineRegistry) -> None:
    graph = StageGraph.from_pipeline(registry.get("node_ci"))
    assert graph.levels() == [["install"], ["quality", "test"], ["build"]]


def test_builtins_roundtrip_through_yaml(registry: PipelineRegistry) -> None:
    pipeline = registry.get("node_ci")
    restored = PipelineDefinition.from_yaml(pipeline.to_yaml())
    assert restored.stages == pipeline.stages
    assert restored.inputs == pipeline.inputs


def test_get_unknown(registry: PipelineRegistry) -> None:
    with pytest.raises(PipelineNotFoundError):
        registry.get("nope")


def test_cannot_overwrite_builtin(registry: PipelineRegistry) -> None:
    with pytest.raises(ValueError):
        registry.add(PipelineDefinition(id="node_ci"))


def test_add_and_resolve_by_id(registry: PipelineRegistry) -> None:
    registry.add(PipelineDefinition(id="custom"))
    assert registry.exists("custom")
    assert registry.resolve("custom").id == "custom"


def test_resolve_builtin_ref(registry: PipelineRegistry) -> None:
    assert registry.resolve("builtin:docker_publish").id == "docker_publish"
    with pytest.raises(PipelineNotFoundError):
        registry.resolve("builtin:missing")


def test_load_inlines_relative_file_refs(registry: PipelineRegistry, tmp_path: Path) -> None:
    shared = tmp_path / "shared"
    shared.mkdir()
    (shared / "lint.yaml").write_text(
        "id: lint\nstages:\n  - name: lint\n    steps: [{name: lint, uses: lint}]\n"
    )
    (tmp_path / "main.yaml").write_text(
        """
id: main
stages:
  - name: checks
    steps:
      - name: lint
        pipeline: shared/lint.yaml
      - name: ci
        pipeline: builtin:node_ci
"""
    )

    pipeline = registry.load(tmp_path / "main.yaml")

    steps = pipeline.stages[0].steps
    assert isinstance(steps[0].pipeline, PipelineDefinition)
    assert steps[0].pipeline.id == "lint"
    assert steps[1].pipeline.id == "node_ci"


def test_load_detects_reference_cycles(registry: PipelineRegistry, tmp_path: Path) -> None:
    (tmp_path / "a.yaml").write_text(
        "id: a\nstages:\n  - name: s\n    steps: [{name: b, pipeline: b.yaml}]\n"
    )
    (tmp_path / "b.yaml").write_text(
        "id: b\nstages:\n  - name: s\n    steps: [{name: a, pipeline: a.yaml}]\n"
    )
    with pytest.raises(CycleError):
        registry.load(tmp_path / "a.yaml")


def test_load_missing_reference(registry: PipelineRegistry, tmp_path: Path) -> None:
    (tmp_path / "main.yaml").write_text(
        "id: main\nstages:\n  - name: s\n    steps: [{name: x, pipeline: gone.yaml}]\n"
    )
    with pytest.raises(DefinitionError, match="gone.yaml"):
        registry.load(tmp_path / "main.yaml")
