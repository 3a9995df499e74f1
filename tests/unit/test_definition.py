"""Tests for pipeline, stage and step definitions."""

from pathlib import Path

import pytest

from ciflow.exceptions import ConditionReferenceError, DefinitionError
from ciflow.pipeline.definition import (
    PipelineDefinition,
    StageDefinition,
    StepDefinition,
    StepKind,
)


class TestStepDefinition:
    """Tests for StepDefinition."""

    def test_kinds(self) -> None:
        assert StepDefinition(name="a", run="echo hi").kind is StepKind.SHELL
        assert StepDefinition(name="b", uses="lint").kind is StepKind.ACTION
        assert StepDefinition(name="c", pipeline="builtin:node_ci").kind is StepKind.COMPOSITE

    def test_requires_exactly_one_action(self) -> None:
        with pytest.raises(ValueError, match="exactly one"):
            StepDefinition(name="none")
        with pytest.raises(ValueError, match="exactly one"):
            StepDefinition(name="both", run="echo", uses="lint")

    def test_yaml_aliases(self) -> None:
        step = StepDefinition.model_validate(
            {
                "name": "deploy",
                "uses": "deploy",
                "if": "target == 'prod'",
                "with": {"replicas": 3, "wait": True},
                "continue-on-error": True,
            }
        )
        assert step.if_ == "target == 'prod'"
        assert step.with_ == {"replicas": "3", "wait": True}
        assert step.continue_on_error is True
        assert step.condition is not None

    def test_env_values_become_strings(self) -> None:
        step = StepDefinition.model_validate(
            {"name": "x", "run": "env", "env": {"CI": True, "RETRIES": 2}}
        )
        assert step.env == {"CI": "true", "RETRIES": "2"}

    def test_malformed_condition_rejected_at_load(self) -> None:
        with pytest.raises(ValueError):
            StepDefinition.model_validate({"name": "x", "run": "true", "if": "a &&"})

    def test_unknown_keys_rejected(self) -> None:
        with pytest.raises(ValueError):
            StepDefinition.model_validate({"name": "x", "run": "true", "shell": "bash"})

    def test_placeholders(self) -> None:
        step = StepDefinition(
            name="build",
            run="docker build -t ${image} ${ context }",
            with_={"tag": "${image}", "push": True},
            env={"TARGET": "${target}"},
        )
        assert step.placeholders() == ["image", "target", "context"]

    def test_frozen(self) -> None:
        step = StepDefinition(name="a", run="true")
        with pytest.raises(ValueError):
            step.name = "b"


class TestStageDefinition:
    """Tests for StageDefinition."""

    def test_needs_accepts_single_name(self) -> None:
        stage = StageDefinition.model_validate(
            {"name": "build", "needs": "test", "steps": [{"name": "b", "run": "make"}]}
        )
        assert stage.needs == ["test"]

    def test_requires_steps(self) -> None:
        with pytest.raises(ValueError):
            StageDefinition(name="empty", steps=[])

    def test_duplicate_step_names(self) -> None:
        with pytest.raises(ValueError, match="Duplicate step"):
            StageDefinition(
                name="s",
                steps=[
                    StepDefinition(name="x", run="a"),
                    StepDefinition(name="x", run="b"),
                ],
            )

    def test_invalid_name(self) -> None:
        with pytest.raises(ValueError):
            StageDefinition(name="1bad name", steps=[StepDefinition(name="x", run="a")])

    def test_get_step(self) -> None:
        stage = StageDefinition(name="s", steps=[StepDefinition(name="x", run="a")])
        assert stage.get_step("x") is not None
        assert stage.get_step("y") is None


class TestPipelineDefinition:
    """Tests for PipelineDefinition."""

    def test_from_yaml(self, sample_pipeline: PipelineDefinition) -> None:
        assert sample_pipeline.id == "sample"
        assert [s.name for s in sample_pipeline.stages] == ["quality", "test", "build"]
        assert sample_pipeline.inputs["run_lint"].default is True
        assert sample_pipeline.inputs["target"].default == "staging"
        assert sample_pipeline.get_stage("build").needs == ["quality", "test"]

    def test_yaml_roundtrip(self, sample_pipeline: PipelineDefinition) -> None:
        restored = PipelineDefinition.from_yaml(sample_pipeline.to_yaml())
        assert restored == sample_pipeline

    def test_to_dict_uses_yaml_keys(self, sample_pipeline: PipelineDefinition) -> None:
        data = sample_pipeline.to_dict()
        lint = data["stages"][0]["steps"][0]
        assert lint["if"] == "run_lint == true"
        assert "if_" not in lint
        assert "builtin" not in data

    def test_display_name_falls_back_to_id(self) -> None:
        assert PipelineDefinition(id="x").display_name == "x"

    def test_duplicate_stage_names(self) -> None:
        content = """
id: dup
stages:
  - name: a
    steps: [{name: s, run: "true"}]
  - name: a
    steps: [{name: s, run: "true"}]
"""
        with pytest.raises(DefinitionError, match="Duplicate stage"):
            PipelineDefinition.from_yaml(content)

    def test_invalid_yaml(self) -> None:
        with pytest.raises(DefinitionError, match="Invalid YAML"):
            PipelineDefinition.from_yaml("id: [unclosed")

    def test_non_mapping_document(self) -> None:
        with pytest.raises(DefinitionError, match="mapping"):
            PipelineDefinition.from_yaml("- just\n- a list\n")

    def test_load_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(DefinitionError, match="not found"):
            PipelineDefinition.load(tmp_path / "nope.yaml")

    def test_definition_error_carries_source(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("id: Bad-Id\n")
        with pytest.raises(DefinitionError) as exc_info:
            PipelineDefinition.load(path)
        assert exc_info.value.source == path

    def test_validate_references_ok(self, sample_pipeline: PipelineDefinition) -> None:
        sample_pipeline.validate_references()

    def test_validate_references_undeclared_condition_input(self) -> None:
        pipeline = PipelineDefinition(
            id="p",
            stages=[
                StageDefinition(
                    name="s",
                    steps=[StepDefinition(name="x", run="true", if_="run_lint")],
                )
            ],
        )
        with pytest.raises(ConditionReferenceError) as exc_info:
            pipeline.validate_references()
        assert exc_info.value.name == "run_lint"

    def test_validate_references_undeclared_placeholder(self) -> None:
        pipeline = PipelineDefinition(
            id="p",
            inputs={"image": {"default": "app"}},
            stages=[
                StageDefinition(
                    name="s",
                    steps=[StepDefinition(name="x", run="echo ${image}:${tag}")],
                )
            ],
        )
        with pytest.raises(ConditionReferenceError):
            pipeline.validate_references()

    def test_validate_references_checks_stage_condition(self) -> None:
        pipeline = PipelineDefinition(
            id="p",
            stages=[
                StageDefinition(
                    name="s",
                    if_="deploy",
                    steps=[StepDefinition(name="x", run="true")],
                )
            ],
        )
        with pytest.raises(ConditionReferenceError):
            pipeline.validate_references()

    def test_inline_nested_pipeline(self) -> None:
        content = """
id: outer
inputs:
  lint: true
stages:
  - name: ci
    steps:
      - name: nested
        pipeline:
          id: inner
          inputs:
            run_lint: false
          stages:
            - name: lint
              if: run_lint
              steps: [{name: lint, uses: lint}]
        with:
          run_lint: ${lint}
"""
        pipeline = PipelineDefinition.from_yaml(content)
        nested = pipeline.stages[0].steps[0].pipeline
        assert isinstance(nested, PipelineDefinition)
        assert nested.id == "inner"
        pipeline.validate_references()
