"""Pipeline, Stage and Step definition models."""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ciflow.exceptions import (
    ConditionReferenceError,
    ConditionSyntaxError,
    DefinitionError,
)
from ciflow.pipeline.conditions import ConditionExpression, parse_condition, references
from ciflow.pipeline.constants import MAX_STAGES_PER_PIPELINE, MAX_STEPS_PER_STAGE

PLACEHOLDER_RE = re.compile(r"\$\{\s*([A-Za-z_][A-Za-z0-9_\-]*)\s*\}")


class StepKind(str, Enum):
    """Kind of action a step performs."""

    SHELL = "shell"  # Inline shell script (`run:`)
    ACTION = "action"  # Named capability (`uses:`)
    COMPOSITE = "composite"  # Nested pipeline (`pipeline:`)


def _check_condition(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        parse_condition(value)
    except ConditionSyntaxError as e:
        raise ValueError(str(e)) from e
    return value


def _stringify_scalars(value: Any) -> Any:
    """Turn numeric YAML scalars into strings; inputs are bool or str only."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class InputSpec(BaseModel):
    """Declared pipeline input.

    Attributes:
        default: Value used when the caller does not supply one.
        description: Human-readable description.
        required: Whether the caller must supply a value.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    default: bool | str | None = None
    description: str = ""
    required: bool = False

    @field_validator("default", mode="before")
    @classmethod
    def coerce_default(cls, v: Any) -> Any:
        """Accept numeric defaults from YAML."""
        return _stringify_scalars(v)


class StepDefinition(BaseModel):
    """Definition of a single step.

    Exactly one of ``run``, ``uses`` or ``pipeline`` must be set.

    Attributes:
        name: Step name, unique within its stage.
        run: Shell script to execute.
        uses: Name of a registered capability.
        pipeline: Nested pipeline, inline or as a reference
            (file path or ``builtin:<id>``).
        if_: Optional gate condition (``if`` in YAML).
        with_: Arguments for the action (``with`` in YAML); ``${name}``
            placeholders are resolved against the run inputs.
        env: Extra environment variables for the action.
        secrets: Names of secrets the step needs.
        continue_on_error: Whether a failure of this step leaves the stage running.
        timeout_seconds: Per-step timeout (falls back to the run default).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    name: str = Field(..., min_length=1, max_length=128)
    run: str | None = None
    uses: str | None = None
    pipeline: PipelineDefinition | str | None = None
    if_: str | None = Field(default=None, alias="if")
    with_: dict[str, bool | str] = Field(default_factory=dict, alias="with")
    env: dict[str, str] = Field(default_factory=dict)
    secrets: list[str] = Field(default_factory=list)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout_seconds: int | None = Field(default=None, ge=1)

    @field_validator("if_")
    @classmethod
    def validate_condition(cls, v: str | None) -> str | None:
        """Reject malformed conditions at load time."""
        return _check_condition(v)

    @field_validator("with_", mode="before")
    @classmethod
    def coerce_with(cls, v: Any) -> Any:
        """Accept numeric values in ``with``."""
        if isinstance(v, dict):
            return {k: _stringify_scalars(val) for k, val in v.items()}
        return v

    @field_validator("env", mode="before")
    @classmethod
    def coerce_env(cls, v: Any) -> Any:
        """Environment values are always strings."""
        if isinstance(v, dict):
            return {
                k: str(val).lower() if isinstance(val, bool) else _stringify_scalars(val)
                for k, val in v.items()
            }
        return v

    @model_validator(mode="after")
    def validate_action(self) -> StepDefinition:
        """Ensure exactly one action reference is given."""
        given = [f for f in ("run", "uses", "pipeline") if getattr(self, f) is not None]
        if len(given) != 1:
            msg = f"Step '{self.name}' must set exactly one of run, uses, pipeline (got {given or 'none'})"
            raise ValueError(msg)
        return self

    @property
    def kind(self) -> StepKind:
        """Action kind of this step."""
        if self.run is not None:
            return StepKind.SHELL
        if self.uses is not None:
            return StepKind.ACTION
        return StepKind.COMPOSITE

    @property
    def condition(self) -> ConditionExpression | None:
        """Parsed gate condition."""
        return parse_condition(self.if_) if self.if_ else None

    def placeholders(self) -> list[str]:
        """Input names referenced by ``${name}`` placeholders."""
        names: list[str] = []
        values = [v for v in self.with_.values() if isinstance(v, str)]
        values.extend(self.env.values())
        if self.run is not None:
            values.append(self.run)
        for value in values:
            for name in PLACEHOLDER_RE.findall(value):
                if name not in names:
                    names.append(name)
        return names


class StageDefinition(BaseModel):
    """Definition of a stage.

    Attributes:
        name: Unique stage name.
        steps: Ordered steps.
        needs: Names of stages that must succeed first.
        if_: Optional gate condition (``if`` in YAML).
        parallel: Run steps concurrently instead of in order.
        description: Human-readable description.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    name: str = Field(..., min_length=1, max_length=64, pattern=r"^[A-Za-z][A-Za-z0-9_\-]*$")
    steps: list[StepDefinition] = Field(..., min_length=1, max_length=MAX_STEPS_PER_STAGE)
    needs: list[str] = Field(default_factory=list)
    if_: str | None = Field(default=None, alias="if")
    parallel: bool = False
    description: str = ""

    @field_validator("needs", mode="before")
    @classmethod
    def coerce_needs(cls, v: Any) -> Any:
        """Allow a single stage name instead of a list."""
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("if_")
    @classmethod
    def validate_condition(cls, v: str | None) -> str | None:
        """Reject malformed conditions at load time."""
        return _check_condition(v)

    @field_validator("steps")
    @classmethod
    def validate_steps(cls, v: list[StepDefinition]) -> list[StepDefinition]:
        """Ensure step names are unique within the stage."""
        names = [s.name for s in v]
        if len(names) != len(set(names)):
            msg = "Duplicate step names found"
            raise ValueError(msg)
        return v

    @property
    def condition(self) -> ConditionExpression | None:
        """Parsed gate condition."""
        return parse_condition(self.if_) if self.if_ else None

    def get_step(self, name: str) -> StepDefinition | None:
        """Get a step by name."""
        for step in self.steps:
            if step.name == name:
                return step
        return None


class PipelineDefinition(BaseModel):
    """Complete definition of a pipeline.

    Attributes:
        id: Unique identifier for the pipeline.
        name: Human-readable name.
        description: Description of the pipeline purpose.
        inputs: Declared inputs with defaults.
        stages: Stages in declaration order (also the dispatch tie-break order).
        builtin: Whether this is a built-in pipeline.
        version: Schema version for future compatibility.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-z][a-z0-9_\-]*$")
    name: str = ""
    description: str = ""
    inputs: dict[str, InputSpec] = Field(default_factory=dict)
    stages: list[StageDefinition] = Field(default_factory=list, max_length=MAX_STAGES_PER_PIPELINE)
    builtin: bool = False
    version: str = "1.0"

    @field_validator("inputs", mode="before")
    @classmethod
    def coerce_inputs(cls, v: Any) -> Any:
        """Allow ``name: default`` shorthand for inputs."""
        if isinstance(v, dict):
            return {
                k: spec if isinstance(spec, (dict, InputSpec)) else {"default": spec}
                for k, spec in v.items()
            }
        return v

    @field_validator("stages")
    @classmethod
    def validate_stages(cls, v: list[StageDefinition]) -> list[StageDefinition]:
        """Check for duplicate stage names."""
        names = [s.name for s in v]
        if len(names) != len(set(names)):
            msg = "Duplicate stage names found"
            raise ValueError(msg)
        return v

    @property
    def display_name(self) -> str:
        """Name for reports, falling back to the id."""
        return self.name or self.id

    def get_stage(self, name: str) -> StageDefinition | None:
        """Get a stage by name."""
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def validate_references(self) -> None:
        """Check that conditions and placeholders only use declared inputs.

        Nested inline pipelines are checked against their own inputs.

        Raises:
            ConditionReferenceError: On the first undeclared reference.
        """
        declared = set(self.inputs)
        for stage in self.stages:
            if stage.if_:
                for name in references(stage.if_):
                    if name not in declared:
                        raise ConditionReferenceError(name, owner=stage.name)
            for step in stage.steps:
                owner = f"{stage.name}/{step.name}"
                if step.if_:
                    for name in references(step.if_):
                        if name not in declared:
                            raise ConditionReferenceError(name, owner=owner)
                for name in step.placeholders():
                    if name not in declared:
                        raise ConditionReferenceError(name, owner=owner)
                if isinstance(step.pipeline, PipelineDefinition):
                    step.pipeline.validate_references()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = self.model_dump(mode="json", by_alias=True, exclude_defaults=True)
        data.pop("builtin", None)
        return data

    def to_yaml(self) -> str:
        """Serialize to YAML string."""
        return yaml.dump(self.to_dict(), default_flow_style=False, sort_keys=False)

    @classmethod
    def from_dict(cls, data: Any, *, source: Path | str | None = None) -> PipelineDefinition:
        """Validate a parsed document.

        Raises:
            DefinitionError: If the document does not describe a valid pipeline.
        """
        if not isinstance(data, dict):
            msg = "Pipeline document must be a mapping"
            raise DefinitionError(msg, source=source)
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            msg = f"Invalid pipeline definition: {e}"
            raise DefinitionError(msg, source=source) from e

    @classmethod
    def from_yaml(cls, yaml_content: str, *, source: Path | str | None = None) -> PipelineDefinition:
        """Parse a pipeline from YAML content.

        Raises:
            DefinitionError: If the YAML or the pipeline is invalid.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            msg = f"Invalid YAML: {e}"
            raise DefinitionError(msg, source=source) from e
        return cls.from_dict(data, source=source)

    @classmethod
    def load(cls, path: Path) -> PipelineDefinition:
        """Load a pipeline from a YAML file.

        Raises:
            DefinitionError: If the file is missing, unreadable or invalid.
        """
        if not path.exists():
            msg = f"Pipeline file not found: {path}"
            raise DefinitionError(msg, source=path)
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            msg = f"Cannot read pipeline file {path}: {e}"
            raise DefinitionError(msg, source=path) from e
        return cls.from_yaml(content, source=path)


# Update forward reference
StepDefinition.model_rebuild()
