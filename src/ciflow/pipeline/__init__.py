"""Pipeline engine: stage graph, conditions, execution and results."""

from ciflow.pipeline.conditions import evaluate, parse_condition
from ciflow.pipeline.context import (
    EnvSecretProvider,
    SecretProvider,
    StaticSecretProvider,
    StepContext,
)
from ciflow.pipeline.definition import (
    InputSpec,
    PipelineDefinition,
    StageDefinition,
    StepDefinition,
    StepKind,
)
from ciflow.pipeline.executor import StepExecutor
from ciflow.pipeline.graph import StageGraph
from ciflow.pipeline.orchestrator import PipelineOrchestrator
from ciflow.pipeline.registry import PipelineNotFoundError, PipelineRegistry
from ciflow.pipeline.results import PipelineResult, ResultStore, RunResult, StageResult
from ciflow.pipeline.state import FailureReason, RunStatus

__all__ = [
    "EnvSecretProvider",
    "FailureReason",
    "InputSpec",
    "PipelineDefinition",
    "PipelineNotFoundError",
    "PipelineOrchestrator",
    "PipelineRegistry",
    "PipelineResult",
    "ResultStore",
    "RunResult",
    "RunStatus",
    "SecretProvider",
    "StageDefinition",
    "StageGraph",
    "StageResult",
    "StaticSecretProvider",
    "StepContext",
    "StepDefinition",
    "StepExecutor",
    "StepKind",
    "evaluate",
    "parse_condition",
]
