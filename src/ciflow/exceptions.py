"""Custom exceptions for the ciflow orchestrator."""

from pathlib import Path


class CiflowError(Exception):
    """Base exception for all ciflow errors."""

    pass


# ============================================================================
# Configuration errors (fatal, raised before any execution)
# ============================================================================


class ConfigurationError(CiflowError):
    """Raised when a pipeline definition or config is invalid."""

    def __init__(
        self,
        message: str,
        *,
        source: Path | str | None = None,
        field: str = "",
    ) -> None:
        super().__init__(message)
        self.source = source
        self.field = field


class ConfigError(ConfigurationError):
    """Raised when the ciflow.yaml configuration is invalid."""

    pass


class DefinitionError(ConfigurationError):
    """Raised when a pipeline file cannot be parsed or validated."""

    pass


class DuplicateStageError(ConfigurationError):
    """Raised when two stages share the same name."""

    def __init__(self, stage: str) -> None:
        super().__init__(f"Duplicate stage name: {stage}", field=stage)
        self.stage = stage


class UnknownDependencyError(ConfigurationError):
    """Raised when a stage depends on a stage that was never declared."""

    def __init__(self, stage: str, dependency: str, *, message: str | None = None) -> None:
        super().__init__(
            message or f"Stage '{stage}' depends on unknown stage '{dependency}'",
            field=stage,
        )
        self.stage = stage
        self.dependency = dependency


class CycleError(ConfigurationError):
    """Raised when a dependency edge would introduce a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class ConditionSyntaxError(ConfigurationError):
    """Raised when a condition expression cannot be parsed."""

    def __init__(self, message: str, *, expression: str = "", position: int = 0) -> None:
        super().__init__(f"{message} in condition {expression!r} at position {position}")
        self.expression = expression
        self.position = position


class ConditionReferenceError(ConfigurationError):
    """Raised when a condition references an input the pipeline never declares."""

    def __init__(self, name: str, *, owner: str = "") -> None:
        super().__init__(
            f"Condition on '{owner}' references undeclared input '{name}'",
            field=owner,
        )
        self.name = name
        self.owner = owner


class CapabilityNotFoundError(ConfigurationError):
    """Raised when a step uses a capability that is not registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Capability not found: {name}", field=name)
        self.name = name


# ============================================================================
# Runtime errors (fail the owning step only)
# ============================================================================


class ConditionError(CiflowError):
    """Raised when a condition cannot be evaluated at run time."""

    pass


class UnresolvedInputError(ConditionError):
    """Raised when an expression or placeholder references a missing input."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unresolved input: {name}")
        self.name = name


class ExecutionFailure(CiflowError):
    """Raised when a capability fails to run."""

    pass


class CommandError(ExecutionFailure):
    """Raised when a subprocess command cannot be run."""

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        returncode: int | None = None,
        cwd: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.command = command or []
        self.returncode = returncode
        self.cwd = cwd


class StepTimeoutError(ExecutionFailure):
    """Raised when a capability exceeds its timeout."""

    def __init__(self, message: str, *, timeout: float | None = None) -> None:
        super().__init__(message)
        self.timeout = timeout


class CancellationFailure(CiflowError):
    """Raised when a capability observes the run cancellation signal."""

    pass


class StateError(CiflowError):
    """Raised on an illegal state transition or a double-recorded result."""

    def __init__(
        self,
        message: str,
        *,
        current_state: str = "",
        run_id: str = "",
    ) -> None:
        super().__init__(message)
        self.current_state = current_state
        self.run_id = run_id
