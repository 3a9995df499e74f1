"""Step executor: runs one step through its capability."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import structlog

from ciflow.capabilities.base import CapabilityRegistry, CapabilityResult
from ciflow.exceptions import (
    CancellationFailure,
    ConfigurationError,
    StepTimeoutError,
    UnresolvedInputError,
)
from ciflow.paths import safe_name, step_log_name
from ciflow.pipeline.constants import OUTPUT_TAIL_CHARS, SHELL_CAPABILITY
from ciflow.pipeline.context import StepContext, format_value, render_mapping, render_text
from ciflow.pipeline.definition import StepDefinition, StepKind
from ciflow.pipeline.results import RunResult, utc_now
from ciflow.pipeline.state import FailureReason, RunStatus

logger = structlog.get_logger()

CompositeRunner = Callable[[StepDefinition, StepContext], RunResult]

SECRET_MASK = "***"


def _tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    return text if len(text) <= limit else text[-limit:]


def _mask(text: str, secrets: Mapping[str, str]) -> str:
    for value in secrets.values():
        if value:
            text = text.replace(value, SECRET_MASK)
    return text


class StepExecutor:
    """Executes atomic steps.

    Side effects belong to the capability resolved from the registry; the
    executor resolves arguments and secrets, enforces the timeout, captures
    output and shapes the RunResult. Composite steps are handed to the
    ``composite_runner`` supplied by the orchestrator.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        *,
        composite_runner: CompositeRunner | None = None,
        timeout_slack: float = 5.0,
    ) -> None:
        """Initialize the executor.

        Args:
            registry: Capability registry.
            composite_runner: Runs nested pipelines for composite steps.
            timeout_slack: Extra seconds granted to a capability to honour
                its own timeout before the executor abandons it.
        """
        self.registry = registry
        self.composite_runner = composite_runner
        self.timeout_slack = timeout_slack

    def execute(self, step: StepDefinition, context: StepContext) -> RunResult:
        """Execute a step.

        Args:
            step: Step definition.
            context: Step context with inputs, secrets and cancellation.

        Returns:
            RunResult for the step.
        """
        log = logger.bind(run_id=context.run_id, stage=context.stage, step=step.name)

        if context.cancelled:
            log.info("Run cancelled, not starting step")
            return RunResult.not_run(
                context.run_id,
                context.stage,
                step.name,
                status=RunStatus.CANCELLED,
                reason=FailureReason.CANCELLED,
                message="Run cancelled before step started",
            )

        if step.kind is StepKind.COMPOSITE:
            if self.composite_runner is None:
                return self._configuration_error(
                    step, context, utc_now(), time.perf_counter(), "No runner for composite steps"
                )
            return self.composite_runner(step, context)

        log.info("Executing step", kind=step.kind.value)
        started_at = utc_now()
        start = time.perf_counter()

        try:
            capability_name, args, env = self._resolve_action(step, context)
            secrets = self._resolve_secrets(step, context)
            capability = self.registry.get(capability_name)
        except (ConfigurationError, UnresolvedInputError) as e:
            log.error("Step configuration error", error=str(e))
            return self._configuration_error(step, context, started_at, start, str(e))

        if context.dry_run:
            log.info("Dry run - skipping step", capability=capability_name)
            return self._shape(
                step,
                context,
                started_at,
                start,
                CapabilityResult(exit_code=0, stdout="(dry run)"),
                secrets,
            )

        timeout = step.timeout_seconds or context.timeout_seconds
        try:
            outcome = self._invoke(
                capability_name, capability, args, secrets, env, context, timeout
            )
        except StepTimeoutError as e:
            log.error("Step timed out", timeout=timeout)
            outcome = CapabilityResult(exit_code=-1, stderr=str(e), timed_out=True)
        except CancellationFailure as e:
            outcome = CapabilityResult(exit_code=-1, stderr=str(e), cancelled=True)
        except Exception as e:
            # Capability raised: treated as a configuration problem, never retried.
            log.error("Capability raised", capability=capability_name, error=str(e))
            return self._configuration_error(step, context, started_at, start, str(e))

        return self._shape(step, context, started_at, start, outcome, secrets)

    def _resolve_action(
        self, step: StepDefinition, context: StepContext
    ) -> tuple[str, dict[str, str], dict[str, str]]:
        args = {
            key: format_value(value)
            for key, value in render_mapping(step.with_, context.inputs).items()
        }
        env = {key: render_text(value, context.inputs) for key, value in step.env.items()}

        if step.kind is StepKind.SHELL:
            args["script"] = render_text(step.run or "", context.inputs)
            return SHELL_CAPABILITY, args, env
        return step.uses or "", args, env

    def _resolve_secrets(self, step: StepDefinition, context: StepContext) -> dict[str, str]:
        secrets: dict[str, str] = {}
        for name in step.secrets:
            value = context.secrets.get(name)
            if value is None:
                msg = f"Secret '{name}' is not available"
                raise ConfigurationError(msg, field=name)
            secrets[name] = value
        return secrets

    def _invoke(
        self,
        capability_name: str,
        capability: Any,
        args: dict[str, str],
        secrets: dict[str, str],
        env: dict[str, str],
        context: StepContext,
        timeout: float | None,
    ) -> CapabilityResult:
        """Invoke the capability on a helper thread and enforce the timeout."""
        box: dict[str, Any] = {}

        def _target() -> None:
            try:
                box["result"] = capability.invoke(
                    capability_name,
                    args,
                    secrets,
                    env=env,
                    cwd=context.cwd,
                    timeout=timeout,
                    cancel_event=context.cancel_event,
                )
            except Exception as e:
                box["error"] = e

        thread = threading.Thread(
            target=_target,
            name=f"ciflow-step-{safe_name(context.stage)}-{safe_name(capability_name)}",
            daemon=True,
        )
        thread.start()
        thread.join(None if timeout is None else timeout + self.timeout_slack)

        if thread.is_alive():
            msg = f"Capability '{capability_name}' did not finish within {timeout}s"
            raise StepTimeoutError(msg, timeout=timeout)
        if "error" in box:
            raise box["error"]
        return box["result"]

    def _shape(
        self,
        step: StepDefinition,
        context: StepContext,
        started_at: str,
        start: float,
        outcome: CapabilityResult,
        secrets: Mapping[str, str],
    ) -> RunResult:
        duration_ms = int((time.perf_counter() - start) * 1000)
        stdout = _mask(outcome.stdout, secrets)
        stderr = _mask(outcome.stderr, secrets)
        log_path = self._write_log(step, context, stdout, stderr)

        if outcome.cancelled:
            status, reason, message = RunStatus.CANCELLED, FailureReason.CANCELLED, "Cancelled"
        elif outcome.timed_out:
            status, reason, message = RunStatus.FAILED, FailureReason.TIMEOUT, "Timed out"
        elif outcome.exit_code != 0:
            status, reason = RunStatus.FAILED, FailureReason.EXIT_CODE
            message = f"Exited with code {outcome.exit_code}"
        else:
            status, reason, message = RunStatus.SUCCEEDED, None, ""

        logger.info(
            "Step finished",
            run_id=context.run_id,
            stage=context.stage,
            step=step.name,
            status=status.value,
            exit_code=outcome.exit_code,
            duration_ms=duration_ms,
        )

        return RunResult(
            run_id=context.run_id,
            stage=context.stage,
            step=step.name,
            status=status,
            exit_code=outcome.exit_code,
            reason=reason,
            message=message,
            started_at=started_at,
            finished_at=utc_now(),
            duration_ms=duration_ms,
            stdout_tail=_tail(stdout),
            stderr_tail=_tail(stderr),
            log_path=str(log_path) if log_path else None,
        )

    def _configuration_error(
        self,
        step: StepDefinition,
        context: StepContext,
        started_at: str,
        start: float,
        message: str,
    ) -> RunResult:
        return RunResult(
            run_id=context.run_id,
            stage=context.stage,
            step=step.name,
            status=RunStatus.FAILED,
            reason=FailureReason.CONFIGURATION_ERROR,
            message=message,
            started_at=started_at,
            finished_at=utc_now(),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

    def _write_log(
        self, step: StepDefinition, context: StepContext, stdout: str, stderr: str
    ) -> Path | None:
        if context.logs_dir is None:
            return None
        path = context.logs_dir / step_log_name(context.stage, step.name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("w") as f:
                f.write(stdout)
                if stderr:
                    f.write("\n--- stderr ---\n")
                    f.write(stderr)
        except OSError as e:
            logger.warning("Failed to write step log", path=str(path), error=str(e))
            return None
        return path

