"""Pipeline orchestrator - main execution engine."""

from __future__ import annotations

import dataclasses
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from ciflow.exceptions import ConfigurationError, StateError, UnresolvedInputError
from ciflow.paths import generate_run_id, safe_name
from ciflow.pipeline.conditions import evaluate
from ciflow.pipeline.constants import (
    DEFAULT_CANCEL_GRACE_SECONDS,
    DEFAULT_STEP_TIMEOUT,
    MAX_COMPOSITE_DEPTH,
)
from ciflow.pipeline.context import (
    SecretProvider,
    StaticSecretProvider,
    StepContext,
    render_mapping,
    resolve_inputs,
)
from ciflow.pipeline.definition import PipelineDefinition, StageDefinition, StepDefinition
from ciflow.pipeline.executor import StepExecutor
from ciflow.pipeline.graph import StageGraph
from ciflow.pipeline.results import (
    PipelineResult,
    ResultStore,
    RunResult,
    StageResult,
    utc_now,
)
from ciflow.pipeline.state import FailureReason, RunProgress, RunStatus

if TYPE_CHECKING:
    from ciflow.capabilities.base import CapabilityRegistry
    from ciflow.paths import RunPaths
    from ciflow.pipeline.registry import PipelineRegistry
    from ciflow.report import ReportWriter

logger = structlog.get_logger()


@dataclass
class StageOutcome:
    """What a stage worker hands back to the coordinating loop."""

    stage: str
    status: RunStatus
    reason: FailureReason | None = None
    message: str = ""
    steps: list[RunResult] = field(default_factory=list)
    started_at: str | None = None
    finished_at: str | None = None
    duration_ms: int = 0

    def to_stage_result(self) -> StageResult:
        return StageResult(
            stage=self.stage,
            status=self.status,
            reason=self.reason,
            message=self.message,
            started_at=self.started_at,
            finished_at=self.finished_at,
            duration_ms=self.duration_ms,
            steps=tuple(self.steps),
        )


@dataclass
class _RunState:
    """Mutable bookkeeping for one (possibly nested) run.

    Only the coordinating loop reads or writes it.
    """

    run_id: str
    pipeline: PipelineDefinition
    graph: StageGraph
    context: StepContext
    progress: RunProgress
    store: ResultStore = field(default_factory=ResultStore)
    stage_results: dict[str, StageResult] = field(default_factory=dict)
    running: dict[Future[StageOutcome], str] = field(default_factory=dict)
    running_at_cancel: set[str] = field(default_factory=set)
    cancel_seen_at: float | None = None
    abandoned: bool = False


class PipelineOrchestrator:
    """Runs pipeline definitions.

    Walks the stage graph in rounds: compute the ready set, dispatch up to
    ``concurrency_limit`` stages onto a worker pool in declaration order,
    wait for at least one to finish, record its results, repeat until every
    stage is terminal.

    Example:
        >>> from ciflow.capabilities import CapabilityRegistry, FakeCapability
        >>> registry = CapabilityRegistry()
        >>> registry.register("shell", FakeCapability())
        >>> orchestrator = PipelineOrchestrator(registry)
        >>> result = orchestrator.run(pipeline, {"run_lint": True})  # doctest: +SKIP
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        *,
        secrets: SecretProvider | None = None,
        paths: RunPaths | None = None,
        report_writer: ReportWriter | None = None,
        pipeline_registry: PipelineRegistry | None = None,
        step_timeout: int | None = DEFAULT_STEP_TIMEOUT,
        cancel_grace_seconds: float = DEFAULT_CANCEL_GRACE_SECONDS,
        cwd: Path | None = None,
        dry_run: bool = False,
        poll_interval: float = 0.05,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            registry: Capability registry used by the step executor.
            secrets: Secret provider threaded into every step.
            paths: Run paths; enables step logs.
            report_writer: Receives stage results as they finish.
            pipeline_registry: Resolves composite references such as ``builtin:node_ci``.
            step_timeout: Default per-step timeout in seconds.
            cancel_grace_seconds: How long running stages get after cancellation.
            cwd: Working directory for capabilities.
            dry_run: Skip capability invocation.
            poll_interval: How often the loop checks for cancellation.
        """
        self.registry = registry
        self.secrets = secrets or StaticSecretProvider()
        self.paths = paths
        self.report_writer = report_writer
        self.pipeline_registry = pipeline_registry
        self.step_timeout = step_timeout
        self.cancel_grace_seconds = cancel_grace_seconds
        self.cwd = cwd
        self.dry_run = dry_run
        self.poll_interval = poll_interval
        self.executor = StepExecutor(registry, composite_runner=self._run_composite)
        self._cancel_event = threading.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self, reason: str = "abort requested") -> None:
        """Raise the cancellation signal of the current run.

        Each top-level ``run`` starts with a fresh signal.
        """
        if not self._cancel_event.is_set():
            logger.warning("Cancelling run", reason=reason)
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def prepare(self, pipeline: PipelineDefinition) -> StageGraph:
        """Validate a pipeline and build its stage graph.

        Raises:
            ConfigurationError: On cycles, unknown dependencies, or conditions
                that reference undeclared inputs.
        """
        graph = StageGraph.from_pipeline(pipeline)
        pipeline.validate_references()
        return graph

    def run(
        self,
        pipeline: PipelineDefinition,
        inputs: dict[str, Any] | None = None,
        concurrency_limit: int | None = None,
        fail_fast: bool = False,
        *,
        run_id: str | None = None,
    ) -> PipelineResult:
        """Run a pipeline.

        Args:
            pipeline: Pipeline definition to execute.
            inputs: Supplied inputs, overlaid on declared defaults.
            concurrency_limit: Maximum stages running at once (None for no limit).
            fail_fast: Cancel the run as soon as any stage fails.
            run_id: Explicit run identifier.

        Returns:
            PipelineResult with per-stage and per-step results.

        Raises:
            ConfigurationError: If the pipeline is invalid; nothing is executed.
        """
        if concurrency_limit is not None and concurrency_limit < 1:
            msg = f"Concurrency limit must be at least 1, got {concurrency_limit}"
            raise ConfigurationError(msg, field="concurrency")

        graph = self.prepare(pipeline)
        resolved = resolve_inputs(pipeline, inputs)
        # Cancellation is scoped to one run; nested runs share this event.
        self._cancel_event = threading.Event()
        run_id = run_id or (self.paths.run_id if self.paths else generate_run_id())

        context = StepContext(
            run_id=run_id,
            stage="",
            inputs=resolved,
            secrets=self.secrets,
            cancel_event=self._cancel_event,
            logs_dir=self.paths.logs_dir if self.paths else None,
            cwd=self.cwd,
            timeout_seconds=self.step_timeout,
            dry_run=self.dry_run,
        )
        result = self._run(pipeline, graph, context, concurrency_limit, fail_fast, top_level=True)

        if self.report_writer is not None:
            self.report_writer.write_run(result)
        return result

    # ------------------------------------------------------------------
    # Coordinating loop
    # ------------------------------------------------------------------

    def _run(
        self,
        pipeline: PipelineDefinition,
        graph: StageGraph,
        context: StepContext,
        concurrency_limit: int | None,
        fail_fast: bool,
        *,
        top_level: bool = False,
    ) -> PipelineResult:
        log = logger.bind(run_id=context.run_id, pipeline_id=pipeline.id)
        log.info(
            "Starting pipeline run",
            stages=len(graph),
            concurrency=concurrency_limit,
            fail_fast=fail_fast,
        )

        started_at = utc_now()
        start = time.perf_counter()
        state = _RunState(
            run_id=context.run_id,
            pipeline=pipeline,
            graph=graph,
            context=context,
            progress=RunProgress(graph.names, run_id=context.run_id),
        )
        max_workers = concurrency_limit or max(1, len(graph))
        pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=f"ciflow-{safe_name(pipeline.id)}",
        )

        try:
            while True:
                changed = self._propagate_skips(state, top_level)

                if context.cancel_event.is_set():
                    changed |= self._observe_cancellation(state, top_level)
                else:
                    changed |= self._dispatch(state, pool, max_workers, top_level)

                if not state.running:
                    if state.progress.is_terminal():
                        break
                    if not changed:
                        msg = f"No runnable stages left in pipeline '{pipeline.id}'"
                        raise StateError(msg, run_id=context.run_id)
                    continue

                done, _ = wait(
                    list(state.running),
                    timeout=self.poll_interval,
                    return_when=FIRST_COMPLETED,
                )
                for future in done:
                    self._collect(state, future, fail_fast, top_level)

                if state.cancel_seen_at is not None and state.running:
                    elapsed = time.monotonic() - state.cancel_seen_at
                    if elapsed >= self.cancel_grace_seconds:
                        self._abandon_running(state, top_level)
        finally:
            pool.shutdown(wait=not state.abandoned, cancel_futures=True)

        stages = [state.stage_results[name] for name in graph.names]
        cancelled = context.cancel_event.is_set()
        success = not cancelled and not any(s.status is RunStatus.FAILED for s in stages)
        result = PipelineResult(
            run_id=context.run_id,
            pipeline_id=pipeline.id,
            success=success,
            cancelled=cancelled,
            stages=stages,
            inputs=dict(context.inputs),
            started_at=started_at,
            finished_at=utc_now(),
            total_duration_ms=int((time.perf_counter() - start) * 1000),
        )

        log.info(
            "Pipeline run completed",
            success=result.success,
            cancelled=cancelled,
            failed=result.failed_stages,
            duration_ms=result.total_duration_ms,
        )
        return result

    def _dispatch(
        self,
        state: _RunState,
        pool: ThreadPoolExecutor,
        max_workers: int,
        top_level: bool,
    ) -> bool:
        """Start ready stages in declaration order up to the worker limit."""
        changed = False
        progress = state.progress
        ready = state.graph.ready_stages(progress.completed, progress.failed, progress.started)

        for name in ready:
            if len(state.running) >= max_workers:
                break
            stage = state.graph.definition(name)
            if stage is None:
                msg = f"Stage '{name}' has no definition"
                raise StateError(msg, run_id=state.run_id)

            gate = self._stage_gate(stage, state.context.inputs)
            if gate is not None:
                status, reason, message = gate
                self._skip_stage(state, stage, status, reason, message, top_level)
                changed = True
                continue

            progress.transition(name, RunStatus.RUNNING)
            logger.info("Dispatching stage", run_id=state.run_id, stage=name)
            future = pool.submit(self._run_stage, stage, state.context.for_stage(name))
            state.running[future] = name
            changed = True
        return changed

    def _collect(
        self,
        state: _RunState,
        future: Future[StageOutcome],
        fail_fast: bool,
        top_level: bool,
    ) -> None:
        """Record a finished stage. Single ordering point for results."""
        name = state.running.pop(future)
        try:
            outcome = future.result()
        except Exception as e:
            logger.error("Stage worker crashed", run_id=state.run_id, stage=name, error=str(e))
            outcome = StageOutcome(
                stage=name,
                status=RunStatus.FAILED,
                reason=FailureReason.CONFIGURATION_ERROR,
                message=str(e),
                finished_at=utc_now(),
            )

        if name in state.running_at_cancel and outcome.status is RunStatus.SUCCEEDED:
            outcome.status = RunStatus.CANCELLED
            outcome.reason = FailureReason.CANCELLED
            outcome.message = "Run cancelled while stage was running"

        self._finish_stage(state, outcome, top_level)

        if outcome.status is RunStatus.FAILED and fail_fast and not state.context.cancel_event.is_set():
            logger.warning("Fail-fast triggered", run_id=state.run_id, stage=name)
            state.context.cancel_event.set()

    def _finish_stage(self, state: _RunState, outcome: StageOutcome, top_level: bool) -> None:
        state.progress.transition(outcome.stage, outcome.status)
        for step_result in outcome.steps:
            state.store.record(step_result)
        stage_result = outcome.to_stage_result()
        state.stage_results[outcome.stage] = stage_result

        logger.info(
            "Stage finished",
            run_id=state.run_id,
            stage=outcome.stage,
            status=outcome.status.value,
            reason=outcome.reason.value if outcome.reason else None,
            duration_ms=outcome.duration_ms,
        )
        if top_level and self.report_writer is not None:
            self.report_writer.write_stage(state.run_id, stage_result)

    def _skip_stage(
        self,
        state: _RunState,
        stage: StageDefinition,
        status: RunStatus,
        reason: FailureReason,
        message: str,
        top_level: bool,
    ) -> None:
        state.progress.transition(stage.name, status)
        now = utc_now()
        steps = []
        for step in stage.steps:
            result = RunResult.not_run(
                state.run_id,
                stage.name,
                step.name,
                status=RunStatus.SKIPPED,
                reason=reason,
                message=message,
            )
            state.store.record(result)
            steps.append(result)

        stage_result = StageResult(
            stage=stage.name,
            status=status,
            reason=reason,
            message=message,
            started_at=now,
            finished_at=now,
            steps=tuple(steps),
        )
        state.stage_results[stage.name] = stage_result
        logger.info(
            "Stage skipped",
            run_id=state.run_id,
            stage=stage.name,
            status=status.value,
            reason=reason.value,
        )
        if top_level and self.report_writer is not None:
            self.report_writer.write_stage(state.run_id, stage_result)

    def _propagate_skips(self, state: _RunState, top_level: bool) -> bool:
        """Skip pending stages whose dependencies can no longer all succeed."""
        changed = False
        progress = state.progress
        again = True
        while again:
            again = False
            for name in progress.pending:
                deps = state.graph.dependencies(name)
                statuses = [progress.status(d) for d in deps]
                if any(s in (RunStatus.FAILED, RunStatus.CANCELLED) for s in statuses):
                    failed = [d for d, s in zip(deps, statuses) if s in (RunStatus.FAILED, RunStatus.CANCELLED)]
                    reason, message = FailureReason.DEPENDENCY_FAILED, f"Dependency failed: {', '.join(failed)}"
                elif any(s.is_skip for s in statuses):
                    skipped = [d for d, s in zip(deps, statuses) if s.is_skip]
                    reason, message = FailureReason.DEPENDENCY_SKIPPED, f"Dependency skipped: {', '.join(skipped)}"
                else:
                    continue
                stage = state.graph.definition(name)
                if stage is None:
                    continue
                self._skip_stage(state, stage, RunStatus.SKIPPED, reason, message, top_level)
                changed = again = True
        return changed

    def _observe_cancellation(self, state: _RunState, top_level: bool) -> bool:
        """Stop dispatching: pending stages are skipped, running ones are tracked."""
        changed = False
        if state.cancel_seen_at is None:
            state.cancel_seen_at = time.monotonic()
            state.running_at_cancel = set(state.running.values())
            logger.warning(
                "Cancellation observed",
                run_id=state.run_id,
                running=sorted(state.running_at_cancel),
            )
        for name in state.progress.pending:
            stage = state.graph.definition(name)
            if stage is None:
                continue
            self._skip_stage(
                state,
                stage,
                RunStatus.SKIPPED,
                FailureReason.CANCELLED,
                "Run cancelled before stage started",
                top_level,
            )
            changed = True
        return changed

    def _abandon_running(self, state: _RunState, top_level: bool) -> None:
        """Report stages that outlived the grace period as cancelled."""
        for future, name in list(state.running.items()):
            logger.warning("Abandoning stage after grace period", run_id=state.run_id, stage=name)
            future.cancel()
            self._finish_stage(
                state,
                StageOutcome(
                    stage=name,
                    status=RunStatus.CANCELLED,
                    reason=FailureReason.CANCELLED,
                    message="Did not stop within the cancellation grace period",
                    finished_at=utc_now(),
                ),
                top_level,
            )
        state.running.clear()
        state.abandoned = True

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    @staticmethod
    def _stage_gate(
        stage: StageDefinition, inputs: dict[str, Any]
    ) -> tuple[RunStatus, FailureReason, str] | None:
        """Evaluate a stage condition; None means the stage runs."""
        condition = stage.condition
        if condition is None:
            return None
        try:
            if evaluate(condition, inputs):
                return None
        except UnresolvedInputError as e:
            logger.error("Stage condition unresolved", stage=stage.name, error=str(e))
            return RunStatus.SKIPPED_WITH_ERROR, FailureReason.CONDITION_ERROR, str(e)
        return RunStatus.SKIPPED, FailureReason.CONDITION_FALSE, f"Condition false: {stage.if_}"

    # ------------------------------------------------------------------
    # Stage workers
    # ------------------------------------------------------------------

    def _run_stage(self, stage: StageDefinition, context: StepContext) -> StageOutcome:
        """Run all steps of a stage. Executed on a worker thread."""
        log = logger.bind(run_id=context.run_id, stage=stage.name)
        log.info("Stage started", steps=len(stage.steps), parallel=stage.parallel)
        started_at = utc_now()
        start = time.perf_counter()

        if stage.parallel:
            results = self._run_steps_parallel(stage, context)
        else:
            results = self._run_steps_sequential(stage, context)

        outcome = StageOutcome(
            stage=stage.name,
            status=RunStatus.SUCCEEDED,
            steps=results,
            started_at=started_at,
            finished_at=utc_now(),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

        by_name = {s.name: s for s in stage.steps}
        hard_failures = [
            r for r in results
            if r.status is RunStatus.FAILED and not by_name[r.step].continue_on_error
        ]
        soft_failures = [
            r for r in results
            if r.status is RunStatus.FAILED and by_name[r.step].continue_on_error
        ]

        if any(r.status is RunStatus.CANCELLED for r in results):
            outcome.status = RunStatus.CANCELLED
            outcome.reason = FailureReason.CANCELLED
            outcome.message = "Stage cancelled"
        elif hard_failures:
            first = hard_failures[0]
            outcome.status = RunStatus.FAILED
            outcome.reason = first.reason
            outcome.message = f"Step '{first.step}' failed: {first.message}"
        elif soft_failures:
            outcome.reason = FailureReason.CONTINUED_ON_ERROR
            outcome.message = "Failed steps ignored: " + ", ".join(r.step for r in soft_failures)
        return outcome

    def _run_steps_sequential(self, stage: StageDefinition, context: StepContext) -> list[RunResult]:
        results: list[RunResult] = []
        halted_by: str | None = None
        for step in stage.steps:
            if halted_by is not None:
                results.append(
                    RunResult.not_run(
                        context.run_id,
                        stage.name,
                        step.name,
                        status=RunStatus.SKIPPED,
                        reason=FailureReason.DEPENDENCY_FAILED,
                        message=f"Previous step '{halted_by}' did not succeed",
                    )
                )
                continue

            result = self._run_step(step, context)
            results.append(result)
            if result.status is RunStatus.CANCELLED or (
                result.status is RunStatus.FAILED and not step.continue_on_error
            ):
                halted_by = step.name
        return results

    def _run_steps_parallel(self, stage: StageDefinition, context: StepContext) -> list[RunResult]:
        with ThreadPoolExecutor(
            max_workers=len(stage.steps),
            thread_name_prefix=f"ciflow-{safe_name(stage.name)}",
        ) as pool:
            futures = [pool.submit(self._run_step, step, context) for step in stage.steps]
            return [f.result() for f in futures]

    def _run_step(self, step: StepDefinition, context: StepContext) -> RunResult:
        """Gate a step on its condition, then hand it to the executor."""
        condition = step.condition
        if condition is not None:
            try:
                allowed = evaluate(condition, context.inputs)
            except UnresolvedInputError as e:
                logger.error("Step condition unresolved", stage=context.stage, step=step.name, error=str(e))
                return RunResult.not_run(
                    context.run_id,
                    context.stage,
                    step.name,
                    status=RunStatus.SKIPPED_WITH_ERROR,
                    reason=FailureReason.CONDITION_ERROR,
                    message=str(e),
                )
            if not allowed:
                logger.info("Step skipped by condition", stage=context.stage, step=step.name)
                return RunResult.not_run(
                    context.run_id,
                    context.stage,
                    step.name,
                    status=RunStatus.SKIPPED,
                    reason=FailureReason.CONDITION_FALSE,
                    message=f"Condition false: {step.if_}",
                )

        result = self.executor.execute(step, context)
        if result.status is RunStatus.FAILED and step.continue_on_error:
            result = dataclasses.replace(result, message=f"{result.message} (continue-on-error)")
        return result

    # ------------------------------------------------------------------
    # Composite steps
    # ------------------------------------------------------------------

    def _run_composite(self, step: StepDefinition, context: StepContext) -> RunResult:
        """Run a nested pipeline as one step."""
        started_at = utc_now()
        start = time.perf_counter()
        log = logger.bind(run_id=context.run_id, stage=context.stage, step=step.name)

        def _failed(message: str) -> RunResult:
            log.error("Composite step configuration error", error=message)
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

        if context.depth >= MAX_COMPOSITE_DEPTH:
            return _failed(f"Composite nesting deeper than {MAX_COMPOSITE_DEPTH}")

        try:
            nested = self._resolve_nested(step)
            graph = self.prepare(nested)
            nested_inputs = resolve_inputs(nested, render_mapping(step.with_, context.inputs))
        except (ConfigurationError, UnresolvedInputError) as e:
            return _failed(str(e))

        nested_context = StepContext(
            run_id=f"{context.run_id}.{safe_name(context.stage)}.{safe_name(step.name)}",
            stage="",
            inputs=nested_inputs,
            secrets=context.secrets,
            cancel_event=context.cancel_event,
            logs_dir=(
                context.logs_dir / safe_name(context.stage) / safe_name(step.name)
                if context.logs_dir
                else None
            ),
            cwd=context.cwd,
            timeout_seconds=context.timeout_seconds,
            dry_run=context.dry_run,
            depth=context.depth + 1,
        )
        log.info("Running nested pipeline", pipeline_id=nested.id)
        nested_result = self._run(nested, graph, nested_context, None, False)

        summary = "\n".join(
            f"{s.stage}: {s.status.value}" + (f" ({s.reason.value})" if s.reason else "")
            for s in nested_result.stages
        )
        if nested_result.success:
            status, reason, message = RunStatus.SUCCEEDED, None, ""
        elif nested_result.cancelled and not nested_result.failed_stages:
            status, reason, message = RunStatus.CANCELLED, FailureReason.CANCELLED, "Nested pipeline cancelled"
        else:
            first = nested_result.get_stage(nested_result.failed_stages[0]) if nested_result.failed_stages else None
            status = RunStatus.FAILED
            reason = first.reason if first and first.reason else FailureReason.EXIT_CODE
            message = f"Nested pipeline '{nested.id}' failed at: {', '.join(nested_result.failed_stages)}"

        return RunResult(
            run_id=context.run_id,
            stage=context.stage,
            step=step.name,
            status=status,
            exit_code=0 if status is RunStatus.SUCCEEDED else 1,
            reason=reason,
            message=message,
            started_at=started_at,
            finished_at=utc_now(),
            duration_ms=int((time.perf_counter() - start) * 1000),
            stdout_tail=summary,
        )

    def _resolve_nested(self, step: StepDefinition) -> PipelineDefinition:
        if isinstance(step.pipeline, PipelineDefinition):
            return step.pipeline
        if self.pipeline_registry is None:
            msg = f"Cannot resolve pipeline reference '{step.pipeline}' without a registry"
            raise ConfigurationError(msg, field=step.name)
        return self.pipeline_registry.resolve(str(step.pipeline))
