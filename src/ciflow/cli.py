"""CLI interface for the ciflow orchestrator."""

from __future__ import annotations

import json
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Any

import structlog
import typer

from ciflow import __version__
from ciflow.capabilities import CapabilityRegistry
from ciflow.config import CiflowConfig, CiflowSettings, load_config
from ciflow.exceptions import ConfigurationError
from ciflow.log import configure_logging
from ciflow.paths import RunPaths
from ciflow.pipeline import (
    EnvSecretProvider,
    PipelineDefinition,
    PipelineOrchestrator,
    PipelineRegistry,
    StageGraph,
)
from ciflow.pipeline.constants import BUILTIN_REF_PREFIX
from ciflow.pipeline.context import parse_input_value
from ciflow.report import ReportWriter, summary_lines

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEFINITION_ERROR = 2

app = typer.Typer(
    name="ciflow",
    help="Config-driven CI pipeline orchestrator",
    no_args_is_help=True,
)

pipelines_app = typer.Typer(
    name="pipelines",
    help="Built-in reusable pipelines",
    no_args_is_help=True,
)
app.add_typer(pipelines_app, name="pipelines")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"ciflow version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """ciflow - run CI pipelines described in YAML."""
    settings = CiflowSettings()
    configure_logging(settings.log_level or "info", settings.log_format or "console")


@contextmanager
def _termination_signals(orchestrator: PipelineOrchestrator) -> Iterator[None]:
    """Turn SIGTERM/SIGINT into an orchestrator cancellation."""
    old_term = signal.getsignal(signal.SIGTERM)
    old_int = signal.getsignal(signal.SIGINT)

    def _handler(signum: int, frame: Any) -> None:  # noqa: ARG001
        orchestrator.cancel(f"received signal {signum}")

    try:
        signal.signal(signal.SIGTERM, _handler)
        signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # Not in the main thread; run without signal handling.
        yield
        return

    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, old_term)
        signal.signal(signal.SIGINT, old_int)


def _parse_inputs(values: list[str] | None) -> dict[str, Any]:
    inputs: dict[str, Any] = {}
    for item in values or []:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            msg = f"Expected KEY=VALUE, got '{item}'"
            raise typer.BadParameter(msg, param_hint="--input")
        inputs[key.strip()] = parse_input_value(raw)
    return inputs


def _load_pipeline(registry: PipelineRegistry, ref: str) -> PipelineDefinition:
    if ref.startswith(BUILTIN_REF_PREFIX):
        return registry.resolve(ref)
    return registry.load(Path(ref))


def _check_pipeline(pipeline: PipelineDefinition) -> StageGraph:
    """Build the graph and check references, including inline nested pipelines."""
    graph = StageGraph.from_pipeline(pipeline)
    pipeline.validate_references()
    for stage in pipeline.stages:
        for step in stage.steps:
            if isinstance(step.pipeline, PipelineDefinition):
                _check_pipeline(step.pipeline)
    return graph


def _definition_error(e: ConfigurationError) -> typer.Exit:
    location = f" ({e.source})" if e.source else ""
    typer.echo(f"Error{location}: {e}", err=True)
    return typer.Exit(EXIT_DEFINITION_ERROR)


@app.command()
def run(
    pipeline_file: Annotated[
        str,
        typer.Argument(help="Pipeline YAML file, or builtin:<id>"),
    ],
    inputs: Annotated[
        list[str] | None,
        typer.Option(
            "--input",
            "-i",
            help="Pipeline input as KEY=VALUE (repeatable)",
        ),
    ] = None,
    concurrency: Annotated[
        int | None,
        typer.Option(
            "--concurrency",
            "-j",
            min=1,
            help="Maximum stages running at once",
        ),
    ] = None,
    fail_fast: Annotated[
        bool,
        typer.Option(
            "--fail-fast",
            help="Cancel the run on the first stage failure",
        ),
    ] = False,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to ciflow.yaml config file",
            exists=True,
            dir_okay=False,
            resolve_path=True,
        ),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            help="Walk the pipeline without invoking any capability",
        ),
    ] = False,
    report: Annotated[
        Path | None,
        typer.Option(
            "--report",
            help="Also write the JSON report to this path",
        ),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Print the report as JSON instead of a summary",
        ),
    ] = False,
) -> None:
    """Run a pipeline.

    Exit code 0 on success, 1 if any stage failed or the run was cancelled,
    2 if the pipeline definition or configuration is invalid.
    """
    parsed_inputs = _parse_inputs(inputs)

    try:
        cfg = load_config(config)
    except ConfigurationError as e:
        raise _definition_error(e) from e
    configure_logging(cfg.logging.level, cfg.logging.format)

    pipeline_registry = PipelineRegistry()
    try:
        pipeline = _load_pipeline(pipeline_registry, pipeline_file)
        _check_pipeline(pipeline)
    except ConfigurationError as e:
        raise _definition_error(e) from e

    paths = RunPaths.create_new(cfg.run.runs_dir)
    orchestrator = _build_orchestrator(cfg, paths, pipeline_registry, report, dry_run)

    logger.info("Run started", run_id=paths.run_id, pipeline_id=pipeline.id)
    try:
        with _termination_signals(orchestrator):
            result = orchestrator.run(
                pipeline,
                parsed_inputs,
                concurrency_limit=concurrency or cfg.run.concurrency,
                fail_fast=fail_fast or cfg.run.fail_fast,
            )
    except ConfigurationError as e:
        raise _definition_error(e) from e

    if json_output:
        typer.echo(result.to_json())
    else:
        for line in summary_lines(result):
            typer.echo(line)
        typer.echo(f"Report: {paths.report_json}")

    raise typer.Exit(EXIT_OK if result.success else EXIT_FAILED)


def _build_orchestrator(
    cfg: CiflowConfig,
    paths: RunPaths,
    pipeline_registry: PipelineRegistry,
    report: Path | None,
    dry_run: bool,
) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        CapabilityRegistry.from_config(cfg),
        secrets=EnvSecretProvider(
            prefix=cfg.secrets.env_prefix,
            allowed=cfg.secrets.allowed,
        ),
        paths=paths,
        report_writer=ReportWriter(paths, report_path=report),
        pipeline_registry=pipeline_registry,
        step_timeout=cfg.run.step_timeout,
        cancel_grace_seconds=cfg.run.cancel_grace_seconds,
        cwd=cfg.run.cwd,
        dry_run=dry_run,
    )


@app.command()
def validate(
    pipeline_file: Annotated[
        str,
        typer.Argument(help="Pipeline YAML file, or builtin:<id>"),
    ],
) -> None:
    """Validate a pipeline without running it (exit 0 or 2)."""
    try:
        pipeline = _load_pipeline(PipelineRegistry(), pipeline_file)
        graph = _check_pipeline(pipeline)
    except ConfigurationError as e:
        raise _definition_error(e) from e

    steps = sum(len(s.steps) for s in pipeline.stages)
    typer.echo(f"OK: {pipeline.id} ({len(graph)} stages, {steps} steps)")


@app.command()
def graph(
    pipeline_file: Annotated[
        str,
        typer.Argument(help="Pipeline YAML file, or builtin:<id>"),
    ],
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Output as JSON",
        ),
    ] = False,
) -> None:
    """Show the stage graph as dependency levels."""
    try:
        pipeline = _load_pipeline(PipelineRegistry(), pipeline_file)
        stage_graph = _check_pipeline(pipeline)
    except ConfigurationError as e:
        raise _definition_error(e) from e

    levels = stage_graph.levels()
    if json_output:
        output = {
            "pipeline": pipeline.id,
            "levels": levels,
            "dependencies": {name: stage_graph.dependencies(name) for name in stage_graph.names},
        }
        typer.echo(json.dumps(output, indent=2))
        return

    typer.echo(f"Pipeline: {pipeline.display_name}")
    for i, level in enumerate(levels):
        typer.echo(f"  Level {i}:")
        for name in level:
            deps = stage_graph.dependencies(name)
            suffix = f"  <- {', '.join(deps)}" if deps else ""
            typer.echo(f"    {name}{suffix}")


@pipelines_app.command("list")
def pipelines_list(
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Output as JSON",
        ),
    ] = False,
) -> None:
    """List built-in pipelines."""
    pipelines = PipelineRegistry().pipelines

    if json_output:
        output = [
            {
                "id": p.id,
                "name": p.name,
                "description": p.description,
                "inputs": list(p.inputs),
                "stage_count": len(p.stages),
            }
            for p in pipelines
        ]
        typer.echo(json.dumps(output, indent=2))
    else:
        typer.echo("Available pipelines:")
        typer.echo("")
        for p in pipelines:
            typer.echo(f"  {p.id:20} {p.name}")
            if p.description:
                typer.echo(f"    {p.description}")
            typer.echo(f"    Stages: {len(p.stages)}  Reference: {BUILTIN_REF_PREFIX}{p.id}")
            typer.echo("")


@pipelines_app.command("show")
def pipelines_show(
    pipeline_id: Annotated[
        str,
        typer.Argument(help="Pipeline ID to show"),
    ],
    yaml_output: Annotated[
        bool,
        typer.Option(
            "--yaml",
            help="Output as pipeline YAML",
        ),
    ] = False,
) -> None:
    """Show details of a built-in pipeline."""
    try:
        pipeline = PipelineRegistry().get(pipeline_id)
    except ConfigurationError:
        typer.echo(f"Pipeline not found: {pipeline_id}", err=True)
        raise typer.Exit(EXIT_FAILED) from None

    if yaml_output:
        typer.echo(pipeline.to_yaml())
        return

    typer.echo(f"Pipeline: {pipeline.id}")
    typer.echo(f"Name: {pipeline.name}")
    if pipeline.description:
        typer.echo(f"Description: {pipeline.description}")
    if pipeline.inputs:
        typer.echo("")
        typer.echo("Inputs:")
        for name, spec in pipeline.inputs.items():
            default = "" if spec.default is None else f" (default: {spec.default})"
            typer.echo(f"  {name}{default}  {spec.description}")
    typer.echo("")
    typer.echo("Stages:")
    for i, stage in enumerate(pipeline.stages, 1):
        needs = f" needs {', '.join(stage.needs)}" if stage.needs else ""
        gate = f" if {stage.if_}" if stage.if_ else ""
        typer.echo(f"  {i}. {stage.name}{needs}{gate}")
        for step in stage.steps:
            action = step.uses or (f"pipeline {step.pipeline}" if step.pipeline else "run")
            step_gate = f" if {step.if_}" if step.if_ else ""
            typer.echo(f"     - {step.name}: {action}{step_gate}")


if __name__ == "__main__":
    app()
