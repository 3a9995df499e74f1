"""Report writer for persisting run results."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from ciflow.paths import RunPaths
    from ciflow.pipeline.results import PipelineResult, StageResult

logger = structlog.get_logger()


class ReportWriter:
    """Writes run results to files in the run directory.

    Files written:
    - runs/<id>/stages.jsonl - One line per finished stage
    - runs/<id>/report.json - Final structured report

    Example:
        >>> writer = ReportWriter(paths)
        >>> writer.write_stage(run_id, stage_result)
        >>> writer.write_run(pipeline_result)
    """

    def __init__(self, paths: RunPaths, *, report_path: Path | None = None) -> None:
        """Initialize the report writer.

        Args:
            paths: RunPaths for the current run.
            report_path: Extra location for a copy of the final report.
        """
        self.paths = paths
        self.report_path = report_path
        self._log = logger.bind(run_id=paths.run_id)

    @property
    def stages_jsonl(self) -> Path:
        return self.paths.stages_jsonl

    @property
    def report_json(self) -> Path:
        return self.paths.report_json

    def _ensure_dir(self) -> None:
        self.paths.run_dir.mkdir(parents=True, exist_ok=True)

    def write_stage(self, run_id: str, result: StageResult) -> None:
        """Append one finished stage to stages.jsonl."""
        self._ensure_dir()
        record = {"run_id": run_id, **result.to_dict()}
        with self.stages_jsonl.open("a") as f:
            f.write(json.dumps(record) + "\n")

        self._log.debug("Wrote stage result", stage=result.stage, status=result.status.value)

    def write_run(self, result: PipelineResult) -> None:
        """Write report.json (overwrites if exists)."""
        self._ensure_dir()
        content = result.to_json()
        self.report_json.write_text(content)

        if self.report_path is not None:
            self.report_path.parent.mkdir(parents=True, exist_ok=True)
            self.report_path.write_text(content)

        self._log.debug(
            "Wrote run report",
            success=result.success,
            duration_ms=result.total_duration_ms,
        )

    def read_stages(self) -> list[dict[str, Any]]:
        """Read all stage records from stages.jsonl."""
        if not self.stages_jsonl.exists():
            return []

        records = []
        for line in self.stages_jsonl.read_text().splitlines():
            if line.strip():
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError as e:
                    self._log.warning("Skipping corrupt stage record", error=str(e))
        return records

    def read_run(self) -> dict[str, Any] | None:
        """Read report.json, or None if the run has not finished."""
        if not self.report_json.exists():
            return None
        return json.loads(self.report_json.read_text())


def summary_lines(result: PipelineResult) -> list[str]:
    """Plain-text summary table of a run for the console."""
    width = max([len(s.stage) for s in result.stages] + [5])
    lines = [f"Pipeline: {result.pipeline_id}  run: {result.run_id}", ""]
    lines.append(f"{'STAGE'.ljust(width)}  {'STATUS':<18}  {'TIME':>8}  DETAIL")
    for stage in result.stages:
        detail = stage.reason.value if stage.reason else ""
        if stage.message:
            detail = f"{detail}: {stage.message}" if detail else stage.message
        seconds = f"{stage.duration_ms / 1000:.1f}s"
        lines.append(f"{stage.stage.ljust(width)}  {stage.status.value:<18}  {seconds:>8}  {detail}")
        for step in stage.steps:
            lines.append(f"{'':<{width}}    - {step.step}: {step.status.value}")

    if result.success:
        outcome = "SUCCESS"
    elif result.cancelled:
        outcome = "CANCELLED"
    else:
        outcome = "FAILED"
    lines.append("")
    lines.append(f"Result: {outcome} in {result.total_duration_ms / 1000:.1f}s")
    return lines
