"""Pipeline registry for built-in and file-based pipeline definitions."""

from __future__ import annotations

from pathlib import Path

import structlog

from ciflow.exceptions import ConfigurationError, CycleError, DefinitionError
from ciflow.pipeline.constants import BUILTIN_PIPELINE_IDS, BUILTIN_REF_PREFIX
from ciflow.pipeline.definition import (
    InputSpec,
    PipelineDefinition,
    StageDefinition,
    StepDefinition,
)

logger = structlog.get_logger()


class PipelineNotFoundError(ConfigurationError):
    """Raised when a pipeline is not found."""


class PipelineRegistry:
    """Registry for pipeline definitions.

    Holds the built-in reusable pipelines and resolves composite step
    references (``builtin:<id>`` or a file path) into inline definitions.

    Attributes:
        pipelines: List of all registered pipelines.
    """

    def __init__(self) -> None:
        self._pipelines: dict[str, PipelineDefinition] = {}
        self._load_builtin()

    @property
    def pipelines(self) -> list[PipelineDefinition]:
        """Get all registered pipelines."""
        return list(self._pipelines.values())

    def get(self, pipeline_id: str) -> PipelineDefinition:
        """Get a registered pipeline by ID.

        Raises:
            PipelineNotFoundError: If pipeline not found.
        """
        if pipeline_id not in self._pipelines:
            msg = f"Pipeline '{pipeline_id}' not found"
            raise PipelineNotFoundError(msg, field=pipeline_id)
        return self._pipelines[pipeline_id]

    def exists(self, pipeline_id: str) -> bool:
        return pipeline_id in self._pipelines

    def add(self, pipeline: PipelineDefinition) -> None:
        """Register a pipeline.

        Raises:
            ValueError: If the ID belongs to a built-in pipeline.
        """
        if pipeline.id in BUILTIN_PIPELINE_IDS and not pipeline.builtin:
            msg = f"Cannot overwrite built-in pipeline: {pipeline.id}"
            raise ValueError(msg)
        self._pipelines[pipeline.id] = pipeline

    def resolve(self, ref: str, *, base_dir: Path | None = None) -> PipelineDefinition:
        """Resolve a composite reference.

        Args:
            ref: ``builtin:<id>``, a registered id, or a YAML file path.
            base_dir: Directory relative paths are resolved against.

        Raises:
            PipelineNotFoundError: If the reference cannot be resolved.
        """
        if ref.startswith(BUILTIN_REF_PREFIX):
            return self.get(ref[len(BUILTIN_REF_PREFIX):])
        if ref in self._pipelines:
            return self._pipelines[ref]

        path = Path(ref)
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        if not path.is_file():
            msg = f"Pipeline reference '{ref}' not found"
            raise PipelineNotFoundError(msg, field=ref)
        return self.load(path)

    def load(self, path: Path) -> PipelineDefinition:
        """Load a pipeline file and inline every composite reference.

        File references are resolved relative to the file that holds them.

        Raises:
            DefinitionError: If a file is missing or invalid.
            CycleError: If pipeline files reference each other in a loop.
            PipelineNotFoundError: If a reference cannot be resolved.
        """
        return self._load(path.resolve(), [])

    def _load(self, path: Path, chain: list[str]) -> PipelineDefinition:
        key = str(path)
        if key in chain:
            raise CycleError([*chain[chain.index(key):], key])

        pipeline = PipelineDefinition.load(path)
        logger.debug("Loaded pipeline", id=pipeline.id, path=key)
        return self._inline(pipeline, path.parent, [*chain, key])

    def _inline(self, pipeline: PipelineDefinition, base_dir: Path, chain: list[str]) -> PipelineDefinition:
        stages = []
        changed = False
        for stage in pipeline.stages:
            steps = []
            for step in stage.steps:
                nested = step.pipeline
                if isinstance(nested, str):
                    nested = self._resolve_ref(nested, base_dir, chain)
                elif isinstance(nested, PipelineDefinition):
                    nested = self._inline(nested, base_dir, chain)
                if nested is not step.pipeline:
                    step = step.model_copy(update={"pipeline": nested})
                    changed = True
                steps.append(step)
            stages.append(stage.model_copy(update={"steps": steps}))
        if not changed:
            return pipeline
        return pipeline.model_copy(update={"stages": stages})

    def _resolve_ref(self, ref: str, base_dir: Path, chain: list[str]) -> PipelineDefinition:
        if ref.startswith(BUILTIN_REF_PREFIX) or ref in self._pipelines:
            return self.resolve(ref)
        path = Path(ref)
        if not path.is_absolute():
            path = base_dir / path
        if not path.is_file():
            msg = f"Pipeline reference '{ref}' not found (looked in {base_dir})"
            raise DefinitionError(msg, source=chain[-1] if chain else None, field=ref)
        return self._load(path.resolve(), chain)

    def _load_builtin(self) -> None:
        """Load built-in pipeline definitions."""
        self._pipelines["node_ci"] = self._create_node_ci_pipeline()
        self._pipelines["docker_publish"] = self._create_docker_publish_pipeline()
        self._pipelines["package_release"] = self._create_package_release_pipeline()

    def _create_node_ci_pipeline(self) -> PipelineDefinition:
        """Install, quality checks and tests, then build."""
        return PipelineDefinition(
            id="node_ci",
            name="Node CI",
            description="Install → Quality / Test → Build",
            builtin=True,
            inputs={
                "run_lint": InputSpec(default=True, description="Run the linter"),
                "run_typecheck": InputSpec(default=True, description="Run the type checker"),
                "run_test": InputSpec(default=True, description="Run the test suite"),
                "run_build": InputSpec(default=True, description="Build the package"),
            },
            stages=[
                StageDefinition(
                    name="install",
                    description="Install dependencies",
                    steps=[StepDefinition(name="install", uses="install-dependencies")],
                ),
                StageDefinition(
                    name="quality",
                    description="Static checks",
                    needs=["install"],
                    parallel=True,
                    steps=[
                        StepDefinition(name="lint", uses="lint", if_="run_lint"),
                        StepDefinition(name="typecheck", uses="typecheck", if_="run_typecheck"),
                    ],
                ),
                StageDefinition(
                    name="test",
                    description="Run tests",
                    needs=["install"],
                    steps=[StepDefinition(name="test", uses="test", if_="run_test")],
                ),
                StageDefinition(
                    name="build",
                    description="Build artifacts",
                    needs=["quality", "test"],
                    if_="run_build",
                    steps=[StepDefinition(name="build", uses="build")],
                ),
            ],
        )

    def _create_docker_publish_pipeline(self) -> PipelineDefinition:
        """Build an image, scan it and optionally push it."""
        return PipelineDefinition(
            id="docker_publish",
            name="Docker Publish",
            description="Build → Scan / Push",
            builtin=True,
            inputs={
                "image": InputSpec(required=True, description="Image reference"),
                "context": InputSpec(default=".", description="Build context"),
                "run_scan": InputSpec(default=True, description="Scan the image"),
                "push_image": InputSpec(default=False, description="Push after build"),
            },
            stages=[
                StageDefinition(
                    name="build",
                    steps=[
                        StepDefinition(
                            name="docker-build",
                            uses="docker-build",
                            with_={"image": "${image}", "context": "${context}"},
                        )
                    ],
                ),
                StageDefinition(
                    name="scan",
                    needs=["build"],
                    if_="run_scan",
                    steps=[
                        StepDefinition(
                            name="security-scan",
                            uses="security-scan",
                            with_={"image": "${image}"},
                        )
                    ],
                ),
                StageDefinition(
                    name="push",
                    needs=["build"],
                    if_="push_image",
                    steps=[
                        StepDefinition(
                            name="docker-push",
                            uses="docker-push",
                            with_={"image": "${image}"},
                            secrets=["REGISTRY_TOKEN"],
                        )
                    ],
                ),
            ],
        )

    def _create_package_release_pipeline(self) -> PipelineDefinition:
        """Verify, then release (or only announce the release on dry runs)."""
        return PipelineDefinition(
            id="package_release",
            name="Package Release",
            description="Verify → Release",
            builtin=True,
            inputs={
                "dry_run": InputSpec(default=True, description="Skip publishing"),
            },
            stages=[
                StageDefinition(
                    name="verify",
                    steps=[
                        StepDefinition(name="install", uses="install-dependencies"),
                        StepDefinition(name="test", uses="test"),
                    ],
                ),
                StageDefinition(
                    name="release",
                    needs=["verify"],
                    steps=[
                        StepDefinition(
                            name="publish",
                            uses="release",
                            if_="!dry_run",
                            secrets=["NPM_TOKEN"],
                        ),
                        StepDefinition(
                            name="announce-dry-run",
                            run="echo 'dry run: release skipped'",
                            if_="dry_run",
                        ),
                    ],
                ),
            ],
        )
