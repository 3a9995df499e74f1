"""Stage dependency graph."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Iterator, Mapping

import structlog

from ciflow.exceptions import CycleError, DuplicateStageError, UnknownDependencyError
from ciflow.pipeline.definition import PipelineDefinition, StageDefinition
from ciflow.pipeline.state import RunStatus

logger = structlog.get_logger()


class StageGraph:
    """DAG of stages keyed by name.

    Every mutation is atomic: when ``add_stage`` or ``add_dependency``
    raises, the graph is left exactly as it was. Iteration and every query
    that returns several stages use insertion order, so scheduling is
    reproducible.

    Example:
        >>> graph = StageGraph()
        >>> graph.add_stage("quality")
        >>> graph.add_stage("test")
        >>> graph.add_stage("build", ["quality", "test"])
        >>> graph.ready_stages(completed=set(), failed=set())
        ['quality', 'test']
    """

    def __init__(self) -> None:
        self._deps: dict[str, list[str]] = {}
        self._definitions: dict[str, StageDefinition] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._deps

    def __iter__(self) -> Iterator[str]:
        return iter(self._deps)

    def __len__(self) -> int:
        return len(self._deps)

    @property
    def names(self) -> list[str]:
        """Stage names in insertion order."""
        return list(self._deps)

    def definition(self, name: str) -> StageDefinition | None:
        """Definition registered for a stage, if any."""
        return self._definitions.get(name)

    def dependencies(self, name: str) -> list[str]:
        """Direct dependencies of a stage."""
        return list(self._deps[name])

    def add_stage(
        self,
        stage: StageDefinition | str,
        depends_on: Iterable[str] = (),
    ) -> None:
        """Declare a stage and its dependencies.

        Args:
            stage: Stage definition or bare stage name.
            depends_on: Names of already-declared stages.

        Raises:
            DuplicateStageError: If the name is already declared.
            UnknownDependencyError: If a dependency is not declared yet.
            CycleError: If the stage depends on itself.
        """
        name = stage if isinstance(stage, str) else stage.name
        deps = list(dict.fromkeys(depends_on))

        if name in self._deps:
            raise DuplicateStageError(name)
        for dep in deps:
            if dep == name:
                raise CycleError([name, name])
            if dep not in self._deps:
                raise UnknownDependencyError(name, dep)

        self._deps[name] = deps
        if not isinstance(stage, str):
            self._definitions[name] = stage

    def add_dependency(self, name: str, depends_on: str) -> None:
        """Add an edge ``name -> depends_on`` between declared stages.

        Raises:
            UnknownDependencyError: If either stage is not declared.
            CycleError: If the edge would close a cycle.
        """
        if name not in self._deps:
            msg = f"Cannot add dependency on '{depends_on}' to unknown stage '{name}'"
            raise UnknownDependencyError(name, depends_on, message=msg)
        if depends_on not in self._deps:
            raise UnknownDependencyError(name, depends_on)
        if depends_on in self._deps[name]:
            return

        path = self._path(depends_on, name)
        if path is not None:
            raise CycleError([name, *path])

        self._deps[name].append(depends_on)

    def _path(self, start: str, target: str) -> list[str] | None:
        """Dependency path from ``start`` to ``target``, if one exists."""
        if start == target:
            return [start]
        parents: dict[str, str] = {}
        queue = deque([start])
        seen = {start}
        while queue:
            current = queue.popleft()
            for dep in self._deps[current]:
                if dep in seen:
                    continue
                parents[dep] = current
                if dep == target:
                    path = [dep]
                    while path[-1] != start:
                        path.append(parents[path[-1]])
                    return list(reversed(path))
                seen.add(dep)
                queue.append(dep)
        return None

    @classmethod
    def from_pipeline(cls, pipeline: PipelineDefinition) -> StageGraph:
        """Build the graph for a pipeline with two-pass resolution.

        All stages are declared first, so ``needs`` may reference stages
        declared later in the file.
        """
        graph = cls()
        for stage in pipeline.stages:
            graph.add_stage(stage)
        for stage in pipeline.stages:
            for dep in stage.needs:
                graph.add_dependency(stage.name, dep)
        logger.debug("Built stage graph", pipeline_id=pipeline.id, stages=len(graph))
        return graph

    def ready_stages(
        self,
        completed: set[str],
        failed: set[str],
        started: set[str] | None = None,
    ) -> list[str]:
        """Stages whose dependencies all completed and none failed.

        Args:
            completed: Stages that succeeded.
            failed: Stages that failed or were cancelled.
            started: Stages that already left the pending state.

        Returns:
            Ready stage names in insertion order.
        """
        started = started or set()
        ready = []
        for name, deps in self._deps.items():
            if name in started or name in completed or name in failed:
                continue
            if any(dep in failed for dep in deps):
                continue
            if all(dep in completed for dep in deps):
                ready.append(name)
        return ready

    def is_terminal(self, states: Mapping[str, RunStatus]) -> bool:
        """Whether every stage has reached a terminal state."""
        return all(
            name in states and states[name].is_terminal for name in self._deps
        )

    def dependents(self, name: str) -> list[str]:
        """Stages that transitively depend on ``name``, in insertion order."""
        found: set[str] = set()
        frontier = {name}
        while frontier:
            frontier = {
                other
                for other, deps in self._deps.items()
                if other not in found and any(d in frontier for d in deps)
            }
            found |= frontier
        return [n for n in self._deps if n in found]

    def topological_order(self) -> list[str]:
        """Kahn ordering with insertion-order tie-break."""
        return [name for level in self.levels() for name in level]

    def levels(self) -> list[list[str]]:
        """Stages grouped by dependency depth."""
        remaining = dict(self._deps)
        placed: set[str] = set()
        levels: list[list[str]] = []
        while remaining:
            level = [n for n, deps in remaining.items() if all(d in placed for d in deps)]
            if not level:
                raise CycleError(list(remaining))
            levels.append(level)
            placed.update(level)
            for n in level:
                del remaining[n]
        return levels
