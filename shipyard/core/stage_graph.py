"""Stage dependency DAG: validated at load time, polled by the coordinator.

The graph enforces:
- Every predecessor name refers to a stage in the graph.
- No predecessor chain reaches back to its own stage.
- A manifest stage reads its artifact from one of its upstream stages.
- ``next_ready`` only offers stages whose predecessors have all completed,
  and never offers a completed or already-started stage.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable

from shipyard.core.errors import ConfigurationError, CyclicDependency, UnknownPredecessor
from shipyard.models.stages import ManifestSpec, StageDefinition


class StageGraph:
    """Directed acyclic graph of stage predecessors.

    Parameters
    ----------
    stage_definitions:
        The pipeline's stages.  Declaration order is used as the tiebreak
        for topological ordering.
    """

    def __init__(self, stage_definitions: Iterable[StageDefinition]) -> None:
        definitions = list(stage_definitions)
        self._order: dict[str, int] = {}
        self._stages: dict[str, StageDefinition] = {}
        for index, sd in enumerate(definitions):
            if sd.name in self._stages:
                raise ConfigurationError(f"Duplicate stage name: {sd.name!r}")
            self._stages[sd.name] = sd
            self._order[sd.name] = index

        # Forward edges: stage -> its predecessors
        self._predecessors: dict[str, list[str]] = {
            sd.name: list(sd.predecessors) for sd in definitions
        }
        # Reverse edges: stage -> stages that list it as a predecessor
        self._dependents: dict[str, list[str]] = {sd.name: [] for sd in definitions}

        for sd in definitions:
            for pred in sd.predecessors:
                if pred not in self._stages:
                    raise UnknownPredecessor(
                        f"Stage {sd.name!r} depends on unknown stage {pred!r}"
                    )
                self._dependents[pred].append(sd.name)

        self._topological = self._sort()
        self._check_sources()

    def _sort(self) -> list[str]:
        """Kahn's algorithm; a leftover node means a cycle."""
        in_degree = {name: len(preds) for name, preds in self._predecessors.items()}
        queue = deque(
            sorted((n for n, d in in_degree.items() if d == 0), key=self._order.__getitem__)
        )
        result: list[str] = []
        while queue:
            node = queue.popleft()
            result.append(node)
            for dep in sorted(self._dependents[node], key=self._order.__getitem__):
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)

        if len(result) != len(self._stages):
            stuck = sorted(
                (n for n, d in in_degree.items() if d > 0), key=self._order.__getitem__
            )
            raise CyclicDependency(
                f"Stage graph has a cycle through: {', '.join(stuck)}"
            )
        return result

    def _check_sources(self) -> None:
        for name, sd in self._stages.items():
            if not isinstance(sd.action, ManifestSpec):
                continue
            source = sd.action.source_stage
            if source not in self.ancestors(name):
                raise ConfigurationError(
                    f"Stage {name!r} reads its artifact from {source!r}, "
                    "which is not upstream of it"
                )

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    @property
    def names(self) -> list[str]:
        """All stage names in topological order."""
        return list(self._topological)

    @property
    def roots(self) -> list[str]:
        """Stages with no predecessors."""
        return [n for n in self._topological if not self._predecessors[n]]

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __len__(self) -> int:
        return len(self._stages)

    def get(self, name: str) -> StageDefinition:
        return self._stages[name]

    def predecessors(self, name: str) -> list[str]:
        """Direct predecessors of a stage."""
        return list(self._predecessors[name])

    def ancestors(self, name: str) -> list[str]:
        """All transitive predecessors of a stage, in topological order."""
        seen: set[str] = set()
        stack = list(self._predecessors[name])
        while stack:
            node = stack.pop()
            if node not in seen:
                seen.add(node)
                stack.extend(self._predecessors[node])
        return [n for n in self._topological if n in seen]

    def dependents(self, name: str) -> list[str]:
        """All transitive dependents of a stage (BFS order)."""
        result: list[str] = []
        queue = deque(self._dependents[name])
        seen: set[str] = set()
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            result.append(node)
            queue.extend(self._dependents[node])
        return result

    # ------------------------------------------------------------------
    # Scheduling primitive
    # ------------------------------------------------------------------

    def next_ready(
        self,
        completed: Iterable[str],
        started: Iterable[str] = (),
    ) -> set[str]:
        """Stages whose predecessors are all in *completed*.

        Stages already in *completed* or *started* are never returned, so a
        caller that feeds back what it dispatched is never offered a stage
        twice.  Returns the empty set once every stage is complete.
        """
        done = set(completed)
        excluded = done | set(started)
        return {
            name
            for name in self._topological
            if name not in excluded
            and all(pred in done for pred in self._predecessors[name])
        }

    def is_complete(self, completed: Iterable[str]) -> bool:
        return set(self._stages) <= set(completed)
