"""Deterministic stage DAG compiled from input/output artifact matching."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from heapq import heapify, heappop, heappush

from release_pipeline.domain.errors import StageGraphError
from release_pipeline.domain.models import Stage


class CycleError(StageGraphError):
    """Raised when stages depend on each other's outputs in a loop."""

    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        normalized: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        self.cycles = normalized

        if not normalized:
            message = "Stage graph contains at least one cycle."
        else:
            preview = ", ".join(" -> ".join(path) for path in normalized[:3])
            suffix = "..." if len(normalized) > 3 else ""
            message = f"Stage graph contains cycle(s): {preview}{suffix}"
        super().__init__(message)


class StageGraph:
    """Immutable DAG of one plan's stages.

    Edges run from the producer of an artifact key to every stage that consumes it.
    Every producer must be declared before the stages that consume its artifacts, so
    ``order`` always matches declaration order and is stable across runs.
    """

    __slots__ = ("_stages", "_index", "_producers", "_children", "_parents", "_order")

    def __init__(self, stages: Sequence[Stage]) -> None:
        self._stages: tuple[Stage, ...] = tuple(stages)
        self._index: dict[str, int] = {}
        self._producers: dict[str, str] = {}
        self._children: dict[str, set[str]] = {}
        self._parents: dict[str, set[str]] = {}

        for position, stage in enumerate(self._stages):
            if stage.name in self._index:
                raise StageGraphError(f"duplicate stage name {stage.name!r}")
            self._index[stage.name] = position
            self._children[stage.name] = set()
            self._parents[stage.name] = set()
            for ref in stage.outputs:
                existing = self._producers.get(ref.key)
                if existing is not None:
                    raise StageGraphError(
                        f"artifact {ref.key!r} is produced by both {existing!r} "
                        f"and {stage.name!r}"
                    )
                self._producers[ref.key] = stage.name

        for stage in self._stages:
            for ref in stage.inputs:
                producer = self._producers.get(ref.key)
                if producer is None:
                    raise StageGraphError(
                        f"stage {stage.name!r} consumes {ref.key!r} which no stage produces"
                    )
                if producer != ref.producer:
                    raise StageGraphError(
                        f"stage {stage.name!r} expects {ref.key!r} from {ref.producer!r}, "
                        f"but it is produced by {producer!r}"
                    )
                self._children[producer].add(stage.name)
                self._parents[stage.name].add(producer)

        # Cycles are reported first; they also violate declaration order.
        self._order = self._topological_sort()
        self._check_declaration_order()

    @classmethod
    def from_stages(cls, stages: Iterable[Stage]) -> StageGraph:
        return cls(tuple(stages))

    @property
    def stages(self) -> tuple[Stage, ...]:
        """Stages in declaration order."""
        return self._stages

    @property
    def order(self) -> tuple[str, ...]:
        return self._order

    def __len__(self) -> int:
        return len(self._stages)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def stage(self, name: str) -> Stage:
        self._assert_stage_exists(name)
        return self._stages[self._index[name]]

    def get_dependencies(self, name: str) -> tuple[str, ...]:
        self._assert_stage_exists(name)
        return self._sorted(self._parents[name])

    def get_dependents(self, name: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Return direct or transitive dependents of ``name`` in graph order."""
        self._assert_stage_exists(name)
        if not transitive:
            return self._sorted(self._children[name])

        visited: set[str] = set()
        pending: list[str] = list(self._children[name])
        while pending:
            node = pending.pop()
            if node in visited:
                continue
            visited.add(node)
            pending.extend(child for child in self._children[node] if child not in visited)
        return self._sorted(visited)

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """
        Detect directed cycles.

        Returns cycle paths as closed paths, e.g. ``("a", "b", "a")``.
        """
        state: dict[str, int] = {}
        stack: list[str] = []
        stack_index: dict[str, int] = {}
        cycles: dict[tuple[str, ...], None] = {}

        for start in sorted(self._index):
            if state.get(start, 0) != 0:
                continue

            state[start] = 1
            stack.append(start)
            stack_index[start] = len(stack) - 1
            frames: list[tuple[str, Iterator[str]]] = [(start, iter(sorted(self._children[start])))]

            while frames:
                node, child_iter = frames[-1]
                try:
                    child = next(child_iter)
                except StopIteration:
                    frames.pop()
                    state[node] = 2
                    stack.pop()
                    del stack_index[node]
                    continue

                child_state = state.get(child, 0)
                if child_state == 0:
                    state[child] = 1
                    stack_index[child] = len(stack)
                    stack.append(child)
                    frames.append((child, iter(sorted(self._children[child]))))
                    continue

                if child_state == 1:
                    cycle = tuple(stack[stack_index[child] :] + [child])
                    cycles[_canonicalize_cycle(cycle)] = None

        return tuple(sorted(cycles))

    def _topological_sort(self) -> tuple[str, ...]:
        indegree = {name: len(parents) for name, parents in self._parents.items()}
        ready: list[tuple[int, str]] = [
            (self._index[name], name) for name, degree in indegree.items() if degree == 0
        ]
        heapify(ready)

        order: list[str] = []
        while ready:
            _position, node = heappop(ready)
            order.append(node)
            for child in self._children[node]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heappush(ready, (self._index[child], child))

        if len(order) != len(self._stages):
            raise CycleError(self.detect_cycles())
        return tuple(order)

    def _check_declaration_order(self) -> None:
        for stage in self._stages:
            for producer in sorted(self._parents[stage.name], key=self._index.__getitem__):
                if self._index[producer] >= self._index[stage.name]:
                    raise StageGraphError(
                        f"stage {stage.name!r} is declared before its producer {producer!r}"
                    )

    def _sorted(self, names: Iterable[str]) -> tuple[str, ...]:
        position = {name: index for index, name in enumerate(self._order)}
        return tuple(sorted(names, key=position.__getitem__))

    def _assert_stage_exists(self, name: str) -> None:
        if name not in self._index:
            raise KeyError(f"Unknown stage: {name}")


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    core = tuple(cycle[:-1])
    if len(core) == 1:
        return (core[0], core[0])

    best = core
    for offset in range(1, len(core)):
        rotated = core[offset:] + core[:offset]
        if rotated < best:
            best = rotated
    return best + (best[0],)


__all__ = ["CycleError", "StageGraph"]
