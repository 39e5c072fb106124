"""Dependency graph over task IDs.

Edges run from prerequisite to dependent. Every node carries an integer order
key (the builder's enumeration sequence) and all traversals break ties on
``(order, id)``, so the same goal always produces the same ordering.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable
from typing import TYPE_CHECKING

from phase_orchestrator.domain.errors import GraphCycleError

if TYPE_CHECKING:
    from phase_orchestrator.domain.models import WorkflowRun


class TaskGraph:
    __slots__ = ("_order", "_prerequisites", "_dependents")

    def __init__(
        self,
        nodes: Iterable[str] = (),
        edges: Iterable[tuple[str, str]] = (),
    ) -> None:
        self._order: dict[str, int] = {}
        self._prerequisites: dict[str, set[str]] = {}
        self._dependents: dict[str, set[str]] = {}
        for node_id in nodes:
            self.add_node(node_id)
        for prerequisite, dependent in edges:
            self.add_edge(prerequisite, dependent)

    @classmethod
    def from_run(cls, run: WorkflowRun) -> TaskGraph:
        graph = cls()
        for task in run.iter_ordered_tasks():
            graph.add_node(task.id, order=task.sequence)
        for task in run.tasks:
            for dependency in task.dependencies:
                graph.add_edge(dependency, task.id)
        return graph

    @property
    def nodes(self) -> tuple[str, ...]:
        return tuple(sorted(self._order, key=self._rank))

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        return tuple(
            (node, dependent)
            for node in self.nodes
            for dependent in self._ranked(self._dependents[node])
        )

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._order

    def __len__(self) -> int:
        return len(self._order)

    def add_node(self, node_id: str, *, order: int | None = None) -> None:
        """Register ``node_id``; re-adding is a no-op. ``order`` defaults to insertion order."""
        if not isinstance(node_id, str) or not node_id:
            raise ValueError("Node ID must be a non-empty string.")
        if node_id in self._order:
            return
        self._order[node_id] = len(self._order) + 1 if order is None else order
        self._prerequisites[node_id] = set()
        self._dependents[node_id] = set()

    def add_edge(self, prerequisite: str, dependent: str) -> None:
        if prerequisite == dependent:
            raise GraphCycleError([(prerequisite, prerequisite)])
        self.add_node(prerequisite)
        self.add_node(dependent)
        self._dependents[prerequisite].add(dependent)
        self._prerequisites[dependent].add(prerequisite)

    def topological_sort(self) -> tuple[str, ...]:
        """Kahn's algorithm with an ``(order, id)`` heap; raises ``GraphCycleError``."""
        waiting = {node: len(parents) for node, parents in self._prerequisites.items()}
        heap = [self._rank(node) for node, count in waiting.items() if count == 0]
        heapq.heapify(heap)
        ordered: list[str] = []
        while heap:
            _, node = heapq.heappop(heap)
            ordered.append(node)
            for dependent in self._dependents[node]:
                waiting[dependent] -= 1
                if waiting[dependent] == 0:
                    heapq.heappush(heap, self._rank(dependent))
        if len(ordered) != len(self._order):
            raise GraphCycleError(self.detect_cycles())
        return tuple(ordered)

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """Every cycle reachable by depth-first search, as closed paths like ``(a, b, a)``.

        Each cycle is rotated to start at its smallest ID so the result is stable.
        """
        finished: set[str] = set()
        found: set[tuple[str, ...]] = set()
        for root in self.nodes:
            if root in finished:
                continue
            path: list[str] = [root]
            on_path: dict[str, int] = {root: 0}
            pending = [iter(self._ranked(self._dependents[root]))]
            while pending:
                step = next(pending[-1], None)
                if step is None:
                    pending.pop()
                    done = path.pop()
                    del on_path[done]
                    finished.add(done)
                elif step in on_path:
                    found.add(_rotate(path[on_path[step] :]))
                elif step not in finished:
                    on_path[step] = len(path)
                    path.append(step)
                    pending.append(iter(self._ranked(self._dependents[step])))
        return tuple(sorted(found))

    def get_dependencies(self, node_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Prerequisites of ``node_id``; with ``transitive`` the whole upstream closure."""
        return self._neighbours(node_id, self._prerequisites, transitive)

    def get_dependents(self, node_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Dependents of ``node_id``; with ``transitive`` the whole downstream closure."""
        return self._neighbours(node_id, self._dependents, transitive)

    def _neighbours(
        self, node_id: str, adjacency: dict[str, set[str]], transitive: bool
    ) -> tuple[str, ...]:
        if node_id not in self._order:
            raise KeyError(f"Unknown node: {node_id}")
        reached = set(adjacency[node_id])
        frontier = list(reached) if transitive else []
        while frontier:
            for neighbour in adjacency[frontier.pop()] - reached:
                reached.add(neighbour)
                frontier.append(neighbour)
        return self._ranked(reached)

    def _rank(self, node_id: str) -> tuple[int, str]:
        return (self._order[node_id], node_id)

    def _ranked(self, node_ids: Iterable[str]) -> tuple[str, ...]:
        return tuple(sorted(node_ids, key=self._rank))


def _rotate(cycle: list[str]) -> tuple[str, ...]:
    start = cycle.index(min(cycle))
    rotated = (*cycle[start:], *cycle[:start])
    return (*rotated, rotated[0])


__all__ = ["TaskGraph"]
