"""Deterministic dependency graph over task ids.

Edges point from a dependency to its dependent (``upstream -> downstream``).
Every traversal sorts neighbours so results are stable across runs.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence

from dag_orchestrator.domain.errors import UnknownTaskError


class TaskGraph:
    """Adjacency-list DAG keyed by task id."""

    __slots__ = ("_downstream", "_upstream")

    def __init__(self) -> None:
        self._downstream: dict[str, set[str]] = {}
        self._upstream: dict[str, set[str]] = {}

    def copy(self) -> TaskGraph:
        clone = TaskGraph()
        clone._downstream = {key: set(value) for key, value in self._downstream.items()}
        clone._upstream = {key: set(value) for key, value in self._upstream.items()}
        return clone

    def add_task(self, task_id: str, depends_on: Sequence[str] = ()) -> None:
        """Add ``task_id`` with edges from each of ``depends_on``.

        Dependencies that are not yet nodes are created implicitly; callers that
        need them to exist already must check membership first.
        """
        self._ensure_node(task_id)
        for upstream in depends_on:
            self._ensure_node(upstream)
            self._downstream[upstream].add(task_id)
            self._upstream[task_id].add(upstream)

    def dependents(self, task_id: str) -> tuple[str, ...]:
        self._assert_known(task_id)
        return tuple(sorted(self._downstream[task_id]))

    def ancestors(self, task_id: str) -> tuple[str, ...]:
        """All tasks ``task_id`` transitively depends on."""
        return self._closure(task_id, self._upstream)

    def find_cycles(self) -> tuple[tuple[str, ...], ...]:
        """Cycles reached through DFS back edges, as closed paths like ``("a", "b", "a")``.

        Iterative DFS with grey/black colouring. Each cycle is rotated so its
        lexically smallest id comes first, which deduplicates rediscoveries.
        """
        colour: dict[str, int] = {}
        path: list[str] = []
        position: dict[str, int] = {}
        found: dict[tuple[str, ...], None] = {}

        for root in sorted(self._upstream):
            if colour.get(root):
                continue
            colour[root] = 1
            position[root] = 0
            path.append(root)
            frames: list[tuple[str, Iterator[str]]] = [
                (root, iter(sorted(self._downstream[root])))
            ]

            while frames:
                node, children = frames[-1]
                child = next(children, None)
                if child is None:
                    frames.pop()
                    colour[node] = 2
                    path.pop()
                    del position[node]
                    continue

                state = colour.get(child, 0)
                if state == 0:
                    colour[child] = 1
                    position[child] = len(path)
                    path.append(child)
                    frames.append((child, iter(sorted(self._downstream[child]))))
                elif state == 1:
                    loop = path[position[child] :]
                    found[_rotate_to_smallest(loop)] = None

        return tuple(sorted(found))

    def _closure(self, task_id: str, adjacency: dict[str, set[str]]) -> tuple[str, ...]:
        self._assert_known(task_id)
        seen: set[str] = set()
        pending = list(adjacency[task_id])
        while pending:
            node = pending.pop()
            if node in seen:
                continue
            seen.add(node)
            pending.extend(neighbour for neighbour in adjacency[node] if neighbour not in seen)
        return tuple(sorted(seen))

    def _ensure_node(self, task_id: str) -> None:
        if not task_id:
            raise ValueError("task id must be non-empty")
        if task_id not in self._upstream:
            self._upstream[task_id] = set()
            self._downstream[task_id] = set()

    def _assert_known(self, task_id: str) -> None:
        if task_id not in self._upstream:
            raise UnknownTaskError(task_id)


def _rotate_to_smallest(loop: Sequence[str]) -> tuple[str, ...]:
    pivot = min(range(len(loop)), key=lambda index: loop[index])
    rotated = tuple(loop[pivot:]) + tuple(loop[:pivot])
    return rotated + (rotated[0],)


__all__ = ["TaskGraph"]
