"""Dependency DAG over node ids with deterministic, id-sorted traversal.

``TaskGraph`` only knows ids and edges; node payloads live in ``WorkflowGraph``.
Every query returns sorted tuples so plans and snapshots are reproducible.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from heapq import heapify, heappop, heappush

from workflow_orchestrator.domain.errors import GraphValidationError
from workflow_orchestrator.domain.ids import validate_node_id


class CycleError(GraphValidationError):
    """A dependency cycle; ``cycles`` holds closed paths such as ``("a", "b", "a")``."""

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        self.cycles: tuple[tuple[str, ...], ...] = tuple(tuple(path) for path in cycles)
        rendered = [" -> ".join(path) for path in self.cycles]
        if rendered:
            more = "..." if len(rendered) > 3 else ""
            message = f"task graph contains cycle(s): {', '.join(rendered[:3])}{more}"
        else:
            message = "task graph contains at least one cycle"
        super().__init__(message, issues=rendered)

    def details(self) -> dict[str, object]:
        return {"cycles": [list(path) for path in self.cycles]}


class TaskGraph:
    __slots__ = ("_out", "_in")

    def __init__(
        self,
        nodes: Iterable[str] | None = None,
        edges: Iterable[tuple[str, str]] | None = None,
    ) -> None:
        self._out: dict[str, set[str]] = {}
        self._in: dict[str, set[str]] = {}
        for node_id in nodes or ():
            self.add_node(node_id)
        for parent, child in edges or ():
            self.add_edge(parent, child)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._out

    def __len__(self) -> int:
        return len(self._out)

    @property
    def nodes(self) -> tuple[str, ...]:
        return tuple(sorted(self._out))

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        pairs = ((parent, child) for parent, kids in self._out.items() for child in kids)
        return tuple(sorted(pairs))

    @property
    def roots(self) -> tuple[str, ...]:
        return tuple(sorted(node for node, ups in self._in.items() if not ups))

    @property
    def leaves(self) -> tuple[str, ...]:
        return tuple(sorted(node for node, downs in self._out.items() if not downs))

    def add_node(self, node_id: str) -> None:
        validate_node_id(node_id)
        self._out.setdefault(node_id, set())
        self._in.setdefault(node_id, set())

    def remove_node(self, node_id: str) -> None:
        """Drop ``node_id`` and every edge touching it."""
        self._require(node_id)
        for parent in self._in.pop(node_id):
            self._out[parent].discard(node_id)
        for child in self._out.pop(node_id):
            self._in[child].discard(node_id)

    def add_edge(self, parent: str, child: str) -> None:
        """Add ``parent -> child``; both ends must already be nodes."""
        missing = [node for node in (parent, child) if node not in self._out]
        if missing:
            raise GraphValidationError(
                f"edge {parent!r} -> {child!r} references unknown node(s)",
                issues=[f"dangling edge {parent} -> {child}: missing {node}" for node in missing],
            )
        if parent == child:
            raise CycleError([(parent, parent)])
        self._out[parent].add(child)
        self._in[child].add(parent)

    def parents(self, node_id: str) -> tuple[str, ...]:
        self._require(node_id)
        return tuple(sorted(self._in[node_id]))

    def children(self, node_id: str) -> tuple[str, ...]:
        self._require(node_id)
        return tuple(sorted(self._out[node_id]))

    def dependencies(self, node_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        if transitive:
            return self._reachable(node_id, self._in)
        return self.parents(node_id)

    def dependents(self, node_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        if transitive:
            return self._reachable(node_id, self._out)
        return self.children(node_id)

    def topological_sort(self) -> tuple[str, ...]:
        """Kahn's algorithm, always taking the smallest ready id; raises ``CycleError``."""
        remaining = {node: len(ups) for node, ups in self._in.items()}
        ready = [node for node, count in remaining.items() if count == 0]
        heapify(ready)
        order: list[str] = []
        while ready:
            node = heappop(ready)
            order.append(node)
            for child in self._out[node]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    heappush(ready, child)
        if len(order) < len(self._out):
            raise CycleError(self.detect_cycles())
        return tuple(order)

    def levels(self) -> tuple[tuple[str, ...], ...]:
        """Group nodes by longest distance from a root.

        A root sits on level 0; any other node sits one level below its deepest parent.
        """
        depth: dict[str, int] = {}
        for node in self.topological_sort():
            depth[node] = max((depth[parent] + 1 for parent in self._in[node]), default=0)
        buckets: dict[int, list[str]] = {}
        for node, level in depth.items():
            buckets.setdefault(level, []).append(node)
        return tuple(tuple(sorted(buckets[level])) for level in sorted(buckets))

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """Every cycle reachable by an id-ordered DFS, each rotated to start at its smallest id."""
        finished: set[str] = set()
        found: set[tuple[str, ...]] = set()
        for start in sorted(self._out):
            if start in finished:
                continue
            path = [start]
            on_path = {start: 0}
            branches = [iter(sorted(self._out[start]))]
            while branches:
                child = next(branches[-1], None)
                if child is None:
                    done = path.pop()
                    del on_path[done]
                    finished.add(done)
                    branches.pop()
                elif child in on_path:
                    found.add(_rotate_cycle(path[on_path[child] :]))
                elif child not in finished:
                    on_path[child] = len(path)
                    path.append(child)
                    branches.append(iter(sorted(self._out[child])))
        return tuple(sorted(found))

    def critical_path(self, weights: Mapping[str, float] | None = None) -> tuple[str, ...]:
        """Heaviest root-to-leaf path; nodes missing from ``weights`` weigh ``1.0``.

        Ties go to the smaller node id, both for the end node and for each predecessor.
        """
        total: dict[str, float] = {}
        via: dict[str, str | None] = {}
        for node in self.topological_sort():
            best = min(self._in[node], key=lambda parent: (-total[parent], parent), default=None)
            via[node] = best
            total[node] = _node_weight(node, weights) + (total[best] if best is not None else 0.0)
        if not total:
            return ()

        cursor: str | None = min(total, key=lambda node: (-total[node], node))
        path: list[str] = []
        while cursor is not None:
            path.append(cursor)
            cursor = via[cursor]
        return tuple(reversed(path))

    def copy(self) -> TaskGraph:
        return TaskGraph(nodes=self._out, edges=self.edges)

    def serialize(self) -> dict[str, object]:
        return {"nodes": list(self.nodes), "edges": [list(edge) for edge in self.edges]}

    @classmethod
    def deserialize(cls, payload: Mapping[str, object]) -> TaskGraph:
        """Inverse of :meth:`serialize`; rejects duplicate nodes and dangling edges."""
        nodes = _string_items(payload.get("nodes", ()), "nodes")
        if len(set(nodes)) != len(nodes):
            duplicate = next(node for node in nodes if nodes.count(node) > 1)
            raise ValueError(f"duplicate node {duplicate!r} in 'nodes'")
        edges: list[tuple[str, str]] = []
        for index, raw in enumerate(_items(payload.get("edges", ()), "edges")):
            pair = _string_items(raw, f"edges[{index}]")
            if len(pair) != 2:
                raise ValueError(f"'edges[{index}]' must contain exactly two node ids")
            edges.append((pair[0], pair[1]))
        return cls(nodes=nodes, edges=edges)

    def _reachable(self, node_id: str, adjacency: Mapping[str, set[str]]) -> tuple[str, ...]:
        self._require(node_id)
        seen: set[str] = set()
        frontier = set(adjacency[node_id])
        while frontier:
            seen |= frontier
            frontier = {nxt for node in frontier for nxt in adjacency[node]} - seen
        return tuple(sorted(seen))

    def _require(self, node_id: str) -> None:
        if node_id not in self._out:
            raise KeyError(f"unknown node: {node_id}")


def _node_weight(node_id: str, weights: Mapping[str, float] | None) -> float:
    value = 1.0 if weights is None else weights.get(node_id, 1.0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"weight for node {node_id!r} must be numeric")
    return float(value)


def _rotate_cycle(members: Sequence[str]) -> tuple[str, ...]:
    start = members.index(min(members))
    ordered = tuple(members[start:]) + tuple(members[:start])
    return ordered + (ordered[0],)


def _items(raw: object, label: str) -> list[object]:
    if isinstance(raw, (str, bytes, bytearray)) or not isinstance(raw, Sequence):
        raise TypeError(f"'{label}' must be a sequence")
    return list(raw)


def _string_items(raw: object, label: str) -> list[str]:
    items = _items(raw, label)
    for index, item in enumerate(items):
        if not isinstance(item, str):
            raise TypeError(f"'{label}[{index}]' must be a string")
    return [str(item) for item in items]


__all__ = ["CycleError", "TaskGraph"]
