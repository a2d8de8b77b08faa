"""
Typed dependency graph.

Design: Arena + index edges
Node ids are stored once in an arena (a list); edges are lists of arena
indices in both directions. Validation, cycle detection, topological
order and level analysis all walk integer indices instead of re-scanning
string-keyed maps.

Building a graph validates it: duplicate ids, unknown dependency ids and
cycles raise SchedulingError subclasses before anything runs.

Example:
    ```python
    graph = DependencyGraph.from_edges({
        "fetch": [],
        "parse": ["fetch"],
        "index": ["fetch"],
        "report": ["parse", "index"],
    })
    graph.topological_order()   # ['fetch', 'parse', 'index', 'report']
    graph.levels()              # [['fetch'], ['parse', 'index'], ['report']]
    ```
"""

from __future__ import annotations

import heapq
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Protocol

from pyconductor.core.errors import CycleError, DuplicateNodeError, UnknownDependencyError


class HasDependencies(Protocol):
    id: str
    depends_on: tuple[str, ...]


@dataclass
class DagSummary:
    """
    Summary information about a DAG structure.

    **Attributes**:
        total_nodes: Total number of nodes in the DAG
        root_count: Number of root nodes (nodes with no dependencies)
        leaf_count: Number of leaf nodes (nodes with no dependents)
        max_depth: Maximum depth of the DAG
        roots: List of root node IDs
        leaves: List of leaf node IDs
    """

    total_nodes: int
    root_count: int
    leaf_count: int
    max_depth: int
    roots: list[str]
    leaves: list[str]


class DependencyGraph:
    """Validated, immutable dependency graph over string node ids."""

    def __init__(self, entries: Iterable[tuple[str, Iterable[str]]]):
        self._ids: list[str] = []
        self._index: dict[str, int] = {}
        raw_deps: list[list[str]] = []

        for node_id, deps in entries:
            if node_id in self._index:
                raise DuplicateNodeError(node_id)
            self._index[node_id] = len(self._ids)
            self._ids.append(node_id)
            raw_deps.append(list(deps))

        self._deps: list[list[int]] = []
        self._dependents: list[list[int]] = [[] for _ in self._ids]
        for i, deps in enumerate(raw_deps):
            edges: list[int] = []
            for dep in deps:
                j = self._index.get(dep)
                if j is None:
                    raise UnknownDependencyError(self._ids[i], dep)
                if j not in edges:
                    edges.append(j)
                    self._dependents[j].append(i)
            self._deps.append(edges)

        cycle = self.find_cycle()
        if cycle is not None:
            raise CycleError(cycle)

    @classmethod
    def from_nodes(cls, nodes: Iterable[HasDependencies]) -> DependencyGraph:
        return cls((node.id, node.depends_on) for node in nodes)

    @classmethod
    def from_edges(cls, edges: Mapping[str, Iterable[str]]) -> DependencyGraph:
        return cls(edges.items())

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._index

    def __iter__(self):
        return iter(self._ids)

    def __repr__(self) -> str:
        edges = sum(len(d) for d in self._deps)
        return f"DependencyGraph(nodes={len(self._ids)}, edges={edges})"

    @property
    def ids(self) -> list[str]:
        """Node ids in declaration order."""
        return list(self._ids)

    def index_of(self, node_id: str) -> int:
        return self._index[node_id]

    def dependencies(self, node_id: str) -> list[str]:
        return [self._ids[j] for j in self._deps[self._index[node_id]]]

    def dependents(self, node_id: str) -> list[str]:
        return [self._ids[j] for j in self._dependents[self._index[node_id]]]

    def roots(self) -> list[str]:
        return [self._ids[i] for i, deps in enumerate(self._deps) if not deps]

    def leaves(self) -> list[str]:
        return [self._ids[i] for i, deps in enumerate(self._dependents) if not deps]

    def descendants(self, node_id: str) -> set[str]:
        """Every node that transitively depends on ``node_id``."""
        seen: set[int] = set()
        queue = deque(self._dependents[self._index[node_id]])
        while queue:
            i = queue.popleft()
            if i in seen:
                continue
            seen.add(i)
            queue.extend(self._dependents[i])
        return {self._ids[i] for i in seen}

    def ancestors(self, node_id: str) -> set[str]:
        """Every node ``node_id`` transitively depends on."""
        seen: set[int] = set()
        queue = deque(self._deps[self._index[node_id]])
        while queue:
            i = queue.popleft()
            if i in seen:
                continue
            seen.add(i)
            queue.extend(self._deps[i])
        return {self._ids[i] for i in seen}

    # ========================================================================
    # Cycle detection
    # ========================================================================

    def find_cycle(self) -> list[str] | None:
        """
        Return one cycle as ``[a, b, ..., a]`` or None.

        Iterative three-colour DFS along dependency edges.
        """
        white, grey, black = 0, 1, 2
        colour = [white] * len(self._ids)

        for start in range(len(self._ids)):
            if colour[start] != white:
                continue
            path: list[int] = [start]
            stack: list[tuple[int, int]] = [(start, 0)]
            colour[start] = grey
            while stack:
                node, edge = stack[-1]
                deps = self._deps[node]
                if edge < len(deps):
                    stack[-1] = (node, edge + 1)
                    nxt = deps[edge]
                    if colour[nxt] == grey:
                        cycle = path[path.index(nxt) :] + [nxt]
                        return [self._ids[i] for i in cycle]
                    if colour[nxt] == white:
                        colour[nxt] = grey
                        path.append(nxt)
                        stack.append((nxt, 0))
                else:
                    colour[node] = black
                    path.pop()
                    stack.pop()
        return None

    # ========================================================================
    # Ordering and levels
    # ========================================================================

    def topological_order(self, priority: Mapping[str, int] | None = None) -> list[str]:
        """Topological order of the graph using Kahn's algorithm.

        Among nodes that are ready at the same time, lower ``priority``
        values come first, then declaration order.
        """
        priority = priority or {}
        in_degree = [len(deps) for deps in self._deps]
        heap = [(priority.get(self._ids[i], 0), i) for i, d in enumerate(in_degree) if d == 0]
        heapq.heapify(heap)

        result: list[str] = []
        while heap:
            _, i = heapq.heappop(heap)
            result.append(self._ids[i])
            for j in self._dependents[i]:
                in_degree[j] -= 1
                if in_degree[j] == 0:
                    heapq.heappush(heap, (priority.get(self._ids[j], 0), j))

        # Construction already rejected cycles
        return result

    def depths(self) -> dict[str, int]:
        """Depth of each node: roots are 0, otherwise 1 + deepest dependency."""
        depth = [0] * len(self._ids)
        for node_id in self.topological_order():
            i = self._index[node_id]
            if self._deps[i]:
                depth[i] = 1 + max(depth[j] for j in self._deps[i])
        return {self._ids[i]: d for i, d in enumerate(depth)}

    def levels(self) -> list[list[str]]:
        """Group nodes by depth. Nodes in one level never depend on each other."""
        depths = self.depths()
        if not depths:
            return []
        levels: list[list[str]] = [[] for _ in range(max(depths.values()) + 1)]
        for node_id in self._ids:
            levels[depths[node_id]].append(node_id)
        return levels

    def summary(self) -> DagSummary:
        """
        Returns a summary of the DAG structure.

        **Returns**:
            DagSummary with graph statistics
        """
        roots = self.roots()
        leaves = self.leaves()
        depths = self.depths()
        return DagSummary(
            total_nodes=len(self._ids),
            root_count=len(roots),
            leaf_count=len(leaves),
            max_depth=max(depths.values()) if depths else 0,
            roots=roots,
            leaves=leaves,
        )

    def level_graph(self) -> str:
        """
        Returns a level-based view showing which nodes may run in parallel.

        **Example output**:
        ```
        DAG Execution Levels (4 nodes):

        Level 0: [fetch]
                 ↓
        Level 1: [parse] [index] (2 parallel nodes)
                 ↓
        Level 2: [report]
        ```
        """
        levels = self.levels()
        output = f"DAG Execution Levels ({len(self._ids)} nodes):\n\n"
        for level, nodes in enumerate(levels):
            parallel_note = f" ({len(nodes)} parallel nodes)" if len(nodes) > 1 else ""
            output += f"Level {level}: [{'] ['.join(nodes)}]{parallel_note}\n"
            if level < len(levels) - 1:
                output += "         ↓\n"
        return output

    def critical_path(self, weights: Mapping[str, float] | None = None) -> tuple[list[str], float]:
        """
        Longest weighted path through the graph.

        Args:
            weights: Estimated cost per node id (missing ids weigh 1)

        Returns:
            (path from a root to a leaf, total weight)
        """
        if not self._ids:
            return [], 0.0
        weights = weights or {}
        best: dict[int, tuple[float, int | None]] = {}
        for node_id in self.topological_order():
            i = self._index[node_id]
            own = float(weights.get(node_id, 1.0))
            prev: int | None = None
            length = 0.0
            for j in self._deps[i]:
                if prev is None or best[j][0] > length:
                    length, prev = best[j][0], j
            best[i] = (length + own, prev)

        end = max(best, key=lambda i: (best[i][0], -i))
        total = best[end][0]
        path: list[str] = []
        cursor: int | None = end
        while cursor is not None:
            path.append(self._ids[cursor])
            cursor = best[cursor][1]
        path.reverse()
        return path, total
