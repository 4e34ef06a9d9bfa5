"""
Traversal Engine
================

Read-only graph algorithms over a NodeEdgeStore.

The engine keeps no state between calls: every call re-reads the store, so
results reflect the graph at call time. Writes running concurrently with a
traversal may be observed half-applied; traverse a ``store.snapshot()``
when isolation matters.

Algorithms:
- shortest_path: unweighted BFS, first-discovered path wins
- breadth_first / find_connected: layer-by-layer reachability
- traverse: bounded enumeration of simple paths (depth-first)
- detect_cycles: iterative DFS with three-state marking
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from threading import Event
from typing import Any, Iterable, Iterator, Optional

from trellis.core.errors import InvalidDepth, NodeNotFound, TraversalCancelled
from trellis.core.schema import (
    Direction,
    Edge,
    GraphPath,
    TraversalPattern,
    TraversalResult,
)
from trellis.core.store import NodeEdgeStore


class _Mark(IntEnum):
    """DFS visitation state."""

    UNVISITED = 0
    IN_PROGRESS = 1
    DONE = 2


@dataclass
class TraversalBudget:
    """
    Work limit and cancellation signal for long-running traversals.

    One step is one node expansion. A budget may be shared across calls;
    ``steps`` keeps accumulating.

    Example
    -------
    >>> budget = TraversalBudget(max_steps=10_000)
    >>> engine.traverse(pattern, budget=budget)  # raises TraversalCancelled when exceeded
    """

    max_steps: Optional[int] = None
    cancel_event: Optional[Event] = None
    steps: int = 0

    def charge(self, steps: int = 1) -> None:
        """Consume steps, raising TraversalCancelled when out of budget."""
        self.steps += steps
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise TraversalCancelled(self.steps, reason="cancelled")
        if self.max_steps is not None and self.steps > self.max_steps:
            raise TraversalCancelled(self.steps, reason="budget_exhausted")


class TraversalEngine:
    """
    Graph algorithms bound to one store handle.

    Example
    -------
    >>> engine = TraversalEngine(store)
    >>> engine.shortest_path("A", "C").nodes
    ['A', 'B', 'C']
    >>> engine.find_connected("A", 1)
    {'A', 'B', 'D'}
    """

    def __init__(self, store: NodeEdgeStore):
        self._store = store

    @property
    def store(self) -> NodeEdgeStore:
        return self._store

    # ------------------------------------------------------------------
    # Shortest path
    # ------------------------------------------------------------------

    def shortest_path(
        self,
        start_id: str,
        end_id: str,
        edge_types: Optional[Iterable[str]] = None,
        budget: Optional[TraversalBudget] = None,
    ) -> Optional[GraphPath]:
        """
        Unweighted shortest path over directed edges.

        Ties are broken by discovery order: nodes are expanded breadth-first
        and each node's outgoing edges are scanned in insertion order, so the
        first path found is returned.

        Returns
        -------
        GraphPath or None
            ``GraphPath(nodes=[x])`` when start equals end; None if unreachable

        Raises
        ------
        NodeNotFound
            If either endpoint does not exist
        """
        self._require_node(start_id)
        self._require_node(end_id)

        if start_id == end_id:
            return GraphPath(nodes=[start_id])

        edge_types = list(edge_types) if edge_types else None
        parents: dict[str, tuple[str, Edge]] = {}
        visited = {start_id}
        queue = deque([start_id])

        while queue:
            current = queue.popleft()
            self._charge(budget)

            for neighbor, edge in self._store.neighbors(current, Direction.OUTGOING, edge_types):
                if neighbor in visited:
                    continue
                visited.add(neighbor)
                parents[neighbor] = (current, edge)
                if neighbor == end_id:
                    return self._build_path(parents, start_id, end_id)
                queue.append(neighbor)

        return None

    # ------------------------------------------------------------------
    # Reachability
    # ------------------------------------------------------------------

    def breadth_first(
        self,
        pattern: TraversalPattern | dict[str, Any],
        budget: Optional[TraversalBudget] = None,
    ) -> TraversalResult:
        """
        Layer-by-layer traversal recording discovery order and depth.

        Each node is visited at most once, so cycles cannot cause
        non-termination.
        """
        pattern = self._as_pattern(pattern)
        max_depth = self._check_depth(pattern.max_depth)
        self._require_node(pattern.start_node)

        node_types = set(pattern.node_types) if pattern.node_types else None
        depths: dict[str, int] = {pattern.start_node: 0}
        visited = [pattern.start_node]
        frontier = [pattern.start_node]
        level = 0

        while frontier and level < max_depth:
            next_frontier: list[str] = []
            for node_id in frontier:
                self._charge(budget)
                for neighbor, _ in self._store.neighbors(node_id, pattern.direction, pattern.edge_types):
                    if neighbor in depths:
                        continue
                    if node_types is not None and self._store.node_type(neighbor) not in node_types:
                        continue
                    depths[neighbor] = level + 1
                    visited.append(neighbor)
                    next_frontier.append(neighbor)
            frontier = next_frontier
            level += 1

        return TraversalResult(
            visited_nodes=visited,
            depths=depths,
            max_depth_reached=max(depths.values()),
        )

    def find_connected(
        self,
        start_id: str,
        max_depth: int,
        direction: Direction | str = Direction.OUTGOING,
        edge_types: Optional[Iterable[str]] = None,
        budget: Optional[TraversalBudget] = None,
    ) -> set[str]:
        """
        Nodes reachable from start_id within max_depth hops, start included.

        ``max_depth=0`` yields ``{start_id}``. The result for depth d is a
        subset of the result for depth d + 1.
        """
        result = self.breadth_first(
            TraversalPattern(
                start_node=start_id,
                direction=Direction(direction),
                max_depth=max_depth,
                edge_types=list(edge_types) if edge_types else None,
            ),
            budget=budget,
        )
        return set(result.visited_nodes)

    def find_connected_from(
        self,
        seeds: Iterable[str],
        max_depth: int,
        direction: Direction | str = Direction.OUTGOING,
        edge_types: Optional[Iterable[str]] = None,
        budget: Optional[TraversalBudget] = None,
    ) -> set[str]:
        """
        Union of find_connected over several seeds.

        Seeds typically come from an attribute query, e.g.
        ``index.find_by_attribute("type", "module")``.
        """
        edge_types = list(edge_types) if edge_types else None
        reached: set[str] = set()
        for seed in seeds:
            reached |= self.find_connected(seed, max_depth, direction, edge_types, budget)
        return reached

    # ------------------------------------------------------------------
    # Path enumeration
    # ------------------------------------------------------------------

    def traverse(
        self,
        pattern: TraversalPattern | dict[str, Any],
        budget: Optional[TraversalBudget] = None,
    ) -> list[GraphPath]:
        """
        Enumerate simple paths from the pattern's start node.

        Paths have 1..max_depth hops, never repeat a node, and follow only
        edges of ``edge_types`` (all types when omitted) in the requested
        direction. Output is depth-first with neighbors in edge insertion
        order. Parallel edges to the same neighbor produce a single path that
        records the first such edge.

        The full list is materialized; on cancellation nothing is returned.

        Raises
        ------
        NodeNotFound
            If the start node does not exist
        InvalidDepth
            If max_depth is negative or above the configured limit
        TraversalCancelled
            If the budget is exhausted
        """
        pattern = self._as_pattern(pattern)
        max_depth = self._check_depth(pattern.max_depth)
        self._require_node(pattern.start_node)

        paths: list[GraphPath] = []
        if max_depth == 0:
            return paths

        node_types = set(pattern.node_types) if pattern.node_types else None
        path_nodes = [pattern.start_node]
        path_edges: list[Edge] = []
        on_path = {pattern.start_node}

        self._charge(budget)
        stack: list[Iterator[tuple[str, Edge]]] = [
            self._step_candidates(pattern.start_node, pattern, node_types)
        ]

        while stack:
            advanced = False
            for neighbor, edge in stack[-1]:
                if neighbor in on_path:
                    continue

                path_nodes.append(neighbor)
                path_edges.append(edge)
                paths.append(
                    GraphPath(
                        nodes=list(path_nodes),
                        edges=[e.model_copy(deep=True) for e in path_edges],
                    )
                )

                if len(path_edges) < max_depth:
                    on_path.add(neighbor)
                    self._charge(budget)
                    stack.append(self._step_candidates(neighbor, pattern, node_types))
                    advanced = True
                    break

                path_nodes.pop()
                path_edges.pop()

            if not advanced:
                stack.pop()
                if path_edges:
                    on_path.discard(path_nodes.pop())
                    path_edges.pop()

        return paths

    # ------------------------------------------------------------------
    # Cycle detection
    # ------------------------------------------------------------------

    def detect_cycles(
        self,
        nodes: Optional[Iterable[str]] = None,
        edges: Optional[Iterable[Edge | tuple[str, str]]] = None,
        edge_types: Optional[Iterable[str]] = None,
        budget: Optional[TraversalBudget] = None,
    ) -> list[list[str]]:
        """
        Report the cycles closed by back edges, as ``[n0, ..., n0]`` sequences.

        Parameters
        ----------
        nodes : iterable of str, optional
            Node set to examine. Defaults to every node in the store (or, when
            ``edges`` is given, to the endpoints of those edges).
        edges : iterable of Edge or (source, target), optional
            Edge set to examine. Defaults to the store's edges induced on
            ``nodes``.
        edge_types : iterable of str, optional
            Only consider edges of these types.

        Returns
        -------
        list[list[str]]
            One entry per distinct cycle (rotations are de-duplicated);
            empty for an acyclic graph.
        """
        node_ids, adjacency = self._cycle_adjacency(nodes, edges, edge_types)

        state = {node_id: _Mark.UNVISITED for node_id in node_ids}
        cycles: list[list[str]] = []
        seen: set[tuple[str, ...]] = set()

        for root in node_ids:
            if state[root] != _Mark.UNVISITED:
                continue

            self._charge(budget)
            state[root] = _Mark.IN_PROGRESS
            path = [root]
            position = {root: 0}
            stack = [iter(adjacency[root])]

            while stack:
                advanced = False
                for neighbor in stack[-1]:
                    mark = state[neighbor]
                    if mark == _Mark.UNVISITED:
                        self._charge(budget)
                        state[neighbor] = _Mark.IN_PROGRESS
                        position[neighbor] = len(path)
                        path.append(neighbor)
                        stack.append(iter(adjacency[neighbor]))
                        advanced = True
                        break

                    if mark == _Mark.IN_PROGRESS:
                        cycle = path[position[neighbor]:] + [neighbor]
                        signature = self._cycle_signature(cycle)
                        if signature not in seen:
                            seen.add(signature)
                            cycles.append(cycle)

                if not advanced:
                    stack.pop()
                    finished = path.pop()
                    del position[finished]
                    state[finished] = _Mark.DONE

        return cycles

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _cycle_adjacency(
        self,
        nodes: Optional[Iterable[str]],
        edges: Optional[Iterable[Edge | tuple[str, str]]],
        edge_types: Optional[Iterable[str]],
    ) -> tuple[list[str], dict[str, list[str]]]:
        """Build an ordered adjacency list restricted to the node set."""
        allowed_types = set(edge_types) if edge_types else None

        if edges is None:
            if nodes is None:
                node_ids = self._store.node_ids()
            else:
                node_ids = list(dict.fromkeys(nodes))
                for node_id in node_ids:
                    self._require_node(node_id)

            members = set(node_ids)
            adjacency = {
                node_id: [
                    neighbor
                    for neighbor, _ in self._store.neighbors(node_id, Direction.OUTGOING, allowed_types)
                    if neighbor in members
                ]
                for node_id in node_ids
            }
            return node_ids, adjacency

        pairs: list[tuple[str, str]] = []
        for edge in edges:
            if isinstance(edge, Edge):
                if allowed_types is not None and edge.type not in allowed_types:
                    continue
                pairs.append((edge.source, edge.target))
            else:
                source, target = edge[0], edge[1]
                pairs.append((source, target))

        if nodes is None:
            node_ids = list(dict.fromkeys(n for pair in pairs for n in pair))
        else:
            node_ids = list(dict.fromkeys(nodes))

        members = set(node_ids)
        adjacency = {node_id: [] for node_id in node_ids}
        for source, target in pairs:
            if source in members and target in members:
                adjacency[source].append(target)

        return node_ids, adjacency

    @staticmethod
    def _cycle_signature(cycle: list[str]) -> tuple[str, ...]:
        """Rotation-invariant identity of a closed cycle."""
        body = cycle[:-1]
        pivot = body.index(min(body))
        return tuple(body[pivot:] + body[:pivot])

    def _step_candidates(
        self,
        node_id: str,
        pattern: TraversalPattern,
        node_types: Optional[set[str]],
    ) -> Iterator[tuple[str, Edge]]:
        """One candidate per distinct neighbor, first edge wins."""
        candidates: dict[str, Edge] = {}
        for neighbor, edge in self._store.neighbors(node_id, pattern.direction, pattern.edge_types):
            if neighbor in candidates:
                continue
            if node_types is not None and self._store.node_type(neighbor) not in node_types:
                continue
            candidates[neighbor] = edge
        return iter(list(candidates.items()))

    def _build_path(
        self,
        parents: dict[str, tuple[str, Edge]],
        start_id: str,
        end_id: str,
    ) -> GraphPath:
        nodes = [end_id]
        edges: list[Edge] = []
        current = end_id
        while current != start_id:
            parent, edge = parents[current]
            nodes.append(parent)
            edges.append(edge.model_copy(deep=True))
            current = parent
        nodes.reverse()
        edges.reverse()
        return GraphPath(nodes=nodes, edges=edges)

    def _require_node(self, node_id: str) -> None:
        if not self._store.has_node(node_id):
            raise NodeNotFound(node_id)

    def _check_depth(self, depth: int) -> int:
        limit = self._store.config.max_traversal_depth
        if depth < 0:
            raise InvalidDepth(depth)
        if depth > limit:
            raise InvalidDepth(depth, limit)
        return depth

    @staticmethod
    def _as_pattern(pattern: TraversalPattern | dict[str, Any]) -> TraversalPattern:
        if isinstance(pattern, TraversalPattern):
            return pattern
        return TraversalPattern.model_validate(pattern)

    @staticmethod
    def _charge(budget: Optional[TraversalBudget]) -> None:
        if budget is not None:
            budget.charge()

    def __repr__(self) -> str:
        return f"TraversalEngine(store={self._store!r})"
