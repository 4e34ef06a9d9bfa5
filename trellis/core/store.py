"""
Node/Edge Store
===============

Owns every node and directed, typed edge of one graph and persists them to a
single JSON snapshot document.

Key Design Principles:
1. Arena-and-index: records live on a networkx MultiDiGraph keyed by node id;
   adjacency is id-to-id, never object references
2. Edges carry a monotonically increasing key, so insertion order is
   recoverable at every node
3. Explicit flush boundary: writes reach disk at flush(), close(), or after
   every mutating call when auto_flush is enabled
4. One instance per caller-held handle; no process-wide singleton
"""

from __future__ import annotations

import logging
from collections import Counter
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Iterable, Iterator, Optional

import networkx as nx
from pydantic import BaseModel, Field, ValidationError

from trellis.core.config import StoreConfig
from trellis.core.errors import (
    ClosedStore,
    DuplicateNode,
    EdgeEndpointMissing,
    NodeNotFound,
    SerializationError,
)
from trellis.core.persistence import read_json_object, write_json_atomic
from trellis.core.schema import (
    BatchOperation,
    BatchOpType,
    BatchResult,
    Direction,
    DuplicatePolicy,
    Edge,
    GraphStats,
    Node,
)
from trellis.core.values import normalize_properties


logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = "1.0"

RECOVERABLE_BATCH_ERRORS = (NodeNotFound, EdgeEndpointMissing, DuplicateNode)

_MISSING = object()


class StoreSnapshot(BaseModel):
    """On-disk shape of a store snapshot."""

    version: str
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    placeholders: list[str] = Field(default_factory=list)
    """Ids of nodes synthesized for missing edge endpoints."""

    next_edge_key: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


class NodeEdgeStore:
    """
    Durable, queryable storage of nodes and edges.

    Example
    -------
    >>> store = NodeEdgeStore(StoreConfig(auto_create=True))
    >>> store.add_node("A", "module", {"path": "a.py"})
    >>> store.add_edge("A", "B", "imports")
    >>> [e.target for e in store.get_edges("A", Direction.OUTGOING)]
    ['B']
    """

    def __init__(self, config: Optional[StoreConfig] = None):
        """
        Open a store.

        Parameters
        ----------
        config : StoreConfig, optional
            Store options. If None, an in-memory store with defaults.

        Raises
        ------
        SerializationError
            If ``database_path`` exists but is not a valid snapshot
        StorageIOError
            If ``database_path`` exists but cannot be read
        """
        self.config = config or StoreConfig()
        self._graph: nx.MultiDiGraph = nx.MultiDiGraph()
        self._next_key = 0
        self._dirty = False
        self._closed = False
        self._auto_flush_suspended = False
        self._lock = RLock()

        path = self.config.database_path
        if path is not None and Path(path).exists():
            self._load_snapshot(Path(path))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dirty(self) -> bool:
        """True when writes exist that have not reached the snapshot file."""
        return self._dirty

    @property
    def node_count(self) -> int:
        self._ensure_open()
        return self._graph.number_of_nodes()

    @property
    def edge_count(self) -> int:
        self._ensure_open()
        return self._graph.number_of_edges()

    def flush(self) -> None:
        """
        Write pending changes to ``database_path``.

        This is the durability boundary: writes made after the last flush are
        lost if the process terminates abruptly. No-op for in-memory stores
        and when nothing changed.

        Raises
        ------
        StorageIOError
            If the snapshot cannot be written
        """
        self._ensure_open()
        with self._lock:
            self._flush_locked()

    def close(self) -> None:
        """
        Flush pending writes and release the store.

        Safe to call repeatedly and from any state. The store is marked closed
        even when the final flush fails; the failure is still raised. If a
        write holds the lock for longer than ``close_timeout`` the final flush
        is skipped rather than blocking.
        """
        if self._closed:
            return

        acquired = self._lock.acquire(timeout=self.config.close_timeout)
        try:
            if acquired:
                self._flush_locked()
            else:
                logger.warning(
                    "[NodeEdgeStore] close() timed out after %.1fs waiting for a write; "
                    "unflushed changes were not persisted",
                    self.config.close_timeout,
                )
        finally:
            self._closed = True
            self._graph = nx.MultiDiGraph()
            if acquired:
                self._lock.release()
            logger.info("[NodeEdgeStore] Closed store (%s)", self._describe_path())

    def __enter__(self) -> "NodeEdgeStore":
        self._ensure_open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def clear(self) -> None:
        """Remove all nodes and edges. Idempotent."""
        self._ensure_open()
        with self._lock:
            self._graph.clear()
            self._next_key = 0
            self._mark_dirty()

    def snapshot(self) -> "NodeEdgeStore":
        """
        Return an in-memory deep copy of the current graph.

        Traversals over the copy are isolated from later writes to this store.
        """
        self._ensure_open()
        with self._lock:
            copy = NodeEdgeStore(
                self.config.model_copy(update={"database_path": None, "auto_flush": False})
            )
            for node in self.nodes():
                copy._graph.add_node(
                    node.id,
                    record=node,
                    placeholder=self._graph.nodes[node.id].get("placeholder", False),
                )
            for edge in self.edges():
                copy._graph.add_edge(edge.source, edge.target, key=edge.key, record=edge)
            copy._next_key = self._next_key
            return copy

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def add_node(
        self,
        node_id: str,
        node_type: str,
        properties: Optional[dict[str, Any]] = None,
    ) -> Node:
        """
        Create or replace a node record.

        Re-adding an existing id replaces its record and keeps its edges
        (``DuplicatePolicy.UPSERT``) or raises ``DuplicateNode``
        (``DuplicatePolicy.REJECT``). Synthesized placeholder nodes can always
        be replaced.

        Returns
        -------
        Node
            A copy of the stored record
        """
        self._ensure_open()
        node = Node(id=node_id, type=node_type, properties=properties or {})

        with self._lock:
            if node_id in self._graph:
                is_placeholder = self._graph.nodes[node_id].get("placeholder", False)
                if (
                    self.config.duplicate_policy == DuplicatePolicy.REJECT
                    and not is_placeholder
                ):
                    raise DuplicateNode(node_id)

            self._graph.add_node(node_id, record=node, placeholder=False)
            self._debug("Added node %s (%s)", node_id, node_type)
            self._mark_dirty()

        return node.model_copy(deep=True)

    def get_node(self, node_id: str) -> Optional[Node]:
        """Return a copy of the node, or None if absent."""
        self._ensure_open()
        data = self._graph.nodes.get(node_id)
        if data is None:
            return None
        return data["record"].model_copy(deep=True)

    def has_node(self, node_id: str) -> bool:
        self._ensure_open()
        return node_id in self._graph

    def node_type(self, node_id: str) -> Optional[str]:
        """Type tag of a node without copying its record."""
        self._ensure_open()
        data = self._graph.nodes.get(node_id)
        return None if data is None else data["record"].type

    def node_ids(self) -> list[str]:
        """All node ids in insertion order."""
        self._ensure_open()
        return list(self._graph.nodes)

    def is_placeholder(self, node_id: str) -> bool:
        """True when the node was synthesized for a missing edge endpoint."""
        self._ensure_open()
        data = self._graph.nodes.get(node_id)
        return bool(data and data.get("placeholder", False))

    def update_node(self, node_id: str, properties: dict[str, Any]) -> bool:
        """
        Merge properties into an existing node.

        Returns
        -------
        bool
            False if the node does not exist

        Raises
        ------
        ValidationError
            If a patched value is not a JSON value; the record is left unchanged
        """
        self._ensure_open()
        with self._lock:
            data = self._graph.nodes.get(node_id)
            if data is None:
                return False

            current: Node = data["record"]
            merged = dict(current.properties)
            merged.update(normalize_properties(properties))
            data["record"] = Node.model_validate({**current.model_dump(), "properties": merged})
            self._mark_dirty()
            return True

    def delete_node(self, node_id: str) -> bool:
        """Remove a node and every edge incident to it."""
        self._ensure_open()
        with self._lock:
            if node_id not in self._graph:
                return False
            self._graph.remove_node(node_id)
            self._debug("Deleted node %s", node_id)
            self._mark_dirty()
            return True

    def nodes(self) -> list[Node]:
        """All node records in insertion order."""
        self._ensure_open()
        return [
            data["record"].model_copy(deep=True)
            for _, data in self._graph.nodes(data=True)
        ]

    def query_nodes(
        self,
        node_type: str,
        properties: Optional[dict[str, Any]] = None,
    ) -> list[Node]:
        """
        Nodes of a type whose properties contain every given key/value pair.
        """
        self._ensure_open()
        wanted = normalize_properties(properties)
        matches: list[Node] = []

        for _, data in self._graph.nodes(data=True):
            record: Node = data["record"]
            if record.type != node_type:
                continue
            if any(record.properties.get(k, _MISSING) != v for k, v in wanted.items()):
                continue
            matches.append(record.model_copy(deep=True))

        return matches

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def add_edge(
        self,
        source: str,
        target: str,
        edge_type: str,
        properties: Optional[dict[str, Any]] = None,
    ) -> Edge:
        """
        Add a directed edge. Parallel edges, including same-typed ones, are kept.

        Raises
        ------
        EdgeEndpointMissing
            If an endpoint does not exist and ``auto_create`` is disabled

        Returns
        -------
        Edge
            A copy of the stored record, with its assigned key
        """
        self._ensure_open()

        with self._lock:
            for endpoint in (source, target):
                if endpoint in self._graph:
                    continue
                if not self.config.auto_create:
                    raise EdgeEndpointMissing(source, target, endpoint)

            edge = Edge(
                source=source,
                target=target,
                type=edge_type,
                properties=properties or {},
                key=self._next_key,
            )

            for endpoint in dict.fromkeys((source, target)):
                if endpoint not in self._graph:
                    placeholder = Node(id=endpoint, type=self.config.placeholder_type)
                    self._graph.add_node(endpoint, record=placeholder, placeholder=True)
                    self._debug("Synthesized placeholder node %s", endpoint)

            self._graph.add_edge(source, target, key=edge.key, record=edge)
            self._next_key += 1
            self._debug("Added edge %s -[%s]-> %s", source, edge_type, target)
            self._mark_dirty()

        return edge.model_copy(deep=True)

    def get_edges(
        self,
        node_id: str,
        direction: Direction | str = Direction.BOTH,
        edge_types: Optional[Iterable[str]] = None,
    ) -> list[Edge]:
        """
        Edges incident to a node, in insertion order.

        An unknown node yields an empty list.
        """
        self._ensure_open()
        return [
            edge.model_copy(deep=True)
            for edge in self._incident(node_id, Direction(direction), edge_types)
        ]

    def neighbors(
        self,
        node_id: str,
        direction: Direction | str = Direction.OUTGOING,
        edge_types: Optional[Iterable[str]] = None,
    ) -> list[tuple[str, Edge]]:
        """
        Ordered ``(neighbor_id, edge)`` pairs reachable in one hop.

        Edges are returned by reference for traversal use; callers must
        not mutate them.
        """
        self._ensure_open()
        return [
            (edge.other_end(node_id), edge)
            for edge in self._incident(node_id, Direction(direction), edge_types)
        ]

    def edges(self) -> list[Edge]:
        """All edge records in insertion order."""
        self._ensure_open()
        records = [data["record"] for _, _, data in self._graph.edges(data=True)]
        records.sort(key=lambda e: e.key)
        return [e.model_copy(deep=True) for e in records]

    def update_edge(
        self,
        source: str,
        target: str,
        edge_type: str,
        properties: dict[str, Any],
    ) -> int:
        """
        Merge properties into every matching edge. Returns the number updated.

        A patch that fails validation raises ValidationError and changes no edge.
        """
        self._ensure_open()
        patch = normalize_properties(properties)
        with self._lock:
            replacements = []
            for _, data in self._matching_edges(source, target, edge_type):
                current: Edge = data["record"]
                merged = dict(current.properties)
                merged.update(patch)
                replacements.append(
                    (data, Edge.model_validate({**current.model_dump(), "properties": merged}))
                )

            for data, record in replacements:
                data["record"] = record
            if replacements:
                self._mark_dirty()
            return len(replacements)

    def delete_edge(self, source: str, target: str, edge_type: str) -> int:
        """Remove every edge source -[edge_type]-> target. Returns the number removed."""
        self._ensure_open()
        with self._lock:
            keys = [key for key, _ in self._matching_edges(source, target, edge_type)]
            for key in keys:
                self._graph.remove_edge(source, target, key=key)
            if keys:
                self._debug("Deleted %d edge(s) %s -[%s]-> %s", len(keys), source, edge_type, target)
                self._mark_dirty()
            return len(keys)

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def get_graph_stats(self) -> GraphStats:
        """Node/edge totals and per-type breakdowns."""
        self._ensure_open()
        nodes_by_type = Counter(
            data["record"].type for _, data in self._graph.nodes(data=True)
        )
        edges_by_type = Counter(
            data["record"].type for _, _, data in self._graph.edges(data=True)
        )
        return GraphStats(
            node_count=self._graph.number_of_nodes(),
            edge_count=self._graph.number_of_edges(),
            nodes_by_type=dict(nodes_by_type),
            edges_by_type=dict(edges_by_type),
        )

    def batch(self, operations: Iterable[BatchOperation | dict[str, Any]]) -> BatchResult:
        """
        Apply several write operations with a single flush.

        Recoverable failures (missing endpoints, missing nodes, rejected
        duplicates) are collected in the result instead of aborting the batch.
        """
        self._ensure_open()
        ops = [
            op if isinstance(op, BatchOperation) else BatchOperation.model_validate(op)
            for op in operations
        ]
        result = BatchResult(operations=len(ops))

        with self._lock, self._deferred_flush():
            for op in ops:
                try:
                    self._apply_batch_op(op, result)
                except RECOVERABLE_BATCH_ERRORS as exc:
                    result.errors.append(exc)

        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply_batch_op(self, op: BatchOperation, result: BatchResult) -> None:
        """Dispatch one batch operation and update affected counters."""
        if op.op == BatchOpType.ADD_NODE:
            node = self._require(op.node, op)
            self.add_node(node.id, node.type, node.properties)
            result.nodes_affected += 1
        elif op.op == BatchOpType.ADD_EDGE:
            edge = self._require(op.edge, op)
            self.add_edge(edge.source, edge.target, edge.type, edge.properties)
            result.edges_affected += 1
        elif op.op == BatchOpType.UPDATE_NODE:
            node_id = op.id or (op.node.id if op.node else None)
            if node_id is None:
                raise ValueError("update_node requires id or node")
            if not self.update_node(node_id, op.properties or (op.node.properties if op.node else {})):
                raise NodeNotFound(node_id)
            result.nodes_affected += 1
        elif op.op == BatchOpType.UPDATE_EDGE:
            edge = self._require(op.edge, op)
            result.edges_affected += self.update_edge(
                edge.source, edge.target, edge.type, op.properties or edge.properties
            )
        elif op.op == BatchOpType.DELETE_NODE:
            node_id = op.id or (op.node.id if op.node else None)
            if node_id is None:
                raise ValueError("delete_node requires id or node")
            if self.delete_node(node_id):
                result.nodes_affected += 1
        elif op.op == BatchOpType.DELETE_EDGE:
            edge = self._require(op.edge, op)
            result.edges_affected += self.delete_edge(edge.source, edge.target, edge.type)

    @staticmethod
    def _require(value: Any, op: BatchOperation) -> Any:
        if value is None:
            raise ValueError(f"{op.op.value} requires a payload")
        return value

    def _incident(
        self,
        node_id: str,
        direction: Direction,
        edge_types: Optional[Iterable[str]],
    ) -> list[Edge]:
        """Incident edge records sorted by insertion key."""
        if node_id not in self._graph:
            return []

        allowed = set(edge_types) if edge_types else None
        found: dict[int, Edge] = {}

        if direction in (Direction.OUTGOING, Direction.BOTH):
            for _, _, data in self._graph.out_edges(node_id, data=True):
                found[data["record"].key] = data["record"]

        if direction in (Direction.INCOMING, Direction.BOTH):
            for _, _, data in self._graph.in_edges(node_id, data=True):
                found[data["record"].key] = data["record"]

        return [
            found[key] for key in sorted(found)
            if allowed is None or found[key].type in allowed
        ]

    def _matching_edges(
        self,
        source: str,
        target: str,
        edge_type: str,
    ) -> list[tuple[int, dict[str, Any]]]:
        if not self._graph.has_edge(source, target):
            return []
        return [
            (key, data)
            for key, data in self._graph[source][target].items()
            if data["record"].type == edge_type
        ]

    def _ensure_open(self) -> None:
        if self._closed:
            raise ClosedStore()

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self.config.auto_flush and not self._auto_flush_suspended:
            self._flush_locked()

    @contextmanager
    def _deferred_flush(self) -> Iterator[None]:
        """Hold auto-flush until the block exits, then flush once."""
        previous = self._auto_flush_suspended
        self._auto_flush_suspended = True
        try:
            yield
        finally:
            self._auto_flush_suspended = previous
            if self.config.auto_flush and not previous and self._dirty:
                self._flush_locked()

    def _debug(self, message: str, *args: Any) -> None:
        if self.config.debug:
            logger.debug("[NodeEdgeStore] " + message, *args)

    def _describe_path(self) -> str:
        path = self.config.database_path
        return str(path) if path is not None else "in-memory"

    def _flush_locked(self) -> None:
        """Write the snapshot atomically. Caller holds the lock."""
        path = self.config.database_path
        if path is None:
            self._dirty = False
            return
        if not self._dirty:
            return

        document = self._to_document()
        write_json_atomic(path, document)

        self._dirty = False
        logger.info(
            "[NodeEdgeStore] Flushed %d nodes, %d edges to %s",
            len(document["nodes"]),
            len(document["edges"]),
            path,
        )

    def _to_document(self) -> dict[str, Any]:
        nodes = [data["record"].model_dump(mode="json") for _, data in self._graph.nodes(data=True)]
        placeholders = [
            node_id for node_id, data in self._graph.nodes(data=True)
            if data.get("placeholder", False)
        ]
        edges = sorted(
            (data["record"] for _, _, data in self._graph.edges(data=True)),
            key=lambda e: e.key,
        )

        return {
            "version": SNAPSHOT_VERSION,
            "nodes": nodes,
            "edges": [e.model_dump(mode="json", by_alias=True) for e in edges],
            "placeholders": placeholders,
            "next_edge_key": self._next_key,
            "metadata": {
                "node_count": len(nodes),
                "edge_count": len(edges),
                "saved_at": datetime.now(timezone.utc).isoformat(),
            },
        }

    def _load_snapshot(self, path: Path) -> None:
        """Populate the graph from an existing snapshot file."""
        raw = read_json_object(path)

        try:
            document = StoreSnapshot.model_validate(raw)
        except ValidationError as exc:
            raise SerializationError(path, str(exc)) from exc

        placeholders = set(document.placeholders)
        graph = nx.MultiDiGraph()
        for node in document.nodes:
            graph.add_node(node.id, record=node, placeholder=node.id in placeholders)

        next_key = document.next_edge_key
        for edge in document.edges:
            if edge.source not in graph or edge.target not in graph:
                raise SerializationError(
                    path, f"edge {edge.source} -> {edge.target} references a missing node"
                )
            if edge.key is None:
                edge = edge.model_copy(update={"key": next_key})
            if graph.has_edge(edge.source, edge.target, key=edge.key):
                raise SerializationError(path, f"duplicate edge key {edge.key}")
            graph.add_edge(edge.source, edge.target, key=edge.key, record=edge)
            next_key = max(next_key, edge.key + 1)

        self._graph = graph
        self._next_key = next_key
        self._dirty = False
        logger.info(
            "[NodeEdgeStore] Loaded %d nodes, %d edges from %s",
            graph.number_of_nodes(),
            graph.number_of_edges(),
            path,
        )

    def __repr__(self) -> str:
        if self._closed:
            return f"NodeEdgeStore(closed, path={self._describe_path()})"
        return (
            f"NodeEdgeStore(nodes={self._graph.number_of_nodes()}, "
            f"edges={self._graph.number_of_edges()}, path={self._describe_path()})"
        )
