"""
Graph Record Schema
===================

Typed records for nodes, edges, paths and traversal patterns.

Records are explicit tagged models rather than loose property bags:
- Node: unique id, type tag, ordered properties
- Edge: directed, typed link between two node ids (multigraph)
- GraphPath: ordered node/edge sequence produced by traversals
- TraversalPattern: start node, direction, depth and edge-type filter
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue, field_validator

from trellis.core.values import normalize_properties


class Direction(str, Enum):
    """Which incident edges a lookup or traversal follows."""

    OUTGOING = "outgoing"
    """Edges leaving the node."""

    INCOMING = "incoming"
    """Edges arriving at the node (walked in reverse)."""

    BOTH = "both"
    """Either direction."""


class DuplicatePolicy(str, Enum):
    """What add_node does when the id already exists."""

    UPSERT = "upsert"
    """Replace the existing record, keeping its edges."""

    REJECT = "reject"
    """Raise DuplicateNode."""


class BatchOpType(str, Enum):
    """Operations accepted by NodeEdgeStore.batch()."""

    ADD_NODE = "add_node"
    ADD_EDGE = "add_edge"
    UPDATE_NODE = "update_node"
    UPDATE_EDGE = "update_edge"
    DELETE_NODE = "delete_node"
    DELETE_EDGE = "delete_edge"


class Node(BaseModel):
    """A uniquely identified, typed record with ordered properties."""

    id: str = Field(min_length=1)
    """Opaque identifier, unique within a store."""

    type: str = Field(min_length=1)
    """Type tag (e.g. 'module', 'function', 'section')."""

    properties: dict[str, JsonValue] = Field(default_factory=dict)
    """Ordered mapping of property name to value."""

    @field_validator("properties", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return normalize_properties(value)
        return value

    def __repr__(self) -> str:
        return f"Node(id={self.id!r}, type={self.type!r})"


class Edge(BaseModel):
    """
    A directed, typed link between two nodes.

    ``source``/``target`` serialize as ``from``/``to``. ``key`` is assigned
    by the store on insertion and orders edges by insertion time.
    """

    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(alias="from", min_length=1)
    """Id of the node the edge leaves."""

    target: str = Field(alias="to", min_length=1)
    """Id of the node the edge arrives at."""

    type: str = Field(min_length=1)
    """Relationship type (e.g. 'imports', 'calls', 'connects')."""

    properties: dict[str, JsonValue] = Field(default_factory=dict)

    key: Optional[int] = None
    """Store-assigned insertion sequence number."""

    @field_validator("properties", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return normalize_properties(value)
        return value

    def other_end(self, node_id: str) -> str:
        """Return the endpoint opposite to node_id."""
        return self.target if node_id == self.source else self.source

    def __repr__(self) -> str:
        return f"Edge({self.source!r} -[{self.type}]-> {self.target!r}, key={self.key})"


class GraphPath(BaseModel):
    """An ordered walk through the graph."""

    nodes: list[str]
    """Node ids in walk order, start first."""

    edges: list[Edge] = Field(default_factory=list)
    """Edges crossed; edges[i] connects nodes[i] and nodes[i + 1]."""

    @property
    def length(self) -> int:
        """Number of hops."""
        return len(self.edges)

    @property
    def start(self) -> str:
        return self.nodes[0]

    @property
    def end(self) -> str:
        return self.nodes[-1]

    def __repr__(self) -> str:
        return f"GraphPath({' -> '.join(self.nodes)})"


class TraversalPattern(BaseModel):
    """Describes a bounded walk from a start node."""

    start_node: str = Field(min_length=1)

    direction: Direction = Direction.OUTGOING

    max_depth: int = 1
    """Maximum number of hops. Validated by the engine (InvalidDepth)."""

    edge_types: Optional[list[str]] = None
    """Only follow edges of these types; None or empty follows all types."""

    node_types: Optional[list[str]] = None
    """Only step into nodes of these types; None or empty allows all."""


class BatchOperation(BaseModel):
    """One entry in a NodeEdgeStore.batch() call."""

    op: BatchOpType
    node: Optional[Node] = None
    edge: Optional[Edge] = None
    id: Optional[str] = None
    """Node id for update_node / delete_node."""

    properties: dict[str, JsonValue] = Field(default_factory=dict)
    """Property patch for update_node / update_edge."""


@dataclass
class TraversalResult:
    """Layer-by-layer breadth-first traversal output."""

    visited_nodes: list[str]
    depths: dict[str, int] = field(default_factory=dict)
    max_depth_reached: int = 0

    @property
    def total_nodes_visited(self) -> int:
        return len(self.visited_nodes)

    def to_dict(self) -> dict[str, Any]:
        """Convert the result to a JSON-serializable dictionary."""
        return {
            "visited_nodes": list(self.visited_nodes),
            "total_nodes_visited": self.total_nodes_visited,
            "depths": dict(self.depths),
            "max_depth_reached": self.max_depth_reached,
        }


@dataclass
class GraphStats:
    """Counts describing current store contents."""

    node_count: int
    edge_count: int
    nodes_by_type: dict[str, int] = field(default_factory=dict)
    edges_by_type: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_count": self.node_count,
            "edge_count": self.edge_count,
            "nodes_by_type": dict(self.nodes_by_type),
            "edges_by_type": dict(self.edges_by_type),
        }


@dataclass
class BatchResult:
    """Outcome of NodeEdgeStore.batch()."""

    operations: int
    nodes_affected: int = 0
    edges_affected: int = 0
    errors: list[Exception] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "operations": self.operations,
            "nodes_affected": self.nodes_affected,
            "edges_affected": self.edges_affected,
            "errors": [str(e) for e in self.errors],
        }
