"""
Trellis Core: Embedded Graph Store and Traversal
================================================

A typed, persistent multigraph of nodes and directed edges, plus read-only
traversal algorithms over it.

Public API:
- NodeEdgeStore: Owns node/edge records and their JSON snapshot
- TraversalEngine: Shortest path, reachability, path enumeration, cycles
- TraversalBudget: Step limit / cancellation for long traversals
- StoreConfig: Store options (JSON file or TRELLIS_* environment)
- Node, Edge, GraphPath, TraversalPattern: Typed records
"""

from trellis.core.schema import (
    BatchOperation,
    BatchOpType,
    BatchResult,
    Direction,
    DuplicatePolicy,
    Edge,
    GraphPath,
    GraphStats,
    Node,
    TraversalPattern,
    TraversalResult,
)
from trellis.core.config import StoreConfig
from trellis.core.errors import (
    ClosedStore,
    DuplicateNode,
    EdgeEndpointMissing,
    InvalidDepth,
    NodeNotFound,
    SerializationError,
    StorageIOError,
    TraversalCancelled,
    TrellisError,
)
from trellis.core.store import NodeEdgeStore
from trellis.core.traversal import TraversalBudget, TraversalEngine

__all__ = [
    "NodeEdgeStore",
    "TraversalEngine",
    "TraversalBudget",
    "StoreConfig",
    "Node",
    "Edge",
    "GraphPath",
    "TraversalPattern",
    "TraversalResult",
    "GraphStats",
    "BatchOperation",
    "BatchOpType",
    "BatchResult",
    "Direction",
    "DuplicatePolicy",
    "TrellisError",
    "NodeNotFound",
    "EdgeEndpointMissing",
    "DuplicateNode",
    "InvalidDepth",
    "ClosedStore",
    "SerializationError",
    "StorageIOError",
    "TraversalCancelled",
]
