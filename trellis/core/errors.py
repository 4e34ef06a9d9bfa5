"""
Error Taxonomy
==============

Exceptions raised by the store, the traversal engine and the attribute index.

Usage errors (NodeNotFound, InvalidDepth, ClosedStore) are surfaced
immediately and never retried. An empty result is never an error.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class TrellisError(Exception):
    """Base exception for all trellis operations."""


class NodeNotFound(TrellisError):
    """Raised when a traversal references a node id absent from the store."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' does not exist")


class EdgeEndpointMissing(TrellisError):
    """Raised when an edge references a missing endpoint and auto-create is off."""

    def __init__(self, source: str, target: str, missing: str):
        self.source = source
        self.target = target
        self.missing = missing
        super().__init__(
            f"Cannot add edge {source} -> {target}: endpoint '{missing}' does not exist"
        )


class DuplicateNode(TrellisError):
    """Raised when re-adding a node id under the reject policy."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' already exists")


class InvalidDepth(TrellisError, ValueError):
    """Raised for a negative (or over-limit) traversal depth."""

    def __init__(self, depth: int, limit: Optional[int] = None):
        self.depth = depth
        self.limit = limit
        if limit is None:
            message = f"Traversal depth must be >= 0, got {depth}"
        else:
            message = f"Traversal depth must be between 0 and {limit}, got {depth}"
        super().__init__(message)


class ClosedStore(TrellisError):
    """Raised when an operation is attempted after close()."""

    def __init__(self, message: str = "Store has been closed"):
        super().__init__(message)


class SerializationError(TrellisError):
    """Raised when a persisted document is malformed."""

    def __init__(self, path: Path | str, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Malformed document at {self.path}: {reason}")


class StorageIOError(TrellisError, OSError):
    """Raised when the filesystem fails during read, write or flush."""

    def __init__(self, path: Path | str, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"I/O failure at {self.path}: {reason}")

    def __str__(self) -> str:
        return f"I/O failure at {self.path}: {self.reason}"


class TraversalCancelled(TrellisError):
    """Raised when a traversal exceeds its work budget or is cancelled."""

    def __init__(self, steps: int, reason: str = "budget_exhausted"):
        self.steps = steps
        self.reason = reason
        super().__init__(f"Traversal aborted after {steps} steps ({reason})")
