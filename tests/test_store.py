"""
Tests for the Node/Edge Store
=============================

Tests record CRUD, duplicate policies, endpoint auto-creation, the flush
boundary and snapshot loading.
"""

import json

import pytest
from pydantic import ValidationError

from trellis.core.config import StoreConfig
from trellis.core.errors import (
    ClosedStore,
    DuplicateNode,
    EdgeEndpointMissing,
    NodeNotFound,
    SerializationError,
    StorageIOError,
)
from trellis.core.schema import BatchOperation, Direction, DuplicatePolicy, Edge
from trellis.core.store import NodeEdgeStore


class Opaque:
    """A value with no JSON representation."""


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store() -> NodeEdgeStore:
    """Empty in-memory store with default options."""
    s = NodeEdgeStore()
    yield s
    s.close()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "graph.json"


@pytest.fixture
def module_store(store) -> NodeEdgeStore:
    """
    Three modules importing each other:

        a.py --imports--> b.py --imports--> c.py
          \\______________calls_____________/
    """
    store.add_node("a", "module", {"path": "a.py", "lines": 10})
    store.add_node("b", "module", {"path": "b.py", "lines": 20})
    store.add_node("c", "module", {"path": "c.py", "lines": 10})
    store.add_edge("a", "b", "imports")
    store.add_edge("b", "c", "imports")
    store.add_edge("a", "c", "calls", {"count": 3})
    return store


# =============================================================================
# Nodes
# =============================================================================

class TestNodes:
    """Node record lifecycle."""

    def test_add_and_get(self, store):
        created = store.add_node("A", "module", {"path": "a.py"})
        fetched = store.get_node("A")

        assert created.id == "A"
        assert fetched.type == "module"
        assert fetched.properties == {"path": "a.py"}

    def test_get_missing_returns_none(self, store):
        assert store.get_node("nope") is None
        assert not store.has_node("nope")

    def test_returned_records_are_copies(self, store):
        store.add_node("A", "module", {"tags": ["x"]})
        node = store.get_node("A")
        node.properties["tags"].append("y")

        assert store.get_node("A").properties == {"tags": ["x"]}

    def test_properties_keep_insertion_order(self, store):
        store.add_node("A", "module", {"z": 1, "a": 2, "m": 3})
        assert list(store.get_node("A").properties) == ["z", "a", "m"]

    def test_upsert_replaces_record_and_keeps_edges(self, store):
        store.add_node("A", "module", {"v": 1})
        store.add_node("B", "module")
        store.add_edge("A", "B", "imports")

        store.add_node("A", "package", {"v": 2})

        assert store.get_node("A").type == "package"
        assert store.get_node("A").properties == {"v": 2}
        assert len(store.get_edges("A", Direction.OUTGOING)) == 1
        assert store.node_count == 2

    def test_reject_policy_raises(self):
        s = NodeEdgeStore(StoreConfig(duplicate_policy=DuplicatePolicy.REJECT))
        s.add_node("A", "module")

        with pytest.raises(DuplicateNode) as exc_info:
            s.add_node("A", "module")
        assert exc_info.value.node_id == "A"

    def test_empty_id_rejected(self, store):
        with pytest.raises(ValueError):
            store.add_node("", "module")

    def test_update_node_merges(self, module_store):
        assert module_store.update_node("a", {"lines": 99, "owner": "core"})

        props = module_store.get_node("a").properties
        assert props == {"path": "a.py", "lines": 99, "owner": "core"}

    def test_update_node_rejects_non_json_value(self, db_path):
        s = NodeEdgeStore(StoreConfig(database_path=db_path))
        s.add_node("A", "module", {"path": "a.py"})

        with pytest.raises(ValidationError):
            s.update_node("A", {"obj": Opaque()})
        assert s.get_node("A").properties == {"path": "a.py"}

        s.close()
        reopened = NodeEdgeStore(StoreConfig(database_path=db_path))
        assert reopened.get_node("A").properties == {"path": "a.py"}

    def test_update_missing_node(self, store):
        assert store.update_node("ghost", {"x": 1}) is False

    def test_delete_node_removes_incident_edges(self, module_store):
        assert module_store.delete_node("b")

        assert not module_store.has_node("b")
        assert module_store.edge_count == 1
        assert module_store.get_edges("a", Direction.OUTGOING)[0].type == "calls"
        assert module_store.delete_node("b") is False

    def test_query_nodes(self, module_store):
        found = module_store.query_nodes("module", {"lines": 10})
        assert [n.id for n in found] == ["a", "c"]

    def test_query_nodes_type_only(self, module_store):
        assert len(module_store.query_nodes("module")) == 3
        assert module_store.query_nodes("function") == []


# =============================================================================
# Edges
# =============================================================================

class TestEdges:
    """Edge insertion, lookup and removal."""

    def test_missing_endpoint_raises(self, store):
        store.add_node("A", "module")

        with pytest.raises(EdgeEndpointMissing) as exc_info:
            store.add_edge("A", "B", "imports")
        assert exc_info.value.missing == "B"
        assert store.edge_count == 0

    def test_auto_create_synthesizes_placeholders(self):
        s = NodeEdgeStore(StoreConfig(auto_create=True))
        s.add_edge("A", "B", "imports")

        assert s.node_count == 2
        assert s.get_node("B").type == "placeholder"
        assert s.is_placeholder("A")

    def test_placeholder_can_be_replaced_under_reject(self):
        s = NodeEdgeStore(
            StoreConfig(auto_create=True, duplicate_policy=DuplicatePolicy.REJECT)
        )
        s.add_edge("A", "B", "imports")
        s.add_node("B", "module", {"path": "b.py"})

        assert s.get_node("B").type == "module"
        assert not s.is_placeholder("B")

    def test_parallel_edges_are_kept(self, store):
        store.add_node("A", "module")
        store.add_node("B", "module")
        first = store.add_edge("A", "B", "imports")
        second = store.add_edge("A", "B", "imports")

        assert store.edge_count == 2
        assert second.key > first.key

    def test_get_edges_directions(self, module_store):
        outgoing = module_store.get_edges("b", Direction.OUTGOING)
        incoming = module_store.get_edges("b", Direction.INCOMING)
        both = module_store.get_edges("b")

        assert [(e.source, e.target) for e in outgoing] == [("b", "c")]
        assert [(e.source, e.target) for e in incoming] == [("a", "b")]
        assert len(both) == 2

    def test_get_edges_in_insertion_order(self, module_store):
        edges = module_store.get_edges("a", Direction.OUTGOING)
        assert [e.type for e in edges] == ["imports", "calls"]

    def test_get_edges_filtered_by_type(self, module_store):
        edges = module_store.get_edges("a", Direction.OUTGOING, ["calls"])
        assert [e.target for e in edges] == ["c"]

    def test_get_edges_unknown_node(self, store):
        assert store.get_edges("ghost") == []

    def test_self_loop_listed_once(self, store):
        store.add_node("A", "module")
        store.add_edge("A", "A", "recurses")

        assert len(store.get_edges("A", Direction.BOTH)) == 1

    def test_update_edge(self, module_store):
        updated = module_store.update_edge("a", "c", "calls", {"count": 4})

        assert updated == 1
        edge = module_store.get_edges("a", Direction.OUTGOING, ["calls"])[0]
        assert edge.properties == {"count": 4}

    def test_update_edge_rejects_non_json_value(self, module_store):
        module_store.add_edge("a", "c", "calls", {"count": 1})

        with pytest.raises(ValidationError):
            module_store.update_edge("a", "c", "calls", {"obj": Opaque()})

        edges = module_store.get_edges("a", Direction.OUTGOING, ["calls"])
        assert [e.properties for e in edges] == [{"count": 3}, {"count": 1}]

    def test_delete_edge_by_type(self, module_store):
        assert module_store.delete_edge("a", "c", "imports") == 0
        assert module_store.delete_edge("a", "c", "calls") == 1
        assert module_store.edge_count == 2

    def test_edge_serializes_with_from_to(self, module_store):
        edge = module_store.edges()[0]
        dumped = edge.model_dump(by_alias=True)

        assert dumped["from"] == "a"
        assert dumped["to"] == "b"
        assert Edge.model_validate(dumped) == edge


# =============================================================================
# Aggregates and batches
# =============================================================================

class TestAggregates:

    def test_graph_stats(self, module_store):
        stats = module_store.get_graph_stats()

        assert stats.node_count == 3
        assert stats.edge_count == 3
        assert stats.nodes_by_type == {"module": 3}
        assert stats.edges_by_type == {"imports": 2, "calls": 1}
        assert stats.to_dict()["edge_count"] == 3

    def test_clear(self, module_store):
        module_store.clear()
        module_store.clear()

        assert module_store.node_count == 0
        assert module_store.edge_count == 0

    def test_batch_collects_recoverable_errors(self, store):
        result = store.batch([
            {"op": "add_node", "node": {"id": "A", "type": "module"}},
            {"op": "add_node", "node": {"id": "B", "type": "module"}},
            {"op": "add_edge", "edge": {"from": "A", "to": "B", "type": "imports"}},
            {"op": "add_edge", "edge": {"from": "A", "to": "Z", "type": "imports"}},
            BatchOperation(op="update_node", id="A", properties={"v": 1}),
        ])

        assert result.operations == 5
        assert result.nodes_affected == 3
        assert result.edges_affected == 1
        assert not result.success
        assert isinstance(result.errors[0], EdgeEndpointMissing)
        assert store.get_node("A").properties == {"v": 1}

    def test_batch_update_missing_node(self, store):
        result = store.batch([{"op": "update_node", "id": "ghost", "properties": {"x": 1}}])
        assert isinstance(result.errors[0], NodeNotFound)

    def test_snapshot_is_isolated(self, module_store):
        copy = module_store.snapshot()
        module_store.add_node("d", "module")
        module_store.delete_edge("a", "b", "imports")

        assert not copy.has_node("d")
        assert copy.edge_count == 3
        assert [e.key for e in copy.edges()] == [0, 1, 2]


# =============================================================================
# Lifecycle and persistence
# =============================================================================

class TestLifecycle:

    def test_operations_after_close_raise(self, store):
        store.close()

        with pytest.raises(ClosedStore):
            store.add_node("A", "module")
        with pytest.raises(ClosedStore):
            store.get_node("A")

    def test_close_is_idempotent(self, store):
        store.close()
        store.close()
        assert store.closed

    def test_context_manager_flushes(self, db_path):
        with NodeEdgeStore(StoreConfig(database_path=db_path)) as s:
            s.add_node("A", "module")

        assert db_path.exists()
        reopened = NodeEdgeStore(StoreConfig(database_path=db_path))
        assert reopened.has_node("A")

    def test_flush_survives_restart(self, db_path):
        config = StoreConfig(database_path=db_path, auto_create=True)
        s = NodeEdgeStore(config)
        s.add_node("A", "module", {"path": "a.py"})
        s.add_edge("A", "B", "imports", {"line": 3})
        s.flush()

        # Simulate abrupt termination: no close(), writes after flush are lost
        s.add_node("C", "module")

        restarted = NodeEdgeStore(config)
        assert restarted.has_node("A")
        assert not restarted.has_node("C")
        assert restarted.is_placeholder("B")

        edge = restarted.get_edges("A", Direction.OUTGOING)[0]
        assert edge.target == "B"
        assert edge.properties == {"line": 3}

    def test_edge_keys_continue_after_reload(self, db_path):
        config = StoreConfig(database_path=db_path, auto_create=True)
        with NodeEdgeStore(config) as s:
            s.add_edge("A", "B", "imports")
            s.add_edge("B", "C", "imports")

        with NodeEdgeStore(config) as s:
            edge = s.add_edge("C", "A", "imports")
            assert edge.key == 2

    def test_auto_flush(self, db_path):
        s = NodeEdgeStore(StoreConfig(database_path=db_path, auto_flush=True))
        s.add_node("A", "module")

        document = json.loads(db_path.read_text())
        assert document["version"] == "1.0"
        assert document["metadata"]["node_count"] == 1
        assert not s.dirty

    def test_snapshot_document_shape(self, db_path):
        with NodeEdgeStore(StoreConfig(database_path=db_path)) as s:
            s.add_node("A", "module")
            s.add_node("B", "module")
            s.add_edge("A", "B", "imports")

        document = json.loads(db_path.read_text())
        assert document["edges"][0]["from"] == "A"
        assert document["edges"][0]["to"] == "B"
        assert document["next_edge_key"] == 1
        assert document["metadata"]["edge_count"] == 1

    def test_malformed_json_raises(self, db_path):
        db_path.write_text("{not json")

        with pytest.raises(SerializationError):
            NodeEdgeStore(StoreConfig(database_path=db_path))

    def test_wrong_shape_raises(self, db_path):
        db_path.write_text(json.dumps([1, 2, 3]))

        with pytest.raises(SerializationError):
            NodeEdgeStore(StoreConfig(database_path=db_path))

    def test_dangling_edge_in_snapshot_raises(self, db_path):
        db_path.write_text(json.dumps({
            "version": "1.0",
            "nodes": [{"id": "A", "type": "module"}],
            "edges": [{"from": "A", "to": "B", "type": "imports", "key": 0}],
        }))

        with pytest.raises(SerializationError):
            NodeEdgeStore(StoreConfig(database_path=db_path))

    def test_unwritable_path_raises_storage_error(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        s = NodeEdgeStore(StoreConfig(database_path=blocker / "graph.json"))
        s.add_node("A", "module")

        with pytest.raises(StorageIOError):
            s.flush()
