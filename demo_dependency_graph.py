"""
Trellis Demo: Module Dependency Graph
=====================================
Builds a small import graph, queries it through the attribute index, and
reports reachability, import chains and circular dependencies.
"""

import logging
from pathlib import Path

from trellis.core import Direction, NodeEdgeStore, StoreConfig, TraversalEngine, TraversalPattern
from trellis.index import AttributeIndex

# Configuration
OUTPUT_DIR = Path("output")
GRAPH_FILE = OUTPUT_DIR / "demo_graph.json"
INDEX_FILE = OUTPUT_DIR / "demo_index.json"

MODULES = {
    "app.main": {"package": "app", "lines": 120, "tags": ["entrypoint"]},
    "app.routes": {"package": "app", "lines": 340, "tags": ["http"]},
    "app.models": {"package": "app", "lines": 210, "tags": ["db"]},
    "app.services": {"package": "app", "lines": 480, "tags": ["db", "http"]},
    "lib.cache": {"package": "lib", "lines": 90, "tags": []},
    "lib.config": {"package": "lib", "lines": 60, "tags": []},
}

IMPORTS = [
    ("app.main", "app.routes"),
    ("app.main", "lib.config"),
    ("app.routes", "app.services"),
    ("app.services", "app.models"),
    ("app.services", "lib.cache"),
    ("app.models", "app.services"),  # circular
    ("lib.cache", "lib.config"),
    ("lib.cache", "vendor.redis"),  # external, auto-created
]


def build_graph(store: NodeEdgeStore) -> None:
    """Load modules and import edges into the store."""
    for module, props in MODULES.items():
        store.add_node(module, "module", props)
    for source, target in IMPORTS:
        store.add_edge(source, target, "imports")

    stats = store.get_graph_stats()
    print(f"Graph built: {stats.node_count} nodes, {stats.edge_count} edges")
    print(f"  Node types: {stats.nodes_by_type}")


def build_index(store: NodeEdgeStore) -> AttributeIndex:
    """Index every module's type and properties."""
    index = AttributeIndex()
    index.index_nodes(store.nodes())
    print(f"Index built: {index.get_statistics().to_dict()}")
    return index


def report(store: NodeEdgeStore, index: AttributeIndex) -> None:
    engine = TraversalEngine(store)

    db_modules = index.find_by_attributes(
        [
            {"attribute": "package", "value": "app"},
            {"attribute": "tags", "value": "db"},
        ],
        mode="AND",
    )
    print(f"\nApp modules touching the database: {sorted(db_modules)}")

    reachable = engine.find_connected_from(db_modules, max_depth=2)
    print(f"Reachable from them within 2 imports: {sorted(reachable)}")

    dependents = engine.find_connected("lib.config", 3, Direction.INCOMING)
    print(f"Modules depending on lib.config: {sorted(dependents - {'lib.config'})}")

    path = engine.shortest_path("app.main", "vendor.redis")
    print(f"\nShortest import chain to vendor.redis: {path}")

    chains = engine.traverse(TraversalPattern(start_node="app.main", max_depth=3))
    print(f"Import chains from app.main (<= 3 hops): {len(chains)}")
    for chain in chains:
        print(f"  {' -> '.join(chain.nodes)}")

    cycles = engine.detect_cycles(edge_types=["imports"])
    print(f"\nCircular imports: {len(cycles)}")
    for cycle in cycles:
        print(f"  {' -> '.join(cycle)}")


def main():
    """Run the demo."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    print("=" * 60)
    print("TRELLIS DEMO: Module Dependency Graph")
    print("=" * 60)

    OUTPUT_DIR.mkdir(exist_ok=True)
    config = StoreConfig(database_path=GRAPH_FILE, auto_create=True)

    with NodeEdgeStore(config) as store:
        store.clear()
        build_graph(store)
        index = build_index(store)
        report(store, index)
        index.save(INDEX_FILE)

    print(f"\nGraph snapshot: {GRAPH_FILE}")
    print(f"Index snapshot: {INDEX_FILE}")


if __name__ == "__main__":
    main()
