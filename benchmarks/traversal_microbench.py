#!/usr/bin/env python3
"""
Traversal Micro-benchmark Harness.

Benchmarks TraversalEngine operations and AttributeIndex composite queries
over deterministic synthetic grid graphs.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime, timezone
import json
import math
from pathlib import Path
import random
import statistics
import sys
import time
import tracemalloc
from typing import Any, Callable, Optional

# Ensure repository root is importable when executing this file directly.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from trellis.core import NodeEdgeStore, StoreConfig, TraversalEngine, TraversalPattern
from trellis.index import AttributeIndex


NODE_KINDS = ("module", "function", "class", "section")
EDGE_KINDS = ("imports", "calls")


@dataclass(frozen=True)
class ScenarioConfig:
    """Benchmark scenario configuration."""

    grid_size: int
    depth: int
    back_edge_ratio: float
    warmup_runs: int
    measured_runs: int
    seed: int


def build_synthetic_store(grid_size: int, back_edge_ratio: float, seed: int) -> NodeEdgeStore:
    """
    Build a deterministic directed grid.

    Edges point right and down; a seeded fraction of cells also gets an edge
    pointing back up-left so cycle detection has work to do.
    """
    rng = random.Random(seed)
    store = NodeEdgeStore(StoreConfig(max_traversal_depth=max(64, grid_size * 2)))

    for row in range(grid_size):
        for col in range(grid_size):
            store.add_node(
                f"n{row}_{col}",
                NODE_KINDS[(row + col) % len(NODE_KINDS)],
                {"row": row, "col": col, "path": f"pkg{row}/mod{col}.py"},
            )

    for row in range(grid_size):
        for col in range(grid_size):
            node = f"n{row}_{col}"
            kind = EDGE_KINDS[(row + col) % len(EDGE_KINDS)]
            if col < grid_size - 1:
                store.add_edge(node, f"n{row}_{col + 1}", kind)
            if row < grid_size - 1:
                store.add_edge(node, f"n{row + 1}_{col}", kind)
            if row > 0 and col > 0 and rng.random() < back_edge_ratio:
                store.add_edge(node, f"n{row - 1}_{col - 1}", "calls")

    return store


def percentile(values: list[float], percentile_rank: float) -> float:
    """Compute percentile with linear interpolation."""
    if not values:
        return 0.0
    ordered = sorted(values)
    if len(ordered) == 1:
        return ordered[0]

    position = (len(ordered) - 1) * percentile_rank
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return ordered[lower]

    fraction = position - lower
    return ordered[lower] + (ordered[upper] - ordered[lower]) * fraction


def summarize(samples: list[float]) -> dict[str, float]:
    return {
        "min": min(samples),
        "max": max(samples),
        "mean": statistics.mean(samples),
        "median": statistics.median(samples),
        "p95": percentile(samples, 0.95),
    }


def measure(
    operation: Callable[[], Any],
    warmup_runs: int,
    measured_runs: int,
) -> tuple[dict[str, float], dict[str, float], Any]:
    """Time one operation; returns latency stats, peak memory stats and the last result."""
    for _ in range(warmup_runs):
        operation()

    latencies_ms: list[float] = []
    peak_memory_mib: list[float] = []
    result: Any = None

    for _ in range(measured_runs):
        tracemalloc.start()
        started = time.perf_counter()
        result = operation()
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        _, peak_bytes = tracemalloc.get_traced_memory()
        tracemalloc.stop()

        latencies_ms.append(elapsed_ms)
        peak_memory_mib.append(peak_bytes / (1024.0 * 1024.0))

    return summarize(latencies_ms), summarize(peak_memory_mib), result


def run_scenario(config: ScenarioConfig) -> dict[str, Any]:
    """Run one benchmark scenario and return structured metrics."""
    store = build_synthetic_store(config.grid_size, config.back_edge_ratio, config.seed)
    engine = TraversalEngine(store)
    index = AttributeIndex()
    index.index_nodes(store.nodes())

    last = f"n{config.grid_size - 1}_{config.grid_size - 1}"
    operations: dict[str, Callable[[], Any]] = {
        "shortest_path": lambda: engine.shortest_path("n0_0", last),
        "find_connected": lambda: engine.find_connected("n0_0", config.depth),
        "traverse": lambda: engine.traverse(
            TraversalPattern(start_node="n0_0", max_depth=min(config.depth, 8))
        ),
        "detect_cycles": lambda: engine.detect_cycles(),
        "find_by_attributes": lambda: index.find_by_attributes(
            [
                {"attribute": "type", "value": "module"},
                {"attribute": "path", "value": "pkg1/", "operator": "starts_with"},
            ],
            mode="AND",
        ),
    }

    results: dict[str, Any] = {}
    for name, operation in operations.items():
        latency, memory, output = measure(operation, config.warmup_runs, config.measured_runs)
        results[name] = {
            "latency_ms": latency,
            "peak_memory_mib": memory,
            "result_size": 0 if output is None else len(getattr(output, "nodes", output)),
        }

    stats = store.get_graph_stats()
    return {
        "scenario": {
            "grid_size": config.grid_size,
            "depth": config.depth,
            "back_edge_ratio": config.back_edge_ratio,
            "seed": config.seed,
            "warmup_runs": config.warmup_runs,
            "measured_runs": config.measured_runs,
        },
        "graph": {
            "nodes": stats.node_count,
            "edges": stats.edge_count,
            "edges_by_type": stats.edges_by_type,
        },
        "index": index.get_statistics().to_dict(),
        "operations": results,
    }


def print_human_summary(result: dict[str, Any]) -> None:
    """Print compact human-readable summary for CLI runs."""
    scenario = result["scenario"]
    graph = result["graph"]

    print(
        f"[Scenario] grid={scenario['grid_size']}x{scenario['grid_size']}, "
        f"depth={scenario['depth']}, runs={scenario['measured_runs']}"
    )
    print(f"  Graph: nodes={graph['nodes']}, edges={graph['edges']}")
    for name, metrics in result["operations"].items():
        latency = metrics["latency_ms"]
        print(
            f"  {name}: mean={latency['mean']:.2f}ms, p95={latency['p95']:.2f}ms, "
            f"results={metrics['result_size']}"
        )


def evaluate_threshold_warnings(
    result: dict[str, Any],
    warn_mean_latency_ms: Optional[float],
    warn_p95_latency_ms: Optional[float],
) -> list[str]:
    """Evaluate optional latency thresholds for every operation of one scenario."""
    warnings: list[str] = []
    grid = result["scenario"]["grid_size"]

    for name, metrics in result["operations"].items():
        latency = metrics["latency_ms"]
        if warn_mean_latency_ms is not None and latency["mean"] > warn_mean_latency_ms:
            warnings.append(
                f"grid={grid} {name}: mean latency {latency['mean']:.2f} ms "
                f"exceeds {warn_mean_latency_ms:.2f} ms"
            )
        if warn_p95_latency_ms is not None and latency["p95"] > warn_p95_latency_ms:
            warnings.append(
                f"grid={grid} {name}: p95 latency {latency['p95']:.2f} ms "
                f"exceeds {warn_p95_latency_ms:.2f} ms"
            )

    return warnings


def main() -> None:
    parser = argparse.ArgumentParser(description="Benchmark graph traversal and attribute queries.")
    parser.add_argument(
        "--grid-sizes",
        nargs="+",
        type=int,
        default=[10, 30],
        help="Grid sizes to benchmark (N produces N*N nodes).",
    )
    parser.add_argument(
        "--depth",
        type=int,
        default=6,
        help="Depth used for find_connected (traverse is capped at 8).",
    )
    parser.add_argument(
        "--back-edge-ratio",
        type=float,
        default=0.05,
        help="Fraction of cells given a cycle-closing back edge.",
    )
    parser.add_argument("--warmup-runs", type=int, default=1, help="Warmup iterations per operation.")
    parser.add_argument("--runs", type=int, default=3, help="Measured iterations per operation.")
    parser.add_argument(
        "--seed",
        type=int,
        default=7,
        help="Random seed for deterministic fixture generation.",
    )
    parser.add_argument(
        "--output",
        type=str,
        default="",
        help="Optional path to write JSON results.",
    )
    parser.add_argument(
        "--warn-mean-latency-ms",
        type=float,
        default=None,
        help="Optional warning threshold for mean latency per operation.",
    )
    parser.add_argument(
        "--warn-p95-latency-ms",
        type=float,
        default=None,
        help="Optional warning threshold for p95 latency per operation.",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit non-zero when any warning threshold is exceeded.",
    )
    args = parser.parse_args()

    started_at = datetime.now(timezone.utc).isoformat()
    results: list[dict[str, Any]] = []
    warnings: list[str] = []

    for grid_size in args.grid_sizes:
        scenario = ScenarioConfig(
            grid_size=grid_size,
            depth=args.depth,
            back_edge_ratio=args.back_edge_ratio,
            warmup_runs=args.warmup_runs,
            measured_runs=args.runs,
            seed=args.seed,
        )
        result = run_scenario(scenario)
        results.append(result)
        print_human_summary(result)
        warnings.extend(
            evaluate_threshold_warnings(
                result=result,
                warn_mean_latency_ms=args.warn_mean_latency_ms,
                warn_p95_latency_ms=args.warn_p95_latency_ms,
            )
        )

    if warnings:
        print("[Warnings]")
        for warning in warnings:
            print(f"  - {warning}")

    payload = {
        "benchmark": "traversal_microbench",
        "started_at": started_at,
        "python": {
            "version": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        },
        "results": results,
        "warnings": warnings,
    }

    if args.output:
        with open(args.output, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        print(f"[Output] wrote JSON results to {args.output}")
    else:
        print(json.dumps(payload, indent=2))

    if args.strict and warnings:
        raise SystemExit(2)


if __name__ == "__main__":
    main()
