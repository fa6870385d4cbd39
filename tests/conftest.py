"""Pytest configuration and fixtures."""

import random
from typing import List, Optional, Tuple

import pytest

from flowengine.config import get_testing_config, reset_config
from flowengine.core.builtin_executors import ScriptedExecutor, build_default_registry
from flowengine.core.execution_engine import ExecutionEngine
from flowengine.core.monitoring import MonitoringAggregator
from flowengine.models.core import Edge, Graph, Node, NodeKind, RunOptions


def make_graph(
    nodes: List[Tuple[str, NodeKind]],
    edges: List[Tuple],
    graph_id: str = "wf-test",
    configs: Optional[dict] = None,
) -> Graph:
    """Build a graph from ``(id, kind)`` pairs and ``(source, target[, tag])`` tuples."""
    configs = configs or {}
    return Graph(
        id=graph_id,
        name=graph_id,
        nodes=[Node(id=node_id, kind=kind, config=configs.get(node_id, {})) for node_id, kind in nodes],
        edges=[Edge(source=edge[0], target=edge[1], branch_tag=edge[2] if len(edge) > 2 else None)
               for edge in edges],
    )


@pytest.fixture(autouse=True)
def reset_global_config():
    """Keep the global configuration from leaking between tests."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def testing_config():
    return get_testing_config()


@pytest.fixture
def monitor():
    return MonitoringAggregator(history_limit=10)


@pytest.fixture
def engine(monitor):
    """Engine with a seeded jitter source, reporting to ``monitor``."""
    return ExecutionEngine(monitor=monitor, max_concurrent_runs=5, rng=random.Random(7))


@pytest.fixture
def fast_options():
    """Sequential options without backoff waits."""
    return RunOptions(base_delay=0.0, max_delay=0.0)


@pytest.fixture
def scripted():
    return ScriptedExecutor()


@pytest.fixture
def default_registry():
    registry = build_default_registry()
    yield registry
    registry.shutdown()


@pytest.fixture
def linear_graph():
    """Trigger T feeding A feeding B."""
    return make_graph(
        [("T", NodeKind.TRIGGER), ("A", NodeKind.ACTION), ("B", NodeKind.ACTION)],
        [("T", "A"), ("A", "B")],
        graph_id="wf-linear",
    )


@pytest.fixture
def diamond_graph():
    """T fans out to A and B, which both lead to C."""
    return make_graph(
        [("T", NodeKind.TRIGGER), ("A", NodeKind.ACTION), ("B", NodeKind.ACTION), ("C", NodeKind.ACTION)],
        [("T", "A"), ("T", "B"), ("A", "C"), ("B", "C")],
        graph_id="wf-diamond",
    )


@pytest.fixture
def branching_graph():
    """T feeds A feeding condition C, which branches to X (true) or Y (false)."""
    return make_graph(
        [("T", NodeKind.TRIGGER), ("A", NodeKind.ACTION), ("C", NodeKind.CONDITION),
         ("X", NodeKind.ACTION), ("Y", NodeKind.ACTION)],
        [("T", "A"), ("A", "C"), ("C", "X", "true"), ("C", "Y", "false")],
        graph_id="wf-branching",
    )


@pytest.fixture
def build_graph():
    """Factory fixture exposing :func:`make_graph`."""
    return make_graph
