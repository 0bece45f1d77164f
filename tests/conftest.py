"""
Shared fixtures for the change governor test suite.

Usage:  python -m pytest tests/
"""

from __future__ import annotations

import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Ensure project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from change_governor.governor import ChangeGovernor
from change_governor.models import BlastRadius, GraphEdge, GraphNode

NOON = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


class FakeGraph:
    """In-memory stand-in for graph storage, blast radius and the audit sink."""

    def __init__(self):
        self.nodes: dict[str, GraphNode] = {}
        self.edges: list[GraphEdge] = []
        self.blast: dict[str, BlastRadius] = {}
        self.changes = []
        self.fail_on = set()        # operation names that should raise
        self._lock = threading.Lock()

    # -- setup helpers --

    def add_node(self, node_id, resource_type="compute", tags=None, metadata=None,
                 cost_monthly=None):
        node = GraphNode(
            id=node_id,
            resource_type=resource_type,
            tags=tags or {},
            metadata=metadata or {},
            cost_monthly=cost_monthly,
        )
        self.nodes[node_id] = node
        return node

    def add_dependents(self, node_id, count):
        for i in range(count):
            self.edges.append(GraphEdge(
                id=f"{node_id}-edge-{len(self.edges)}",
                source_node_id=node_id,
                target_node_id=f"{node_id}-dep-{i}",
            ))

    def set_blast_radius(self, node_id, size, cost=0.0):
        self.blast[node_id] = BlastRadius(
            nodes={f"{node_id}-br-{i}" for i in range(size)},
            total_cost_monthly=cost,
        )

    def _maybe_fail(self, op):
        if op in self.fail_on:
            raise RuntimeError(f"{op} unavailable")

    # -- collaborator contract --

    def get_node(self, node_id):
        self._maybe_fail("get_node")
        return self.nodes.get(node_id)

    def get_edges_for_node(self, node_id, direction):
        self._maybe_fail("get_edges_for_node")
        assert direction == "downstream"
        return [e for e in self.edges if e.source_node_id == node_id]

    def get_blast_radius(self, node_id, max_depth):
        self._maybe_fail("get_blast_radius")
        return self.blast.get(node_id, BlastRadius())

    def append_change(self, change):
        self._maybe_fail("append_change")
        with self._lock:
            self.changes.append(change)


class Clock:
    """Settable clock; each call returns the current value."""

    def __init__(self, now=NOON):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_governor(graph, clock):
    def _make(config=None, **kwargs):
        return ChangeGovernor(graph, graph, config=config, clock=clock, **kwargs)
    return _make


@pytest.fixture
def governor(make_governor):
    return make_governor()
