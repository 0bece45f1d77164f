"""
Collaborator Contracts

The governor consumes graph storage, blast-radius traversal and an
append-only audit sink. All three are owned elsewhere; only their call
shapes are fixed here. Implementations may raise: the governor propagates
those errors to its own caller and never retries.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from change_governor.models import BlastRadius, GraphChange, GraphEdge, GraphNode

DOWNSTREAM = "downstream"


@runtime_checkable
class AuditSink(Protocol):
    def append_change(self, change: GraphChange) -> None:
        """Durably append one audit entry. Must raise rather than drop."""
        ...


@runtime_checkable
class GraphStorage(AuditSink, Protocol):
    def get_node(self, node_id: str) -> Optional[GraphNode]:
        ...

    def get_edges_for_node(self, node_id: str, direction: str) -> list[GraphEdge]:
        ...


@runtime_checkable
class GraphEngine(Protocol):
    def get_blast_radius(self, node_id: str, max_depth: int) -> BlastRadius:
        """Resources transitively affected by a change to ``node_id``."""
        ...
