"""
Audit Log Test Suite
Entry builders, replaying the log into a fresh governor, and the
PostgreSQL sink (psycopg2 connection mocked).

Usage:  python -m pytest tests/test_audit.py
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg2.errors
import pytest

from change_governor.audit import (
    PostgresChangeLog,
    action_to_change_type,
    build_creation_entry,
    build_resolution_entry,
    replay_changes,
)
from change_governor.governor import ChangeGovernor
from change_governor.models import (
    ChangeRequestStatus,
    GraphChange,
    GraphChangeType,
    InitiatorType,
)


def _intercept(governor, target, **kwargs):
    params = dict(
        initiator="alice",
        initiator_type="human",
        target_resource_id=target,
        resource_type="compute",
        provider="aws",
        action="update",
    )
    params.update(kwargs)
    return governor.intercept_change(**params)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def test_action_to_change_type():
    assert action_to_change_type("create") == GraphChangeType.NODE_CREATED
    assert action_to_change_type("delete") == GraphChangeType.NODE_DELETED
    for action in ("update", "scale", "reconfigure"):
        assert action_to_change_type(action) == GraphChangeType.NODE_UPDATED


def test_resolution_entry_requires_manual_resolution(governor, graph):
    graph.add_node("svc-1", tags={"env": "dev"})
    auto = _intercept(governor, "svc-1")
    assert auto.status == ChangeRequestStatus.AUTO_APPROVED
    with pytest.raises(ValueError):
        build_resolution_entry(auto)


def test_approval_entry(governor, graph):
    graph.set_blast_radius("svc-1", 6)
    req = _intercept(governor, "svc-1")
    approved = governor.approve_change(req.id, "ops-lead", "fine")
    entry = build_resolution_entry(approved)
    assert entry.field == "governance:approval"
    assert entry.new_value == "approved"
    assert entry.initiator_type == InitiatorType.HUMAN
    assert entry.detected_at == approved.resolved_at


def test_creation_entry_is_frozen(governor, graph):
    req = _intercept(governor, "svc-1")
    entry = build_creation_entry(req)
    with pytest.raises(Exception):
        entry.field = "tampered"


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------

def test_restore_rebuilds_registry(governor, graph, clock):
    graph.add_node("svc-1", tags={"env": "dev"})
    graph.add_node("svc-2", tags={"env": "dev"})
    graph.set_blast_radius("svc-2", 8)

    auto = _intercept(governor, "svc-1")
    approved = governor.approve_change(_intercept(governor, "svc-2").id, "ops-lead", "ok")
    rejected = governor.reject_change(_intercept(governor, "svc-2").id, "ops-lead", "no")
    pending = _intercept(governor, "svc-2", initiator="agent:bot", initiator_type="agent")

    fresh = ChangeGovernor(graph, graph, clock=clock)
    assert fresh.restore(graph.changes) == 4

    for original in (auto, approved, rejected, pending):
        assert fresh.get_request(original.id) == original
    assert fresh.get_audit_trail() == governor.get_audit_trail()

    # Restored pending requests can still be resolved
    assert fresh.approve_change(pending.id, "ops-lead").status == ChangeRequestStatus.APPROVED
    # Replaying again adds nothing
    assert fresh.restore(graph.changes) == 0


def test_restore_applies_logged_resolution_to_pending_request(governor, graph, clock):
    graph.set_blast_radius("svc-1", 6)
    req = _intercept(governor, "svc-1")
    creation = list(graph.changes)

    fresh = ChangeGovernor(graph, graph, clock=clock)
    assert fresh.restore(creation) == 1
    assert fresh.get_request(req.id).status == ChangeRequestStatus.PENDING

    rejected = governor.reject_change(req.id, "ops-lead", "too wide")
    assert fresh.restore(graph.changes) == 1
    assert fresh.get_request(req.id) == rejected
    assert fresh.get_pending_requests() == []

    # A resolved request is never overwritten by a later replay
    assert fresh.restore(graph.changes) == 0
    assert fresh.approve_change(req.id, "ops-lead") is None


def test_replay_ignores_foreign_and_orphan_entries(governor, graph):
    graph.set_blast_radius("svc-1", 6)
    req = _intercept(governor, "svc-1")
    governor.approve_change(req.id, "ops-lead")

    foreign = GraphChange(
        id="drift-1",
        target_id="svc-1",
        change_type=GraphChangeType.NODE_UPDATED,
        field="tags.Environment",
        new_value="staging",
        detected_at=datetime(2026, 3, 4, tzinfo=timezone.utc),
        detected_via="drift-scan",
    )
    orphan = graph.changes[1].model_copy(update={"id": "x", "correlation_id": "cr-gone"})

    # Resolution listed before its creation still applies
    replayed = replay_changes([graph.changes[1], foreign, orphan, graph.changes[0]])
    assert len(replayed) == 1
    assert replayed[0].status == ChangeRequestStatus.APPROVED
    assert replayed[0].resolved_by == "ops-lead"


# ---------------------------------------------------------------------------
# PostgreSQL sink
# ---------------------------------------------------------------------------

@pytest.fixture
def pg():
    with patch("change_governor.audit.psycopg2.connect") as connect:
        conn = MagicMock()
        cursor = MagicMock()
        conn.cursor.return_value = cursor
        connect.return_value = conn
        yield connect, conn, cursor


def _entry():
    return GraphChange(
        id="chg-1",
        target_id="svc-1",
        change_type=GraphChangeType.NODE_UPDATED,
        field="governance:update",
        new_value='{"id": "cr-1"}',
        detected_at=datetime(2026, 3, 4, 12, tzinfo=timezone.utc),
        correlation_id="cr-1",
        initiator="alice",
        initiator_type=InitiatorType.HUMAN,
        metadata={"riskScore": 12, "policyViolations": []},
    )


def test_append_change_inserts_row(pg):
    connect, conn, cursor = pg
    PostgresChangeLog({"host": "db"}).append_change(_entry())

    connect.assert_called_once_with(host="db")
    sql, params = cursor.execute.call_args[0]
    assert sql.startswith("INSERT INTO governance_changes")
    assert params[0] == "chg-1"
    assert params[2] == "node-updated"
    assert params[10] == "human"
    assert json.loads(params[11]) == {"riskScore": 12, "policyViolations": []}
    conn.commit.assert_called_once()
    conn.close.assert_called_once()


def test_append_change_retries_deadlocks(pg):
    connect, conn, cursor = pg
    cursor.execute.side_effect = [psycopg2.errors.DeadlockDetected("deadlock"), None]
    with patch("change_governor.audit.time.sleep"):
        PostgresChangeLog({}).append_change(_entry())
    assert cursor.execute.call_count == 2
    conn.rollback.assert_called_once()
    conn.commit.assert_called_once()


def test_append_change_raises_other_errors(pg):
    connect, conn, cursor = pg
    cursor.execute.side_effect = psycopg2.OperationalError("connection lost")
    with pytest.raises(psycopg2.OperationalError):
        PostgresChangeLog({}).append_change(_entry())
    conn.commit.assert_not_called()
    conn.close.assert_called_once()


def test_append_change_never_drops_silently(pg):
    connect, conn, cursor = pg
    with pytest.raises(RuntimeError):
        PostgresChangeLog({}).append_change(_entry(), _max_retries=0)
    connect.assert_not_called()


def test_get_changes_reads_rows(pg):
    connect, conn, cursor = pg
    entry = _entry()
    cursor.fetchall.return_value = [(
        entry.id, entry.target_id, "node-updated", entry.field, None, entry.new_value,
        entry.detected_at, "manual", "cr-1", "alice", "human",
        {"riskScore": 12, "policyViolations": []},
    )]
    changes = PostgresChangeLog({}).get_changes(correlation_id="cr-1", limit=5)

    sql, params = cursor.execute.call_args[0]
    assert "WHERE correlation_id = %s" in sql
    assert "ORDER BY seq ASC" in sql
    assert params == ("cr-1", 5)
    assert changes == [entry]


def test_governor_writes_through_postgres_sink(pg, graph, clock):
    connect, conn, cursor = pg
    governor = ChangeGovernor(graph, graph, audit=PostgresChangeLog({}), clock=clock)
    _intercept(governor, "svc-1")
    assert graph.changes == []
    assert cursor.execute.call_count == 1
    conn.commit.assert_called_once()
