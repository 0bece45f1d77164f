"""
Governance Audit Log

Builds the append-only audit entries written for every change request
creation and every resolution, replays them to rebuild request state, and
provides a PostgreSQL-backed sink for them.

Every write goes through ``append_change`` so the governor never depends
on which sink is configured.
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Iterable, Optional
from uuid import uuid4

import psycopg2
import psycopg2.errors

from change_governor.models import (
    ChangeAction,
    ChangeRequest,
    ChangeRequestStatus,
    GraphChange,
    GraphChangeType,
    InitiatorType,
)

logger = logging.getLogger(__name__)

DB_CONFIG = {
    "host": os.environ.get("GOVERNOR_DB_HOST", "localhost"),
    "port": int(os.environ.get("GOVERNOR_DB_PORT", "5433")),
    "dbname": os.environ.get("GOVERNOR_DB_NAME", "governance_control_plane"),
    "user": os.environ.get("GOVERNOR_DB_USER", "admin"),
    "password": os.environ.get("GOVERNOR_DB_PASSWORD", "password123"),
}

FIELD_PREFIX = "governance:"
APPROVAL_FIELD = "governance:approval"
REJECTION_FIELD = "governance:rejection"
DETECTED_VIA = "manual"

_ACTION_CHANGE_TYPES = {
    ChangeAction.CREATE: GraphChangeType.NODE_CREATED,
    ChangeAction.DELETE: GraphChangeType.NODE_DELETED,
    ChangeAction.UPDATE: GraphChangeType.NODE_UPDATED,
    ChangeAction.SCALE: GraphChangeType.NODE_UPDATED,
    ChangeAction.RECONFIGURE: GraphChangeType.NODE_UPDATED,
}


# ---------------------------------------------------------------------------
# Entry builders
# ---------------------------------------------------------------------------

def action_to_change_type(action: ChangeAction | str) -> GraphChangeType:
    return _ACTION_CHANGE_TYPES[ChangeAction(action)]


def build_creation_entry(request: ChangeRequest) -> GraphChange:
    """Audit entry for a newly intercepted request.

    ``new_value`` carries the full serialized request so the registry can
    be rebuilt from the log alone.
    """
    return GraphChange(
        id=str(uuid4()),
        target_id=request.target_resource_id,
        change_type=action_to_change_type(request.action),
        field=f"{FIELD_PREFIX}{request.action.value}",
        previous_value=None,
        new_value=request.model_dump_json(),
        detected_at=request.created_at,
        detected_via=DETECTED_VIA,
        correlation_id=request.id,
        initiator=request.initiator,
        initiator_type=request.initiator_type,
        metadata={
            "governanceRequest": True,
            "action": request.action.value,
            "riskScore": request.risk.score,
            "riskLevel": request.risk.level.value,
            "status": request.status.value,
            "policyViolations": list(request.policy_violations),
        },
    )


def build_resolution_entry(request: ChangeRequest) -> GraphChange:
    """Audit entry for a manual approval or rejection."""
    if request.status == ChangeRequestStatus.APPROVED:
        field = APPROVAL_FIELD
    elif request.status == ChangeRequestStatus.REJECTED:
        field = REJECTION_FIELD
    else:
        raise ValueError(f"Request {request.id} is not manually resolved ({request.status.value})")

    return GraphChange(
        id=str(uuid4()),
        target_id=request.target_resource_id,
        change_type=GraphChangeType.NODE_UPDATED,
        field=field,
        previous_value=ChangeRequestStatus.PENDING.value,
        new_value=request.status.value,
        detected_at=request.resolved_at,
        detected_via=DETECTED_VIA,
        correlation_id=request.id,
        initiator=request.resolved_by,
        initiator_type=InitiatorType.HUMAN,
        metadata={
            "requestId": request.id,
            "reason": request.reason,
            "riskScore": request.risk.score,
            "riskLevel": request.risk.level.value,
        },
    )


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------

def replay_changes(changes: Iterable[GraphChange]) -> list[ChangeRequest]:
    """Rebuild change requests from governance audit entries.

    Creation entries are applied first, then resolutions in log order. A
    resolution for an unknown or already-resolved request is skipped.
    Non-governance entries are ignored.
    """
    creations: list[GraphChange] = []
    resolutions: list[GraphChange] = []
    for change in changes:
        if not change.field or not change.field.startswith(FIELD_PREFIX):
            continue
        if change.field in (APPROVAL_FIELD, REJECTION_FIELD):
            resolutions.append(change)
        else:
            creations.append(change)

    requests: dict[str, ChangeRequest] = {}
    for change in creations:
        if change.new_value is None:
            continue
        request = ChangeRequest.model_validate_json(change.new_value)
        requests[request.id] = request

    for change in resolutions:
        request = requests.get(change.correlation_id or "")
        if request is None or request.status != ChangeRequestStatus.PENDING:
            logger.warning(
                "Skipping resolution %s for request %s: no pending request",
                change.id, change.correlation_id,
            )
            continue
        status = (
            ChangeRequestStatus.APPROVED if change.field == APPROVAL_FIELD
            else ChangeRequestStatus.REJECTED
        )
        reason = change.metadata.get("reason")
        requests[request.id] = request.model_copy(update={
            "status": status,
            "resolved_at": change.detected_at,
            "resolved_by": change.initiator,
            "reason": str(reason) if reason is not None else None,
        })

    return list(requests.values())


# ---------------------------------------------------------------------------
# PostgreSQL sink
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS governance_changes (
    seq             BIGSERIAL PRIMARY KEY,
    id              TEXT NOT NULL UNIQUE,
    target_id       TEXT NOT NULL,
    change_type     TEXT NOT NULL,
    field           TEXT,
    previous_value  TEXT,
    new_value       TEXT,
    detected_at     TIMESTAMPTZ NOT NULL,
    detected_via    TEXT NOT NULL,
    correlation_id  TEXT,
    initiator       TEXT,
    initiator_type  TEXT,
    metadata        JSONB NOT NULL DEFAULT '{}'::jsonb
);
CREATE INDEX IF NOT EXISTS governance_changes_correlation_idx
    ON governance_changes (correlation_id);
"""

_COLUMNS = (
    "id, target_id, change_type, field, previous_value, new_value, "
    "detected_at, detected_via, correlation_id, initiator, initiator_type, metadata"
)


class PostgresChangeLog:
    """
    Append-only writer for the governance_changes ledger.

    Rows are only ever inserted. Transient deadlocks and serialization
    failures are retried here, inside the sink; any other failure is
    raised to the caller.
    """

    def __init__(self, db_config: dict | None = None):
        self._db_config = db_config or DB_CONFIG

    def _connect(self):
        return psycopg2.connect(**self._db_config)

    def ensure_schema(self) -> None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(SCHEMA_SQL)
            conn.commit()
            cur.close()
        finally:
            conn.close()

    def append_change(self, change: GraphChange, _max_retries: int = 3) -> None:
        params = (
            change.id,
            change.target_id,
            change.change_type.value,
            change.field,
            change.previous_value,
            change.new_value,
            change.detected_at,
            change.detected_via,
            change.correlation_id,
            change.initiator,
            change.initiator_type.value if change.initiator_type else None,
            json.dumps(change.metadata),
        )
        for attempt in range(_max_retries):
            conn = self._connect()
            try:
                cur = conn.cursor()
                cur.execute(
                    f"INSERT INTO governance_changes ({_COLUMNS}) "
                    "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                    params,
                )
                conn.commit()
                cur.close()
                return
            except (psycopg2.errors.DeadlockDetected, psycopg2.errors.SerializationFailure):
                conn.rollback()
                if attempt < _max_retries - 1:
                    logger.warning("append_change retry %d for %s", attempt + 1, change.id)
                    time.sleep(0.05 * (attempt + 1))
                    continue
                raise
            finally:
                conn.close()
        raise RuntimeError("append_change: exhausted retries")

    def get_changes(
        self,
        correlation_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[GraphChange]:
        """Read entries back in append order. SELECT-only."""
        sql = f"SELECT {_COLUMNS} FROM governance_changes"
        params: list[Any] = []
        if correlation_id is not None:
            sql += " WHERE correlation_id = %s"
            params.append(correlation_id)
        sql += " ORDER BY seq ASC"
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)

        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(sql, tuple(params))
            rows = cur.fetchall()
            cur.close()
        finally:
            conn.close()

        return [_row_to_change(row) for row in rows]


def _row_to_change(row) -> GraphChange:
    metadata = row[11]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return GraphChange(
        id=row[0],
        target_id=row[1],
        change_type=row[2],
        field=row[3],
        previous_value=row[4],
        new_value=row[5],
        detected_at=row[6],
        detected_via=row[7],
        correlation_id=row[8],
        initiator=row[9],
        initiator_type=row[10],
        metadata=metadata or {},
    )
