"""
Audit Query & Summary

Filtering, ordering and aggregation over the request registry for audit
trails and governance dashboards.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from change_governor.models import (
    AuditQuery,
    ChangeRequest,
    ChangeRequestStatus,
    GovernanceSummary,
    RiskLevel,
    SummaryPeriod,
)
from change_governor.registry import RequestRegistry

DEFAULT_SUMMARY_WINDOW = timedelta(days=7)


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken to be UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _matches(request: ChangeRequest, query: AuditQuery) -> bool:
    if query.initiator is not None and request.initiator != query.initiator:
        return False
    if query.initiator_type is not None and request.initiator_type != query.initiator_type:
        return False
    if (
        query.target_resource_id is not None
        and request.target_resource_id != query.target_resource_id
    ):
        return False
    if query.action is not None and request.action != query.action:
        return False
    if query.status is not None and request.status != query.status:
        return False
    created = _as_utc(request.created_at)
    if query.since is not None and created < _as_utc(query.since):
        return False
    if query.until is not None and created > _as_utc(query.until):
        return False
    return True


def query_audit_trail(registry: RequestRegistry, query: AuditQuery) -> list[ChangeRequest]:
    """
    Filter requests, sort newest first, then apply the limit.

    Requests created at the same instant are ordered by registration,
    latest first, so repeated calls return the same order.
    """
    rows = [
        (seq, req) for seq, req in registry.snapshot()
        if _matches(req, query)
    ]
    rows.sort(key=lambda row: (_as_utc(row[1].created_at), row[0]), reverse=True)
    results = [req for _, req in rows]
    if query.limit is not None:
        results = results[: query.limit]
    return results


def pending_requests(registry: RequestRegistry) -> list[ChangeRequest]:
    return registry.filter(lambda req: req.status == ChangeRequestStatus.PENDING)


def summarize(
    registry: RequestRegistry,
    now: datetime,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> GovernanceSummary:
    """Aggregate counts by status, initiator and risk level over a window."""
    period_until = _as_utc(until) if until is not None else _as_utc(now)
    period_since = (
        _as_utc(since) if since is not None else _as_utc(now) - DEFAULT_SUMMARY_WINDOW
    )

    requests = query_audit_trail(
        registry, AuditQuery(since=period_since, until=period_until),
    )

    by_status = {status: 0 for status in ChangeRequestStatus}
    by_risk_level = {level: 0 for level in RiskLevel}
    by_initiator: dict[str, int] = {}
    policy_violation_count = 0
    total_risk = 0

    for req in requests:
        by_status[req.status] += 1
        by_risk_level[req.risk.level] += 1
        by_initiator[req.initiator] = by_initiator.get(req.initiator, 0) + 1
        total_risk += req.risk.score
        if req.policy_violations:
            policy_violation_count += 1

    avg = int(math.floor(total_risk / len(requests) + 0.5)) if requests else 0

    return GovernanceSummary(
        total_requests=len(requests),
        by_status=by_status,
        by_initiator=by_initiator,
        by_risk_level=by_risk_level,
        policy_violation_count=policy_violation_count,
        avg_risk_score=avg,
        period=SummaryPeriod(since=period_since, until=period_until),
    )
