"""
Change Governor
Intercepts every proposed infrastructure mutation before it executes.

For each request the governor resolves the target in the graph, sizes its
blast radius, scores the risk, runs policy pre-checks and decides between
auto-approval and manual review. Every decision and every resolution is
appended to the audit log. Requests left PENDING are announced to the
registered approval callbacks.

Usage:
    governor = ChangeGovernor(engine, storage)
    request = governor.intercept_change(
        initiator="agent:deployer",
        initiator_type="agent",
        target_resource_id="i-0abc",
        resource_type="compute",
        provider="aws",
        action="scale",
        description="Scale web tier to 6 instances",
    )
    if request.is_pending:
        governor.approve_change(request.id, "ops-lead", "Reviewed blast radius")
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Union
from uuid import uuid4

from change_governor.audit import build_creation_entry, build_resolution_entry, replay_changes
from change_governor.graph import DOWNSTREAM, AuditSink, GraphEngine, GraphStorage
from change_governor.models import (
    AuditQuery,
    ChangeAction,
    ChangeRequest,
    ChangeRequestStatus,
    GovernanceSummary,
    GraphChange,
    InitiatorType,
    RiskAssessment,
)
from change_governor.policy_engine import is_protected, run_policy_pre_checks
from change_governor.queries import pending_requests, query_audit_trail, summarize
from change_governor.registry import RequestRegistry
from change_governor.risk import calculate_risk_score, detect_environment, is_gpu_or_ai_resource

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
AUTO_APPROVE_REASON = "Low risk, auto-approved"
DEFAULT_APPROVE_REASON = "Manually approved"

ApprovalCallback = Callable[[ChangeRequest], Any]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class GovernorConfig:
    """Approval policy knobs. Every field can be overridden by the caller."""
    auto_approve_threshold: int = 30    # score at or below -> auto-approve
    block_threshold: int = 70           # score above -> always manual review
    enable_policy_checks: bool = True
    allow_agent_auto_approve: bool = True
    max_auto_approve_blast_radius: int = 5
    protected_environments: list[str] = field(default_factory=lambda: ["production", "prod"])
    protected_resource_types: list[str] = field(default_factory=list)
    blast_radius_depth: int = 3

    def __post_init__(self):
        for name in ("auto_approve_threshold", "block_threshold"):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise ValueError(f"{name} must be within 0-100, got {value}")
        if self.auto_approve_threshold > self.block_threshold:
            raise ValueError(
                f"auto_approve_threshold ({self.auto_approve_threshold}) cannot exceed "
                f"block_threshold ({self.block_threshold})"
            )
        if self.max_auto_approve_blast_radius < 0:
            raise ValueError("max_auto_approve_blast_radius cannot be negative")
        if self.blast_radius_depth < 0:
            raise ValueError("blast_radius_depth cannot be negative")

    @classmethod
    def from_env(cls) -> GovernorConfig:
        """Build a config from GOVERNOR_* environment variables."""
        defaults = cls()
        return cls(
            auto_approve_threshold=int(os.environ.get(
                "GOVERNOR_AUTO_APPROVE_THRESHOLD", defaults.auto_approve_threshold)),
            block_threshold=int(os.environ.get(
                "GOVERNOR_BLOCK_THRESHOLD", defaults.block_threshold)),
            enable_policy_checks=_env_bool(
                "GOVERNOR_ENABLE_POLICY_CHECKS", defaults.enable_policy_checks),
            allow_agent_auto_approve=_env_bool(
                "GOVERNOR_ALLOW_AGENT_AUTO_APPROVE", defaults.allow_agent_auto_approve),
            max_auto_approve_blast_radius=int(os.environ.get(
                "GOVERNOR_MAX_AUTO_APPROVE_BLAST_RADIUS",
                defaults.max_auto_approve_blast_radius)),
            protected_environments=_env_list(
                "GOVERNOR_PROTECTED_ENVIRONMENTS", defaults.protected_environments),
            protected_resource_types=_env_list(
                "GOVERNOR_PROTECTED_RESOURCE_TYPES", defaults.protected_resource_types),
            blast_radius_depth=int(os.environ.get(
                "GOVERNOR_BLAST_RADIUS_DEPTH", defaults.blast_radius_depth)),
        )


def _resolve_config(config: Union[GovernorConfig, dict, None]) -> GovernorConfig:
    if config is None:
        return GovernorConfig()
    if isinstance(config, GovernorConfig):
        return config
    known = {f.name for f in fields(GovernorConfig)}
    unknown = set(config) - known
    if unknown:
        raise ValueError(f"Unknown governor config keys: {sorted(unknown)}")
    return GovernorConfig(**config)


def _local_now() -> datetime:
    return datetime.now().astimezone()


# ---------------------------------------------------------------------------
# ChangeGovernor
# ---------------------------------------------------------------------------

class ChangeGovernor:
    """
    Risk-scoring approval gate for infrastructure changes.

    Owns the in-process request registry for its own lifetime. The audit
    sink (``storage`` unless another is given) owns the durable log and
    knows nothing about the registry.
    """

    def __init__(
        self,
        engine: GraphEngine,
        storage: GraphStorage,
        config: Union[GovernorConfig, dict, None] = None,
        audit: AuditSink | None = None,
        clock: Callable[[], datetime] = _local_now,
    ):
        """
        Args:
            engine:  blast-radius collaborator
            storage: node/edge lookups, and the audit sink unless ``audit`` is set
            config:  GovernorConfig, or a dict of field overrides
            audit:   separate append-only sink for audit entries
            clock:   returns the current time in the operator's timezone;
                     its hour drives the off-hours risk factor
        """
        self.engine = engine
        self.storage = storage
        self.audit = audit or storage
        self.config = _resolve_config(config)
        self._clock = clock
        self._registry = RequestRegistry()
        self._notifiers: list[ApprovalCallback] = []

    # -- notifications -------------------------------------------------------

    def on_approval_required(self, callback: ApprovalCallback) -> None:
        """Register a callback invoked with each request that goes PENDING."""
        self._notifiers.append(callback)

    def _notify_approval_required(self, request: ChangeRequest) -> None:
        # Failures are visible only in the log, never to the caller.
        for notify in list(self._notifiers):
            try:
                notify(request.model_copy(deep=True))
            except Exception:
                logger.exception(
                    "Approval notification failed for request %s", request.id,
                )

    # -- intercept -----------------------------------------------------------

    def intercept_change(
        self,
        initiator: str,
        initiator_type: InitiatorType | str,
        target_resource_id: str,
        resource_type: str,
        provider: str,
        action: ChangeAction | str,
        description: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> ChangeRequest:
        """
        Assess a proposed change and decide whether it may proceed.

        Returns the recorded ChangeRequest: AUTO_APPROVED, or PENDING when
        manual review is required. Collaborator errors propagate and leave
        no audit entry behind.
        """
        initiator_type = InitiatorType(initiator_type)
        action = ChangeAction(action)

        # Target may not exist yet (creates)
        target_node = self.storage.get_node(target_resource_id)

        blast_radius = self.engine.get_blast_radius(
            target_resource_id, self.config.blast_radius_depth,
        )
        blast_radius_size = len(blast_radius.nodes)
        cost_at_risk = blast_radius.total_cost_monthly

        downstream = self.storage.get_edges_for_node(target_resource_id, DOWNSTREAM)
        dependent_count = len(downstream)

        environment = detect_environment(target_node)
        is_gpu = is_gpu_or_ai_resource(target_node)

        now = self._clock()
        risk = calculate_risk_score(
            blast_radius_size=blast_radius_size,
            cost_at_risk=cost_at_risk,
            dependent_count=dependent_count,
            environment=environment,
            is_gpu_ai_workload=is_gpu,
            action=action,
            hour_of_day=now.hour,
        )
        logger.debug("Risk for %s on %s: %d %s", action.value, target_resource_id,
                     risk.score, list(risk.factors))

        policy_violations: list[str] = []
        if self.config.enable_policy_checks:
            policy_violations = run_policy_pre_checks(action, resource_type, target_node)

        status = self._decide(
            risk=risk,
            initiator_type=initiator_type,
            resource_type=resource_type,
            environment=environment,
            blast_radius_size=blast_radius_size,
            policy_violations=policy_violations,
        )

        created_at = now.astimezone(timezone.utc)
        auto = status == ChangeRequestStatus.AUTO_APPROVED
        request = ChangeRequest(
            id=f"cr-{uuid4().hex}",
            initiator=initiator,
            initiator_type=initiator_type,
            target_resource_id=target_resource_id,
            resource_type=resource_type,
            provider=provider,
            action=action,
            description=description,
            risk=risk,
            status=status,
            created_at=created_at,
            resolved_at=created_at if auto else None,
            resolved_by=SYSTEM_ACTOR if auto else None,
            reason=AUTO_APPROVE_REASON if auto else None,
            policy_violations=policy_violations,
            metadata={
                **(metadata or {}),
                "blastRadiusSize": blast_radius_size,
                "costAtRisk": cost_at_risk,
                "dependentCount": dependent_count,
                "environment": environment,
                "isGpuAiWorkload": is_gpu,
            },
        )

        # Durable first: an unlogged request is never published.
        self.audit.append_change(build_creation_entry(request))
        self._registry.add(request)

        logger.info(
            "Change request %s: %s %s by %s (%s) -> %s [risk %d/%s, %d violation(s)]",
            request.id, action.value, target_resource_id, initiator,
            initiator_type.value, status.value, risk.score, risk.level.value,
            len(policy_violations),
        )

        if status == ChangeRequestStatus.PENDING:
            self._notify_approval_required(request)

        return request

    def _decide(
        self,
        risk: RiskAssessment,
        initiator_type: InitiatorType,
        resource_type: str,
        environment: Optional[str],
        blast_radius_size: int,
        policy_violations: list[str],
    ) -> ChangeRequestStatus:
        cfg = self.config
        if policy_violations:
            return ChangeRequestStatus.PENDING

        if is_protected(resource_type, environment,
                        cfg.protected_environments, cfg.protected_resource_types):
            return ChangeRequestStatus.PENDING

        if risk.score <= cfg.auto_approve_threshold:
            if initiator_type == InitiatorType.AGENT and not cfg.allow_agent_auto_approve:
                return ChangeRequestStatus.PENDING
            if blast_radius_size > cfg.max_auto_approve_blast_radius:
                return ChangeRequestStatus.PENDING
            return ChangeRequestStatus.AUTO_APPROVED

        if risk.score > cfg.block_threshold:
            return ChangeRequestStatus.PENDING

        # Medium band: humans proceed, agents and system processes wait
        if initiator_type == InitiatorType.HUMAN:
            return ChangeRequestStatus.AUTO_APPROVED
        return ChangeRequestStatus.PENDING

    # -- resolution ----------------------------------------------------------

    def approve_change(
        self,
        request_id: str,
        approved_by: str,
        reason: Optional[str] = None,
    ) -> Optional[ChangeRequest]:
        """Approve a PENDING request. Returns None if it is unknown or not pending."""
        return self._resolve(
            request_id, ChangeRequestStatus.APPROVED, approved_by,
            reason if reason is not None else DEFAULT_APPROVE_REASON,
        )

    def reject_change(
        self,
        request_id: str,
        rejected_by: str,
        reason: str,
    ) -> Optional[ChangeRequest]:
        """Reject a PENDING request. Returns None if it is unknown or not pending."""
        return self._resolve(request_id, ChangeRequestStatus.REJECTED, rejected_by, reason)

    def _resolve(
        self,
        request_id: str,
        new_status: ChangeRequestStatus,
        resolver: str,
        reason: str,
    ) -> Optional[ChangeRequest]:
        claimed = self._registry.claim(request_id, expected=ChangeRequestStatus.PENDING)
        if claimed is None:
            logger.warning(
                "Cannot %s request %s: not found or already resolved",
                "approve" if new_status == ChangeRequestStatus.APPROVED else "reject",
                request_id,
            )
            return None

        try:
            if not resolver or not resolver.strip():
                raise ValueError("A resolver identity is required")
            if resolver == SYSTEM_ACTOR:
                raise ValueError(f"'{SYSTEM_ACTOR}' is reserved for auto-approval")
            if new_status == ChangeRequestStatus.REJECTED and (not reason or not reason.strip()):
                raise ValueError("A rejection reason is required")

            updated = claimed.model_copy(update={
                "status": new_status,
                "resolved_by": resolver,
                "resolved_at": self._clock().astimezone(timezone.utc),
                "reason": reason,
            })
            self.audit.append_change(build_resolution_entry(updated))
        except Exception:
            # Nothing committed; the request is still pending
            self._registry.release(request_id)
            logger.warning("Resolution of request %s not recorded; still pending", request_id)
            raise

        self._registry.commit(updated)
        logger.info("Change request %s %s by %s: %s",
                    request_id, new_status.value, resolver, reason)
        return updated

    # -- queries -------------------------------------------------------------

    def get_request(self, request_id: str) -> Optional[ChangeRequest]:
        return self._registry.get(request_id)

    def get_audit_trail(self, query: AuditQuery | dict | None = None) -> list[ChangeRequest]:
        """Filtered requests, newest first."""
        if query is None:
            query = AuditQuery()
        elif isinstance(query, dict):
            query = AuditQuery(**query)
        return query_audit_trail(self._registry, query)

    def get_pending_requests(self) -> list[ChangeRequest]:
        return pending_requests(self._registry)

    def get_summary(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> GovernanceSummary:
        """Governance activity over [since, until]; defaults to the trailing 7 days."""
        return summarize(self._registry, self._clock(), since=since, until=until)

    # -- recovery ------------------------------------------------------------

    def restore(self, changes: Iterable[GraphChange]) -> int:
        """Rebuild the registry from audit entries.

        Unknown requests are added. A request that is already registered
        and still pending takes the resolution found in the log. Returns the
        number of requests added or updated.
        """
        restored = 0
        for request in replay_changes(changes):
            if self._registry.get(request.id) is None:
                self._registry.add(request)
                restored += 1
                continue
            if request.status not in (ChangeRequestStatus.APPROVED, ChangeRequestStatus.REJECTED):
                continue
            if self._registry.claim(request.id, expected=ChangeRequestStatus.PENDING) is None:
                logger.warning("Request %s already resolved, not restored", request.id)
                continue
            self._registry.commit(request)
            restored += 1
        logger.info("Restored %d change request(s) from the audit log", restored)
        return restored
