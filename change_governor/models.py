"""
Governance Data Models

Value types shared by the risk scorer, the policy pre-checks, the change
governor and the audit sinks. ChangeRequest is the central entity: created
once per intercepted mutation and transitioned out of PENDING at most once.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue

# Metadata bags are closed over JSON values (str, number, bool, null,
# list, nested map) so risk/policy logic never sees arbitrary objects.
Metadata = dict[str, JsonValue]


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class InitiatorType(str, Enum):
    HUMAN = "human"
    AGENT = "agent"
    SYSTEM = "system"


class ChangeAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SCALE = "scale"
    RECONFIGURE = "reconfigure"


class ChangeRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_APPROVED = "auto-approved"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class GraphChangeType(str, Enum):
    NODE_CREATED = "node-created"
    NODE_UPDATED = "node-updated"
    NODE_DELETED = "node-deleted"


# ---------------------------------------------------------------------------
# Graph collaborator types
# ---------------------------------------------------------------------------

class GraphNode(BaseModel):
    """The slice of a graph node the governor reads."""
    id: str
    resource_type: str
    tags: dict[str, str] = {}
    metadata: Metadata = {}
    cost_monthly: Optional[float] = None


class GraphEdge(BaseModel):
    id: str
    source_node_id: str
    target_node_id: str
    relationship_type: str = "depends-on"


class BlastRadius(BaseModel):
    nodes: set[str] = set()
    total_cost_monthly: float = 0.0


class GraphChange(BaseModel):
    """An append-only audit entry. Never mutated, never deleted."""
    model_config = ConfigDict(frozen=True)

    id: str
    target_id: str
    change_type: GraphChangeType
    field: Optional[str] = None
    previous_value: Optional[str] = None
    new_value: Optional[str] = None
    detected_at: datetime
    detected_via: str = "manual"
    correlation_id: Optional[str] = None
    initiator: Optional[str] = None
    initiator_type: Optional[InitiatorType] = None
    metadata: Metadata = {}


# ---------------------------------------------------------------------------
# Governance types
# ---------------------------------------------------------------------------

class RiskAssessment(BaseModel):
    """Computed once at intercept time and never recomputed."""
    model_config = ConfigDict(frozen=True)

    score: int = Field(ge=0, le=100)
    level: RiskLevel
    factors: tuple[str, ...] = ()


class ChangeRequest(BaseModel):
    """A structured request to modify infrastructure."""
    id: str
    initiator: str
    initiator_type: InitiatorType
    target_resource_id: str         # may not exist yet for creates
    resource_type: str
    provider: str
    action: ChangeAction
    description: str = ""
    risk: RiskAssessment
    status: ChangeRequestStatus
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    reason: Optional[str] = None
    policy_violations: list[str] = []
    metadata: Metadata = {}

    @property
    def is_pending(self) -> bool:
        return self.status == ChangeRequestStatus.PENDING


class AuditQuery(BaseModel):
    """Filters for the audit trail. Time bounds are inclusive."""
    initiator: Optional[str] = None
    initiator_type: Optional[InitiatorType] = None
    target_resource_id: Optional[str] = None
    action: Optional[ChangeAction] = None
    status: Optional[ChangeRequestStatus] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = Field(default=None, ge=1)


class SummaryPeriod(BaseModel):
    since: datetime
    until: datetime


class GovernanceSummary(BaseModel):
    """Aggregate governance activity for dashboards."""
    total_requests: int
    by_status: dict[ChangeRequestStatus, int]
    by_initiator: dict[str, int]
    by_risk_level: dict[RiskLevel, int]
    policy_violation_count: int
    avg_risk_score: int
    period: SummaryPeriod
