"""
Deterministic Risk Scorer

Maps the observable attributes of a proposed change (blast radius, cost at
risk, dependents, environment, workload class, timing, destructiveness) to
a bounded 0-100 score and a risk level. Pure: no state, no I/O.

Weights and factor wording are fixed so that scores stay comparable across
audit entries written by different releases.
"""

from __future__ import annotations

import math
import re
from typing import Optional

from change_governor.models import ChangeAction, GraphNode, RiskAssessment, RiskLevel

# ---------------------------------------------------------------------------
# Weights (sum to 100 at saturation)
# ---------------------------------------------------------------------------

RISK_WEIGHTS = {
    "blast_radius": 25,
    "cost_impact": 20,
    "dependent_count": 15,
    "environment": 20,
    "gpu_ai_workload": 10,
    "time_of_day": 5,
    "destructive_action": 5,
}

BLAST_RADIUS_CAP = 20
COST_SATURATION_USD = 5000
DEPENDENT_CAP = 10

STAGING_ENV_FACTOR = 0.5
UNKNOWN_ENV_FACTOR = 0.3

# Level upper bounds (inclusive); anything above HIGH is CRITICAL
LEVEL_THRESHOLDS = [
    (20, RiskLevel.LOW),
    (50, RiskLevel.MEDIUM),
    (75, RiskLevel.HIGH),
]

# ---------------------------------------------------------------------------
# Target classification
# ---------------------------------------------------------------------------

GPU_AI_RESOURCE_TYPES = {
    "sagemaker-endpoint",
    "sagemaker-notebook",
    "bedrock-model",
    "gpu-instance",
    "eks-cluster",  # often runs GPU workloads
}

GPU_INSTANCE_TYPE = re.compile(r"^(p[2-5]|g[4-6]|inf[12]|trn[12]|dl[12])\.", re.IGNORECASE)

GPU_TAGS = ("gpu", "ai-workload", "ml-workload")

# First match wins
ENVIRONMENT_TAG_KEYS = ("Environment", "environment", "env", "Env", "stage", "Stage")


def detect_environment(node: Optional[GraphNode]) -> Optional[str]:
    """Extract the environment name from node tags, then metadata."""
    if node is None:
        return None
    for key in ENVIRONMENT_TAG_KEYS:
        if key in node.tags:
            return node.tags[key]
    value = node.metadata.get("environment")
    if value is None:
        return None
    return str(value)


def is_gpu_or_ai_resource(node: Optional[GraphNode]) -> bool:
    """Detect GPU/AI workloads from resource type, instance type and tags."""
    if node is None:
        return False
    if node.resource_type in GPU_AI_RESOURCE_TYPES:
        return True

    instance_type = node.metadata.get("instanceType")
    if instance_type is not None and GPU_INSTANCE_TYPE.search(str(instance_type)):
        return True

    return any(node.tags.get(tag) for tag in GPU_TAGS)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def risk_level_for_score(score: int) -> RiskLevel:
    for upper, level in LEVEL_THRESHOLDS:
        if score <= upper:
            return level
    return RiskLevel.CRITICAL


def _environment_score(environment: Optional[str]) -> tuple[float, Optional[str]]:
    # "No signal" scores higher than an explicit non-production name like "dev".
    env = (environment or "").lower()
    weight = RISK_WEIGHTS["environment"]
    if "prod" in env:
        return weight, f"Production environment (+{weight} pts)"
    if "stag" in env:
        points = weight * STAGING_ENV_FACTOR
        return points, f"Staging environment (+{points:.1f} pts)"
    if env in ("", "unknown"):
        points = weight * UNKNOWN_ENV_FACTOR
        return points, f"Unknown environment (+{points:.1f} pts)"
    return 0.0, None


def calculate_risk_score(
    blast_radius_size: int,
    cost_at_risk: float,
    dependent_count: int,
    environment: Optional[str],
    is_gpu_ai_workload: bool,
    action: ChangeAction | str,
    hour_of_day: Optional[int] = None,
) -> RiskAssessment:
    """
    Score a proposed change.

    Contributions, in evaluation order:
      - blast radius:   linear, saturating at 20 affected resources (25 pts)
      - cost at risk:   log10(cost+1)/log10(5000), clamped (20 pts)
      - dependents:     linear, saturating at 10 (15 pts)
      - environment:    prod 100%, staging 50%, unknown/empty 30% (20 pts)
      - GPU/AI:         flat (10 pts)
      - off-hours:      flat when hour < 6 or hour > 22 (5 pts)
      - delete action:  flat (5 pts)

    The sum is rounded half-up and clamped to [0, 100]. One factor string
    is appended per non-zero contribution, in the order above.
    """
    factors: list[str] = []
    score = 0.0

    br_score = min(blast_radius_size / BLAST_RADIUS_CAP, 1) * RISK_WEIGHTS["blast_radius"]
    score += br_score
    if blast_radius_size > 0:
        factors.append(
            f"Blast radius: {blast_radius_size} resources affected ({br_score:.1f} pts)"
        )

    cost_score = 0.0
    if cost_at_risk > 0:
        ratio = math.log10(cost_at_risk + 1) / math.log10(COST_SATURATION_USD)
        cost_score = min(ratio, 1) * RISK_WEIGHTS["cost_impact"]
        factors.append(f"Cost at risk: ${cost_at_risk:.2f}/mo ({cost_score:.1f} pts)")
    score += cost_score

    dep_score = min(dependent_count / DEPENDENT_CAP, 1) * RISK_WEIGHTS["dependent_count"]
    score += dep_score
    if dependent_count > 0:
        factors.append(f"Direct dependents: {dependent_count} ({dep_score:.1f} pts)")

    env_score, env_factor = _environment_score(environment)
    score += env_score
    if env_factor:
        factors.append(env_factor)

    if is_gpu_ai_workload:
        score += RISK_WEIGHTS["gpu_ai_workload"]
        factors.append(f"GPU/AI workload (+{RISK_WEIGHTS['gpu_ai_workload']} pts)")

    if hour_of_day is not None and (hour_of_day < 6 or hour_of_day > 22):
        score += RISK_WEIGHTS["time_of_day"]
        factors.append(f"Off-hours change (+{RISK_WEIGHTS['time_of_day']} pts)")

    if ChangeAction(action) == ChangeAction.DELETE:
        score += RISK_WEIGHTS["destructive_action"]
        factors.append(
            f"Destructive action: delete (+{RISK_WEIGHTS['destructive_action']} pts)"
        )

    final = min(max(_round_half_up(score), 0), 100)
    return RiskAssessment(
        score=final,
        level=risk_level_for_score(final),
        factors=tuple(factors),
    )
