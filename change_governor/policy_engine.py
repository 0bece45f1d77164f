"""
Policy Pre-Check Evaluator

Deterministic rules evaluated against the target resource before any
risk-based auto-approval. Each rule contributes zero or one violation
string; any violation forces the request into manual review. Rules run in
a fixed order so violation lists are reproducible.
"""

from __future__ import annotations

from typing import Iterable, Optional

from change_governor.models import ChangeAction, GraphNode
from change_governor.risk import is_gpu_or_ai_resource

# ---------------------------------------------------------------------------
# Rule constants
# ---------------------------------------------------------------------------

COST_ALLOCATION_TAGS = ("CostCenter", "cost-center", "CostAllocation")

STORAGE_RESOURCE_TYPE = "storage"

DELETE_COST_THRESHOLD = 1000


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def _check_gpu_cost_allocation(action: ChangeAction, node: Optional[GraphNode]) -> list[str]:
    """GPU/AI workloads must carry a cost-allocation tag unless being deleted."""
    if action == ChangeAction.DELETE or not is_gpu_or_ai_resource(node):
        return []
    tags = node.tags if node is not None else {}
    if any(tags.get(tag) for tag in COST_ALLOCATION_TAGS):
        return []
    return ["GPU/AI workloads must have a cost allocation tag (CostCenter or cost-center)"]


def _check_public_storage(resource_type: str, node: Optional[GraphNode]) -> list[str]:
    if resource_type != STORAGE_RESOURCE_TYPE or node is None:
        return []
    if node.metadata.get("publicAccessEnabled") is True:
        return ["Storage resource has public access enabled, review required"]
    return []


def _check_costly_delete(action: ChangeAction, node: Optional[GraphNode]) -> list[str]:
    if action != ChangeAction.DELETE or node is None:
        return []
    if (node.cost_monthly or 0) > DELETE_COST_THRESHOLD:
        return [f"Deleting resource with cost > ${DELETE_COST_THRESHOLD}/mo requires review"]
    return []


def run_policy_pre_checks(
    action: ChangeAction | str,
    resource_type: str,
    node: Optional[GraphNode],
) -> list[str]:
    """
    Run every pre-check against a proposed change.

    Args:
        action:        the requested action
        resource_type: resource type from the request (not the node)
        node:          the resolved target, or None when it does not exist yet

    Returns:
        Violation descriptions, in rule order. Empty when the change is clean.
    """
    action = ChangeAction(action)
    violations: list[str] = []
    violations.extend(_check_gpu_cost_allocation(action, node))
    violations.extend(_check_public_storage(resource_type, node))
    violations.extend(_check_costly_delete(action, node))
    return violations


# ---------------------------------------------------------------------------
# Protected targets
# ---------------------------------------------------------------------------

def is_protected(
    resource_type: str,
    environment: Optional[str],
    protected_environments: Iterable[str],
    protected_resource_types: Iterable[str],
) -> bool:
    """True when the environment or resource type always needs manual approval."""
    if environment:
        env = environment.lower()
        if any(pe.lower() in env for pe in protected_environments):
            return True
    return resource_type in set(protected_resource_types)
