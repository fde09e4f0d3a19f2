"""Domain components."""

from regionflow.domain.components.apply_executor import ApplyExecutor
from regionflow.domain.components.approval_gate import (
    SYSTEM_ACTOR,
    ApprovalGate,
    PendingApproval,
)
from regionflow.domain.components.parameter_resolver import ParameterResolver
from regionflow.domain.components.plan_engine import PlanEngine
from regionflow.domain.components.rollout_coordinator import (
    AppliedHook,
    Approver,
    RolloutCoordinator,
)
from regionflow.domain.components.workspace_registry import WorkspaceRegistry

__all__ = [
    "ApplyExecutor",
    "AppliedHook",
    "ApprovalGate",
    "Approver",
    "ParameterResolver",
    "PendingApproval",
    "PlanEngine",
    "RolloutCoordinator",
    "SYSTEM_ACTOR",
    "WorkspaceRegistry",
]
