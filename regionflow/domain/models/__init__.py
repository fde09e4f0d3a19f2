"""Domain models for regionflow."""

from regionflow.domain.models.approval import ApprovalDecision, ApprovalRecord
from regionflow.domain.models.change_set import (
    ChangeAction,
    ChangeSet,
    OperationType,
    ResourceChange,
)
from regionflow.domain.models.parameter_set import (
    ParameterEntry,
    ParameterSet,
    ParameterSource,
)
from regionflow.domain.models.run_result import RolloutReport, RunOutcome, RunResult
from regionflow.domain.models.state_transition import StateTransition
from regionflow.domain.models.workspace import (
    Workspace,
    WorkspaceStatus,
    validate_region,
)

__all__ = [
    "ApprovalDecision",
    "ApprovalRecord",
    "ChangeAction",
    "ChangeSet",
    "OperationType",
    "ResourceChange",
    "ParameterEntry",
    "ParameterSet",
    "ParameterSource",
    "RolloutReport",
    "RunOutcome",
    "RunResult",
    "StateTransition",
    "Workspace",
    "WorkspaceStatus",
    "validate_region",
]
