"""ChangeSet data model: the hashable output of planning."""

import uuid
from collections import Counter
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from regionflow.domain.models.parameter_set import ParameterSet


class ChangeAction(str, Enum):
    """Action the executor plans to take on one resource."""

    Create = "create"
    Update = "update"
    Delete = "delete"
    NoOp = "no-op"


class OperationType(str, Enum):
    """Kind of mutation a change set was planned for."""

    Apply = "apply"
    Destroy = "destroy"


class ResourceChange(BaseModel):
    """A single planned ``(resource identifier, action)`` pair."""

    resource: str = Field(..., min_length=1, description="Executor resource address")
    action: ChangeAction

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)


class ChangeSet(BaseModel):
    """Computed diff between desired and current infrastructure for one region.

    A change set is valid for apply only while the workspace state version and
    lock token are the ones recorded here. It is single-use: once applied or
    discarded, its ``id`` is marked consumed in the state backend.
    """

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique id used for single-use tracking",
    )
    region: str = Field(..., min_length=1)
    operation: OperationType = OperationType.Apply
    changes: tuple[ResourceChange, ...] = Field(
        default_factory=tuple,
        description="Normalized action list, ordered by resource identifier",
    )
    content_hash: str = Field(..., description="Hash of operation, changes and parameter hash")
    parameter_hash: str = Field(..., description="Content hash of the ParameterSet planned with")
    state_version: int = Field(..., ge=0, description="State version read at plan time")
    lock_token: str | None = Field(
        default=None,
        description="Workspace lock token observed at plan time",
    )
    parameters: ParameterSet = Field(..., description="Parameters reused for apply")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = ConfigDict(frozen=True)

    @property
    def has_changes(self) -> bool:
        return any(change.action != ChangeAction.NoOp for change in self.changes)

    def summary(self) -> dict[str, int]:
        """Count planned actions, e.g. ``{"create": 2, "update": 0, ...}``."""
        counts = Counter(change.action for change in self.changes)
        return {action.value: counts.get(action, 0) for action in ChangeAction}

    def mutated_resources(self) -> list[str]:
        return [c.resource for c in self.changes if c.action != ChangeAction.NoOp]
