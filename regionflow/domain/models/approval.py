"""ApprovalRecord data model and ApprovalDecision enum."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from regionflow.domain.models.change_set import OperationType


class ApprovalDecision(str, Enum):
    """Terminal decision for a pending change set."""

    Approved = "approved"
    """An authorized actor confirmed the change set."""

    Rejected = "rejected"
    """An authorized actor refused the change set."""

    Expired = "expired"
    """No decision arrived before the deadline, or the wait was cancelled."""


class ApprovalRecord(BaseModel):
    """Decision recorded by the ApprovalGate for one change set.

    An apply is authorized only by an ``approved`` record whose
    ``change_set_hash`` matches the change set and which is the most recent
    record for the region.
    """

    pending_id: str = Field(..., min_length=1)
    region: str = Field(..., min_length=1)
    operation: OperationType = OperationType.Apply
    change_set_id: str = Field(..., min_length=1)
    change_set_hash: str = Field(..., min_length=1)
    decision: ApprovalDecision
    actor: str = Field(..., min_length=1, description="Identity of the deciding actor")
    decided_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    reason: str | None = Field(
        default=None,
        description="Optional reason, e.g. 'timeout' or 'cancelled' for expiries",
    )

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    @property
    def is_approved(self) -> bool:
        return self.decision == ApprovalDecision.Approved
