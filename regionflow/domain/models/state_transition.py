"""StateTransition data model for the workspace status audit trail."""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StateTransition(BaseModel):
    """Records one workspace status change with its cause."""

    region: str = Field(
        ...,
        description="Region whose workspace changed status",
        min_length=1,
    )
    from_status: str = Field(..., description="Previous status value")
    to_status: str = Field(..., description="New status value")
    transition_timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Timestamp when transition occurred",
    )
    trigger: str = Field(
        ...,
        description="What caused the transition (apply_started, apply_succeeded, ...)",
        min_length=1,
    )
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context (change set hash, lock token, error)",
    )

    model_config = ConfigDict(
        frozen=True,  # Immutable audit trail
        validate_assignment=True,
    )
