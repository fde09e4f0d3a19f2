"""Workspace data model and WorkspaceStatus enum."""

import re
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

REGION_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")


def validate_region(region: str) -> str:
    """Normalize and validate a region identifier.

    Region identifiers are lowercase letters, digits and dashes
    (e.g. ``eu-central-1``), at most 64 characters.

    Raises:
        ValueError: If the identifier is empty or malformed.
    """
    if not isinstance(region, str) or not region.strip():
        raise ValueError("Region cannot be empty")
    normalized = region.strip().lower()
    if not REGION_PATTERN.match(normalized):
        raise ValueError(f"Invalid region identifier: {region!r}")
    return normalized


class WorkspaceStatus(str, Enum):
    """Last known apply status of a workspace."""

    Absent = "absent"
    """No infrastructure exists (never applied, or destroyed)."""

    Applying = "applying"
    """An apply is in flight."""

    Applied = "applied"
    """The last apply succeeded."""

    Destroying = "destroying"
    """A destroy is in flight."""

    Failed = "failed"
    """The last mutation failed or partially failed. Requires a re-plan."""


class Workspace(BaseModel):
    """State partition and status record for one region's infrastructure.

    Exactly one workspace exists per region. It is created on the first
    provisioning request and only ever marked ``absent`` after a successful
    destroy; nothing deletes the record.
    """

    region: str = Field(
        ...,
        description="Region identifier this workspace belongs to",
        min_length=1,
    )
    partition_key: str = Field(
        ...,
        description="State partition key in the state backend",
        min_length=1,
    )
    lock_token: str | None = Field(
        default=None,
        description="Token of the lease currently held for a mutation, if any",
    )
    status: WorkspaceStatus = Field(
        default=WorkspaceStatus.Absent,
        description="Last known apply status",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Timestamp when the workspace was created",
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Timestamp of the last status change",
    )

    model_config = ConfigDict(
        frozen=False,  # status and lock_token change over the workspace lifetime
        validate_assignment=True,
        str_strip_whitespace=True,
    )

    @field_validator("region")
    @classmethod
    def _validate_region(cls, v: str) -> str:
        return validate_region(v)

    @property
    def is_locked(self) -> bool:
        """Whether the record shows a held mutation lease."""
        return self.lock_token is not None
