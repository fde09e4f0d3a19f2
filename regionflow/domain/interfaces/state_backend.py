"""StateBackend interface for versioned state partitions and lease locks.

This module defines the abstract StateBackend interface that every durable
store must implement (in-memory, Redis, ...). The contract has three parts:

- versioned state blobs with conditional (optimistic) writes,
- lease-based locks per state partition,
- workspace records, audit records and single-use change set tracking.

Example:
    ```python
    from regionflow.infrastructure.state_backend.memory_backend import (
        InMemoryStateBackend,
    )

    backend: StateBackend = InMemoryStateBackend()

    snapshot = await backend.read("workspaces/eu-central-1")
    token = await backend.acquire_lock("workspaces/eu-central-1", "ci-runner-7", ttl_seconds=300)
    try:
        await backend.write(
            "workspaces/eu-central-1",
            {"resources": {}},
            expected_version=snapshot.version,
        )
    finally:
        await backend.release_lock("workspaces/eu-central-1", token)
    ```
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from regionflow.domain.errors import StateBackendError
from regionflow.domain.models.approval import ApprovalRecord
from regionflow.domain.models.state_transition import StateTransition
from regionflow.domain.models.workspace import Workspace


class StateSnapshot(BaseModel):
    """A state blob read at a specific version.

    Attributes:
        partition_key: Partition the blob was read from.
        blob: Executor state document. Empty for a partition never written.
        version: Monotonic version; 0 for a partition never written.
    """

    partition_key: str = Field(..., min_length=1)
    blob: dict[str, Any] = Field(default_factory=dict)
    version: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)


class LockLease(BaseModel):
    """A live lease on a state partition."""

    partition_key: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1)
    holder: str = Field(..., min_length=1, description="Orchestrator instance holding the lease")
    expires_at: datetime = Field(..., description="Wall-clock expiry of the lease")

    model_config = ConfigDict(frozen=True)


class StateBackend(ABC):
    """Abstract interface for durable, strongly consistent orchestration state.

    All writes to state blobs are conditional on the expected version so that
    two orchestrator instances racing on the same partition cannot silently
    overwrite each other. Locks are leases: a holder must renew before the TTL
    elapses or the lock becomes reclaimable, so a crashed orchestrator cannot
    deadlock a region.

    All methods are async. Implementations raise the domain errors named in
    each method and wrap any other storage failure in StateBackendError.
    """

    # State blobs

    @abstractmethod
    async def read(self, partition_key: str) -> StateSnapshot:
        """Read the current state blob and its version.

        Args:
            partition_key: State partition to read.

        Returns:
            StateSnapshot. A partition never written reads as an empty blob
            at version 0.

        Raises:
            StateBackendError: If the read fails.
        """

    @abstractmethod
    async def write(
        self,
        partition_key: str,
        blob: dict[str, Any],
        expected_version: int,
    ) -> int:
        """Write a state blob if the stored version equals ``expected_version``.

        Args:
            partition_key: State partition to write.
            blob: New state document.
            expected_version: Version the caller read before computing ``blob``.

        Returns:
            The new version (``expected_version + 1``).

        Raises:
            VersionConflictError: If the stored version differs. Nothing is written.
            StateBackendError: If the write fails.
        """

    # Lease locks

    @abstractmethod
    async def acquire_lock(self, partition_key: str, holder: str, ttl_seconds: float) -> str:
        """Acquire the lease for a partition without waiting.

        Args:
            partition_key: Partition to lock.
            holder: Identity of the acquiring orchestrator instance.
            ttl_seconds: Lease duration.

        Returns:
            Opaque lock token required to renew or release the lease.

        Raises:
            AlreadyLockedError: If a live lease exists. Expired leases are reclaimed.
        """

    @abstractmethod
    async def renew_lock(self, partition_key: str, lock_token: str, ttl_seconds: float) -> None:
        """Extend a held lease by ``ttl_seconds`` from now.

        Raises:
            InvalidLockTokenError: If ``lock_token`` does not own a live lease.
        """

    @abstractmethod
    async def release_lock(self, partition_key: str, lock_token: str) -> None:
        """Release a held lease.

        Raises:
            InvalidLockTokenError: If ``lock_token`` does not own a live lease.
        """

    @abstractmethod
    async def get_lock(self, partition_key: str) -> LockLease | None:
        """Return the live lease for a partition, or None if unlocked."""

    # Workspace records

    @abstractmethod
    async def create_workspace(self, workspace: Workspace) -> Workspace:
        """Atomically store a workspace unless one exists for its region.

        Returns:
            The stored workspace: ``workspace`` if it was created, otherwise the
            pre-existing record.
        """

    @abstractmethod
    async def get_workspace(self, region: str) -> Workspace | None:
        """Return the workspace for a region, or None."""

    @abstractmethod
    async def save_workspace(self, workspace: Workspace) -> None:
        """Update an existing workspace record.

        Raises:
            StateBackendError: If no workspace exists for the region.
        """

    @abstractmethod
    async def list_workspaces(self) -> list[Workspace]:
        """Return all workspaces in creation order."""

    # Audit and single-use tracking

    @abstractmethod
    async def save_state_transition(self, transition: StateTransition) -> None:
        """Append a workspace status transition to the audit trail."""

    @abstractmethod
    async def list_state_transitions(self, region: str) -> list[StateTransition]:
        """Return the status transitions recorded for a region, oldest first."""

    @abstractmethod
    async def save_approval_record(self, record: ApprovalRecord) -> None:
        """Append an approval decision to the audit trail."""

    @abstractmethod
    async def list_approval_records(self, region: str) -> list[ApprovalRecord]:
        """Return the approval decisions recorded for a region, oldest first."""

    @abstractmethod
    async def consume_change_set(self, change_set_id: str) -> bool:
        """Mark a change set consumed.

        Returns:
            True if this call consumed it, False if it was already consumed.
        """


__all__ = ["LockLease", "StateBackend", "StateBackendError", "StateSnapshot"]
