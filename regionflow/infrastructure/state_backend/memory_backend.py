"""In-memory state backend implementation.

This module provides an in-memory implementation of the StateBackend interface
using Python dictionaries. It keeps the full contract (conditional writes,
lease expiry, atomic workspace creation) so a single orchestrator process gets
the same guarantees it would from a shared store.

Example:
    ```python
    from regionflow.infrastructure.state_backend.memory_backend import (
        InMemoryStateBackend,
    )

    backend = InMemoryStateBackend()
    snapshot = await backend.read("workspaces/eu-central-1")
    new_version = await backend.write(
        "workspaces/eu-central-1", {"resources": {}}, expected_version=snapshot.version
    )
    ```
"""

import asyncio
import time
import uuid
from collections.abc import Callable
from copy import deepcopy
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from regionflow.domain.errors import (
    AlreadyLockedError,
    InvalidLockTokenError,
    StateBackendError,
    VersionConflictError,
)
from regionflow.domain.interfaces.state_backend import (
    LockLease,
    StateBackend,
    StateSnapshot,
)
from regionflow.domain.models.approval import ApprovalRecord
from regionflow.domain.models.state_transition import StateTransition
from regionflow.domain.models.workspace import Workspace


@dataclass
class _Lease:
    token: str
    holder: str
    deadline: float  # on the backend clock


class InMemoryStateBackend(StateBackend):
    """In-memory implementation of the StateBackend interface.

    Thread Safety:
        - Every operation that reads-then-writes holds a single asyncio.Lock,
          so version checks, lease checks and create-if-absent are atomic.

    Lease expiry:
        - Leases are measured on ``clock`` (``time.monotonic`` by default).
          Tests pass a controllable clock to simulate expiry.

    Attributes:
        _blobs: partition key -> (blob, version)
        _leases: partition key -> live lease
        _workspaces: region -> Workspace, in creation order
        _transitions: region -> status transitions
        _approvals: region -> approval records
        _consumed: ids of consumed change sets
    """

    def __init__(
        self,
        max_audit_records: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize InMemoryStateBackend with empty storage.

        Args:
            max_audit_records: Maximum transitions and approval records kept
                per region. Oldest records are dropped first (FIFO). Set to 0
                or negative for unlimited storage.
            clock: Monotonic clock in seconds used for lease expiry.
        """
        self._blobs: dict[str, tuple[dict[str, Any], int]] = {}
        self._leases: dict[str, _Lease] = {}
        self._workspaces: dict[str, Workspace] = {}
        self._transitions: dict[str, list[StateTransition]] = {}
        self._approvals: dict[str, list[ApprovalRecord]] = {}
        self._consumed: set[str] = set()

        self._max_audit_records = max_audit_records if max_audit_records > 0 else 0
        self._clock = clock

        self._lock = asyncio.Lock()

    async def read(self, partition_key: str) -> StateSnapshot:
        blob, version = self._blobs.get(partition_key, ({}, 0))
        return StateSnapshot(partition_key=partition_key, blob=deepcopy(blob), version=version)

    async def write(
        self,
        partition_key: str,
        blob: dict[str, Any],
        expected_version: int,
    ) -> int:
        """Write ``blob`` if the stored version equals ``expected_version``.

        Raises:
            VersionConflictError: If another writer moved the version.
        """
        async with self._lock:
            _, current = self._blobs.get(partition_key, ({}, 0))
            if current != expected_version:
                raise VersionConflictError(
                    f"Version conflict on {partition_key}: expected {expected_version}, "
                    f"found {current}",
                    details={"expected_version": expected_version, "current_version": current},
                )
            new_version = current + 1
            self._blobs[partition_key] = (deepcopy(blob), new_version)
            return new_version

    def _live_lease(self, partition_key: str) -> _Lease | None:
        lease = self._leases.get(partition_key)
        if lease is None:
            return None
        if lease.deadline <= self._clock():
            # Expired leases are reclaimable
            del self._leases[partition_key]
            return None
        return lease

    async def acquire_lock(self, partition_key: str, holder: str, ttl_seconds: float) -> str:
        if ttl_seconds <= 0:
            raise StateBackendError(f"Lock TTL must be positive, got {ttl_seconds}")
        async with self._lock:
            lease = self._live_lease(partition_key)
            if lease is not None:
                raise AlreadyLockedError(
                    f"State partition {partition_key} is locked by {lease.holder}",
                    details={"holder": lease.holder},
                )
            token = str(uuid.uuid4())
            self._leases[partition_key] = _Lease(
                token=token, holder=holder, deadline=self._clock() + ttl_seconds
            )
            return token

    async def renew_lock(self, partition_key: str, lock_token: str, ttl_seconds: float) -> None:
        async with self._lock:
            lease = self._live_lease(partition_key)
            if lease is None or lease.token != lock_token:
                raise InvalidLockTokenError(
                    f"Lock token does not hold a live lease on {partition_key}"
                )
            lease.deadline = self._clock() + ttl_seconds

    async def release_lock(self, partition_key: str, lock_token: str) -> None:
        async with self._lock:
            lease = self._live_lease(partition_key)
            if lease is None or lease.token != lock_token:
                raise InvalidLockTokenError(
                    f"Lock token does not hold a live lease on {partition_key}"
                )
            del self._leases[partition_key]

    async def get_lock(self, partition_key: str) -> LockLease | None:
        async with self._lock:
            lease = self._live_lease(partition_key)
            if lease is None:
                return None
            remaining = lease.deadline - self._clock()
            return LockLease(
                partition_key=partition_key,
                token=lease.token,
                holder=lease.holder,
                expires_at=datetime.now(UTC) + timedelta(seconds=remaining),
            )

    async def create_workspace(self, workspace: Workspace) -> Workspace:
        async with self._lock:
            existing = self._workspaces.get(workspace.region)
            if existing is not None:
                return existing.model_copy()
            self._workspaces[workspace.region] = workspace.model_copy()
            return workspace

    async def get_workspace(self, region: str) -> Workspace | None:
        workspace = self._workspaces.get(region)
        # Copies keep callers from mutating stored records in place
        return workspace.model_copy() if workspace else None

    async def save_workspace(self, workspace: Workspace) -> None:
        async with self._lock:
            if workspace.region not in self._workspaces:
                raise StateBackendError(f"No workspace exists for region {workspace.region}")
            self._workspaces[workspace.region] = workspace.model_copy()

    async def list_workspaces(self) -> list[Workspace]:
        return [workspace.model_copy() for workspace in self._workspaces.values()]

    def _append_capped(self, records: list[Any], record: Any) -> None:
        records.append(record)
        if self._max_audit_records > 0 and len(records) > self._max_audit_records:
            records.pop(0)

    async def save_state_transition(self, transition: StateTransition) -> None:
        async with self._lock:
            self._append_capped(self._transitions.setdefault(transition.region, []), transition)

    async def list_state_transitions(self, region: str) -> list[StateTransition]:
        return list(self._transitions.get(region, []))

    async def save_approval_record(self, record: ApprovalRecord) -> None:
        async with self._lock:
            self._append_capped(self._approvals.setdefault(record.region, []), record)

    async def list_approval_records(self, region: str) -> list[ApprovalRecord]:
        return list(self._approvals.get(region, []))

    async def consume_change_set(self, change_set_id: str) -> bool:
        async with self._lock:
            if change_set_id in self._consumed:
                return False
            self._consumed.add(change_set_id)
            return True
