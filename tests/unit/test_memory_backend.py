"""Tests for InMemoryStateBackend implementation."""

import asyncio

import pytest

from regionflow.domain.errors import (
    AlreadyLockedError,
    InvalidLockTokenError,
    StateBackendError,
    VersionConflictError,
)
from regionflow.domain.models.approval import ApprovalDecision, ApprovalRecord
from regionflow.domain.models.change_set import OperationType
from regionflow.domain.models.state_transition import StateTransition
from regionflow.domain.models.workspace import Workspace, WorkspaceStatus
from regionflow.infrastructure.state_backend.memory_backend import InMemoryStateBackend

PARTITION = "workspaces/eu-central-1"


class FakeClock:
    """Controllable monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestInMemoryStateBackendVersionedState:
    """Tests for versioned state blobs."""

    @pytest.mark.asyncio
    async def test_read_unwritten_partition_returns_version_zero(self) -> None:
        """Test that a partition never written reads as an empty blob at version 0."""
        backend = InMemoryStateBackend()

        snapshot = await backend.read(PARTITION)

        assert snapshot.partition_key == PARTITION
        assert snapshot.blob == {}
        assert snapshot.version == 0

    @pytest.mark.asyncio
    async def test_write_with_expected_version_increments_version(self) -> None:
        """Test that conditional writes bump the version by one."""
        backend = InMemoryStateBackend()

        assert await backend.write(PARTITION, {"serial": 1}, expected_version=0) == 1
        assert await backend.write(PARTITION, {"serial": 2}, expected_version=1) == 2

        snapshot = await backend.read(PARTITION)
        assert snapshot.version == 2
        assert snapshot.blob == {"serial": 2}

    @pytest.mark.asyncio
    async def test_write_with_stale_version_raises_conflict(self) -> None:
        """Test that a writer holding an old version is refused."""
        backend = InMemoryStateBackend()
        await backend.write(PARTITION, {"serial": 1}, expected_version=0)

        with pytest.raises(VersionConflictError) as exc_info:
            await backend.write(PARTITION, {"serial": 99}, expected_version=0)

        assert exc_info.value.details == {"expected_version": 0, "current_version": 1}
        assert (await backend.read(PARTITION)).blob == {"serial": 1}

    @pytest.mark.asyncio
    async def test_read_returns_copy_of_blob(self) -> None:
        """Test that mutating a read snapshot does not change stored state."""
        backend = InMemoryStateBackend()
        await backend.write(PARTITION, {"resources": ["aws_vpc.main"]}, expected_version=0)

        snapshot = await backend.read(PARTITION)
        snapshot.blob["resources"].append("aws_vpc.rogue")

        assert (await backend.read(PARTITION)).blob == {"resources": ["aws_vpc.main"]}

    @pytest.mark.asyncio
    async def test_partitions_are_isolated(self) -> None:
        """Test that writes to one partition never touch another."""
        backend = InMemoryStateBackend()
        await backend.write(PARTITION, {"serial": 1}, expected_version=0)

        other = await backend.read("workspaces/us-east-1")

        assert other.version == 0
        assert other.blob == {}


class TestInMemoryStateBackendLocks:
    """Tests for lease-based locks."""

    @pytest.mark.asyncio
    async def test_acquire_lock_returns_token_and_blocks_second_holder(self) -> None:
        """Test that a held lease refuses a second acquirer immediately."""
        backend = InMemoryStateBackend()

        token = await backend.acquire_lock(PARTITION, "runner-a", ttl_seconds=60)

        assert token
        with pytest.raises(AlreadyLockedError) as exc_info:
            await backend.acquire_lock(PARTITION, "runner-b", ttl_seconds=60)
        assert exc_info.value.details["holder"] == "runner-a"

    @pytest.mark.asyncio
    async def test_concurrent_acquire_grants_exactly_one_lease(self) -> None:
        """Test that racing acquirers get exactly one lease."""
        backend = InMemoryStateBackend()

        results = await asyncio.gather(
            *(backend.acquire_lock(PARTITION, f"runner-{i}", ttl_seconds=60) for i in range(5)),
            return_exceptions=True,
        )

        tokens = [r for r in results if isinstance(r, str)]
        errors = [r for r in results if isinstance(r, AlreadyLockedError)]
        assert len(tokens) == 1
        assert len(errors) == 4

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_reclaimed(self) -> None:
        """Test that a lease past its TTL is free for another holder."""
        clock = FakeClock()
        backend = InMemoryStateBackend(clock=clock)
        stale_token = await backend.acquire_lock(PARTITION, "crashed-runner", ttl_seconds=30)

        clock.advance(31)
        token = await backend.acquire_lock(PARTITION, "runner-b", ttl_seconds=30)

        assert token != stale_token
        with pytest.raises(InvalidLockTokenError):
            await backend.release_lock(PARTITION, stale_token)

    @pytest.mark.asyncio
    async def test_renew_extends_lease(self) -> None:
        """Test that renewing keeps the lease alive past the original TTL."""
        clock = FakeClock()
        backend = InMemoryStateBackend(clock=clock)
        token = await backend.acquire_lock(PARTITION, "runner-a", ttl_seconds=30)

        clock.advance(20)
        await backend.renew_lock(PARTITION, token, ttl_seconds=30)
        clock.advance(20)

        lease = await backend.get_lock(PARTITION)
        assert lease is not None
        assert lease.token == token
        assert lease.holder == "runner-a"

    @pytest.mark.asyncio
    async def test_renew_with_wrong_token_raises(self) -> None:
        """Test that only the holder can renew."""
        backend = InMemoryStateBackend()
        await backend.acquire_lock(PARTITION, "runner-a", ttl_seconds=30)

        with pytest.raises(InvalidLockTokenError):
            await backend.renew_lock(PARTITION, "not-the-token", ttl_seconds=30)

    @pytest.mark.asyncio
    async def test_release_frees_partition(self) -> None:
        """Test that releasing lets the next holder in."""
        backend = InMemoryStateBackend()
        token = await backend.acquire_lock(PARTITION, "runner-a", ttl_seconds=30)

        await backend.release_lock(PARTITION, token)

        assert await backend.get_lock(PARTITION) is None
        assert await backend.acquire_lock(PARTITION, "runner-b", ttl_seconds=30)

    @pytest.mark.asyncio
    async def test_non_positive_ttl_is_rejected(self) -> None:
        """Test that a zero TTL is refused."""
        backend = InMemoryStateBackend()

        with pytest.raises(StateBackendError):
            await backend.acquire_lock(PARTITION, "runner-a", ttl_seconds=0)


class TestInMemoryStateBackendRecords:
    """Tests for workspace, audit and consumption records."""

    @pytest.mark.asyncio
    async def test_create_workspace_is_create_if_absent(self) -> None:
        """Test that a second create returns the existing record."""
        backend = InMemoryStateBackend()
        first = Workspace(region="eu-central-1", partition_key=PARTITION)
        second = Workspace(region="eu-central-1", partition_key=PARTITION)

        created = await backend.create_workspace(first)
        existing = await backend.create_workspace(second)

        assert created is first
        assert existing is not second
        assert existing.created_at == first.created_at
        assert [w.region for w in await backend.list_workspaces()] == ["eu-central-1"]

    @pytest.mark.asyncio
    async def test_save_workspace_requires_existing_record(self) -> None:
        """Test that saving an unknown workspace fails."""
        backend = InMemoryStateBackend()

        with pytest.raises(StateBackendError):
            await backend.save_workspace(Workspace(region="eu-central-1", partition_key=PARTITION))

    @pytest.mark.asyncio
    async def test_get_workspace_returns_copy(self) -> None:
        """Test that callers cannot change stored workspaces in place."""
        backend = InMemoryStateBackend()
        await backend.create_workspace(Workspace(region="eu-central-1", partition_key=PARTITION))

        workspace = await backend.get_workspace("eu-central-1")
        workspace.status = WorkspaceStatus.Applied

        stored = await backend.get_workspace("eu-central-1")
        assert stored.status == WorkspaceStatus.Absent

    @pytest.mark.asyncio
    async def test_transitions_are_capped_fifo(self) -> None:
        """Test that the oldest transitions are dropped past the cap."""
        backend = InMemoryStateBackend(max_audit_records=2)
        for trigger in ("first", "second", "third"):
            await backend.save_state_transition(
                StateTransition(
                    region="eu-central-1",
                    from_status="absent",
                    to_status="applying",
                    trigger=trigger,
                )
            )

        transitions = await backend.list_state_transitions("eu-central-1")

        assert [t.trigger for t in transitions] == ["second", "third"]

    @pytest.mark.asyncio
    async def test_approval_records_are_listed_per_region(self) -> None:
        """Test that approval records are kept per region in order."""
        backend = InMemoryStateBackend()
        record = ApprovalRecord(
            pending_id="p1",
            region="eu-central-1",
            operation=OperationType.Apply,
            change_set_id="cs1",
            change_set_hash="a" * 64,
            decision=ApprovalDecision.Approved,
            actor="alice",
        )

        await backend.save_approval_record(record)

        assert await backend.list_approval_records("eu-central-1") == [record]
        assert await backend.list_approval_records("us-east-1") == []

    @pytest.mark.asyncio
    async def test_consume_change_set_only_once(self) -> None:
        """Test that a change set id can be consumed a single time."""
        backend = InMemoryStateBackend()

        assert await backend.consume_change_set("cs1") is True
        assert await backend.consume_change_set("cs1") is False
        assert await backend.consume_change_set("cs2") is True
