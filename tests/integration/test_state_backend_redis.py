"""Integration tests for RedisStateBackend against a live Redis server."""

import asyncio
import os
import uuid

import pytest
from redis.asyncio import Redis

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
from regionflow.infrastructure.state_backend.redis_backend import RedisStateBackend

PARTITION = "workspaces/eu-central-1"

pytestmark = pytest.mark.integration


@pytest.fixture
def redis_url() -> str:
    """Get Redis connection URL from environment or use default."""
    return os.getenv("REDIS_URL", "redis://localhost:6379/0")


@pytest.fixture
async def redis_backend(redis_url: str):
    """RedisStateBackend under a throwaway namespace."""
    try:
        client = Redis.from_url(redis_url, socket_connect_timeout=2)
        await client.ping()
        await client.aclose()
    except Exception:
        pytest.skip(
            "Redis is not available. Start Redis with 'docker-compose up -d' or set REDIS_URL"
        )

    namespace = f"regionflow-test-{uuid.uuid4().hex[:8]}"
    backend = RedisStateBackend(redis_url=redis_url, namespace=namespace, max_audit_records=2)
    yield backend

    keys = [key async for key in backend._redis.scan_iter(match=f"{namespace}:*")]
    if keys:
        await backend._redis.delete(*keys)
    await backend.close()


class TestRedisVersionedState:
    """Tests for versioned state in Redis."""

    @pytest.mark.asyncio
    async def test_conditional_writes(self, redis_backend) -> None:
        """Test version increments and conflicts."""
        assert (await redis_backend.read(PARTITION)).version == 0

        assert await redis_backend.write(PARTITION, {"serial": 1}, expected_version=0) == 1
        with pytest.raises(VersionConflictError) as exc_info:
            await redis_backend.write(PARTITION, {"serial": 9}, expected_version=0)

        assert exc_info.value.details["current_version"] == 1
        snapshot = await redis_backend.read(PARTITION)
        assert snapshot.blob == {"serial": 1}
        assert snapshot.version == 1

    @pytest.mark.asyncio
    async def test_concurrent_writers_one_wins(self, redis_backend) -> None:
        """Test that racing writers at the same version produce one success."""
        results = await asyncio.gather(
            *(redis_backend.write(PARTITION, {"writer": i}, expected_version=0) for i in range(4)),
            return_exceptions=True,
        )

        assert sum(1 for r in results if r == 1) == 1
        assert sum(1 for r in results if isinstance(r, VersionConflictError)) == 3


class TestRedisLocks:
    """Tests for Redis leases."""

    @pytest.mark.asyncio
    async def test_lease_lifecycle(self, redis_backend) -> None:
        """Test acquire, contention, renew and release."""
        token = await redis_backend.acquire_lock(PARTITION, "runner-a", ttl_seconds=30)

        with pytest.raises(AlreadyLockedError) as exc_info:
            await redis_backend.acquire_lock(PARTITION, "runner-b", ttl_seconds=30)
        assert exc_info.value.details["holder"] == "runner-a"

        await redis_backend.renew_lock(PARTITION, token, ttl_seconds=30)
        with pytest.raises(InvalidLockTokenError):
            await redis_backend.renew_lock(PARTITION, "wrong", ttl_seconds=30)

        lease = await redis_backend.get_lock(PARTITION)
        assert lease.holder == "runner-a"

        await redis_backend.release_lock(PARTITION, token)
        assert await redis_backend.get_lock(PARTITION) is None

    @pytest.mark.asyncio
    async def test_lease_expires(self, redis_backend) -> None:
        """Test that an unrenewed lease frees the partition."""
        token = await redis_backend.acquire_lock(PARTITION, "crashed", ttl_seconds=0.2)
        await asyncio.sleep(0.4)

        assert await redis_backend.acquire_lock(PARTITION, "runner-b", ttl_seconds=30)
        with pytest.raises(InvalidLockTokenError):
            await redis_backend.release_lock(PARTITION, token)


class TestRedisRecords:
    """Tests for workspace, audit and consumption records in Redis."""

    @pytest.mark.asyncio
    async def test_workspace_create_if_absent(self, redis_backend) -> None:
        """Test that a second create returns the stored workspace."""
        first = Workspace(region="eu-central-1", partition_key=PARTITION)
        await redis_backend.create_workspace(first)

        existing = await redis_backend.create_workspace(
            Workspace(region="eu-central-1", partition_key=PARTITION)
        )
        assert existing.created_at == first.created_at

        existing.status = WorkspaceStatus.Applying
        await redis_backend.save_workspace(existing)
        assert (await redis_backend.get_workspace("eu-central-1")).status == WorkspaceStatus.Applying
        assert [w.region for w in await redis_backend.list_workspaces()] == ["eu-central-1"]

        with pytest.raises(StateBackendError):
            await redis_backend.save_workspace(
                Workspace(region="us-east-1", partition_key="workspaces/us-east-1")
            )

    @pytest.mark.asyncio
    async def test_audit_lists_are_capped(self, redis_backend) -> None:
        """Test FIFO capping of transitions and approvals."""
        for trigger in ("first", "second", "third"):
            await redis_backend.save_state_transition(
                StateTransition(
                    region="eu-central-1", from_status="absent", to_status="applying", trigger=trigger
                )
            )
        record = ApprovalRecord(
            pending_id="p1",
            region="eu-central-1",
            operation=OperationType.Apply,
            change_set_id="cs1",
            change_set_hash="a" * 64,
            decision=ApprovalDecision.Approved,
            actor="alice",
        )
        await redis_backend.save_approval_record(record)

        transitions = await redis_backend.list_state_transitions("eu-central-1")
        assert [t.trigger for t in transitions] == ["second", "third"]
        assert await redis_backend.list_approval_records("eu-central-1") == [record]

    @pytest.mark.asyncio
    async def test_consume_once(self, redis_backend) -> None:
        """Test single-use change set ids."""
        assert await redis_backend.consume_change_set("cs1") is True
        assert await redis_backend.consume_change_set("cs1") is False
