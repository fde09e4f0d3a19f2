"""Redis-based state backend implementation.

This module provides a Redis implementation of the StateBackend interface so
that several orchestrator instances (CI runners, operators' laptops) share one
strongly consistent view of every region's state and locks.

- State blobs live in a hash (``blob``, ``version``) updated by a Lua
  compare-and-set script.
- Leases are ``SET NX PX`` keys; renew and release are Lua compare-and-act
  scripts so only the token owner can extend or drop a lease.
- Workspaces are created with ``SETNX`` plus an index list, in one script.

Unlike a cache, this backend never falls back to memory: losing Redis raises
StateBackendError instead of silently forking state.

Example:
    ```python
    import os
    os.environ["REDIS_URL"] = "redis://localhost:6379/0"

    from regionflow.infrastructure.state_backend.redis_backend import RedisStateBackend

    backend = RedisStateBackend()
    token = await backend.acquire_lock("workspaces/eu-central-1", "ci-7", ttl_seconds=300)
    ```
"""

import json
import os
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from redis.asyncio import Redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError

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

logger = structlog.get_logger(__name__)

# Redis key patterns
KEY_PATTERN_STATE = "{namespace}:state:{partition_key}"
KEY_PATTERN_LOCK = "{namespace}:lock:{partition_key}"
KEY_PATTERN_WORKSPACE = "{namespace}:workspace:{region}"
KEY_PATTERN_WORKSPACE_INDEX = "{namespace}:workspaces"
KEY_PATTERN_TRANSITIONS = "{namespace}:transitions:{region}"
KEY_PATTERN_APPROVALS = "{namespace}:approvals:{region}"
KEY_PATTERN_CONSUMED = "{namespace}:consumed:{change_set_id}"

DEFAULT_NAMESPACE = "regionflow"
DEFAULT_MAX_AUDIT_RECORDS = 1000
DEFAULT_CONSUMED_TTL = 90 * 24 * 60 * 60  # 90 days

# KEYS[1] state hash; ARGV[1] blob json, ARGV[2] expected version
_WRITE_SCRIPT = """
local current = tonumber(redis.call('HGET', KEYS[1], 'version') or '0')
if current ~= tonumber(ARGV[2]) then
    return {0, current}
end
local new_version = current + 1
redis.call('HSET', KEYS[1], 'blob', ARGV[1], 'version', new_version)
return {1, new_version}
"""

# KEYS[1] lock key; ARGV[1] token, ARGV[2] ttl in ms
_RENEW_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then return 0 end
local lease = cjson.decode(raw)
if lease['token'] ~= ARGV[1] then return 0 end
redis.call('PEXPIRE', KEYS[1], ARGV[2])
return 1
"""

# KEYS[1] lock key; ARGV[1] token
_RELEASE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then return 0 end
local lease = cjson.decode(raw)
if lease['token'] ~= ARGV[1] then return 0 end
redis.call('DEL', KEYS[1])
return 1
"""

# KEYS[1] workspace key, KEYS[2] index list; ARGV[1] workspace json, ARGV[2] region
_CREATE_WORKSPACE_SCRIPT = """
if redis.call('SETNX', KEYS[1], ARGV[1]) == 1 then
    redis.call('RPUSH', KEYS[2], ARGV[2])
    return 1
end
return 0
"""


class RedisStateBackend(StateBackend):
    """Redis-based implementation of the StateBackend interface.

    Attributes:
        _redis: Redis async client instance
        _connection_pool: Redis connection pool (None for an injected client)
        _namespace: Prefix for every key this backend touches
        _max_audit_records: Cap on transitions/approvals kept per region
        _consumed_ttl: Seconds a consumed change set id is remembered
    """

    def __init__(
        self,
        redis_url: str | None = None,
        namespace: str = DEFAULT_NAMESPACE,
        max_audit_records: int = DEFAULT_MAX_AUDIT_RECORDS,
        consumed_ttl: int = DEFAULT_CONSUMED_TTL,
        connection_timeout: int = 5,
        client: Redis | None = None,
    ) -> None:
        """Initialize RedisStateBackend with connection configuration.

        Args:
            redis_url: Redis connection URL. If None, reads REDIS_URL.
            namespace: Key prefix, so several orchestrations can share a server.
            max_audit_records: Transitions/approvals kept per region (FIFO).
            consumed_ttl: How long consumed change set ids are remembered.
            connection_timeout: Socket and connect timeout in seconds.
            client: Pre-built Redis client. Takes precedence over ``redis_url``.

        Raises:
            StateBackendError: If no client or URL is available.
        """
        self._namespace = namespace
        self._max_audit_records = max_audit_records
        self._consumed_ttl = consumed_ttl
        self._connection_pool: ConnectionPool | None = None

        if client is not None:
            self._redis = client
        else:
            redis_url = redis_url or os.getenv("REDIS_URL")
            if not redis_url:
                raise StateBackendError(
                    "Redis state backend requires redis_url or the REDIS_URL environment variable"
                )
            try:
                self._connection_pool = ConnectionPool.from_url(
                    redis_url,
                    max_connections=10,
                    socket_connect_timeout=connection_timeout,
                    socket_timeout=connection_timeout,
                    decode_responses=True,
                )
                self._redis = Redis(connection_pool=self._connection_pool)
            except (RedisError, ValueError) as e:
                raise StateBackendError(f"Failed to initialize Redis connection: {e}") from e

        self._write_script = self._redis.register_script(_WRITE_SCRIPT)
        self._renew_script = self._redis.register_script(_RENEW_SCRIPT)
        self._release_script = self._redis.register_script(_RELEASE_SCRIPT)
        self._create_workspace_script = self._redis.register_script(_CREATE_WORKSPACE_SCRIPT)

    def _key(self, pattern: str, **kwargs: str) -> str:
        return pattern.format(namespace=self._namespace, **kwargs)

    @staticmethod
    def _decode(value: Any) -> str:
        return value.decode("utf-8") if isinstance(value, bytes) else value

    async def read(self, partition_key: str) -> StateSnapshot:
        try:
            raw = await self._redis.hgetall(
                self._key(KEY_PATTERN_STATE, partition_key=partition_key)
            )
        except RedisError as e:
            raise StateBackendError(f"Failed to read state {partition_key}: {e}") from e

        if not raw:
            return StateSnapshot(partition_key=partition_key)
        fields = {self._decode(k): self._decode(v) for k, v in raw.items()}
        return StateSnapshot(
            partition_key=partition_key,
            blob=json.loads(fields.get("blob", "{}")),
            version=int(fields.get("version", 0)),
        )

    async def write(
        self,
        partition_key: str,
        blob: dict[str, Any],
        expected_version: int,
    ) -> int:
        try:
            written, version = await self._write_script(
                keys=[self._key(KEY_PATTERN_STATE, partition_key=partition_key)],
                args=[json.dumps(blob, sort_keys=True), expected_version],
            )
        except RedisError as e:
            raise StateBackendError(f"Failed to write state {partition_key}: {e}") from e

        if int(written) != 1:
            raise VersionConflictError(
                f"Version conflict on {partition_key}: expected {expected_version}, "
                f"found {int(version)}",
                details={"expected_version": expected_version, "current_version": int(version)},
            )
        return int(version)

    async def acquire_lock(self, partition_key: str, holder: str, ttl_seconds: float) -> str:
        if ttl_seconds <= 0:
            raise StateBackendError(f"Lock TTL must be positive, got {ttl_seconds}")
        token = str(uuid.uuid4())
        lock_key = self._key(KEY_PATTERN_LOCK, partition_key=partition_key)
        try:
            acquired = await self._redis.set(
                lock_key,
                json.dumps({"token": token, "holder": holder}),
                nx=True,
                px=int(ttl_seconds * 1000),
            )
            if acquired:
                return token
            current = await self._redis.get(lock_key)
        except RedisError as e:
            raise StateBackendError(f"Failed to acquire lock on {partition_key}: {e}") from e

        holder_id = json.loads(self._decode(current))["holder"] if current else "unknown"
        logger.info("State partition already locked", partition_key=partition_key, holder=holder_id)
        raise AlreadyLockedError(
            f"State partition {partition_key} is locked by {holder_id}",
            details={"holder": holder_id},
        )

    async def renew_lock(self, partition_key: str, lock_token: str, ttl_seconds: float) -> None:
        try:
            renewed = await self._renew_script(
                keys=[self._key(KEY_PATTERN_LOCK, partition_key=partition_key)],
                args=[lock_token, int(ttl_seconds * 1000)],
            )
        except RedisError as e:
            raise StateBackendError(f"Failed to renew lock on {partition_key}: {e}") from e
        if int(renewed) != 1:
            raise InvalidLockTokenError(
                f"Lock token does not hold a live lease on {partition_key}"
            )

    async def release_lock(self, partition_key: str, lock_token: str) -> None:
        try:
            released = await self._release_script(
                keys=[self._key(KEY_PATTERN_LOCK, partition_key=partition_key)],
                args=[lock_token],
            )
        except RedisError as e:
            raise StateBackendError(f"Failed to release lock on {partition_key}: {e}") from e
        if int(released) != 1:
            raise InvalidLockTokenError(
                f"Lock token does not hold a live lease on {partition_key}"
            )

    async def get_lock(self, partition_key: str) -> LockLease | None:
        lock_key = self._key(KEY_PATTERN_LOCK, partition_key=partition_key)
        try:
            raw = await self._redis.get(lock_key)
            ttl_ms = await self._redis.pttl(lock_key)
        except RedisError as e:
            raise StateBackendError(f"Failed to read lock on {partition_key}: {e}") from e
        if not raw or ttl_ms < 0:
            return None
        lease = json.loads(self._decode(raw))
        return LockLease(
            partition_key=partition_key,
            token=lease["token"],
            holder=lease["holder"],
            expires_at=datetime.now(UTC) + timedelta(milliseconds=ttl_ms),
        )

    async def create_workspace(self, workspace: Workspace) -> Workspace:
        workspace_key = self._key(KEY_PATTERN_WORKSPACE, region=workspace.region)
        try:
            created = await self._create_workspace_script(
                keys=[workspace_key, self._key(KEY_PATTERN_WORKSPACE_INDEX)],
                args=[workspace.model_dump_json(), workspace.region],
            )
            if int(created) == 1:
                return workspace
            raw = await self._redis.get(workspace_key)
        except RedisError as e:
            raise StateBackendError(
                f"Failed to create workspace for {workspace.region}: {e}"
            ) from e
        return Workspace.model_validate_json(self._decode(raw))

    async def get_workspace(self, region: str) -> Workspace | None:
        try:
            raw = await self._redis.get(self._key(KEY_PATTERN_WORKSPACE, region=region))
        except RedisError as e:
            raise StateBackendError(f"Failed to get workspace for {region}: {e}") from e
        return Workspace.model_validate_json(self._decode(raw)) if raw else None

    async def save_workspace(self, workspace: Workspace) -> None:
        try:
            updated = await self._redis.set(
                self._key(KEY_PATTERN_WORKSPACE, region=workspace.region),
                workspace.model_dump_json(),
                xx=True,
            )
        except RedisError as e:
            raise StateBackendError(
                f"Failed to save workspace for {workspace.region}: {e}"
            ) from e
        if not updated:
            raise StateBackendError(f"No workspace exists for region {workspace.region}")

    async def list_workspaces(self) -> list[Workspace]:
        try:
            regions = await self._redis.lrange(self._key(KEY_PATTERN_WORKSPACE_INDEX), 0, -1)
            if not regions:
                return []
            keys = [
                self._key(KEY_PATTERN_WORKSPACE, region=self._decode(region))
                for region in regions
            ]
            raw_records = await self._redis.mget(keys)
        except RedisError as e:
            raise StateBackendError(f"Failed to list workspaces: {e}") from e
        return [
            Workspace.model_validate_json(self._decode(raw)) for raw in raw_records if raw
        ]

    async def _append_capped(self, key: str, payload: str) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.rpush(key, payload)
            if self._max_audit_records > 0:
                pipe.ltrim(key, -self._max_audit_records, -1)
            await pipe.execute()

    async def save_state_transition(self, transition: StateTransition) -> None:
        try:
            await self._append_capped(
                self._key(KEY_PATTERN_TRANSITIONS, region=transition.region),
                transition.model_dump_json(),
            )
        except RedisError as e:
            raise StateBackendError(
                f"Failed to save state transition for {transition.region}: {e}"
            ) from e

    async def list_state_transitions(self, region: str) -> list[StateTransition]:
        try:
            raw = await self._redis.lrange(self._key(KEY_PATTERN_TRANSITIONS, region=region), 0, -1)
        except RedisError as e:
            raise StateBackendError(f"Failed to list transitions for {region}: {e}") from e
        return [StateTransition.model_validate_json(self._decode(item)) for item in raw]

    async def save_approval_record(self, record: ApprovalRecord) -> None:
        try:
            await self._append_capped(
                self._key(KEY_PATTERN_APPROVALS, region=record.region),
                record.model_dump_json(),
            )
        except RedisError as e:
            raise StateBackendError(
                f"Failed to save approval record for {record.region}: {e}"
            ) from e

    async def list_approval_records(self, region: str) -> list[ApprovalRecord]:
        try:
            raw = await self._redis.lrange(self._key(KEY_PATTERN_APPROVALS, region=region), 0, -1)
        except RedisError as e:
            raise StateBackendError(f"Failed to list approvals for {region}: {e}") from e
        return [ApprovalRecord.model_validate_json(self._decode(item)) for item in raw]

    async def consume_change_set(self, change_set_id: str) -> bool:
        try:
            consumed = await self._redis.set(
                self._key(KEY_PATTERN_CONSUMED, change_set_id=change_set_id),
                datetime.now(UTC).isoformat(),
                nx=True,
                ex=self._consumed_ttl,
            )
        except RedisError as e:
            raise StateBackendError(f"Failed to consume change set {change_set_id}: {e}") from e
        return bool(consumed)

    async def check_connection(self) -> bool:
        """Check if the Redis connection is healthy."""
        try:
            await self._redis.ping()
            return True
        except RedisError:
            return False

    async def close(self) -> None:
        """Close the Redis client and its connection pool."""
        await self._redis.aclose()
        if self._connection_pool is not None:
            await self._connection_pool.disconnect()
