"""ApplyExecutor component: lock-guarded, approval-gated mutations."""

import asyncio
import contextlib
from typing import Any

from regionflow.domain.components.approval_gate import ApprovalGate
from regionflow.domain.components.workspace_registry import WorkspaceRegistry
from regionflow.domain.errors import (
    ApprovalMismatchError,
    ChangeSetConsumedError,
    ExecutionError,
    InvalidLockTokenError,
    OrchestratorError,
    PartialApplyError,
    StalePlanError,
    StateBackendError,
)
from regionflow.domain.interfaces.iac_executor import (
    ExecutionOutcome,
    ExecutorError,
    IaCExecutor,
)
from regionflow.domain.interfaces.observability_manager import ObservabilityManager
from regionflow.domain.interfaces.state_backend import StateBackend, StateSnapshot
from regionflow.domain.models.approval import ApprovalRecord
from regionflow.domain.models.change_set import ChangeSet, OperationType
from regionflow.domain.models.run_result import RunOutcome, RunResult
from regionflow.domain.models.workspace import Workspace, WorkspaceStatus

_IN_FLIGHT_STATUS = {
    OperationType.Apply: WorkspaceStatus.Applying,
    OperationType.Destroy: WorkspaceStatus.Destroying,
}
_SUCCESS_STATUS = {
    OperationType.Apply: WorkspaceStatus.Applied,
    OperationType.Destroy: WorkspaceStatus.Absent,
}


class ApplyExecutor:
    """Runs approved change sets against a workspace under its lease lock.

    Sequence for both apply and destroy:

    1. verify the approval (before touching any lock),
    2. acquire the partition lease, failing fast if it is held,
    3. consume the change set (single use),
    4. re-check that state version and lock token match the plan,
    5. run the executor, renewing the lease in the background,
    6. persist the resulting (possibly partial) state and final status,
    7. release the lease.

    Once the executor starts, the mutation runs to a terminal outcome even if
    the caller is cancelled; the cancellation is re-raised afterwards.
    Partial failures are never retried: blind retries against partially
    mutated infrastructure can duplicate resources.
    """

    def __init__(
        self,
        state_backend: StateBackend,
        workspace_registry: WorkspaceRegistry,
        approval_gate: ApprovalGate,
        executor: IaCExecutor,
        observability_manager: ObservabilityManager,
        holder_id: str,
        lock_ttl_seconds: float = 300,
        renew_interval_seconds: float | None = None,
    ) -> None:
        """Initialize ApplyExecutor.

        Args:
            state_backend: Backend holding state partitions and leases.
            workspace_registry: Registry whose status this executor owns.
            approval_gate: Gate used to verify approvals.
            executor: External IaC executor.
            observability_manager: ObservabilityManager for events and logging.
            holder_id: Identity recorded on acquired leases.
            lock_ttl_seconds: Lease duration.
            renew_interval_seconds: Lease renewal period. Defaults to a third
                of the TTL.
        """
        self._state_backend = state_backend
        self._registry = workspace_registry
        self._gate = approval_gate
        self._executor = executor
        self._observability = observability_manager
        self._holder_id = holder_id
        self._lock_ttl_seconds = lock_ttl_seconds
        self._renew_interval_seconds = renew_interval_seconds or lock_ttl_seconds / 3

    async def apply(
        self,
        workspace: Workspace,
        change_set: ChangeSet,
        approval: ApprovalRecord,
    ) -> RunResult:
        """Apply an approved change set.

        Raises:
            ApprovalMismatchError: If the approval does not authorize the change set.
            AlreadyLockedError: If another mutation holds the workspace lease.
            ChangeSetConsumedError: If the change set was already used.
            StalePlanError: If state changed since planning.
            PartialApplyError: If only some resources were reconciled.
            ExecutionError: If the executor failed without changing state.
        """
        return await self._mutate(workspace, change_set, approval, OperationType.Apply)

    async def destroy(
        self,
        workspace: Workspace,
        change_set: ChangeSet,
        approval: ApprovalRecord,
    ) -> RunResult:
        """Destroy a workspace's infrastructure with an approved destroy plan.

        On success the workspace is marked ``absent``; the record is kept.
        Raises the same errors as apply.
        """
        return await self._mutate(workspace, change_set, approval, OperationType.Destroy)

    async def _mutate(
        self,
        workspace: Workspace,
        change_set: ChangeSet,
        approval: ApprovalRecord,
        operation: OperationType,
    ) -> RunResult:
        region = workspace.region
        try:
            if change_set.operation != operation:
                raise ApprovalMismatchError(
                    f"Change set was planned for {change_set.operation.value}, "
                    f"not {operation.value}"
                )
            if change_set.region != region:
                raise ApprovalMismatchError(
                    f"Change set for {change_set.region} cannot be used on {region}"
                )
            await self._gate.verify(change_set, approval)

            lock_token = await self._state_backend.acquire_lock(
                workspace.partition_key, self._holder_id, self._lock_ttl_seconds
            )
            try:
                return await self._run_locked(workspace, change_set, operation, lock_token)
            finally:
                await self._release(workspace, lock_token)
        except OrchestratorError as e:
            if e.region is None:
                e.region = region
            raise

    async def _run_locked(
        self,
        workspace: Workspace,
        change_set: ChangeSet,
        operation: OperationType,
        lock_token: str,
    ) -> RunResult:
        region = workspace.region

        if not await self._state_backend.consume_change_set(change_set.id):
            raise ChangeSetConsumedError(f"Change set {change_set.id} was already consumed")

        snapshot = await self._state_backend.read(workspace.partition_key)
        current = await self._registry.get(region)
        if snapshot.version != change_set.state_version:
            raise StalePlanError(
                f"State moved from version {change_set.state_version} to "
                f"{snapshot.version} since planning; re-plan required",
                details={
                    "planned_version": change_set.state_version,
                    "current_version": snapshot.version,
                },
            )
        if current.lock_token != change_set.lock_token:
            raise StalePlanError("Workspace lock token changed since planning; re-plan required")

        await self._registry.set_lock_token(region, lock_token)
        await self._registry.set_status(
            region,
            _IN_FLIGHT_STATUS[operation],
            trigger=f"{operation.value}_started",
            context={"change_set_hash": change_set.content_hash},
        )
        await self._emit_event(
            "apply_started",
            {
                "region": region,
                "operation": operation.value,
                "change_set_hash": change_set.content_hash,
                "state_version": snapshot.version,
            },
        )

        outcome, error, cancelled = await self._execute(snapshot, change_set, operation, lock_token)
        result = await self._reconcile(workspace, change_set, operation, snapshot, outcome, error)
        if cancelled:
            raise asyncio.CancelledError()
        return result

    async def _execute(
        self,
        snapshot: StateSnapshot,
        change_set: ChangeSet,
        operation: OperationType,
        lock_token: str,
    ) -> tuple[ExecutionOutcome | None, Exception | None, bool]:
        """Run the executor to a terminal outcome, renewing the lease meanwhile.

        Returns:
            ``(outcome, error, cancelled)``: exactly one of outcome/error is set;
            ``cancelled`` tells whether the caller was cancelled while waiting.
        """
        renewal = asyncio.create_task(
            self._renew_lease(snapshot.partition_key, lock_token, change_set.region)
        )
        run = asyncio.ensure_future(
            self._executor.apply(
                snapshot,
                change_set.parameters.reveal(),
                destroy=operation == OperationType.Destroy,
                expected_changes=change_set.changes,
            )
        )
        cancelled = False
        try:
            while True:
                try:
                    outcome = await asyncio.shield(run)
                    return outcome, None, cancelled
                except asyncio.CancelledError:
                    if run.cancelled():
                        raise
                    # Mutation in progress: wait for it before honouring cancellation
                    cancelled = True
                except Exception as e:
                    return None, e, cancelled
        finally:
            renewal.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await renewal

    async def _reconcile(
        self,
        workspace: Workspace,
        change_set: ChangeSet,
        operation: OperationType,
        snapshot: StateSnapshot,
        outcome: ExecutionOutcome | None,
        error: Exception | None,
    ) -> RunResult:
        region = workspace.region
        partial_state: dict[str, Any] | None = None
        unresolved: list[str] = []
        message = ""

        if outcome is not None and outcome.succeeded:
            try:
                new_version = await self._state_backend.write(
                    workspace.partition_key, outcome.state, snapshot.version
                )
            except OrchestratorError as e:
                await self._mark_failed(region, operation, change_set, str(e))
                raise
            status = _SUCCESS_STATUS[operation]
            await self._registry.set_status(
                region,
                status,
                trigger=f"{operation.value}_succeeded",
                context={"change_set_hash": change_set.content_hash, "state_version": new_version},
            )
            await self._emit_event(
                "apply_finished",
                {
                    "region": region,
                    "operation": operation.value,
                    "outcome": RunOutcome.Succeeded.value,
                    "change_set_hash": change_set.content_hash,
                    "state_version": new_version,
                },
            )
            return RunResult(
                region=region,
                operation=operation,
                outcome=RunOutcome.Succeeded,
                workspace_status=status,
                change_set_hash=change_set.content_hash,
                detail={"state_version": new_version, **outcome.detail},
            )

        if outcome is not None:
            partial_state = outcome.state
            unresolved = outcome.unresolved_resources
            message = outcome.detail.get("error", "Executor reported a partial failure")
        elif isinstance(error, ExecutorError):
            partial_state = error.partial_state
            unresolved = error.unresolved_resources
            message = error.message
        else:
            message = f"Executor crashed: {error!r}"

        state_version = snapshot.version
        if partial_state is not None:
            try:
                state_version = await self._state_backend.write(
                    workspace.partition_key, partial_state, snapshot.version
                )
            except OrchestratorError as e:
                await self._mark_failed(region, operation, change_set, str(e))
                raise
        await self._mark_failed(region, operation, change_set, message)

        if partial_state is not None:
            raise PartialApplyError(
                f"{operation.value} partially failed: {message}",
                unresolved_resources=unresolved or change_set.mutated_resources(),
                details={
                    "change_set_hash": change_set.content_hash,
                    "state_version": state_version,
                },
            )
        raise ExecutionError(
            message,
            details={"change_set_hash": change_set.content_hash},
        ) from error

    async def _mark_failed(
        self,
        region: str,
        operation: OperationType,
        change_set: ChangeSet,
        message: str,
    ) -> None:
        await self._registry.set_status(
            region,
            WorkspaceStatus.Failed,
            trigger=f"{operation.value}_failed",
            context={"change_set_hash": change_set.content_hash, "error": message},
        )
        await self._emit_event(
            "apply_finished",
            {
                "region": region,
                "operation": operation.value,
                "outcome": RunOutcome.Failed.value,
                "change_set_hash": change_set.content_hash,
                "error": message,
            },
        )

    async def _renew_lease(self, partition_key: str, lock_token: str, region: str) -> None:
        while True:
            await asyncio.sleep(self._renew_interval_seconds)
            try:
                await self._state_backend.renew_lock(
                    partition_key, lock_token, self._lock_ttl_seconds
                )
            except InvalidLockTokenError:
                await self._observability.log(
                    level="ERROR",
                    message="Lost workspace lease during mutation",
                    context={"region": region, "partition_key": partition_key},
                )
                return
            except StateBackendError as e:
                await self._observability.log(
                    level="WARNING",
                    message=f"Lease renewal failed, retrying next interval: {e}",
                    context={"region": region, "partition_key": partition_key},
                )

    async def _release(self, workspace: Workspace, lock_token: str) -> None:
        current = await self._state_backend.get_workspace(workspace.region)
        if current is not None and current.lock_token == lock_token:
            await self._registry.set_lock_token(workspace.region, None)
        try:
            await self._state_backend.release_lock(workspace.partition_key, lock_token)
        except InvalidLockTokenError:
            await self._observability.log(
                level="WARNING",
                message="Workspace lease expired before release",
                context={"region": workspace.region, "partition_key": workspace.partition_key},
            )

    async def _emit_event(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self._observability.emit_event(event_type, payload)
        except Exception as e:
            await self._observability.log(
                level="WARNING",
                message=f"Failed to emit {event_type} event: {e}",
                context={"region": payload.get("region")},
            )


