"""RolloutCoordinator component: sequential multi-region apply and destroy."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from regionflow.domain.components.apply_executor import ApplyExecutor
from regionflow.domain.components.approval_gate import ApprovalGate
from regionflow.domain.components.parameter_resolver import ParameterResolver
from regionflow.domain.components.plan_engine import PlanEngine
from regionflow.domain.components.workspace_registry import WorkspaceRegistry
from regionflow.domain.errors import (
    ApprovalError,
    ApprovalExpiredError,
    ApprovalRejectedError,
    ErrorCategory,
    ExecutionError,
    OrchestratorError,
    PartialApplyError,
    RolloutFailedError,
)
from regionflow.domain.interfaces.observability_manager import ObservabilityManager
from regionflow.domain.models.approval import ApprovalDecision, ApprovalRecord
from regionflow.domain.models.change_set import ChangeSet, OperationType
from regionflow.domain.models.run_result import RolloutReport, RunOutcome, RunResult
from regionflow.domain.models.workspace import Workspace, WorkspaceStatus, validate_region

Approver = Callable[[ApprovalGate, str, ChangeSet], Awaitable[None]]
"""Called once a change set is submitted: ``approver(gate, pending_id, change_set)``.

It is expected to call ``gate.decide`` (or leave the item to expire).
"""

AppliedHook = Callable[[Workspace], Awaitable[None]]
"""Called after a region reaches ``applied``, e.g. to bootstrap a cluster."""


class RolloutCoordinator:
    """Drives a set of regions through resolve, plan, approve and apply.

    Regions run one after another. Each region's failure is captured in its
    own RunResult and never stops the remaining regions. Rejected or expired
    approvals mark the region ``skipped``.
    """

    def __init__(
        self,
        workspace_registry: WorkspaceRegistry,
        parameter_resolver: ParameterResolver,
        plan_engine: PlanEngine,
        approval_gate: ApprovalGate,
        apply_executor: ApplyExecutor,
        observability_manager: ObservabilityManager,
        approver: Approver | None = None,
        on_applied: list[AppliedHook] | None = None,
        approval_timeout_seconds: float | None = None,
    ) -> None:
        """Initialize RolloutCoordinator.

        Args:
            workspace_registry: Registry of region workspaces.
            parameter_resolver: Resolver producing per-region parameter sets.
            plan_engine: Engine producing change sets.
            approval_gate: Gate every change set passes through.
            apply_executor: Executor performing approved mutations.
            observability_manager: ObservabilityManager for events and logging.
            approver: Optional callback notified of each pending approval.
                Without one, decisions must arrive through the gate from
                elsewhere before the item expires.
            on_applied: Hooks awaited after a region reaches ``applied``.
            approval_timeout_seconds: Per-item expiry; the gate default if None.
        """
        self._registry = workspace_registry
        self._resolver = parameter_resolver
        self._plan_engine = plan_engine
        self._gate = approval_gate
        self._apply_executor = apply_executor
        self._observability = observability_manager
        self._approver = approver
        self._on_applied = list(on_applied or [])
        self._approval_timeout_seconds = approval_timeout_seconds

    def add_applied_hook(self, hook: AppliedHook) -> None:
        """Register a hook awaited after each region reaches ``applied``."""
        self._on_applied.append(hook)

    @staticmethod
    def _unique(regions: Iterable[str]) -> list[str]:
        seen: dict[str, None] = {}
        for region in regions:
            seen.setdefault(region.strip().lower(), None)
        return list(seen)

    async def rollout(
        self,
        regions: Iterable[str],
        secret_overrides_by_region: dict[str, dict[str, Any]] | None = None,
    ) -> RolloutReport:
        """Apply every requested region.

        Args:
            regions: Regions to roll out, in order. Duplicates are collapsed.
            secret_overrides_by_region: Secret values per region.

        Returns:
            RolloutReport with one result per distinct region.

        Raises:
            RolloutFailedError: If every region failed. The report is attached.
        """
        return await self._run(OperationType.Apply, regions, secret_overrides_by_region)

    async def destroy_all(
        self,
        regions: Iterable[str],
        secret_overrides_by_region: dict[str, dict[str, Any]] | None = None,
    ) -> RolloutReport:
        """Destroy every requested region, each behind its own approval.

        Regions without a workspace, or already ``absent``, are skipped.

        Raises:
            RolloutFailedError: If every region failed. The report is attached.
        """
        return await self._run(OperationType.Destroy, regions, secret_overrides_by_region)

    async def _run(
        self,
        operation: OperationType,
        regions: Iterable[str],
        secret_overrides_by_region: dict[str, dict[str, Any]] | None,
    ) -> RolloutReport:
        overrides = {
            region.lower(): values for region, values in (secret_overrides_by_region or {}).items()
        }
        report = RolloutReport(operation=operation)

        for region in self._unique(regions):
            result = await self._run_region(operation, region, overrides.get(region))
            report.results.append(result)
            await self._observability.log(
                level="INFO" if result.outcome != RunOutcome.Failed else "ERROR",
                message=f"{operation.value} {result.outcome.value} for {region}",
                context={"region": region, "error": result.error},
            )

        report.finished_at = datetime.now(UTC)
        await self._emit_event(
            "rollout_finished",
            {
                "operation": operation.value,
                "outcomes": report.outcomes(),
                "failed": len(report.failed),
            },
        )

        if report.all_failed:
            raise RolloutFailedError(report)
        return report

    async def _run_region(
        self,
        operation: OperationType,
        region: str,
        secret_overrides: dict[str, Any] | None,
    ) -> RunResult:
        change_set: ChangeSet | None = None
        try:
            region = validate_region(region)
            if operation == OperationType.Apply:
                workspace = await self._registry.ensure(region)
            else:
                existing = await self._registry.find(region)
                if existing is None or existing.status == WorkspaceStatus.Absent:
                    return RunResult(
                        region=region,
                        operation=operation,
                        outcome=RunOutcome.Skipped,
                        workspace_status=existing.status if existing else None,
                        detail={"reason": "nothing to destroy"},
                    )
                workspace = existing

            parameter_set = await self._resolver.resolve(region, secret_overrides)
            change_set = await self._plan_engine.plan(workspace, parameter_set, operation)

            approval = await self._request_approval(change_set)
            if approval is None:
                return await self._skipped(region, operation, change_set)

            if operation == OperationType.Apply:
                result = await self._apply_executor.apply(workspace, change_set, approval)
                return await self._after_applied(region, result)
            return await self._apply_executor.destroy(workspace, change_set, approval)

        except ApprovalError as e:
            if change_set is not None and self._is_terminal_skip(e):
                return await self._skipped(region, operation, change_set, reason=e.message)
            return await self._failed(region, operation, change_set, e)
        except OrchestratorError as e:
            return await self._failed(region, operation, change_set, e)
        except ValueError as e:
            # Invalid region identifier
            return RunResult(
                region=region or "<empty>",
                operation=operation,
                outcome=RunOutcome.Failed,
                error_category=ErrorCategory.ConfigurationError.value,
                error=str(e),
            )
        except Exception as e:
            await self._observability.log(
                level="ERROR",
                message=f"Unexpected {type(e).__name__} during {operation.value} of {region}: {e}",
                context={"region": region, "error_type": type(e).__name__},
            )
            error = ExecutionError(
                f"{type(e).__name__}: {e}",
                region=region,
                details={"error_type": type(e).__name__},
            )
            return await self._failed(region, operation, change_set, error)

    @staticmethod
    def _is_terminal_skip(error: ApprovalError) -> bool:
        return isinstance(error, ApprovalExpiredError | ApprovalRejectedError)

    async def _request_approval(self, change_set: ChangeSet) -> ApprovalRecord | None:
        """Submit, notify the approver and wait.

        The approver runs alongside the wait, so the item's deadline bounds
        it; once a decision or expiry settles the item, an approver still
        running is cancelled.

        Returns:
            The approved record, or None when the change set was rejected.

        Raises:
            ApprovalExpiredError: If no decision arrived in time, or the
                approver failed before deciding.
        """
        pending_id = await self._gate.submit(change_set, self._approval_timeout_seconds)
        if self._approver is None:
            record = await self._gate.wait(pending_id)
        else:
            record = await self._wait_with_approver(self._approver, pending_id, change_set)
        if record.decision != ApprovalDecision.Approved:
            return None
        return record

    async def _wait_with_approver(
        self, approver: Approver, pending_id: str, change_set: ChangeSet
    ) -> ApprovalRecord:
        notify = asyncio.ensure_future(approver(self._gate, pending_id, change_set))
        decision = asyncio.ensure_future(self._gate.wait(pending_id))
        try:
            await asyncio.wait({notify, decision}, return_when=asyncio.FIRST_COMPLETED)
            failure = None if not notify.done() or notify.cancelled() else notify.exception()
            if failure is not None and not decision.done() and self._gate.is_pending(pending_id):
                await self._gate.cancel(pending_id)
                raise ApprovalExpiredError(
                    f"Approver failed before deciding: {type(failure).__name__}: {failure}",
                    region=change_set.region,
                    details={"pending_id": pending_id, "reason": "approver_failed"},
                ) from failure
            return await decision
        finally:
            for task in (notify, decision):
                if not task.done():
                    task.cancel()
            await asyncio.gather(notify, decision, return_exceptions=True)
            if notify.done() and not notify.cancelled() and notify.exception() is not None:
                await self._observability.log(
                    level="WARNING",
                    message=f"Approver failed for {change_set.region}: {notify.exception()}",
                    context={"region": change_set.region, "pending_id": pending_id},
                )

    async def _after_applied(self, region: str, result: RunResult) -> RunResult:
        workspace = await self._registry.get(region)
        await self._emit_event(
            "region_applied",
            {
                "region": region,
                "partition_key": workspace.partition_key,
                "change_set_hash": result.change_set_hash,
            },
        )

        hook_errors: list[str] = []
        for hook in self._on_applied:
            try:
                await hook(workspace)
            except Exception as e:
                hook_errors.append(f"{getattr(hook, '__name__', repr(hook))}: {e}")
                await self._observability.log(
                    level="ERROR",
                    message=f"Post-apply hook failed for {region}: {e}",
                    context={"region": region},
                )
        if not hook_errors:
            return result
        return result.model_copy(update={"detail": {**result.detail, "hook_errors": hook_errors}})

    async def _current_status(self, region: str) -> WorkspaceStatus | None:
        try:
            workspace = await self._registry.find(region)
        except OrchestratorError as e:
            await self._observability.log(
                level="WARNING",
                message=f"Could not read workspace status for {region}: {e}",
                context={"region": region},
            )
            return None
        return workspace.status if workspace else None

    async def _skipped(
        self,
        region: str,
        operation: OperationType,
        change_set: ChangeSet,
        reason: str = "rejected",
    ) -> RunResult:
        detail: dict[str, Any] = {"reason": reason}
        try:
            latest = await self._gate.latest_record(region)
        except OrchestratorError as e:
            latest = None
            detail["record_error"] = e.message
        if latest is not None and latest.change_set_id == change_set.id:
            detail["decision"] = latest.decision.value
            detail["actor"] = latest.actor
        return RunResult(
            region=region,
            operation=operation,
            outcome=RunOutcome.Skipped,
            workspace_status=await self._current_status(region),
            change_set_hash=change_set.content_hash,
            detail=detail,
        )

    async def _failed(
        self,
        region: str,
        operation: OperationType,
        change_set: ChangeSet | None,
        error: OrchestratorError,
    ) -> RunResult:
        unresolved = error.unresolved_resources if isinstance(error, PartialApplyError) else []
        return RunResult(
            region=region,
            operation=operation,
            outcome=RunOutcome.Failed,
            workspace_status=await self._current_status(region),
            change_set_hash=change_set.content_hash if change_set else None,
            error_category=error.category.value,
            error=error.message,
            unresolved_resources=unresolved,
            detail={"error_type": type(error).__name__, **error.details},
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
