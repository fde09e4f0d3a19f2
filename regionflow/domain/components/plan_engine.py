"""PlanEngine component: dry-run planning against a consistent state snapshot."""

from typing import Any

from pydantic import ValidationError

from regionflow.domain.errors import (
    ChangeSetConsumedError,
    ConfigurationError,
    PlanExecutionError,
)
from regionflow.domain.interfaces.iac_executor import ExecutorError, IaCExecutor
from regionflow.domain.interfaces.observability_manager import ObservabilityManager
from regionflow.domain.interfaces.state_backend import StateBackend
from regionflow.domain.models.change_set import ChangeSet, OperationType, ResourceChange
from regionflow.domain.models.digest import content_digest
from regionflow.domain.models.parameter_set import ParameterSet
from regionflow.domain.models.workspace import Workspace


class PlanEngine:
    """Produces change sets by invoking the executor in plan mode.

    Planning takes no exclusive lock. It reads a snapshot whose version is
    recorded in the change set; the ApplyExecutor later refuses the change set
    if that version moved.

    The change set hash covers the operation, region, normalized action list
    and the parameter set hash, so identical state and parameters always hash
    identically.
    """

    def __init__(
        self,
        state_backend: StateBackend,
        executor: IaCExecutor,
        observability_manager: ObservabilityManager,
    ) -> None:
        self._state_backend = state_backend
        self._executor = executor
        self._observability = observability_manager

    @staticmethod
    def normalize(changes: list[ResourceChange]) -> tuple[ResourceChange, ...]:
        """Order changes by resource identifier and drop exact duplicates.

        Raises:
            PlanExecutionError: If a resource is listed with two different actions.
        """
        by_resource: dict[str, ResourceChange] = {}
        for change in changes:
            existing = by_resource.get(change.resource)
            if existing is not None and existing.action != change.action:
                raise PlanExecutionError(
                    f"Executor planned conflicting actions for {change.resource}: "
                    f"{existing.action.value} and {change.action.value}"
                )
            by_resource[change.resource] = change
        return tuple(by_resource[resource] for resource in sorted(by_resource))

    @staticmethod
    def compute_hash(
        region: str,
        operation: OperationType,
        changes: tuple[ResourceChange, ...],
        parameter_hash: str,
    ) -> str:
        payload: dict[str, Any] = {
            "region": region,
            "operation": operation.value,
            "changes": [[c.resource, c.action.value] for c in changes],
            "parameter_hash": parameter_hash,
        }
        return content_digest(payload)

    async def plan(
        self,
        workspace: Workspace,
        parameter_set: ParameterSet,
        operation: OperationType = OperationType.Apply,
    ) -> ChangeSet:
        """Plan ``operation`` for a workspace.

        Args:
            workspace: Workspace to plan against.
            parameter_set: Resolved parameters for this run.
            operation: ``apply`` or ``destroy``.

        Returns:
            The resulting ChangeSet.

        Raises:
            ConfigurationError: If the parameter set belongs to another region.
            PlanExecutionError: If the executor reports a non-diff error or
                fails in any other way (missing binary, unreadable output).
                Never retried.
        """
        if parameter_set.region != workspace.region:
            raise ConfigurationError(
                f"Parameters resolved for {parameter_set.region} cannot plan {workspace.region}",
                region=workspace.region,
            )

        snapshot = await self._state_backend.read(workspace.partition_key)

        try:
            diff = await self._executor.plan(
                snapshot,
                parameter_set.reveal(),
                destroy=operation == OperationType.Destroy,
            )
        except ExecutorError as e:
            raise PlanExecutionError(
                e.message,
                region=workspace.region,
                details={"operation": operation.value},
            ) from e
        except ValidationError as e:
            raise PlanExecutionError(
                f"Executor returned an invalid plan: {e}",
                region=workspace.region,
            ) from e
        except Exception as e:
            raise PlanExecutionError(
                f"Executor failed while planning: {type(e).__name__}: {e}",
                region=workspace.region,
                details={"operation": operation.value, "error_type": type(e).__name__},
            ) from e

        try:
            changes = self.normalize(diff.resource_changes)
        except PlanExecutionError as e:
            e.region = workspace.region
            raise

        change_set = ChangeSet(
            region=workspace.region,
            operation=operation,
            changes=changes,
            content_hash=self.compute_hash(
                workspace.region, operation, changes, parameter_set.content_hash
            ),
            parameter_hash=parameter_set.content_hash,
            state_version=snapshot.version,
            lock_token=workspace.lock_token,
            parameters=parameter_set,
        )

        try:
            await self._observability.emit_event(
                event_type="plan_created",
                payload={
                    "region": workspace.region,
                    "operation": operation.value,
                    "change_set_hash": change_set.content_hash,
                    "state_version": snapshot.version,
                    "summary": change_set.summary(),
                },
            )
        except Exception as e:
            await self._observability.log(
                level="WARNING",
                message=f"Failed to emit plan_created event: {e}",
                context={"region": workspace.region},
            )

        return change_set

    async def discard(self, change_set: ChangeSet) -> None:
        """Invalidate a change set without applying it.

        Raises:
            ChangeSetConsumedError: If it was already applied or discarded.
        """
        if not await self._state_backend.consume_change_set(change_set.id):
            raise ChangeSetConsumedError(
                f"Change set {change_set.id} was already consumed",
                region=change_set.region,
            )
        await self._observability.log(
            level="INFO",
            message="Change set discarded",
            context={"region": change_set.region, "change_set_hash": change_set.content_hash},
        )
