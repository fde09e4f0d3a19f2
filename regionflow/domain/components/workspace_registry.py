"""WorkspaceRegistry component: maps regions to isolated state partitions."""

from datetime import UTC, datetime
from typing import Any

from regionflow.domain.errors import (
    InvalidStatusTransitionError,
    WorkspaceNotFoundError,
)
from regionflow.domain.interfaces.observability_manager import ObservabilityManager
from regionflow.domain.interfaces.state_backend import StateBackend
from regionflow.domain.models.state_transition import StateTransition
from regionflow.domain.models.workspace import (
    Workspace,
    WorkspaceStatus,
    validate_region,
)


class WorkspaceRegistry:
    """Tracks one workspace per region and its last known apply status.

    Regions are always passed explicitly; there is no "current workspace".
    Status changes go through a small state machine and each one is written
    to the audit trail. Only the ApplyExecutor changes status.
    """

    _VALID_TRANSITIONS: dict[WorkspaceStatus, set[WorkspaceStatus]] = {
        WorkspaceStatus.Absent: {WorkspaceStatus.Applying},
        WorkspaceStatus.Applying: {WorkspaceStatus.Applied, WorkspaceStatus.Failed},
        WorkspaceStatus.Applied: {WorkspaceStatus.Applying, WorkspaceStatus.Destroying},
        WorkspaceStatus.Destroying: {WorkspaceStatus.Absent, WorkspaceStatus.Failed},
        WorkspaceStatus.Failed: {WorkspaceStatus.Applying, WorkspaceStatus.Destroying},
    }

    def __init__(
        self,
        state_backend: StateBackend,
        observability_manager: ObservabilityManager,
        state_prefix: str = "workspaces",
    ) -> None:
        """Initialize WorkspaceRegistry.

        Args:
            state_backend: Backend holding workspace records and state partitions.
            observability_manager: ObservabilityManager for events and logging.
            state_prefix: Prefix of every state partition key.
        """
        self._state_backend = state_backend
        self._observability = observability_manager
        self._state_prefix = state_prefix.strip("/")

    def partition_key_for(self, region: str) -> str:
        """Return the state partition key owned by ``region``."""
        return f"{self._state_prefix}/{validate_region(region)}"

    async def ensure(self, region: str) -> Workspace:
        """Return the region's workspace, creating it on first use.

        Idempotent: repeated calls return the same region and partition key.
        Creation is atomic in the backend, so two orchestrators racing on a
        new region end up with one workspace.

        Raises:
            ValueError: If ``region`` is not a valid region identifier.
        """
        region = validate_region(region)
        existing = await self._state_backend.get_workspace(region)
        if existing is not None:
            return existing

        candidate = Workspace(region=region, partition_key=self.partition_key_for(region))
        workspace = await self._state_backend.create_workspace(candidate)
        if workspace is candidate:
            await self._emit_event(
                "workspace_created",
                {"region": region, "partition_key": workspace.partition_key},
            )
        return workspace

    async def get(self, region: str) -> Workspace:
        """Return the region's workspace.

        Raises:
            WorkspaceNotFoundError: If the region was never provisioned.
        """
        region = validate_region(region)
        workspace = await self._state_backend.get_workspace(region)
        if workspace is None:
            raise WorkspaceNotFoundError(f"No workspace for region {region}", region=region)
        return workspace

    async def find(self, region: str) -> Workspace | None:
        """Return the region's workspace, or None."""
        return await self._state_backend.get_workspace(validate_region(region))

    def _is_valid_transition(self, from_status: WorkspaceStatus, to_status: WorkspaceStatus) -> bool:
        if from_status == to_status:
            return True
        return to_status in self._VALID_TRANSITIONS.get(from_status, set())

    async def set_status(
        self,
        region: str,
        status: WorkspaceStatus,
        trigger: str,
        context: dict[str, Any] | None = None,
    ) -> StateTransition:
        """Change the workspace status and record the transition.

        Args:
            region: Region whose workspace changes.
            status: New status.
            trigger: What caused the change, e.g. ``"apply_succeeded"``.
            context: Extra audit context (change set hash, error, ...).

        Returns:
            The recorded StateTransition.

        Raises:
            WorkspaceNotFoundError: If the region has no workspace.
            InvalidStatusTransitionError: If the state machine forbids the change.
        """
        workspace = await self.get(region)
        from_status = workspace.status

        if not self._is_valid_transition(from_status, status):
            raise InvalidStatusTransitionError(
                f"Invalid status transition from {from_status.value} to {status.value}",
                region=workspace.region,
            )

        transition = StateTransition(
            region=workspace.region,
            from_status=from_status.value,
            to_status=status.value,
            trigger=trigger,
            context=context or {},
        )
        if from_status == status:
            return transition

        workspace.status = status
        workspace.updated_at = datetime.now(UTC)
        await self._state_backend.save_workspace(workspace)
        await self._state_backend.save_state_transition(transition)

        await self._emit_event(
            "workspace_status_changed",
            {
                "region": workspace.region,
                "from_status": from_status.value,
                "to_status": status.value,
                "trigger": trigger,
            },
            metadata={"transition_timestamp": transition.transition_timestamp.isoformat()},
        )
        return transition

    async def set_lock_token(self, region: str, lock_token: str | None) -> Workspace:
        """Mirror the held lease (or its release) onto the workspace record."""
        workspace = await self.get(region)
        workspace.lock_token = lock_token
        await self._state_backend.save_workspace(workspace)
        return workspace

    async def _emit_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        try:
            await self._observability.emit_event(event_type, payload, metadata)
        except Exception as e:
            # Event emission never fails a registry operation
            await self._observability.log(
                level="WARNING",
                message=f"Failed to emit {event_type} event: {e}",
                context={"region": payload.get("region")},
            )

    # Defined last: the name shadows the builtin inside the class body
    async def list(self) -> list[str]:
        """Return known regions in creation order."""
        return [workspace.region for workspace in await self._state_backend.list_workspaces()]
