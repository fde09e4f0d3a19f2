"""Pytest configuration and shared fixtures."""

import asyncio
from pathlib import Path
from typing import Any

import pytest
from dotenv import load_dotenv

from regionflow.domain.components.apply_executor import ApplyExecutor
from regionflow.domain.components.approval_gate import ApprovalGate
from regionflow.domain.components.parameter_resolver import ParameterResolver
from regionflow.domain.components.plan_engine import PlanEngine
from regionflow.domain.components.rollout_coordinator import RolloutCoordinator
from regionflow.domain.components.workspace_registry import WorkspaceRegistry
from regionflow.domain.interfaces.iac_executor import (
    ExecutionOutcome,
    ExecutorError,
    IaCExecutor,
    PlanDiff,
)
from regionflow.domain.interfaces.observability_manager import ObservabilityManager
from regionflow.domain.interfaces.state_backend import StateSnapshot
from regionflow.domain.interfaces.values_source import RegionValuesSource
from regionflow.domain.models.approval import ApprovalDecision
from regionflow.domain.models.change_set import ChangeAction, OperationType, ResourceChange
from regionflow.infrastructure.state_backend.memory_backend import InMemoryStateBackend

# Load .env file from project root before running tests
project_root = Path(__file__).parent.parent
env_path = project_root / ".env"
if env_path.exists():
    load_dotenv(env_path)


class RecordingObservabilityManager(ObservabilityManager):
    """Observability manager that keeps every event and log in memory."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.logs: list[dict[str, Any]] = []

    async def emit_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.events.append({"event_type": event_type, "payload": payload, "metadata": metadata})

    async def log(
        self,
        level: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.logs.append({"level": level, "message": message, "context": context})

    def events_of(self, event_type: str) -> list[dict[str, Any]]:
        return [event["payload"] for event in self.events if event["event_type"] == event_type]


class ScriptedExecutor(IaCExecutor):
    """IaC executor whose plan and apply results are set by the test."""

    def __init__(self) -> None:
        self.plan_changes = [
            ResourceChange(resource="aws_vpc.main", action=ChangeAction.Create),
            ResourceChange(resource="aws_subnet.private", action=ChangeAction.Create),
        ]
        self.destroy_changes = [
            ResourceChange(resource="aws_subnet.private", action=ChangeAction.Delete),
            ResourceChange(resource="aws_vpc.main", action=ChangeAction.Delete),
        ]
        self.fail_plan_for: set[str] = set()
        self.plan_errors: dict[str, Exception] = {}
        self.fail_apply_for: set[str] = set()
        self.apply_error: ExecutorError | None = None
        self.apply_outcome: ExecutionOutcome | None = None
        self.apply_delay = 0.0
        self.plan_calls: list[dict[str, Any]] = []
        self.apply_calls: list[dict[str, Any]] = []

    @staticmethod
    def _region(snapshot: StateSnapshot) -> str:
        return snapshot.partition_key.rsplit("/", 1)[-1]

    async def plan(
        self,
        snapshot: StateSnapshot,
        parameters: dict[str, Any],
        destroy: bool = False,
    ) -> PlanDiff:
        self.plan_calls.append({"snapshot": snapshot, "parameters": parameters, "destroy": destroy})
        if self._region(snapshot) in self.fail_plan_for:
            raise ExecutorError("Error: Unsupported argument \"instance_typ\"")
        if self._region(snapshot) in self.plan_errors:
            raise self.plan_errors[self._region(snapshot)]
        return PlanDiff(
            resource_changes=list(self.destroy_changes if destroy else self.plan_changes)
        )

    async def apply(
        self,
        snapshot: StateSnapshot,
        parameters: dict[str, Any],
        destroy: bool = False,
        expected_changes=None,
    ) -> ExecutionOutcome:
        self.apply_calls.append(
            {
                "snapshot": snapshot,
                "parameters": parameters,
                "destroy": destroy,
                "expected_changes": expected_changes,
            }
        )
        if self.apply_delay:
            await asyncio.sleep(self.apply_delay)
        if self._region(snapshot) in self.fail_apply_for:
            raise ExecutorError("Error: creating VPC: UnauthorizedOperation")
        if self.apply_error is not None:
            raise self.apply_error
        if self.apply_outcome is not None:
            return self.apply_outcome
        if destroy:
            return ExecutionOutcome(state={})
        return ExecutionOutcome(
            state={
                "resources": [change.resource for change in self.plan_changes],
                "parameters": sorted(parameters),
            }
        )


class StaticValuesSource(RegionValuesSource):
    """Values source backed by plain dictionaries."""

    def __init__(
        self,
        defaults: dict[str, Any] | None = None,
        required: set[str] | None = None,
        secrets: set[str] | None = None,
        regions: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        self._defaults = defaults or {}
        self._required = required or set()
        self._secrets = secrets or set()
        self.regions = regions or {}

    def defaults(self) -> dict[str, Any]:
        return dict(self._defaults)

    def required_keys(self) -> set[str]:
        return set(self._required)

    def secret_keys(self) -> set[str]:
        return set(self._secrets)

    def region_values(self, region: str) -> dict[str, Any] | None:
        document = self.regions.get(region)
        return dict(document) if document is not None else None


class Stack:
    """All components wired over one in-memory backend."""

    def __init__(
        self,
        values_source: RegionValuesSource,
        approver=None,
        approval_timeout_seconds: float | None = None,
        backend: InMemoryStateBackend | None = None,
        executor: ScriptedExecutor | None = None,
    ) -> None:
        self.backend = backend or InMemoryStateBackend()
        self.executor = executor or ScriptedExecutor()
        self.observability = RecordingObservabilityManager()
        self.registry = WorkspaceRegistry(self.backend, self.observability)
        self.resolver = ParameterResolver(values_source, self.observability)
        self.plan_engine = PlanEngine(self.backend, self.executor, self.observability)
        self.gate = ApprovalGate(self.backend, self.observability)
        self.apply_executor = ApplyExecutor(
            state_backend=self.backend,
            workspace_registry=self.registry,
            approval_gate=self.gate,
            executor=self.executor,
            observability_manager=self.observability,
            holder_id="test-runner",
        )
        self.coordinator = RolloutCoordinator(
            workspace_registry=self.registry,
            parameter_resolver=self.resolver,
            plan_engine=self.plan_engine,
            approval_gate=self.gate,
            apply_executor=self.apply_executor,
            observability_manager=self.observability,
            approver=approver,
            approval_timeout_seconds=approval_timeout_seconds,
        )

    async def approved_change_set(self, region: str, operation=None):
        """Ensure, resolve, plan and approve; return (workspace, change_set, record)."""
        workspace = await self.registry.ensure(region)
        parameters = await self.resolver.resolve(region, {"bot_token": "T1"})
        change_set = await self.plan_engine.plan(
            workspace, parameters, operation or OperationType.Apply
        )
        pending_id = await self.gate.submit(change_set)
        record = await self.gate.decide(pending_id, "alice", ApprovalDecision.Approved)
        return workspace, change_set, record


async def approve_all(gate: ApprovalGate, pending_id: str, change_set) -> None:
    await gate.decide(pending_id, "alice", ApprovalDecision.Approved)


async def reject_all(gate: ApprovalGate, pending_id: str, change_set) -> None:
    await gate.decide(pending_id, "bob", ApprovalDecision.Rejected)


@pytest.fixture
def observability() -> RecordingObservabilityManager:
    return RecordingObservabilityManager()


@pytest.fixture
def backend() -> InMemoryStateBackend:
    return InMemoryStateBackend()


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def values_source() -> StaticValuesSource:
    """Defaults plus documents for eu-central-1 and us-east-1 (not ap-south-1)."""
    return StaticValuesSource(
        defaults={"instance_type": "t2.micro", "ebs_encrypted": True},
        required={"instance_type", "cidr_block"},
        secrets={"bot_token"},
        regions={
            "eu-central-1": {"instance_type": "t3.micro", "cidr_block": "10.10.0.0/16"},
            "us-east-1": {"cidr_block": "10.20.0.0/16"},
        },
    )


@pytest.fixture
def stack(values_source: StaticValuesSource) -> Stack:
    return Stack(values_source, approver=approve_all)


@pytest.fixture
def make_stack(values_source: StaticValuesSource):
    def _make(**kwargs: Any) -> Stack:
        return Stack(kwargs.pop("values_source", values_source), **kwargs)

    return _make


@pytest.fixture
def approvers():
    return {"approve_all": approve_all, "reject_all": reject_all}
