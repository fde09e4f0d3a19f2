"""RegionOrchestrator - entry point for multi-region rollouts."""

from collections.abc import Iterable
from typing import Any

from regionflow.domain.components.apply_executor import ApplyExecutor
from regionflow.domain.components.approval_gate import ApprovalGate
from regionflow.domain.components.parameter_resolver import ParameterResolver
from regionflow.domain.components.plan_engine import PlanEngine
from regionflow.domain.components.rollout_coordinator import (
    AppliedHook,
    Approver,
    RolloutCoordinator,
)
from regionflow.domain.components.workspace_registry import WorkspaceRegistry
from regionflow.domain.errors import ConfigurationError, StateBackendError
from regionflow.domain.interfaces.iac_executor import IaCExecutor
from regionflow.domain.interfaces.observability_manager import ObservabilityManager
from regionflow.domain.interfaces.state_backend import StateBackend
from regionflow.domain.interfaces.values_source import RegionValuesSource, SecretSource
from regionflow.domain.models.run_result import RolloutReport
from regionflow.domain.models.workspace import Workspace
from regionflow.infrastructure.adapters.terraform_executor import TerraformExecutor
from regionflow.infrastructure.config.secret_source import EnvironmentSecretSource
from regionflow.infrastructure.config.settings import OrchestratorSettings
from regionflow.infrastructure.config.values_source import FileRegionValuesSource
from regionflow.infrastructure.observability.logger import DefaultObservabilityManager
from regionflow.infrastructure.state_backend.memory_backend import InMemoryStateBackend
from regionflow.infrastructure.state_backend.redis_backend import RedisStateBackend


class RegionOrchestrator:
    """Main entry point for library use.

    Wires the workspace registry, parameter resolver, plan engine, approval
    gate and apply executor into a rollout coordinator. Every dependency can
    be injected; anything omitted is built from settings.

    Example:
        ```python
        async def approve(gate, pending_id, change_set):
            await gate.decide(pending_id, "alice", "approved")

        async with RegionOrchestrator(approver=approve) as orchestrator:
            report = await orchestrator.rollout(["eu-central-1", "us-east-1"])
            print(report.outcomes())
        ```
    """

    def __init__(
        self,
        state_backend: StateBackend | None = None,
        executor: IaCExecutor | None = None,
        values_source: RegionValuesSource | None = None,
        secret_source: SecretSource | None = None,
        observability_manager: ObservabilityManager | None = None,
        config: OrchestratorSettings | dict[str, Any] | None = None,
        approver: Approver | None = None,
        on_applied: list[AppliedHook] | None = None,
    ) -> None:
        """Initialize RegionOrchestrator with dependencies.

        Args:
            state_backend: Optional StateBackend. Defaults to the backend
                named by ``config.state_backend``.
            executor: Optional IaCExecutor. Defaults to TerraformExecutor over
                ``config.terraform_module_dir``.
            values_source: Optional values source. Defaults to
                FileRegionValuesSource over ``config.values_dir``.
            secret_source: Optional secret source. Defaults to
                EnvironmentSecretSource with ``config.secret_env_prefix``.
            observability_manager: Optional ObservabilityManager. Defaults to
                DefaultObservabilityManager.
            config: OrchestratorSettings, a dictionary of settings, or None to
                load from environment variables.
            approver: Callback notified of every pending approval.
            on_applied: Hooks awaited after a region reaches ``applied``.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if config is None:
            self._config = OrchestratorSettings()
        elif isinstance(config, dict):
            self._config = OrchestratorSettings.from_dict(config)
        elif isinstance(config, OrchestratorSettings):
            self._config = config
        else:
            raise ConfigurationError(
                f"Invalid config type: {type(config)}. Expected OrchestratorSettings, dict, or None"
            )

        self._owns_backend = state_backend is None
        self._state_backend = state_backend or self._build_state_backend()
        self._values_source = values_source or FileRegionValuesSource(self._config.values_dir)
        self._secret_source = secret_source or EnvironmentSecretSource(
            self._config.secret_env_prefix
        )
        self._executor = executor or self._build_executor()

        if observability_manager is None:
            observability_manager = DefaultObservabilityManager(
                log_level=self._config.log_level,
                json_format=self._config.json_logs,
                secret_keys=self._values_source.secret_keys(),
            )
        self._observability_manager = observability_manager

        self._registry = WorkspaceRegistry(
            state_backend=self._state_backend,
            observability_manager=self._observability_manager,
            state_prefix=self._config.state_prefix,
        )
        self._resolver = ParameterResolver(
            values_source=self._values_source,
            observability_manager=self._observability_manager,
            secret_source=self._secret_source,
        )
        self._plan_engine = PlanEngine(
            state_backend=self._state_backend,
            executor=self._executor,
            observability_manager=self._observability_manager,
        )
        self._approval_gate = ApprovalGate(
            state_backend=self._state_backend,
            observability_manager=self._observability_manager,
            default_timeout_seconds=self._config.approval_timeout_seconds,
        )
        self._apply_executor = ApplyExecutor(
            state_backend=self._state_backend,
            workspace_registry=self._registry,
            approval_gate=self._approval_gate,
            executor=self._executor,
            observability_manager=self._observability_manager,
            holder_id=self._config.holder_id,
            lock_ttl_seconds=self._config.lock_ttl_seconds,
        )
        self._coordinator = RolloutCoordinator(
            workspace_registry=self._registry,
            parameter_resolver=self._resolver,
            plan_engine=self._plan_engine,
            approval_gate=self._approval_gate,
            apply_executor=self._apply_executor,
            observability_manager=self._observability_manager,
            approver=approver,
            on_applied=on_applied,
        )

    def _build_state_backend(self) -> StateBackend:
        if self._config.state_backend == "redis":
            return RedisStateBackend(
                redis_url=self._config.redis_url,
                namespace=self._config.redis_namespace,
                max_audit_records=self._config.max_audit_records,
            )
        return InMemoryStateBackend(max_audit_records=self._config.max_audit_records)

    def _build_executor(self) -> IaCExecutor:
        if self._config.terraform_module_dir is None:
            raise ConfigurationError(
                "terraform_module_dir must be set (REGIONFLOW_TERRAFORM_MODULE_DIR)",
                field="terraform_module_dir",
            )
        executor = TerraformExecutor(
            module_dir=self._config.terraform_module_dir,
            binary=self._config.terraform_binary,
            timeout_seconds=self._config.terraform_timeout_seconds,
        )
        executor.verify_binary()
        return executor

    async def __aenter__(self) -> "RegionOrchestrator":
        if isinstance(self._state_backend, RedisStateBackend) and self._owns_backend:
            if not await self._state_backend.check_connection():
                raise StateBackendError(f"Redis is not reachable at {self._config.redis_url}")
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Release the state backend connection if this orchestrator created it."""
        if self._owns_backend and isinstance(self._state_backend, RedisStateBackend):
            await self._state_backend.close()

    async def rollout(
        self,
        regions: Iterable[str],
        secret_overrides_by_region: dict[str, dict[str, Any]] | None = None,
    ) -> RolloutReport:
        """Resolve, plan, approve and apply each region in turn.

        Raises:
            RolloutFailedError: If every region failed.
        """
        return await self._coordinator.rollout(regions, secret_overrides_by_region)

    async def destroy_all(
        self,
        regions: Iterable[str],
        secret_overrides_by_region: dict[str, dict[str, Any]] | None = None,
    ) -> RolloutReport:
        """Destroy each region behind its own approval.

        Raises:
            RolloutFailedError: If every region failed.
        """
        return await self._coordinator.destroy_all(regions, secret_overrides_by_region)

    async def status(self, region: str) -> Workspace:
        """Return the workspace of ``region``.

        Raises:
            WorkspaceNotFoundError: If the region was never provisioned.
        """
        return await self._registry.get(region)

    async def regions(self) -> list[str]:
        """Return every region with a workspace, in creation order."""
        return await self._registry.list()

    def add_applied_hook(self, hook: AppliedHook) -> None:
        self._coordinator.add_applied_hook(hook)

    @property
    def config(self) -> OrchestratorSettings:
        return self._config

    @property
    def state_backend(self) -> StateBackend:
        return self._state_backend

    @property
    def approval_gate(self) -> ApprovalGate:
        return self._approval_gate

    @property
    def workspace_registry(self) -> WorkspaceRegistry:
        return self._registry

    @property
    def parameter_resolver(self) -> ParameterResolver:
        return self._resolver

    @property
    def plan_engine(self) -> PlanEngine:
        return self._plan_engine

    @property
    def apply_executor(self) -> ApplyExecutor:
        return self._apply_executor

    @property
    def observability_manager(self) -> ObservabilityManager:
        return self._observability_manager
