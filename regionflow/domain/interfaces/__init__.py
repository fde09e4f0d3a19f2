"""Domain interfaces for dependency injection."""

from regionflow.domain.interfaces.iac_executor import (
    ExecutionOutcome,
    ExecutorError,
    IaCExecutor,
    PlanDiff,
)
from regionflow.domain.interfaces.observability_manager import (
    ObservabilityError,
    ObservabilityManager,
)
from regionflow.domain.interfaces.state_backend import (
    LockLease,
    StateBackend,
    StateBackendError,
    StateSnapshot,
)
from regionflow.domain.interfaces.values_source import RegionValuesSource, SecretSource

__all__ = [
    "ExecutionOutcome",
    "ExecutorError",
    "IaCExecutor",
    "PlanDiff",
    "ObservabilityError",
    "ObservabilityManager",
    "LockLease",
    "StateBackend",
    "StateBackendError",
    "StateSnapshot",
    "RegionValuesSource",
    "SecretSource",
]
