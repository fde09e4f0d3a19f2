"""regionflow - approval-gated, multi-region infrastructure rollouts."""

__version__ = "0.1.0"

from regionflow.domain.components.rollout_coordinator import AppliedHook, Approver
from regionflow.domain.errors import OrchestratorError, RolloutFailedError
from regionflow.domain.models.run_result import RolloutReport, RunOutcome, RunResult
from regionflow.orchestrator import RegionOrchestrator

__all__ = [
    "AppliedHook",
    "Approver",
    "OrchestratorError",
    "RegionOrchestrator",
    "RolloutFailedError",
    "RolloutReport",
    "RunOutcome",
    "RunResult",
    "__version__",
]
