"""RunResult and RolloutReport data models."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from regionflow.domain.models.change_set import OperationType
from regionflow.domain.models.workspace import WorkspaceStatus


class RunOutcome(str, Enum):
    """Per-region outcome of a rollout or destroy run."""

    Succeeded = "succeeded"
    Failed = "failed"
    Skipped = "skipped"


class RunResult(BaseModel):
    """Outcome of one region's run.

    Failed results carry the error category and message; partial failures
    also list the resources the executor could not reconcile.
    """

    region: str = Field(..., min_length=1)
    operation: OperationType = OperationType.Apply
    outcome: RunOutcome
    workspace_status: WorkspaceStatus | None = Field(
        default=None,
        description="Workspace status after the run, if the workspace exists",
    )
    change_set_hash: str | None = None
    error_category: str | None = None
    error: str | None = None
    unresolved_resources: list[str] = Field(default_factory=list)
    detail: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class RolloutReport(BaseModel):
    """Aggregated results for every region requested in one invocation.

    Results keep the requested region order.
    """

    operation: OperationType = OperationType.Apply
    results: list[RunResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    model_config = ConfigDict(validate_assignment=True)

    @property
    def succeeded(self) -> list[RunResult]:
        return [r for r in self.results if r.outcome == RunOutcome.Succeeded]

    @property
    def failed(self) -> list[RunResult]:
        return [r for r in self.results if r.outcome == RunOutcome.Failed]

    @property
    def skipped(self) -> list[RunResult]:
        return [r for r in self.results if r.outcome == RunOutcome.Skipped]

    @property
    def all_failed(self) -> bool:
        """True when at least one region was requested and none avoided failure."""
        return bool(self.results) and len(self.failed) == len(self.results)

    def for_region(self, region: str) -> RunResult | None:
        for result in self.results:
            if result.region == region:
                return result
        return None

    def outcomes(self) -> dict[str, str]:
        """Map of region to outcome value, in request order."""
        return {r.region: r.outcome.value for r in self.results}
