"""Error taxonomy for orchestration failures.

Every component raises a subclass of OrchestratorError. The rollout coordinator
turns these into per-region run results, so each error carries a category and
the region it belongs to.

Example:
    ```python
    raise StalePlanError(
        "State moved from version 5 to 6 since planning",
        region="eu-central-1",
        details={"planned_version": 5, "current_version": 6},
    )
    ```
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from regionflow.domain.models.run_result import RolloutReport


class ErrorCategory(str, Enum):
    """Categories of orchestration errors."""

    ConfigurationError = "configuration_error"
    """Missing or invalid parameters or configuration. Fatal, never retried."""

    ConcurrencyError = "concurrency_error"
    """Lock contention or version conflict. The caller may retry later."""

    ApprovalError = "approval_error"
    """Rejected, expired or stale approval. Ends the region's run."""

    ExecutionError = "execution_error"
    """External executor failure."""

    PartialApplyError = "partial_apply_error"
    """Some resources were mutated and some were not. Requires a re-plan."""

    StateError = "state_error"
    """Workspace or state backend failure."""


class OrchestratorError(Exception):
    """Base class for every orchestration error.

    Attributes:
        message: Human-readable error message.
        region: Region the error relates to, if any.
        details: Additional structured detail for reports.
    """

    category: ErrorCategory = ErrorCategory.StateError
    retryable: bool = False

    def __init__(
        self,
        message: str,
        region: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.region = region
        self.details = details or {}
        super().__init__(self.message)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(category={self.category.value}, "
            f"message={self.message!r}, region={self.region!r})"
        )

    def __str__(self) -> str:
        return self.message


# Configuration


class ConfigurationError(OrchestratorError):
    """Raised when configuration or parameter resolution fails."""

    category = ErrorCategory.ConfigurationError

    def __init__(
        self,
        message: str,
        field: str | None = None,
        region: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.field = field
        super().__init__(message, region=region, details=details)

    def __str__(self) -> str:
        if self.field:
            return f"Configuration error in field '{self.field}': {self.message}"
        return self.message


class MissingRequiredParameterError(ConfigurationError):
    """Raised when required parameters have no value after all layers merged."""

    def __init__(self, missing: list[str], region: str | None = None) -> None:
        self.missing = sorted(missing)
        super().__init__(
            f"Missing required parameters for region {region}: {', '.join(self.missing)}",
            region=region,
            details={"missing": self.missing},
        )


class UnknownRegionError(MissingRequiredParameterError):
    """Raised when a region has no values document and defaults do not cover it."""

    def __init__(self, missing: list[str], region: str | None = None) -> None:
        super().__init__(missing, region=region)
        self.message = (
            f"No values document for region {region} and defaults do not provide: "
            f"{', '.join(self.missing)}"
        )
        self.args = (self.message,)


class ParameterConflictError(ConfigurationError):
    """Raised when a secret parameter appears in a persisted values document."""


# Concurrency


class ConcurrencyError(OrchestratorError):
    """Base for lock contention and optimistic concurrency failures."""

    category = ErrorCategory.ConcurrencyError
    retryable = True


class AlreadyLockedError(ConcurrencyError):
    """Raised when a state partition is already held by another lease."""


class VersionConflictError(ConcurrencyError):
    """Raised when a conditional write finds an unexpected state version."""


class InvalidLockTokenError(ConcurrencyError):
    """Raised when a lock token does not own the lease it claims."""


class StalePlanError(ConcurrencyError):
    """Raised when state changed between plan and apply."""


class ChangeSetConsumedError(ConcurrencyError):
    """Raised when a change set is replayed after being consumed."""

    retryable = False


# Approval


class ApprovalError(OrchestratorError):
    """Base for approval gate failures."""

    category = ErrorCategory.ApprovalError


class ApprovalRejectedError(ApprovalError):
    """Raised when an operator rejects a change set."""


class ApprovalExpiredError(ApprovalError):
    """Raised when no decision arrives before the approval deadline."""


class StaleApprovalError(ApprovalError):
    """Raised when a decision arrives for an item that is no longer pending."""


class ApprovalMismatchError(ApprovalError):
    """Raised when an approval does not authorize the change set being applied."""


class PendingApprovalNotFoundError(ApprovalError):
    """Raised when a pending approval id is unknown."""


# Execution


class ExecutionError(OrchestratorError):
    """Raised when the external IaC executor fails."""

    category = ErrorCategory.ExecutionError


class PlanExecutionError(ExecutionError):
    """Raised when planning fails for a non-diff reason such as invalid configuration."""


class PartialApplyError(ExecutionError):
    """Raised when a mutation left some resources changed and others not."""

    category = ErrorCategory.PartialApplyError

    def __init__(
        self,
        message: str,
        unresolved_resources: list[str],
        region: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.unresolved_resources = list(unresolved_resources)
        super().__init__(
            message,
            region=region,
            details={**(details or {}), "unresolved_resources": self.unresolved_resources},
        )


# State


class StateBackendError(OrchestratorError):
    """Raised when the state backend cannot complete an operation."""


class WorkspaceNotFoundError(OrchestratorError):
    """Raised when a region has no workspace."""


class InvalidStatusTransitionError(OrchestratorError):
    """Raised when a workspace status change is not allowed."""


class RolloutFailedError(OrchestratorError):
    """Raised when every region in a rollout failed.

    The full report is attached so callers still see every region's outcome.
    """

    category = ErrorCategory.ExecutionError

    def __init__(self, report: RolloutReport) -> None:
        self.report = report
        super().__init__(
            f"All {len(report.results)} regions failed",
            details={"regions": [result.region for result in report.results]},
        )
