"""IaCExecutor abstract interface for the external plan/apply tool.

The orchestrator treats the infrastructure-as-code tool as a black box with a
plan/apply contract. Its resource graph and ordering stay opaque; executors
only translate a state snapshot plus parameters into a diff or a new state.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from regionflow.domain.interfaces.state_backend import StateSnapshot
from regionflow.domain.models.change_set import ResourceChange


class PlanDiff(BaseModel):
    """Dry-run diff reported by an executor."""

    resource_changes: list[ResourceChange] = Field(default_factory=list)
    detail: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class ExecutionOutcome(BaseModel):
    """Result of a mutating executor run.

    Attributes:
        state: New state document to persist. For a partial failure this is
            whatever state the executor left behind.
        succeeded: True when every planned resource was reconciled.
        unresolved_resources: Resources that failed to reconcile (partial failure).
        detail: Executor output useful for reports.
    """

    state: dict[str, Any] = Field(default_factory=dict)
    succeeded: bool = True
    unresolved_resources: list[str] = Field(default_factory=list)
    detail: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class ExecutorError(Exception):
    """Raised by executors when a run fails.

    Attributes:
        message: Executor error output, surfaced verbatim.
        partial_state: State left behind if some resources changed before the
            failure, else None.
        unresolved_resources: Resources known to be unreconciled.
    """

    def __init__(
        self,
        message: str,
        partial_state: dict[str, Any] | None = None,
        unresolved_resources: list[str] | None = None,
    ) -> None:
        self.message = message
        self.partial_state = partial_state
        self.unresolved_resources = unresolved_resources or []
        super().__init__(self.message)


class IaCExecutor(ABC):
    """Abstract interface for infrastructure-as-code executors.

    Implementations must be deterministic and idempotent given identical
    inputs: the same snapshot and parameters produce the same diff.

    Example:
        ```python
        class TerraformExecutor(IaCExecutor):
            async def plan(self, snapshot, parameters, destroy=False) -> PlanDiff:
                # Write snapshot to a state file, run `terraform plan`
                ...

            async def apply(
                self, snapshot, parameters, destroy=False, expected_changes=None
            ) -> ExecutionOutcome:
                # Apply the saved plan, read the state file back
                ...
        ```
    """

    @abstractmethod
    async def plan(
        self,
        snapshot: StateSnapshot,
        parameters: dict[str, Any],
        destroy: bool = False,
    ) -> PlanDiff:
        """Compute a dry-run diff.

        Args:
            snapshot: Consistent state snapshot to plan against.
            parameters: Plaintext parameter values.
            destroy: Plan the removal of every resource instead.

        Raises:
            ExecutorError: For non-diff failures such as invalid configuration.
        """
        ...

    @abstractmethod
    async def apply(
        self,
        snapshot: StateSnapshot,
        parameters: dict[str, Any],
        destroy: bool = False,
        expected_changes: Sequence[ResourceChange] | None = None,
    ) -> ExecutionOutcome:
        """Run the mutation and return the resulting state.

        Args:
            snapshot: Snapshot the approved change set was planned against.
            parameters: Plaintext parameter values.
            destroy: Remove every resource instead.
            expected_changes: The approved changes. Executors that re-plan
                before mutating must refuse to run when their plan differs.

        Raises:
            ExecutorError: If the run fails. ``partial_state`` is set when
                some resources changed before the failure.
        """
        ...
