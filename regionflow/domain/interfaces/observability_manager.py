"""Event and log sink used by every orchestration component."""

from abc import ABC, abstractmethod
from typing import Any


class ObservabilityError(Exception):
    """The sink could not record an event or log line."""


class ObservabilityManager(ABC):
    """Destination for rollout milestones and diagnostics.

    Milestones such as ``plan_created`` or ``apply_finished`` go through
    :meth:`emit_event`; everything else goes through :meth:`log`. Callers
    only ever hand over parameter names, hashes and redacted mappings, and
    implementations redact again before writing.

    Components never fail an operation because :meth:`emit_event` raised;
    the failure is logged as a warning instead.
    """

    @abstractmethod
    async def emit_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record a named milestone.

        ``payload`` normally carries ``region`` plus ids, versions or
        counts; ``metadata`` is free-form and gets a timestamp if it has
        none.

        Raises:
            ObservabilityError: If the record could not be written.
        """

    @abstractmethod
    async def log(
        self,
        level: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Write a diagnostic line at ``level`` (``DEBUG`` to ``CRITICAL``).

        Raises:
            ObservabilityError: If the record could not be written.
        """
