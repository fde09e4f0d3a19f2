"""ApprovalGate component: human authorization before any mutation."""

import asyncio
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from regionflow.domain.errors import (
    ApprovalExpiredError,
    ApprovalMismatchError,
    PendingApprovalNotFoundError,
    StaleApprovalError,
)
from regionflow.domain.interfaces.observability_manager import ObservabilityManager
from regionflow.domain.interfaces.state_backend import StateBackend
from regionflow.domain.models.approval import ApprovalDecision, ApprovalRecord
from regionflow.domain.models.change_set import ChangeSet

SYSTEM_ACTOR = "system"


class PendingApproval:
    """A change set waiting for a decision.

    State machine: ``pending -> approved | rejected | expired``. Every
    terminal state is final; ``record`` is set exactly once, and ``settled``
    resolves to it once the record has been persisted.
    """

    def __init__(self, pending_id: str, change_set: ChangeSet, deadline: float) -> None:
        self.pending_id = pending_id
        self.change_set = change_set
        self.deadline = deadline
        self.submitted_at = datetime.now(UTC)
        self.record: ApprovalRecord | None = None
        self.settled: asyncio.Future[ApprovalRecord] = asyncio.get_running_loop().create_future()

    @property
    def is_pending(self) -> bool:
        return self.record is None


class ApprovalGate:
    """Holds change sets until an authorized actor approves or rejects them.

    The expiry countdown starts at submission. A decision that arrives after
    expiry, or for an item already decided, fails with StaleApprovalError.
    Waiting on the gate never holds a state lock.

    An item is released once ``wait`` has returned its terminal record, or
    once it is cancelled. Released ids are remembered (up to
    ``max_closed_items``) so late decisions are still refused as stale.

    Example:
        ```python
        pending_id = await gate.submit(change_set, timeout_seconds=900)
        # elsewhere: await gate.decide(pending_id, "alice", ApprovalDecision.Approved)
        record = await gate.wait(pending_id)
        ```
    """

    def __init__(
        self,
        state_backend: StateBackend,
        observability_manager: ObservabilityManager,
        default_timeout_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
        max_closed_items: int = 1024,
    ) -> None:
        """Initialize ApprovalGate.

        Args:
            state_backend: Backend where terminal records are persisted.
            observability_manager: ObservabilityManager for events and logging.
            default_timeout_seconds: Expiry applied when submit gets no timeout.
            clock: Monotonic clock in seconds, replaceable in tests.
            max_closed_items: Released ids remembered for stale detection.
        """
        self._state_backend = state_backend
        self._observability = observability_manager
        self._default_timeout_seconds = default_timeout_seconds
        self._clock = clock
        self._max_closed_items = max_closed_items
        self._pending: dict[str, PendingApproval] = {}
        self._closed: OrderedDict[str, ApprovalRecord] = OrderedDict()

    def _get(self, pending_id: str) -> PendingApproval:
        item = self._pending.get(pending_id)
        if item is not None:
            return item
        closed = self._closed.get(pending_id)
        if closed is not None:
            raise StaleApprovalError(
                f"Approval {pending_id} is already {closed.decision.value}",
                region=closed.region,
            )
        raise PendingApprovalNotFoundError(f"Unknown pending approval: {pending_id}")

    def _is_past_deadline(self, item: PendingApproval) -> bool:
        return self._clock() >= item.deadline

    def _release(self, item: PendingApproval) -> None:
        self._pending.pop(item.pending_id, None)
        if item.record is None:
            return
        self._closed[item.pending_id] = item.record
        self._closed.move_to_end(item.pending_id)
        while len(self._closed) > self._max_closed_items:
            self._closed.popitem(last=False)

    def get_pending(self, pending_id: str) -> PendingApproval:
        """Return an unreleased item (for approvers that want to show the change set).

        Raises:
            StaleApprovalError: If the item was already released.
            PendingApprovalNotFoundError: If ``pending_id`` is unknown.
        """
        return self._get(pending_id)

    def is_pending(self, pending_id: str) -> bool:
        """True while ``pending_id`` still awaits a decision."""
        item = self._pending.get(pending_id)
        return item is not None and item.is_pending

    def pending_ids(self) -> list[str]:
        """Ids of items not yet released, in submission order."""
        return list(self._pending)

    async def submit(self, change_set: ChangeSet, timeout_seconds: float | None = None) -> str:
        """Register a change set for approval and start its expiry countdown.

        Returns:
            The pending approval id.
        """
        timeout = self._default_timeout_seconds if timeout_seconds is None else timeout_seconds
        pending_id = str(uuid.uuid4())
        self._pending[pending_id] = PendingApproval(
            pending_id=pending_id,
            change_set=change_set,
            deadline=self._clock() + timeout,
        )

        await self._emit_event(
            "approval_submitted",
            {
                "region": change_set.region,
                "pending_id": pending_id,
                "operation": change_set.operation.value,
                "change_set_hash": change_set.content_hash,
                "summary": change_set.summary(),
                "timeout_seconds": timeout,
            },
        )
        return pending_id

    async def _finalize(
        self,
        item: PendingApproval,
        decision: ApprovalDecision,
        actor: str,
        reason: str | None = None,
    ) -> ApprovalRecord:
        # Set the record before any await so a racing decide/wait sees it
        record = ApprovalRecord(
            pending_id=item.pending_id,
            region=item.change_set.region,
            operation=item.change_set.operation,
            change_set_id=item.change_set.id,
            change_set_hash=item.change_set.content_hash,
            decision=decision,
            actor=actor,
            reason=reason,
        )
        item.record = record

        try:
            await self._state_backend.save_approval_record(record)
            await self._emit_event(
                "approval_decided",
                {
                    "region": record.region,
                    "pending_id": record.pending_id,
                    "decision": decision.value,
                    "actor": actor,
                    "reason": reason,
                    "change_set_hash": record.change_set_hash,
                },
            )
        finally:
            if not item.settled.done():
                item.settled.set_result(record)
        return record

    async def decide(
        self,
        pending_id: str,
        actor: str,
        decision: ApprovalDecision | str,
    ) -> ApprovalRecord:
        """Record an operator decision.

        Args:
            pending_id: Id returned by submit.
            actor: Identity of the deciding operator.
            decision: ``approved`` or ``rejected``.

        Raises:
            ValueError: If ``actor`` is empty or ``decision`` is not approve/reject.
            PendingApprovalNotFoundError: If ``pending_id`` is unknown.
            StaleApprovalError: If the item expired or was already decided.
        """
        decision = ApprovalDecision(decision)
        if decision == ApprovalDecision.Expired:
            raise ValueError("Operators can only approve or reject")
        if not actor or not actor.strip():
            raise ValueError("Approval actor cannot be empty")

        item = self._get(pending_id)
        if item.record is not None:
            raise StaleApprovalError(
                f"Approval {pending_id} is already {item.record.decision.value}",
                region=item.change_set.region,
            )
        if self._is_past_deadline(item):
            await self._finalize(item, ApprovalDecision.Expired, SYSTEM_ACTOR, reason="timeout")
            raise StaleApprovalError(
                f"Approval {pending_id} expired before {actor} decided",
                region=item.change_set.region,
            )
        return await self._finalize(item, decision, actor.strip())

    async def wait(self, pending_id: str, timeout_seconds: float | None = None) -> ApprovalRecord:
        """Wait for a decision, then release the item.

        Waits until the item is decided, or until the earlier of its deadline
        and ``timeout_seconds``, after which the item expires. Cancelling the
        waiting task records an expired decision with reason ``cancelled``.
        Waiting again on a released id returns the same outcome.

        Returns:
            The approved or rejected ApprovalRecord.

        Raises:
            ApprovalExpiredError: If the item expired or was cancelled.
            PendingApprovalNotFoundError: If ``pending_id`` is unknown.
        """
        closed = self._closed.get(pending_id)
        if closed is not None:
            return self._outcome(closed)

        item = self._get(pending_id)
        try:
            record = await self._settle(item, timeout_seconds)
        finally:
            self._release(item)
        return self._outcome(record)

    async def _settle(self, item: PendingApproval, timeout_seconds: float | None) -> ApprovalRecord:
        remaining = item.deadline - self._clock()
        if timeout_seconds is not None:
            remaining = min(remaining, timeout_seconds)
        try:
            return await asyncio.wait_for(asyncio.shield(item.settled), timeout=max(remaining, 0))
        except TimeoutError:
            if item.is_pending:
                return await self._finalize(
                    item, ApprovalDecision.Expired, SYSTEM_ACTOR, reason="timeout"
                )
            # A decision landed at the deadline and is still being persisted
            return await item.settled
        except asyncio.CancelledError:
            if item.is_pending:
                await self._finalize(
                    item, ApprovalDecision.Expired, SYSTEM_ACTOR, reason="cancelled"
                )
            raise

    @staticmethod
    def _outcome(record: ApprovalRecord) -> ApprovalRecord:
        if record.decision == ApprovalDecision.Expired:
            raise ApprovalExpiredError(
                f"Approval {record.pending_id} expired ({record.reason or 'timeout'})",
                region=record.region,
                details={"pending_id": record.pending_id, "reason": record.reason},
            )
        return record

    async def cancel(self, pending_id: str, actor: str = SYSTEM_ACTOR) -> ApprovalRecord:
        """Cancel a pending item, recording an expired decision, and release it.

        Raises:
            StaleApprovalError: If the item is no longer pending.
        """
        item = self._get(pending_id)
        if item.record is not None:
            raise StaleApprovalError(
                f"Approval {pending_id} is already {item.record.decision.value}",
                region=item.change_set.region,
            )
        try:
            return await self._finalize(item, ApprovalDecision.Expired, actor, reason="cancelled")
        finally:
            self._release(item)

    async def latest_record(self, region: str) -> ApprovalRecord | None:
        """Return the most recent terminal approval record for a region."""
        records = await self._state_backend.list_approval_records(region)
        return records[-1] if records else None

    async def verify(self, change_set: ChangeSet, approval: ApprovalRecord) -> None:
        """Check that ``approval`` authorizes mutating with ``change_set``.

        Raises:
            ApprovalMismatchError: Unless the approval is ``approved``, matches
                the change set's region, operation and hash, and is the most
                recent record for the region.
        """
        region = change_set.region
        if approval.decision != ApprovalDecision.Approved:
            raise ApprovalMismatchError(
                f"Approval is {approval.decision.value}, not approved", region=region
            )
        if approval.region != region or approval.operation != change_set.operation:
            raise ApprovalMismatchError(
                f"Approval for {approval.operation.value} in {approval.region} does not "
                f"cover {change_set.operation.value} in {region}",
                region=region,
            )
        if approval.change_set_hash != change_set.content_hash:
            raise ApprovalMismatchError(
                "Approval hash does not match the change set",
                region=region,
                details={
                    "approved_hash": approval.change_set_hash,
                    "change_set_hash": change_set.content_hash,
                },
            )
        latest = await self.latest_record(region)
        if latest is None or latest != approval:
            raise ApprovalMismatchError(
                "Approval is not the most recent decision for this workspace",
                region=region,
            )

    async def _emit_event(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self._observability.emit_event(event_type, payload)
        except Exception as e:
            await self._observability.log(
                level="WARNING",
                message=f"Failed to emit {event_type} event: {e}",
                context={"region": payload.get("region")},
            )
