"""Tests for RolloutCoordinator component."""

import asyncio

import pytest

from regionflow.domain.errors import RolloutFailedError, StaleApprovalError
from regionflow.domain.models.approval import ApprovalDecision
from regionflow.domain.models.change_set import ChangeAction, OperationType, ResourceChange
from regionflow.domain.models.run_result import RunOutcome
from regionflow.domain.models.workspace import WorkspaceStatus

SECRETS = {
    "eu-central-1": {"bot_token": "T1"},
    "us-east-1": {"bot_token": "T2"},
    "ap-south-1": {"bot_token": "T3"},
}


class RegionApprover:
    """Approver that approves only the listed regions and ignores the rest."""

    def __init__(self, approve: set[str]) -> None:
        self.approve = approve
        self.seen: list[str] = []

    async def __call__(self, gate, pending_id, change_set) -> None:
        self.seen.append(change_set.region)
        if change_set.region in self.approve:
            await gate.decide(pending_id, "alice", ApprovalDecision.Approved)


class TestRolloutCoordinatorRollout:
    """Tests for multi-region apply."""

    @pytest.mark.asyncio
    async def test_failing_region_does_not_stop_others(self, stack) -> None:
        """Test that ap-south-1 fails on configuration while the rest apply."""
        report = await stack.coordinator.rollout(
            ["eu-central-1", "ap-south-1", "us-east-1"], SECRETS
        )

        assert report.outcomes() == {
            "eu-central-1": "succeeded",
            "ap-south-1": "failed",
            "us-east-1": "succeeded",
        }
        failed = report.for_region("ap-south-1")
        assert failed.error_category == "configuration_error"
        assert failed.detail["missing"] == ["cidr_block"]
        assert failed.change_set_hash is None
        assert report.finished_at is not None

        for region in ("eu-central-1", "us-east-1"):
            workspace = await stack.registry.get(region)
            assert workspace.status == WorkspaceStatus.Applied

    @pytest.mark.asyncio
    async def test_each_region_gets_its_own_secrets(self, stack) -> None:
        """Test that per-region secret overrides reach the executor."""
        await stack.coordinator.rollout(["eu-central-1", "us-east-1"], SECRETS)

        tokens = [call["parameters"]["bot_token"] for call in stack.executor.apply_calls]
        assert tokens == ["T1", "T2"]

    @pytest.mark.asyncio
    async def test_all_regions_failing_raises_with_report(self, stack) -> None:
        """Test that a rollout where nothing succeeds raises RolloutFailedError."""
        stack.executor.fail_plan_for = {"eu-central-1"}

        with pytest.raises(RolloutFailedError) as exc_info:
            await stack.coordinator.rollout(["eu-central-1", "ap-south-1"], SECRETS)

        report = exc_info.value.report
        assert [r.outcome for r in report.results] == [RunOutcome.Failed, RunOutcome.Failed]
        assert report.for_region("eu-central-1").error_category == "execution_error"
        assert "instance_typ" in report.for_region("eu-central-1").error

    @pytest.mark.asyncio
    async def test_rejected_region_is_skipped(self, make_stack, approvers) -> None:
        """Test that a rejection skips the region without touching state."""
        stack = make_stack(approver=approvers["reject_all"])

        report = await stack.coordinator.rollout(["eu-central-1"], SECRETS)

        result = report.results[0]
        assert result.outcome == RunOutcome.Skipped
        assert result.detail["decision"] == "rejected"
        assert result.detail["actor"] == "bob"
        assert result.workspace_status == WorkspaceStatus.Absent
        assert stack.executor.apply_calls == []

    @pytest.mark.asyncio
    async def test_duplicate_regions_are_collapsed(self, stack) -> None:
        """Test that a region listed twice runs once."""
        report = await stack.coordinator.rollout(
            ["eu-central-1", "EU-CENTRAL-1", "us-east-1"], SECRETS
        )

        assert [r.region for r in report.results] == ["eu-central-1", "us-east-1"]
        assert len(stack.executor.apply_calls) == 2

    @pytest.mark.asyncio
    async def test_invalid_region_is_reported(self, stack) -> None:
        """Test that a malformed region id fails as a configuration error."""
        report = await stack.coordinator.rollout(["eu_central!", "us-east-1"], SECRETS)

        assert report.results[0].outcome == RunOutcome.Failed
        assert report.results[0].error_category == "configuration_error"
        assert report.results[1].outcome == RunOutcome.Succeeded

    @pytest.mark.asyncio
    async def test_noop_plan_still_requires_approval(self, make_stack) -> None:
        """Test that an empty diff still passes through the gate."""
        approver = RegionApprover({"eu-central-1"})
        stack = make_stack(approver=approver)
        stack.executor.plan_changes = [
            ResourceChange(resource="aws_vpc.main", action=ChangeAction.NoOp)
        ]

        report = await stack.coordinator.rollout(["eu-central-1"], SECRETS)

        assert approver.seen == ["eu-central-1"]
        assert report.results[0].outcome == RunOutcome.Succeeded
        assert len(stack.observability.events_of("approval_submitted")) == 1

    @pytest.mark.asyncio
    async def test_rollout_finished_event(self, stack) -> None:
        """Test that the rollout emits a summary event."""
        await stack.coordinator.rollout(["eu-central-1", "ap-south-1"], SECRETS)

        payload = stack.observability.events_of("rollout_finished")[0]
        assert payload["operation"] == "apply"
        assert payload["failed"] == 1


class TestRolloutCoordinatorHooks:
    """Tests for post-apply notifications."""

    @pytest.mark.asyncio
    async def test_region_applied_event_and_hook(self, stack) -> None:
        """Test that a downstream bootstrap hook sees the applied workspace."""
        bootstrapped: list[str] = []

        async def bootstrap(workspace) -> None:
            bootstrapped.append(f"{workspace.region}:{workspace.status.value}")

        stack.coordinator.add_applied_hook(bootstrap)
        await stack.coordinator.rollout(["eu-central-1", "ap-south-1"], SECRETS)

        assert bootstrapped == ["eu-central-1:applied"]
        events = stack.observability.events_of("region_applied")
        assert [e["region"] for e in events] == ["eu-central-1"]

    @pytest.mark.asyncio
    async def test_hook_failure_is_recorded_not_fatal(self, stack) -> None:
        """Test that a failing hook leaves the region succeeded."""

        async def broken_hook(workspace) -> None:
            raise RuntimeError("cluster API unreachable")

        stack.coordinator.add_applied_hook(broken_hook)
        report = await stack.coordinator.rollout(["eu-central-1"], SECRETS)

        result = report.results[0]
        assert result.outcome == RunOutcome.Succeeded
        assert result.detail["hook_errors"] == ["broken_hook: cluster API unreachable"]


class FailingApprover:
    """Approver that raises for the listed regions and approves the rest."""

    def __init__(self, fail: set[str]) -> None:
        self.fail = fail

    async def __call__(self, gate, pending_id, change_set) -> None:
        if change_set.region in self.fail:
            raise RuntimeError("approval service unreachable")
        await gate.decide(pending_id, "alice", ApprovalDecision.Approved)


class TestRolloutCoordinatorIsolation:
    """Tests that unexpected failures stay inside their region."""

    @pytest.mark.asyncio
    async def test_unexpected_plan_failure_fails_only_that_region(self, stack) -> None:
        """Test that a crashing executor fails one region while the next still applies."""
        stack.executor.plan_errors = {"eu-central-1": FileNotFoundError("terraform: not found")}

        report = await stack.coordinator.rollout(["eu-central-1", "us-east-1"], SECRETS)

        assert report.outcomes() == {"eu-central-1": "failed", "us-east-1": "succeeded"}
        failed = report.for_region("eu-central-1")
        assert failed.error_category == "execution_error"
        assert "FileNotFoundError" in failed.error

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_captured_in_report(
        self, stack, monkeypatch
    ) -> None:
        """Test that an error outside the orchestrator's hierarchy is still reported."""
        resolve = stack.resolver.resolve

        async def broken_resolve(region, secret_overrides=None):
            if region == "eu-central-1":
                raise KeyError("cidr_block")
            return await resolve(region, secret_overrides)

        monkeypatch.setattr(stack.resolver, "resolve", broken_resolve)

        report = await stack.coordinator.rollout(["eu-central-1", "us-east-1"], SECRETS)

        assert report.outcomes() == {"eu-central-1": "failed", "us-east-1": "succeeded"}
        failed = report.for_region("eu-central-1")
        assert failed.error_category == "execution_error"
        assert failed.detail["error_type"] == "KeyError"
        assert any(
            log["level"] == "ERROR" and "KeyError" in log["message"]
            for log in stack.observability.logs
        )

    @pytest.mark.asyncio
    async def test_approver_failure_skips_only_that_region(self, make_stack) -> None:
        """Test that a raising approver expires its item and the rollout continues."""
        stack = make_stack(approver=FailingApprover({"eu-central-1"}))

        report = await stack.coordinator.rollout(["eu-central-1", "us-east-1"], SECRETS)

        assert report.outcomes() == {"eu-central-1": "skipped", "us-east-1": "succeeded"}
        skipped = report.for_region("eu-central-1")
        assert skipped.detail["decision"] == "expired"
        assert "RuntimeError" in skipped.detail["reason"]
        record = await stack.gate.latest_record("eu-central-1")
        assert record.reason == "cancelled"
        assert stack.executor.apply_calls[0]["snapshot"].partition_key.endswith("us-east-1")
        assert any(
            log["level"] == "WARNING" and "approval service unreachable" in log["message"]
            for log in stack.observability.logs
        )

    @pytest.mark.asyncio
    async def test_slow_approver_is_bounded_by_deadline(self, make_stack) -> None:
        """Test that an approver that never returns cannot outlive the approval deadline."""
        cancelled: list[str] = []

        async def stalled_approver(gate, pending_id, change_set) -> None:
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.append(change_set.region)
                raise

        stack = make_stack(approver=stalled_approver, approval_timeout_seconds=0.1)

        report = await asyncio.wait_for(
            stack.coordinator.rollout(["eu-central-1", "us-east-1"], SECRETS), timeout=2
        )

        assert report.outcomes() == {"eu-central-1": "skipped", "us-east-1": "skipped"}
        assert cancelled == ["eu-central-1", "us-east-1"]
        assert report.for_region("eu-central-1").detail["decision"] == "expired"

    @pytest.mark.asyncio
    async def test_rollout_leaves_no_pending_items(self, make_stack) -> None:
        """Test that every submitted item is released and late decisions are stale."""
        approver = RegionApprover({"us-east-1"})
        stack = make_stack(approver=approver, approval_timeout_seconds=0.05)
        submitted: list[str] = []
        submit = stack.gate.submit

        async def recording_submit(change_set, timeout_seconds=None):
            pending_id = await submit(change_set, timeout_seconds)
            submitted.append(pending_id)
            return pending_id

        stack.gate.submit = recording_submit

        await stack.coordinator.rollout(["eu-central-1", "us-east-1"], SECRETS)

        assert len(submitted) == 2
        assert stack.gate.pending_ids() == []
        with pytest.raises(StaleApprovalError):
            await stack.gate.decide(submitted[0], "alice", ApprovalDecision.Approved)


class TestRolloutCoordinatorDestroy:
    """Tests for destroy_all."""

    @pytest.mark.asyncio
    async def test_expired_approval_skips_region(self, make_stack) -> None:
        """Test that an unapproved region is skipped while the others are destroyed."""
        approver = RegionApprover({"eu-central-1", "us-east-1"})
        stack = make_stack(approver=approver, approval_timeout_seconds=0.05)
        await stack.coordinator.rollout(["eu-central-1", "us-east-1"], SECRETS)

        approver.approve = {"us-east-1"}
        report = await stack.coordinator.destroy_all(["eu-central-1", "us-east-1"], SECRETS)

        assert report.operation == OperationType.Destroy
        assert report.outcomes() == {"eu-central-1": "skipped", "us-east-1": "succeeded"}
        skipped = report.for_region("eu-central-1")
        assert skipped.detail["decision"] == "expired"
        assert skipped.workspace_status == WorkspaceStatus.Applied
        assert (await stack.registry.get("eu-central-1")).status == WorkspaceStatus.Applied
        assert (await stack.registry.get("us-east-1")).status == WorkspaceStatus.Absent

    @pytest.mark.asyncio
    async def test_destroy_skips_unknown_and_absent_regions(self, stack) -> None:
        """Test that regions with nothing to destroy never plan."""
        await stack.registry.ensure("us-east-1")

        report = await stack.coordinator.destroy_all(["ap-south-1", "us-east-1"], SECRETS)

        assert report.outcomes() == {"ap-south-1": "skipped", "us-east-1": "skipped"}
        assert report.for_region("ap-south-1").workspace_status is None
        assert report.results[0].detail["reason"] == "nothing to destroy"
        assert stack.executor.plan_calls == []
