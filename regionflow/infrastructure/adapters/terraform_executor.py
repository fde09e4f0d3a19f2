"""Terraform CLI implementation of IaCExecutor."""

import asyncio
import json
import os
import re
import shutil
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import structlog

from regionflow.domain.errors import ConfigurationError
from regionflow.domain.interfaces.iac_executor import (
    ExecutionOutcome,
    ExecutorError,
    IaCExecutor,
    PlanDiff,
)
from regionflow.domain.interfaces.state_backend import StateSnapshot
from regionflow.domain.models.change_set import ChangeAction, ResourceChange

logger = structlog.get_logger(__name__)

STATE_FILE = "terraform.tfstate"
VARS_FILE = "regionflow.auto.tfvars.json"
PLAN_FILE = "regionflow.tfplan"
MODULE_DIR = "module"

_DIAGNOSTIC_ADDRESS = re.compile(r"^\s*with ([^,\s]+),", re.MULTILINE)


def map_actions(actions: list[str]) -> ChangeAction:
    """Map a terraform ``change.actions`` list onto a single ChangeAction.

    Replacements (``["delete", "create"]`` in either order) count as updates;
    ``read`` (data sources) counts as no-op.
    """
    action_set = set(actions)
    if action_set == {"create"}:
        return ChangeAction.Create
    if action_set == {"delete"}:
        return ChangeAction.Delete
    if action_set == {"update"} or action_set == {"create", "delete"}:
        return ChangeAction.Update
    if action_set <= {"no-op", "read"}:
        return ChangeAction.NoOp
    raise ExecutorError(f"Unrecognised terraform actions: {actions}")


def state_addresses(state: dict[str, Any]) -> set[str]:
    """Return the resource instance addresses recorded in a terraform state document."""
    addresses: set[str] = set()
    for resource in state.get("resources", []):
        base = f"{resource['type']}.{resource['name']}"
        if resource.get("mode") == "data":
            base = f"data.{base}"
        if resource.get("module"):
            base = f"{resource['module']}.{base}"
        instances = resource.get("instances") or [{}]
        for instance in instances:
            if "index_key" in instance:
                addresses.add(f"{base}[{json.dumps(instance['index_key'])}]")
            else:
                addresses.add(base)
    return addresses


class TerraformExecutor(IaCExecutor):
    """Runs the terraform CLI against one root module.

    Each call works in a fresh scratch directory holding a copy of the module,
    the snapshot as a local ``-state`` file and the parameters as a JSON
    var-file. State never touches the module's own backend, so the module
    must not declare a remote backend. Apply re-plans, refuses the result if
    it no longer matches the approved changes and then applies exactly that
    saved plan.

    Example:
        ```python
        executor = TerraformExecutor(module_dir="infra/region")
        diff = await executor.plan(snapshot, {"instance_count": 3})
        ```
    """

    def __init__(
        self,
        module_dir: str | Path,
        binary: str = "terraform",
        timeout_seconds: float = 3600,
        env: dict[str, str] | None = None,
    ) -> None:
        """Initialize TerraformExecutor.

        Args:
            module_dir: Terraform root module describing one region.
            binary: Terraform executable name or path.
            timeout_seconds: Upper bound on each terraform invocation.
            env: Extra environment for terraform (e.g. provider credentials).

        Raises:
            ConfigurationError: If the module directory does not exist.
        """
        self._module_dir = Path(module_dir)
        if not self._module_dir.is_dir():
            raise ConfigurationError(
                f"Terraform module directory not found: {self._module_dir}",
                field="terraform_module_dir",
            )
        self._binary = binary
        self._timeout_seconds = timeout_seconds
        self._env = env

    def verify_binary(self) -> str:
        """Return the resolved terraform path.

        Raises:
            ConfigurationError: If the binary is not on PATH.
        """
        resolved = shutil.which(self._binary)
        if resolved is None:
            raise ConfigurationError(
                f"Terraform binary not found: {self._binary}", field="terraform_binary"
            )
        return resolved

    async def _run(self, args: list[str], cwd: Path) -> tuple[int, str, str]:
        command = [self._binary, *args]
        logger.debug("Running terraform", command=" ".join(command[:2]), cwd=str(cwd))
        env = None
        if self._env:
            env = {**os.environ, **self._env}
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self._timeout_seconds
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            raise ExecutorError(
                f"terraform {args[0]} timed out after {self._timeout_seconds}s"
            ) from None
        return (
            process.returncode if process.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def _checked(self, args: list[str], cwd: Path) -> str:
        returncode, stdout, stderr = await self._run(args, cwd)
        if returncode != 0:
            raise ExecutorError(stderr.strip() or stdout.strip() or f"terraform {args[0]} failed")
        return stdout

    def _prepare(self, workdir: Path, snapshot: StateSnapshot, parameters: dict[str, Any]) -> Path:
        module = workdir / MODULE_DIR
        shutil.copytree(
            self._module_dir,
            module,
            ignore=shutil.ignore_patterns(".terraform", "*.tfstate", "*.tfstate.backup"),
        )
        if snapshot.blob:
            (module / STATE_FILE).write_text(json.dumps(snapshot.blob), encoding="utf-8")
        (module / VARS_FILE).write_text(json.dumps(parameters, sort_keys=True), encoding="utf-8")
        return module

    def _common_args(self) -> list[str]:
        return [
            "-input=false",
            "-no-color",
            "-lock=false",
            f"-state={STATE_FILE}",
            f"-var-file={VARS_FILE}",
        ]

    async def _init(self, module: Path) -> None:
        await self._checked(["init", "-input=false", "-no-color", "-backend=false"], module)

    async def _plan_in(self, module: Path, destroy: bool) -> list[ResourceChange]:
        args = ["plan", *self._common_args(), f"-out={PLAN_FILE}"]
        if destroy:
            args.append("-destroy")
        await self._checked(args, module)
        shown = await self._checked(["show", "-json", "-no-color", PLAN_FILE], module)
        try:
            document = json.loads(shown)
        except json.JSONDecodeError as e:
            raise ExecutorError(f"terraform show returned invalid JSON: {e}") from e
        return [
            ResourceChange(
                resource=change["address"],
                action=map_actions(change["change"]["actions"]),
            )
            for change in document.get("resource_changes", [])
        ]

    async def plan(
        self,
        snapshot: StateSnapshot,
        parameters: dict[str, Any],
        destroy: bool = False,
    ) -> PlanDiff:
        with tempfile.TemporaryDirectory(prefix="regionflow-") as scratch:
            module = await asyncio.to_thread(self._prepare, Path(scratch), snapshot, parameters)
            await self._init(module)
            changes = await self._plan_in(module, destroy)
        return PlanDiff(resource_changes=changes, detail={"partition_key": snapshot.partition_key})

    async def apply(
        self,
        snapshot: StateSnapshot,
        parameters: dict[str, Any],
        destroy: bool = False,
        expected_changes: Sequence[ResourceChange] | None = None,
    ) -> ExecutionOutcome:
        with tempfile.TemporaryDirectory(prefix="regionflow-") as scratch:
            module = await asyncio.to_thread(self._prepare, Path(scratch), snapshot, parameters)
            await self._init(module)
            planned = await self._plan_in(module, destroy)
            if expected_changes is not None:
                self.check_drift(planned, expected_changes)

            # The saved plan carries the variables and the destroy mode
            args = [
                "apply",
                "-input=false",
                "-no-color",
                "-lock=false",
                f"-state={STATE_FILE}",
                PLAN_FILE,
            ]
            returncode, stdout, stderr = await self._run(args, module)
            new_state = self._read_state(module)

        if returncode == 0:
            if new_state is None:
                new_state = dict(snapshot.blob)
            return ExecutionOutcome(
                state=new_state,
                succeeded=True,
                detail={"resources": len(state_addresses(new_state))},
            )

        message = stderr.strip() or stdout.strip() or "terraform apply failed"
        if new_state is None or new_state.get("serial") == snapshot.blob.get("serial"):
            raise ExecutorError(message)
        raise ExecutorError(
            message,
            partial_state=new_state,
            unresolved_resources=self.unresolved(planned, new_state, stderr),
        )

    @staticmethod
    def _read_state(module: Path) -> dict[str, Any] | None:
        path = module / STATE_FILE
        if not path.is_file():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ExecutorError(f"Could not read terraform state after apply: {e}") from e

    @staticmethod
    def check_drift(
        planned: Sequence[ResourceChange], approved: Sequence[ResourceChange]
    ) -> None:
        """Refuse to apply a plan that differs from the approved changes.

        Raises:
            ExecutorError: Naming every resource whose planned action changed.
        """
        current = {(change.resource, change.action) for change in planned}
        expected = {(change.resource, change.action) for change in approved}
        if current == expected:
            return
        drifted = sorted({resource for resource, _ in current ^ expected})
        raise ExecutorError(
            "Infrastructure changed since the change set was approved; "
            f"re-plan required for: {', '.join(drifted)}"
        )

    @staticmethod
    def unresolved(
        planned: list[ResourceChange],
        state: dict[str, Any],
        stderr: str,
    ) -> list[str]:
        """Planned resources that a failed apply did not reconcile.

        A create is unresolved while its address is missing from the state, a
        delete while it is still present; any resource named in an error
        diagnostic is unresolved too.
        """
        present = state_addresses(state)
        failed = set(_DIAGNOSTIC_ADDRESS.findall(stderr))
        unresolved = set()
        for change in planned:
            if change.action == ChangeAction.Create and change.resource not in present:
                unresolved.add(change.resource)
            elif change.action == ChangeAction.Delete and change.resource in present:
                unresolved.add(change.resource)
            elif change.resource in failed:
                unresolved.add(change.resource)
        return sorted(unresolved)
