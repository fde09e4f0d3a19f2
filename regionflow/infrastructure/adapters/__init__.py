"""Executor adapters."""

from regionflow.infrastructure.adapters.terraform_executor import TerraformExecutor

__all__ = ["TerraformExecutor"]
