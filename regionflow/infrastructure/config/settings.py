"""Configuration settings using pydantic-settings."""

import os
import socket
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class OrchestratorSettings(BaseSettings):
    """Configuration settings for regionflow.

    Settings can be loaded from environment variables or passed as a dictionary.
    Environment variables are prefixed with 'REGIONFLOW_'
    (e.g., REGIONFLOW_STATE_BACKEND=redis).

    Example:
        ```python
        # From environment variables
        settings = OrchestratorSettings()

        # From keyword arguments
        settings = OrchestratorSettings(state_backend="redis", redis_url="redis://cache:6379/1")
        ```
    """

    model_config = SettingsConfigDict(
        env_prefix="REGIONFLOW_",
        case_sensitive=False,
        extra="ignore",
    )

    # State backend configuration
    state_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Where workspace state, leases and audit records live",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL (state_backend=redis only)",
    )
    redis_namespace: str = Field(
        default="regionflow",
        description="Prefix of every Redis key",
    )
    state_prefix: str = Field(
        default="workspaces",
        description="Prefix of every workspace state partition key",
    )
    max_audit_records: int = Field(
        default=1000,
        ge=1,
        description="Maximum transitions and approval records kept per region",
    )

    # Locking and approval
    lock_ttl_seconds: float = Field(
        default=300,
        gt=0,
        description="Lease duration of a workspace lock; renewed every third of it",
    )
    approval_timeout_seconds: float = Field(
        default=3600,
        gt=0,
        description="How long a submitted change set waits for a decision",
    )
    holder_id: str = Field(
        default_factory=_default_holder_id,
        description="Identity recorded on acquired leases",
    )

    # Parameter sources
    values_dir: Path = Field(
        default=Path("values"),
        description="Directory holding defaults.yaml and regions/<region>.yaml",
    )
    secret_env_prefix: str = Field(
        default="REGIONFLOW_SECRET_",
        description="Environment prefix of run-time secret overrides",
    )

    # Executor configuration
    executor: Literal["terraform"] = Field(
        default="terraform",
        description="Infrastructure-as-code executor",
    )
    terraform_binary: str = Field(
        default="terraform",
        description="Terraform executable name or path",
    )
    terraform_module_dir: Path | None = Field(
        default=None,
        description="Terraform root module describing one region's infrastructure",
    )
    terraform_timeout_seconds: float = Field(
        default=3600,
        gt=0,
        description="Upper bound on a single terraform invocation",
    )

    # Observability configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        description="Render logs as JSON; console rendering otherwise",
    )

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return level

    @field_validator("state_prefix")
    @classmethod
    def _validate_state_prefix(cls, value: str) -> str:
        value = value.strip("/")
        if not value:
            raise ValueError("state_prefix cannot be empty")
        return value

    @model_validator(mode="after")
    def _validate_secret_prefix(self) -> "OrchestratorSettings":
        if not self.secret_env_prefix:
            raise ValueError("secret_env_prefix cannot be empty")
        return self

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "OrchestratorSettings":
        """Create settings from a dictionary.

        Args:
            config: Dictionary with configuration values.

        Returns:
            OrchestratorSettings instance.
        """
        return cls(**config)
