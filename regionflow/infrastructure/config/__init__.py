"""Configuration infrastructure module."""

from regionflow.infrastructure.config.file_loader import ValuesFileLoader
from regionflow.infrastructure.config.secret_source import EnvironmentSecretSource
from regionflow.infrastructure.config.settings import OrchestratorSettings
from regionflow.infrastructure.config.values_source import FileRegionValuesSource

__all__ = [
    "OrchestratorSettings",
    "ValuesFileLoader",
    "FileRegionValuesSource",
    "EnvironmentSecretSource",
]
