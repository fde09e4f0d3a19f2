"""Interfaces for parameter inputs: region values documents and secrets."""

from abc import ABC, abstractmethod
from typing import Any


class RegionValuesSource(ABC):
    """Supplies defaults and per-region values documents.

    A values document is a flat mapping of parameter name to value, one per
    region id. Secret parameters must never appear in it.
    """

    @abstractmethod
    def defaults(self) -> dict[str, Any]:
        """Return built-in default values."""

    @abstractmethod
    def required_keys(self) -> set[str]:
        """Return the parameter names that must be set after merging."""

    @abstractmethod
    def secret_keys(self) -> set[str]:
        """Return the parameter names that may only come from secret overrides."""

    @abstractmethod
    def region_values(self, region: str) -> dict[str, Any] | None:
        """Return the values document for ``region``, or None if it has none."""


class SecretSource(ABC):
    """Supplies secret overrides at run time (environment, secret store, ...)."""

    @abstractmethod
    def overrides_for(self, region: str) -> dict[str, str]:
        """Return secret values to inject for ``region``."""
