"""Values file loader for YAML and JSON documents."""

import json
from pathlib import Path
from typing import Any

import yaml

from regionflow.domain.errors import ConfigurationError

SUPPORTED_SUFFIXES = (".yaml", ".yml", ".json")


class ValuesFileLoader:
    """Loads one values document from a YAML or JSON file.

    The format is chosen from the file extension. Two document shapes are
    understood:

    - the defaults document, with optional top-level ``defaults`` (mapping),
      ``required`` (list of names) and ``secrets`` (list of names) keys;
    - a region document, a flat mapping of parameter name to value.
    """

    def __init__(self, path: str | Path) -> None:
        """Initialize ValuesFileLoader.

        Args:
            path: Path to the values document.

        Raises:
            ConfigurationError: If the file does not exist.
        """
        self._path = Path(path)
        if not self._path.is_file():
            raise ConfigurationError(f"Values file not found: {self._path}")

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any]:
        """Load the document.

        Returns:
            The parsed mapping. An empty YAML file yields an empty mapping.

        Raises:
            ConfigurationError: If the format is unsupported or the file cannot be parsed.
        """
        suffix = self._path.suffix.lower()

        if suffix in (".yaml", ".yml"):
            return self._load_yaml()
        elif suffix == ".json":
            return self._load_json()
        else:
            raise ConfigurationError(
                f"Unsupported values file format: {suffix}. "
                f"Supported formats: {', '.join(SUPPORTED_SUFFIXES)}"
            )

    def _load_yaml(self) -> dict[str, Any]:
        try:
            with self._path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {self._path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read values file {self._path}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{self._path} must contain a mapping")
        return data

    def _load_json(self) -> dict[str, Any]:
        try:
            with self._path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {self._path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read values file {self._path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{self._path} must contain an object")
        return data

    @staticmethod
    def _parse_name_list(config: dict[str, Any], key: str) -> set[str]:
        names = config.get(key) or []
        if not isinstance(names, list):
            raise ConfigurationError(f"'{key}' must be a list of parameter names", field=key)
        parsed: set[str] = set()
        for idx, name in enumerate(names):
            if not isinstance(name, str) or not name.strip():
                raise ConfigurationError(
                    f"'{key}' entry at index {idx} must be a non-empty string",
                    field=f"{key}[{idx}]",
                )
            parsed.add(name.strip())
        return parsed

    def parse_defaults(self, config: dict[str, Any]) -> tuple[dict[str, Any], set[str], set[str]]:
        """Validate and split a defaults document.

        Returns:
            ``(defaults, required_keys, secret_keys)``.

        Raises:
            ConfigurationError: If the document structure is invalid.
        """
        allowed_keys = {"defaults", "required", "secrets"}
        for key in config:
            if key not in allowed_keys:
                raise ConfigurationError(
                    f"Unknown defaults key: '{key}'. Allowed keys: {', '.join(sorted(allowed_keys))}",
                    field=key,
                )

        defaults = config.get("defaults") or {}
        if not isinstance(defaults, dict):
            raise ConfigurationError("'defaults' must be a mapping", field="defaults")
        self.validate_names(defaults, "defaults")

        required = self._parse_name_list(config, "required")
        secrets = self._parse_name_list(config, "secrets")
        return dict(defaults), required, secrets

    def parse_region(self, config: dict[str, Any]) -> dict[str, Any]:
        """Validate a region document (a flat mapping with string keys)."""
        self.validate_names(config, str(self._path.name))
        return dict(config)

    @staticmethod
    def validate_names(document: dict[str, Any], origin: str) -> None:
        for name in document:
            if not isinstance(name, str) or not name.strip():
                raise ConfigurationError(
                    f"Parameter names in {origin} must be non-empty strings (got {name!r})",
                    field=origin,
                )
