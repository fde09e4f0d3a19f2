"""File-backed region values source."""

from pathlib import Path
from typing import Any

from regionflow.domain.errors import ConfigurationError
from regionflow.domain.interfaces.values_source import RegionValuesSource
from regionflow.infrastructure.config.file_loader import SUPPORTED_SUFFIXES, ValuesFileLoader


class FileRegionValuesSource(RegionValuesSource):
    """Reads defaults and per-region documents from a directory.

    Layout::

        values/
          defaults.yaml          # defaults / required / secrets
          regions/
            eu-central-1.yaml    # flat mapping of parameter overrides
            us-east-1.json

    The defaults document is optional. Documents are re-read on every call,
    so edits between runs are picked up without a restart.
    """

    def __init__(self, values_dir: str | Path) -> None:
        self._values_dir = Path(values_dir)
        if not self._values_dir.is_dir():
            raise ConfigurationError(
                f"Values directory not found: {self._values_dir}", field="values_dir"
            )

    def _find(self, directory: Path, stem: str) -> Path | None:
        matches = [
            directory / f"{stem}{suffix}"
            for suffix in SUPPORTED_SUFFIXES
            if (directory / f"{stem}{suffix}").is_file()
        ]
        if len(matches) > 1:
            raise ConfigurationError(
                f"Ambiguous values documents for {stem}: {', '.join(p.name for p in matches)}",
                field=stem,
            )
        return matches[0] if matches else None

    def _defaults_document(self) -> tuple[dict[str, Any], set[str], set[str]]:
        path = self._find(self._values_dir, "defaults")
        if path is None:
            return {}, set(), set()
        loader = ValuesFileLoader(path)
        return loader.parse_defaults(loader.load())

    def defaults(self) -> dict[str, Any]:
        return self._defaults_document()[0]

    def required_keys(self) -> set[str]:
        return self._defaults_document()[1]

    def secret_keys(self) -> set[str]:
        return self._defaults_document()[2]

    def region_values(self, region: str) -> dict[str, Any] | None:
        path = self._find(self._values_dir / "regions", region)
        if path is None:
            return None
        loader = ValuesFileLoader(path)
        return loader.parse_region(loader.load())

    def known_regions(self) -> list[str]:
        """Regions that have a values document, sorted."""
        regions_dir = self._values_dir / "regions"
        if not regions_dir.is_dir():
            return []
        return sorted(
            {p.stem for p in regions_dir.iterdir() if p.suffix.lower() in SUPPORTED_SUFFIXES}
        )
