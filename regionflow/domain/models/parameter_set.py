"""ParameterSet data model: the immutable, provenance-tagged inputs of one run."""

import secrets
from copy import deepcopy
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, Secret, SecretStr

from regionflow.domain.models.digest import content_digest, keyed_digest

# Secret values enter content hashes only through this key, which never
# leaves the process. Hashes of sets holding secrets are therefore comparable
# within one orchestrator process only.
_SECRET_DIGEST_KEY = secrets.token_bytes(32)


class ParameterSource(str, Enum):
    """Layer a resolved parameter value came from. Later layers win."""

    Default = "default"
    """Built-in defaults document."""

    RegionFile = "region-file"
    """Region-specific values document."""

    SecretOverride = "secret-override"
    """Secret supplied at call time. Never persisted."""


class ParameterEntry(BaseModel):
    """One resolved parameter with its provenance."""

    name: str = Field(..., min_length=1)
    value: Any = Field(..., description="Resolved value; wrapped in Secret for secret entries")
    source: ParameterSource
    secret: bool = False

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    def reveal(self) -> Any:
        """Return the plaintext value with its original type (a copy for mutable values)."""
        if isinstance(self.value, Secret):
            return deepcopy(self.value.get_secret_value())
        return deepcopy(self.value)

    def digest_value(self) -> Any:
        """Value as it enters the content hash; secrets only as a keyed digest."""
        if self.secret:
            return {"secret": keyed_digest(self.reveal(), _SECRET_DIGEST_KEY)}
        return self.reveal()


class ParameterSet(BaseModel):
    """Immutable mapping from parameter name to value for one region run.

    Built once per run by the ParameterResolver and reused unchanged for plan
    and apply. Secret entries hold pydantic ``Secret`` values, so dumps and
    reprs never show them in plaintext, while ``reveal`` hands the executor
    the original value, whatever its type.
    """

    region: str = Field(..., min_length=1)
    entries: tuple[ParameterEntry, ...] = Field(default_factory=tuple)
    content_hash: str = Field(..., min_length=64, max_length=64)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def build(
        cls,
        region: str,
        values: dict[str, Any],
        sources: dict[str, ParameterSource],
        secret_keys: set[str] | frozenset[str] = frozenset(),
    ) -> "ParameterSet":
        """Create a ParameterSet and compute its content hash.

        Args:
            region: Region the parameters were resolved for.
            values: Plaintext values keyed by parameter name.
            sources: Provenance of each value.
            secret_keys: Names whose values must be wrapped as secrets.
        """
        entries = []
        for name in sorted(values):
            secret = name in secret_keys or sources[name] == ParameterSource.SecretOverride
            raw = values[name]
            if isinstance(raw, Secret | SecretStr):
                raw = raw.get_secret_value()
            stored: Any = Secret(deepcopy(raw)) if secret else deepcopy(raw)
            entries.append(
                ParameterEntry(name=name, value=stored, source=sources[name], secret=secret)
            )

        digest = content_digest(
            {
                "region": region,
                "entries": [
                    {"name": e.name, "value": e.digest_value(), "source": e.source.value}
                    for e in entries
                ],
            }
        )
        return cls(region=region, entries=tuple(entries), content_hash=digest)

    @property
    def names(self) -> list[str]:
        return [entry.name for entry in self.entries]

    def get(self, name: str) -> ParameterEntry | None:
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None

    def __contains__(self, name: object) -> bool:
        return any(entry.name == name for entry in self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def reveal(self) -> dict[str, Any]:
        """Return a fresh plaintext mapping, secrets included.

        Only the IaC executor should receive this mapping.
        """
        return {entry.name: entry.reveal() for entry in self.entries}

    def redacted(self) -> dict[str, Any]:
        """Return a mapping safe for logs and reports."""
        return {
            entry.name: "[REDACTED]" if entry.secret else entry.reveal()
            for entry in self.entries
        }

    def provenance(self) -> dict[str, str]:
        return {entry.name: entry.source.value for entry in self.entries}

    def secret_names(self) -> list[str]:
        return [entry.name for entry in self.entries if entry.secret]

    def __repr__(self) -> str:
        return (
            f"ParameterSet(region={self.region!r}, names={self.names!r}, "
            f"hash={self.content_hash[:12]})"
        )
