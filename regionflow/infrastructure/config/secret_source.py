"""Environment-backed secret overrides."""

import os
from collections.abc import Mapping

from regionflow.domain.interfaces.values_source import SecretSource


class EnvironmentSecretSource(SecretSource):
    """Reads secret overrides from environment variables.

    With the default prefix ``REGIONFLOW_SECRET_``:

    - ``REGIONFLOW_SECRET_DB_PASSWORD`` sets ``db_password`` for every region;
    - ``REGIONFLOW_SECRET_EU_CENTRAL_1__DB_PASSWORD`` sets it for
      ``eu-central-1`` only, and wins over the global value.
    """

    def __init__(
        self,
        prefix: str = "REGIONFLOW_SECRET_",
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._prefix = prefix.upper()
        self._environ = environ if environ is not None else os.environ

    @staticmethod
    def region_token(region: str) -> str:
        return region.upper().replace("-", "_")

    def overrides_for(self, region: str) -> dict[str, str]:
        scoped_prefix = f"{self._prefix}{self.region_token(region)}__"
        global_values: dict[str, str] = {}
        scoped_values: dict[str, str] = {}

        for key, value in self._environ.items():
            upper = key.upper()
            if not upper.startswith(self._prefix):
                continue
            if upper.startswith(scoped_prefix):
                name = upper[len(scoped_prefix):]
                if name:
                    scoped_values[name.lower()] = value
            elif "__" not in upper[len(self._prefix):]:
                name = upper[len(self._prefix):]
                if name:
                    global_values[name.lower()] = value

        return {**global_values, **scoped_values}
