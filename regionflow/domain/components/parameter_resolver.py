"""ParameterResolver component: merges defaults, region values and secrets."""

from typing import Any

from regionflow.domain.errors import (
    ConfigurationError,
    MissingRequiredParameterError,
    ParameterConflictError,
    UnknownRegionError,
)
from regionflow.domain.interfaces.observability_manager import ObservabilityManager
from regionflow.domain.interfaces.values_source import RegionValuesSource, SecretSource
from regionflow.domain.models.parameter_set import ParameterSet, ParameterSource
from regionflow.domain.models.workspace import validate_region


class ParameterResolver:
    """Builds one immutable ParameterSet per region run.

    Merge order, later layers win:

    1. built-in defaults,
    2. the region's values document,
    3. secret overrides (secret source first, then caller-supplied values).

    A ``None`` value means "not set in this layer". Secret values are only
    held in memory for the run: they are never logged, and events carry key
    names and provenance only.
    """

    def __init__(
        self,
        values_source: RegionValuesSource,
        observability_manager: ObservabilityManager,
        secret_source: SecretSource | None = None,
    ) -> None:
        """Initialize ParameterResolver.

        Args:
            values_source: Provider of defaults and region values documents.
            observability_manager: ObservabilityManager for events and logging.
            secret_source: Optional run-time secret provider (e.g. environment).
        """
        self._values_source = values_source
        self._observability = observability_manager
        self._secret_source = secret_source

    def _check_no_secrets(
        self,
        document: dict[str, Any],
        secret_keys: set[str],
        origin: str,
        region: str,
    ) -> None:
        leaked = sorted(key for key in document if key in secret_keys)
        if leaked:
            raise ParameterConflictError(
                f"Secret parameters must not be stored in {origin}: {', '.join(leaked)}",
                field=leaked[0],
                region=region,
                details={"keys": leaked, "origin": origin},
            )

    @staticmethod
    def _check_override_names(overrides: dict[str, Any], region: str) -> None:
        for name in overrides:
            if not isinstance(name, str) or not name.strip():
                raise ConfigurationError(
                    "Secret override names must be non-empty strings",
                    field="secret_overrides",
                    region=region,
                )

    async def resolve(
        self,
        region: str,
        secret_overrides: dict[str, Any] | None = None,
    ) -> ParameterSet:
        """Resolve the parameter set for one region run.

        Args:
            region: Region to resolve for.
            secret_overrides: Secret values supplied at call time.

        Returns:
            A fresh, immutable ParameterSet.

        Raises:
            ParameterConflictError: If defaults or the region document contain a
                key declared secret.
            UnknownRegionError: If the region has no values document and the
                other layers leave required keys unset.
            MissingRequiredParameterError: If required keys are unset.
        """
        region = validate_region(region)
        secret_keys = self._values_source.secret_keys()
        required_keys = self._values_source.required_keys()
        defaults = self._values_source.defaults()
        region_document = self._values_source.region_values(region)

        self._check_no_secrets(defaults, secret_keys, "defaults", region)
        if region_document is not None:
            self._check_no_secrets(region_document, secret_keys, f"values for {region}", region)

        secrets: dict[str, Any] = {}
        if self._secret_source is not None:
            secrets.update(self._secret_source.overrides_for(region))
        if secret_overrides:
            self._check_override_names(secret_overrides, region)
            secrets.update(secret_overrides)

        values: dict[str, Any] = {}
        sources: dict[str, ParameterSource] = {}
        layers = (
            (defaults, ParameterSource.Default),
            (region_document or {}, ParameterSource.RegionFile),
            (secrets, ParameterSource.SecretOverride),
        )
        for layer, source in layers:
            for name, value in layer.items():
                if value is None:
                    continue
                values[name] = value
                sources[name] = source

        missing = sorted(required_keys - values.keys())
        if missing:
            if region_document is None:
                raise UnknownRegionError(missing, region=region)
            raise MissingRequiredParameterError(missing, region=region)

        parameter_set = ParameterSet.build(region, values, sources, secret_keys)

        try:
            await self._observability.emit_event(
                event_type="parameters_resolved",
                payload={
                    "region": region,
                    "provenance": parameter_set.provenance(),
                    "parameter_hash": parameter_set.content_hash,
                    "has_region_document": region_document is not None,
                },
            )
        except Exception as e:
            await self._observability.log(
                level="WARNING",
                message=f"Failed to emit parameters_resolved event: {e}",
                context={"region": region},
            )

        return parameter_set
