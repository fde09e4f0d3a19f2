"""structlog-backed observability for rollout runs."""

import logging
import re
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import Secret, SecretStr

from regionflow.domain.interfaces.observability_manager import (
    ObservabilityError,
    ObservabilityManager,
)

REDACTED = "[REDACTED]"

_SENSITIVE_NAME = re.compile(r"(password|passwd|secret|token|api_?key|credential|private_?key)", re.I)

_LEVELS = {
    "DEBUG": "debug",
    "INFO": "info",
    "WARNING": "warning",
    "ERROR": "error",
    "CRITICAL": "critical",
}


def sanitize_for_logging(data: Any, secret_keys: Iterable[str] = ()) -> Any:
    """Return a copy of ``data`` that is safe to write to a log sink.

    A mapping value is replaced by ``[REDACTED]`` when its key is a declared
    secret parameter or looks like a credential name. ``Secret`` and
    ``SecretStr`` values are redacted wherever they appear. The input is never
    modified.
    """
    names = set(secret_keys)

    def _walk(value: Any) -> Any:
        if isinstance(value, Secret | SecretStr):
            return REDACTED
        if isinstance(value, dict):
            return {
                key: REDACTED if _is_secret_name(key, names) else _walk(item)
                for key, item in value.items()
            }
        if isinstance(value, list | tuple):
            return [_walk(item) for item in value]
        return value

    return _walk(data)


def _is_secret_name(key: Any, names: set[str]) -> bool:
    return isinstance(key, str) and (key in names or bool(_SENSITIVE_NAME.search(key)))


def configure_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """Route structlog through stdlib logging with a JSON or console renderer."""
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(message)s" if json_format else "%(asctime)s %(levelname)-8s %(message)s",
    )


class DefaultObservabilityManager(ObservabilityManager):
    """Writes orchestration events and logs through structlog.

    Events become ``info`` records named ``Event emitted`` carrying an
    ``event_type`` field, so a single log pipeline serves both. Every payload
    is passed through :func:`sanitize_for_logging` with the declared secret
    parameter names first.
    """

    def __init__(
        self,
        log_level: str = "INFO",
        json_format: bool = True,
        secret_keys: Iterable[str] = (),
    ) -> None:
        self._secret_keys = set(secret_keys)
        configure_logging(log_level, json_format)
        self._logger = structlog.get_logger("regionflow")

    def add_secret_keys(self, names: Iterable[str]) -> None:
        """Redact ``names`` from every later record as well."""
        self._secret_keys.update(names)

    async def emit_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        try:
            fields = sanitize_for_logging(payload, self._secret_keys)
            if metadata:
                stamped = sanitize_for_logging(metadata, self._secret_keys)
                stamped.setdefault("timestamp", datetime.now(UTC).isoformat())
                fields["metadata"] = stamped
            self._logger.info("Event emitted", event_type=event_type, **fields)
        except Exception as e:
            raise ObservabilityError(f"Failed to emit {event_type} event: {e}") from e

    async def log(
        self,
        level: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        method_name = _LEVELS.get(level.upper(), "info")
        try:
            fields = sanitize_for_logging(context or {}, self._secret_keys)
            getattr(self._logger, method_name)(message, **fields)
        except Exception as e:
            raise ObservabilityError(f"Failed to log message: {e}") from e
