"""Deterministic content hashing for plans and parameter sets."""

import hashlib
import hmac
import json
from typing import Any


def canonical_json(payload: Any) -> str:
    """Serialize a payload to JSON with sorted keys and no insignificant whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def content_digest(payload: Any) -> str:
    """Return the sha256 hex digest of the canonical JSON form of a payload."""
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def keyed_digest(payload: Any, key: bytes) -> str:
    """Return an HMAC-sha256 of the canonical JSON form of a payload.

    Without ``key`` the digest cannot be recomputed, so it is safe to publish
    even when the payload is a low-entropy secret.
    """
    return hmac.new(key, canonical_json(payload).encode("utf-8"), hashlib.sha256).hexdigest()
