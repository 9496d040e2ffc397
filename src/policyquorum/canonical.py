"""Canonical JSON used for content-derived ids and audit chain hashes.

- object keys sorted, NFC-normalized, duplicates after normalization rejected
- compact separators, UTF-8 output
- floats rejected; ids and tallies are integers
"""

from __future__ import annotations

import hashlib
import json
import unicodedata
from typing import Any, Mapping

_JSON_SEPARATORS = (",", ":")


class CanonicalizationError(ValueError):
    """Raised when a value cannot be represented in canonical JSON."""


def canonical_bytes(value: Any) -> bytes:
    """Return canonical UTF-8 bytes for the given JSON-compatible value."""
    return _render(value).encode("utf-8")


def canonical_dumps(value: Any) -> str:
    return _render(value)


def sha256_hex(value: Any) -> str:
    """Return SHA-256 hex digest of the canonical bytes."""
    return hashlib.sha256(canonical_bytes(value)).hexdigest()


def _render(value: Any) -> str:
    if value is None:
        return "null"
    # bool is a subclass of int
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        raise CanonicalizationError("floats are rejected")
    if isinstance(value, str):
        normalized = unicodedata.normalize("NFC", value)
        return json.dumps(normalized, ensure_ascii=False, separators=_JSON_SEPARATORS)
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_render(item) for item in value) + "]"
    if isinstance(value, Mapping):
        return _render_object(value)
    raise CanonicalizationError(f"type {type(value).__name__} is not JSON-serializable")


def _render_object(value: Mapping[Any, Any]) -> str:
    items: dict[str, Any] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise CanonicalizationError("object keys must be strings")
        normalized = unicodedata.normalize("NFC", key)
        if normalized in items:
            raise CanonicalizationError(f"duplicate key after NFC normalization: {normalized!r}")
        items[normalized] = item
    parts = [
        json.dumps(key, ensure_ascii=False, separators=_JSON_SEPARATORS) + ":" + _render(items[key])
        for key in sorted(items)
    ]
    return "{" + ",".join(parts) + "}"
