"""
Canonical Content Hasher

Computes the content hash committed on-ledger for every anchored resource.
Parties running different code must be able to reproduce the digest, so the
canonical form is deliberately narrow:

- every declared field is present, unset optionals become ``null``
- a ``schema_version`` key is always included
- mapping keys are sorted by code point
- lists keep their order, sets are sorted
- datetimes are UTC ``YYYY-MM-DDTHH:MM:SS.mmmZ``, dates ``YYYY-MM-DD``
- enums serialize by value, floats are rejected

The result is compact JSON (no whitespace, UTF-8) hashed with SHA-256.
"""

import hashlib
import json
from collections.abc import Mapping
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

SCHEMA_VERSION = 1
DIGEST_SIZE = 32


class CanonicalizationError(ValueError):
    """Content fields contain a value with no canonical representation."""


def _format_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _normalize(value: Any, path: str) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, Enum):
        return _normalize(value.value, path)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        raise CanonicalizationError(f"Floating point value at {path!r} is not allowed")
    if isinstance(value, datetime):
        return _format_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return _normalize(_model_fields(value), path)
    if isinstance(value, Mapping):
        result = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise CanonicalizationError(f"Non-string key {key!r} at {path!r}")
            result[key] = _normalize(item, f"{path}.{key}")
        return result
    if isinstance(value, (set, frozenset)):
        items = [_normalize(item, f"{path}[]") for item in value]
        return sorted(items, key=_dumps)
    if isinstance(value, (list, tuple)):
        return [_normalize(item, f"{path}[{i}]") for i, item in enumerate(value)]
    raise CanonicalizationError(
        f"Unsupported value of type {type(value).__name__} at {path!r}"
    )


def _model_fields(model: BaseModel) -> dict[str, Any]:
    # Declared fields only, unset optionals included as None
    return {name: getattr(model, name) for name in type(model).model_fields}


def _dumps(value: Any) -> str:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


class CanonicalHasher:
    """
    Deterministic serialization and hashing of resource content fields.

    Stateless; a single instance can be shared freely.
    """

    schema_version = SCHEMA_VERSION

    def canonical_form(self, fields: BaseModel | Mapping[str, Any]) -> dict[str, Any]:
        """Build the canonical mapping for a fields model or plain mapping."""
        if isinstance(fields, BaseModel):
            payload = _model_fields(fields)
        elif isinstance(fields, Mapping):
            payload = dict(fields)
        else:
            raise CanonicalizationError(
                f"Cannot hash {type(fields).__name__}; expected a model or mapping"
            )
        payload.setdefault("schema_version", self.schema_version)
        return _normalize(payload, "$")

    def canonical_bytes(self, fields: BaseModel | Mapping[str, Any]) -> bytes:
        return _dumps(self.canonical_form(fields)).encode("utf-8")

    def digest(self, fields: BaseModel | Mapping[str, Any]) -> bytes:
        """Raw 32-byte SHA-256 digest of the canonical form."""
        return hashlib.sha256(self.canonical_bytes(fields)).digest()

    def hash(self, fields: BaseModel | Mapping[str, Any]) -> str:
        """Lowercase hex content hash."""
        return self.digest(fields).hex()

    def matches(self, fields: BaseModel | Mapping[str, Any], content_hash: str) -> bool:
        return self.hash(fields) == content_hash.lower()

    @staticmethod
    def token_metadata(content_hash: str) -> bytes:
        """Proof-token metadata: the raw digest bytes behind a content hash."""
        raw = bytes.fromhex(content_hash)
        if len(raw) != DIGEST_SIZE:
            raise CanonicalizationError(
                f"Content hash must be {DIGEST_SIZE} bytes, got {len(raw)}"
            )
        return raw
