"""
linkrewards/blockchain/canonical.py

Canonical byte encoding and content hashing of pipeline artifacts.

Encoding: JSON with sorted keys, no insignificant whitespace, UTF-8.
Decimals are written as strings, enums by value, tuples as lists, and
objects with a to_dict() method through it. Floats are rejected so that
no platform-dependent rounding can reach a hash.

Usage:
    from linkrewards.blockchain.canonical import hash_artifact

    digest = hash_artifact(allocation_input)
"""

import hashlib
import json
from decimal import Decimal
from enum import Enum
from typing import Any

from ..errors import CommitmentError

HASH_ALGORITHM = "sha256"


def canonicalize(value: Any, path: str = "$") -> Any:
    """
    Convert an artifact into plain JSON types.

    Raises:
        CommitmentError: On floats, non-string keys, or unsupported types
    """
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        raise CommitmentError(f"Float at {path} cannot be hashed canonically: {value!r}")
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise CommitmentError(f"Non-finite decimal at {path}")
        return str(value)
    if isinstance(value, Enum):
        return canonicalize(value.value, path)
    if hasattr(value, "to_dict"):
        return canonicalize(value.to_dict(), path)
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise CommitmentError(f"Non-string key at {path}: {key!r}")
            result[key] = canonicalize(item, f"{path}.{key}")
        return result
    if isinstance(value, (list, tuple)):
        return [canonicalize(item, f"{path}[{i}]") for i, item in enumerate(value)]
    raise CommitmentError(f"Unsupported type at {path}: {type(value).__name__}")


def canonical_json(value: Any) -> bytes:
    """Canonical UTF-8 JSON encoding of an artifact."""
    return json.dumps(
        canonicalize(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_artifact(value: Any) -> str:
    """SHA-256 hex digest of an artifact's canonical encoding."""
    return hash_bytes(canonical_json(value))
