"""
Content hashing for resource declarations.

Hashes are taken over RFC 8785 canonical JSON so that key order and number
formatting never change the digest.
"""

import hashlib
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize(value: Any) -> Any:
    """Convert a resolved input value into JSON primitives."""
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_normalize(item) for item in value)
    if isinstance(value, Enum):
        return _normalize(value.value)
    raise TypeError(
        f"Cannot hash value of type {type(value).__name__}. "
        f"Resource inputs must be JSON-compatible."
    )


def canonical_json(value: Any) -> str:
    """Serialize a value to deterministic JSON."""
    return rfc8785.dumps(_normalize(value)).decode("utf-8")


def content_hash(kind: str, inputs: dict[str, Any]) -> str:
    """sha256 hex digest over a node's kind and resolved inputs."""
    payload = canonical_json({"kind": kind, "inputs": inputs})
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
