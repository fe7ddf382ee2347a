"""Fingerprint utilities for checkpoint invalidation and cache keys.

Provides stable hashing of structured configuration, item bytes and
composite cache keys. All configuration hashing goes through
canonical_json() so key order never affects a fingerprint.
"""

import hashlib
import json
from pathlib import Path
from typing import Any, Mapping, Union

from pydantic import BaseModel

ConfigLike = Union[BaseModel, Mapping[str, Any]]

# Read photos in 1MB chunks so large files never sit in memory twice
_CHUNK_SIZE = 1024 * 1024


def _to_plain(config: ConfigLike) -> Any:
    if isinstance(config, BaseModel):
        return config.model_dump(mode="json")
    return config


def canonical_json(config: ConfigLike) -> str:
    """Serialize configuration to its canonical JSON form.

    Keys are sorted at every nesting level and separators are compact,
    so two configurations with the same content always serialize to the
    same string regardless of how they were built.

    Args:
        config: Pydantic model or JSON-like mapping.

    Returns:
        Canonical JSON string.
    """
    return json.dumps(
        _to_plain(config),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def fingerprint_config(config: ConfigLike) -> str:
    """Calculate the SHA-256 fingerprint of a configuration.

    Args:
        config: Pydantic model or JSON-like mapping.

    Returns:
        64-character hex digest.
    """
    return hashlib.sha256(canonical_json(config).encode("utf-8")).hexdigest()


def fingerprint_bytes(data: bytes) -> str:
    """SHA-256 hex digest of raw item bytes."""
    return hashlib.sha256(data).hexdigest()


def fingerprint_file(path: Path) -> str:
    """SHA-256 hex digest of a file's contents, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def compute_cache_key(
    item_fingerprint: str, parameter_fingerprint: str, model_id: str
) -> str:
    """Combine item, parameter and model identity into one cache key.

    Args:
        item_fingerprint: Hash of the item bytes.
        parameter_fingerprint: Hash of the evaluation parameters.
        model_id: Inference model identifier (e.g. 'llava:7b').

    Returns:
        64-character hex digest.
    """
    combined = f"{item_fingerprint}:{parameter_fingerprint}:{model_id}"
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()
