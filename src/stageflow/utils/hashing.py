"""Deterministic SHA-256 helpers for pipeline digests and artifact integrity."""

from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Final

PathLike = str | os.PathLike[str]

_FILE_READ_CHUNK_BYTES: Final[int] = 1024 * 1024

__all__ = [
    "canonical_json",
    "sha256_bytes",
    "sha256_file",
    "sha256_json",
    "sha256_text",
]


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return SHA-256 hex digest for text encoded with ``encoding``."""

    return sha256_bytes(text.encode(encoding))


def sha256_file(path: PathLike, *, chunk_size: int = _FILE_READ_CHUNK_BYTES) -> str:
    """Return SHA-256 hex digest for a file read in chunks."""

    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    digest = hashlib.sha256()
    with Path(path).open("rb") as file_handle:
        while chunk := file_handle.read(chunk_size):
            digest.update(chunk)
    return digest.hexdigest()


def canonical_json(value: object) -> str:
    """Deterministic JSON (sorted keys, compact separators, ``str`` for other types)."""

    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )


def sha256_json(value: object) -> str:
    """Digest of the canonical JSON rendering of ``value``."""

    return sha256_text(canonical_json(value))
