"""Utility exports for filesystem, hashing, and concurrency helpers."""

from stageflow.utils.concurrency import CancellationToken
from stageflow.utils.fs import (
    atomic_write,
    clear_directory,
    is_within,
    resolve_within,
    safe_delete,
    slugify,
)
from stageflow.utils.hashing import (
    canonical_json,
    sha256_bytes,
    sha256_file,
    sha256_json,
    sha256_text,
)

__all__ = [
    "CancellationToken",
    "atomic_write",
    "canonical_json",
    "clear_directory",
    "is_within",
    "resolve_within",
    "safe_delete",
    "sha256_bytes",
    "sha256_file",
    "sha256_json",
    "sha256_text",
    "slugify",
]
