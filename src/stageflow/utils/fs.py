"""
stageflow - filesystem utilities

File: src/stageflow/utils/fs.py

Purpose
- Atomic writes for manifests and published state files.
- Workspace containment checks for stage working directories and cleanup hooks.

Functional requirements
- Atomic writes land through a temp file in the destination directory.
- Deletion and workdir resolution refuse paths outside the workspace root.
"""

from __future__ import annotations

import contextlib
import os
import re
import shutil
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

_SLUG_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")

__all__ = [
    "PathLike",
    "atomic_write",
    "clear_directory",
    "is_within",
    "resolve_within",
    "safe_delete",
    "slugify",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """
    Atomically write ``data`` to ``path``.

    The parent directory must exist. Readers either see the previous content or
    the new content, never a partial file.
    """

    target = Path(path)
    parent = target.parent.resolve(strict=True)
    if not parent.is_dir():
        raise NotADirectoryError(f"{parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(parent))
    temp_path = Path(temp_name)
    payload = data if isinstance(data, bytes) else data.encode(encoding)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if ``child`` resolves inside ``parent`` (both need not exist)."""

    resolved_parent = Path(parent).resolve()
    resolved_child = Path(child).resolve()
    try:
        resolved_child.relative_to(resolved_parent)
    except ValueError:
        return False
    return True


def resolve_within(root: PathLike, relative: PathLike | None) -> Path:
    """
    Resolve ``relative`` against ``root`` and reject escapes.

    ``None`` or an empty string resolves to ``root`` itself. Absolute paths are
    accepted only when they already point inside ``root``.
    """

    base = Path(root).resolve()
    if relative is None or str(relative).strip() in {"", "."}:
        return base
    candidate = Path(relative)
    resolved = (candidate if candidate.is_absolute() else base / candidate).resolve()
    if not is_within(resolved, base):
        raise ValueError(f"path escapes workspace root {base!s}: {relative!s}")
    return resolved


def safe_delete(path: PathLike, workspace_root: PathLike) -> None:
    """
    Delete ``path`` only if it is contained within ``workspace_root``.

    Symlinks are unlinked without following them.
    """

    workspace = Path(workspace_root).resolve(strict=True)
    target = Path(path)
    candidate = target.parent.resolve(strict=True) / target.name
    if not is_within(candidate, workspace) or candidate == workspace:
        raise ValueError(f"refusing to delete path outside workspace root: {target!s}")

    if target.is_symlink():
        target.unlink()
        return
    if target.is_dir():
        shutil.rmtree(target)
        return
    target.unlink()


def clear_directory(directory: PathLike, *, keep: tuple[str, ...] = ()) -> int:
    """Remove every entry of ``directory`` except names in ``keep``; return removed count."""

    root = Path(directory)
    if not root.is_dir():
        return 0
    removed = 0
    for entry in sorted(root.iterdir()):
        if entry.name in keep:
            continue
        safe_delete(entry, root)
        removed += 1
    return removed


def slugify(value: str, *, max_length: int = 48) -> str:
    """Filesystem-safe, lowercase slug of ``value`` (never empty)."""

    slug = _SLUG_UNSAFE.sub("-", value.strip().lower()).strip("-.")
    return slug[:max_length] or "item"
