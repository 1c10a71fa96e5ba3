"""Tests for atomic writes and workspace containment helpers."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from stageflow.utils.fs import (
    atomic_write,
    clear_directory,
    is_within,
    resolve_within,
    safe_delete,
    slugify,
)

pytestmark = pytest.mark.unit


def test_atomic_write_replaces_content_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "artifacts.json"
    target.write_text("old", encoding="utf-8")

    atomic_write(target, '{"ok": true}')
    atomic_write(tmp_path / "raw.bin", b"\x00\x01")

    assert target.read_text(encoding="utf-8") == '{"ok": true}'
    assert (tmp_path / "raw.bin").read_bytes() == b"\x00\x01"
    assert sorted(path.name for path in tmp_path.iterdir()) == ["artifacts.json", "raw.bin"]


def test_atomic_write_requires_existing_parent(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        atomic_write(tmp_path / "missing" / "file.txt", "x")


@pytest.mark.parametrize(
    ("relative", "expected"),
    [
        (None, ""),
        ("", ""),
        (".", ""),
        ("app", "app"),
        ("app/../lib", "lib"),
    ],
)
def test_resolve_within_accepts_contained_paths(
    tmp_path: Path, relative: str | None, expected: str
) -> None:
    root = tmp_path.resolve()

    assert resolve_within(tmp_path, relative) == (root / expected if expected else root)


@pytest.mark.parametrize("relative", ["..", "../sibling", "/etc"])
def test_resolve_within_rejects_escapes(tmp_path: Path, relative: str) -> None:
    with pytest.raises(ValueError, match="escapes workspace root"):
        resolve_within(tmp_path, relative)


def test_resolve_within_accepts_absolute_paths_inside_root(tmp_path: Path) -> None:
    inside = tmp_path.resolve() / "build"

    assert resolve_within(tmp_path, inside) == inside
    assert is_within(inside, tmp_path)
    assert not is_within(tmp_path, inside)


def test_safe_delete_refuses_root_and_outside_paths(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    workspace.mkdir()
    outside = tmp_path / "outside.txt"
    outside.write_text("keep", encoding="utf-8")

    with pytest.raises(ValueError):
        safe_delete(outside, workspace)
    with pytest.raises(ValueError):
        safe_delete(workspace, workspace)
    assert outside.exists()


def test_safe_delete_unlinks_symlinks_without_following(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    workspace.mkdir()
    target_dir = tmp_path / "shared-cache"
    target_dir.mkdir()
    (target_dir / "blob").write_text("data", encoding="utf-8")
    link = workspace / "cache"
    os.symlink(target_dir, link)

    safe_delete(link, workspace)

    assert not link.exists()
    assert (target_dir / "blob").exists()


def test_clear_directory_keeps_named_entries(tmp_path: Path) -> None:
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "dist").mkdir()
    (tmp_path / "dist" / "app.js").write_text("x", encoding="utf-8")
    (tmp_path / "log.txt").write_text("x", encoding="utf-8")

    removed = clear_directory(tmp_path, keep=("node_modules",))

    assert removed == 2
    assert [path.name for path in tmp_path.iterdir()] == ["node_modules"]
    assert clear_directory(tmp_path / "absent") == 0


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("Build/Unit Tests", "build-unit-tests"),
        ("  ..hidden..  ", "hidden"),
        ("***", "item"),
        ("a" * 60, "a" * 48),
    ],
)
def test_slugify(value: str, expected: str) -> None:
    assert slugify(value) == expected
