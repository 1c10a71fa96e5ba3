"""Shared fixtures for stageflow tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from stageflow.observability.logging import clear_secret_values
from stageflow.persistence.store import RunStateStore


@pytest.fixture
def state_store(tmp_path: Path) -> RunStateStore:
    return RunStateStore(tmp_path / "state")


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture(autouse=True)
def _reset_secret_registry() -> None:
    clear_secret_values()
