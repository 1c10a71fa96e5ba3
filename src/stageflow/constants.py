"""Stable constants shared across stageflow components."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

DEFAULT_MAIN_BRANCH: Final[str] = "main"

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 2

# Default runtime paths (relative to the config file directory unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".stageflow")
WORKSPACE_DIR: Final[PurePosixPath] = PurePosixPath(".")
LOG_DIR: Final[PurePosixPath] = PurePosixPath(".stageflow/logs")
STATE_DB_FILENAME: Final[str] = "state.sqlite3"
RUNS_DIRNAME: Final[str] = "runs"
ARTIFACT_MANIFEST_FILENAME: Final[str] = "artifacts.json"
CONFIG_FILENAME: Final[str] = "stageflow.toml"
PIPELINE_FILENAMES: Final[tuple[str, ...]] = ("stageflow.yml", "stageflow.yaml", "pipeline.yml")

# Environment variables injected into every leaf stage.
ENV_FILE_VAR: Final[str] = "STAGEFLOW_ENV"
RUN_ID_VAR: Final[str] = "STAGEFLOW_RUN_ID"
STAGE_ID_VAR: Final[str] = "STAGEFLOW_STAGE"
WORKSPACE_VAR: Final[str] = "WORKSPACE"
BRANCH_VAR: Final[str] = "BRANCH_NAME"
COMMIT_VAR: Final[str] = "GIT_COMMIT"

# Synthetic exit codes reported for processes stopped by the runner.
TIMEOUT_EXIT_CODE: Final[int] = 124
CANCELLED_EXIT_CODE: Final[int] = 130

DEFAULT_KILL_GRACE_SECONDS: Final[float] = 5.0
DEFAULT_SHELL: Final[str] = "/bin/sh"
SECRET_MASK: Final[str] = "****"

# Directories that mark a workspace as a version-controlled checkout.
VCS_METADATA_DIRS: Final[tuple[str, ...]] = (".git", ".hg", ".svn")

__all__ = [
    "ARTIFACT_MANIFEST_FILENAME",
    "BRANCH_VAR",
    "CANCELLED_EXIT_CODE",
    "COMMIT_VAR",
    "CONFIG_FILENAME",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_KILL_GRACE_SECONDS",
    "DEFAULT_MAIN_BRANCH",
    "DEFAULT_SHELL",
    "ENV_FILE_VAR",
    "LOG_DIR",
    "PIPELINE_FILENAMES",
    "RUNS_DIRNAME",
    "RUN_ID_VAR",
    "SECRET_MASK",
    "STAGE_ID_VAR",
    "STATE_DB_FILENAME",
    "STATE_DB_SCHEMA_VERSION",
    "STATE_DIR",
    "TIMEOUT_EXIT_CODE",
    "VCS_METADATA_DIRS",
    "WORKSPACE_DIR",
    "WORKSPACE_VAR",
]
