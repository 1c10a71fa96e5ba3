"""
stageflow - persistence

File: src/stageflow/persistence/__init__.py

Purpose
- SQLite state DB with checksummed migrations, plus the Run State Store that
  records runs, stage results, overlay publications, artifacts, hook outcomes
  and streamed stage logs.

Functional requirements
- Every stage transition is persisted as it happens so in-progress runs can
  be observed and interrupted runs reconciled.
"""

from stageflow.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)
from stageflow.persistence.store import OverlayRecord, RunSnapshot, RunStateStore, RunSummary

__all__ = [
    "OverlayRecord",
    "RunSnapshot",
    "RunStateStore",
    "RunSummary",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
]
