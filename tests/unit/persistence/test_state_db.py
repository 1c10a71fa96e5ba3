"""State DB migration, pragmas, and concurrency tests."""

from __future__ import annotations

import sqlite3
import threading
import time
from typing import TYPE_CHECKING

import pytest

from stageflow.constants import STATE_DB_SCHEMA_VERSION
from stageflow.persistence.state_db import StateDB, StateDBError, StateDBMigrationError

if TYPE_CHECKING:
    from pathlib import Path


def _insert_run(db: StateDB, run_id: str, *, conn: sqlite3.Connection | None = None) -> None:
    db.execute(
        """
        INSERT INTO runs (
            id, pipeline_name, pipeline_digest, status, branch, workspace, context_json,
            started_at
        ) VALUES (?, 'ci', ?, 'running', 'main', '/tmp/ws', '{}', '2026-01-01T00:00:00Z')
        """,
        (run_id, "0" * 64),
        conn=conn,
    )


def test_migration_idempotence_schema_version_and_pragmas(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state" / "state.sqlite3", busy_timeout_ms=4_321)

    assert db.migrate() == STATE_DB_SCHEMA_VERSION
    assert db.migrate() == STATE_DB_SCHEMA_VERSION

    with db.connection() as conn:
        tables = {
            str(row[0])
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        assert {
            "schema_versions",
            "runs",
            "stage_results",
            "artifacts",
            "overlay_entries",
            "hook_results",
        }.issubset(tables)

        columns = {str(row[1]) for row in conn.execute("PRAGMA table_info(runs)")}
        assert {"owner_host", "owner_pid"}.issubset(columns)

        assert int(conn.execute("PRAGMA foreign_keys").fetchone()[0]) == 1
        assert str(conn.execute("PRAGMA journal_mode").fetchone()[0]).lower() == "wal"
        assert int(conn.execute("PRAGMA busy_timeout").fetchone()[0]) == 4_321

        migration_rows = conn.execute("SELECT version FROM schema_versions").fetchall()
        assert len(migration_rows) == STATE_DB_SCHEMA_VERSION


def test_newer_database_schema_is_rejected(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state.sqlite3")
    db.migrate()
    db.execute(
        "INSERT INTO schema_versions (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
        (STATE_DB_SCHEMA_VERSION + 1, "future", "f" * 64, "2030-01-01T00:00:00Z"),
    )

    with pytest.raises(StateDBMigrationError, match="newer"):
        db.migrate()


def test_tampered_migration_checksum_is_rejected(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state.sqlite3")
    db.migrate()
    db.execute("UPDATE schema_versions SET checksum = ? WHERE version = 1", ("a" * 64,))

    with pytest.raises(StateDBMigrationError, match="checksum mismatch"):
        db.migrate()


def test_nested_transaction_rolls_back_to_savepoint(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state.sqlite3")
    db.migrate()

    with db.transaction() as tx:
        _insert_run(db, "run-outer", conn=tx)
        with pytest.raises(RuntimeError), db.transaction(conn=tx):
            db.execute("UPDATE runs SET branch = 'inner' WHERE id = 'run-outer'", conn=tx)
            raise RuntimeError("abandon inner work")

    row = db.query_one("SELECT branch FROM runs WHERE id = ?", ("run-outer",))
    assert row == {"branch": "main"}


def test_constraint_violations_surface_as_integrity_errors(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state.sqlite3")
    db.migrate()

    with pytest.raises(sqlite3.IntegrityError):
        db.execute(
            """
            INSERT INTO overlay_entries (run_id, sequence, key, value, stage_id, created_at)
            VALUES ('missing-run', 1, 'K', 'V', 'Stage', '2026-01-01T00:00:00Z')
            """
        )


def test_bad_sql_raises_actionable_state_db_error(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state.sqlite3")
    db.migrate()

    with pytest.raises(StateDBError, match="state.sqlite3"):
        db.query_all("SELECT * FROM no_such_table")


def test_wal_allows_reader_during_open_writer_transaction(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "state" / "state.sqlite3")
    db.migrate()
    _insert_run(db, "run-wal")

    writer_conn = db.connect()
    reader_conn = db.connect()
    writer_started = threading.Event()
    reader_finished = threading.Event()
    errors: list[str] = []
    reader_elapsed: float | None = None
    reader_count: int | None = None

    def writer() -> None:
        try:
            writer_conn.execute("BEGIN IMMEDIATE")
            writer_conn.execute("UPDATE runs SET status = 'failed' WHERE id = 'run-wal'")
            writer_started.set()
            if not reader_finished.wait(timeout=2.0):
                errors.append("reader did not finish while writer transaction was open")
            writer_conn.execute("ROLLBACK")
        except Exception as exc:  # noqa: BLE001
            errors.append(f"writer failed: {exc}")

    def reader() -> None:
        nonlocal reader_elapsed, reader_count
        if not writer_started.wait(timeout=2.0):
            errors.append("writer did not start")
            reader_finished.set()
            return
        try:
            start = time.monotonic()
            row = reader_conn.execute("SELECT COUNT(*) FROM runs").fetchone()
            reader_elapsed = time.monotonic() - start
            reader_count = int(row[0])
        except Exception as exc:  # noqa: BLE001
            errors.append(f"reader failed: {exc}")
        finally:
            reader_finished.set()

    threads = [
        threading.Thread(target=writer, name="state-db-writer", daemon=True),
        threading.Thread(target=reader, name="state-db-reader", daemon=True),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5.0)
    writer_conn.close()
    reader_conn.close()

    assert not errors
    assert reader_count == 1
    assert reader_elapsed is not None
    assert reader_elapsed < 0.75


@pytest.mark.parametrize(
    "kwargs",
    [{"busy_timeout_ms": -1}, {"busy_retry_limit": -1}, {"busy_retry_backoff_ms": -1}],
)
def test_negative_tuning_values_are_rejected(tmp_path: Path, kwargs: dict[str, int]) -> None:
    with pytest.raises(ValueError):
        StateDB(tmp_path / "state.sqlite3", **kwargs)
