"""
stageflow - state database

File: src/stageflow/persistence/state_db.py

Purpose
- SQLite schema management, migrations, and connection lifecycle for run state.

Functional requirements
- Migrations are idempotent and checksummed; a database written by a newer
  schema is refused rather than silently downgraded.
- Busy/locked errors are retried with bounded exponential backoff so ``status``
  and ``watch`` readers never block a running pipeline for long.

Non-functional requirements
- Connections are short-lived; WAL journaling lets readers tail a live run.
"""

from __future__ import annotations

import hashlib
import sqlite3
import time
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from stageflow.constants import STATE_DB_SCHEMA_VERSION
from stageflow.domain.models import (
    ArtifactKind,
    HookPhase,
    RunStatus,
    SkipReason,
    StageKind,
    StageStatus,
)

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25


def _sql_enum(values: Iterable[str]) -> str:
    return ",".join(f"'{value}'" for value in sorted(values))


_RUN_STATUS_SQL: Final[str] = _sql_enum(item.value for item in RunStatus)
_STAGE_STATUS_SQL: Final[str] = _sql_enum(item.value for item in StageStatus)
_STAGE_KIND_SQL: Final[str] = _sql_enum(item.value for item in StageKind)
_SKIP_REASON_SQL: Final[str] = _sql_enum(item.value for item in SkipReason)
_ARTIFACT_KIND_SQL: Final[str] = _sql_enum(item.value for item in ArtifactKind)
_HOOK_PHASE_SQL: Final[str] = _sql_enum(item.value for item in HookPhase)

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    f"""
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        pipeline_name TEXT NOT NULL,
        pipeline_digest TEXT NOT NULL,
        source TEXT,
        status TEXT NOT NULL CHECK (status IN ({_RUN_STATUS_SQL})),
        branch TEXT NOT NULL,
        commit_sha TEXT,
        workspace TEXT NOT NULL,
        context_json TEXT NOT NULL,
        started_at TEXT NOT NULL,
        finished_at TEXT
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS stage_results (
        run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
        stage_id TEXT NOT NULL,
        position INTEGER NOT NULL CHECK (position >= 0),
        kind TEXT NOT NULL CHECK (kind IN ({_STAGE_KIND_SQL})),
        status TEXT NOT NULL CHECK (status IN ({_STAGE_STATUS_SQL})),
        started_at TEXT,
        finished_at TEXT,
        exit_code INTEGER,
        stdout_ref TEXT,
        stderr_ref TEXT,
        timed_out INTEGER NOT NULL DEFAULT 0 CHECK (timed_out IN (0, 1)),
        failure_ignored INTEGER NOT NULL DEFAULT 0 CHECK (failure_ignored IN (0, 1)),
        skip_reason TEXT CHECK (skip_reason IS NULL OR skip_reason IN ({_SKIP_REASON_SQL})),
        attempts INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
        message TEXT,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (run_id, stage_id)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS artifacts (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
        stage_id TEXT NOT NULL,
        kind TEXT NOT NULL CHECK (kind IN ({_ARTIFACT_KIND_SQL})),
        source_path TEXT NOT NULL,
        location TEXT NOT NULL,
        size_bytes INTEGER NOT NULL CHECK (size_bytes >= 0),
        sha256 TEXT NOT NULL CHECK (length(sha256) = 64),
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS overlay_entries (
        run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
        sequence INTEGER NOT NULL CHECK (sequence >= 1),
        key TEXT NOT NULL,
        value TEXT NOT NULL,
        stage_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (run_id, sequence),
        UNIQUE (run_id, key)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS hook_results (
        run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
        position INTEGER NOT NULL CHECK (position >= 0),
        phase TEXT NOT NULL CHECK (phase IN ({_HOOK_PHASE_SQL})),
        name TEXT NOT NULL,
        kind TEXT NOT NULL,
        ok INTEGER NOT NULL CHECK (ok IN (0, 1)),
        exit_code INTEGER,
        message TEXT,
        started_at TEXT NOT NULL,
        finished_at TEXT NOT NULL,
        PRIMARY KEY (run_id, position)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_runs_started_at ON runs(started_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_artifacts_run_stage ON artifacts(run_id, stage_id)",
)

_MIGRATION_0002_STATEMENTS: Final[tuple[str, ...]] = (
    "ALTER TABLE runs ADD COLUMN owner_host TEXT",
    "ALTER TABLE runs ADD COLUMN owner_pid INTEGER",
    "CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status)",
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


def _migration(version: int, name: str, statements: tuple[str, ...]) -> _Migration:
    return _Migration(
        version=version,
        name=name,
        statements=statements,
        checksum=_migration_checksum(version, name, statements),
    )


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _migration(1, "initial_run_state_schema", _MIGRATION_0001_STATEMENTS),
    _migration(2, "run_ownership", _MIGRATION_0002_STATEMENTS),
)

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "file is not a database",
)


class StateDBError(RuntimeError):
    """Base class for persistence DB errors."""


class StateDBBusyError(StateDBError):
    """Raised when bounded busy retries are exhausted."""


class StateDBMigrationError(StateDBError):
    """Raised when migrations cannot be applied safely."""


class StateDBCorruptionError(StateDBError):
    """Raised when SQLite reports possible corruption."""


class StateDB:
    """SQLite state DB manager with deterministic migrations and safe helpers."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")

        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._savepoint_counter = 0

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        """Open a configured SQLite connection for the state DB."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        self._configure_connection(conn)
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Run statements inside an atomic transaction with savepoint support."""

        if conn is None:
            with self.connection() as owned_conn:
                with self.transaction(conn=owned_conn, immediate=immediate) as txn_conn:
                    yield txn_conn
                return

        if conn.in_transaction:
            savepoint = self._next_savepoint_name()
            self._execute_with_retry(conn, f"SAVEPOINT {savepoint}", (), operation="savepoint")
            try:
                yield conn
            except Exception:
                self._execute_with_retry(
                    conn, f"ROLLBACK TO SAVEPOINT {savepoint}", (), operation="rollback savepoint"
                )
                self._execute_with_retry(
                    conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint"
                )
                raise
            else:
                self._execute_with_retry(
                    conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint"
                )
            return

        begin_sql = "BEGIN IMMEDIATE" if immediate else "BEGIN"
        self._execute_with_retry(conn, begin_sql, (), operation="begin transaction")
        try:
            yield conn
        except Exception:
            self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        else:
            self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    def migrate(self) -> int:
        """Apply migrations idempotently and return current schema version."""

        self._validate_migration_chain(STATE_DB_SCHEMA_VERSION)
        with self.connection() as conn:
            self._execute_with_retry(
                conn, _SCHEMA_VERSIONS_TABLE_SQL, (), operation="create schema_versions table"
            )
            applied = self._load_applied_migrations(conn)
            current_version = max(applied, default=0)
            if current_version > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    "database schema is newer than supported by this version "
                    f"(db={current_version}, code={STATE_DB_SCHEMA_VERSION})"
                )

            for migration in _MIGRATIONS:
                if migration.version > STATE_DB_SCHEMA_VERSION:
                    continue
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            "migration checksum mismatch for version "
                            f"{migration.version}: db={record.checksum} code={migration.checksum}"
                        )
                    continue

                applied_at = _utc_now_iso()
                with self.transaction(conn=conn, immediate=True) as tx:
                    for statement in migration.statements:
                        self._execute_with_retry(
                            tx, statement, (), operation=f"apply migration {migration.version}"
                        )
                    self._execute_with_retry(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (migration.version, migration.name, migration.checksum, applied_at),
                        operation=f"record migration {migration.version}",
                    )
                applied[migration.version] = MigrationRecord(
                    migration.version, migration.name, migration.checksum, applied_at
                )

            return self.schema_version(conn=conn)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn
        )
        value = 0 if row is None else row["version"]
        if not isinstance(value, int):
            raise StateDBMigrationError("schema_versions.version must be an integer")
        return value

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Execute a parameterized statement and return affected row count."""

        if conn is not None:
            return self._execute_with_retry(conn, sql, params, operation="execute").rowcount
        with self.transaction(immediate=True) as tx:
            return self._execute_with_retry(tx, sql, params, operation="execute").rowcount

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        """Run a query and return rows as dictionaries."""

        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query all")
            return [dict(row) for row in cursor.fetchall()]
        with self.connection() as owned_conn:
            cursor = self._execute_with_retry(owned_conn, sql, params, operation="query all")
            return [dict(row) for row in cursor.fetchall()]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        rows = self.query_all(sql, params, conn=conn)
        return rows[0] if rows else None

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if journal_row is None or str(journal_row[0]).lower() != "wal":
            raise StateDBError(f"failed to enable WAL journaling for {self._path}")

    def _load_applied_migrations(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        cursor = self._execute_with_retry(
            conn,
            "SELECT version, name, checksum, applied_at FROM schema_versions ORDER BY version",
            (),
            operation="load schema_versions",
        )
        return {
            int(row["version"]): MigrationRecord(
                version=int(row["version"]),
                name=str(row["name"]),
                checksum=str(row["checksum"]),
                applied_at=str(row["applied_at"]),
            )
            for row in cursor.fetchall()
        }

    def _validate_migration_chain(self, target_version: int) -> None:
        versions = {migration.version for migration in _MIGRATIONS}
        for version in range(1, target_version + 1):
            if version not in versions:
                raise StateDBMigrationError(f"missing migration for schema version {version}")

    def _next_savepoint_name(self) -> str:
        self._savepoint_counter += 1
        return f"sp_{self._savepoint_counter}"

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise StateDBBusyError(f"{operation} exhausted retries unexpectedly")

    def _is_busy_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> None:
        message = str(exc).lower()
        if any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS):
            raise StateDBCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Move the state directory aside to start a fresh run history."
            ) from exc
        if self._is_busy_error(exc):
            raise StateDBBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after "
                f"{self._busy_retry_limit + 1} attempt(s): {exc}"
            ) from exc
        raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MigrationRecord",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
]
