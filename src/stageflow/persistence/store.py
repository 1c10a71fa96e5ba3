"""
stageflow - run state store

File: src/stageflow/persistence/store.py

Purpose
- Durable record of every run: run rows, per-stage results, overlay
  publications, artifacts, hook outcomes, and the streamed stage logs.

Layout under the state directory::

    state.sqlite3
    runs/<run_id>/logs/<stage-slug>-<hash>.<stream>.log
    runs/<run_id>/env/<stage-slug>-<hash>.<attempt>.env
    runs/<run_id>/artifacts/<stage-slug>-<hash>/...

Functional requirements
- Stage results are upserted on every transition so an interrupted run is
  still observable.
- Logs are plain append-only files; ``read_log`` supports tailing by offset.
- Runs record their owning host and pid; ``reconcile_interrupted`` marks runs
  whose owner died as aborted.
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from stageflow.constants import RUNS_DIRNAME, STATE_DB_FILENAME
from stageflow.domain.models import (
    Artifact,
    ArtifactKind,
    HookActionKind,
    HookPhase,
    HookResult,
    RunStatus,
    SkipReason,
    StageKind,
    StageResult,
    StageStatus,
    utc_now,
)
from stageflow.persistence.state_db import RowValue, StateDB
from stageflow.utils.fs import slugify
from stageflow.utils.hashing import canonical_json, sha256_text

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from stageflow.domain.models import RunRecord

_LOG_STREAMS: Final[frozenset[str]] = frozenset({"stdout", "stderr"})
_MAX_LIST_LIMIT: Final[int] = 1_000
_INTERRUPTED_MESSAGE: Final[str] = "owner process exited before the run finished"


@dataclass(frozen=True, slots=True)
class RunSummary:
    run_id: str
    pipeline_name: str
    pipeline_digest: str
    status: RunStatus
    branch: str
    commit: str | None
    workspace: str
    source: str | None
    started_at: datetime
    finished_at: datetime | None
    owner_host: str | None = None
    owner_pid: int | None = None


@dataclass(frozen=True, slots=True)
class OverlayRecord:
    sequence: int
    key: str
    value: str
    stage_id: str


@dataclass(frozen=True, slots=True)
class RunSnapshot:
    """Everything persisted about one run, in pipeline order."""

    summary: RunSummary
    stages: tuple[StageResult, ...]
    artifacts: tuple[Artifact, ...]
    overlay: tuple[OverlayRecord, ...]
    hooks: tuple[HookResult, ...]

    def stage(self, stage_id: str) -> StageResult:
        for result in self.stages:
            if result.stage_id == stage_id:
                return result
        raise KeyError(stage_id)


class RunStateStore:
    """Run state persistence rooted at a state directory."""

    def __init__(
        self,
        root: str | Path,
        *,
        db: StateDB | None = None,
        logger: Any | None = None,
    ) -> None:
        self._root = Path(root).expanduser().resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._db = db if db is not None else StateDB(self._root / STATE_DB_FILENAME)
        self._db.migrate()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def db(self) -> StateDB:
        return self._db

    # -- paths -----------------------------------------------------------

    def run_dir(self, run_id: str) -> Path:
        return self._root / RUNS_DIRNAME / run_id

    def log_path(self, run_id: str, stage_id: str, stream: str) -> Path:
        if stream not in _LOG_STREAMS:
            raise ValueError(f"unknown log stream {stream!r}")
        return self.run_dir(run_id) / "logs" / f"{_stage_slug(stage_id)}.{stream}.log"

    def env_file_path(self, run_id: str, stage_id: str, attempt: int) -> Path:
        return self.run_dir(run_id) / "env" / f"{_stage_slug(stage_id)}.{attempt}.env"

    def archive_dir(self, run_id: str, stage_id: str) -> Path:
        return self.run_dir(run_id) / "artifacts" / _stage_slug(stage_id)

    def ref_for(self, path: Path) -> str:
        """Store-relative reference persisted in place of absolute paths."""
        return path.resolve().relative_to(self._root).as_posix()

    def resolve_ref(self, ref: str) -> Path:
        resolved = (self._root / ref).resolve()
        resolved.relative_to(self._root)
        return resolved

    # -- writes ----------------------------------------------------------

    def create_run(self, record: RunRecord, *, workspace: Path) -> None:
        """Insert the run row and a Pending row for every stage, atomically."""
        context = record.context
        with self._db.transaction() as tx:
            self._db.execute(
                """
                INSERT INTO runs (
                    id, pipeline_name, pipeline_digest, source, status, branch, commit_sha,
                    workspace, context_json, started_at, finished_at, owner_host, owner_pid
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
                """,
                (
                    record.run_id,
                    record.pipeline.name,
                    record.pipeline.digest,
                    record.pipeline.source,
                    record.status.value,
                    context.branch,
                    context.commit,
                    str(workspace),
                    canonical_json(
                        {
                            "variables": dict(context.variables),
                            "credential_handles": sorted(context.credentials),
                        }
                    ),
                    _iso(record.started_at),
                    socket.gethostname(),
                    os.getpid(),
                ),
                conn=tx,
            )
            for position, result in enumerate(record.results.values()):
                self._upsert_stage(record.run_id, result, position=position, conn=tx)
        for sub in ("logs", "env"):
            (self.run_dir(record.run_id) / sub).mkdir(parents=True, exist_ok=True)
        self._logger.debug("run_created", run_id=record.run_id, stages=len(record.results))

    def update_run(self, record: RunRecord) -> None:
        self._db.execute(
            "UPDATE runs SET status = ?, finished_at = ? WHERE id = ?",
            (
                record.status.value,
                _iso(record.finished_at) if record.finished_at else None,
                record.run_id,
            ),
        )

    def save_stage_result(self, run_id: str, result: StageResult) -> None:
        self._upsert_stage(run_id, result, position=None)

    def save_artifact(self, artifact: Artifact) -> None:
        self._db.execute(
            """
            INSERT INTO artifacts (
                id, run_id, stage_id, kind, source_path, location, size_bytes, sha256, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                artifact.artifact_id,
                artifact.run_id,
                artifact.stage_id,
                artifact.kind.value,
                artifact.source_path,
                artifact.location,
                artifact.size_bytes,
                artifact.sha256,
                _iso(artifact.created_at),
            ),
        )

    def save_overlay_entry(
        self, run_id: str, *, sequence: int, key: str, value: str, stage_id: str
    ) -> None:
        self._db.execute(
            """
            INSERT INTO overlay_entries (run_id, sequence, key, value, stage_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (run_id, sequence, key, value, stage_id, _iso(utc_now())),
        )

    def save_hook_result(self, run_id: str, position: int, result: HookResult) -> None:
        self._db.execute(
            """
            INSERT OR REPLACE INTO hook_results (
                run_id, position, phase, name, kind, ok, exit_code, message, started_at, finished_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                position,
                result.phase.value,
                result.name,
                result.kind.value,
                int(result.ok),
                result.exit_code,
                result.message,
                _iso(result.started_at),
                _iso(result.finished_at),
            ),
        )

    # -- reads -----------------------------------------------------------

    def load_run(self, run_id: str) -> RunSnapshot | None:
        row = self._db.query_one("SELECT * FROM runs WHERE id = ?", (run_id,))
        if row is None:
            return None
        stages = self._db.query_all(
            "SELECT * FROM stage_results WHERE run_id = ? ORDER BY position", (run_id,)
        )
        overlay = self._db.query_all(
            "SELECT * FROM overlay_entries WHERE run_id = ? ORDER BY sequence", (run_id,)
        )
        hooks = self._db.query_all(
            "SELECT * FROM hook_results WHERE run_id = ? ORDER BY position", (run_id,)
        )
        return RunSnapshot(
            summary=_summary_from_row(row),
            stages=tuple(_stage_from_row(item) for item in stages),
            artifacts=tuple(self.list_artifacts(run_id)),
            overlay=tuple(
                OverlayRecord(
                    sequence=int(_int(item["sequence"])),
                    key=_text(item["key"]),
                    value=_text(item["value"]),
                    stage_id=_text(item["stage_id"]),
                )
                for item in overlay
            ),
            hooks=tuple(_hook_from_row(item) for item in hooks),
        )

    def list_runs(self, *, limit: int = 20, status: RunStatus | None = None) -> list[RunSummary]:
        if limit <= 0 or limit > _MAX_LIST_LIMIT:
            raise ValueError(f"limit must be in [1, {_MAX_LIST_LIMIT}]")
        sql = "SELECT * FROM runs"
        params: list[RowValue] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status.value)
        sql += " ORDER BY started_at DESC, id DESC LIMIT ?"
        params.append(limit)
        return [_summary_from_row(row) for row in self._db.query_all(sql, params)]

    def latest_run_id(self) -> str | None:
        runs = self.list_runs(limit=1)
        return runs[0].run_id if runs else None

    def list_artifacts(self, run_id: str, *, stage_id: str | None = None) -> list[Artifact]:
        sql = "SELECT * FROM artifacts WHERE run_id = ?"
        params: list[RowValue] = [run_id]
        if stage_id is not None:
            sql += " AND stage_id = ?"
            params.append(stage_id)
        sql += " ORDER BY created_at, id"
        return [_artifact_from_row(row) for row in self._db.query_all(sql, params)]

    def read_log(
        self,
        run_id: str,
        stage_id: str,
        stream: str = "stdout",
        *,
        offset: int = 0,
    ) -> tuple[str, int]:
        """Return text appended since ``offset`` and the new offset."""
        path = self.log_path(run_id, stage_id, stream)
        if not path.exists():
            return "", offset
        with path.open("rb") as handle:
            handle.seek(offset)
            data = handle.read()
        return data.decode("utf-8", errors="replace"), offset + len(data)

    # -- recovery --------------------------------------------------------

    def reconcile_interrupted(
        self,
        *,
        host: str | None = None,
        is_alive: Callable[[int], bool] | None = None,
    ) -> list[str]:
        """Mark runs left ``running`` by a dead process on this host as aborted."""
        current_host = host or socket.gethostname()
        alive = is_alive or _pid_alive
        rows = self._db.query_all(
            "SELECT id, owner_host, owner_pid FROM runs WHERE status = ?",
            (RunStatus.RUNNING.value,),
        )
        reconciled: list[str] = []
        now = _iso(utc_now())
        for row in rows:
            pid = row["owner_pid"]
            if row["owner_host"] != current_host or not isinstance(pid, int) or alive(pid):
                continue
            run_id = _text(row["id"])
            with self._db.transaction() as tx:
                self._db.execute(
                    "UPDATE runs SET status = ?, finished_at = ? WHERE id = ?",
                    (RunStatus.ABORTED.value, now, run_id),
                    conn=tx,
                )
                self._db.execute(
                    """
                    UPDATE stage_results
                    SET status = ?, finished_at = ?, message = ?, updated_at = ?
                    WHERE run_id = ? AND status IN (?, ?)
                    """,
                    (
                        StageStatus.ABORTED.value,
                        now,
                        _INTERRUPTED_MESSAGE,
                        now,
                        run_id,
                        StageStatus.PENDING.value,
                        StageStatus.RUNNING.value,
                    ),
                    conn=tx,
                )
            reconciled.append(run_id)
            self._logger.warning("run_reconciled_as_aborted", run_id=run_id, owner_pid=pid)
        return reconciled

    def _upsert_stage(
        self,
        run_id: str,
        result: StageResult,
        *,
        position: int | None,
        conn: Any | None = None,
    ) -> None:
        values: Sequence[RowValue] = (
            run_id,
            result.stage_id,
            position if position is not None else 0,
            result.kind.value,
            result.status.value,
            _iso(result.started_at) if result.started_at else None,
            _iso(result.finished_at) if result.finished_at else None,
            result.exit_code,
            result.stdout_ref,
            result.stderr_ref,
            int(result.timed_out),
            int(result.failure_ignored),
            result.skip_reason.value if result.skip_reason else None,
            result.attempts,
            result.message,
            _iso(utc_now()),
        )
        self._db.execute(
            """
            INSERT INTO stage_results (
                run_id, stage_id, position, kind, status, started_at, finished_at, exit_code,
                stdout_ref, stderr_ref, timed_out, failure_ignored, skip_reason, attempts,
                message, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (run_id, stage_id) DO UPDATE SET
                status = excluded.status,
                started_at = excluded.started_at,
                finished_at = excluded.finished_at,
                exit_code = excluded.exit_code,
                stdout_ref = excluded.stdout_ref,
                stderr_ref = excluded.stderr_ref,
                timed_out = excluded.timed_out,
                failure_ignored = excluded.failure_ignored,
                skip_reason = excluded.skip_reason,
                attempts = excluded.attempts,
                message = excluded.message,
                updated_at = excluded.updated_at
            """,
            values,
            conn=conn,
        )


def _stage_slug(stage_id: str) -> str:
    return f"{slugify(stage_id)}-{sha256_text(stage_id)[:8]}"


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _parse_dt(value: RowValue) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(_text(value))


def _text(value: RowValue) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _int(value: RowValue) -> int | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return int(_text(value))


def _optional_text(value: RowValue) -> str | None:
    return None if value is None else _text(value)


def _summary_from_row(row: dict[str, RowValue]) -> RunSummary:
    started = _parse_dt(row["started_at"])
    if started is None:
        raise ValueError(f"run {row['id']!r} has no started_at")
    return RunSummary(
        run_id=_text(row["id"]),
        pipeline_name=_text(row["pipeline_name"]),
        pipeline_digest=_text(row["pipeline_digest"]),
        status=RunStatus(_text(row["status"])),
        branch=_text(row["branch"]),
        commit=_optional_text(row["commit_sha"]),
        workspace=_text(row["workspace"]),
        source=_optional_text(row["source"]),
        started_at=started,
        finished_at=_parse_dt(row["finished_at"]),
        owner_host=_optional_text(row.get("owner_host")),
        owner_pid=_int(row.get("owner_pid")),
    )


def _stage_from_row(row: dict[str, RowValue]) -> StageResult:
    skip_reason = row["skip_reason"]
    return StageResult(
        stage_id=_text(row["stage_id"]),
        kind=StageKind(_text(row["kind"])),
        status=StageStatus(_text(row["status"])),
        started_at=_parse_dt(row["started_at"]),
        finished_at=_parse_dt(row["finished_at"]),
        exit_code=_int(row["exit_code"]),
        stdout_ref=_optional_text(row["stdout_ref"]),
        stderr_ref=_optional_text(row["stderr_ref"]),
        timed_out=bool(row["timed_out"]),
        failure_ignored=bool(row["failure_ignored"]),
        skip_reason=SkipReason(_text(skip_reason)) if skip_reason is not None else None,
        attempts=_int(row["attempts"]) or 0,
        message=_optional_text(row["message"]),
    )


def _artifact_from_row(row: dict[str, RowValue]) -> Artifact:
    created = _parse_dt(row["created_at"])
    if created is None:
        raise ValueError(f"artifact {row['id']!r} has no created_at")
    return Artifact(
        artifact_id=_text(row["id"]),
        run_id=_text(row["run_id"]),
        stage_id=_text(row["stage_id"]),
        kind=ArtifactKind(_text(row["kind"])),
        source_path=_text(row["source_path"]),
        location=_text(row["location"]),
        size_bytes=_int(row["size_bytes"]) or 0,
        sha256=_text(row["sha256"]),
        created_at=created,
    )


def _hook_from_row(row: dict[str, RowValue]) -> HookResult:
    started = _parse_dt(row["started_at"])
    finished = _parse_dt(row["finished_at"])
    if started is None or finished is None:
        raise ValueError("hook result rows require timestamps")
    return HookResult(
        phase=HookPhase(_text(row["phase"])),
        name=_text(row["name"]),
        kind=HookActionKind(_text(row["kind"])),
        ok=bool(row["ok"]),
        started_at=started,
        finished_at=finished,
        exit_code=_int(row["exit_code"]),
        message=_optional_text(row["message"]),
    )


__all__ = ["OverlayRecord", "RunSnapshot", "RunStateStore", "RunSummary"]
