"""
stageflow - unit tests for the run state store

File: tests/unit/persistence/test_store.py

Purpose
- Validate run creation, stage upserts, snapshots, listing, log tailing,
  and recovery of runs whose owner process died.
"""

from __future__ import annotations

import textwrap
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from stageflow.domain.models import (
    HookActionKind,
    HookPhase,
    HookResult,
    RunContext,
    RunRecord,
    RunStatus,
    SkipReason,
    StageResult,
    StageStatus,
)
from stageflow.persistence.store import RunStateStore
from stageflow.planning.builder import parse_pipeline

pytestmark = pytest.mark.unit

_T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _record(run_id: str, *, started_at: datetime = _T0) -> RunRecord:
    pipeline = parse_pipeline(
        textwrap.dedent(
            """
            name: ci
            stages:
              - {name: Lint, steps: ruff check .}
              - name: Test
                parallel:
                  - {name: Unit, steps: pytest}
            """
        )
    )
    return RunRecord(
        run_id=run_id,
        pipeline=pipeline,
        context=RunContext(
            branch="main",
            commit="abc123",
            run_id=run_id,
            variables={"DEPLOY": "no"},
            credentials={"registry": "CI_TOKEN"},
        ),
        results={
            node.id: StageResult(stage_id=node.id, kind=node.kind) for node in pipeline.walk()
        },
        started_at=started_at,
    )


def test_create_run_persists_pending_stage_rows_in_tree_order(
    state_store: RunStateStore, workspace: Path
) -> None:
    record = _record("run-a")

    state_store.create_run(record, workspace=workspace)
    snapshot = state_store.load_run("run-a")

    assert snapshot is not None
    assert snapshot.summary.pipeline_name == "ci"
    assert snapshot.summary.status is RunStatus.RUNNING
    assert snapshot.summary.commit == "abc123"
    assert snapshot.summary.workspace == str(workspace)
    assert [stage.stage_id for stage in snapshot.stages] == ["Lint", "Test", "Test/Unit"]
    assert {stage.status for stage in snapshot.stages} == {StageStatus.PENDING}
    assert (state_store.run_dir("run-a") / "logs").is_dir()


def test_stage_upserts_and_run_update_round_trip(
    state_store: RunStateStore, workspace: Path
) -> None:
    record = _record("run-b")
    state_store.create_run(record, workspace=workspace)

    running = record.results["Lint"].transition(StageStatus.RUNNING, at=_T0, attempts=0)
    failed = running.transition(
        StageStatus.FAILED,
        at=_T0 + timedelta(seconds=3),
        exit_code=2,
        attempts=1,
        failure_ignored=True,
        message="stage 'Lint' step 1 exited with 2",
    )
    skipped = record.results["Test/Unit"].transition(
        StageStatus.SKIPPED, at=_T0, skip_reason=SkipReason.FAIL_FAST
    )
    for result in (running, failed, skipped):
        state_store.save_stage_result("run-b", result)
    record.results.update({"Lint": failed, "Test/Unit": skipped})
    record.finalize(at=_T0 + timedelta(seconds=5))
    state_store.update_run(record)

    snapshot = state_store.load_run("run-b")

    assert snapshot is not None
    assert snapshot.summary.status is RunStatus.SUCCEEDED
    assert snapshot.summary.finished_at == _T0 + timedelta(seconds=5)
    lint = snapshot.stage("Lint")
    assert lint.status is StageStatus.FAILED
    assert lint.exit_code == 2
    assert lint.failure_ignored is True
    assert lint.duration_seconds == 3.0
    assert snapshot.stage("Test/Unit").skip_reason is SkipReason.FAIL_FAST
    with pytest.raises(KeyError):
        snapshot.stage("Nope")


def test_overlay_and_hook_results_are_ordered(
    state_store: RunStateStore, workspace: Path
) -> None:
    state_store.create_run(_record("run-c"), workspace=workspace)
    state_store.save_overlay_entry("run-c", sequence=2, key="B", value="2", stage_id="Test/Unit")
    state_store.save_overlay_entry("run-c", sequence=1, key="A", value="1", stage_id="Lint")
    hook = HookResult(
        phase=HookPhase.ALWAYS,
        name="docker logout",
        kind=HookActionKind.RUN,
        ok=False,
        started_at=_T0,
        finished_at=_T0,
        exit_code=1,
        message="exited with 1",
    )
    state_store.save_hook_result("run-c", 0, hook)

    snapshot = state_store.load_run("run-c")

    assert snapshot is not None
    assert [(item.sequence, item.key) for item in snapshot.overlay] == [(1, "A"), (2, "B")]
    assert snapshot.hooks == (hook,)


def test_list_runs_newest_first_with_status_filter(
    state_store: RunStateStore, workspace: Path
) -> None:
    for index, run_id in enumerate(("run-1", "run-2", "run-3")):
        record = _record(run_id, started_at=_T0 + timedelta(minutes=index))
        state_store.create_run(record, workspace=workspace)
    finished = _record("run-2", started_at=_T0 + timedelta(minutes=1))
    finished.finalize(at=_T0 + timedelta(minutes=2))
    state_store.update_run(finished)

    assert [run.run_id for run in state_store.list_runs()] == ["run-3", "run-2", "run-1"]
    assert [run.run_id for run in state_store.list_runs(limit=1)] == ["run-3"]
    assert [run.run_id for run in state_store.list_runs(status=RunStatus.SUCCEEDED)] == ["run-2"]
    assert state_store.latest_run_id() == "run-3"
    with pytest.raises(ValueError):
        state_store.list_runs(limit=0)


def test_load_unknown_run_returns_none(state_store: RunStateStore) -> None:
    assert state_store.load_run("missing") is None
    assert state_store.latest_run_id() is None


def test_read_log_tails_by_offset(state_store: RunStateStore) -> None:
    path = state_store.log_path("run-log", "Build/Compile", "stdout")
    path.parent.mkdir(parents=True)
    path.write_text("one\n", encoding="utf-8")

    first, offset = state_store.read_log("run-log", "Build/Compile")
    with path.open("a", encoding="utf-8") as handle:
        handle.write("two\n")
    second, final = state_store.read_log("run-log", "Build/Compile", offset=offset)

    assert (first, second) == ("one\n", "two\n")
    assert final == len("one\ntwo\n")
    assert state_store.read_log("run-log", "Other") == ("", 0)
    with pytest.raises(ValueError):
        state_store.log_path("run-log", "Build", "stdin")


def test_similar_stage_ids_get_distinct_log_files(state_store: RunStateStore) -> None:
    first = state_store.log_path("run-x", "Build/Unit", "stdout")
    second = state_store.log_path("run-x", "Build-Unit", "stdout")

    assert first != second
    assert state_store.resolve_ref(state_store.ref_for(first)) == first.resolve()


def test_resolve_ref_rejects_escapes(state_store: RunStateStore) -> None:
    with pytest.raises(ValueError):
        state_store.resolve_ref("../../etc/passwd")


def test_reconcile_marks_runs_of_dead_owners_aborted(
    state_store: RunStateStore, workspace: Path
) -> None:
    record = _record("run-dead")
    state_store.create_run(record, workspace=workspace)
    running = record.results["Lint"].transition(StageStatus.RUNNING)
    state_store.save_stage_result("run-dead", running)

    assert state_store.reconcile_interrupted(is_alive=lambda pid: True) == []
    reconciled = state_store.reconcile_interrupted(is_alive=lambda pid: False)

    assert reconciled == ["run-dead"]
    snapshot = state_store.load_run("run-dead")
    assert snapshot is not None
    assert snapshot.summary.status is RunStatus.ABORTED
    assert {stage.status for stage in snapshot.stages} == {StageStatus.ABORTED}
    assert state_store.reconcile_interrupted(is_alive=lambda pid: False) == []


def test_reconcile_ignores_runs_owned_by_other_hosts(
    state_store: RunStateStore, workspace: Path
) -> None:
    state_store.create_run(_record("run-remote"), workspace=workspace)

    assert state_store.reconcile_interrupted(host="elsewhere", is_alive=lambda pid: False) == []
