"""
stageflow - unit tests for the executor core

File: tests/unit/execution/test_executor.py

Purpose
- Exercise scheduling, fail-fast, condition skips, continue-on-error,
  timeouts, retries, cancellation, overlay visibility, and persistence
  against a real ``/bin/sh``.
"""

from __future__ import annotations

import asyncio
import os
import textwrap
import time
from pathlib import Path

import pytest

from stageflow.constants import TIMEOUT_EXIT_CODE
from stageflow.domain.events import EventType, PipelineEvent
from stageflow.domain.models import (
    RunContext,
    RunRecord,
    RunStatus,
    SkipReason,
    StageStatus,
)
from stageflow.execution.executor import Executor, ExecutorOptions
from stageflow.execution.process_runner import ProcessRunner
from stageflow.observability.events import EventBus
from stageflow.persistence.store import RunStateStore
from stageflow.planning.builder import parse_pipeline
from stageflow.utils.concurrency import CancellationToken

pytestmark = pytest.mark.unit


def _executor(
    text: str,
    store: RunStateStore,
    workspace: Path,
    **kwargs: object,
) -> Executor:
    pipeline = parse_pipeline(textwrap.dedent(text))
    return Executor(
        pipeline,
        store=store,
        workspace=workspace,
        runner=ProcessRunner(kill_grace_seconds=1.0),
        **kwargs,  # type: ignore[arg-type]
    )


async def _run(
    text: str,
    store: RunStateStore,
    workspace: Path,
    *,
    branch: str = "main",
    **kwargs: object,
) -> RunRecord:
    return await _executor(text, store, workspace, **kwargs).run(RunContext(branch=branch))


def _statuses(record: RunRecord) -> dict[str, StageStatus]:
    return {stage_id: result.status for stage_id, result in record.results.items()}


async def test_sequential_failure_skips_remaining_stages(
    state_store: RunStateStore, workspace: Path
) -> None:
    record = await _run(
        """
        stages:
          - {name: A, steps: touch a}
          - {name: B, steps: exit 1}
          - {name: C, steps: touch c}
        """,
        state_store,
        workspace,
    )

    assert record.status is RunStatus.FAILED
    assert _statuses(record) == {
        "A": StageStatus.SUCCEEDED,
        "B": StageStatus.FAILED,
        "C": StageStatus.SKIPPED,
    }
    assert record.results["B"].exit_code == 1
    assert record.results["C"].skip_reason is SkipReason.FAIL_FAST
    assert (workspace / "a").exists()
    assert not (workspace / "c").exists()
    assert record.failed_stage_ids() == ["B"]


async def test_parallel_children_overlap_and_join(
    state_store: RunStateStore, workspace: Path
) -> None:
    record = await _run(
        """
        stages:
          - name: Checks
            parallel:
              - {name: X, steps: "sleep 0.3; touch x"}
              - {name: Y, steps: "sleep 0.3; touch y"}
          - {name: After, steps: "test -f x && test -f y"}
        """,
        state_store,
        workspace,
    )

    assert record.status is RunStatus.SUCCEEDED
    assert set(_statuses(record).values()) == {StageStatus.SUCCEEDED}
    x, y = record.results["Checks/X"], record.results["Checks/Y"]
    assert x.started_at is not None and y.started_at is not None
    assert x.finished_at is not None and y.finished_at is not None
    assert x.started_at < y.finished_at and y.started_at < x.finished_at
    after = record.results["After"]
    assert after.started_at is not None
    assert after.started_at >= max(x.finished_at, y.finished_at)


async def test_false_condition_skips_without_spawning(
    state_store: RunStateStore, workspace: Path
) -> None:
    record = await _run(
        """
        stages:
          - name: BuildImage
            when: "branch == 'main'"
            sequential:
              - {name: Build, steps: touch built}
              - {name: Push, steps: touch pushed}
        """,
        state_store,
        workspace,
        branch="feature/x",
    )

    assert record.status is RunStatus.SUCCEEDED
    for stage_id in ("BuildImage", "BuildImage/Build", "BuildImage/Push"):
        assert record.results[stage_id].status is StageStatus.SKIPPED
        assert record.results[stage_id].skip_reason is SkipReason.CONDITION
        assert record.results[stage_id].attempts == 0
    assert not (workspace / "built").exists()
    assert not state_store.log_path(record.run_id, "BuildImage/Build", "stdout").exists()


async def test_feature_branch_run_ignores_scan_failure_and_skips_image(
    state_store: RunStateStore, workspace: Path
) -> None:
    record = await _run(
        """
        name: service
        stages:
          - {name: Lint, steps: echo lint}
          - name: Test
            parallel:
              - {name: Unit, steps: echo unit}
              - {name: Integration, steps: echo integration}
          - name: SecurityScan
            steps: "echo findings >&2; exit 2"
            continue-on-error: true
          - name: BuildImage
            when: {branch: main}
            steps: touch image
        """,
        state_store,
        workspace,
        branch="feature/x",
    )

    assert record.status is RunStatus.SUCCEEDED
    scan = record.results["SecurityScan"]
    assert scan.status is StageStatus.FAILED
    assert scan.failure_ignored is True
    assert scan.exit_code == 2
    assert record.results["Test"].status is StageStatus.SUCCEEDED
    assert record.results["BuildImage"].skip_reason is SkipReason.CONDITION
    assert not (workspace / "image").exists()


async def test_timeout_fails_stage_with_timeout_exit_code(
    state_store: RunStateStore, workspace: Path
) -> None:
    started = time.monotonic()
    record = await _run(
        """
        stages:
          - {name: Slow, steps: sleep 30, timeout: 1}
          - {name: Next, steps: touch next}
        """,
        state_store,
        workspace,
    )

    slow = record.results["Slow"]
    assert record.status is RunStatus.FAILED
    assert slow.status is StageStatus.FAILED
    assert slow.timed_out is True
    assert slow.exit_code == TIMEOUT_EXIT_CODE
    assert "timed out" in (slow.message or "")
    assert record.results["Next"].skip_reason is SkipReason.FAIL_FAST
    assert time.monotonic() - started < 15


async def test_retry_reruns_until_success(state_store: RunStateStore, workspace: Path) -> None:
    record = await _run(
        """
        stages:
          - name: Flaky
            retry: 3
            steps: >-
              n=$(cat count 2>/dev/null || echo 0); n=$((n+1)); echo $n > count;
              test $n -ge 2
        """,
        state_store,
        workspace,
    )

    flaky = record.results["Flaky"]
    assert flaky.status is StageStatus.SUCCEEDED
    assert flaky.attempts == 2
    assert (workspace / "count").read_text(encoding="utf-8").strip() == "2"


async def test_retry_exhaustion_reports_last_exit_code(
    state_store: RunStateStore, workspace: Path
) -> None:
    record = await _run(
        "stages:\n  - {name: Broken, retry: 2, steps: ['true', 'exit 5']}\n",
        state_store,
        workspace,
    )

    broken = record.results["Broken"]
    assert broken.status is StageStatus.FAILED
    assert broken.attempts == 2
    assert broken.exit_code == 5
    assert "step 2" in (broken.message or "")


async def test_cancellation_aborts_running_and_pending_stages(
    state_store: RunStateStore, workspace: Path
) -> None:
    executor = _executor(
        """
        stages:
          - {name: Long, steps: sleep 30}
          - {name: Later, steps: touch later}
        """,
        state_store,
        workspace,
    )
    token = CancellationToken()

    async def cancel_soon() -> None:
        await asyncio.sleep(0.3)
        token.cancel("test abort")

    canceller = asyncio.create_task(cancel_soon())
    record = await executor.run(RunContext(branch="main"), cancel_token=token)
    await canceller

    assert record.status is RunStatus.ABORTED
    assert _statuses(record) == {"Long": StageStatus.ABORTED, "Later": StageStatus.ABORTED}
    assert not (workspace / "later").exists()


async def test_overlay_is_isolated_between_parallel_siblings(
    state_store: RunStateStore, workspace: Path
) -> None:
    record = await _run(
        """
        stages:
          - {name: Prepare, steps: 'echo VERSION=1.0 >> "$STAGEFLOW_ENV"'}
          - name: Fan
            parallel:
              - {name: Publisher, steps: 'echo IMAGE=app:1.0 >> "$STAGEFLOW_ENV"'}
              - name: Reader
                steps: 'sleep 0.5; echo "${VERSION}:${IMAGE:-unset}" > seen.txt'
          - {name: After, steps: 'echo "$IMAGE" > after.txt'}
        """,
        state_store,
        workspace,
    )

    assert record.status is RunStatus.SUCCEEDED
    assert (workspace / "seen.txt").read_text(encoding="utf-8").strip() == "1.0:unset"
    assert (workspace / "after.txt").read_text(encoding="utf-8").strip() == "app:1.0"
    assert dict(record.context.overlay) == {"VERSION": "1.0", "IMAGE": "app:1.0"}
    snapshot = state_store.load_run(record.run_id)
    assert snapshot is not None
    assert [(entry.key, entry.stage_id) for entry in snapshot.overlay] == [
        ("VERSION", "Prepare"),
        ("IMAGE", "Fan/Publisher"),
    ]


async def test_condition_sees_published_overlay(
    state_store: RunStateStore, workspace: Path
) -> None:
    record = await _run(
        """
        stages:
          - {name: Detect, steps: 'echo DEPLOY=yes >> "$STAGEFLOW_ENV"'}
          - name: Deploy
            when: "environment['DEPLOY'] == 'yes'"
            steps: touch deployed
        """,
        state_store,
        workspace,
        branch="feature/x",
    )

    assert record.results["Deploy"].status is StageStatus.SUCCEEDED
    assert (workspace / "deployed").exists()


async def test_max_workers_serializes_parallel_children(
    state_store: RunStateStore, workspace: Path
) -> None:
    record = await _run(
        """
        stages:
          - name: Fan
            parallel:
              - {name: One, steps: sleep 0.2}
              - {name: Two, steps: sleep 0.2}
        """,
        state_store,
        workspace,
        options=ExecutorOptions(max_workers=1),
    )

    first, second = sorted(
        (record.results["Fan/One"], record.results["Fan/Two"]),
        key=lambda result: str(result.started_at),
    )
    assert first.finished_at is not None and second.started_at is not None
    assert first.finished_at <= second.started_at


async def test_continue_on_error_composite_lets_siblings_run(
    state_store: RunStateStore, workspace: Path
) -> None:
    record = await _run(
        """
        stages:
          - name: Optional
            continue-on-error: true
            sequential:
              - {name: Try, steps: exit 3}
              - {name: Cleanup, steps: touch cleaned}
          - {name: Final, steps: touch final}
        """,
        state_store,
        workspace,
    )

    assert record.status is RunStatus.SUCCEEDED
    assert record.results["Optional/Try"].failure_ignored is True
    assert record.results["Optional"].status is StageStatus.FAILED
    assert record.results["Optional"].failure_ignored is True
    assert (workspace / "cleaned").exists()
    assert (workspace / "final").exists()


async def test_parallel_failure_skips_queued_siblings(
    state_store: RunStateStore, workspace: Path
) -> None:
    record = await _run(
        """
        stages:
          - name: Fan
            parallel:
              - {name: Bad, steps: exit 1}
              - {name: Queued, steps: touch queued}
        """,
        state_store,
        workspace,
        options=ExecutorOptions(max_workers=1),
    )

    assert record.status is RunStatus.FAILED
    assert record.results["Fan"].status is StageStatus.FAILED
    assert record.results["Fan/Queued"].skip_reason is SkipReason.FAIL_FAST
    assert not (workspace / "queued").exists()


async def test_credentials_are_injected_and_masked(
    state_store: RunStateStore, workspace: Path
) -> None:
    executor = _executor(
        """
        stages:
          - name: Push
            credentials: {REGISTRY_TOKEN: registry}
            steps: 'echo "token is $REGISTRY_TOKEN"'
        """,
        state_store,
        workspace,
        options=ExecutorOptions(
            host_environ={"PATH": os.environ.get("PATH", "/bin"), "CI_TOKEN": "sup3r-secret"}
        ),
    )

    record = await executor.run(
        RunContext(branch="main", credentials={"registry": "CI_TOKEN"})
    )

    assert record.status is RunStatus.SUCCEEDED
    text, _ = state_store.read_log(record.run_id, "Push")
    assert "token is ****" in text
    assert "sup3r-secret" not in text


async def test_missing_credential_fails_without_spawning(
    state_store: RunStateStore, workspace: Path
) -> None:
    executor = _executor(
        """
        stages:
          - name: Push
            credentials: {REGISTRY_TOKEN: registry}
            steps: touch pushed
        """,
        state_store,
        workspace,
        options=ExecutorOptions(host_environ={"PATH": "/usr/bin:/bin"}),
    )

    record = await executor.run(RunContext(branch="main", credentials={"registry": "CI_TOKEN"}))

    push = record.results["Push"]
    assert push.status is StageStatus.FAILED
    assert push.attempts == 0
    assert not (workspace / "pushed").exists()
    stderr, _ = state_store.read_log(record.run_id, "Push", "stderr")
    assert "CI_TOKEN is unset" in stderr


async def test_events_and_store_track_the_run(
    state_store: RunStateStore, workspace: Path
) -> None:
    bus = EventBus()
    events: list[PipelineEvent] = []
    bus.subscribe(None, events.append)

    record = await _run(
        "stages:\n  - {name: Hello, steps: echo hello}\n",
        state_store,
        workspace,
        event_bus=bus,
    )

    kinds = [event.event_type for event in events]
    assert kinds[0] is EventType.RUN_STARTED
    assert kinds[-1] is EventType.RUN_FINISHED
    assert any(
        event.event_type is EventType.STAGE_OUTPUT and event.payload["line"] == "hello"
        for event in events
    )
    transitions = [
        event.payload["status"]
        for event in events
        if event.event_type is EventType.STAGE_TRANSITION
    ]
    assert transitions == ["running", "succeeded"]

    snapshot = state_store.load_run(record.run_id)
    assert snapshot is not None
    assert snapshot.summary.status is RunStatus.SUCCEEDED
    assert snapshot.stage("Hello").status is StageStatus.SUCCEEDED
    assert snapshot.stage("Hello").stdout_ref is not None


async def test_executor_rejects_concurrent_runs(
    state_store: RunStateStore, workspace: Path
) -> None:
    executor = _executor("stages:\n  - {name: Wait, steps: sleep 0.3}\n", state_store, workspace)

    first = asyncio.create_task(executor.run(RunContext(branch="main")))
    await asyncio.sleep(0.05)
    with pytest.raises(RuntimeError):
        await executor.run(RunContext(branch="main"))
    assert (await first).status is RunStatus.SUCCEEDED


def test_options_from_config_treats_zero_as_unset() -> None:
    options = ExecutorOptions.from_config(
        {"executor": {"max_workers": 0, "default_timeout_seconds": 0, "inherit_host_env": True}}
    )

    assert options.max_workers is None
    assert options.default_timeout_seconds is None
    assert options.inherit_host_env is True
    assert ExecutorOptions.from_config({}, max_workers=3).max_workers == 3
