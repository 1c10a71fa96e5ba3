"""
stageflow - executor core

File: src/stageflow/execution/executor.py

Purpose
- Drive one run of a PipelineDefinition: activate stages in the order their
  composites declare, dispatch ready leaves to worker tasks, and fold their
  outcomes into the RunRecord.

Scheduling
- The top level is an implicit sequential root.
- ``when`` is evaluated when a node is activated. False skips the whole
  subtree without spawning anything.
- Parallel composites activate every child at once; sequential composites
  activate the next child only after the previous one settled.
- Ready leaves are started while fewer than ``max_workers`` are in flight
  (unbounded when unset).

State ownership
- Workers never touch the RunRecord. They put a completion on a queue, and
  the coordinator loop applies every transition, persisting each one.

Failure handling
- A failed leaf whose failure is not ignored halts the run: nothing new is
  dispatched, queued leaves become Skipped (fail_fast), in-flight leaves
  drain.
- A failure is ignored when the stage or an ancestor is continue_on_error.
- In a sequential composite a failed child skips its remaining siblings
  unless the child or the composite is continue_on_error.
- Cancellation aborts queued and not-yet-activated stages and terminates
  running processes.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from stageflow.constants import TIMEOUT_EXIT_CODE
from stageflow.domain.errors import (
    AbortSignal,
    CredentialError,
    StageExecutionFailure,
    TimeoutFailure,
)
from stageflow.domain.events import EventType, JSONValue, PipelineEvent
from stageflow.domain.ids import generate_run_id
from stageflow.domain.models import (
    ExecutionOutcome,
    RunRecord,
    SkipReason,
    StageKind,
    StageResult,
    StageStatus,
)
from stageflow.execution.environment import (
    EnvCredentialResolver,
    EnvironmentOverlay,
    bind_credentials,
    compose_environment,
    host_environment,
    read_published,
)
from stageflow.execution.process_runner import LineCallback, ProcessRunner
from stageflow.observability.logging import correlation_scope, register_secret_values
from stageflow.planning.conditions import evaluate
from stageflow.utils.concurrency import CancellationToken
from stageflow.utils.fs import resolve_within

if TYPE_CHECKING:
    from stageflow.artifacts.collector import ArtifactCollector
    from stageflow.artifacts.sinks import ReportSink
    from stageflow.domain.models import PipelineDefinition, RunContext, StageNode
    from stageflow.execution.environment import CredentialResolver
    from stageflow.hooks.dispatcher import PostActionDispatcher
    from stageflow.observability.events import EventBus
    from stageflow.persistence.store import RunStateStore

_MIN_STEP_TIMEOUT_SECONDS: Final[float] = 0.01


@dataclass(frozen=True, slots=True)
class ExecutorOptions:
    """Run-wide knobs; unset values fall back to the pipeline's own options."""

    max_workers: int | None = None
    default_timeout_seconds: float | None = None
    inherit_host_env: bool = False
    host_environ: Mapping[str, str] | None = None

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        max_workers: int | None = None,
    ) -> ExecutorOptions:
        executor = config.get("executor", {})
        workers = max_workers if max_workers is not None else executor.get("max_workers")
        timeout = executor.get("default_timeout_seconds")
        return cls(
            max_workers=workers or None,
            default_timeout_seconds=timeout or None,
            inherit_host_env=bool(executor.get("inherit_host_env", False)),
        )


@dataclass(slots=True)
class _Completion:
    stage_id: str
    attempts: int
    outcome: ExecutionOutcome | None = None
    error: Exception | None = None
    published: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class _RunState:
    record: RunRecord
    token: CancellationToken
    overlay: EnvironmentOverlay
    credentials: CredentialResolver
    completions: asyncio.Queue[_Completion] = field(default_factory=asyncio.Queue)
    ready: deque[StageNode] = field(default_factory=deque)
    in_flight: dict[str, asyncio.Task[None]] = field(default_factory=dict)
    halted: bool = False
    aborted: bool = False


class Executor:
    """Runs a pipeline definition against a workspace and a run state store."""

    def __init__(
        self,
        pipeline: PipelineDefinition,
        *,
        store: RunStateStore,
        workspace: Path,
        runner: ProcessRunner | None = None,
        options: ExecutorOptions | None = None,
        collector: ArtifactCollector | None = None,
        sinks: Sequence[ReportSink] = (),
        dispatcher: PostActionDispatcher | None = None,
        credential_resolver: CredentialResolver | None = None,
        event_bus: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._store = store
        self._workspace = Path(workspace).resolve()
        self._runner = runner if runner is not None else ProcessRunner()
        self._options = options or ExecutorOptions()
        self._collector = collector
        self._sinks = tuple(sinks)
        self._dispatcher = dispatcher
        self._credential_resolver = credential_resolver
        self._event_bus = event_bus
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        self._index = pipeline.index()
        self._parents = pipeline.parents()
        self._ignorable = _failure_ignored_ids(pipeline.stages)
        self._host_env = host_environment(
            inherit=self._options.inherit_host_env, environ=self._options.host_environ
        )
        workers = self._options.max_workers or pipeline.max_workers
        self._max_workers = workers if workers and workers > 0 else None
        self._default_timeout = (
            pipeline.default_timeout_seconds or self._options.default_timeout_seconds or None
        )
        self._running = False

    @property
    def workspace(self) -> Path:
        return self._workspace

    async def run(
        self,
        context: RunContext,
        *,
        cancel_token: CancellationToken | None = None,
        run_id: str | None = None,
    ) -> RunRecord:
        """Execute the pipeline once and return the finalized run record.

        ``run_id`` lets callers set up per-run logging before the run starts.
        """

        if self._running:
            raise RuntimeError("executor is already running a pipeline")
        self._running = True
        try:
            return await self._run(
                context, cancel_token or CancellationToken(), run_id or generate_run_id()
            )
        finally:
            self._running = False

    async def _run(
        self, context: RunContext, token: CancellationToken, run_id: str
    ) -> RunRecord:
        bound = context.bind(run_id=run_id, pipeline_environment=self._pipeline.environment)
        record = RunRecord(
            run_id=run_id,
            pipeline=self._pipeline,
            context=bound,
            results={
                node.id: StageResult(stage_id=node.id, kind=node.kind)
                for node in self._pipeline.walk()
            },
        )
        self._workspace.mkdir(parents=True, exist_ok=True)
        self._store.create_run(record, workspace=self._workspace)

        state = _RunState(
            record=record,
            token=token,
            overlay=EnvironmentOverlay(
                {stage_id: node.kind for stage_id, node in self._index.items()},
                logger=self._logger,
            ),
            credentials=self._credential_resolver
            or EnvCredentialResolver(bound.credentials, environ=self._options.host_environ),
        )

        with correlation_scope(run_id=run_id):
            self._logger.info(
                "run_started",
                pipeline=self._pipeline.name,
                branch=bound.branch,
                stages=len(record.results),
                max_workers=self._max_workers,
            )
            self._publish(EventType.RUN_STARTED, run_id, {"pipeline": self._pipeline.name})
            started = time.monotonic()

            await self._drive(state)

            record.context = bound.with_overlay(state.overlay.as_dict())
            status = record.finalize(aborted=state.aborted)
            self._store.update_run(record)
            self._logger.info(
                "run_finished",
                status=status.value,
                failed_stages=record.failed_stage_ids(),
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )
            self._publish(EventType.RUN_FINISHED, run_id, {"status": status.value})
            await self._settle_run(record)
        return record

    # -- coordinator loop ------------------------------------------------

    async def _drive(self, state: _RunState) -> None:
        if self._pipeline.stages:
            self._activate(state, self._pipeline.stages[0])
        cancel_wait = asyncio.create_task(state.token.wait())
        try:
            while True:
                if state.token.is_cancelled and not state.aborted:
                    self._abort(state)
                self._dispatch_ready(state)
                if not state.in_flight:
                    break
                getter = asyncio.create_task(state.completions.get())
                waiters: set[asyncio.Task[Any]] = {getter}
                if not state.aborted:
                    waiters.add(cancel_wait)
                done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    self._on_completion(state, getter.result())
                else:
                    getter.cancel()
                    with suppress(asyncio.CancelledError):
                        await getter
        finally:
            cancel_wait.cancel()
            with suppress(asyncio.CancelledError):
                await cancel_wait

    def _activate(self, state: _RunState, node: StageNode) -> None:
        if state.aborted:
            self._close_subtree(state, node, StageStatus.ABORTED)
            self._settled(state, node)
            return
        if state.halted:
            self._close_subtree(state, node, StageStatus.SKIPPED, SkipReason.FAIL_FAST)
            self._settled(state, node)
            return
        if node.when is not None:
            visible = state.record.context.with_overlay(state.overlay.view_for(node.id))
            if not evaluate(node.when, visible):
                self._logger.info(
                    "stage_condition_false", stage_id=node.id, condition=node.when.describe()
                )
                self._close_subtree(state, node, StageStatus.SKIPPED, SkipReason.CONDITION)
                self._settled(state, node)
                return

        if node.is_leaf:
            state.ready.append(node)
        elif node.kind is StageKind.PARALLEL:
            for child in node.children:
                self._activate(state, child)
        else:
            self._activate(state, node.children[0])

    def _settled(self, state: _RunState, node: StageNode) -> None:
        """Advance the enclosing composite after ``node`` reached a terminal state."""
        parent_id = self._parents[node.id]
        if parent_id is None:
            siblings = self._pipeline.stages
            parent_continues = False
        else:
            if state.record.results[parent_id].status.is_terminal:
                return
            parent = self._index[parent_id]
            siblings = parent.children
            parent_continues = parent.continue_on_error
            if parent.kind is StageKind.PARALLEL:
                if all(state.record.results[c.id].status.is_terminal for c in siblings):
                    self._finish_composite(state, parent)
                return

        position = [sibling.id for sibling in siblings].index(node.id)
        remaining = siblings[position + 1 :]
        result = state.record.results[node.id]
        stops = (
            result.status is StageStatus.FAILED
            and not node.continue_on_error
            and not parent_continues
        )
        if remaining and not stops:
            self._activate(state, remaining[0])
            return
        if remaining:
            self._logger.info(
                "sequence_stopped", stage_id=node.id, skipped=[item.id for item in remaining]
            )
            for sibling in remaining:
                self._close_subtree(state, sibling, StageStatus.SKIPPED, SkipReason.FAIL_FAST)
        if parent_id is not None:
            self._finish_composite(state, self._index[parent_id])

    def _finish_composite(self, state: _RunState, node: StageNode) -> None:
        results = state.record.results
        children = [(child, results[child.id]) for child in node.children]
        if results[node.id].status is StageStatus.RUNNING:
            if any(
                result.status is StageStatus.FAILED and not child.continue_on_error
                for child, result in children
            ):
                self._transition(
                    state,
                    node.id,
                    StageStatus.FAILED,
                    failure_ignored=node.id in self._ignorable,
                )
            elif any(result.status is StageStatus.ABORTED for _, result in children):
                self._transition(state, node.id, StageStatus.ABORTED)
            else:
                self._transition(state, node.id, StageStatus.SUCCEEDED)
        elif any(result.status is StageStatus.ABORTED for _, result in children):
            self._transition(state, node.id, StageStatus.ABORTED)
        else:
            reason = (
                SkipReason.FAIL_FAST
                if any(result.skip_reason is SkipReason.FAIL_FAST for _, result in children)
                else SkipReason.CONDITION
            )
            self._transition(state, node.id, StageStatus.SKIPPED, skip_reason=reason)
        self._settled(state, node)

    def _close_subtree(
        self,
        state: _RunState,
        node: StageNode,
        status: StageStatus,
        reason: SkipReason | None = None,
    ) -> None:
        for item in node.walk():
            if state.record.results[item.id].status is not StageStatus.PENDING:
                continue
            if status is StageStatus.SKIPPED:
                self._transition(state, item.id, status, skip_reason=reason)
            else:
                self._transition(state, item.id, status)

    def _halt(self, state: _RunState, stage_id: str) -> None:
        if state.halted:
            return
        state.halted = True
        queued = list(state.ready)
        state.ready.clear()
        self._logger.warning(
            "fail_fast_triggered",
            stage_id=stage_id,
            in_flight=sorted(state.in_flight),
            skipped=[node.id for node in queued],
        )
        for node in queued:
            self._transition(state, node.id, StageStatus.SKIPPED, skip_reason=SkipReason.FAIL_FAST)
            self._settled(state, node)

    def _abort(self, state: _RunState) -> None:
        state.aborted = True
        queued = list(state.ready)
        state.ready.clear()
        self._logger.warning(
            "run_abort_requested",
            reason=state.token.reason,
            in_flight=sorted(state.in_flight),
        )
        for node in queued:
            self._transition(state, node.id, StageStatus.ABORTED)
            self._settled(state, node)

    # -- dispatch ----------------------------------------------------------

    def _dispatch_ready(self, state: _RunState) -> None:
        while state.ready and (
            self._max_workers is None or len(state.in_flight) < self._max_workers
        ):
            node = state.ready.popleft()
            self._mark_ancestors_running(state, node)
            run_id = state.record.run_id
            self._transition(
                state,
                node.id,
                StageStatus.RUNNING,
                stdout_ref=self._store.ref_for(self._store.log_path(run_id, node.id, "stdout")),
                stderr_ref=self._store.ref_for(self._store.log_path(run_id, node.id, "stderr")),
            )
            # Snapshot at dispatch: later publications are invisible to this stage.
            view = state.overlay.view_for(node.id)
            state.in_flight[node.id] = asyncio.create_task(
                self._worker(state, node, view), name=f"stageflow:{node.id}"
            )

    def _mark_ancestors_running(self, state: _RunState, node: StageNode) -> None:
        chain: list[str] = []
        parent_id = self._parents[node.id]
        while parent_id is not None:
            chain.append(parent_id)
            parent_id = self._parents[parent_id]
        for ancestor_id in reversed(chain):
            if state.record.results[ancestor_id].status is StageStatus.PENDING:
                self._transition(state, ancestor_id, StageStatus.RUNNING)

    async def _worker(self, state: _RunState, node: StageNode, view: dict[str, str]) -> None:
        try:
            completion = await self._execute_leaf(state, node, view)
        except Exception as exc:  # noqa: BLE001
            self._logger.exception("stage_worker_crashed", stage_id=node.id)
            completion = _Completion(node.id, attempts=0, error=exc)
        await state.completions.put(completion)

    def _on_completion(self, state: _RunState, completion: _Completion) -> None:
        state.in_flight.pop(completion.stage_id, None)
        node = self._index[completion.stage_id]
        outcome = completion.outcome
        changes: dict[str, Any] = {"attempts": completion.attempts}
        if outcome is not None:
            changes["exit_code"] = outcome.exit_code
            changes["timed_out"] = outcome.timed_out

        error = completion.error
        if error is None:
            status = StageStatus.SUCCEEDED
        elif isinstance(error, AbortSignal):
            status = StageStatus.ABORTED
            changes["message"] = str(error)
        else:
            status = StageStatus.FAILED
            changes["failure_ignored"] = node.id in self._ignorable
            changes["message"] = str(error)
        self._transition(state, node.id, status, **changes)

        if status is StageStatus.SUCCEEDED and completion.published:
            self._publish_overlay(state, node.id, completion.published)
        self._collect_artifacts(state, node)

        if status is StageStatus.FAILED and node.id not in self._ignorable:
            self._halt(state, node.id)
        self._settled(state, node)

    def _publish_overlay(self, state: _RunState, stage_id: str, values: dict[str, str]) -> None:
        run_id = state.record.run_id
        for entry in state.overlay.publish(stage_id, values):
            self._store.save_overlay_entry(
                run_id,
                sequence=entry.sequence,
                key=entry.key,
                value=entry.value,
                stage_id=stage_id,
            )
            self._publish(
                EventType.ENV_PUBLISHED, run_id, {"key": entry.key}, stage_id=stage_id
            )

    def _collect_artifacts(self, state: _RunState, node: StageNode) -> None:
        if self._collector is None or not node.reports:
            return
        try:
            workdir = resolve_within(self._workspace, node.workdir)
            artifacts = self._collector.collect(state.record.run_id, node, workdir)
        except (OSError, ValueError) as exc:
            self._logger.error("artifact_collection_failed", stage_id=node.id, error=str(exc))
            return
        state.record.artifacts.extend(artifacts)
        for artifact in artifacts:
            self._publish(
                EventType.ARTIFACT_COLLECTED,
                state.record.run_id,
                {"kind": artifact.kind.value, "location": artifact.location},
                stage_id=node.id,
            )

    # -- leaf execution (worker side) ---------------------------------------

    async def _execute_leaf(
        self, state: _RunState, node: StageNode, view: dict[str, str]
    ) -> _Completion:
        run_id = state.record.run_id
        stdout_path = self._store.log_path(run_id, node.id, "stdout")
        stderr_path = self._store.log_path(run_id, node.id, "stderr")
        with correlation_scope(stage_id=node.id):
            try:
                workdir = resolve_within(self._workspace, node.workdir)
                workdir.mkdir(parents=True, exist_ok=True)
                secrets = bind_credentials(node, state.credentials)
            except (ValueError, CredentialError) as exc:
                # Setup failures are not retried.
                self._logger.error("stage_setup_failed", error=str(exc))
                _append_line(stderr_path, f"stageflow: {exc}")
                return _Completion(node.id, attempts=0, error=exc)
            register_secret_values(secrets.values())

            timeout = node.timeout_seconds or self._default_timeout
            outcome: ExecutionOutcome | None = None
            failed_step = 0
            for attempt in range(1, node.retry + 1):
                if state.token.is_cancelled:
                    abort = AbortSignal(node.id, state.token.reason)
                    return _Completion(node.id, attempt - 1, outcome, error=abort)
                env_file = self._store.env_file_path(run_id, node.id, attempt)
                env_file.parent.mkdir(parents=True, exist_ok=True)
                env_file.write_text("", encoding="utf-8")
                env = compose_environment(
                    node,
                    state.record.context,
                    overlay_view=view,
                    credentials=secrets,
                    workspace=self._workspace,
                    env_file=env_file,
                    host_environ=self._host_env,
                )
                with correlation_scope(attempt=attempt):
                    self._logger.info(
                        "stage_attempt_started", attempt=attempt, steps=len(node.steps)
                    )
                    outcome, failed_step = await self._run_steps(
                        state,
                        node,
                        env=env,
                        workdir=workdir,
                        timeout=timeout,
                        mask=tuple(secrets.values()),
                        stdout_path=stdout_path,
                        stderr_path=stderr_path,
                    )
                if outcome.succeeded:
                    return _Completion(
                        node.id,
                        attempt,
                        outcome,
                        published=read_published(env_file, logger=self._logger),
                    )
                if outcome.cancelled:
                    return _Completion(
                        node.id, attempt, outcome, error=AbortSignal(node.id, state.token.reason)
                    )
                if attempt < node.retry:
                    self._logger.warning(
                        "stage_retrying",
                        attempt=attempt,
                        exit_code=outcome.exit_code,
                        timed_out=outcome.timed_out,
                    )

            assert outcome is not None
            failure = TimeoutFailure if outcome.timed_out else StageExecutionFailure
            return _Completion(
                node.id, node.retry, outcome, error=failure(node.id, outcome, step=failed_step)
            )

    async def _run_steps(
        self,
        state: _RunState,
        node: StageNode,
        *,
        env: dict[str, str],
        workdir: Path,
        timeout: float | None,
        mask: tuple[str, ...],
        stdout_path: Path,
        stderr_path: Path,
    ) -> tuple[ExecutionOutcome, int]:
        # The timeout covers the whole step list of one attempt.
        deadline = None if timeout is None else time.monotonic() + timeout
        on_line = self._line_forwarder(state.record.run_id, node.id)
        outcome = ExecutionOutcome(exit_code=0)
        for index, step in enumerate(node.steps):
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return ExecutionOutcome(exit_code=TIMEOUT_EXIT_CODE, timed_out=True), index
                remaining = max(remaining, _MIN_STEP_TIMEOUT_SECONDS)
            outcome = await self._runner.run(
                step,
                env=env,
                workdir=workdir,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
                timeout_seconds=remaining,
                cancel_token=state.token,
                mask=mask,
                on_line=on_line,
            )
            if not outcome.succeeded:
                return outcome, index
        return outcome, len(node.steps) - 1

    def _line_forwarder(self, run_id: str, stage_id: str) -> LineCallback | None:
        bus = self._event_bus
        if bus is None:
            return None

        def forward(stream: str, line: str) -> None:
            bus.publish(
                PipelineEvent(
                    EventType.STAGE_OUTPUT,
                    run_id,
                    {"stream": stream, "line": line},
                    stage_id=stage_id,
                )
            )

        return forward

    # -- bookkeeping -------------------------------------------------------

    def _transition(
        self,
        state: _RunState,
        stage_id: str,
        status: StageStatus,
        **changes: Any,
    ) -> StageResult:
        previous = state.record.results[stage_id]
        result = previous.transition(status, **changes)
        state.record.results[stage_id] = result
        self._store.save_stage_result(state.record.run_id, result)
        self._logger.info(
            "stage_transition",
            stage_id=stage_id,
            from_status=previous.status.value,
            to_status=status.value,
            skip_reason=result.skip_reason.value if result.skip_reason else None,
            exit_code=result.exit_code,
        )
        payload: dict[str, JSONValue] = {"status": status.value, "kind": result.kind.value}
        if result.skip_reason is not None:
            payload["skip_reason"] = result.skip_reason.value
        if result.exit_code is not None:
            payload["exit_code"] = result.exit_code
        if result.failure_ignored:
            payload["failure_ignored"] = True
        self._publish(EventType.STAGE_TRANSITION, state.record.run_id, payload, stage_id=stage_id)
        return result

    def _publish(
        self,
        event_type: EventType,
        run_id: str,
        payload: dict[str, JSONValue],
        *,
        stage_id: str | None = None,
    ) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(PipelineEvent(event_type, run_id, payload, stage_id=stage_id))

    async def _settle_run(self, record: RunRecord) -> None:
        for sink in self._sinks:
            try:
                sink.publish(record, record.artifacts)
            except Exception as exc:  # noqa: BLE001
                self._logger.error(
                    "report_sink_failed", sink=type(sink).__name__, error=str(exc)
                )
        if self._dispatcher is not None:
            try:
                await self._dispatcher.dispatch(record)
            except Exception:  # noqa: BLE001
                self._logger.exception("post_hooks_failed")
        if self._event_bus is not None:
            await self._event_bus.drain_async()


def _failure_ignored_ids(stages: Sequence[StageNode]) -> frozenset[str]:
    """Ids whose failure is non-blocking: the node or an ancestor is continue_on_error."""
    ignored: set[str] = set()
    stack: list[tuple[StageNode, bool]] = [(stage, False) for stage in stages]
    while stack:
        node, inherited = stack.pop()
        flagged = inherited or node.continue_on_error
        if flagged:
            ignored.add(node.id)
        stack.extend((child, flagged) for child in node.children)
    return frozenset(ignored)


def _append_line(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(text + "\n")


__all__ = ["Executor", "ExecutorOptions"]
