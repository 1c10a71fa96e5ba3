"""
stageflow - post-action dispatcher

File: src/stageflow/hooks/dispatcher.py

Purpose
- Fire the pipeline's ``post`` actions once the run has a terminal status:
  ``always`` first, then the one phase matching the outcome.

Functional requirements
- Actions run in declaration order: shell commands, notifications, or
  workspace cleanup.
- Every action produces a persisted HookResult. A failing action is logged
  and recorded; it never changes the run status and never stops later
  actions.
- Hooks run even for aborted runs and do not observe the run's cancellation.
"""

from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from stageflow.constants import VCS_METADATA_DIRS
from stageflow.domain.errors import NotificationError
from stageflow.domain.events import EventType
from stageflow.domain.models import HookActionKind, HookResult, utc_now
from stageflow.observability.logging import correlation_scope
from stageflow.utils.fs import clear_directory, is_within

if TYPE_CHECKING:
    from stageflow.domain.models import HookAction, HookPhase, RunRecord
    from stageflow.execution.process_runner import ProcessRunner
    from stageflow.hooks.notifiers import Notifier
    from stageflow.observability.events import EventBus
    from stageflow.persistence.store import RunStateStore

DEFAULT_HOOK_TIMEOUT_SECONDS: Final[float] = 300.0


class _TemplateFields(dict[str, str]):
    """Leaves unknown ``{placeholders}`` in place."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_message(template: str, fields: Mapping[str, str]) -> str:
    try:
        return template.format_map(_TemplateFields(fields))
    except (ValueError, AttributeError, IndexError, KeyError):
        return template


def message_fields(record: RunRecord) -> dict[str, str]:
    failed = record.failed_stage_ids()
    duration = record.duration_seconds
    return {
        "pipeline": record.pipeline.name,
        "run_id": record.run_id,
        "status": record.status.value,
        "branch": record.context.branch,
        "commit": record.context.commit or "unknown",
        "failed_stages": ", ".join(failed) if failed else "none",
        "duration": f"{duration:.1f}s" if duration is not None else "n/a",
    }


class PostActionDispatcher:
    """Runs post hooks for a finished run."""

    def __init__(
        self,
        *,
        store: RunStateStore,
        runner: ProcessRunner,
        workspace: Path,
        notifiers: Sequence[Notifier] = (),
        host_env: Mapping[str, str] | None = None,
        preserve: Sequence[Path] = (),
        protected: Sequence[Path] = (),
        event_bus: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._runner = runner
        self._workspace = workspace
        self._notifiers = tuple(notifiers)
        self._host_env = dict(host_env or {})
        self._preserve = tuple(preserve)
        self._protected = tuple(protected)
        self._event_bus = event_bus
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def dispatch(self, record: RunRecord) -> list[HookResult]:
        results: list[HookResult] = []
        for phase, actions in record.pipeline.post.plan(record.status):
            for action in actions:
                with correlation_scope(hook=action.name):
                    result = await self._run_action(record, phase, action, position=len(results))
                self._store.save_hook_result(record.run_id, len(results), result)
                record.hook_results.append(result)
                results.append(result)
                if self._event_bus is not None:
                    await self._event_bus.emit_async(
                        EventType.HOOK_COMPLETED,
                        record.run_id,
                        {"phase": phase.value, "name": action.name, "ok": result.ok},
                    )
        return results

    async def _run_action(
        self,
        record: RunRecord,
        phase: HookPhase,
        action: HookAction,
        *,
        position: int,
    ) -> HookResult:
        started = utc_now()
        clock = time.monotonic()
        exit_code: int | None = None
        try:
            if action.kind is HookActionKind.RUN:
                exit_code = await self._run_command(record, phase, action, position)
                ok = exit_code == 0
                message = None if ok else f"exited with {exit_code}"
            elif action.kind is HookActionKind.NOTIFY:
                message = await self._notify(record, action)
                ok = True
            else:
                removed = self._clean_workspace()
                ok, message = True, f"removed {removed} entries"
        except Exception as exc:  # noqa: BLE001
            ok, message = False, f"{type(exc).__name__}: {exc}"

        log = self._logger.info if ok else self._logger.warning
        log(
            "hook_completed" if ok else "hook_failed",
            phase=phase.value,
            hook_kind=action.kind.value,
            ok=ok,
            result_message=message,
            elapsed_ms=int((time.monotonic() - clock) * 1000),
        )
        return HookResult(
            phase=phase,
            name=action.name,
            kind=action.kind,
            ok=ok,
            started_at=started,
            finished_at=utc_now(),
            exit_code=exit_code,
            message=message,
        )

    async def _run_command(
        self, record: RunRecord, phase: HookPhase, action: HookAction, position: int
    ) -> int:
        assert action.command is not None
        hook_id = f"post/{phase.value}/{position}-{action.name}"
        env = dict(self._host_env)
        env.update(record.pipeline.environment)
        env.update(record.context.builtin_variables())
        env.update(record.context.variables)
        env.update(record.context.overlay)
        env["STAGEFLOW_RUN_STATUS"] = record.status.value
        outcome = await self._runner.run(
            action.command,
            env=env,
            workdir=self._workspace,
            stdout_path=self._store.log_path(record.run_id, hook_id, "stdout"),
            stderr_path=self._store.log_path(record.run_id, hook_id, "stderr"),
            timeout_seconds=action.timeout_seconds or DEFAULT_HOOK_TIMEOUT_SECONDS,
        )
        return outcome.exit_code

    async def _notify(self, record: RunRecord, action: HookAction) -> str:
        assert action.message is not None
        text = render_message(action.message, message_fields(record))
        failures: list[str] = []
        for notifier in self._notifiers:
            try:
                await notifier.send(action.severity, text)
            except Exception as exc:  # noqa: BLE001
                failures.append(f"{type(notifier).__name__}: {exc}")
        if failures:
            raise NotificationError("; ".join(failures))
        return text

    def _clean_workspace(self) -> int:
        guard = self._checkout_marker()
        if guard is not None:
            raise PermissionError(
                f"refusing to clean workspace {self._workspace}: it holds {guard}; "
                "point paths.workspace at a dedicated directory"
            )
        keep = tuple(
            path.resolve().relative_to(self._workspace.resolve()).parts[0]
            for path in self._preserve
            if is_within(path, self._workspace) and path.resolve() != self._workspace.resolve()
        )
        return clear_directory(self._workspace, keep=keep)

    def _checkout_marker(self) -> str | None:
        """Name what marks the workspace as a source checkout, if anything does."""
        for name in VCS_METADATA_DIRS:
            if (self._workspace / name).exists():
                return name
        for path in self._protected:
            if path.exists() and is_within(path, self._workspace):
                return path.name
        return None


__all__ = [
    "DEFAULT_HOOK_TIMEOUT_SECONDS",
    "PostActionDispatcher",
    "message_fields",
    "render_message",
]
