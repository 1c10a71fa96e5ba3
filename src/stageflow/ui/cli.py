"""Command-line interface router for stageflow."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from stageflow.artifacts import ArtifactCollector, LoggingReportSink, ManifestReportSink
from stageflow.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
)
from stageflow.constants import BRANCH_VAR, COMMIT_VAR, CONFIG_FILENAME, PIPELINE_FILENAMES
from stageflow.domain.errors import ConfigError
from stageflow.domain.events import EventType
from stageflow.domain.ids import generate_run_id, validate_run_id
from stageflow.domain.models import RunContext, RunStatus, StageKind, StageStatus
from stageflow.execution import Executor, ExecutorOptions, ProcessRunner, host_environment
from stageflow.hooks import LogNotifier, PostActionDispatcher, WebhookNotifier
from stageflow.observability import (
    EventBus,
    clear_secret_values,
    setup_logging,
    shutdown_logging,
)
from stageflow.persistence import RunStateStore
from stageflow.planning import load_pipeline
from stageflow.ui.render import CLIRenderer, create_renderer
from stageflow.utils.concurrency import CancellationToken

if TYPE_CHECKING:
    from stageflow.domain.events import PipelineEvent
    from stageflow.domain.models import PipelineDefinition, RunRecord, StageResult
    from stageflow.hooks import Notifier
    from stageflow.persistence import RunSnapshot

_FOLLOW_POLL_SECONDS: Final[float] = 0.5
_RUN_EXIT_CODES: Final[dict[RunStatus, int]] = {
    RunStatus.SUCCEEDED: 0,
    RunStatus.FAILED: 1,
    RunStatus.ABORTED: 3,
}


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="stageflow",
        description=(
            "stageflow - declarative CI/CD pipeline runner.\n\n"
            "Common workflows:\n"
            "  stageflow validate stageflow.yml      Check a pipeline definition\n"
            "  stageflow run --branch main           Run the pipeline in this directory\n"
            "  stageflow status                      Show the latest run\n"
            "  stageflow logs Lint/Flake8 --follow   Tail one stage's output\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to stageflow TOML config (default: ./stageflow.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--state-dir",
        default=None,
        help="Override paths.state_dir (run database, logs and archived artifacts).",
    )
    common.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit machine-readable JSON instead of text.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run -------------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Run a pipeline definition",
        description=(
            "Execute a pipeline. Exit code is 0 when the run succeeded, 1 when it\n"
            "failed and 3 when it was aborted (SIGINT/SIGTERM).\n\n"
            "Examples:\n"
            "  stageflow run --branch main\n"
            "  stageflow run ci/pipeline.yml --branch feature/x --var DEPLOY_ENV=staging\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument(
        "pipeline",
        nargs="?",
        default=None,
        help=f"Pipeline file (default: first of {', '.join(PIPELINE_FILENAMES)}).",
    )
    run_parser.add_argument(
        "--branch",
        default=None,
        help=f"Branch name for conditions (default: ${BRANCH_VAR} or $GIT_BRANCH).",
    )
    run_parser.add_argument(
        "--commit",
        default=None,
        help=f"Commit id exposed as {COMMIT_VAR} (default: ${COMMIT_VAR}).",
    )
    run_parser.add_argument(
        "--var",
        dest="variables",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Run variable visible to conditions and stages; repeatable.",
    )
    run_parser.add_argument(
        "--credential",
        dest="credentials",
        action="append",
        default=[],
        metavar="HANDLE=ENV_VAR",
        help="Bind a credential handle to the host env var holding the secret; repeatable.",
    )
    run_parser.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Maximum concurrently running leaf stages (0 = unbounded).",
    )
    run_parser.add_argument("--workspace", default=None, help="Override paths.workspace.")
    run_parser.set_defaults(handler=_cmd_run)

    # validate --------------------------------------------------------------
    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common],
        help="Parse a pipeline definition without running it",
    )
    validate_parser.add_argument("pipeline", nargs="?", default=None)
    validate_parser.set_defaults(handler=_cmd_validate)

    # status ----------------------------------------------------------------
    status_parser = subparsers.add_parser(
        "status",
        parents=[common],
        help="Show a run's stages (default: latest run)",
    )
    status_parser.add_argument("run_id", nargs="?", default=None)
    status_parser.add_argument(
        "--list",
        dest="list_runs",
        action="store_true",
        default=False,
        help="List recent runs instead of showing one.",
    )
    status_parser.add_argument("--limit", type=int, default=20)
    status_parser.set_defaults(handler=_cmd_status)

    # logs ------------------------------------------------------------------
    logs_parser = subparsers.add_parser(
        "logs",
        parents=[common],
        help="Print the captured output of one stage",
    )
    logs_parser.add_argument("stage_id", help="Stage id, e.g. Lint/Flake8.")
    logs_parser.add_argument("--run", dest="run_id", default=None, help="Run id (default: latest).")
    logs_parser.add_argument("--stream", choices=("stdout", "stderr"), default="stdout")
    logs_parser.add_argument(
        "--follow",
        "-f",
        action="store_true",
        default=False,
        help="Keep printing new output until the run finishes.",
    )
    logs_parser.set_defaults(handler=_cmd_logs)

    # artifacts -------------------------------------------------------------
    artifacts_parser = subparsers.add_parser(
        "artifacts",
        parents=[common],
        help="List collected reports and artifacts of a run",
    )
    artifacts_parser.add_argument("run_id", nargs="?", default=None)
    artifacts_parser.add_argument("--stage", dest="stage_id", default=None)
    artifacts_parser.set_defaults(handler=_cmd_artifacts)

    # watch -----------------------------------------------------------------
    watch_parser = subparsers.add_parser(
        "watch",
        parents=[common],
        help="Open the live run viewer (Textual)",
    )
    watch_parser.add_argument("run_id", nargs="?", default=None)
    watch_parser.add_argument("--interval", type=float, default=_FOLLOW_POLL_SECONDS)
    watch_parser.set_defaults(handler=_cmd_watch)

    # config ----------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Print the effective (redacted) configuration",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    overrides: dict[str, object] = {
        "paths.state_dir": getattr(args, "state_dir", None),
        "paths.workspace": getattr(args, "workspace", None),
    }
    config = _load_effective_config(args, overrides)
    pipeline = _load_pipeline_or_fail(getattr(args, "pipeline", None))
    context = RunContext(
        branch=_resolve_branch(getattr(args, "branch", None)),
        commit=getattr(args, "commit", None) or os.environ.get(COMMIT_VAR) or None,
        variables=_parse_assignments(args.variables, "--var"),
        credentials=_parse_assignments(args.credentials, "--credential"),
    )

    store = _open_store(config)
    store.reconcile_interrupted()
    workspace = Path(config["paths"]["workspace"])
    executor_cfg = config["executor"]
    host_env = host_environment(inherit=bool(executor_cfg["inherit_host_env"]))
    runner = ProcessRunner(
        shell=executor_cfg["shell"],
        kill_grace_seconds=float(executor_cfg["kill_grace_seconds"]),
    )
    bus = EventBus()
    renderer = _get_renderer(args)
    as_json = _flag(args, "json")
    if not as_json:
        _attach_progress(bus, renderer)

    dispatcher = PostActionDispatcher(
        store=store,
        runner=runner,
        workspace=workspace,
        notifiers=_build_notifiers(config),
        host_env=host_env,
        preserve=(store.root, Path(config["paths"]["log_dir"])),
        protected=_source_paths(args, pipeline),
        event_bus=bus,
    )
    executor = Executor(
        pipeline,
        store=store,
        workspace=workspace,
        runner=runner,
        options=ExecutorOptions.from_config(config, max_workers=getattr(args, "max_workers", None)),
        collector=ArtifactCollector(store, archive=bool(config["artifacts"]["archive"])),
        sinks=(LoggingReportSink(), ManifestReportSink(store)),
        dispatcher=dispatcher,
        event_bus=bus,
    )

    run_id = generate_run_id()
    setup_logging(config["observability"], run_id=run_id, log_dir=config["paths"]["log_dir"])
    try:
        record = asyncio.run(_execute(executor, context, run_id))
    finally:
        shutdown_logging()
        clear_secret_values()

    failed = record.failed_stage_ids()
    exit_code = _RUN_EXIT_CODES[record.status]
    if as_json:
        _emit_json(
            {
                "command": "run",
                "run_id": record.run_id,
                "pipeline": pipeline.name,
                "status": record.status.value,
                "failed_stages": failed,
                "stages": [
                    _stage_payload(result) for result in record.results.values()
                ],
                "artifacts": len(record.artifacts),
                "hooks": [
                    {"phase": hook.phase.value, "name": hook.name, "ok": hook.ok}
                    for hook in record.hook_results
                ],
            }
        )
        return exit_code

    renderer.blank()
    renderer.kv("Run ID", record.run_id)
    renderer.status("Status", record.status.value)
    if failed:
        renderer.section("Failed stages:")
        renderer.items(failed)
    renderer.kv("Artifacts", len(record.artifacts))
    renderer.next_steps(
        [
            f"stageflow status {record.run_id}",
            f"stageflow artifacts {record.run_id}",
        ]
    )
    return exit_code


async def _execute(executor: Executor, context: RunContext, run_id: str) -> RunRecord:
    """Run with SIGINT/SIGTERM wired to the run's cancellation token."""

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, token.cancel, f"received {signum.name}")
        except (NotImplementedError, RuntimeError, ValueError):
            structlog.get_logger(__name__).warning(
                "signal_handler_unavailable", signal=signum.name
            )
            continue
        installed.append(signum)
    try:
        return await executor.run(context, cancel_token=token, run_id=run_id)
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def _cmd_validate(args: argparse.Namespace) -> int:
    pipeline = _load_pipeline_or_fail(getattr(args, "pipeline", None))
    leaves = list(pipeline.leaves())
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "validate",
                "pipeline": pipeline.name,
                "digest": pipeline.digest,
                "stages": [node.id for node in pipeline.walk()],
                "leaves": len(leaves),
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Pipeline", pipeline.name)
    renderer.kv("Source", pipeline.source or "(inline)")
    renderer.kv("Stages", f"{len(list(pipeline.walk()))} ({len(leaves)} leaves)")
    renderer.section("Stage tree:")
    for stage in pipeline.stages:
        for node in stage.walk():
            depth = node.id.count("/")
            details = [node.kind.value]
            if node.when is not None:
                details.append(f"when {node.when.describe()}")
            if node.continue_on_error:
                details.append("continue-on-error")
            renderer.text(f"  {'  ' * depth}{node.name} [{', '.join(details)}]")
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, {"paths.state_dir": getattr(args, "state_dir", None)})
    store = _open_store(config)
    store.reconcile_interrupted()
    renderer = _get_renderer(args)

    if _flag(args, "list_runs"):
        runs = store.list_runs(limit=_bounded_limit(getattr(args, "limit", 20)))
        if _flag(args, "json"):
            _emit_json(
                {
                    "command": "status",
                    "runs": [
                        {
                            "run_id": run.run_id,
                            "pipeline": run.pipeline_name,
                            "status": run.status.value,
                            "branch": run.branch,
                            "started_at": run.started_at.isoformat(),
                        }
                        for run in runs
                    ],
                }
            )
            return 0
        if not runs:
            renderer.text(f"No runs found in {store.root}")
            return 0
        renderer.table(
            ["Run", "Pipeline", "Branch", "Status", "Started"],
            [
                [
                    run.run_id,
                    run.pipeline_name,
                    run.branch,
                    run.status.value,
                    run.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                ]
                for run in runs
            ],
            status_column=3,
        )
        return 0

    snapshot = _load_snapshot(store, _requested_run_id(args))
    if snapshot is None:
        if _flag(args, "json"):
            _emit_json({"command": "status", "run": None})
            return 0
        renderer.text(f"No runs found in {store.root}")
        renderer.next_steps(["stageflow run --branch <branch>"])
        return 0

    summary = snapshot.summary
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "status",
                "run": {
                    "run_id": summary.run_id,
                    "pipeline": summary.pipeline_name,
                    "status": summary.status.value,
                    "branch": summary.branch,
                    "commit": summary.commit,
                    "started_at": summary.started_at.isoformat(),
                    "finished_at": summary.finished_at.isoformat()
                    if summary.finished_at is not None
                    else None,
                    "stages": [_stage_payload(result) for result in snapshot.stages],
                    "overlay": {entry.key: entry.value for entry in snapshot.overlay},
                    "hooks": [
                        {"phase": hook.phase.value, "name": hook.name, "ok": hook.ok}
                        for hook in snapshot.hooks
                    ],
                },
            }
        )
        return 0

    renderer.kv("Run", summary.run_id)
    renderer.kv("Pipeline", summary.pipeline_name)
    renderer.kv("Branch", summary.branch)
    renderer.status("Status", summary.status.value)
    renderer.kv("Started", summary.started_at.isoformat())
    renderer.kv(
        "Finished",
        summary.finished_at.isoformat() if summary.finished_at is not None else "(in progress)",
    )
    renderer.table(
        ["Stage", "Kind", "Status", "Attempts", "Exit", "Note"],
        [
            [
                result.stage_id,
                result.kind.value,
                result.status.value,
                str(result.attempts) if result.kind is StageKind.LEAF else "",
                "" if result.exit_code is None else str(result.exit_code),
                _stage_note(result),
            ]
            for result in snapshot.stages
        ],
        title="Stages:",
        status_column=2,
    )
    if snapshot.hooks:
        renderer.section("Post hooks:")
        renderer.items(
            [
                f"{hook.phase.value}/{hook.name}: {'ok' if hook.ok else 'failed'}"
                + (f" ({hook.message})" if hook.message and not hook.ok else "")
                for hook in snapshot.hooks
            ]
        )
    return 0


def _cmd_logs(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, {"paths.state_dir": getattr(args, "state_dir", None)})
    store = _open_store(config)
    store.reconcile_interrupted()
    snapshot = _load_snapshot(store, _requested_run_id(args))
    if snapshot is None:
        raise CLIError("no runs recorded yet", exit_code=2)
    stage_id = str(args.stage_id)
    try:
        snapshot.stage(stage_id)
    except KeyError:
        raise CLIError(
            f"run {snapshot.summary.run_id} has no stage {stage_id!r}", exit_code=2
        ) from None

    run_id = snapshot.summary.run_id
    stream = str(getattr(args, "stream", "stdout"))
    offset = 0
    while True:
        text, offset = store.read_log(run_id, stage_id, stream, offset=offset)
        if text:
            sys.stdout.write(text)
            sys.stdout.flush()
        if not _flag(args, "follow"):
            return 0
        store.reconcile_interrupted()
        latest = store.load_run(run_id)
        if latest is None or latest.summary.status.is_terminal:
            # One last read: the run may have finished right after the previous one.
            text, offset = store.read_log(run_id, stage_id, stream, offset=offset)
            sys.stdout.write(text)
            sys.stdout.flush()
            return 0
        time.sleep(_FOLLOW_POLL_SECONDS)


def _cmd_artifacts(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, {"paths.state_dir": getattr(args, "state_dir", None)})
    store = _open_store(config)
    run_id = _requested_run_id(args) or store.latest_run_id()
    if run_id is None:
        raise CLIError("no runs recorded yet", exit_code=2)
    artifacts = store.list_artifacts(run_id, stage_id=getattr(args, "stage_id", None))

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "artifacts",
                "run_id": run_id,
                "artifacts": [
                    {
                        "id": artifact.artifact_id,
                        "stage_id": artifact.stage_id,
                        "kind": artifact.kind.value,
                        "location": artifact.location,
                        "size_bytes": artifact.size_bytes,
                        "sha256": artifact.sha256,
                    }
                    for artifact in artifacts
                ],
            }
        )
        return 0

    renderer = _get_renderer(args)
    if not artifacts:
        renderer.text(f"No artifacts recorded for {run_id}")
        return 0
    renderer.table(
        ["Stage", "Kind", "Path", "Size", "SHA-256"],
        [
            [
                artifact.stage_id,
                artifact.kind.value,
                artifact.location,
                str(artifact.size_bytes),
                artifact.sha256[:12],
            ]
            for artifact in artifacts
        ],
        title=f"Artifacts of {run_id}:",
    )
    return 0


def _cmd_watch(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, {"paths.state_dir": getattr(args, "state_dir", None)})
    store = _open_store(config)
    run_id = _requested_run_id(args) or store.latest_run_id()
    if run_id is None:
        raise CLIError("no runs recorded yet", exit_code=2)
    interval = float(getattr(args, "interval", _FOLLOW_POLL_SECONDS))
    if interval <= 0:
        raise CLIError("--interval must be > 0", exit_code=2)

    from stageflow.ui.watch import run_watch_app

    return run_watch_app(store, run_id, poll_seconds=interval)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, {"paths.state_dir": getattr(args, "state_dir", None)})
    profile = getattr(args, "profile", None)
    if _flag(args, "json"):
        _emit_json(
            {
                "command": "config",
                "active_profile": profile,
                "config": json.loads(dump_effective_config(config)),
            }
        )
        return 0
    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(dump_effective_config(config))
    return 0


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _attach_progress(bus: EventBus, renderer: CLIRenderer) -> None:
    """Print one line per stage transition, plus stage output when verbose."""

    def on_transition(event: PipelineEvent) -> None:
        status = str(event.payload.get("status", ""))
        if status == StageStatus.PENDING.value:
            return
        suffix = ""
        if event.payload.get("skip_reason"):
            suffix = f" ({event.payload['skip_reason']})"
        elif "exit_code" in event.payload and status != StageStatus.SUCCEEDED.value:
            suffix = f" (exit {event.payload['exit_code']})"
        if event.payload.get("failure_ignored"):
            suffix += " [ignored]"
        renderer.text(f"[{status:>9}] {event.stage_id}{suffix}")

    bus.subscribe(EventType.STAGE_TRANSITION, on_transition)
    if renderer.verbose:

        def on_output(event: PipelineEvent) -> None:
            renderer.text(f"{event.stage_id} | {event.payload.get('line', '')}")

        bus.subscribe(EventType.STAGE_OUTPUT, on_output)


def _stage_payload(result: StageResult) -> dict[str, object]:
    return {
        "stage_id": result.stage_id,
        "kind": result.kind.value,
        "status": result.status.value,
        "exit_code": result.exit_code,
        "attempts": result.attempts,
        "timed_out": result.timed_out,
        "failure_ignored": result.failure_ignored,
        "skip_reason": result.skip_reason.value if result.skip_reason else None,
        "duration_seconds": result.duration_seconds,
    }


def _stage_note(result: StageResult) -> str:
    if result.skip_reason is not None:
        return str(result.skip_reason.value)
    if result.timed_out:
        return "timed out"
    if result.failure_ignored:
        return "failure ignored"
    return ""


# ---------------------------------------------------------------------------
# Helpers - config, paths, resolution
# ---------------------------------------------------------------------------


def _load_effective_config(
    args: argparse.Namespace, overrides: Mapping[str, object] | None = None
) -> dict[str, Any]:
    config_path = getattr(args, "config_path", None)
    profile = getattr(args, "profile", None)
    try:
        return load_config(config_path, profile=profile, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _load_pipeline_or_fail(pipeline_arg: str | None) -> PipelineDefinition:
    path = _resolve_pipeline_path(pipeline_arg)
    try:
        return load_pipeline(path)
    except ConfigError as exc:
        raise CLIError(f"invalid pipeline {path}: {exc}", exit_code=2) from exc


def _resolve_pipeline_path(pipeline_arg: str | None) -> Path:
    if pipeline_arg is not None:
        candidate = Path(pipeline_arg).expanduser().resolve()
        if not candidate.is_file():
            raise CLIError(f"pipeline file not found: {candidate}", exit_code=2)
        return candidate
    for name in PIPELINE_FILENAMES:
        candidate = Path.cwd() / name
        if candidate.is_file():
            return candidate
    raise CLIError(
        f"no pipeline file given and none of {', '.join(PIPELINE_FILENAMES)} found",
        exit_code=2,
    )


def _source_paths(args: argparse.Namespace, pipeline: PipelineDefinition) -> tuple[Path, ...]:
    """Files a workspace cleanup must never delete: the pipeline and its config."""
    config_path = getattr(args, "config_path", None)
    paths = [Path(config_path) if config_path else Path.cwd() / CONFIG_FILENAME]
    if pipeline.source:
        paths.append(Path(pipeline.source))
    return tuple(paths)


def _resolve_branch(branch_arg: str | None) -> str:
    branch = branch_arg or os.environ.get(BRANCH_VAR) or os.environ.get("GIT_BRANCH")
    if not branch:
        raise CLIError(f"branch unknown: pass --branch or set {BRANCH_VAR}", exit_code=2)
    return branch


def _parse_assignments(raw: Sequence[str], flag: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in raw:
        key, sep, value = item.partition("=")
        key = key.strip()
        if not sep or not key:
            raise CLIError(f"{flag} expects KEY=VALUE, got {item!r}", exit_code=2)
        out[key] = value
    return out


def _open_store(config: Mapping[str, Any]) -> RunStateStore:
    return RunStateStore(Path(config["paths"]["state_dir"]))


def _requested_run_id(args: argparse.Namespace) -> str | None:
    run_id = getattr(args, "run_id", None)
    if run_id is None:
        return None
    try:
        validate_run_id(run_id)
    except ValueError as exc:
        raise CLIError(f"invalid run id {run_id!r}: {exc}", exit_code=2) from exc
    return str(run_id)


def _load_snapshot(store: RunStateStore, run_id: str | None) -> RunSnapshot | None:
    resolved = run_id or store.latest_run_id()
    if resolved is None:
        return None
    snapshot = store.load_run(resolved)
    if snapshot is None:
        raise CLIError(f"run not found: {resolved}", exit_code=2)
    return snapshot


def _build_notifiers(config: Mapping[str, Any]) -> list[Notifier]:
    notifiers: list[Notifier] = [LogNotifier()]
    settings = config.get("notifications", {})
    env_name = settings.get("webhook_url_env")
    if env_name:
        url = os.environ.get(str(env_name))
        if url:
            notifiers.append(
                WebhookNotifier(url, timeout_seconds=float(settings["webhook_timeout_seconds"]))
            )
        else:
            structlog.get_logger(__name__).warning("webhook_url_env_unset", env=env_name)
    return notifiers


def _bounded_limit(value: object) -> int:
    if not isinstance(value, int) or value < 1 or value > 500:
        raise CLIError("--limit must be between 1 and 500", exit_code=2)
    return value


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "main", "run_cli"]
