"""Process runner tests against a real ``/bin/sh``."""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path

import pytest

from stageflow.constants import CANCELLED_EXIT_CODE, TIMEOUT_EXIT_CODE
from stageflow.execution.process_runner import ProcessRunner
from stageflow.utils.concurrency import CancellationToken

pytestmark = pytest.mark.unit


def _paths(tmp_path: Path) -> dict[str, Path]:
    return {
        "workdir": tmp_path,
        "stdout_path": tmp_path / "logs" / "stage.stdout.log",
        "stderr_path": tmp_path / "logs" / "stage.stderr.log",
    }


def _env() -> dict[str, str]:
    return {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}


async def test_streams_output_into_log_files_and_callback(tmp_path: Path) -> None:
    lines: list[tuple[str, str]] = []
    runner = ProcessRunner()

    outcome = await runner.run(
        "echo hello; echo oops >&2",
        env=_env(),
        on_line=lambda stream, line: lines.append((stream, line)),
        **_paths(tmp_path),
    )

    assert outcome.exit_code == 0
    assert outcome.succeeded
    stdout = (tmp_path / "logs" / "stage.stdout.log").read_text(encoding="utf-8")
    assert stdout.splitlines() == ["+ echo hello; echo oops >&2", "hello"]
    assert (tmp_path / "logs" / "stage.stderr.log").read_text(encoding="utf-8") == "oops\n"
    assert ("stdout", "hello") in lines
    assert ("stderr", "oops") in lines


async def test_non_zero_exit_code_is_reported(tmp_path: Path) -> None:
    outcome = await ProcessRunner(echo_commands=False).run("exit 7", env=_env(), **_paths(tmp_path))

    assert outcome.exit_code == 7
    assert not outcome.succeeded
    assert not outcome.timed_out


async def test_runs_in_workdir_with_given_environment(tmp_path: Path) -> None:
    env = {**_env(), "GREETING": "hi there"}
    outcome = await ProcessRunner(echo_commands=False).run(
        'echo "$GREETING" > greeting.txt',
        env=env,
        **_paths(tmp_path),
    )

    assert outcome.exit_code == 0
    assert (tmp_path / "greeting.txt").read_text(encoding="utf-8") == "hi there\n"


async def test_secret_values_are_masked_on_disk(tmp_path: Path) -> None:
    await ProcessRunner().run(
        "echo token=hunter2-secret",
        env=_env(),
        mask=("hunter2-secret",),
        **_paths(tmp_path),
    )

    stdout = (tmp_path / "logs" / "stage.stdout.log").read_text(encoding="utf-8")
    assert "hunter2-secret" not in stdout
    assert "token=****" in stdout


async def test_timeout_terminates_process_group(tmp_path: Path) -> None:
    runner = ProcessRunner(kill_grace_seconds=1.0, echo_commands=False)
    started = time.monotonic()

    outcome = await runner.run("sleep 30", env=_env(), timeout_seconds=0.3, **_paths(tmp_path))

    assert outcome.timed_out
    assert outcome.exit_code == TIMEOUT_EXIT_CODE
    assert time.monotonic() - started < 10


async def test_cancellation_stops_running_process(tmp_path: Path) -> None:
    token = CancellationToken()
    runner = ProcessRunner(kill_grace_seconds=1.0, echo_commands=False)

    async def cancel_soon() -> None:
        await asyncio.sleep(0.2)
        token.cancel("user request")

    canceller = asyncio.create_task(cancel_soon())
    outcome = await runner.run("sleep 30", env=_env(), cancel_token=token, **_paths(tmp_path))
    await canceller

    assert outcome.cancelled
    assert outcome.exit_code == CANCELLED_EXIT_CODE


async def test_pre_cancelled_token_never_spawns(tmp_path: Path) -> None:
    token = CancellationToken()
    token.cancel()

    outcome = await ProcessRunner(echo_commands=False).run(
        "touch spawned", env=_env(), cancel_token=token, **_paths(tmp_path)
    )

    assert outcome.cancelled
    assert not (tmp_path / "spawned").exists()


async def test_missing_shell_reports_spawn_failure(tmp_path: Path) -> None:
    runner = ProcessRunner(shell=str(tmp_path / "no-such-shell"), echo_commands=False)

    outcome = await runner.run("true", env=_env(), **_paths(tmp_path))

    assert outcome.exit_code == 127
    stderr = (tmp_path / "logs" / "stage.stderr.log").read_text(encoding="utf-8")
    assert "failed to start process" in stderr


def test_negative_kill_grace_is_rejected() -> None:
    with pytest.raises(ValueError):
        ProcessRunner(kill_grace_seconds=-1)
