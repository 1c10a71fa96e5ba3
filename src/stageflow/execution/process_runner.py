"""
stageflow - process runner

File: src/stageflow/execution/process_runner.py

Purpose
- Execute one leaf step as ``<shell> -c <command>`` in its own process session
  and stream its output, line by line, into append-only log files.

Functional requirements
- Output is masked for known secret values before it touches disk.
- Timeout and cancellation send SIGTERM to the whole process group, then
  SIGKILL after the grace period. The outcome carries synthetic exit codes
  (124 timeout, 130 cancelled) plus the matching flag.
- The exit code is the only success signal; output is never interpreted.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from collections.abc import Callable, Mapping, Sequence
from contextlib import suppress
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any, Final

import structlog

from stageflow.constants import (
    CANCELLED_EXIT_CODE,
    DEFAULT_KILL_GRACE_SECONDS,
    DEFAULT_SHELL,
    TIMEOUT_EXIT_CODE,
)
from stageflow.domain.models import ExecutionOutcome
from stageflow.observability.logging import mask_secrets

if TYPE_CHECKING:
    from stageflow.utils.concurrency import CancellationToken

LineCallback = Callable[[str, str], None]

_STREAM_LIMIT: Final[int] = 4 * 1024 * 1024
_PUMP_DRAIN_SECONDS: Final[float] = 2.0
_SPAWN_FAILURE_EXIT_CODE: Final[int] = 127


class ProcessRunner:
    """Runs shell commands for leaf stages."""

    def __init__(
        self,
        *,
        shell: str = DEFAULT_SHELL,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        echo_commands: bool = True,
        logger: Any | None = None,
    ) -> None:
        if kill_grace_seconds < 0:
            raise ValueError("kill_grace_seconds must be >= 0")
        self._shell = shell
        self._kill_grace_seconds = kill_grace_seconds
        self._echo_commands = echo_commands
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(
        self,
        command: str,
        *,
        env: Mapping[str, str],
        workdir: Path,
        stdout_path: Path,
        stderr_path: Path,
        timeout_seconds: float | None = None,
        cancel_token: CancellationToken | None = None,
        mask: Sequence[str] = (),
        on_line: LineCallback | None = None,
    ) -> ExecutionOutcome:
        started = time.monotonic()
        stdout_path.parent.mkdir(parents=True, exist_ok=True)
        stderr_path.parent.mkdir(parents=True, exist_ok=True)

        with stdout_path.open("ab") as out_file, stderr_path.open("ab") as err_file:
            if self._echo_commands:
                for line in command.splitlines() or [command]:
                    _write_line(out_file, f"+ {line}\n", mask)

            if cancel_token is not None and cancel_token.is_cancelled:
                return self._outcome(
                    CANCELLED_EXIT_CODE, stdout_path, stderr_path, started, cancelled=True
                )

            try:
                process = await asyncio.create_subprocess_exec(
                    self._shell,
                    "-c",
                    command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=str(workdir),
                    env=dict(env),
                    start_new_session=True,
                    limit=_STREAM_LIMIT,
                )
            except OSError as exc:
                _write_line(err_file, f"stageflow: failed to start process: {exc}\n", mask)
                self._logger.error("process_spawn_failed", error=str(exc), workdir=str(workdir))
                return self._outcome(_SPAWN_FAILURE_EXIT_CODE, stdout_path, stderr_path, started)

            assert process.stdout is not None and process.stderr is not None
            pumps = [
                asyncio.create_task(_pump(process.stdout, out_file, "stdout", mask, on_line)),
                asyncio.create_task(_pump(process.stderr, err_file, "stderr", mask, on_line)),
            ]
            wait_task = asyncio.create_task(process.wait())
            cancel_task = (
                asyncio.create_task(cancel_token.wait()) if cancel_token is not None else None
            )
            timed_out = cancelled = False
            try:
                waiters: set[asyncio.Task[Any]] = {wait_task}
                if cancel_task is not None:
                    waiters.add(cancel_task)
                done, _ = await asyncio.wait(
                    waiters, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
                )
                if wait_task not in done:
                    cancelled = cancel_task is not None and cancel_task in done
                    timed_out = not cancelled
                    self._logger.info(
                        "process_terminating",
                        pid=process.pid,
                        reason="cancelled" if cancelled else "timeout",
                    )
                    await self._terminate(process, wait_task)
            finally:
                if process.returncode is None:
                    # Reached only when this coroutine itself is cancelled.
                    _signal_group(process.pid, signal.SIGKILL)
                if cancel_task is not None:
                    cancel_task.cancel()
                    with suppress(asyncio.CancelledError):
                        await cancel_task
                await _drain(pumps)

        if timed_out:
            return self._outcome(
                TIMEOUT_EXIT_CODE, stdout_path, stderr_path, started, timed_out=True
            )
        if cancelled:
            return self._outcome(
                CANCELLED_EXIT_CODE, stdout_path, stderr_path, started, cancelled=True
            )
        return self._outcome(
            _normalize_returncode(wait_task.result()), stdout_path, stderr_path, started
        )

    async def _terminate(
        self, process: asyncio.subprocess.Process, wait_task: asyncio.Task[int]
    ) -> None:
        _signal_group(process.pid, signal.SIGTERM)
        done, _ = await asyncio.wait({wait_task}, timeout=self._kill_grace_seconds)
        if wait_task not in done:
            self._logger.warning("process_kill_escalated", pid=process.pid)
            _signal_group(process.pid, signal.SIGKILL)
            await wait_task

    @staticmethod
    def _outcome(
        exit_code: int,
        stdout_path: Path,
        stderr_path: Path,
        started: float,
        *,
        timed_out: bool = False,
        cancelled: bool = False,
    ) -> ExecutionOutcome:
        return ExecutionOutcome(
            exit_code=exit_code,
            stdout_ref=str(stdout_path),
            stderr_ref=str(stderr_path),
            timed_out=timed_out,
            cancelled=cancelled,
            duration_ms=int((time.monotonic() - started) * 1000),
        )


async def _pump(
    reader: asyncio.StreamReader,
    sink: IO[bytes],
    stream: str,
    mask: Sequence[str],
    on_line: LineCallback | None,
) -> None:
    while True:
        try:
            raw = await reader.readline()
        except ValueError:
            raw = f"[stageflow: line longer than {_STREAM_LIMIT} bytes dropped]\n".encode()
        if not raw:
            return
        text = _write_line(sink, raw.decode("utf-8", errors="replace"), mask)
        if on_line is not None:
            on_line(stream, text.rstrip("\n"))


def _write_line(sink: IO[bytes], text: str, mask: Sequence[str]) -> str:
    masked = mask_secrets(text, mask) if mask else text
    sink.write(masked.encode("utf-8"))
    sink.flush()
    return masked


async def _drain(pumps: list[asyncio.Task[None]]) -> None:
    # Background grandchildren may keep a pipe open after the shell exits.
    _, pending = await asyncio.wait(pumps, timeout=_PUMP_DRAIN_SECONDS)
    for task in pending:
        task.cancel()
    for task in pumps:
        with suppress(asyncio.CancelledError):
            await task


def _signal_group(pid: int, signum: signal.Signals) -> None:
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(pid, signum)


def _normalize_returncode(returncode: int) -> int:
    # Negative return codes mean "killed by signal N"; report the shell convention.
    return 128 - returncode if returncode < 0 else returncode


__all__ = ["LineCallback", "ProcessRunner"]
