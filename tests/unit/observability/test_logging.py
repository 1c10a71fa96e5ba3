"""
stageflow - unit tests for observability logging

File: tests/unit/observability/test_logging.py

Purpose
- Validate structured JSON logging with redaction, correlation metadata,
  the structlog bridge, and queue-backed reliability.
"""

from __future__ import annotations

import asyncio
import json
import logging
import logging.handlers
import threading
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from stageflow.observability.logging import (
    LoggingConfig,
    correlation_scope,
    default_log_redactor,
    get_correlation_context,
    mask_secrets,
    register_secret_values,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()
    structlog.reset_defaults()


def _logger_name() -> str:
    return f"stageflow.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_json_logging_redacts_secrets_and_preserves_correlation_fields(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-redaction", base_log_dir=tmp_path, logger_name=logger_name)
    )
    logger = logging.getLogger(logger_name)

    with correlation_scope(stage_id="Build/Compile", attempt=2):
        logger.info(
            "payload token=tok-FAKE and api_key=sk-FAKE123456789012345",
            extra={"nested": {"password": "hunter2", "safe": "ok"}, "registry_env": "CI_TOKEN"},
        )

    shutdown_logging(handle)

    assert handle.log_path == tmp_path / "run-redaction" / "stageflow.jsonl"
    (first,) = _read_json_lines(handle.log_path)
    assert first["run_id"] == "run-redaction"
    assert first["stage_id"] == "Build/Compile"
    assert first["attempt"] == "2"
    assert first["fields"] == {
        "nested": {"password": "***REDACTED***", "safe": "ok"},
        "registry_env": "CI_TOKEN",
    }

    line = handle.log_path.read_text(encoding="utf-8")
    assert "tok-FAKE" not in line
    assert "sk-FAKE" not in line
    assert "hunter2" not in line


def test_registered_secret_values_are_masked_everywhere(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-masked", base_log_dir=tmp_path, logger_name=logger_name)
    )
    register_secret_values(["s3cr3t-value", "abc"])

    logging.getLogger(logger_name).warning(
        "login used s3cr3t-value", extra={"detail": ["prefix s3cr3t-value suffix", "abc"]}
    )
    shutdown_logging(handle)

    (record,) = _read_json_lines(handle.log_path)
    assert record["message"] == "login used ****"
    assert record["fields"] == {"detail": ["prefix **** suffix", "abc"]}


def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            run_id="run-plain",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            redact_secrets=False,
        )
    )

    logging.getLogger(logger_name).info("token=visible")
    shutdown_logging(handle)

    (record,) = _read_json_lines(handle.log_path)
    assert record["message"] == "token=visible"


def test_setup_logging_bridges_structlog_events(tmp_path: Path) -> None:
    setup_logging(
        {"log_level": "INFO", "redact_secrets": True}, run_id="run-bridge", log_dir=tmp_path
    )
    logger = structlog.get_logger("stageflow.tests.bridge")

    logger.info("stage_started", stage_id="Test/Unit", name="Unit", token="t-123")
    logger.debug("filtered_out")
    shutdown_logging()

    (record,) = _read_json_lines(tmp_path / "run-bridge" / "stageflow.jsonl")
    assert record["message"] == "stage_started"
    assert record["logger"] == "stageflow.tests.bridge"
    assert record["stage_id"] == "Test/Unit"
    assert record["fields"] == {"name_": "Unit", "token": "***REDACTED***"}


async def test_correlation_scopes_do_not_leak_between_tasks() -> None:
    seen: dict[str, dict[str, str]] = {}
    both_inside = asyncio.Event()
    entered = 0

    async def worker(stage_id: str) -> None:
        nonlocal entered
        with correlation_scope(stage_id=stage_id):
            entered += 1
            if entered == 2:
                both_inside.set()
            await both_inside.wait()
            seen[stage_id] = get_correlation_context()

    with correlation_scope(run_id="run-1"):
        await asyncio.gather(worker("A"), worker("B"))
        assert get_correlation_context() == {"run_id": "run-1"}

    assert seen == {
        "A": {"run_id": "run-1", "stage_id": "A"},
        "B": {"run_id": "run-1", "stage_id": "B"},
    }
    assert get_correlation_context() == {}


def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            run_id="run-threaded",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            queue_size=4096,
        )
    )
    logger = logging.getLogger(logger_name)

    total_threads = 8
    per_thread = 40

    def worker(thread_idx: int) -> None:
        for i in range(per_thread):
            logger.info(
                f"thread={thread_idx} index={i} token=tok-secret-{thread_idx}-{i}",
                extra={"api_key": f"sk-FAKE-{thread_idx}-{i}"},
            )

    threads = [threading.Thread(target=worker, args=(idx,)) for idx in range(total_threads)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == total_threads * per_thread
    for line in lines:
        parsed = json.loads(line)
        assert "message" in parsed
        assert "tok-secret" not in line
        assert "sk-FAKE" not in line


def test_queue_handler_non_blocking_and_shutdown_flushes(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            run_id="run-flush",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            queue_size=10_000,
        )
    )
    logger = logging.getLogger(logger_name)

    queue_handlers = [h for h in logger.handlers if isinstance(h, logging.handlers.QueueHandler)]
    assert queue_handlers, "expected queue-backed non-blocking logging"

    expected = 300
    for i in range(expected):
        logger.info("message %s", i)

    shutdown_logging(handle)
    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert handle.dropped_records == 0
    assert handle.is_shutdown
    assert len(lines) == expected


@pytest.mark.parametrize(
    "overrides",
    [
        {"queue_size": 0},
        {"log_filename": "nested/run.jsonl"},
        {"run_id": "  "},
        {"level": "CHATTY"},
    ],
)
def test_invalid_logging_config_is_rejected(tmp_path: Path, overrides: dict[str, object]) -> None:
    fields: dict[str, object] = {"run_id": "run-bad", "base_log_dir": tmp_path}
    fields.update(overrides)

    with pytest.raises(ValueError):
        setup_structured_logging(LoggingConfig(**fields))  # type: ignore[arg-type]


def test_mask_secrets_prefers_longest_match() -> None:
    assert mask_secrets("abcdef and abc", ["abc", "abcdef", ""]) == "**** and ****"


def test_default_redactor_handles_known_token_shapes() -> None:
    redacted = default_log_redactor(
        {
            "note": "sent Bearer abc.def-ghi and ghp_" + "a" * 24,
            "hook": "https://hooks.slack.com/services/T000/B000/XXXX",
            "credential_handle": "registry",
        }
    )

    assert redacted == {
        "note": "sent Bearer ***REDACTED*** and ***REDACTED***",
        "hook": "***REDACTED***",
        "credential_handle": "registry",
    }
