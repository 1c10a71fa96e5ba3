"""Exit-code routing of the process entrypoint."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

import stageflow.ui.cli as cli_module
from stageflow.domain.errors import AbortSignal, ParseError
from stageflow.main import ExitCode, cli_entrypoint

if TYPE_CHECKING:
    from collections.abc import Callable

pytestmark = pytest.mark.unit


def _raising(exc: BaseException) -> Callable[..., int]:
    def run_cli(argv: object = None) -> int:
        raise exc

    return run_cli


def _chained() -> RuntimeError:
    try:
        try:
            raise ParseError("stages[0]", "missing name")
        except ParseError as inner:
            raise RuntimeError("wrapper") from inner
    except RuntimeError as outer:
        return outer


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (ParseError("stages", "empty"), ExitCode.CONFIG_ERROR),
        (FileNotFoundError("stageflow.yml"), ExitCode.CONFIG_ERROR),
        (AbortSignal(reason="received SIGTERM"), ExitCode.ABORTED),
        (KeyboardInterrupt(), ExitCode.ABORTED),
        (_chained(), ExitCode.CONFIG_ERROR),
        (ZeroDivisionError("boom"), ExitCode.INTERNAL_ERROR),
    ],
)
def test_exceptions_route_to_exit_codes(
    monkeypatch: pytest.MonkeyPatch, exc: BaseException, expected: ExitCode
) -> None:
    monkeypatch.setattr(cli_module, "run_cli", _raising(exc))

    assert cli_entrypoint([]) == int(expected)


def test_internal_errors_print_a_traceback(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(cli_module, "run_cli", _raising(ZeroDivisionError("boom")))

    cli_entrypoint([])

    err = capsys.readouterr().err
    assert "Traceback" in err
    assert "ZeroDivisionError: boom" in err


def test_config_errors_print_only_the_message(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(cli_module, "run_cli", _raising(ParseError("stages", "empty")))

    cli_entrypoint([])

    assert capsys.readouterr().err == "stages: empty\n"


@pytest.mark.parametrize(
    ("returned", "expected"),
    [(0, 0), (1, 1), (3, 3), (99, int(ExitCode.INTERNAL_ERROR))],
)
def test_return_codes_are_normalized(
    monkeypatch: pytest.MonkeyPatch, returned: int, expected: int
) -> None:
    monkeypatch.setattr(cli_module, "run_cli", lambda argv=None: returned)

    assert cli_entrypoint([]) == expected


def test_argparse_usage_errors_exit_with_code_2(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint([]) == int(ExitCode.CONFIG_ERROR)
    assert "usage: stageflow" in capsys.readouterr().err
