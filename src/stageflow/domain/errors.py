"""
stageflow - error taxonomy

File: src/stageflow/domain/errors.py

Purpose
- One exception family for every failure the engine distinguishes.

Families
- ``ConfigError`` and subclasses: the pipeline definition or configuration is
  invalid; a run never starts. ``ParseError`` names the offending node,
  ``ConditionError`` an unresolvable ``when`` predicate, ``CycleError`` a
  reference cycle between stage templates.
- ``StageExecutionFailure``: a leaf finished with a non-zero exit code.
  ``TimeoutFailure`` is the same outcome with the timed-out flag set.
- ``AbortSignal``: external cancellation. Not a failure; it maps to the
  Aborted terminal state.
- ``NotificationError``: a notify hook could not reach its sink. Recorded on
  the hook result; it never changes the run status.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from stageflow.domain.models import ExecutionOutcome, StageStatus


class StageflowError(Exception):
    """Base class for all stageflow errors."""


class ConfigError(StageflowError, ValueError):
    """Invalid pipeline definition or configuration."""


class ParseError(ConfigError):
    """A pipeline node is malformed."""

    def __init__(self, node: str, reason: str) -> None:
        self.node = node
        self.reason = reason
        super().__init__(f"{node}: {reason}")


class ConditionError(ParseError):
    """A ``when`` predicate is unknown or malformed."""


class CycleError(ParseError):
    """Stage template references form a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = tuple(cycle)
        super().__init__(
            self.cycle[0] if self.cycle else "<templates>",
            "template reference cycle: " + " -> ".join(self.cycle),
        )


class CredentialError(StageflowError):
    """A credential handle could not be resolved for a stage."""


class StageExecutionFailure(StageflowError):
    """A leaf stage step exited non-zero."""

    timed_out = False

    def __init__(self, stage_id: str, outcome: ExecutionOutcome, *, step: int = 0) -> None:
        self.stage_id = stage_id
        self.outcome = outcome
        self.step = step
        super().__init__(self._describe())

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code

    def _describe(self) -> str:
        return f"stage {self.stage_id!r} step {self.step + 1} exited with {self.outcome.exit_code}"


class TimeoutFailure(StageExecutionFailure):
    """A leaf stage exceeded its timeout and was terminated."""

    timed_out = True

    def _describe(self) -> str:
        return f"stage {self.stage_id!r} step {self.step + 1} timed out"


class AbortSignal(StageflowError):
    """The run was cancelled while a stage was in flight."""

    def __init__(self, stage_id: str | None = None, reason: str | None = None) -> None:
        self.stage_id = stage_id
        self.reason = reason
        super().__init__(reason or "run aborted")


class NotificationError(StageflowError, RuntimeError):
    """A notifier could not deliver its message."""


class InvalidTransitionError(StageflowError, RuntimeError):
    """A stage result was moved along an edge the lifecycle forbids."""

    def __init__(self, stage_id: str, current: StageStatus, target: StageStatus) -> None:
        self.stage_id = stage_id
        self.current = current
        self.target = target
        super().__init__(f"stage {stage_id!r}: illegal transition {current} -> {target}")


__all__ = [
    "AbortSignal",
    "ConditionError",
    "ConfigError",
    "CredentialError",
    "CycleError",
    "InvalidTransitionError",
    "NotificationError",
    "ParseError",
    "StageExecutionFailure",
    "StageflowError",
    "TimeoutFailure",
]
