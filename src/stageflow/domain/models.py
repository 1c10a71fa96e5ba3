"""Immutable pipeline model, run context, and per-run result records."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Final

from stageflow.constants import BRANCH_VAR, COMMIT_VAR, RUN_ID_VAR
from stageflow.domain.errors import InvalidTransitionError

if TYPE_CHECKING:
    from stageflow.planning.conditions import Condition

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

STAGE_ID_SEPARATOR: Final[str] = "/"

_EMPTY_MAPPING: Final[Mapping[str, str]] = MappingProxyType({})


class StageKind(StrEnum):
    LEAF = "leaf"
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class StageStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self not in {StageStatus.PENDING, StageStatus.RUNNING}


class RunStatus(StrEnum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class SkipReason(StrEnum):
    CONDITION = "condition"
    FAIL_FAST = "fail_fast"


class ArtifactKind(StrEnum):
    TEST_REPORT = "test-report"
    COVERAGE = "coverage"
    SCAN_REPORT = "scan-report"


class HookPhase(StrEnum):
    ALWAYS = "always"
    SUCCESS = "success"
    FAILURE = "failure"
    ABORTED = "aborted"


class HookActionKind(StrEnum):
    RUN = "run"
    NOTIFY = "notify"
    CLEAN_WORKSPACE = "clean_workspace"


class Severity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_ALLOWED_TRANSITIONS: Final[Mapping[StageStatus, frozenset[StageStatus]]] = MappingProxyType(
    {
        StageStatus.PENDING: frozenset(
            {StageStatus.RUNNING, StageStatus.SKIPPED, StageStatus.ABORTED}
        ),
        StageStatus.RUNNING: frozenset(
            {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.ABORTED}
        ),
    }
)


def utc_now() -> datetime:
    return datetime.now(UTC)


def freeze_mapping(values: Mapping[str, str] | None) -> Mapping[str, str]:
    if not values:
        return _EMPTY_MAPPING
    return MappingProxyType(dict(values))


# ---------------------------------------------------------------------------
# Pipeline definition
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ReportDeclaration:
    """A report a leaf stage promises to write, as a workdir-relative glob."""

    kind: ArtifactKind
    pattern: str


@dataclass(frozen=True, slots=True)
class StageNode:
    """
    One node of the stage tree.

    ``id`` is the ``/``-joined path of names from the top level and is unique in
    the pipeline. A node either carries ``steps`` (leaf) or ``children``
    (parallel/sequential composite), never both. ``environment`` already holds
    the values inherited from enclosing composites.
    """

    id: str
    name: str
    kind: StageKind
    steps: tuple[str, ...] = ()
    children: tuple[StageNode, ...] = ()
    when: Condition | None = None
    continue_on_error: bool = False
    timeout_seconds: float | None = None
    retry: int = 1
    environment: Mapping[str, str] = field(default_factory=dict)
    workdir: str | None = None
    reports: tuple[ReportDeclaration, ...] = ()
    credentials: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind is StageKind.LEAF:
            if self.children:
                raise ValueError(f"{self.id}: leaf stage must not have children")
            if not self.steps:
                raise ValueError(f"{self.id}: leaf stage requires at least one step")
        else:
            if self.steps:
                raise ValueError(f"{self.id}: composite stage must not have steps")
            if not self.children:
                raise ValueError(f"{self.id}: composite stage requires children")
        if self.retry < 1:
            raise ValueError(f"{self.id}: retry must be >= 1")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"{self.id}: timeout must be > 0")

    @property
    def is_leaf(self) -> bool:
        return self.kind is StageKind.LEAF

    def walk(self) -> Iterator[StageNode]:
        """Pre-order traversal of this node and its descendants."""
        stack: list[StageNode] = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def leaves(self) -> Iterator[StageNode]:
        return (node for node in self.walk() if node.is_leaf)


@dataclass(frozen=True, slots=True)
class HookAction:
    name: str
    kind: HookActionKind
    command: str | None = None
    message: str | None = None
    severity: Severity = Severity.INFO
    timeout_seconds: float | None = None


@dataclass(frozen=True, slots=True)
class PostHooks:
    always: tuple[HookAction, ...] = ()
    success: tuple[HookAction, ...] = ()
    failure: tuple[HookAction, ...] = ()
    aborted: tuple[HookAction, ...] = ()

    def plan(self, status: RunStatus) -> tuple[tuple[HookPhase, tuple[HookAction, ...]], ...]:
        """``always`` first, then exactly one outcome-specific phase."""
        outcome = {
            RunStatus.SUCCEEDED: (HookPhase.SUCCESS, self.success),
            RunStatus.FAILED: (HookPhase.FAILURE, self.failure),
            RunStatus.ABORTED: (HookPhase.ABORTED, self.aborted),
        }.get(status)
        if outcome is None:
            raise ValueError(f"post hooks require a terminal run status, got {status}")
        return ((HookPhase.ALWAYS, self.always), outcome)

    def is_empty(self) -> bool:
        return not (self.always or self.success or self.failure or self.aborted)


@dataclass(frozen=True, slots=True)
class PipelineDefinition:
    """A parsed pipeline; immutable for the lifetime of a run."""

    name: str
    stages: tuple[StageNode, ...]
    environment: Mapping[str, str] = field(default_factory=dict)
    post: PostHooks = field(default_factory=PostHooks)
    max_workers: int | None = None
    default_timeout_seconds: float | None = None
    source: str | None = None
    digest: str = ""

    def walk(self) -> Iterator[StageNode]:
        for stage in self.stages:
            yield from stage.walk()

    def leaves(self) -> Iterator[StageNode]:
        return (node for node in self.walk() if node.is_leaf)

    def index(self) -> dict[str, StageNode]:
        return {node.id: node for node in self.walk()}

    def find(self, stage_id: str) -> StageNode:
        for node in self.walk():
            if node.id == stage_id:
                return node
        raise KeyError(stage_id)

    def parents(self) -> dict[str, str | None]:
        """Map each stage id to its enclosing composite id (``None`` at top level)."""
        out: dict[str, str | None] = {}
        for stage in self.stages:
            out[stage.id] = None
            for node in stage.walk():
                for child in node.children:
                    out[child.id] = node.id
        return out


# ---------------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RunContext:
    """
    Per-run inputs. Immutable; ``overlay`` views are produced with
    :meth:`with_overlay` so each dispatched stage sees a fixed snapshot.

    ``credentials`` maps opaque handles to the host environment variable that
    holds the secret. The value itself is only read when a stage binds it.
    """

    branch: str
    commit: str | None = None
    run_id: str | None = None
    variables: Mapping[str, str] = field(default_factory=dict)
    credentials: Mapping[str, str] = field(default_factory=dict)
    pipeline_environment: Mapping[str, str] = field(default_factory=dict)
    overlay: Mapping[str, str] = field(default_factory=dict)

    def lookup(self, key: str) -> str | None:
        """Environment lookup used by conditions: overlay, run variables, pipeline env."""
        for layer in (self.overlay, self.variables, self.pipeline_environment):
            if key in layer:
                return layer[key]
        return None

    def with_overlay(self, overlay: Mapping[str, str]) -> RunContext:
        return replace(self, overlay=freeze_mapping(overlay))

    def bind(self, *, run_id: str, pipeline_environment: Mapping[str, str]) -> RunContext:
        return replace(
            self,
            run_id=run_id,
            pipeline_environment=freeze_mapping(pipeline_environment),
        )

    def builtin_variables(self) -> dict[str, str]:
        out = {BRANCH_VAR: self.branch}
        if self.commit:
            out[COMMIT_VAR] = self.commit
        if self.run_id:
            out[RUN_ID_VAR] = self.run_id
        return out


# ---------------------------------------------------------------------------
# Execution results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    exit_code: int
    stdout_ref: str | None = None
    stderr_ref: str | None = None
    timed_out: bool = False
    cancelled: bool = False
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


@dataclass(frozen=True, slots=True)
class StageResult:
    """
    Status record of one stage within one run.

    Created ``PENDING``; passes through ``RUNNING`` at most once; terminal
    states are final. Use :meth:`transition` for every status change.
    """

    stage_id: str
    kind: StageKind
    status: StageStatus = StageStatus.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    exit_code: int | None = None
    stdout_ref: str | None = None
    stderr_ref: str | None = None
    timed_out: bool = False
    failure_ignored: bool = False
    skip_reason: SkipReason | None = None
    attempts: int = 0
    message: str | None = None

    def transition(
        self,
        status: StageStatus,
        *,
        at: datetime | None = None,
        **changes: object,
    ) -> StageResult:
        allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise InvalidTransitionError(self.stage_id, self.status, status)
        moment = at or utc_now()
        if status is StageStatus.RUNNING:
            changes.setdefault("started_at", moment)
        else:
            changes.setdefault("finished_at", moment)
        return replace(self, status=status, **changes)  # type: ignore[arg-type]

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def is_blocking_failure(self) -> bool:
        return self.status is StageStatus.FAILED and not self.failure_ignored


@dataclass(frozen=True, slots=True)
class Artifact:
    artifact_id: str
    run_id: str
    stage_id: str
    kind: ArtifactKind
    source_path: str
    location: str
    size_bytes: int
    sha256: str
    created_at: datetime


@dataclass(frozen=True, slots=True)
class HookResult:
    phase: HookPhase
    name: str
    kind: HookActionKind
    ok: bool
    started_at: datetime
    finished_at: datetime
    exit_code: int | None = None
    message: str | None = None


@dataclass(slots=True)
class RunRecord:
    """
    Mutable run record, owned by the executor's coordinator for the run.

    ``status`` stays ``RUNNING`` until :meth:`finalize`; the terminal status is
    derived from the stage results.
    """

    run_id: str
    pipeline: PipelineDefinition
    context: RunContext
    results: dict[str, StageResult]
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    artifacts: list[Artifact] = field(default_factory=list)
    hook_results: list[HookResult] = field(default_factory=list)

    def derive_status(self, *, aborted: bool = False) -> RunStatus:
        if aborted:
            return RunStatus.ABORTED
        if any(result.is_blocking_failure for result in self.results.values()):
            return RunStatus.FAILED
        return RunStatus.SUCCEEDED

    def finalize(self, *, aborted: bool = False, at: datetime | None = None) -> RunStatus:
        self.status = self.derive_status(aborted=aborted)
        self.finished_at = at or utc_now()
        return self.status

    def failed_stage_ids(self) -> list[str]:
        return [
            stage_id
            for stage_id, result in self.results.items()
            if result.status is StageStatus.FAILED and self._is_leaf(stage_id)
        ]

    def _is_leaf(self, stage_id: str) -> bool:
        return self.results[stage_id].kind is StageKind.LEAF

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


__all__ = [
    "STAGE_ID_SEPARATOR",
    "Artifact",
    "ArtifactKind",
    "ExecutionOutcome",
    "HookAction",
    "HookActionKind",
    "HookPhase",
    "HookResult",
    "JSONScalar",
    "JSONValue",
    "PipelineDefinition",
    "PostHooks",
    "ReportDeclaration",
    "RunContext",
    "RunRecord",
    "RunStatus",
    "Severity",
    "SkipReason",
    "StageKind",
    "StageNode",
    "StageResult",
    "StageStatus",
    "freeze_mapping",
    "utc_now",
]
