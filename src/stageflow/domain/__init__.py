"""
stageflow - domain layer

File: src/stageflow/domain/__init__.py

Purpose
- Types shared by every component: the stage tree, run context, stage results,
  artifacts, hook outcomes, lifecycle events, and the error taxonomy.

Functional requirements
- Domain objects are free of IO side effects.
"""

from stageflow.domain.errors import (
    AbortSignal,
    ConditionError,
    ConfigError,
    CredentialError,
    CycleError,
    InvalidTransitionError,
    ParseError,
    StageExecutionFailure,
    StageflowError,
    TimeoutFailure,
)
from stageflow.domain.events import EventType, PipelineEvent
from stageflow.domain.models import (
    Artifact,
    ArtifactKind,
    ExecutionOutcome,
    HookAction,
    HookActionKind,
    HookPhase,
    HookResult,
    PipelineDefinition,
    PostHooks,
    ReportDeclaration,
    RunContext,
    RunRecord,
    RunStatus,
    Severity,
    SkipReason,
    StageKind,
    StageNode,
    StageResult,
    StageStatus,
)

__all__ = [
    "AbortSignal",
    "Artifact",
    "ArtifactKind",
    "ConditionError",
    "ConfigError",
    "CredentialError",
    "CycleError",
    "EventType",
    "ExecutionOutcome",
    "HookAction",
    "HookActionKind",
    "HookPhase",
    "HookResult",
    "InvalidTransitionError",
    "ParseError",
    "PipelineDefinition",
    "PipelineEvent",
    "PostHooks",
    "ReportDeclaration",
    "RunContext",
    "RunRecord",
    "RunStatus",
    "Severity",
    "SkipReason",
    "StageExecutionFailure",
    "StageKind",
    "StageNode",
    "StageResult",
    "StageStatus",
    "StageflowError",
    "TimeoutFailure",
]
