"""Executor core, process runner and environment composition for leaf stages."""

from stageflow.execution.environment import (
    CredentialResolver,
    EnvCredentialResolver,
    EnvironmentOverlay,
    OverlayEntry,
    bind_credentials,
    compose_environment,
    host_environment,
    read_published,
)
from stageflow.execution.executor import Executor, ExecutorOptions
from stageflow.execution.process_runner import LineCallback, ProcessRunner

__all__ = [
    "CredentialResolver",
    "EnvCredentialResolver",
    "EnvironmentOverlay",
    "Executor",
    "ExecutorOptions",
    "LineCallback",
    "OverlayEntry",
    "ProcessRunner",
    "bind_credentials",
    "compose_environment",
    "host_environment",
    "read_published",
]
