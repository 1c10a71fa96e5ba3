"""
stageflow - stage environment composition

File: src/stageflow/execution/environment.py

Purpose
- Hold the run's append-only environment overlay and compute, for each
  dispatched stage, the snapshot of it that the stage may observe.
- Compose the full process environment for a leaf and resolve its
  credential bindings.

Functional requirements
- A key is published at most once per run; later publications are dropped.
- A stage sees an entry only when the publisher is not in a different branch
  of a parallel composite the two share. Sequential successors see
  everything their predecessors published.
- Layering, lowest first: pipeline environment, stage environment, built-in
  variables, user run variables, overlay view, credentials.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from stageflow.constants import ENV_FILE_VAR, STAGE_ID_VAR, WORKSPACE_VAR
from stageflow.domain.errors import CredentialError
from stageflow.domain.models import STAGE_ID_SEPARATOR, StageKind

if TYPE_CHECKING:
    from pathlib import Path

    from stageflow.domain.models import RunContext, StageNode

_ENV_LINE = re.compile(r"^(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$")
_QUOTES: Final[tuple[str, ...]] = ('"', "'")


@dataclass(frozen=True, slots=True)
class OverlayEntry:
    sequence: int
    key: str
    value: str
    stage_id: str


class EnvironmentOverlay:
    """Append-only key/value log published by completed stages.

    ``kinds`` maps every stage id to its kind so visibility can be decided
    from the lowest composite shared by publisher and reader.
    """

    def __init__(self, kinds: Mapping[str, StageKind], *, logger: Any | None = None) -> None:
        self._kinds = dict(kinds)
        self._entries: list[OverlayEntry] = []
        self._keys: dict[str, OverlayEntry] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def entries(self) -> tuple[OverlayEntry, ...]:
        return tuple(self._entries)

    def publish(self, stage_id: str, values: Mapping[str, str]) -> list[OverlayEntry]:
        """Append new keys from ``stage_id``; return the entries accepted."""
        accepted: list[OverlayEntry] = []
        for key in sorted(values):
            existing = self._keys.get(key)
            if existing is not None:
                self._logger.warning(
                    "overlay_key_already_published",
                    key=key,
                    stage_id=stage_id,
                    published_by=existing.stage_id,
                )
                continue
            entry = OverlayEntry(len(self._entries) + 1, key, values[key], stage_id)
            self._entries.append(entry)
            self._keys[key] = entry
            accepted.append(entry)
        return accepted

    def view_for(self, stage_id: str) -> dict[str, str]:
        """Overlay snapshot visible to ``stage_id`` at this moment."""
        return {
            entry.key: entry.value
            for entry in self._entries
            if self._visible(publisher=entry.stage_id, reader=stage_id)
        }

    def as_dict(self) -> dict[str, str]:
        return {entry.key: entry.value for entry in self._entries}

    def _visible(self, *, publisher: str, reader: str) -> bool:
        shared = _common_ancestor(publisher, reader)
        if shared is None:
            # Top level is an implicit sequential root.
            return True
        return self._kinds.get(shared) is not StageKind.PARALLEL


def _common_ancestor(left: str, right: str) -> str | None:
    left_parts = left.split(STAGE_ID_SEPARATOR)
    right_parts = right.split(STAGE_ID_SEPARATOR)
    shared: list[str] = []
    # The deepest shared prefix that is a proper ancestor of both.
    for a, b in zip(left_parts[:-1], right_parts[:-1], strict=False):
        if a != b:
            break
        shared.append(a)
    return STAGE_ID_SEPARATOR.join(shared) if shared else None


def read_published(path: Path, *, logger: Any | None = None) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines a stage wrote to its ``STAGEFLOW_ENV`` file."""
    log = logger if logger is not None else structlog.get_logger(__name__)
    if not path.exists():
        return {}
    values: dict[str, str] = {}
    for lineno, raw_line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        match = _ENV_LINE.match(line)
        if match is None:
            log.warning("published_env_line_ignored", path=str(path), line=lineno)
            continue
        key, value = match.group(1), match.group(2).strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in _QUOTES:
            value = value[1:-1]
        values.setdefault(key, value)
    return values


class CredentialResolver(Protocol):
    def resolve(self, handle: str) -> str: ...


class EnvCredentialResolver:
    """Resolves handles through the host environment variable the run context names."""

    def __init__(
        self,
        handles: Mapping[str, str],
        *,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._handles = dict(handles)
        self._environ = os.environ if environ is None else environ

    def resolve(self, handle: str) -> str:
        source = self._handles.get(handle)
        if source is None:
            raise CredentialError(f"unknown credential handle {handle!r}")
        value = self._environ.get(source)
        if value is None or value == "":
            raise CredentialError(
                f"credential {handle!r} is not available: {source} is unset"
            )
        return value


def bind_credentials(node: StageNode, resolver: CredentialResolver) -> dict[str, str]:
    """Resolve ``node.credentials`` (ENV_NAME -> handle) into ENV_NAME -> secret."""
    return {env_name: resolver.resolve(handle) for env_name, handle in node.credentials.items()}


def compose_environment(
    node: StageNode,
    context: RunContext,
    *,
    overlay_view: Mapping[str, str],
    credentials: Mapping[str, str],
    workspace: Path,
    env_file: Path,
    host_environ: Mapping[str, str],
) -> dict[str, str]:
    env: dict[str, str] = dict(host_environ)
    env.update(context.pipeline_environment)
    env.update(node.environment)
    env.update(context.builtin_variables())
    env[STAGE_ID_VAR] = node.id
    env[WORKSPACE_VAR] = str(workspace)
    env.update(context.variables)
    env.update(overlay_view)
    env.update(credentials)
    env[ENV_FILE_VAR] = str(env_file)
    return env


def host_environment(*, inherit: bool, environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Base environment taken from the host: everything, or only ``PATH``."""
    source = os.environ if environ is None else environ
    if inherit:
        return dict(source)
    return {"PATH": source["PATH"]} if "PATH" in source else {}


__all__ = [
    "CredentialResolver",
    "EnvCredentialResolver",
    "EnvironmentOverlay",
    "OverlayEntry",
    "bind_credentials",
    "compose_environment",
    "host_environment",
    "read_published",
]
