"""
stageflow - stage graph builder

File: src/stageflow/planning/builder.py

Purpose
- Parse a YAML pipeline definition into an immutable
  :class:`~stageflow.domain.models.PipelineDefinition`.

Functional requirements
- Reject malformed definitions with ``ParseError`` naming the node and reason:
  duplicate names in one scope, steps together with children, unknown keys,
  leaf-only keys on composites, bad value types.
- Compile every ``when`` predicate eagerly (``ConditionError``).
- Detect ``use:`` template reference cycles over the whole template graph
  before any expansion (``CycleError``).
- Stage environments inherit from enclosing composites; the child wins.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, Final

import structlog
import yaml

from stageflow.domain.errors import ConfigError, CycleError, ParseError
from stageflow.domain.models import (
    STAGE_ID_SEPARATOR,
    ArtifactKind,
    HookAction,
    HookActionKind,
    HookPhase,
    PipelineDefinition,
    PostHooks,
    ReportDeclaration,
    Severity,
    StageKind,
    StageNode,
    freeze_mapping,
)
from stageflow.planning.conditions import compile_condition
from stageflow.planning.references import PIPELINE_ROOT, ReferenceGraph
from stageflow.utils.hashing import sha256_json

if TYPE_CHECKING:
    from stageflow.planning.conditions import Condition

_TOP_LEVEL_KEYS: Final[frozenset[str]] = frozenset(
    {"name", "environment", "options", "stages", "templates", "post"}
)
_OPTION_KEYS: Final[frozenset[str]] = frozenset({"max_workers", "timeout"})
_CHILD_KEYS: Final[Mapping[str, StageKind]] = {
    "parallel": StageKind.PARALLEL,
    "sequential": StageKind.SEQUENTIAL,
    "stages": StageKind.SEQUENTIAL,
}
_COMMON_STAGE_KEYS: Final[frozenset[str]] = frozenset(
    {"name", "when", "continue_on_error", "continue-on-error", "environment", "use", "steps"}
    | set(_CHILD_KEYS)
)
_LEAF_ONLY_KEYS: Final[frozenset[str]] = frozenset(
    {"timeout", "retry", "workdir", "reports", "credentials"}
)
_HOOK_ACTION_KEYS: Final[frozenset[str]] = frozenset(item.value for item in HookActionKind)
_HOOK_OPTION_KEYS: Final[frozenset[str]] = frozenset({"name", "timeout", "severity"})

_ENV_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_DURATION_RE: Final[re.Pattern[str]] = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$")
_DURATION_UNITS: Final[Mapping[str, float]] = {"": 1.0, "s": 1.0, "m": 60.0, "h": 3600.0}

_DOCUMENT_NODE: Final[str] = "<pipeline>"


def load_pipeline(path: str | Path, *, logger: Any | None = None) -> PipelineDefinition:
    """Read and build the pipeline stored at ``path``."""
    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read pipeline definition {source}: {exc}") from exc
    return parse_pipeline(text, source=str(source), default_name=source.stem, logger=logger)


def parse_pipeline(
    text: str,
    *,
    source: str | None = None,
    default_name: str = "pipeline",
    logger: Any | None = None,
) -> PipelineDefinition:
    """Parse YAML text into a pipeline definition."""
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ParseError(_DOCUMENT_NODE, f"invalid YAML: {exc}") from exc
    return build_pipeline(document, source=source, default_name=default_name, logger=logger)


def build_pipeline(
    document: object,
    *,
    source: str | None = None,
    default_name: str = "pipeline",
    logger: Any | None = None,
) -> PipelineDefinition:
    """Build a pipeline from an already-decoded document."""
    return PipelineBuilder(logger=logger).build(document, source=source, default_name=default_name)


def parse_duration(value: object, *, node: str) -> float:
    """Seconds from ``30``, ``2.5``, ``"90s"``, ``"5m"`` or ``"1h"``."""
    if isinstance(value, bool):
        raise ParseError(node, "timeout must be a number of seconds or a duration string")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str) and (match := _DURATION_RE.match(value)):
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    else:
        raise ParseError(node, f"invalid timeout {value!r}; use seconds or e.g. '90s', '5m', '1h'")
    if seconds <= 0:
        raise ParseError(node, "timeout must be > 0")
    return seconds


class PipelineBuilder:
    """Turns a decoded pipeline document into a stage tree."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._templates: dict[str, Mapping[str, object]] = {}

    def build(
        self,
        document: object,
        *,
        source: str | None = None,
        default_name: str = "pipeline",
    ) -> PipelineDefinition:
        root = _expect_mapping(document, _DOCUMENT_NODE, "pipeline definition")
        _reject_unknown_keys(root, _TOP_LEVEL_KEYS, _DOCUMENT_NODE)

        name = root.get("name", default_name)
        if not isinstance(name, str) or not name.strip():
            raise ParseError("name", "pipeline name must be a non-empty string")

        self._templates = self._parse_templates(root.get("templates"))
        raw_stages = root.get("stages")
        if not isinstance(raw_stages, list) or not raw_stages:
            raise ParseError("stages", "pipeline requires a non-empty 'stages' list")
        self._check_reference_cycles(raw_stages)

        environment = _parse_environment(root.get("environment"), "environment")
        max_workers, default_timeout = self._parse_options(root.get("options"))
        stages = self._build_children(
            raw_stages, parent_id=None, inherited_env=environment, node="stages"
        )
        post = self._parse_post(root.get("post"))

        pipeline = PipelineDefinition(
            name=name.strip(),
            stages=stages,
            environment=freeze_mapping(environment),
            post=post,
            max_workers=max_workers,
            default_timeout_seconds=default_timeout,
            source=source,
            digest=sha256_json(root),
        )
        self._logger.debug(
            "pipeline_built",
            pipeline=pipeline.name,
            source=source,
            stages=sum(1 for _ in pipeline.walk()),
            leaves=sum(1 for _ in pipeline.leaves()),
            digest=pipeline.digest,
        )
        return pipeline

    # -- templates -------------------------------------------------------

    def _parse_templates(self, raw: object) -> dict[str, Mapping[str, object]]:
        if raw is None:
            return {}
        templates = _expect_mapping(raw, "templates", "templates")
        out: dict[str, Mapping[str, object]] = {}
        for key, body in templates.items():
            if not isinstance(key, str) or not key.strip():
                raise ParseError("templates", f"template names must be non-empty strings: {key!r}")
            out[key] = _expect_mapping(body, f"templates.{key}", "template")
        return out

    def _check_reference_cycles(self, raw_stages: list[object]) -> None:
        graph = ReferenceGraph()
        graph.add_node(PIPELINE_ROOT)
        for referrer, body in [(PIPELINE_ROOT, raw_stages), *self._templates.items()]:
            for target in _collect_uses(body):
                if target not in self._templates:
                    node = "stages" if referrer == PIPELINE_ROOT else f"templates.{referrer}"
                    raise ParseError(node, f"unknown template {target!r}")
                graph.add_reference(referrer, target)
        cycles = graph.detect_cycles()
        if cycles:
            raise CycleError(cycles[0])

    def _resolve_template(self, raw: Mapping[str, object], node: str) -> Mapping[str, object]:
        if "use" not in raw:
            return raw
        template_name = raw["use"]
        if not isinstance(template_name, str) or template_name not in self._templates:
            raise ParseError(node, f"unknown template {template_name!r}")
        base = dict(self._resolve_template(self._templates[template_name], node))
        base.setdefault("name", template_name)
        overrides = {key: value for key, value in raw.items() if key != "use"}
        base.update(overrides)
        return base

    # -- stages ----------------------------------------------------------

    def _build_children(
        self,
        raw_children: object,
        *,
        parent_id: str | None,
        inherited_env: Mapping[str, str],
        node: str,
    ) -> tuple[StageNode, ...]:
        if not isinstance(raw_children, list) or not raw_children:
            raise ParseError(node, "expected a non-empty list of stages")
        seen: set[str] = set()
        children: list[StageNode] = []
        for index, raw_child in enumerate(raw_children):
            child = self._build_stage(
                raw_child,
                parent_id=parent_id,
                inherited_env=inherited_env,
                node=f"{node}[{index}]",
            )
            if child.name in seen:
                raise ParseError(child.id, f"duplicate stage name {child.name!r} in the same scope")
            seen.add(child.name)
            children.append(child)
        return tuple(children)

    def _build_stage(
        self,
        raw_stage: object,
        *,
        parent_id: str | None,
        inherited_env: Mapping[str, str],
        node: str,
    ) -> StageNode:
        raw = self._resolve_template(_expect_mapping(raw_stage, node, "stage"), node)
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ParseError(node, "stage requires a non-empty 'name'")
        name = name.strip()
        if STAGE_ID_SEPARATOR in name:
            raise ParseError(node, f"stage name {name!r} must not contain '{STAGE_ID_SEPARATOR}'")
        stage_id = name if parent_id is None else f"{parent_id}{STAGE_ID_SEPARATOR}{name}"

        _reject_unknown_keys(raw, _COMMON_STAGE_KEYS | _LEAF_ONLY_KEYS, stage_id)
        body_keys = [key for key in ("steps", *_CHILD_KEYS) if key in raw]
        if len(body_keys) > 1:
            raise ParseError(
                stage_id,
                "stage must define exactly one of steps/parallel/sequential, got "
                + ", ".join(body_keys),
            )
        if not body_keys:
            raise ParseError(stage_id, "stage must define one of steps, parallel, or sequential")
        body_key = body_keys[0]

        environment = dict(inherited_env)
        environment.update(_parse_environment(raw.get("environment"), f"{stage_id}.environment"))
        when = self._parse_when(raw.get("when"), stage_id)
        continue_on_error = _parse_continue_on_error(raw, stage_id)

        if body_key != "steps":
            leaf_keys = sorted(key for key in _LEAF_ONLY_KEYS if key in raw)
            if leaf_keys:
                raise ParseError(
                    stage_id,
                    f"keys only valid on leaf stages: {', '.join(leaf_keys)}",
                )
            children = self._build_children(
                raw[body_key],
                parent_id=stage_id,
                inherited_env=environment,
                node=stage_id,
            )
            return StageNode(
                id=stage_id,
                name=name,
                kind=_CHILD_KEYS[body_key],
                children=children,
                when=when,
                continue_on_error=continue_on_error,
                environment=freeze_mapping(environment),
            )

        try:
            return StageNode(
                id=stage_id,
                name=name,
                kind=StageKind.LEAF,
                steps=_parse_steps(raw["steps"], stage_id),
                when=when,
                continue_on_error=continue_on_error,
                timeout_seconds=(
                    parse_duration(raw["timeout"], node=f"{stage_id}.timeout")
                    if raw.get("timeout") is not None
                    else None
                ),
                retry=_parse_retry(raw.get("retry", 1), stage_id),
                environment=freeze_mapping(environment),
                workdir=_parse_workdir(raw.get("workdir"), stage_id),
                reports=_parse_reports(raw.get("reports"), stage_id),
                credentials=freeze_mapping(_parse_credentials(raw.get("credentials"), stage_id)),
            )
        except ValueError as exc:
            if isinstance(exc, ConfigError):
                raise
            raise ParseError(stage_id, str(exc)) from exc

    def _parse_when(self, raw: object, stage_id: str) -> Condition | None:
        if raw is None:
            return None
        return compile_condition(raw, node=f"{stage_id}.when")

    # -- options and hooks ----------------------------------------------

    def _parse_options(self, raw: object) -> tuple[int | None, float | None]:
        if raw is None:
            return None, None
        options = _expect_mapping(raw, "options", "options")
        _reject_unknown_keys(options, _OPTION_KEYS, "options")
        max_workers = options.get("max_workers")
        if max_workers is not None:
            if isinstance(max_workers, bool) or not isinstance(max_workers, int) or max_workers < 0:
                raise ParseError("options.max_workers", "max_workers must be an integer >= 0")
            max_workers = max_workers or None
        timeout = options.get("timeout")
        default_timeout = (
            parse_duration(timeout, node="options.timeout") if timeout is not None else None
        )
        return max_workers, default_timeout

    def _parse_post(self, raw: object) -> PostHooks:
        if raw is None:
            return PostHooks()
        post = _expect_mapping(raw, "post", "post hooks")
        phases = {phase.value for phase in HookPhase}
        _reject_unknown_keys(post, frozenset(phases), "post")
        parsed: dict[str, tuple[HookAction, ...]] = {}
        for phase in HookPhase:
            items = post.get(phase.value)
            if items is None:
                continue
            node = f"post.{phase.value}"
            if not isinstance(items, list):
                items = [items]
            parsed[phase.value] = tuple(
                _parse_hook_action(item, f"{node}[{index}]") for index, item in enumerate(items)
            )
        return PostHooks(**parsed)


# ---------------------------------------------------------------------------
# Field parsers
# ---------------------------------------------------------------------------


def _collect_uses(raw: object) -> list[str]:
    """Template names referenced anywhere in ``raw`` (a stage, template, or list)."""
    found: list[str] = []
    pending: list[object] = [raw]
    while pending:
        item = pending.pop()
        if isinstance(item, list):
            pending.extend(item)
            continue
        if not isinstance(item, Mapping):
            continue
        use = item.get("use")
        if isinstance(use, str):
            found.append(use)
        for key in _CHILD_KEYS:
            if isinstance(item.get(key), list):
                pending.append(item[key])
    return found


def _parse_environment(raw: object, node: str) -> dict[str, str]:
    if raw is None:
        return {}
    mapping = _expect_mapping(raw, node, "environment")
    out: dict[str, str] = {}
    for key, value in mapping.items():
        if not isinstance(key, str) or not _ENV_NAME_RE.match(key):
            raise ParseError(node, f"invalid environment variable name {key!r}")
        out[key] = _env_scalar(value, f"{node}.{key}")
    return out


def _env_scalar(value: object, node: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ParseError(node, f"environment values must be scalars, got {type(value).__name__}")


def _parse_continue_on_error(raw: Mapping[str, object], node: str) -> bool:
    values = [raw[key] for key in ("continue_on_error", "continue-on-error") if key in raw]
    if not values:
        return False
    if len(values) > 1:
        raise ParseError(node, "use only one of continue_on_error / continue-on-error")
    if not isinstance(values[0], bool):
        raise ParseError(node, "continue_on_error must be a boolean")
    return values[0]


def _parse_steps(raw: object, node: str) -> tuple[str, ...]:
    items = [raw] if isinstance(raw, str) else raw
    if not isinstance(items, list) or not items:
        raise ParseError(node, "steps must be a command string or a non-empty list of commands")
    steps: list[str] = []
    for index, item in enumerate(items):
        if not isinstance(item, str) or not item.strip():
            raise ParseError(node, f"steps[{index}] must be a non-empty command string")
        steps.append(item)
    return tuple(steps)


def _parse_retry(raw: object, node: str) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 1:
        raise ParseError(node, "retry must be an integer attempt count >= 1")
    return raw


def _parse_workdir(raw: object, node: str) -> str | None:
    if raw is None:
        return None
    if not isinstance(raw, str) or not raw.strip():
        raise ParseError(node, "workdir must be a non-empty relative path")
    path = PurePosixPath(raw)
    if path.is_absolute() or ".." in path.parts:
        raise ParseError(node, f"workdir must stay inside the workspace: {raw!r}")
    return raw


def _parse_reports(raw: object, node: str) -> tuple[ReportDeclaration, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ParseError(node, "reports must be a list of {kind, path} mappings")
    reports: list[ReportDeclaration] = []
    allowed_kinds = ", ".join(kind.value for kind in ArtifactKind)
    for index, item in enumerate(raw):
        item_node = f"{node}.reports[{index}]"
        entry = _expect_mapping(item, item_node, "report")
        _reject_unknown_keys(entry, frozenset({"kind", "path"}), item_node)
        try:
            kind = ArtifactKind(entry.get("kind"))
        except ValueError as exc:
            raise ParseError(item_node, f"report kind must be one of: {allowed_kinds}") from exc
        pattern = entry.get("path")
        if not isinstance(pattern, str) or not pattern.strip():
            raise ParseError(item_node, "report path must be a non-empty glob")
        posix = PurePosixPath(pattern)
        if posix.is_absolute() or ".." in posix.parts:
            raise ParseError(item_node, f"report path must be relative to the workdir: {pattern!r}")
        reports.append(ReportDeclaration(kind=kind, pattern=pattern))
    return tuple(reports)


def _parse_credentials(raw: object, node: str) -> dict[str, str]:
    if raw is None:
        return {}
    mapping = _expect_mapping(raw, f"{node}.credentials", "credentials")
    out: dict[str, str] = {}
    for env_name, handle in mapping.items():
        if not isinstance(env_name, str) or not _ENV_NAME_RE.match(env_name):
            raise ParseError(node, f"invalid credential variable name {env_name!r}")
        if not isinstance(handle, str) or not handle.strip():
            raise ParseError(node, f"credential {env_name!r} must name a handle")
        out[env_name] = handle.strip()
    return out


def _parse_hook_action(raw: object, node: str) -> HookAction:
    if isinstance(raw, str):
        if not raw.strip():
            raise ParseError(node, "hook command must not be empty")
        return HookAction(name=_first_line(raw), kind=HookActionKind.RUN, command=raw)
    entry = _expect_mapping(raw, node, "hook")
    _reject_unknown_keys(entry, _HOOK_ACTION_KEYS | _HOOK_OPTION_KEYS, node)
    actions = [key for key in _HOOK_ACTION_KEYS if key in entry]
    if len(actions) != 1:
        raise ParseError(node, "hook must define exactly one of: run, notify, clean_workspace")
    kind = HookActionKind(actions[0])
    value = entry[kind.value]
    timeout = entry.get("timeout")
    timeout_seconds = (
        parse_duration(timeout, node=f"{node}.timeout") if timeout is not None else None
    )
    try:
        severity = Severity(entry.get("severity", Severity.INFO.value))
    except ValueError as exc:
        raise ParseError(node, "severity must be one of: info, warning, error") from exc

    command: str | None = None
    message: str | None = None
    if kind is HookActionKind.CLEAN_WORKSPACE:
        if value is not True:
            raise ParseError(node, "clean_workspace must be true")
        default_name = "clean workspace"
    elif not isinstance(value, str) or not value.strip():
        raise ParseError(node, f"{kind.value} requires a non-empty string")
    elif kind is HookActionKind.RUN:
        command = value
        default_name = _first_line(value)
    else:
        message = value
        default_name = f"notify {severity.value}"

    name = entry.get("name", default_name)
    if not isinstance(name, str) or not name.strip():
        raise ParseError(node, "hook name must be a non-empty string")
    return HookAction(
        name=name.strip(),
        kind=kind,
        command=command,
        message=message,
        severity=severity,
        timeout_seconds=timeout_seconds,
    )


def _first_line(command: str) -> str:
    line = command.strip().splitlines()[0] if command.strip() else command
    return line if len(line) <= 60 else f"{line[:57]}..."


def _expect_mapping(value: object, node: str, what: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise ParseError(node, f"{what} must be a mapping, got {type(value).__name__}")
    return value


def _reject_unknown_keys(mapping: Mapping[str, object], allowed: frozenset[str], node: str) -> None:
    unknown = sorted(str(key) for key in mapping if key not in allowed)
    if unknown:
        raise ParseError(node, f"unknown keys: {', '.join(unknown)}")


__all__ = [
    "PipelineBuilder",
    "build_pipeline",
    "load_pipeline",
    "parse_duration",
    "parse_pipeline",
]
