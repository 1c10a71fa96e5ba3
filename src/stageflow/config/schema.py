"""
stageflow - configuration schema and validation

File: src/stageflow/config/schema.py

Purpose
- Define authoritative defaults for ``stageflow.toml`` and strict validation
  rules with path-addressed issues.

Functional requirements
- Unknown keys are rejected; secret-looking keys are rejected with a hint to
  use an ``*_env`` indirection instead.
- Profile overlays are partial configs validated with the same rules.
- Redacted dumps never reveal env var names that point at secrets.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from stageflow.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_KILL_GRACE_SECONDS,
    DEFAULT_SHELL,
    LOG_DIR,
    STATE_DIR,
    WORKSPACE_DIR,
)
from stageflow.domain.errors import ConfigError

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("ci", "local", "debug")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials", "auth"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
    "webhook_url",
)

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "workspace"),
    ("paths", "state_dir"),
    ("paths", "log_dir"),
)

_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")


class MetaConfig(TypedDict):
    schema_version: int


class ExecutorConfig(TypedDict):
    max_workers: int
    default_timeout_seconds: float
    kill_grace_seconds: float
    inherit_host_env: bool
    shell: str


class PathsConfig(TypedDict):
    workspace: str
    state_dir: str
    log_dir: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_to_stdout: bool
    redact_secrets: bool


class ArtifactsConfig(TypedDict):
    archive: bool


class NotificationsConfig(TypedDict, total=False):
    webhook_url_env: str
    webhook_timeout_seconds: float


class ProfileOverlay(TypedDict, total=False):
    executor: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]
    artifacts: dict[str, object]
    notifications: dict[str, object]


class StageflowConfig(TypedDict):
    meta: MetaConfig
    executor: ExecutorConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    artifacts: ArtifactsConfig
    notifications: NotificationsConfig
    profiles: dict[str, ProfileOverlay]


# ``max_workers = 0`` means unbounded; ``default_timeout_seconds = 0`` means
# stages without their own timeout run without one.
DEFAULT_CONFIG: Final[StageflowConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "executor": {
        "max_workers": 0,
        "default_timeout_seconds": 0.0,
        "kill_grace_seconds": DEFAULT_KILL_GRACE_SECONDS,
        "inherit_host_env": False,
        "shell": DEFAULT_SHELL,
    },
    "paths": {
        "workspace": str(WORKSPACE_DIR),
        "state_dir": str(STATE_DIR),
        "log_dir": str(LOG_DIR),
    },
    "observability": {
        "log_level": "INFO",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "artifacts": {"archive": True},
    "notifications": {"webhook_timeout_seconds": 10.0},
    "profiles": {
        "ci": {
            "executor": {"inherit_host_env": True},
            "observability": {"log_to_stdout": True},
        },
        "local": {
            "artifacts": {"archive": False},
        },
        "debug": {
            "observability": {"log_level": "DEBUG", "log_to_stdout": True},
        },
    },
}

_SECTIONS: Final[tuple[str, ...]] = (
    "executor",
    "paths",
    "observability",
    "artifacts",
    "notifications",
)


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ConfigError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> StageflowConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade stageflow.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade stageflow"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto ``base``; mappings merge, everything else replaces."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the result."""

    materialized = _deep_copy_mapping(config)
    selected = (profile or "").strip()
    if not selected:
        return materialized

    profiles_raw = materialized.get("profiles")
    overlay_raw = profiles_raw.get(selected) if isinstance(profiles_raw, Mapping) else None
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(materialized, overlay_raw), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate a full config and return structured issues."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    selected = active_profile.strip() if isinstance(active_profile, str) else None
    if selected:
        profiles = normalized.get("profiles")
        if not isinstance(profiles, Mapping) or selected not in profiles:
            issues.add("profiles", f"profile {selected!r} is not defined")

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Redacted representation for logs and ``stageflow config``."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    allowed = {"meta", "profiles", *_SECTIONS}
    _reject_unknown_keys(payload, allowed, "", issues)
    _require_keys(payload, allowed - {"profiles"}, "", issues)

    out: dict[str, Any] = {}
    _section(payload, "meta", issues, out, lambda s, p: _validate_meta(s, p, issues))
    for name in _SECTIONS:
        _section(
            payload,
            name,
            issues,
            out,
            lambda s, p, name=name: _SECTION_VALIDATORS[name](s, p, issues, partial=False),
        )

    profiles_raw = payload.get("profiles")
    if profiles_raw is not None:
        profiles_obj = _as_object(profiles_raw, "profiles", issues)
        if profiles_obj is not None:
            out["profiles"] = _validate_profiles(profiles_obj, "profiles", issues)
    return out


def _section(
    payload: Mapping[str, object],
    key: str,
    issues: _IssueCollector,
    out: dict[str, Any],
    validator: Callable[[dict[str, object], str], dict[str, Any]],
) -> None:
    raw = payload.get(key)
    if raw is None:
        return
    section_obj = _as_object(raw, key, issues)
    if section_obj is not None:
        out[key] = validator(section_obj, key)


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_executor(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, *, partial: bool
) -> dict[str, Any]:
    allowed = {
        "max_workers",
        "default_timeout_seconds",
        "kill_grace_seconds",
        "inherit_host_env",
        "shell",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "max_workers" in payload:
        workers = _as_int(payload["max_workers"], _join(path, "max_workers"), issues, minimum=0)
        if workers is not None:
            out["max_workers"] = workers
    if "default_timeout_seconds" in payload:
        timeout = _as_float(
            payload["default_timeout_seconds"],
            _join(path, "default_timeout_seconds"),
            issues,
            minimum=0.0,
        )
        if timeout is not None:
            out["default_timeout_seconds"] = timeout
    if "kill_grace_seconds" in payload:
        grace = _as_float(
            payload["kill_grace_seconds"], _join(path, "kill_grace_seconds"), issues, minimum=0.0
        )
        if grace is not None:
            out["kill_grace_seconds"] = grace
    if "inherit_host_env" in payload:
        inherit = _as_bool(payload["inherit_host_env"], _join(path, "inherit_host_env"), issues)
        if inherit is not None:
            out["inherit_host_env"] = inherit
    if "shell" in payload:
        shell = _as_path_text(payload["shell"], _join(path, "shell"), issues)
        if shell is not None:
            out["shell"] = shell
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, *, partial: bool
) -> dict[str, Any]:
    allowed = {"workspace", "state_dir", "log_dir"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            parsed = _as_path_text(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, *, partial: bool
) -> dict[str, Any]:
    allowed = {"log_level", "log_to_stdout", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        level = _as_enum(
            payload["log_level"], _join(path, "log_level"), issues, allowed_values=_LOG_LEVELS
        )
        if level is not None:
            out["log_level"] = level
    for key in ("log_to_stdout", "redact_secrets"):
        if key in payload:
            flag = _as_bool(payload[key], _join(path, key), issues)
            if flag is not None:
                out[key] = flag
    return out


def _validate_artifacts(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, *, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"archive"}, path, issues)
    if not partial:
        _require_keys(payload, {"archive"}, path, issues)
    out: dict[str, Any] = {}
    if "archive" in payload:
        archive = _as_bool(payload["archive"], _join(path, "archive"), issues)
        if archive is not None:
            out["archive"] = archive
    return out


def _validate_notifications(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, *, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"webhook_url_env", "webhook_timeout_seconds"}, path, issues)
    out: dict[str, Any] = {}
    if "webhook_url_env" in payload:
        env_name = _as_env_name(payload["webhook_url_env"], _join(path, "webhook_url_env"), issues)
        if env_name is not None:
            out["webhook_url_env"] = env_name
    if "webhook_timeout_seconds" in payload:
        timeout = _as_float(
            payload["webhook_timeout_seconds"],
            _join(path, "webhook_timeout_seconds"),
            issues,
            minimum=0.1,
        )
        if timeout is not None:
            out["webhook_timeout_seconds"] = timeout
    return out


_SECTION_VALIDATORS: Final[dict[str, Callable[..., dict[str, Any]]]] = {
    "executor": _validate_executor,
    "paths": _validate_paths,
    "observability": _validate_observability,
    "artifacts": _validate_artifacts,
    "notifications": _validate_notifications,
}


def _validate_profiles(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(payload[profile_name], profile_path, issues)
        if profile_obj is None:
            continue
        _reject_unknown_keys(profile_obj, set(_SECTIONS), profile_path, issues)
        overlay: dict[str, Any] = {}
        for section in _SECTIONS:
            raw = profile_obj.get(section)
            if raw is None:
                continue
            section_path = _join(profile_path, section)
            section_obj = _as_object(raw, section_path, issues)
            if section_obj is not None:
                overlay[section] = _SECTION_VALIDATORS[section](
                    section_obj, section_path, issues, partial=True
                )
        out[profile_name] = overlay
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is not None and "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is not None and not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: STAGEFLOW_WEBHOOK_URL)")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        if _looks_sensitive_key(key):
            issues.add(
                _join(path, key),
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    return any(token in _SENSITIVE_KEY_TOKENS for token in normalized.split("_") if token)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    return key if not path else f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            nested = existing if isinstance(existing, dict) else {}
            _merge_into(nested, value)
            target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in sorted(value):
        item = value[key]
        out[key] = _deep_copy_mapping(item) if isinstance(item, Mapping) else copy.deepcopy(item)
    return out


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>"
            if isinstance(item, str) and _key_is_sensitive_for_redaction(key)
            else _redact_value(item, key)
            for key, item in sorted(value.items())
        }
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


def _key_is_sensitive_for_redaction(key: str) -> bool:
    normalized = _normalize_key(key)
    return normalized.endswith("_url_env") or _looks_sensitive_key(normalized)


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "ProfileOverlay",
    "StageflowConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
