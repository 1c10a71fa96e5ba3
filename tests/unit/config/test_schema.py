"""
stageflow - unit tests for config schema validation

File: tests/unit/config/test_schema.py

Purpose
- Validate strict checking of ``stageflow.toml`` payloads, profile overlays,
  secret-key rejection, and redaction.
"""

from __future__ import annotations

import pytest

from stageflow.config.schema import (
    BUILTIN_PROFILE_NAMES,
    ConfigSchemaVersion,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

pytestmark = pytest.mark.unit


def _issue_paths(payload: object) -> list[str]:
    return [issue.path for issue in validate_config(payload).issues]


def test_default_config_is_valid_and_isolated() -> None:
    first = default_config()
    first["executor"]["max_workers"] = 99

    result = validate_config(default_config())

    assert result.is_valid
    assert result.config is not None
    assert result.config["executor"]["max_workers"] == 0
    assert set(result.config["profiles"]) == set(BUILTIN_PROFILE_NAMES)


@pytest.mark.parametrize(
    ("overlay", "expected_path"),
    [
        ({"executor": {"max_workers": -1}}, "executor.max_workers"),
        ({"executor": {"max_workers": True}}, "executor.max_workers"),
        ({"executor": {"kill_grace_seconds": float("nan")}}, "executor.kill_grace_seconds"),
        ({"executor": {"shell": "  "}}, "executor.shell"),
        ({"paths": {"workspace": "a\x00b"}}, "paths.workspace"),
        ({"observability": {"log_level": "TRACE"}}, "observability.log_level"),
        ({"observability": {"redact_secrets": "yes"}}, "observability.redact_secrets"),
        ({"artifacts": {"archive": 1}}, "artifacts.archive"),
        ({"notifications": {"webhook_url_env": "lower-case"}}, "notifications.webhook_url_env"),
        (
            {"notifications": {"webhook_timeout_seconds": 0.0}},
            "notifications.webhook_timeout_seconds",
        ),
        ({"executor": {"threads": 4}}, "executor.threads"),
        ({"extras": {}}, "extras"),
        ({"profiles": {"Nightly": {}}}, "profiles.Nightly"),
        ({"profiles": {"nightly": {"meta": {}}}}, "profiles.nightly.meta"),
    ],
)
def test_invalid_values_report_their_path(overlay: dict[str, object], expected_path: str) -> None:
    assert _issue_paths(merge_config(default_config(), overlay)) == [expected_path]


def test_missing_required_fields_are_reported() -> None:
    payload = default_config()
    del payload["executor"]["shell"]
    del payload["artifacts"]

    assert _issue_paths(payload) == ["artifacts", "executor.shell"]


def test_non_mapping_root_is_rejected() -> None:
    result = validate_config(["not", "a", "table"])

    assert not result.is_valid
    assert [issue.path for issue in result.issues] == ["<root>"]


@pytest.mark.parametrize(
    "key",
    ["webhook_url", "apiKey", "auth_token", "password", "client_secret"],
)
def test_embedded_secret_keys_are_rejected_with_hint(key: str) -> None:
    payload = merge_config(default_config(), {"notifications": {key: "value"}})

    result = validate_config(payload)

    assert [issue.path for issue in result.issues] == [f"notifications.{key}"]
    assert "_env" in result.issues[0].message


def test_schema_version_mismatch_carries_migration_guidance() -> None:
    payload = merge_config(default_config(), {"meta": {"schema_version": ConfigSchemaVersion + 1}})

    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(payload)

    (issue,) = excinfo.value.issues
    assert issue.path == "meta.schema_version"
    assert "upgrade stageflow" in issue.message
    assert "older" in migration_guidance(0)
    assert migration_guidance(ConfigSchemaVersion) == "schema version is current"


def test_profile_overlay_merges_partial_sections() -> None:
    base = assert_valid_config(default_config())

    ci = apply_profile_overlay(base, "ci")
    unchanged = apply_profile_overlay(base, None)

    assert ci["executor"]["inherit_host_env"] is True
    assert ci["executor"]["shell"] == base["executor"]["shell"]
    assert ci["observability"]["log_to_stdout"] is True
    assert unchanged == base


def test_unknown_profile_raises_with_profiles_path() -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        apply_profile_overlay(default_config(), "staging")

    assert [issue.path for issue in excinfo.value.issues] == ["profiles"]
    assert "staging" in str(excinfo.value)


def test_active_profile_must_exist() -> None:
    result = validate_config(default_config(), active_profile="staging")

    assert [issue.path for issue in result.issues] == ["profiles"]


def test_merge_config_replaces_scalars_and_merges_tables() -> None:
    merged = merge_config(
        {"executor": {"max_workers": 1, "shell": "/bin/sh"}, "tags": ["a"]},
        {"executor": {"max_workers": 3}, "tags": ["b"]},
    )

    assert merged == {"executor": {"max_workers": 3, "shell": "/bin/sh"}, "tags": ["b"]}


def test_redact_config_hides_secret_indirections_only() -> None:
    payload = merge_config(
        default_config(), {"notifications": {"webhook_url_env": "CHAT_HOOK"}}
    )

    redacted = redact_config(payload)

    assert redacted["notifications"]["webhook_url_env"] == "<redacted>"
    assert redacted["observability"]["redact_secrets"] is True
    assert redacted["executor"] == payload["executor"]
    assert redact_config("not a mapping") == {}
