"""Unit tests for run, artifact and event identifiers."""

from __future__ import annotations

import pytest

from stageflow.domain import ids

pytestmark = pytest.mark.unit


def _zero_bytes(size: int) -> bytes:
    return b"\x00" * size


def _ff_bytes(size: int) -> bytes:
    return b"\xff" * size


def test_generate_ulid_no_collision_10000() -> None:
    generated = {ids.generate_ulid() for _ in range(10_000)}
    assert len(generated) == 10_000


def test_ulid_charset_length_and_reject_invalid_chars() -> None:
    ulid_value = ids.generate_ulid(timestamp_ms=123_456, randbytes=_ff_bytes)
    assert len(ulid_value) == ids.ULID_LENGTH
    assert ulid_value == ulid_value.upper()
    assert all(char in ids.CROCKFORD_BASE32_ALPHABET for char in ulid_value)

    ids.validate_ulid(ulid_value.lower())

    with pytest.raises(ValueError, match="ulid length must be"):
        ids.validate_ulid("0" * 25)
    for invalid in ["I" + "0" * 25, "l" + "0" * 25, "O" + "0" * 25, "u" + "0" * 25]:
        with pytest.raises(ValueError, match="invalid ULID character"):
            ids.validate_ulid(invalid)


def test_ulid_overflow_and_timestamp_boundaries() -> None:
    ids.validate_ulid("7" + "Z" * 25)
    with pytest.raises(ValueError, match="overflow"):
        ids.validate_ulid("8" + "0" * 25)

    lowest = ids.generate_ulid(timestamp_ms=0, randbytes=_zero_bytes)
    assert lowest == "0" * 26
    ids.validate_ulid(lowest)
    highest = ids.generate_ulid(timestamp_ms=ids.ULID_MAX_TIMESTAMP_MS, randbytes=_ff_bytes)
    assert highest == "7" + "Z" * 25

    with pytest.raises(ValueError, match="timestamp_ms out of range"):
        ids.generate_ulid(timestamp_ms=-1)
    with pytest.raises(ValueError, match="exactly"):
        ids.generate_ulid(randbytes=lambda size: b"\x00")


def test_run_ids_sort_by_creation_time() -> None:
    earlier = ids.generate_run_id(timestamp_ms=1_700_000_000_000)
    later = ids.generate_run_id(timestamp_ms=1_700_000_000_001)

    assert earlier.startswith("run-")
    assert earlier < later
    ids.validate_run_id(later)


@pytest.mark.parametrize(
    "generator, prefix",
    [
        (ids.generate_artifact_id, ids.ARTIFACT_ID_PREFIX),
        (ids.generate_event_id, ids.EVENT_ID_PREFIX),
    ],
)
def test_prefixed_generators_validate(generator: object, prefix: str) -> None:
    value = generator()  # type: ignore[operator]

    ids.validate_prefixed_id(value, prefix)
    with pytest.raises(ValueError, match="expected id with prefix"):
        ids.validate_run_id(value)


@pytest.mark.parametrize("value", ["run-", "run-" + "!" * 26, "build-" + "0" * 26, 42])
def test_validate_run_id_rejects_malformed(value: object) -> None:
    with pytest.raises(ValueError):
        ids.validate_run_id(value)  # type: ignore[arg-type]


def test_prefix_rules() -> None:
    with pytest.raises(ValueError, match="invalid id prefix"):
        ids.generate_prefixed_id("my-run")
    with pytest.raises(ValueError, match="invalid id prefix"):
        ids.generate_prefixed_id("")

