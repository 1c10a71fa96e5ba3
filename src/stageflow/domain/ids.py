"""Run and artifact identifiers: prefixed, time-sortable ULIDs."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_PREFIX_SEPARATOR: Final[str] = "-"

RUN_ID_PREFIX: Final[str] = "run"
ARTIFACT_ID_PREFIX: Final[str] = "art"
EVENT_ID_PREFIX: Final[str] = "evt"

_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

_RandBytes = Callable[[int], bytes]

__all__ = [
    "ARTIFACT_ID_PREFIX",
    "EVENT_ID_PREFIX",
    "RUN_ID_PREFIX",
    "ULID_LENGTH",
    "generate_artifact_id",
    "generate_event_id",
    "generate_prefixed_id",
    "generate_run_id",
    "generate_ulid",
    "validate_prefixed_id",
    "validate_run_id",
    "validate_ulid",
]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: 0..{ULID_MAX_TIMESTAMP_MS}, got {ts_ms}")
    random_bytes = bytes((randbytes or secrets.token_bytes)(ULID_RANDOM_BYTES))
    if len(random_bytes) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")

    value = (ts_ms << 80) | int.from_bytes(random_bytes, "big")
    chars = ["0"] * ULID_LENGTH
    for index in range(ULID_LENGTH - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[value & 0b11111]
        value >>= 5
    return "".join(chars)


def validate_ulid(value: str) -> None:
    """Raise ``ValueError`` when ``value`` is not a well-formed ULID."""
    _decode(value)


def generate_prefixed_id(prefix: str, *, timestamp_ms: int | None = None) -> str:
    """Generate ``<prefix>-<ulid>``."""
    if not prefix or _PREFIX_SEPARATOR in prefix:
        raise ValueError(f"invalid id prefix {prefix!r}")
    return f"{prefix}{_PREFIX_SEPARATOR}{generate_ulid(timestamp_ms=timestamp_ms)}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    lead = f"{expected_prefix}{_PREFIX_SEPARATOR}"
    if not isinstance(id_str, str) or not id_str.startswith(lead):
        raise ValueError(f"expected id with prefix '{lead}', got {id_str!r}")
    try:
        validate_ulid(id_str[len(lead) :])
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def generate_run_id(*, timestamp_ms: int | None = None) -> str:
    return generate_prefixed_id(RUN_ID_PREFIX, timestamp_ms=timestamp_ms)


def validate_run_id(id_str: str) -> None:
    validate_prefixed_id(id_str, RUN_ID_PREFIX)


def generate_artifact_id() -> str:
    return generate_prefixed_id(ARTIFACT_ID_PREFIX)


def generate_event_id() -> str:
    return generate_prefixed_id(EVENT_ID_PREFIX)


def _decode(value: str) -> int:
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    decoded = 0
    for index, char in enumerate(value):
        digit = _DECODE_TABLE.get(char.upper())
        if digit is None:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")
        decoded = (decoded << 5) | digit
    if decoded >> 128:
        raise ValueError("ulid overflow: value exceeds 128 bits")
    return decoded
