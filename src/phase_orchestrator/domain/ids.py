"""Identifiers: sortable ULID-based run/event ids and deterministic task/finding ids.

Run and event ids are ``<prefix>-<ULID>`` so they sort by creation time. Task
and finding ids are derived from per-run sequence numbers so an identical goal
always yields the same graph (``t01-design``, ``f-0001``).
"""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
RUN_ID_PREFIX: Final[str] = "run"
EVENT_ID_PREFIX: Final[str] = "evt"

_TIMESTAMP_BITS: Final[int] = 48
_RANDOM_BYTES: Final[int] = 10
_TASK_ID_RE: Final[re.Pattern[str]] = re.compile(r"t\d{2,}-[a-z0-9][a-z0-9_.:-]*")
_FINDING_ID_RE: Final[re.Pattern[str]] = re.compile(r"f-\d{4,}")

RandomSource = Callable[[int], bytes]


def generate_ulid(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    """26-character Crockford Base32 ULID: 48-bit millisecond clock, 80 random bits."""
    millis = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if isinstance(millis, bool) or not isinstance(millis, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(millis).__name__}")
    if not 0 <= millis < 1 << _TIMESTAMP_BITS:
        raise ValueError(f"timestamp_ms out of range: {millis}")
    entropy = bytes((randbytes or secrets.token_bytes)(_RANDOM_BYTES))
    if len(entropy) != _RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BYTES} bytes")

    value = millis << (8 * _RANDOM_BYTES) | int.from_bytes(entropy, "big")
    return "".join(
        CROCKFORD_BASE32_ALPHABET[(value >> shift) & 0x1F]
        for shift in range(5 * (ULID_LENGTH - 1), -1, -5)
    )


def validate_ulid(value: str) -> None:
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    for index, char in enumerate(value.upper()):
        if char not in CROCKFORD_BASE32_ALPHABET:
            raise ValueError(f"invalid ULID character {value[index]!r} at index {index}")


def generate_run_id(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    return f"{RUN_ID_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_run_id(value: str) -> None:
    _validate_prefixed(value, RUN_ID_PREFIX)


def generate_event_id() -> str:
    return f"{EVENT_ID_PREFIX}-{generate_ulid()}"


def validate_event_id(value: str) -> None:
    _validate_prefixed(value, EVENT_ID_PREFIX)


def task_id(sequence: int, capability: str, *, width: int = 2) -> str:
    """Deterministic task ID, e.g. ``t01-develop``; ``sequence`` is 1-based."""
    if sequence <= 0:
        raise ValueError("sequence must be > 0")
    slug = capability.strip().lower().replace(" ", "_")
    value = f"t{sequence:0{max(width, 2)}d}-{slug}"
    validate_task_id(value)
    return value


def validate_task_id(value: str) -> None:
    if not isinstance(value, str) or _TASK_ID_RE.fullmatch(value) is None:
        raise ValueError(f"task_id must look like 't01-<capability>' (got {value!r})")


def finding_id(sequence: int) -> str:
    """Per-run finding ID in recording order, e.g. ``f-0001``."""
    if sequence <= 0:
        raise ValueError("sequence must be > 0")
    return f"f-{sequence:04d}"


def validate_finding_id(value: str) -> None:
    if not isinstance(value, str) or _FINDING_ID_RE.fullmatch(value) is None:
        raise ValueError(f"finding_id must look like 'f-0001' (got {value!r})")


def _validate_prefixed(value: str, prefix: str) -> None:
    if not isinstance(value, str):
        raise ValueError(f"{prefix} id must be a string, got {type(value).__name__}")
    head, separator, ulid = value.partition("-")
    if head != prefix or not separator:
        raise ValueError(f"expected prefix '{prefix}-' (got {value!r})")
    try:
        validate_ulid(ulid)
    except ValueError as exc:
        raise ValueError(f"invalid {prefix} id {value!r}: {exc}") from exc


__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "EVENT_ID_PREFIX",
    "RUN_ID_PREFIX",
    "ULID_LENGTH",
    "finding_id",
    "generate_event_id",
    "generate_run_id",
    "generate_ulid",
    "task_id",
    "validate_event_id",
    "validate_finding_id",
    "validate_run_id",
    "validate_task_id",
    "validate_ulid",
]
