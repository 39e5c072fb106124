"""Unit tests for canonical ID helpers."""

from __future__ import annotations

import pytest

from phase_orchestrator.domain import ids


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
    with pytest.raises(ValueError, match="invalid ULID character"):
        ids.validate_ulid("*" + "0" * 25)


def test_run_ids_sort_by_timestamp() -> None:
    early = ids.generate_run_id(timestamp_ms=1_000, randbytes=_ff_bytes)
    late = ids.generate_run_id(timestamp_ms=2_000, randbytes=_zero_bytes)

    assert early.startswith("run-")
    assert early < late
    ids.validate_run_id(early)
    with pytest.raises(ValueError, match="expected prefix"):
        ids.validate_run_id(early.replace("run-", "evt-"))


def test_task_id_is_zero_padded_and_slugged() -> None:
    assert ids.task_id(1, "develop") == "t01-develop"
    assert ids.task_id(7, "Security Review") == "t07-security_review"
    assert ids.task_id(3, "review", width=3) == "t003-review"
    assert ids.task_id(123, "qa") == "t123-qa"

    with pytest.raises(ValueError, match="sequence must be > 0"):
        ids.task_id(0, "develop")
    with pytest.raises(ValueError, match="task_id must look like"):
        ids.validate_task_id("develop")


def test_finding_id_format() -> None:
    assert ids.finding_id(1) == "f-0001"
    assert ids.finding_id(10_000) == "f-10000"
    ids.validate_finding_id("f-0042")

    with pytest.raises(ValueError, match="sequence must be > 0"):
        ids.finding_id(0)
    with pytest.raises(ValueError, match="finding_id must look like"):
        ids.validate_finding_id("f-1")
