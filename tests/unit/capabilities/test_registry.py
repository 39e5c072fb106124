"""Unit tests for the capability registry."""

from __future__ import annotations

import threading

import pytest

from phase_orchestrator.capabilities.registry import (
    CapabilityDescriptor,
    CapabilityRegistry,
    validate_capability_name,
)
from phase_orchestrator.capabilities.workers import TaskInput, WorkerResult
from phase_orchestrator.domain.errors import CapabilityNotFoundError, DuplicateCapabilityError
from phase_orchestrator.domain.models import IdempotencyClass


def _worker(task_input: TaskInput) -> WorkerResult:
    return WorkerResult.success({"task": task_input.task_id})


def test_register_resolve_and_duplicate_rejection() -> None:
    registry = CapabilityRegistry()
    descriptor = registry.register_worker("develop", _worker, phase="development")

    assert registry.resolve("develop") is descriptor
    assert "develop" in registry
    assert len(registry) == 1
    assert registry.get("review") is None
    assert list(registry) == ["develop"]

    with pytest.raises(DuplicateCapabilityError, match="already registered"):
        registry.register_worker("develop", _worker)
    with pytest.raises(CapabilityNotFoundError) as error:
        registry.resolve("review")
    assert error.value.capability == "review"
    assert isinstance(error.value, KeyError)


@pytest.mark.parametrize("name", ["Develop", "", "-lint", "run tests"])
def test_capability_names_are_validated(name: str) -> None:
    with pytest.raises(ValueError, match="capability name must"):
        validate_capability_name(name)


def test_descriptor_validation() -> None:
    with pytest.raises(ValueError, match="must be callable"):
        CapabilityDescriptor(name="develop", worker=object())  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="timeout_seconds must be > 0"):
        CapabilityDescriptor(name="develop", worker=_worker, timeout_seconds=0)
    with pytest.raises(ValueError, match="invalid input_schema"):
        CapabilityDescriptor(name="develop", worker=_worker, input_schema={"type": "nope"})

    descriptor = CapabilityDescriptor(
        name="deploy", worker=_worker, idempotency="non_retriable"  # type: ignore[arg-type]
    )
    assert descriptor.idempotency is IdempotencyClass.NON_RETRIABLE
    assert not descriptor.retriable


def test_schema_errors_are_reported_with_paths() -> None:
    descriptor = CapabilityDescriptor(
        name="develop",
        worker=_worker,
        output_schema={
            "type": "object",
            "required": ["diff"],
            "properties": {"diff": {"type": "string"}, "files": {"type": "integer"}},
        },
    )

    assert descriptor.output_errors({"diff": "+1"}) == ()
    errors = descriptor.output_errors({"files": "many"})
    assert any(error.startswith("<root>:") and "'diff'" in error for error in errors)
    assert any(error.startswith("files:") for error in errors)
    assert CapabilityDescriptor(name="x", worker=_worker).input_errors(42) == ()


def test_snapshot_is_read_only_and_stable() -> None:
    registry = CapabilityRegistry()
    registry.register_worker("develop", _worker)
    snapshot = registry.snapshot()
    registry.register_worker("review", _worker)

    assert set(snapshot) == {"develop"}
    with pytest.raises(TypeError):
        snapshot["review"] = snapshot["develop"]  # type: ignore[index]


def test_with_overrides_returns_new_registry() -> None:
    registry = CapabilityRegistry()
    registry.register_worker("develop", _worker, phase="development")
    registry.register_worker("review", _worker, phase="review")

    updated = registry.with_overrides(
        {"develop": {"timeout_seconds": 5.0}, "review": {"phase": "security"}, "absent": {}}
    )

    assert updated is not registry
    assert updated.resolve("develop").timeout_seconds == 5.0
    assert updated.resolve("review").phase == "security"
    assert registry.resolve("review").phase == "review"
    assert updated.names() == ("develop", "review")


def test_concurrent_registration_and_lookup() -> None:
    registry = CapabilityRegistry()
    errors: list[BaseException] = []

    def register(offset: int) -> None:
        try:
            for index in range(50):
                registry.register_worker(f"cap{offset}-{index}", _worker)
                registry.names()
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=register, args=(offset,)) for offset in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(registry) == 200
