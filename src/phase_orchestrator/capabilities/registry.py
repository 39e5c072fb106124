"""
phase-orchestrator — typed capability registry.

Purpose
- Map capability names to immutable descriptors that carry the specialist
  worker plus its declared contract (schemas, concurrency and idempotency
  class, default phase, timeout).

Functional requirements
- Registration rejects duplicate names; lookups of absent names raise.
- Reads are safe while another thread registers (lock-protected writes,
  read-only mapping snapshots).
- Input/output payloads can be checked against the descriptor's JSON Schemas.
"""

from __future__ import annotations

import math
import re
import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import jsonschema
import structlog

from phase_orchestrator.constants import DEFAULT_CAPABILITY_PHASE
from phase_orchestrator.domain.errors import CapabilityNotFoundError, DuplicateCapabilityError
from phase_orchestrator.domain.models import IdempotencyClass

if TYPE_CHECKING:
    from phase_orchestrator.capabilities.workers import SpecialistWorker

_CAPABILITY_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_.:-]*$")


def validate_capability_name(name: object) -> str:
    if not isinstance(name, str):
        raise ValueError(f"capability name must be a string, got {type(name).__name__}")
    if _CAPABILITY_NAME_RE.fullmatch(name) is None:
        raise ValueError(f"capability name must match [a-z0-9][a-z0-9_.:-]* (got {name!r})")
    return name


@dataclass(frozen=True, slots=True)
class CapabilityDescriptor:
    """Immutable routing entry for one capability."""

    name: str
    worker: SpecialistWorker
    input_schema: Mapping[str, Any] | None = None
    output_schema: Mapping[str, Any] | None = None
    concurrency_safe: bool = True
    idempotency: IdempotencyClass = IdempotencyClass.RETRIABLE
    phase: str = DEFAULT_CAPABILITY_PHASE
    timeout_seconds: float | None = None
    _input_validator: Any = field(init=False, repr=False, compare=False, default=None)
    _output_validator: Any = field(init=False, repr=False, compare=False, default=None)

    def __post_init__(self) -> None:
        validate_capability_name(self.name)
        if not callable(getattr(self.worker, "invoke", None)) and not callable(self.worker):
            raise ValueError(f"{self.name}: worker must be callable or expose invoke()")
        if not isinstance(self.concurrency_safe, bool):
            raise ValueError(f"{self.name}: concurrency_safe must be a boolean")
        object.__setattr__(self, "idempotency", IdempotencyClass(self.idempotency))
        if not isinstance(self.phase, str) or not self.phase.strip():
            raise ValueError(f"{self.name}: phase must be a non-empty string")
        object.__setattr__(self, "phase", self.phase.strip())
        if self.timeout_seconds is not None:
            timeout = self.timeout_seconds
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
                raise ValueError(f"{self.name}: timeout_seconds must be numeric")
            if not math.isfinite(timeout) or timeout <= 0:
                raise ValueError(f"{self.name}: timeout_seconds must be > 0")
            object.__setattr__(self, "timeout_seconds", float(timeout))
        object.__setattr__(
            self, "_input_validator", _compile_schema(self.name, "input_schema", self.input_schema)
        )
        object.__setattr__(
            self,
            "_output_validator",
            _compile_schema(self.name, "output_schema", self.output_schema),
        )

    @property
    def retriable(self) -> bool:
        return self.idempotency is IdempotencyClass.RETRIABLE

    def input_errors(self, instance: object) -> tuple[str, ...]:
        """Return schema violations of a worker input; empty when valid or unchecked."""
        return _schema_errors(self._input_validator, instance)

    def output_errors(self, instance: object) -> tuple[str, ...]:
        """Return schema violations of a worker artifact; empty when valid or unchecked."""
        return _schema_errors(self._output_validator, instance)

    def with_overrides(
        self, *, phase: str | None = None, timeout_seconds: float | None = None
    ) -> CapabilityDescriptor:
        return replace(
            self,
            phase=self.phase if phase is None else phase,
            timeout_seconds=self.timeout_seconds if timeout_seconds is None else timeout_seconds,
        )


class CapabilityRegistry:
    """Thread-safe name -> descriptor registry."""

    def __init__(
        self,
        descriptors: tuple[CapabilityDescriptor, ...] | list[CapabilityDescriptor] = (),
        *,
        logger: Any | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._descriptors: dict[str, CapabilityDescriptor] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: CapabilityDescriptor) -> CapabilityDescriptor:
        if not isinstance(descriptor, CapabilityDescriptor):
            raise ValueError(
                f"descriptor must be CapabilityDescriptor, got {type(descriptor).__name__}"
            )
        with self._lock:
            if descriptor.name in self._descriptors:
                raise DuplicateCapabilityError(descriptor.name)
            self._descriptors[descriptor.name] = descriptor
        self._logger.debug(
            "capability_registered",
            capability=descriptor.name,
            phase=descriptor.phase,
            concurrency_safe=descriptor.concurrency_safe,
            idempotency=descriptor.idempotency.value,
        )
        return descriptor

    def register_worker(
        self, name: str, worker: SpecialistWorker, **options: Any
    ) -> CapabilityDescriptor:
        """Shorthand for ``register(CapabilityDescriptor(name, worker, **options))``."""
        return self.register(CapabilityDescriptor(name=name, worker=worker, **options))

    def resolve(self, name: str) -> CapabilityDescriptor:
        with self._lock:
            descriptor = self._descriptors.get(name)
        if descriptor is None:
            raise CapabilityNotFoundError(name)
        return descriptor

    def get(self, name: str) -> CapabilityDescriptor | None:
        with self._lock:
            return self._descriptors.get(name)

    def names(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._descriptors))

    def snapshot(self) -> Mapping[str, CapabilityDescriptor]:
        """Read-only point-in-time view of the registry."""
        with self._lock:
            return MappingProxyType(dict(self._descriptors))

    def with_overrides(self, overrides: Mapping[str, Mapping[str, Any]]) -> CapabilityRegistry:
        """Return a new registry with ``[capabilities.<name>]`` config applied.

        Overrides for capabilities that are not registered are ignored.
        """
        updated: list[CapabilityDescriptor] = []
        for name, descriptor in sorted(self.snapshot().items()):
            entry = overrides.get(name)
            if entry:
                descriptor = descriptor.with_overrides(
                    phase=entry.get("phase"), timeout_seconds=entry.get("timeout_seconds")
                )
            updated.append(descriptor)
        return CapabilityRegistry(updated, logger=self._logger)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._descriptors

    def __len__(self) -> int:
        with self._lock:
            return len(self._descriptors)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())


def _compile_schema(
    capability: str, field_name: str, schema: Mapping[str, Any] | None
) -> Any:
    if schema is None:
        return None
    if not isinstance(schema, Mapping):
        raise ValueError(f"{capability}: {field_name} must be a JSON Schema object")
    validator_cls = jsonschema.validators.validator_for(schema)
    try:
        validator_cls.check_schema(schema)
    except jsonschema.SchemaError as exc:
        raise ValueError(f"{capability}: invalid {field_name}: {exc.message}") from exc
    return validator_cls(schema)


def _schema_errors(validator: Any, instance: object) -> tuple[str, ...]:
    if validator is None:
        return ()
    errors = sorted(validator.iter_errors(instance), key=lambda error: list(error.absolute_path))
    return tuple(
        f"{'/'.join(str(part) for part in error.absolute_path) or '<root>'}: {error.message}"
        for error in errors
    )


__all__ = [
    "CapabilityDescriptor",
    "CapabilityRegistry",
    "validate_capability_name",
]
