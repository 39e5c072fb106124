"""
phase-orchestrator — per-run structured logging.

Purpose
- Write every log record of a run as one canonical JSON object per line to
  ``<log_dir>/<run_id>/orchestrator.jsonl``, optionally mirrored to stderr.
- Route component ``structlog`` loggers into the same sink so decision events
  (``scheduler_task_dispatched``, ``quality_gate_evaluated``, ...) land there.

Functional requirements
- Callers never block on file IO: records pass through a bounded queue drained
  by a ``QueueListener`` thread; overflow is counted, not raised.
- Correlation fields (``run_id``, ``task_id``, ``phase``, ``capability``) come
  from ``structlog.contextvars`` so they follow asyncio tasks and threads.
- Worker artifacts and findings may carry credentials; payloads are redacted
  before they are written.
"""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

JSONValue = str | int | float | bool | None | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"
RUN_LOG_FILENAME: Final[str] = "orchestrator.jsonl"
PACKAGE_LOGGER: Final[str] = "phase_orchestrator"

_CORRELATION_KEYS: Final[frozenset[str]] = frozenset({"run_id", "task_id", "phase", "capability"})
_SENSITIVE_KEY: Final[re.Pattern[str]] = re.compile(
    r"(?i)secret|token|passw|api_?key|authorization|credential|private_key"
)
_INLINE_SECRET: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret)\b(\s*[:=]\s*)[^\s,;]+"
)
_BEARER: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[\w.~+/-]+=*")
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "correlation"}

_active_lock = threading.Lock()
_active: RunLog | None = None
_atexit_registered = False


@dataclass(frozen=True, slots=True)
class RunLogSettings:
    """Where and how one run's log is written."""

    run_id: str
    log_dir: Path | str = Path("logs")
    logger_name: str = PACKAGE_LOGGER
    level: int | str = "INFO"
    queue_size: int = 4096
    filename: str = RUN_LOG_FILENAME
    log_to_stdout: bool = False
    redactor: LogRedactor | None = None

    @classmethod
    def from_observability(
        cls,
        section: Mapping[str, object] | None,
        *,
        run_id: str,
        log_dir: Path | str | None = None,
        logger_name: str = PACKAGE_LOGGER,
    ) -> RunLogSettings:
        """Build settings from a validated ``[observability]`` config section."""
        section = section or {}
        level = section.get("log_level", "INFO")
        directory = log_dir if log_dir is not None else section.get("log_dir", "logs")
        filename = section.get("log_file", RUN_LOG_FILENAME)
        return cls(
            run_id=run_id,
            log_dir=directory if isinstance(directory, (str, Path)) else "logs",
            logger_name=logger_name,
            level=level if isinstance(level, (int, str)) else "INFO",
            filename=filename if isinstance(filename, str) else RUN_LOG_FILENAME,
            log_to_stdout=bool(section.get("log_to_stdout", False)),
        )


class _QueueHandler(logging.handlers.QueueHandler):
    """Stamps correlation context at emit time and drops records on overflow."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._dropped_lock = threading.Lock()
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        record.correlation = {
            key: value
            for key, value in structlog.contextvars.get_contextvars().items()
            if key in _CORRELATION_KEYS and isinstance(value, str) and value
        }
        return super().prepare(record)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self.dropped += 1


class _JsonLinesFormatter(logging.Formatter):
    def __init__(self, run_id: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._run_id = run_id
        self._redactor = redactor

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, JSONValue] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": _as_text(self._redactor(record.getMessage())),
            "run_id": self._run_id,
        }
        line.update(getattr(record, "correlation", None) or {})

        fields: dict[str, JSONValue] = {}
        for key, value in vars(record).items():
            if key in _RECORD_ATTRIBUTES or key.startswith("_"):
                continue
            if key in _CORRELATION_KEYS and isinstance(value, str) and value:
                line[key] = value
                continue
            fields[key] = _to_json(value)
        if fields:
            line["fields"] = self._redactor(fields)

        if record.exc_info is not None:
            line["exception"] = _as_text(self._redactor(self.formatException(record.exc_info)))
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(slots=True)
class RunLog:
    """Live JSON-lines sink for one run; :meth:`close` drains and detaches it."""

    logger: logging.Logger
    run_id: str
    path: Path
    _handler: _QueueHandler = field(repr=False)
    _listener: logging.handlers.QueueListener = field(repr=False)
    _sinks: tuple[logging.Handler, ...] = field(repr=False)
    _closed: bool = field(default=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def dropped(self) -> int:
        return self._handler.dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            # stop() enqueues a sentinel and joins, so everything queued is written first.
            self._listener.stop()
            self.logger.removeHandler(self._handler)
            self._handler.close()
            for sink in self._sinks:
                sink.close()
            self._closed = True


def open_run_log(settings: RunLogSettings) -> RunLog:
    """Attach a fresh run log, closing whichever one was active before."""
    shutdown_logging()
    configure_structlog()

    run_id = _non_empty(settings.run_id, "run_id")
    logger_name = _non_empty(settings.logger_name, "logger_name")
    filename = _non_empty(settings.filename, "filename")
    if Path(filename).name != filename:
        raise ValueError("filename must not contain path separators")
    if settings.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level(settings.level)

    path = Path(settings.log_dir) / run_id / filename
    path.parent.mkdir(parents=True, exist_ok=True)
    formatter = _JsonLinesFormatter(run_id, settings.redactor or default_log_redactor)
    sinks: list[logging.Handler] = [logging.FileHandler(path, encoding="utf-8")]
    if settings.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=settings.queue_size)
    handler = _QueueHandler(log_queue)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(handler)

    run_log = RunLog(
        logger=logger,
        run_id=run_id,
        path=path,
        _handler=handler,
        _listener=listener,
        _sinks=tuple(sinks),
    )
    global _active, _atexit_registered
    with _active_lock:
        _active = run_log
        if not _atexit_registered:
            atexit.register(shutdown_logging)
            _atexit_registered = True
    return run_log


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = PACKAGE_LOGGER,
) -> logging.Logger:
    """Open the run log described by the ``[observability]`` section and return its logger."""
    settings = RunLogSettings.from_observability(
        observability_config, run_id=run_id, log_dir=log_dir, logger_name=logger_name
    )
    return open_run_log(settings).logger


def active_run_log() -> RunLog | None:
    with _active_lock:
        return _active


def shutdown_logging(run_log: RunLog | None = None) -> None:
    """Close ``run_log`` (default: the active one) after writing everything queued."""
    global _active
    with _active_lock:
        target = run_log if run_log is not None else _active
        if target is None:
            return
        if _active is target:
            _active = None
    target.close()


def configure_structlog() -> None:
    """Send component ``structlog`` loggers through stdlib logging as ``extra`` fields."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@contextmanager
def correlation_scope(**fields: str) -> Iterator[None]:
    """Bind correlation fields for every record logged inside the block."""
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask credential-looking keys and inline ``token=...`` / bearer secrets."""
    if isinstance(value, str):
        masked = _INLINE_SECRET.sub(lambda match: f"{match[1]}{match[2]}{REDACTED}", value)
        return _BEARER.sub(f"Bearer {REDACTED}", masked)
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if _SENSITIVE_KEY.search(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _non_empty(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {type(value).__name__}")
    if not value.strip():
        raise ValueError(f"{name} must not be empty")
    return value.strip()


def _level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(str(value).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return resolved


def _as_text(value: JSONValue) -> str:
    if isinstance(value, str):
        return value
    return "" if value is None else json.dumps(value, sort_keys=True, separators=(",", ":"))


def _to_json(value: Any) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_to_json(item) for item in value), key=repr)
    return str(value)


__all__ = [
    "JSONValue",
    "LogRedactor",
    "RunLog",
    "RunLogSettings",
    "active_run_log",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "open_run_log",
    "setup_logging",
    "shutdown_logging",
]
