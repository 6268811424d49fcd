"""
workflow-orchestrator - structured run logging

File: src/workflow_orchestrator/observability/logging.py

Purpose
- Write one JSON object per log record to ``<log_dir>/<workflow_id>/orchestrator.jsonl``
  (and optionally stdout) without blocking the event loop on file I/O.
- Carry workflow correlation (workflow, node, agent, attempt) onto every record,
  whether it was emitted through stdlib ``logging`` or through ``structlog``.

Behavior
- Records pass through a bounded queue to a listener thread; when the queue is full
  the record is dropped and counted rather than blocking the emitter.
- Extra fields land under ``"fields"``; values under sensitive keys are redacted.
- Only one run sink is active per process; starting a new one shuts the old one down.
"""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import math
import queue
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import Final, cast

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

REDACTED: Final[str] = "***REDACTED***"
LOG_FILENAME: Final[str] = "orchestrator.jsonl"
ROOT_LOGGER_NAME: Final[str] = "workflow_orchestrator"

CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "workflow_id",
    "node_id",
    "agent_id",
    "attempt",
    "event_id",
)

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "private_key",
)

# Attributes every LogRecord has; anything else arrived through ``extra``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "correlation"}

_EMPTY_CONTEXT: Final[Mapping[str, str]] = MappingProxyType({})
_correlation: ContextVar[Mapping[str, str]] = ContextVar(
    "workflow_log_correlation", default=_EMPTY_CONTEXT
)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Where and how one workflow run writes its structured log."""

    workflow_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = ROOT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = LOG_FILENAME
    log_to_stdout: bool = True
    route_structlog: bool = True

    def resolved_level(self) -> int:
        if isinstance(self.level, bool):
            raise ValueError("level must be int or str, got bool")
        if isinstance(self.level, int):
            return self.level
        if not isinstance(self.level, str):
            raise ValueError(f"level must be int or str, got {type(self.level).__name__}")
        named = logging.getLevelName(self.level.strip().upper())
        if not isinstance(named, int):
            raise ValueError(f"unsupported logging level {self.level!r}")
        return named

    def log_path(self) -> Path:
        workflow_id = _non_empty(self.workflow_id, "workflow_id")
        filename = _non_empty(self.log_filename, "log_filename")
        if Path(filename).name != filename:
            raise ValueError("log_filename must not include path separators")
        return Path(self.base_log_dir) / workflow_id / filename


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    workflow_id: str,
    log_dir: Path | str | None = None,
) -> logging.Logger:
    """Start a run sink from an ``[observability]`` config section and return its logger."""
    section = observability_config or {}
    level = section.get("log_level", "INFO")
    directory = log_dir if log_dir is not None else section.get("log_dir", "logs")
    handle = setup_structured_logging(
        LoggingConfig(
            workflow_id=workflow_id,
            base_log_dir=directory if isinstance(directory, (str, Path)) else "logs",
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=bool(section.get("log_to_stdout", True)),
        )
    )
    return handle.logger


class _LossyQueueHandler(logging.handlers.QueueHandler):
    """Snapshot correlation at emit time; drop instead of blocking when the queue is full."""

    def __init__(self, sink: queue.Queue[object], on_drop: Callable[[], None]) -> None:
        super().__init__(sink)
        self._on_drop = on_drop

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        context = _correlation.get()
        if context:
            record.correlation = dict(context)
        return cast("logging.LogRecord", super().prepare(record))

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self._on_drop()


class _RunRecordFormatter(logging.Formatter):
    def __init__(self, workflow_id: str) -> None:
        super().__init__()
        self._workflow_id = workflow_id

    def format(self, record: logging.LogRecord) -> str:
        fields = {
            key: _jsonable(value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        }
        correlation = {"workflow_id": self._workflow_id}
        captured = getattr(record, "correlation", None)
        if isinstance(captured, Mapping):
            correlation.update({str(k): str(v) for k, v in captured.items() if v is not None})
        for key in CORRELATION_KEYS:
            value = fields.pop(key, None)
            if value is not None:
                correlation[key] = str(value)

        line: dict[str, JSONValue] = {
            "timestamp": _utc_millis(record.created),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            **correlation,
        }
        if fields:
            line["fields"] = redact_log_value(fields)
        if record.exc_info is not None:
            line["exception"] = self.formatException(record.exc_info)
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class StructuredLoggingHandle:
    """A running sink: the configured logger, its queue listener and output handlers."""

    def __init__(self, config: LoggingConfig) -> None:
        level = config.resolved_level()
        if config.queue_size <= 0:
            raise ValueError("queue_size must be > 0")
        self.log_path = config.log_path()
        self.workflow_id = self.log_path.parent.name
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        formatter = _RunRecordFormatter(self.workflow_id)
        outputs: list[logging.Handler] = [logging.FileHandler(self.log_path, encoding="utf-8")]
        if config.log_to_stdout:
            outputs.append(logging.StreamHandler())
        for output in outputs:
            output.setLevel(level)
            output.setFormatter(formatter)
        self._outputs = tuple(outputs)

        self._dropped = 0
        self._drop_lock = threading.Lock()
        self._queue: queue.Queue[object] = queue.Queue(maxsize=config.queue_size)
        self._intake = _LossyQueueHandler(self._queue, self._count_drop)
        self._intake.setLevel(level)
        self._listener = logging.handlers.QueueListener(
            self._queue, *outputs, respect_handler_level=True
        )

        self.logger = logging.getLogger(_non_empty(config.logger_name, "logger_name"))
        self.logger.setLevel(level)
        self.logger.propagate = False
        for stale in list(self.logger.handlers):
            self.logger.removeHandler(stale)
            stale.close()

        self._closed = False
        self._close_lock = threading.Lock()
        self._listener.start()
        self.logger.addHandler(self._intake)

    @property
    def dropped_records(self) -> int:
        with self._drop_lock:
            return self._dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        """Wait for queued records to reach the outputs, up to ``timeout_seconds``."""
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for output in self._outputs:
            output.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._close_lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._intake)
            self._intake.close()
            for output in self._outputs:
                output.close()
            self._closed = True

    def _count_drop(self) -> None:
        with self._drop_lock:
            self._dropped += 1


class _ActiveSink:
    """Process-wide slot for the sink that currently owns the run logger."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle: StructuredLoggingHandle | None = None
        self._atexit_registered = False

    def get(self) -> StructuredLoggingHandle | None:
        with self._lock:
            return self._handle

    def replace(self, handle: StructuredLoggingHandle | None) -> StructuredLoggingHandle | None:
        with self._lock:
            previous, self._handle = self._handle, handle
            if handle is not None and not self._atexit_registered:
                atexit.register(shutdown_logging)
                self._atexit_registered = True
        return previous

    def clear_if(self, handle: StructuredLoggingHandle) -> None:
        with self._lock:
            if self._handle is handle:
                self._handle = None


_active = _ActiveSink()


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Start a run sink, replacing any sink that is already active."""
    previous = _active.replace(None)
    if previous is not None:
        previous.shutdown()
    handle = StructuredLoggingHandle(config)
    if config.route_structlog:
        configure_structlog()
    _active.replace(handle)
    return handle


def configure_structlog() -> None:
    """Send ``structlog`` component events through stdlib logging and into the run sink."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    return _active.get()


def flush_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    target = handle if handle is not None else _active.get()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    target = handle if handle is not None else _active.get()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    _active.clear_if(target)


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | int | None) -> Iterator[None]:
    """Bind correlation fields for the enclosed code; ``None`` unbinds a field.

    Fields are visible to stdlib records (through the queue handler) and to
    ``structlog`` through its contextvars.
    """
    merged = dict(_correlation.get())
    bound: dict[str, str] = {}
    unbound: list[str] = []
    for key, value in fields.items():
        if value is None:
            merged.pop(key, None)
            unbound.append(key)
            continue
        bound[key] = merged[key] = _non_empty(str(value), f"correlation value for {key}")

    outer_structlog = structlog.contextvars.get_contextvars()
    token = _correlation.set(MappingProxyType(merged))
    structlog_tokens = structlog.contextvars.bind_contextvars(**bound)
    structlog.contextvars.unbind_contextvars(*unbound)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**structlog_tokens)
        restored = {key: outer_structlog[key] for key in unbound if key in outer_structlog}
        if restored:
            structlog.contextvars.bind_contextvars(**restored)
        _correlation.reset(token)


def redact_log_value(value: JSONValue, *, key_context: str | None = None) -> JSONValue:
    """Replace values stored under sensitive keys, at any depth."""
    if key_context is not None and _is_sensitive(key_context):
        return REDACTED
    if isinstance(value, dict):
        return {key: redact_log_value(item, key_context=key) for key, item in value.items()}
    if isinstance(value, list):
        return [redact_log_value(item) for item in value]
    return value


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(term in lowered for term in _SENSITIVE_KEY_TERMS)


def _non_empty(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        raise ValueError(f"{name} must not be empty")
    return text


def _utc_millis(epoch_seconds: float) -> str:
    stamp = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _jsonable(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_jsonable(item) for item in value), key=repr)
    return repr(value)


__all__ = [
    "CORRELATION_KEYS",
    "JSONScalar",
    "JSONValue",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "redact_log_value",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
