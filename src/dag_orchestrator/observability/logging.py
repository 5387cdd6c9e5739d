"""Structured logging setup: queue-backed JSON-lines sink, redaction, structlog wiring.

Library modules log through ``structlog.get_logger(__name__)``.
:func:`setup_structured_logging` routes those events into stdlib ``logging``
so both land in ``<log_dir>/<run_id>/orchestrator.jsonl``. Correlation fields
(``run_id``, ``task_id``, ``tick``) are bound with :func:`correlation_scope`
and promoted to top-level keys; every other keyword lands under ``fields``.
"""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import queue
import re
import sys
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

from dag_orchestrator.domain.models import JSONValue, to_json_value

LogRedactor = Callable[[JSONValue], JSONValue]

_REDACTED: Final[str] = "***REDACTED***"
_LOG_FORMATS: Final[frozenset[str]] = frozenset({"json", "text"})
_CORRELATION_KEYS: Final[tuple[str, ...]] = ("run_id", "task_id", "tick")

_SECRET_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)secret|token|password|passphrase|api_?key|authorization|credential|cookie|private_key"
)
_SECRET_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Configuration for queue-backed structured logging."""

    run_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = "dag_orchestrator"
    level: int | str = "INFO"
    log_format: str = "json"
    queue_size: int = 4096
    log_filename: str = "orchestrator.jsonl"
    log_to_stdout: bool = False
    redact_secrets: bool = True


@dataclass(eq=False)
class StructuredLoggingHandle:
    """One run's logging pipeline; :meth:`shutdown` drains and closes it."""

    logger: logging.Logger
    run_id: str
    log_path: Path
    _queue_handler: _RunQueueHandler
    _listener: logging.handlers.QueueListener
    _sinks: tuple[logging.Handler, ...]
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _closed: bool = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def shutdown(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            # stop() hands every queued record to the sinks before returning.
            self._listener.stop()
            for sink in self._sinks:
                sink.close()


class _ActiveHandle:
    """The process keeps at most one live handle; a new setup retires the old one."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle: StructuredLoggingHandle | None = None

    def get(self) -> StructuredLoggingHandle | None:
        with self._lock:
            return self._handle

    def swap(self, handle: StructuredLoggingHandle | None) -> StructuredLoggingHandle | None:
        with self._lock:
            previous, self._handle = self._handle, handle
            return previous

    def clear_if(self, handle: StructuredLoggingHandle) -> None:
        with self._lock:
            if self._handle is handle:
                self._handle = None


_ACTIVE = _ActiveHandle()


class _RunQueueHandler(logging.handlers.QueueHandler):
    """Never blocks the caller: records are dropped and counted when the queue is full."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # structlog records carry correlation as extras already; plain stdlib
        # records pick it up here, on the emitting thread.
        for key, value in get_correlation_context().items():
            if key in _CORRELATION_KEYS and not hasattr(record, key):
                setattr(record, key, value)
        return super().prepare(record)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1


class _EventFormatter(logging.Formatter):
    def __init__(self, *, run_id: str, redact: LogRedactor, text: bool) -> None:
        super().__init__()
        self._run_id = run_id
        self._redact = redact
        self._text = text

    def format(self, record: logging.LogRecord) -> str:
        event = self._event(record)
        if self._text:
            return _render_text(event)
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _event(self, record: logging.LogRecord) -> dict[str, JSONValue]:
        moment = datetime.fromtimestamp(record.created, tz=UTC)
        event: dict[str, JSONValue] = {
            "timestamp": moment.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "event": _as_text(self._redact(record.getMessage())),
            "run_id": self._run_id,
        }
        fields: dict[str, JSONValue] = {}
        for key, value in vars(record).items():
            if key in _RECORD_ATTRIBUTES or key.startswith("_"):
                continue
            if key in _CORRELATION_KEYS and isinstance(value, (str, int)):
                event[key] = value
            else:
                fields[key] = _loggable(value)
        if fields:
            event["fields"] = self._redact(fields)
        if record.exc_info is not None:
            event["exception"] = _as_text(self._redact(self.formatException(record.exc_info)))
        return event


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
) -> StructuredLoggingHandle:
    """Configure logging from an ``[observability]`` config section."""
    section = observability_config or {}
    base_dir = log_dir if log_dir is not None else section.get("log_dir", "logs")
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base_dir if isinstance(base_dir, (str, Path)) else "logs",
            level=str(section.get("log_level", "INFO")),
            log_format=str(section.get("log_format", "json")),
            log_to_stdout=bool(section.get("log_to_stdout", False)),
            redact_secrets=bool(section.get("redact_secrets", True)),
        )
    )


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Start a logging pipeline for one run, retiring any previous one."""
    run_id = _non_empty(config.run_id, "run_id")
    filename = _non_empty(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    if config.log_format not in _LOG_FORMATS:
        raise ValueError(f"unsupported log_format {config.log_format!r}")
    level = _level_number(config.level)

    previous = _ACTIVE.swap(None)
    if previous is not None:
        previous.shutdown()

    log_path = Path(config.base_log_dir) / run_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)
    redact = default_log_redactor if config.redact_secrets else _keep
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    sinks[0].setFormatter(_EventFormatter(run_id=run_id, redact=redact, text=False))
    if config.log_to_stdout:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(
            _EventFormatter(run_id=run_id, redact=redact, text=config.log_format == "text")
        )
        sinks.append(console)

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _RunQueueHandler(log_queue)
    listener = logging.handlers.QueueListener(log_queue, *sinks)

    logger = logging.getLogger(_non_empty(config.logger_name, "logger_name"))
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False
    logger.addHandler(queue_handler)
    listener.start()
    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        _queue_handler=queue_handler,
        _listener=listener,
        _sinks=tuple(sinks),
    )
    _ACTIVE.swap(handle)
    return handle


def configure_structlog() -> None:
    """Send structlog events through stdlib ``logging``.

    Bound context and keyword fields become ``LogRecord`` extras, which the
    formatter splits into correlation keys and ``fields``.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def shutdown_logging(handle: StructuredLoggingHandle | None = None) -> None:
    target = handle if handle is not None else _ACTIVE.get()
    if target is None:
        return
    target.shutdown()
    _ACTIVE.clear_if(target)


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    return _ACTIVE.get()


def get_correlation_context() -> dict[str, str]:
    return {key: str(value) for key, value in structlog.contextvars.get_contextvars().items()}


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for every event logged in scope.

    ``None`` removes a field inherited from an outer scope; the outer binding
    comes back when the scope exits.
    """
    outer = structlog.contextvars.get_contextvars()
    inner = dict(outer)
    for key, value in fields.items():
        if value is None:
            inner.pop(key, None)
        else:
            inner[key] = _non_empty(value, f"correlation field {key!r}")
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**inner)
    try:
        yield
    finally:
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(**outer)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Deep redaction of secret-looking keys and inline credentials."""
    if isinstance(value, str):
        value = _SECRET_ASSIGNMENT_PATTERN.sub(rf"\1\2{_REDACTED}", value)
        return _BEARER_PATTERN.sub(f"Bearer {_REDACTED}", value)
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: _REDACTED if _SECRET_KEY_PATTERN.search(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _keep(value: JSONValue) -> JSONValue:
    return value


def _loggable(value: object) -> JSONValue:
    try:
        return to_json_value(value)
    except ValueError:
        pass
    if isinstance(value, Mapping):
        return {str(key): _loggable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_loggable(item) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return repr(value)


def _as_text(value: JSONValue) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _render_text(event: Mapping[str, JSONValue]) -> str:
    parts = [f"{event['timestamp']} {str(event['level']):<7} {event['event']}"]
    for key, value in event.items():
        if key in {"timestamp", "level", "event", "logger", "fields"}:
            continue
        parts.append(f"{key}={_as_text(value)}")
    extras = event.get("fields")
    if isinstance(extras, dict):
        parts.extend(f"{key}={_as_text(extras[key])}" for key in sorted(extras))
    return " ".join(parts)


def _non_empty(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value.strip()


def _level_number(value: int | str) -> int:
    if isinstance(value, int):
        return value
    number = logging.getLevelName(value.strip().upper())
    if not isinstance(number, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return number


atexit.register(shutdown_logging)


__all__ = [
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
