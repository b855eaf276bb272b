"""
Structured logging with call correlation for observability.

Provides JSON-formatted logs with pluggable output handlers. The worker uses
the same logger with a stderr handler, since its stdout carries the readiness
line.
"""

import sys
import time
import json
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Optional, Dict
from enum import Enum


class LogLevel(Enum):
    """Log levels for structured logging."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogEvent(Enum):
    """Standard log events for bridge operations."""

    # Lifecycle
    WORKER_SPAWN = "worker_spawn"
    WORKER_READY = "worker_ready"
    WORKER_STOP = "worker_stop"
    WORKER_OUTPUT = "worker_output"
    STARTUP_ERROR = "startup_error"
    PROCESS_EXIT = "process_exit"
    WATCHDOG_EXPIRED = "watchdog_expired"

    # Calls
    CALL_START = "call_start"
    CALL_END = "call_end"
    CALL_ERROR = "call_error"
    REQUEST_MALFORMED = "request_malformed"

    # Events
    POLL_ERROR = "poll_error"
    EVENT_DISPATCH = "event_dispatch"
    HANDLER_ERROR = "handler_error"


@dataclass
class LogEntry:
    """
    Structured log entry with all context.

    Can be serialized to JSON or passed to custom handlers.
    """

    # Required
    event: str
    level: str
    message: str
    timestamp: float = field(default_factory=time.time)

    # Correlation
    call_id: Optional[str] = None

    # Context
    worker_id: Optional[str] = None
    pid: Optional[int] = None
    handle: Optional[Any] = None
    operation: Optional[str] = None

    # Timing
    duration_ms: Optional[float] = None

    # Status
    success: Optional[bool] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    # Custom metadata
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, omitting None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is not None:
                result[key] = value
        return result

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)


# Type alias for log handler
LogHandler = Callable[[LogEntry], None]


class StructuredLogger:
    """
    Structured logger with pluggable handlers.

    Usage:
        logger = StructuredLogger(
            handler=lambda entry: print(entry.to_json())
        )

        logger.info(LogEvent.WORKER_READY, "Worker ready", pid=1234)
        logger.call_start(call_id="abc123", handle=1, operation="open")

    Integration with ParentWorker:
        worker = ParentWorker.spawn(log_handler=default_pretty_handler)
    """

    def __init__(
        self,
        handler: Optional[LogHandler] = None,
        level: LogLevel = LogLevel.INFO,
        worker_id: Optional[str] = None,
    ):
        self.handler = handler
        self.level = level
        self.worker_id = worker_id
        self.pid: Optional[int] = None
        self._level_order = {
            LogLevel.DEBUG: 0,
            LogLevel.INFO: 1,
            LogLevel.WARN: 2,
            LogLevel.ERROR: 3,
        }

    def set_handler(self, handler: LogHandler):
        """Set or update the log handler."""
        self.handler = handler

    def set_context(self, worker_id: Optional[str] = None, pid: Optional[int] = None):
        """Set default context for all log entries."""
        if worker_id is not None:
            self.worker_id = worker_id
        if pid is not None:
            self.pid = pid

    def _should_log(self, level: LogLevel) -> bool:
        """Check if this level should be logged."""
        return self._level_order.get(level, 0) >= self._level_order.get(self.level, 0)

    def log(
        self,
        event: LogEvent,
        message: str,
        level: LogLevel = LogLevel.INFO,
        **kwargs,
    ):
        """
        Log an event with structured data.

        Args:
            event: The event type (from LogEvent enum)
            message: Human-readable message
            level: Log level (default: INFO)
            **kwargs: Additional fields for LogEntry
        """
        if not self.handler or not self._should_log(level):
            return

        kwargs.setdefault("pid", self.pid)
        entry = LogEntry(
            event=event.value,
            level=level.value,
            message=message,
            worker_id=self.worker_id,
            **kwargs,
        )

        try:
            self.handler(entry)
        except Exception as e:
            # Don't let logging errors break the application
            print(f"Log handler error: {e}", file=sys.stderr)

    def debug(self, event: LogEvent, message: str, **kwargs):
        """Log at DEBUG level."""
        self.log(event, message, level=LogLevel.DEBUG, **kwargs)

    def info(self, event: LogEvent, message: str, **kwargs):
        """Log at INFO level."""
        self.log(event, message, level=LogLevel.INFO, **kwargs)

    def warn(self, event: LogEvent, message: str, **kwargs):
        """Log at WARN level."""
        self.log(event, message, level=LogLevel.WARN, **kwargs)

    def error(self, event: LogEvent, message: str, **kwargs):
        """Log at ERROR level."""
        self.log(event, message, level=LogLevel.ERROR, **kwargs)

    # Convenience methods for common events

    def call_start(self, call_id: str, handle: Any, operation: str):
        """Log a call leaving the request queue."""
        self.debug(
            LogEvent.CALL_START,
            f"Calling {operation}",
            call_id=call_id,
            handle=handle,
            operation=operation,
        )

    def call_end(
        self,
        call_id: str,
        handle: Any,
        operation: str,
        duration_ms: float,
        success: bool = True,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
    ):
        """Log call completion."""
        event = LogEvent.CALL_END if success else LogEvent.CALL_ERROR
        level = LogLevel.DEBUG if success else LogLevel.WARN
        self.log(
            event,
            f"{'Completed' if success else 'Failed'} {operation}",
            level=level,
            call_id=call_id,
            handle=handle,
            operation=operation,
            duration_ms=round(duration_ms, 2),
            success=success,
            error=error,
            error_type=error_type,
        )

    def worker_spawn(self, argv):
        self.info(
            LogEvent.WORKER_SPAWN,
            "Spawning worker process",
            metadata={"argv": list(argv)},
        )

    def worker_ready(self, host: str, port: int):
        self.info(
            LogEvent.WORKER_READY,
            f"Worker ready on {host}:{port}",
            metadata={"host": host, "port": port},
        )

    def worker_stop(self, reason: str = "shutdown"):
        """Log worker stop."""
        self.info(
            LogEvent.WORKER_STOP,
            f"Worker stopped: {reason}",
        )

    def process_exit(self, exit_code: Optional[int]):
        """Log worker process exit."""
        level = LogLevel.INFO if exit_code == 0 else LogLevel.WARN
        self.log(
            LogEvent.PROCESS_EXIT,
            f"Worker process exited with code {exit_code}",
            level=level,
            metadata={"exit_code": exit_code},
        )

    def poll_error(self, error: str):
        self.warn(LogEvent.POLL_ERROR, "Poll failed, retrying next interval", error=error)


def default_json_handler(entry: LogEntry):
    """Default handler that prints JSON to stdout."""
    print(entry.to_json())


def stderr_json_handler(entry: LogEntry):
    """JSON lines on stderr; used by the worker process."""
    print(entry.to_json(), file=sys.stderr, flush=True)


def default_pretty_handler(entry: LogEntry):
    """Default handler that prints human-readable output."""
    timestamp = time.strftime("%H:%M:%S", time.localtime(entry.timestamp))
    level = entry.level.upper().ljust(5)
    prefix = f"[{timestamp}] [{level}]"

    parts = [prefix, entry.event, entry.message]

    if entry.call_id:
        parts.append(f"call={entry.call_id[:8]}")
    if entry.handle is not None:
        parts.append(f"handle={entry.handle}")
    if entry.operation:
        parts.append(f"op={entry.operation}")
    if entry.duration_ms is not None:
        parts.append(f"{entry.duration_ms:.1f}ms")
    if entry.error:
        parts.append(f"error={entry.error}")

    print(" ".join(parts))
