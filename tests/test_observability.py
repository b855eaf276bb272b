"""
Tests for metrics and structured logging features.
"""

import io
import json
import sys
import os
import time
from contextlib import redirect_stdout

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from ghostwire.core.logging import (
    LogEntry,
    LogEvent,
    LogLevel,
    StructuredLogger,
    default_json_handler,
    default_pretty_handler,
)
from ghostwire.core.metrics import Metrics, MetricsSnapshot


class TestMetrics:
    """Test metrics collection."""

    def test_metrics_creation(self):
        metrics = Metrics()
        snapshot = metrics.snapshot()
        assert isinstance(snapshot, MetricsSnapshot)
        assert snapshot.calls_total == 0
        assert snapshot.calls_success == 0
        assert snapshot.calls_failed == 0

    def test_record_call_success(self):
        metrics = Metrics()

        metrics.enqueue()
        start = metrics.start_call()
        time.sleep(0.01)
        latency = metrics.end_call(start, success=True)

        assert latency > 0
        snapshot = metrics.snapshot()
        assert snapshot.calls_total == 1
        assert snapshot.calls_success == 1
        assert snapshot.calls_failed == 0
        assert snapshot.latency_avg_ms > 0

    def test_record_call_failure(self):
        metrics = Metrics()

        start = metrics.start_call()
        metrics.end_call(start, success=False)

        snapshot = metrics.snapshot()
        assert snapshot.calls_total == 1
        assert snapshot.calls_failed == 1

    def test_latency_percentiles(self):
        metrics = Metrics(max_latency_samples=100)

        for i in range(10):
            start = metrics.start_call()
            time.sleep(0.005 * (i + 1))
            metrics.end_call(start, success=True)

        snapshot = metrics.snapshot()
        assert snapshot.calls_total == 10
        assert snapshot.latency_min_ms < snapshot.latency_p50_ms
        assert snapshot.latency_p50_ms < snapshot.latency_p95_ms
        assert snapshot.latency_p95_ms <= snapshot.latency_max_ms

    def test_queue_depth_tracking(self):
        metrics = Metrics()
        for _ in range(3):
            metrics.enqueue()

        snapshot = metrics.snapshot()
        assert snapshot.queue_depth == 3
        assert snapshot.queue_max_depth == 3

        metrics.start_call()
        metrics.start_call()
        snapshot = metrics.snapshot()
        assert snapshot.queue_depth == 1
        assert snapshot.queue_max_depth == 3

    def test_poll_tracking(self):
        metrics = Metrics()
        metrics.record_poll(success=True, events=4)
        metrics.record_poll(success=False)

        snapshot = metrics.snapshot()
        assert snapshot.polls_total == 2
        assert snapshot.polls_failed == 1
        assert snapshot.events_delivered == 4

    def test_metrics_to_dict(self):
        metrics = Metrics()
        start = metrics.start_call()
        metrics.end_call(start, success=True)
        start = metrics.start_call()
        metrics.end_call(start, success=False)

        data = metrics.to_dict()

        assert set(data) == {"calls", "latency_ms", "queue", "polls"}
        assert data["calls"]["total"] == 2
        assert data["calls"]["error_rate"] == 0.5

    def test_metrics_reset(self):
        metrics = Metrics()
        metrics.enqueue()
        metrics.record_poll(success=False)
        start = metrics.start_call()
        metrics.end_call(start, success=False)

        metrics.reset()

        snapshot = metrics.snapshot()
        assert snapshot.calls_total == 0
        assert snapshot.polls_failed == 0
        assert snapshot.queue_max_depth == 0
        assert snapshot.latency_max_ms == 0.0


class TestStructuredLogger:
    """Test structured logging."""

    def test_logger_creation(self):
        entries = []
        logger = StructuredLogger(handler=entries.append)

        logger.info(LogEvent.WORKER_READY, "Worker ready")

        assert len(entries) == 1
        assert entries[0].event == "worker_ready"
        assert entries[0].message == "Worker ready"
        assert entries[0].level == "info"

    def test_log_levels(self):
        entries = []
        logger = StructuredLogger(handler=entries.append, level=LogLevel.WARN)

        logger.debug(LogEvent.CALL_START, "Debug message")
        logger.info(LogEvent.CALL_START, "Info message")
        logger.warn(LogEvent.CALL_ERROR, "Warn message")
        logger.error(LogEvent.CALL_ERROR, "Error message")

        assert [e.level for e in entries] == ["warn", "error"]

    def test_no_handler_is_silent(self):
        StructuredLogger().info(LogEvent.WORKER_READY, "nobody listens")

    def test_context_is_attached(self):
        entries = []
        logger = StructuredLogger(handler=entries.append, worker_id="w1")
        logger.set_context(pid=4242)

        logger.info(LogEvent.WORKER_READY, "ready")

        assert entries[0].worker_id == "w1"
        assert entries[0].pid == 4242

    def test_log_entry_to_dict(self):
        entry = LogEntry(
            event="call_end",
            level="debug",
            message="Completed open",
            call_id="c-123",
            handle=3,
            operation="open",
            duration_ms=42.5,
            success=True,
        )

        data = entry.to_dict()

        assert data["event"] == "call_end"
        assert data["call_id"] == "c-123"
        assert data["handle"] == 3
        assert data["operation"] == "open"
        assert data["duration_ms"] == 42.5
        assert data["success"] is True
        # None values are omitted
        assert "error" not in data

    def test_log_entry_to_json(self):
        entry = LogEntry(event="call_start", level="debug", message="Calling open", call_id="c-456")
        data = json.loads(entry.to_json())

        assert data["event"] == "call_start"
        assert data["call_id"] == "c-456"

    def test_call_end_failure(self):
        entries = []
        logger = StructuredLogger(handler=entries.append)

        logger.call_end(
            call_id="c-1",
            handle="global",
            operation="injectJs",
            duration_ms=3.14159,
            success=False,
            error="FileNotFoundError: lib.py",
            error_type="FileNotFoundError",
        )

        entry = entries[-1]
        assert entry.event == "call_error"
        assert entry.level == "warn"
        assert entry.duration_ms == 3.14
        assert entry.error_type == "FileNotFoundError"

    def test_process_exit_level(self):
        entries = []
        logger = StructuredLogger(handler=entries.append)

        logger.process_exit(0)
        logger.process_exit(2)

        assert [(e.level, e.metadata["exit_code"]) for e in entries] == [("info", 0), ("warn", 2)]

    def test_handler_errors_do_not_propagate(self, capsys):
        def broken(entry):
            raise RuntimeError("handler down")

        StructuredLogger(handler=broken).info(LogEvent.WORKER_READY, "ready")
        assert "Log handler error: handler down" in capsys.readouterr().err

    def test_default_handlers(self):
        entry = LogEntry(
            event="call_end",
            level="info",
            message="Completed open",
            call_id="0123456789abcdef",
            handle=1,
            operation="open",
            duration_ms=12.0,
        )

        out = io.StringIO()
        with redirect_stdout(out):
            default_json_handler(entry)
            default_pretty_handler(entry)
        json_line, pretty_line = out.getvalue().splitlines()

        assert json.loads(json_line)["operation"] == "open"
        assert "call=01234567" in pretty_line
        assert "handle=1" in pretty_line
        assert "12.0ms" in pretty_line
