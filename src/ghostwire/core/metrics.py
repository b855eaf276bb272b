"""
Metrics collection for observability.

Tracks call latency, fault rates, queue depth and long-poll traffic.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Any
from collections import deque
import threading


@dataclass
class MetricsSnapshot:
    """Point-in-time snapshot of all metrics."""

    # Counters
    calls_total: int = 0
    calls_success: int = 0
    calls_failed: int = 0

    # Latency (milliseconds)
    latency_avg_ms: float = 0.0
    latency_p50_ms: float = 0.0
    latency_p95_ms: float = 0.0
    latency_p99_ms: float = 0.0
    latency_min_ms: float = 0.0
    latency_max_ms: float = 0.0

    # Queue
    queue_depth: int = 0
    queue_max_depth: int = 0

    # Long-poll
    polls_total: int = 0
    polls_failed: int = 0
    events_delivered: int = 0

    # Timestamp
    timestamp: float = field(default_factory=time.time)


class Metrics:
    """
    Thread-safe metrics collector for ParentWorker.

    Usage:
        metrics = Metrics()

        metrics.enqueue()
        start = metrics.start_call()
        # ... send call ...
        metrics.end_call(start, success=True)

        snapshot = metrics.snapshot()
        print(f"Avg latency: {snapshot.latency_avg_ms}ms")
    """

    def __init__(self, max_latency_samples: int = 1000):
        self.max_latency_samples = max_latency_samples

        self._lock = threading.Lock()
        self._calls_total = 0
        self._calls_success = 0
        self._calls_failed = 0

        # Queue tracking
        self._queue_depth = 0
        self._queue_max_depth = 0

        # Poll tracking
        self._polls_total = 0
        self._polls_failed = 0
        self._events_delivered = 0

        # Latency samples (circular buffer)
        self._latencies: deque = deque(maxlen=max_latency_samples)

    def enqueue(self):
        """Record a call entering the request queue."""
        with self._lock:
            self._queue_depth += 1
            self._queue_max_depth = max(self._queue_max_depth, self._queue_depth)

    def start_call(self) -> float:
        """
        Start tracking a call as it leaves the queue.

        Returns start timestamp for later end_call() call.
        """
        with self._lock:
            self._calls_total += 1
            self._queue_depth = max(0, self._queue_depth - 1)
        return time.perf_counter()

    def end_call(self, start_time: float, success: bool = True) -> float:
        """
        End tracking a call.

        Returns latency in milliseconds.
        """
        latency_ms = (time.perf_counter() - start_time) * 1000

        with self._lock:
            if success:
                self._calls_success += 1
            else:
                self._calls_failed += 1
            self._latencies.append(latency_ms)

        return latency_ms

    def record_poll(self, success: bool, events: int = 0):
        with self._lock:
            self._polls_total += 1
            if not success:
                self._polls_failed += 1
            self._events_delivered += events

    def snapshot(self) -> MetricsSnapshot:
        """Get a point-in-time snapshot of all metrics."""
        with self._lock:
            latencies = list(self._latencies)

            # Calculate percentiles
            if latencies:
                sorted_latencies = sorted(latencies)
                n = len(sorted_latencies)
                p50_idx = int(n * 0.50)
                p95_idx = int(n * 0.95)
                p99_idx = int(n * 0.99)

                latency_avg = sum(latencies) / n
                latency_p50 = sorted_latencies[min(p50_idx, n - 1)]
                latency_p95 = sorted_latencies[min(p95_idx, n - 1)]
                latency_p99 = sorted_latencies[min(p99_idx, n - 1)]
                latency_min = sorted_latencies[0]
                latency_max = sorted_latencies[-1]
            else:
                latency_avg = latency_p50 = latency_p95 = latency_p99 = 0.0
                latency_min = latency_max = 0.0

            return MetricsSnapshot(
                calls_total=self._calls_total,
                calls_success=self._calls_success,
                calls_failed=self._calls_failed,
                latency_avg_ms=latency_avg,
                latency_p50_ms=latency_p50,
                latency_p95_ms=latency_p95,
                latency_p99_ms=latency_p99,
                latency_min_ms=latency_min,
                latency_max_ms=latency_max,
                queue_depth=self._queue_depth,
                queue_max_depth=self._queue_max_depth,
                polls_total=self._polls_total,
                polls_failed=self._polls_failed,
                events_delivered=self._events_delivered,
            )

    def reset(self):
        """Reset all metrics."""
        with self._lock:
            self._calls_total = 0
            self._calls_success = 0
            self._calls_failed = 0
            self._queue_depth = 0
            self._queue_max_depth = 0
            self._polls_total = 0
            self._polls_failed = 0
            self._events_delivered = 0
            self._latencies.clear()

    def to_dict(self) -> Dict[str, Any]:
        """Get metrics as a dictionary (for logging/serialization)."""
        snapshot = self.snapshot()
        return {
            "calls": {
                "total": snapshot.calls_total,
                "success": snapshot.calls_success,
                "failed": snapshot.calls_failed,
                "error_rate": (
                    snapshot.calls_failed / snapshot.calls_total
                    if snapshot.calls_total > 0
                    else 0.0
                ),
            },
            "latency_ms": {
                "avg": round(snapshot.latency_avg_ms, 2),
                "p50": round(snapshot.latency_p50_ms, 2),
                "p95": round(snapshot.latency_p95_ms, 2),
                "p99": round(snapshot.latency_p99_ms, 2),
                "min": round(snapshot.latency_min_ms, 2),
                "max": round(snapshot.latency_max_ms, 2),
            },
            "queue": {
                "depth": snapshot.queue_depth,
                "max_depth": snapshot.queue_max_depth,
            },
            "polls": {
                "total": snapshot.polls_total,
                "failed": snapshot.polls_failed,
                "events_delivered": snapshot.events_delivered,
            },
        }
