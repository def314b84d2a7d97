"""Observability: in-process counters, timers and gauges plus tick summary logging."""

import threading
import time
from contextlib import contextmanager
from typing import Any

import structlog

logger = structlog.get_logger().bind(source="observability")


class Metrics:
    """Thread-safe dict-based metrics collector for counters, gauges and timers."""

    def __init__(self, max_samples: int = 500):
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._gauges: dict[str, float] = {}
        self._timers: dict[str, list[float]] = {}
        self._max_samples = max_samples

    def counter(self, name: str, value: int = 1):
        """Increment a counter by the given value."""
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def gauge(self, name: str, value: float):
        """Set a gauge to its latest value."""
        with self._lock:
            self._gauges[name] = value

    @contextmanager
    def timer(self, name: str):
        """Context manager to time an operation and store duration."""
        start = time.monotonic()
        try:
            yield
        finally:
            duration = time.monotonic() - start
            with self._lock:
                samples = self._timers.setdefault(name, [])
                samples.append(duration)
                # keep a bounded window; the loop runs indefinitely
                if len(samples) > self._max_samples:
                    del samples[: len(samples) - self._max_samples]

    def get_counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def summary(self) -> dict[str, Any]:
        """Return a summary of all collected metrics."""
        with self._lock:
            timer_summary = {}
            for name, durations in self._timers.items():
                if durations:
                    timer_summary[name] = {
                        "count": len(durations),
                        "avg": sum(durations) / len(durations),
                        "min": min(durations),
                        "max": max(durations),
                    }
                else:
                    timer_summary[name] = {"count": 0}

            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "timers": timer_summary,
            }

    def reset(self):
        """Clear all metrics."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timers.clear()


# Module-level singleton
metrics = Metrics()


def log_run_summary():
    """Log the current metrics summary via structlog."""
    summary = metrics.summary()
    logger.info("run_summary", **summary)
