"""Simple metrics and telemetry for tempsix.

This module provides:
- Request timing (fed by the API middleware)
- Store operation timing
- Event counters for allocation, delivery and the lifecycle sweep
- Simple in-memory metrics that can be exposed via an endpoint

Metrics are designed to be lightweight and not require external dependencies.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock

logger = logging.getLogger(__name__)

# Store operations slower than this are logged
SLOW_OPERATION_MS = 100


@dataclass
class TimingStats:
    """Statistics for a timed operation."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    def record(self, duration_ms: float) -> None:
        """Record a timing measurement."""
        self.count += 1
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)

    @property
    def avg_ms(self) -> float:
        """Average duration in milliseconds."""
        return self.total_ms / self.count if self.count > 0 else 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "count": self.count,
            "total_ms": round(self.total_ms, 2),
            "avg_ms": round(self.avg_ms, 2),
            "min_ms": round(self.min_ms, 2) if self.count > 0 else 0,
            "max_ms": round(self.max_ms, 2),
        }


@dataclass
class Metrics:
    """Global metrics collector."""

    _lock: Lock = field(default_factory=Lock)
    db_operations: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    request_stats: dict[str, TimingStats] = field(default_factory=lambda: defaultdict(TimingStats))
    counters: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _start_time: float = field(default_factory=time.time)

    def record_db_operation(self, operation: str, duration_ms: float) -> None:
        """Record a database operation timing."""
        with self._lock:
            self.db_operations[operation].record(duration_ms)

    def record_request(self, endpoint: str, duration_ms: float) -> None:
        """Record a request timing."""
        with self._lock:
            self.request_stats[endpoint].record(duration_ms)

    def increment(self, counter: str, amount: int = 1) -> None:
        """Bump an event counter."""
        if amount == 0:
            return
        with self._lock:
            self.counters[counter] += amount

    def get_counter(self, counter: str) -> int:
        with self._lock:
            return self.counters.get(counter, 0)

    def to_dict(self) -> dict:
        """Export metrics as a dictionary."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._start_time, 1),
                "db_operations": {k: v.to_dict() for k, v in self.db_operations.items()},
                "requests": {k: v.to_dict() for k, v in self.request_stats.items()},
                "counters": dict(self.counters),
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self.db_operations.clear()
            self.request_stats.clear()
            self.counters.clear()
            self._start_time = time.time()


# Global metrics instance
metrics = Metrics()


@contextmanager
def timed_db_operation(operation: str):
    """Context manager to time a database operation.

    Usage:
        with timed_db_operation("receive"):
            messages = db.find_messages(...)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_db_operation(operation, duration_ms)
        if duration_ms > SLOW_OPERATION_MS:
            logger.warning(f"Slow DB operation: {operation} took {duration_ms:.1f}ms")
