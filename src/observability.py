"""Run metrics for the fact engine, with per-retriever breakdowns."""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Optional

import structlog

logger = structlog.get_logger().bind(source="observability")


def _describe(durations: list[float]) -> dict[str, Any]:
    if not durations:
        return {"count": 0}
    return {
        "count": len(durations),
        "total": sum(durations),
        "avg": sum(durations) / len(durations),
        "min": min(durations),
        "max": max(durations),
    }


class Metrics:
    """Counters and timers keyed by name, optionally labelled with a fact source.

    Totals are always kept; a ``fact_source_id`` label adds a per-retriever
    tally alongside. Updated from scheduler worker threads, hence the lock.
    """

    def __init__(self):
        self._counters: dict[str, int] = defaultdict(int)
        self._by_source: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._timers: dict[str, list[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def counter(self, name: str, value: int = 1, fact_source_id: Optional[str] = None):
        if not value:
            return
        with self._lock:
            self._counters[name] += value
            if fact_source_id is not None:
                self._by_source[fact_source_id][name] += value

    def get(self, name: str, fact_source_id: Optional[str] = None) -> int:
        """Counter total, or one retriever's share of it (0 if never incremented)."""
        with self._lock:
            if fact_source_id is None:
                return self._counters.get(name, 0)
            return self._by_source.get(fact_source_id, {}).get(name, 0)

    @contextmanager
    def timer(self, name: str):
        """Time the block, recording the duration even if it raises."""
        start = time.monotonic()
        try:
            yield
        finally:
            elapsed = time.monotonic() - start
            with self._lock:
                self._timers[name].append(elapsed)

    def summary(self) -> dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            sources = {sid: dict(c) for sid, c in self._by_source.items()}
            timers = {name: list(d) for name, d in self._timers.items()}
        return {
            "counters": counters,
            "timers": {name: _describe(d) for name, d in timers.items()},
            "sources": sources,
        }

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._by_source.clear()
            self._timers.clear()


metrics = Metrics()


def log_run_summary():
    """Log totals, timers and the per-retriever breakdown collected so far."""
    summary = metrics.summary()
    logger.info("run_summary", **summary)
