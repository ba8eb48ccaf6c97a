"""In-process pipeline metrics.

Thread-safe counters and millisecond timers, keyed by metric name. Names
used by the pipeline stages:

    ingest_count, ingest_error_count, ingest_latency_ms,
    normalize_count, dto_valid_count, dto_invalid_count, fhir_invalid_count,
    normalize_error_count, transform_time_ms, normalize_batch_time_ms,
    persist_success_count, persist_error_count, persist_duplicate_count,
    persist_time_ms
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Iterator


class PipelineMetrics:
    """Counters and timer observations for one process."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: dict[str, int] = defaultdict(int)
        self._timings: dict[str, list[float]] = defaultdict(list)

    def increment(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[name] += value

    def observe_ms(self, name: str, milliseconds: float) -> None:
        with self._lock:
            self._timings[name].append(milliseconds)

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        """Observe the wall-clock duration of the block, in milliseconds."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe_ms(name, (time.perf_counter() - start) * 1000.0)

    def count(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def timings(self, name: str) -> list[float]:
        with self._lock:
            return list(self._timings.get(name, []))

    def snapshot(self) -> dict:
        """Counters plus count/total/max for each timer."""
        with self._lock:
            timers = {
                name: {"count": len(values), "total_ms": sum(values), "max_ms": max(values)}
                for name, values in self._timings.items() if values
            }
            return {"counters": dict(self._counters), "timers": timers}

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._timings.clear()
