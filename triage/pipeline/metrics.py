"""
Operation Metrics

In-process duration and outcome tracking for pipeline operations
(classification, destination calls, whole jobs). Exposed on /metrics.
"""

import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Any, Deque, Dict, Iterator, Optional

MAX_SAMPLES = 1000


class _Series:
    """Recent samples for one operation"""

    def __init__(self, max_samples: int):
        self.durations: Deque[float] = deque(maxlen=max_samples)
        self.successes: Deque[bool] = deque(maxlen=max_samples)

    def snapshot(self) -> Dict[str, Any]:
        count = len(self.durations)
        if count == 0:
            return {"count": 0, "success": 0, "failure": 0, "avg_ms": 0.0, "max_ms": 0.0, "p95_ms": 0.0}

        ordered = sorted(self.durations)
        success = sum(1 for ok in self.successes if ok)
        p95_index = min(count - 1, int(round(0.95 * (count - 1))))
        return {
            "count": count,
            "success": success,
            "failure": count - success,
            "avg_ms": round(sum(ordered) / count, 2),
            "max_ms": round(ordered[-1], 2),
            "p95_ms": round(ordered[p95_index], 2),
        }


class OperationMetrics:
    """
    Per-operation metrics, bounded to the most recent samples.

    Usage:
        metrics = OperationMetrics()
        with metrics.measure("classify"):
            await classifier.classify(text)
        metrics.summary()["classify"]["p95_ms"]
    """

    def __init__(self, max_samples: int = MAX_SAMPLES, clock=time.perf_counter):
        self._max_samples = max_samples
        self._clock = clock
        self._series: Dict[str, _Series] = {}
        self._lock = threading.Lock()

    def start(self) -> float:
        return self._clock()

    def record(self, operation: str, started: float, success: bool = True) -> None:
        """Record one run of an operation that began at ``started``"""
        elapsed_ms = (self._clock() - started) * 1000
        with self._lock:
            series = self._series.get(operation)
            if series is None:
                series = self._series[operation] = _Series(self._max_samples)
            series.durations.append(elapsed_ms)
            series.successes.append(success)

    @contextmanager
    def measure(self, operation: str) -> Iterator[None]:
        """Time a block; an exception counts as a failure and propagates"""
        started = self.start()
        try:
            yield
        except BaseException:
            self.record(operation, started, success=False)
            raise
        self.record(operation, started, success=True)

    def summary(self, operation: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            if operation is not None:
                series = self._series.get(operation)
                return series.snapshot() if series else _Series(1).snapshot()
            return {name: series.snapshot() for name, series in self._series.items()}

    def reset(self) -> None:
        with self._lock:
            self._series.clear()
