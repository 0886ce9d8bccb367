"""Operation timers and duration samples."""

from __future__ import annotations

import logging
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Callable, Deque, Dict, Iterator, Optional

import numpy as np

from constants import MAX_METRIC_SAMPLES, METRICS_NAMESPACE, SLOW_OPERATION_MS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricSample:
    operation_id: str
    duration_ms: float
    tags: Dict[str, str] = field(default_factory=dict)
    recorded_at: float = 0.0


@dataclass
class _Timer:
    start: float
    duration_ms: Optional[float] = None


class MetricsRecorder:
    """Start/stop timers keyed by operation id and forward durations to the store.

    Forwarding to the store is best effort: a broken store never turns a
    finished timer into an error for the caller.
    """

    def __init__(
        self,
        store=None,
        clock: Callable[[], float] = time.perf_counter,
        slow_operation_ms: float = SLOW_OPERATION_MS,
        max_samples: int = MAX_METRIC_SAMPLES,
        enabled: bool = True,
    ):
        self.store = store
        self.enabled = enabled
        self.slow_operation_ms = float(slow_operation_ms)
        self._clock = clock
        self._timers: Dict[str, _Timer] = {}
        self._last_samples: Dict[str, MetricSample] = {}
        self._samples: Deque[MetricSample] = deque(maxlen=max(1, int(max_samples)))
        self._slow_operations: Deque[MetricSample] = deque(maxlen=max(1, int(max_samples)))

    def now(self) -> float:
        return self._clock()

    def start_timer(self, operation_id: str) -> None:
        if not self.enabled or not operation_id:
            return
        self._timers[operation_id] = _Timer(start=self._clock())

    def end_timer(self, operation_id: str, tags: Optional[Dict[str, str]] = None,
                  ended_at: Optional[float] = None) -> Optional[float]:
        """Stop a timer; ``ended_at`` is a reading of :meth:`now` taken earlier."""
        if not operation_id:
            return None
        timer = self._timers.get(operation_id)
        if timer is None:
            return None

        end = self._clock() if ended_at is None else ended_at
        timer.duration_ms = (end - timer.start) * 1000.0
        self.record_metric(operation_id, timer.duration_ms, tags)
        return timer.duration_ms

    def get_operation_time(self, operation_id: str) -> Optional[float]:
        timer = self._timers.get(operation_id) if operation_id else None
        if timer is None:
            return None
        if timer.duration_ms is not None:
            return timer.duration_ms
        return (self._clock() - timer.start) * 1000.0

    def is_running(self, operation_id: str) -> bool:
        timer = self._timers.get(operation_id)
        return timer is not None and timer.duration_ms is None

    def record_metric(self, operation_id: str, duration_ms: float, tags: Optional[Dict[str, str]] = None) -> MetricSample:
        sample = MetricSample(
            operation_id=operation_id,
            duration_ms=float(duration_ms),
            tags=dict(tags or {}),
            recorded_at=time.time(),
        )
        self._last_samples[operation_id] = sample
        self._samples.append(sample)

        if sample.duration_ms > self.slow_operation_ms:
            self._slow_operations.append(sample)
            logger.warning("Slow operation detected: %s took %.2fms", operation_id, sample.duration_ms)

        self._forward(sample)
        return sample

    def _forward(self, sample: MetricSample) -> None:
        if self.store is None:
            return
        try:
            self.store.update_state(
                METRICS_NAMESPACE,
                {sample.operation_id: asdict(sample)},
                source="MetricsRecorder",
            )
        except Exception as exc:
            logger.debug("Unable to forward metric %s to state: %s", sample.operation_id, exc)

    def get_sample(self, operation_id: str) -> Optional[MetricSample]:
        return self._last_samples.get(operation_id)

    def get_slow_operations(self):
        return list(self._slow_operations)

    def get_summary(self) -> Dict[str, Dict[str, float]]:
        """Per-id count / mean / p95 / max over the retained samples."""
        grouped: Dict[str, list] = {}
        for sample in self._samples:
            grouped.setdefault(sample.operation_id, []).append(sample.duration_ms)

        summary = {}
        for operation_id, durations in grouped.items():
            values = np.asarray(durations, dtype=float)
            summary[operation_id] = {
                'count': int(values.size),
                'mean_ms': float(values.mean()),
                'p95_ms': float(np.percentile(values, 95)),
                'max_ms': float(values.max()),
            }
        return summary

    @contextmanager
    def measure(self, operation_id: str, tags: Optional[Dict[str, str]] = None) -> Iterator[None]:
        """Time the enclosed block; the timer ends even if the block raises."""
        self.start_timer(operation_id)
        try:
            yield
        finally:
            self.end_timer(operation_id, tags)

    def reset(self) -> None:
        self._timers.clear()
        self._last_samples.clear()
        self._samples.clear()
        self._slow_operations.clear()
