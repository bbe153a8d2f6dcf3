"""In-process webhook metrics (log-flushed)."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class MetricsRecorder:
    flush_interval_seconds: int = 30
    counters: dict[str, int] = field(default_factory=dict)
    latencies: dict[str, list[float]] = field(default_factory=dict)
    last_flush_ts: float = field(default_factory=time.time)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_decision(self, provider: str, decision: str, reason_code: str | None = None) -> None:
        with self._lock:
            self._inc(f"decision.{decision}")
            self._inc(f"provider.{provider}.{decision}")
            if reason_code:
                self._inc(f"reason.{reason_code}")

    def record_latency(self, name: str, seconds: float) -> None:
        with self._lock:
            self.latencies.setdefault(name, []).append(seconds)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self.counters)

    def flush_if_due(self, context: dict[str, Any] | None = None) -> None:
        now = time.time()
        with self._lock:
            if (now - self.last_flush_ts) < self.flush_interval_seconds:
                return
            payload: dict[str, Any] = {
                "counters": dict(self.counters),
                "latencies": {k: _summarize(v) for k, v in self.latencies.items()},
            }
            self.counters.clear()
            self.latencies.clear()
            self.last_flush_ts = now
        if context:
            payload["context"] = context
        logger.info("Webhook metrics %s", payload)

    def _inc(self, key: str, amount: int = 1) -> None:
        self.counters[key] = self.counters.get(key, 0) + amount


def _summarize(values: list[float]) -> dict[str, float]:
    if not values:
        return {"count": 0}
    values_sorted = sorted(values)
    count = len(values_sorted)
    return {
        "count": count,
        "min": values_sorted[0],
        "max": values_sorted[-1],
        "p50": values_sorted[count // 2],
        "p95": values_sorted[max(int(count * 0.95) - 1, 0)],
    }
