"""In-process metrics for one bitfleet process.

Counters are kept both as a total per name and per tag combination
(``gofer.dropped{order_type=BUY,reason=stale}``), so ``bitfleet status``
can show why orders were dropped without a metrics backend. Histograms
keep a bounded window of recent samples.
"""

from __future__ import annotations

import time
from collections import defaultdict, deque
from threading import Lock
from typing import Any

_HISTOGRAM_WINDOW = 2_000


def _series_key(name: str, tags: dict[str, Any]) -> str:
    if not tags:
        return name
    inner = ",".join(f"{k}={tags[k]}" for k in sorted(tags))
    return f"{name}{{{inner}}}"


def _summarize(samples: deque[float]) -> dict[str, Any]:
    if not samples:
        return {"count": 0}
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "count": n,
        "min": ordered[0],
        "max": ordered[-1],
        "avg": sum(ordered) / n,
        "p50": ordered[(n - 1) // 2],
        "p95": ordered[min(n - 1, int(n * 0.95))],
    }


class MetricsCollector:
    """Thread-safe counters, gauges and histograms."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._started_at = time.time()
        self._totals: dict[str, float] = defaultdict(float)
        self._series: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=_HISTOGRAM_WINDOW)
        )

    def incr(self, name: str, value: float = 1.0, **tags: Any) -> None:
        with self._lock:
            self._totals[name] += value
            if tags:
                self._series[_series_key(name, tags)] += value

    def gauge(self, name: str, value: float, **tags: Any) -> None:
        with self._lock:
            self._gauges[_series_key(name, tags)] = value

    def histogram(self, name: str, value: float, **tags: Any) -> None:
        with self._lock:
            self._histograms[name].append(value)

    def counter(self, name: str, **tags: Any) -> float:
        """Total for ``name``, or for one tag combination when tags are given."""
        with self._lock:
            if tags:
                return self._series.get(_series_key(name, tags), 0.0)
            return self._totals.get(name, 0.0)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "uptime_secs": round(time.time() - self._started_at, 1),
                "counters": dict(self._totals),
                "counters_by_tag": dict(self._series),
                "gauges": dict(self._gauges),
                "histograms": {k: _summarize(v) for k, v in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._started_at = time.time()
            self._totals.clear()
            self._series.clear()
            self._gauges.clear()
            self._histograms.clear()


metrics = MetricsCollector()
