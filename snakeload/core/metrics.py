from __future__ import annotations

import asyncio
import math
import random
from dataclasses import dataclass, field
from typing import Any

from snakeload.logger import Logger, session_logger

METRIC_CONNECT = "ws.connect"
METRIC_PING_RTT = "ws.ping_rtt"
METRIC_SESSION = "ws.session"


def _percentile(sorted_values: list[float], p: float) -> float | None:
    """Linear-interpolated percentile of an ascending list."""

    if not sorted_values:
        return None
    if p <= 0:
        return float(sorted_values[0])
    if p >= 1:
        return float(sorted_values[-1])

    k = (len(sorted_values) - 1) * p
    lo = int(math.floor(k))
    hi = int(math.ceil(k))
    if lo == hi:
        return float(sorted_values[lo])
    return float(sorted_values[lo] * (hi - k) + sorted_values[hi] * (k - lo))


class _Reservoir:
    """Fixed-size uniform sample so long runs keep bounded memory."""

    def __init__(self, max_size: int, *, seed: int | None = None) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        self._max_size = max_size
        self._rng = random.Random(seed)
        self._seen = 0
        self._values: list[float] = []

    def add(self, value: float) -> None:
        self._seen += 1
        if len(self._values) < self._max_size:
            self._values.append(value)
            return
        idx = self._rng.randrange(self._seen)
        if idx < self._max_size:
            self._values[idx] = value

    def sorted_values(self) -> list[float]:
        return sorted(self._values)


@dataclass
class _Series:
    sample: _Reservoir
    count: int = 0
    error_count: int = 0
    sum_ms: float = 0.0
    min_ms: float | None = None
    max_ms: float | None = None
    error_types: dict[str, int] = field(default_factory=dict)

    def observe(self, duration_ms: float, success: bool, error_type: str | None) -> None:
        self.count += 1
        if not success:
            self.error_count += 1
            key = error_type or "unknown"
            self.error_types[key] = self.error_types.get(key, 0) + 1
        self.sum_ms += duration_ms
        self.min_ms = duration_ms if self.min_ms is None else min(self.min_ms, duration_ms)
        self.max_ms = duration_ms if self.max_ms is None else max(self.max_ms, duration_ms)
        self.sample.add(duration_ms)

    def report(self) -> dict[str, Any]:
        values = self.sample.sorted_values()
        return {
            "count": self.count,
            "error_count": self.error_count,
            "error_rate_pct": round(self.error_count / self.count * 100, 2) if self.count else 0.0,
            "error_types": dict(self.error_types),
            "min_ms": self.min_ms,
            "max_ms": self.max_ms,
            "mean_ms": (self.sum_ms / self.count) if self.count else None,
            "p50_ms": _percentile(values, 0.50),
            "p95_ms": _percentile(values, 0.95),
            "p99_ms": _percentile(values, 0.99),
            "sample_size": len(values),
        }


class MetricsCollector:
    """Latency series per metric and per (metric, behaviour profile)."""

    def __init__(self, *, sample_size: int = 5000, logger: Logger | None = None) -> None:
        self._logger = logger or session_logger
        self._lock = asyncio.Lock()
        self._sample_size = sample_size
        self._by_metric: dict[str, _Series] = {}
        self._by_metric_profile: dict[tuple[str, str], _Series] = {}

    def _series(self, table: dict, key) -> _Series:
        series = table.get(key)
        if series is None:
            series = _Series(sample=_Reservoir(self._sample_size))
            table[key] = series
        return series

    async def record(
        self,
        *,
        metric: str,
        duration_ms: float,
        success: bool = True,
        profile: str | None = None,
        error_type: str | None = None,
    ) -> None:
        duration_ms = max(0.0, float(duration_ms))
        profile_name = profile or "default"

        async with self._lock:
            self._series(self._by_metric, metric).observe(duration_ms, success, error_type)
            self._series(self._by_metric_profile, (metric, profile_name)).observe(
                duration_ms, success, error_type
            )

        if not success:
            self._logger.debug(
                "metrics.error_recorded",
                event="metrics.error_recorded",
                metric=metric,
                profile=profile_name,
                error_type=error_type,
            )

    async def build_report(self) -> dict[str, Any]:
        async with self._lock:
            return {
                "by_metric": {name: s.report() for name, s in self._by_metric.items()},
                "by_metric_profile": {
                    f"{metric}::{profile}": s.report()
                    for (metric, profile), s in self._by_metric_profile.items()
                },
            }
