"""
Performance monitor for the telemetry pipeline itself.

Times telemetry operations (tracking calls, flushes) so the overhead
telemetry adds to the host application can be reported.
"""

import logging
import math
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

import psutil
from pydantic import BaseModel

logger = logging.getLogger(__name__)

MAX_METRICS = 1000
RECENT_WINDOW = 60.0
SLOW_OPERATION_MS = 50
SLOW_LOG_MS = 100


class MemorySample(BaseModel):
    """Process memory in MB."""

    rss: int
    vms: int


class OperationMetric(BaseModel):
    operation: str
    duration: float
    timestamp: float
    memory: Optional[MemorySample] = None


def capture_memory_usage() -> Optional[MemorySample]:
    try:
        info = psutil.Process().memory_info()
    except psutil.Error as e:
        logger.debug(f"Could not read process memory: {e}")
        return None
    return MemorySample(rss=round(info.rss / 1024 / 1024), vms=round(info.vms / 1024 / 1024))


def percentile(ordered: List[float], p: float) -> float:
    """Nearest-rank percentile of an already sorted list."""
    if not ordered:
        return 0.0
    index = max(0, math.ceil(len(ordered) * p) - 1)
    return round(ordered[index], 2)


class TelemetryPerformanceMonitor:
    """Records durations of telemetry operations and summarizes them."""

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        capture_memory: bool = True,
    ):
        """
        Initialize monitor.

        Args:
            clock: Wall clock in seconds, injectable for tests
            capture_memory: Sample process memory with each metric
        """
        self._clock = clock or time.time
        self._capture_memory = capture_memory
        self._metrics: Deque[OperationMetric] = deque(maxlen=MAX_METRICS)
        self._timers: Dict[str, float] = {}
        self._operation_counts: Dict[str, int] = {}
        self._startup_time = self._clock()

    def start_operation(self, operation: str) -> None:
        self._timers[operation] = time.perf_counter()

    def end_operation(self, operation: str) -> float:
        """
        Stop timing an operation and record it.

        Returns:
            Duration in milliseconds, 0 if the operation was never started
        """
        start = self._timers.pop(operation, None)
        if start is None:
            logger.debug(f"No start time found for operation: {operation}")
            return 0.0

        duration = (time.perf_counter() - start) * 1000
        self.record(operation, duration)
        return duration

    def record(self, operation: str, duration_ms: float) -> None:
        """Record a measured duration."""
        self._metrics.append(
            OperationMetric(
                operation=operation,
                duration=duration_ms,
                timestamp=self._clock(),
                memory=capture_memory_usage() if self._capture_memory else None,
            )
        )
        self._operation_counts[operation] = self._operation_counts.get(operation, 0) + 1

        if duration_ms > SLOW_LOG_MS:
            logger.debug(f"Slow telemetry operation: {operation} took {duration_ms:.2f}ms")

    def _recent(self) -> List[OperationMetric]:
        now = self._clock()
        return [m for m in self._metrics if now - m.timestamp < RECENT_WINDOW]

    def get_statistics(self) -> dict:
        """Summary of operations recorded in the last minute."""
        recent = self._recent()
        uptime = self._clock() - self._startup_time
        memory = capture_memory_usage() if self._capture_memory else None

        if not recent:
            return {
                "total_operations": 0,
                "operations_in_last_minute": 0,
                "average_duration": 0.0,
                "slow_operations": 0,
                "operations_by_type": {},
                "memory_usage": memory.model_dump() if memory else None,
                "uptime_seconds": uptime,
                "overhead": {"percentage": 0.0, "total_ms": 0.0},
            }

        durations = [m.duration for m in recent]
        total = sum(durations)
        average = total / len(durations)

        groups: Dict[str, List[float]] = {}
        for metric in recent:
            groups.setdefault(metric.operation, []).append(metric.duration)

        return {
            "total_operations": len(self._operation_counts),
            "operations_in_last_minute": len(recent),
            "average_duration": round(average, 2),
            "slow_operations": sum(1 for d in durations if d > SLOW_OPERATION_MS),
            "operations_by_type": {
                name: {"count": len(values), "avg_duration": round(sum(values) / len(values), 2)}
                for name, values in groups.items()
            },
            "memory_usage": memory.model_dump() if memory else None,
            "uptime_seconds": uptime,
            # Rough estimate, capped at 5%
            "overhead": {"percentage": min(5.0, average / 10), "total_ms": total},
        }

    def _percentiles(self) -> Dict[str, float]:
        ordered = sorted(m.duration for m in self._recent())
        return {
            "p50": percentile(ordered, 0.5),
            "p75": percentile(ordered, 0.75),
            "p90": percentile(ordered, 0.9),
            "p95": percentile(ordered, 0.95),
            "p99": percentile(ordered, 0.99),
        }

    def _top_slow_operations(self, n: int) -> List[dict]:
        slowest = sorted(self._metrics, key=lambda m: m.duration, reverse=True)[:n]
        return [
            {"operation": m.operation, "duration": round(m.duration, 2), "timestamp": m.timestamp}
            for m in slowest
        ]

    def _memory_trend(self) -> dict:
        samples = [m.memory for m in self._metrics if m.memory is not None][-10:]
        if len(samples) < 2:
            return {"trend": "stable", "delta": 0}

        delta = samples[-1].rss - samples[0].rss
        if delta > 5:
            trend = "increasing"
        elif delta < -5:
            trend = "decreasing"
        else:
            trend = "stable"
        return {"trend": trend, "delta": delta}

    def _recommendations(self, stats: dict, percentiles: Dict[str, float], trend: dict) -> List[str]:
        recommendations = []

        if stats["average_duration"] > 50:
            recommendations.append("Consider batching more events to reduce overhead")
        if stats["slow_operations"] > stats["operations_in_last_minute"] * 0.1:
            recommendations.append("Many slow operations detected - investigate network latency")
        if percentiles["p99"] > 200:
            recommendations.append("P99 latency is high - consider local queue persistence")
        if trend["trend"] == "increasing" and trend["delta"] > 10:
            recommendations.append("Memory usage is increasing - check for leaks")
        if stats["operations_in_last_minute"] > 1000:
            recommendations.append("High telemetry volume - ensure rate limiting is effective")

        return recommendations

    def get_detailed_report(self) -> dict:
        stats = self.get_statistics()
        percentiles = self._percentiles()
        trend = self._memory_trend()

        return {
            "summary": stats,
            "percentiles": percentiles,
            "top_slow_operations": self._top_slow_operations(5),
            "memory_trend": trend,
            "recommendations": self._recommendations(stats, percentiles, trend),
        }

    def get_telemetry_overhead(self) -> dict:
        """Overhead estimate with a coarse impact rating."""
        percentage = self.get_statistics()["overhead"]["percentage"]

        if percentage < 1:
            impact = "minimal"
        elif percentage < 3:
            impact = "low"
        elif percentage < 5:
            impact = "moderate"
        else:
            impact = "high"

        return {"percentage": percentage, "impact": impact}

    def reset(self) -> None:
        self._metrics.clear()
        self._timers.clear()
        self._operation_counts.clear()
        self._startup_time = self._clock()
