"""
usage-telemetry - Best-effort usage telemetry for host applications.

Events and workflow summaries are sanitized, validated and queued by the
tracker, then delivered in batches by the batch processor behind a rate
limiter, a circuit breaker and retry with backoff. Telemetry never raises
into the host and never blocks it on network I/O.

Usage:
    from usage_telemetry import TelemetryManager

    telemetry = TelemetryManager()
    await telemetry.start()
    telemetry.track_tool_usage("search_nodes", success=True, duration_ms=12)
    await telemetry.shutdown()
"""

__version__ = "1.0.0"

from usage_telemetry.batch_processor import TelemetryBatchProcessor
from usage_telemetry.circuit_breaker import TelemetryCircuitBreaker
from usage_telemetry.errors import TelemetryError, TelemetryErrorAggregator, TelemetryErrorType
from usage_telemetry.manager import TelemetryManager
from usage_telemetry.preferences import TelemetryPreferences
from usage_telemetry.rate_limiter import TelemetryRateLimiter
from usage_telemetry.settings import TelemetrySettings
from usage_telemetry.startup import StartupCheckpoint
from usage_telemetry.tracker import TelemetryEventTracker

__all__ = [
    "StartupCheckpoint",
    "TelemetryBatchProcessor",
    "TelemetryCircuitBreaker",
    "TelemetryError",
    "TelemetryErrorAggregator",
    "TelemetryErrorType",
    "TelemetryEventTracker",
    "TelemetryManager",
    "TelemetryPreferences",
    "TelemetryRateLimiter",
    "TelemetrySettings",
]
