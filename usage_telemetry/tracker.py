"""
Event tracking for the telemetry pipeline.

Turns domain actions (tool used, workflow created, error occurred ...) into
validated records and appends them to bounded in-memory queues. Tracking
calls never block on network I/O; delivery happens in the batch processor.
"""

import logging
import platform
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from usage_telemetry.errors import TelemetryError, TelemetryErrorType
from usage_telemetry.rate_limiter import TelemetryRateLimiter
from usage_telemetry.sanitizer import (
    WorkflowSanitizer,
    sanitize_identifier,
    sanitize_string,
)
from usage_telemetry.schemas import TelemetryEvent, WorkflowTelemetry
from usage_telemetry.validator import TelemetryEventValidator

logger = logging.getLogger(__name__)

PERFORMANCE_SAMPLES = 100


class TelemetryEventTracker:
    """Producer-facing tracker that validates and queues telemetry records."""

    def __init__(
        self,
        get_user_id: Callable[[], str],
        is_enabled: Callable[[], bool],
        rate_limiter: Optional[TelemetryRateLimiter] = None,
        validator: Optional[TelemetryEventValidator] = None,
        max_queue_size: int = 1000,
        app_version: str = "unknown",
    ):
        """
        Initialize tracker.

        Args:
            get_user_id: Returns the anonymous user id attached to records
            is_enabled: Returns whether telemetry is currently enabled
            rate_limiter: Shared admission gate
            validator: Record validator
            max_queue_size: Bound for each queue; the oldest record is dropped on overflow
            app_version: Version reported in session_start events
        """
        self._get_user_id = get_user_id
        self._is_enabled = is_enabled
        self.rate_limiter = rate_limiter or TelemetryRateLimiter()
        self.validator = validator or TelemetryEventValidator()
        self.max_queue_size = max_queue_size
        self.app_version = app_version

        self._event_queue: Deque[TelemetryEvent] = deque()
        self._workflow_queue: Deque[WorkflowTelemetry] = deque()
        self._queue_lock = threading.Lock()
        self._queue_overflows = 0

        self._previous_tool: Optional[str] = None
        self._previous_tool_time = 0.0
        self._performance: Dict[str, Deque[float]] = {}

    # ------------------------------------------------------------------
    # Tracking API
    # ------------------------------------------------------------------

    def track_event(
        self, event_name: str, properties: Dict[str, Any], check_rate_limit: bool = True
    ) -> bool:
        """
        Track a generic event.

        Args:
            event_name: Event name ([a-zA-Z0-9_-]+)
            properties: Event properties, sanitized before queueing
            check_rate_limit: False for events derived from an already admitted call

        Returns:
            True if the event was queued
        """
        if not self._is_enabled():
            return False

        if check_rate_limit and not self.rate_limiter.allow():
            logger.debug(f"Rate limited: {sanitize_identifier(event_name)} event")
            return False

        validated = self.validator.validate_event(
            {"user_id": self._get_user_id(), "event": event_name, "properties": properties}
        )
        if validated is None:
            return False

        self._enqueue(self._event_queue, validated)
        return True

    def track_tool_usage(
        self, tool_name: str, success: bool, duration_ms: Optional[float] = None
    ) -> bool:
        """Track a tool invocation."""
        if not self._is_enabled():
            return False

        if duration_ms is not None:
            self._record_performance(tool_name, duration_ms)

        return self.track_event(
            "tool_used",
            {
                "tool": sanitize_identifier(tool_name),
                "success": success,
                "duration": duration_ms or 0,
            },
        )

    async def track_workflow_creation(self, workflow: Dict[str, Any], validation_passed: bool) -> bool:
        """
        Track workflow creation.

        Only workflows that passed upstream validation are stored; failures
        are reported as a workflow_validation_failed event.

        Raises:
            TelemetryError: VALIDATION_ERROR if the workflow cannot be sanitized
        """
        if not self._is_enabled():
            return False

        if not self.rate_limiter.allow():
            logger.debug("Rate limited: workflow creation event")
            return False

        if not validation_passed:
            nodes = workflow.get("nodes") if isinstance(workflow, dict) else None
            self.track_event(
                "workflow_validation_failed",
                {"nodeCount": len(nodes) if isinstance(nodes, list) else 0},
                check_rate_limit=False,
            )
            return False

        try:
            sanitized = WorkflowSanitizer.sanitize_workflow(workflow)
        except (TypeError, ValueError, AttributeError) as e:
            logger.debug(f"Failed to sanitize workflow: {e}")
            raise TelemetryError(
                TelemetryErrorType.VALIDATION_ERROR,
                "Failed to sanitize workflow",
                {"error": str(e)},
            ) from e

        validated = self.validator.validate_workflow(
            {
                "user_id": self._get_user_id(),
                "workflow_hash": sanitized.workflow_hash,
                "node_count": sanitized.node_count,
                "node_types": sanitized.node_types,
                "has_trigger": sanitized.has_trigger,
                "has_webhook": sanitized.has_webhook,
                "complexity": sanitized.complexity,
                "sanitized_workflow": {
                    "nodes": sanitized.nodes,
                    "connections": sanitized.connections,
                },
            }
        )
        if validated is None:
            return False

        self._enqueue(self._workflow_queue, validated)
        self.track_event(
            "workflow_created",
            {
                "nodeCount": sanitized.node_count,
                "nodeTypes": len(sanitized.node_types),
                "complexity": sanitized.complexity.value,
                "hasTrigger": sanitized.has_trigger,
                "hasWebhook": sanitized.has_webhook,
            },
            check_rate_limit=False,
        )
        return True

    def track_error(self, error_type: str, context: str, tool_name: Optional[str] = None) -> bool:
        """Track an error occurrence. Context is redacted and truncated."""
        properties: Dict[str, Any] = {
            "errorType": sanitize_identifier(error_type, max_length=50),
            "context": sanitize_string(context)[:100],
        }
        if tool_name:
            properties["tool"] = sanitize_identifier(tool_name)

        return self.track_event("error_occurred", properties)

    def track_session_start(self) -> bool:
        return self.track_event(
            "session_start",
            {
                "version": self.app_version,
                "platform": platform.system().lower(),
                "arch": platform.machine(),
                "pythonVersion": platform.python_version(),
            },
        )

    def track_search_query(self, query: str, results_found: int, search_type: str) -> bool:
        return self.track_event(
            "search_query",
            {
                "query": query[:100],
                "resultsFound": results_found,
                "searchType": search_type,
                "hasResults": results_found > 0,
                "isZeroResults": results_found == 0,
            },
        )

    def track_validation_details(
        self, node_type: str, error_type: str, details: Dict[str, Any]
    ) -> bool:
        return self.track_event(
            "validation_details",
            {
                "nodeType": sanitize_identifier(node_type, extra="."),
                "errorType": sanitize_identifier(error_type, max_length=50),
                "errorCategory": categorize_error(error_type),
                "details": details,
            },
        )

    def track_tool_sequence(self, previous_tool: str, current_tool: str, time_delta_ms: float) -> bool:
        previous = sanitize_identifier(previous_tool)
        current = sanitize_identifier(current_tool)
        return self.track_event(
            "tool_sequence",
            {
                "previousTool": previous,
                "currentTool": current,
                "timeDelta": min(time_delta_ms, 300_000),
                "isSlowTransition": time_delta_ms > 10_000,
                "sequence": f"{previous}->{current}",
            },
        )

    def track_node_configuration(
        self, node_type: str, properties_set: int, used_defaults: bool
    ) -> bool:
        return self.track_event(
            "node_configuration",
            {
                "nodeType": sanitize_identifier(node_type, extra="."),
                "propertiesSet": properties_set,
                "usedDefaults": used_defaults,
                "complexity": categorize_config_complexity(properties_set),
            },
        )

    def track_performance_metric(
        self, operation: str, duration_ms: float, metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        if not self._is_enabled():
            return False

        self._record_performance(operation, duration_ms)
        properties: Dict[str, Any] = {
            "operation": sanitize_identifier(operation),
            "duration": duration_ms,
            "isSlow": duration_ms > 1000,
            "isVerySlow": duration_ms > 5000,
        }
        if metadata:
            properties["metadata"] = metadata
        return self.track_event("performance_metric", properties)

    def update_tool_sequence(self, tool_name: str) -> None:
        """Record a tool call and emit a tool_sequence event for consecutive calls."""
        now = time.monotonic()
        if self._previous_tool:
            self.track_tool_sequence(
                self._previous_tool, tool_name, (now - self._previous_tool_time) * 1000
            )

        self._previous_tool = tool_name
        self._previous_tool_time = now

    # ------------------------------------------------------------------
    # Queue access (batch processor side)
    # ------------------------------------------------------------------

    def _enqueue(self, queue: Deque, record: Any) -> None:
        with self._queue_lock:
            queue.append(record)
            if len(queue) > self.max_queue_size:
                queue.popleft()
                self._queue_overflows += 1
                logger.debug("Telemetry queue full, dropped oldest record")

    def drain_events(self) -> List[TelemetryEvent]:
        """Remove and return all queued events."""
        with self._queue_lock:
            events = list(self._event_queue)
            self._event_queue.clear()
        return events

    def drain_workflows(self) -> List[WorkflowTelemetry]:
        """Remove and return all queued workflows."""
        with self._queue_lock:
            workflows = list(self._workflow_queue)
            self._workflow_queue.clear()
        return workflows

    def get_event_queue(self) -> List[TelemetryEvent]:
        with self._queue_lock:
            return list(self._event_queue)

    def get_workflow_queue(self) -> List[WorkflowTelemetry]:
        with self._queue_lock:
            return list(self._workflow_queue)

    def clear_event_queue(self) -> None:
        with self._queue_lock:
            self._event_queue.clear()

    def clear_workflow_queue(self) -> None:
        with self._queue_lock:
            self._workflow_queue.clear()

    @property
    def queue_overflows(self) -> int:
        return self._queue_overflows

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        """Get tracking statistics."""
        with self._queue_lock:
            event_queue_size = len(self._event_queue)
            workflow_queue_size = len(self._workflow_queue)

        return {
            "rate_limiter": self.rate_limiter.get_stats(),
            "validator": self.validator.get_stats(),
            "event_queue_size": event_queue_size,
            "workflow_queue_size": workflow_queue_size,
            "queue_overflows": self._queue_overflows,
            "performance_metrics": self._get_performance_stats(),
        }

    def _record_performance(self, operation: str, duration_ms: float) -> None:
        samples = self._performance.setdefault(operation, deque(maxlen=PERFORMANCE_SAMPLES))
        samples.append(duration_ms)

    def _get_performance_stats(self) -> Dict[str, Dict[str, float]]:
        stats: Dict[str, Dict[str, float]] = {}

        for operation, durations in self._performance.items():
            if not durations:
                continue
            ordered = sorted(durations)
            count = len(ordered)
            stats[operation] = {
                "count": count,
                "min": ordered[0],
                "max": ordered[-1],
                "avg": round(sum(ordered) / count),
                "p50": ordered[int(count * 0.5)],
                "p95": ordered[int(count * 0.95)],
                "p99": ordered[int(count * 0.99)],
            }

        return stats


def categorize_error(error_type: str) -> str:
    """Map a free-form error type to a coarse category."""
    lower = error_type.lower()
    if "type" in lower:
        return "type_error"
    if "validation" in lower:
        return "validation_error"
    if "required" in lower:
        return "required_field_error"
    if "connection" in lower:
        return "connection_error"
    if "expression" in lower:
        return "expression_error"
    return "other_error"


def categorize_config_complexity(properties_set: int) -> str:
    if properties_set == 0:
        return "defaults_only"
    if properties_set <= 3:
        return "simple"
    if properties_set <= 10:
        return "moderate"
    return "complex"
