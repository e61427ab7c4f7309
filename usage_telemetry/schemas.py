"""
Type-safe schemas for the telemetry pipeline.

Records are validated here before they are queued. Property schemas for
well-known events are stricter than the generic envelope; their field
aliases match the camelCase keys stored by the backend.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# ENUMS
# ============================================================================


class WorkflowComplexity(str, Enum):
    """Workflow size buckets."""

    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


# ============================================================================
# RECORDS - what gets sent to the backend
# ============================================================================

EVENT_NAME_PATTERN = r"^[a-zA-Z0-9_-]+$"


class TelemetryEvent(BaseModel):
    """A single usage or diagnostic event."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1, max_length=64)
    event: str = Field(min_length=1, max_length=100, pattern=EVENT_NAME_PATTERN)
    properties: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class SanitizedWorkflowPayload(BaseModel):
    """Workflow structure with credentials and secrets stripped."""

    nodes: List[Any] = Field(default_factory=list, max_length=1000)
    connections: Dict[str, Any] = Field(default_factory=dict)


class WorkflowTelemetry(BaseModel):
    """Summary of a created workflow."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1, max_length=64)
    workflow_hash: str = Field(min_length=1, max_length=64)
    node_count: int = Field(ge=0, le=1000)
    node_types: List[str] = Field(default_factory=list, max_length=100)
    has_trigger: bool
    has_webhook: bool
    complexity: WorkflowComplexity
    sanitized_workflow: SanitizedWorkflowPayload
    created_at: Optional[datetime] = None


# ============================================================================
# EVENT PROPERTY SCHEMAS - stricter rules for well-known events
# ============================================================================


class _EventProperties(BaseModel):
    """Base for registered property schemas. Unknown keys are dropped."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ToolUsageProperties(_EventProperties):
    tool: str = Field(max_length=100)
    success: bool
    duration: float = Field(ge=0, le=3_600_000)


class SearchQueryProperties(_EventProperties):
    query: str = Field(max_length=100)
    results_found: int = Field(ge=0, alias="resultsFound")
    search_type: str = Field(max_length=50, alias="searchType")
    has_results: bool = Field(alias="hasResults")
    is_zero_results: bool = Field(alias="isZeroResults")


class ValidationDetailsProperties(_EventProperties):
    node_type: str = Field(max_length=100, alias="nodeType")
    error_type: str = Field(max_length=100, alias="errorType")
    error_category: str = Field(max_length=50, alias="errorCategory")
    details: Optional[Dict[str, Any]] = None


class PerformanceMetricProperties(_EventProperties):
    operation: str = Field(max_length=100)
    duration: float = Field(ge=0, le=3_600_000)
    is_slow: bool = Field(alias="isSlow")
    is_very_slow: bool = Field(alias="isVerySlow")
    metadata: Optional[Dict[str, Any]] = None


class StartupErrorProperties(_EventProperties):
    checkpoint: str = Field(max_length=100)
    error_message: str = Field(max_length=500, alias="errorMessage")
    error_type: str = Field(max_length=100, alias="errorType")
    checkpoints_passed: List[str] = Field(max_length=20, alias="checkpointsPassed")
    checkpoints_passed_count: int = Field(ge=0, le=20, alias="checkpointsPassedCount")
    startup_duration: float = Field(ge=0, le=300_000, alias="startupDuration")
    platform: str = Field(max_length=50)
    arch: str = Field(max_length=50)
    python_version: str = Field(max_length=50, alias="pythonVersion")
    is_docker: bool = Field(alias="isDocker")


class StartupCompletedProperties(_EventProperties):
    version: str = Field(max_length=50)


EVENT_PROPERTY_SCHEMAS: Dict[str, Type[_EventProperties]] = {
    "tool_used": ToolUsageProperties,
    "search_query": SearchQueryProperties,
    "validation_details": ValidationDetailsProperties,
    "performance_metric": PerformanceMetricProperties,
    "startup_error": StartupErrorProperties,
    "startup_completed": StartupCompletedProperties,
}


# ============================================================================
# OBSERVABILITY
# ============================================================================


class CircuitBreakerStatus(BaseModel):
    """Point-in-time view of the circuit breaker."""

    state: CircuitState
    failure_count: int = Field(ge=0)
    can_retry: bool


class ProcessorMetrics(BaseModel):
    """Delivery counters exposed by the batch processor."""

    events_tracked: int = Field(0, ge=0)
    events_dropped: int = Field(0, ge=0)
    events_failed: int = Field(0, ge=0)
    batches_sent: int = Field(0, ge=0)
    batches_failed: int = Field(0, ge=0)
    # Flush timings cover flushes the breaker admitted with records to send.
    # Breaker-denied flushes and dead-letter-only passes are not sampled.
    average_flush_time: float = Field(
        0.0, ge=0, description="Milliseconds, last 100 admitted flushes"
    )
    last_flush_time: Optional[float] = Field(
        None, ge=0, description="Milliseconds, last admitted flush"
    )
    rate_limit_hits: int = Field(0, ge=0)
    circuit_breaker_state: Optional[CircuitBreakerStatus] = None
    dead_letter_queue_size: int = Field(0, ge=0)
