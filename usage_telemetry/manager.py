"""
Telemetry manager.

Single entry point for host applications: owns the tracker, the batch
processor and their shared rate limiter and circuit breaker. No public
method raises; failures are logged at DEBUG and counted in the error
aggregator.
"""

import asyncio
import logging
import os
from typing import Any, Callable, Dict, Optional, Set

import yaml

from usage_telemetry import __version__
from usage_telemetry.backend import SupabaseBackend, TelemetryBackend
from usage_telemetry.batch_processor import TelemetryBatchProcessor
from usage_telemetry.circuit_breaker import TelemetryCircuitBreaker
from usage_telemetry.errors import TelemetryError, TelemetryErrorAggregator, TelemetryErrorType
from usage_telemetry.performance import TelemetryPerformanceMonitor
from usage_telemetry.preferences import TelemetryPreferences
from usage_telemetry.rate_limiter import TelemetryRateLimiter
from usage_telemetry.settings import SETTINGS_FILE_ENV_VAR, TelemetrySettings
from usage_telemetry.startup import StartupErrorLogger
from usage_telemetry.tracker import TelemetryEventTracker
from usage_telemetry.validator import TelemetryEventValidator

logger = logging.getLogger(__name__)


class TelemetryManager:
    """
    Facade over the telemetry pipeline.

    The backend is created on first use when telemetry is enabled. If it
    cannot be created, the manager stays disabled and every call is a no-op.
    """

    def __init__(
        self,
        settings: Optional[TelemetrySettings] = None,
        preferences: Optional[TelemetryPreferences] = None,
        backend: Optional[TelemetryBackend] = None,
        app_version: str = __version__,
        settings_file: Optional[str] = None,
    ):
        """
        Initialize telemetry manager.

        Args:
            settings: Pipeline settings (defaults from USAGE_TELEMETRY_* env vars)
            preferences: Opt-in state and anonymous id
            backend: Backend to deliver to; built from settings when omitted
            app_version: Host version reported in session_start events
            settings_file: YAML settings file used when settings are omitted
                (default: $USAGE_TELEMETRY_SETTINGS_FILE, else environment variables)
        """
        self.errors = TelemetryErrorAggregator()
        self.settings = settings or self._load_settings(settings_file)
        self.preferences = preferences or TelemetryPreferences(self.settings.config_dir)
        self._backend = backend

        self.performance = TelemetryPerformanceMonitor()
        self.rate_limiter = TelemetryRateLimiter(
            window_seconds=self.settings.rate_limit_window,
            max_events=self.settings.rate_limit_max_events,
        )
        self.validator = TelemetryEventValidator()
        self.tracker = TelemetryEventTracker(
            get_user_id=self.preferences.get_user_id,
            is_enabled=self.is_enabled,
            rate_limiter=self.rate_limiter,
            validator=self.validator,
            max_queue_size=self.settings.max_queue_size,
            app_version=app_version,
        )
        self.startup = StartupErrorLogger(
            get_backend=lambda: self.batch_processor.backend,
            get_user_id=self.preferences.get_user_id,
            is_enabled=self.is_enabled,
            validator=self.validator,
            events_table=self.settings.events_table,
            timeout=self.settings.operation_timeout,
        )
        self.circuit_breaker = TelemetryCircuitBreaker(
            failure_threshold=self.settings.failure_threshold,
            reset_timeout=self.settings.reset_timeout,
            half_open_requests=self.settings.half_open_requests,
        )
        self.batch_processor = TelemetryBatchProcessor(
            backend=None,
            is_enabled=self.is_enabled,
            settings=self.settings,
            source=self.tracker,
            rate_limiter=self.rate_limiter,
            circuit_breaker=self.circuit_breaker,
            on_error=self.errors.record,
        )

        self._initialized = False
        self._initialization_failed = False
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def _load_settings(self, settings_file: Optional[str]) -> TelemetrySettings:
        """Settings from a YAML file or the environment, defaults if they are invalid."""
        settings_file = settings_file or os.environ.get(SETTINGS_FILE_ENV_VAR)
        try:
            if settings_file:
                return TelemetrySettings.from_file(settings_file)
            return TelemetrySettings.from_env()
        except (OSError, ValueError, AttributeError, yaml.YAMLError) as e:
            self._record(
                TelemetryError(
                    TelemetryErrorType.INITIALIZATION_ERROR,
                    "Invalid telemetry settings, using defaults",
                    {"error": str(e)},
                )
            )
            return TelemetrySettings()

    def _ensure_initialized(self) -> None:
        if self._initialized or self._initialization_failed:
            return
        self._initialize()

    def _initialize(self) -> None:
        if not self.preferences.is_enabled():
            logger.debug("Telemetry disabled by user preference")
            return

        try:
            backend = self._backend or SupabaseBackend(
                self.settings.backend_url,
                self.settings.backend_key,
                timeout_seconds=self.settings.operation_timeout,
            )
        except TelemetryError as e:
            self._record(e)
            self._initialization_failed = True
            return

        self.batch_processor.backend = backend
        self._initialized = True
        logger.debug("Telemetry initialized successfully")

    def is_enabled(self) -> bool:
        return self._initialized and self.preferences.is_enabled()

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start periodic delivery. Idempotent."""
        self._ensure_initialized()
        if self.is_enabled():
            await self.batch_processor.start()

    async def stop(self) -> None:
        """Stop periodic delivery without flushing. Idempotent."""
        await self.batch_processor.stop()
        if self._background:
            await asyncio.wait(list(self._background), timeout=self.settings.shutdown_timeout)

    async def shutdown(self) -> None:
        """Final bounded flush, then stop."""
        if self.is_enabled():
            await self.batch_processor.final_flush(self.settings.shutdown_timeout)
        await self.stop()

    async def enable(self) -> None:
        self.preferences.enable()
        self._initialization_failed = False
        self._initialize()

    async def disable(self) -> None:
        self.preferences.disable()
        await self.batch_processor.stop()
        self._initialized = False
        self.batch_processor.backend = None

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    def _guarded(self, operation: str, call: Callable[..., Any], *args, **kwargs) -> None:
        self._ensure_initialized()
        if not self.is_enabled():
            return

        try:
            call(*args, **kwargs)
        except Exception as e:
            self._record(
                e
                if isinstance(e, TelemetryError)
                else TelemetryError(
                    TelemetryErrorType.UNKNOWN_ERROR,
                    f"Failed to {operation}",
                    {"error": str(e)},
                )
            )

    def track_event(self, event_name: str, properties: Dict[str, Any]) -> None:
        self._guarded("track event", self.tracker.track_event, event_name, properties)

    def track_tool_usage(
        self, tool_name: str, success: bool, duration_ms: Optional[float] = None
    ) -> None:
        self.performance.start_operation("track_tool_usage")
        try:
            self._guarded("track tool usage", self.tracker.track_tool_usage, tool_name, success, duration_ms)
            self._guarded("update tool sequence", self.tracker.update_tool_sequence, tool_name)
        finally:
            self.performance.end_operation("track_tool_usage")

    async def track_workflow_creation(self, workflow: Dict[str, Any], validation_passed: bool) -> None:
        """Track a created workflow and schedule a flush so it is not lost."""
        self._ensure_initialized()
        if not self.is_enabled():
            return

        self.performance.start_operation("track_workflow_creation")
        try:
            if await self.tracker.track_workflow_creation(workflow, validation_passed):
                self._schedule_flush()
        except TelemetryError as e:
            self._record(e)
        except Exception as e:
            self._record(
                TelemetryError(
                    TelemetryErrorType.UNKNOWN_ERROR,
                    "Failed to track workflow",
                    {"error": str(e)},
                )
            )
        finally:
            self.performance.end_operation("track_workflow_creation")

    def track_error(self, error_type: str, context: str, tool_name: Optional[str] = None) -> None:
        self._guarded("track error", self.tracker.track_error, error_type, context, tool_name)

    def track_session_start(self) -> None:
        self._guarded("track session start", self.tracker.track_session_start)

    def track_search_query(self, query: str, results_found: int, search_type: str) -> None:
        self._guarded(
            "track search query", self.tracker.track_search_query, query, results_found, search_type
        )

    def track_validation_details(self, node_type: str, error_type: str, details: Dict[str, Any]) -> None:
        self._guarded(
            "track validation details",
            self.tracker.track_validation_details,
            node_type,
            error_type,
            details,
        )

    def track_tool_sequence(self, previous_tool: str, current_tool: str, time_delta_ms: float) -> None:
        self._guarded(
            "track tool sequence",
            self.tracker.track_tool_sequence,
            previous_tool,
            current_tool,
            time_delta_ms,
        )

    def track_node_configuration(self, node_type: str, properties_set: int, used_defaults: bool) -> None:
        self._guarded(
            "track node configuration",
            self.tracker.track_node_configuration,
            node_type,
            properties_set,
            used_defaults,
        )

    def track_performance_metric(
        self, operation: str, duration_ms: float, metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        self._guarded(
            "track performance metric",
            self.tracker.track_performance_metric,
            operation,
            duration_ms,
            metadata,
        )

    # ------------------------------------------------------------------
    # Startup reporting
    # ------------------------------------------------------------------

    def log_checkpoint(self, checkpoint: str) -> None:
        self._guarded("log startup checkpoint", self.startup.log_checkpoint, checkpoint)

    async def log_startup_error(self, checkpoint: str, error: Any) -> None:
        """Report a startup failure directly, without waiting for a flush."""
        self._ensure_initialized()
        if self.is_enabled():
            await self.startup.log_startup_error(checkpoint, error)

    async def track_startup_completed(self) -> None:
        self._ensure_initialized()
        if self.is_enabled():
            await self.startup.log_startup_completed(self.tracker.app_version)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def flush(self) -> None:
        """Deliver everything queued so far."""
        self._ensure_initialized()
        if not self.is_enabled():
            return

        self.performance.start_operation("flush")
        try:
            await self.batch_processor.flush()
        except Exception as e:
            self._record(
                TelemetryError(
                    TelemetryErrorType.NETWORK_ERROR,
                    "Failed to flush telemetry",
                    {"error": str(e)},
                    retryable=True,
                )
            )
        finally:
            duration = self.performance.end_operation("flush")
            if duration > 100:
                logger.debug(f"Telemetry flush took {duration:.2f}ms")

    def _schedule_flush(self) -> None:
        task = asyncio.create_task(self.flush())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _record(self, error: TelemetryError) -> None:
        self.errors.record(error)
        error.log()

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        status = self.preferences.get_status()
        status["initialized"] = self._initialized
        return status

    def get_metrics(self) -> dict:
        return {
            "status": "enabled" if self.is_enabled() else "disabled",
            "initialized": self._initialized,
            "tracking": self.tracker.get_stats(),
            "processing": self.batch_processor.get_metrics().model_dump(mode="json"),
            "errors": self.errors.get_stats(),
            "performance": self.performance.get_detailed_report(),
            "overhead": self.performance.get_telemetry_overhead(),
            "startup": self.startup.get_startup_data(),
        }

    def reset_metrics(self) -> None:
        self.batch_processor.reset_metrics()
        self.validator.reset_stats()
        self.errors.reset()
        self.performance.reset()
