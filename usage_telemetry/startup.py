"""
Startup checkpoints and early error reporting.

Host applications mark checkpoints while they boot. If startup fails before
the batch pipeline is running, the failure is sent straight to the backend
as a startup_error event with the checkpoints passed so far. Inserts are
bounded by a timeout and never raise.
"""

import asyncio
import logging
import os
import platform
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from usage_telemetry.backend import TelemetryBackend
from usage_telemetry.sanitizer import sanitize_string
from usage_telemetry.validator import TelemetryEventValidator

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500
MAX_STARTUP_DURATION_MS = 300_000


class StartupCheckpoint(str, Enum):
    """Initialization stages, in the order a host passes them."""

    PROCESS_STARTED = "process_started"
    DATABASE_CONNECTING = "database_connecting"
    DATABASE_CONNECTED = "database_connected"
    API_CHECKING = "api_checking"
    API_READY = "api_ready"
    TELEMETRY_INITIALIZING = "telemetry_initializing"
    TELEMETRY_READY = "telemetry_ready"
    HANDSHAKE_STARTING = "handshake_starting"
    HANDSHAKE_COMPLETE = "handshake_complete"
    SERVER_READY = "server_ready"


CHECKPOINT_DESCRIPTIONS = {
    StartupCheckpoint.PROCESS_STARTED: "Process initialization started",
    StartupCheckpoint.DATABASE_CONNECTING: "Connecting to database",
    StartupCheckpoint.DATABASE_CONNECTED: "Database connection established",
    StartupCheckpoint.API_CHECKING: "Checking upstream API configuration",
    StartupCheckpoint.API_READY: "Upstream API ready",
    StartupCheckpoint.TELEMETRY_INITIALIZING: "Initializing telemetry system",
    StartupCheckpoint.TELEMETRY_READY: "Telemetry system ready",
    StartupCheckpoint.HANDSHAKE_STARTING: "Starting client protocol handshake",
    StartupCheckpoint.HANDSHAKE_COMPLETE: "Client handshake completed",
    StartupCheckpoint.SERVER_READY: "Server fully initialized and ready",
}


def is_valid_checkpoint(checkpoint: str) -> bool:
    return checkpoint in StartupCheckpoint._value2member_map_


def get_checkpoint_description(checkpoint: str) -> str:
    if not is_valid_checkpoint(checkpoint):
        return "Unknown checkpoint"
    return CHECKPOINT_DESCRIPTIONS[StartupCheckpoint(checkpoint)]


def find_failed_checkpoint(passed: List[str]) -> StartupCheckpoint:
    """
    First checkpoint not yet passed.

    When every checkpoint was passed the failure happened after startup,
    reported as SERVER_READY.
    """
    for checkpoint in StartupCheckpoint:
        if checkpoint.value not in passed:
            return checkpoint
    return StartupCheckpoint.SERVER_READY


def get_next_checkpoint(current: str) -> Optional[StartupCheckpoint]:
    checkpoints = list(StartupCheckpoint)
    if not is_valid_checkpoint(current):
        return None
    index = checkpoints.index(StartupCheckpoint(current))
    if index == len(checkpoints) - 1:
        return None
    return checkpoints[index + 1]


def get_completion_percentage(passed: List[str]) -> int:
    return round(len(passed) / len(StartupCheckpoint) * 100)


def describe_error(error: Any) -> Dict[str, str]:
    """Sanitized message and coarse type for an exception or message."""
    if isinstance(error, BaseException):
        message = f"{type(error).__name__}: {error}"
        error_type = type(error).__name__
    elif isinstance(error, str):
        message = error
        error_type = "string_error"
    else:
        message = str(error)
        error_type = "unknown"

    return {
        "message": sanitize_string(message)[:MAX_ERROR_MESSAGE_LENGTH],
        "type": error_type[:100],
    }


class StartupErrorLogger:
    """
    Records startup checkpoints and reports startup failures directly.

    Reports bypass the tracker queues and the batch processor, so they are
    delivered even when the process exits before the first flush.
    """

    def __init__(
        self,
        get_backend: Callable[[], Optional[TelemetryBackend]],
        get_user_id: Callable[[], str],
        is_enabled: Callable[[], bool],
        validator: Optional[TelemetryEventValidator] = None,
        events_table: str = "telemetry_events",
        timeout: float = 5.0,
        clock: Optional[Callable[[], float]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """
        Initialize startup logger.

        Args:
            get_backend: Returns the backend, or None while none is configured
            get_user_id: Returns the anonymous user id
            is_enabled: Returns whether telemetry is currently enabled
            validator: Event validator
            events_table: Table the events are inserted into
            timeout: Seconds allowed for each direct insert
            clock: Monotonic time source (default: time.monotonic)
            environ: Environment used for container detection
        """
        self._get_backend = get_backend
        self._get_user_id = get_user_id
        self._is_enabled = is_enabled
        self.validator = validator or TelemetryEventValidator()
        self.events_table = events_table
        self.timeout = timeout
        self._clock = clock or time.monotonic
        self._environ = os.environ if environ is None else environ

        self._start_time = self._clock()
        self._checkpoints: List[str] = []

    def log_checkpoint(self, checkpoint: str) -> None:
        """Record that startup passed a checkpoint. Unknown names are ignored."""
        if not is_valid_checkpoint(checkpoint):
            logger.warning(f"Invalid startup checkpoint: {checkpoint}")
            return

        if checkpoint not in self._checkpoints:
            self._checkpoints.append(checkpoint)
        logger.debug(f"Checkpoint passed: {checkpoint} ({get_checkpoint_description(checkpoint)})")

    def get_checkpoints(self) -> List[str]:
        return list(self._checkpoints)

    def get_startup_duration(self) -> float:
        """Milliseconds since the logger was created."""
        return (self._clock() - self._start_time) * 1000

    def get_startup_data(self) -> Optional[Dict[str, Any]]:
        if not self._is_enabled():
            return None
        return {
            "duration_ms": self.get_startup_duration(),
            "checkpoints": self.get_checkpoints(),
            "completion": get_completion_percentage(self._checkpoints),
        }

    async def log_startup_error(self, checkpoint: str, error: Any) -> bool:
        """
        Send a startup_error event for a failure at the given checkpoint.

        Returns:
            True if the backend accepted the event within the timeout
        """
        described = describe_error(error)
        return await self._send(
            "startup_error",
            {
                "checkpoint": checkpoint,
                "errorMessage": described["message"],
                "errorType": described["type"],
                "checkpointsPassed": self.get_checkpoints(),
                "checkpointsPassedCount": len(self._checkpoints),
                "startupDuration": min(self.get_startup_duration(), MAX_STARTUP_DURATION_MS),
                "platform": platform.system().lower(),
                "arch": platform.machine(),
                "pythonVersion": platform.python_version(),
                "isDocker": self._environ.get("IS_DOCKER", "").lower() == "true",
            },
        )

    async def log_startup_completed(self, version: str) -> bool:
        """Send a startup_completed event once startup finished."""
        logger.debug(
            f"Startup successful: {len(self._checkpoints)} checkpoints passed "
            f"in {self.get_startup_duration():.0f}ms"
        )
        return await self._send("startup_completed", {"version": version})

    async def _send(self, event_name: str, properties: Dict[str, Any]) -> bool:
        backend = self._get_backend()
        if not self._is_enabled() or backend is None:
            return False

        event = self.validator.validate_event(
            {"user_id": self._get_user_id(), "event": event_name, "properties": properties}
        )
        if event is None:
            return False

        try:
            await asyncio.wait_for(
                backend.insert(
                    self.events_table, [event.model_dump(mode="json", exclude_none=True)]
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.debug(f"Direct {event_name} insert timed out after {self.timeout}s")
            return False
        except Exception as e:
            logger.debug(f"Failed to insert {event_name} event: {e}")
            return False

        logger.debug(f"Sent {event_name} event directly to {self.events_table}")
        return True
