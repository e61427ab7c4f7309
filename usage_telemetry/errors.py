"""
Error taxonomy for the telemetry pipeline.

Nothing in this package raises to the host application. These types exist so
internal failures can be classified, logged and counted consistently.
"""

import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class TelemetryErrorType(str, Enum):
    """Classification of telemetry failures."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    QUEUE_OVERFLOW_ERROR = "QUEUE_OVERFLOW_ERROR"
    INITIALIZATION_ERROR = "INITIALIZATION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class TelemetryError(Exception):
    """Telemetry failure with type, context and retry hint."""

    def __init__(
        self,
        error_type: TelemetryErrorType,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.type = error_type
        self.message = message
        self.context = context or {}
        self.timestamp = time.time()
        self.retryable = retryable

    def to_context(self) -> Dict[str, Any]:
        """Convert error to a plain dictionary."""
        return {
            "type": self.type.value,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp,
            "retryable": self.retryable,
        }

    def log(self) -> None:
        """Log the error at debug level."""
        kind = "Retryable" if self.retryable else "Non-retryable"
        logger.debug(f"{kind} telemetry error [{self.type.value}]: {self.message} {self.context}")


class TelemetryErrorAggregator:
    """Counts errors by type and keeps a bounded history of recent ones."""

    def __init__(self, max_details: int = 100):
        self.max_details = max_details
        self._counts: Dict[TelemetryErrorType, int] = {}
        self._details: Deque[Dict[str, Any]] = deque(maxlen=max_details)

    def record(self, error: TelemetryError) -> None:
        self._counts[error.type] = self._counts.get(error.type, 0) + 1
        self._details.append(error.to_context())

    def get_stats(self) -> Dict[str, Any]:
        """
        Get error statistics.

        Returns:
            Dictionary with totals, per-type counts, the most common type
            and the last 10 recorded errors
        """
        errors_by_type: Dict[str, int] = {}
        most_common: Optional[str] = None
        max_count = 0

        for error_type, count in self._counts.items():
            errors_by_type[error_type.value] = count
            if count > max_count:
                max_count = count
                most_common = error_type.value

        recent: List[Dict[str, Any]] = list(self._details)[-10:]
        return {
            "total_errors": sum(self._counts.values()),
            "errors_by_type": errors_by_type,
            "most_common_error": most_common,
            "recent_errors": recent,
        }

    def reset(self) -> None:
        """Clear error history."""
        self._counts.clear()
        self._details.clear()
