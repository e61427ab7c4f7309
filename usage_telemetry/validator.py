"""
Validation of telemetry records before they are queued.
"""

import logging
from collections.abc import Mapping
from typing import Any, Optional, Union

from pydantic import BaseModel, ValidationError

from usage_telemetry.sanitizer import sanitize_for_log, sanitize_properties
from usage_telemetry.schemas import (
    EVENT_PROPERTY_SCHEMAS,
    TelemetryEvent,
    WorkflowTelemetry,
)

logger = logging.getLogger(__name__)


def _as_dict(record: Union[BaseModel, Mapping]) -> dict:
    if isinstance(record, BaseModel):
        return record.model_dump()
    return dict(record)


class TelemetryEventValidator:
    """
    Validates and sanitizes events and workflow records.

    Invalid records are rejected with None and counted. They are never
    retried.
    """

    def __init__(self):
        self._errors = 0
        self._successes = 0

    def validate_event(self, event: Union[TelemetryEvent, Mapping]) -> Optional[TelemetryEvent]:
        """
        Validate and sanitize a telemetry event.

        Properties are sanitized first, then checked against the schema
        registered for the event name (if any), then the event envelope.

        Args:
            event: Event model or raw mapping

        Returns:
            The sanitized event, or None if it failed validation
        """
        try:
            data = _as_dict(event)
            properties = data.get("properties") or {}
            if not isinstance(properties, Mapping):
                raise TypeError(f"properties must be a mapping, got {type(properties).__name__}")

            data["properties"] = self._validate_properties(
                str(data.get("event", "")), sanitize_properties(properties)
            )

            validated = TelemetryEvent.model_validate(data)
            self._successes += 1
            return validated

        except ValidationError as e:
            logger.debug(
                f"Event validation failed for {sanitize_for_log(event_name(event))}: "
                f"{e.error_count()} errors"
            )
        except (TypeError, ValueError) as e:
            logger.debug(f"Unexpected event validation error: {e}")

        self._errors += 1
        return None

    def validate_workflow(
        self, workflow: Union[WorkflowTelemetry, Mapping]
    ) -> Optional[WorkflowTelemetry]:
        """
        Validate workflow telemetry.

        Returns:
            The validated record, or None if it failed validation
        """
        try:
            validated = WorkflowTelemetry.model_validate(_as_dict(workflow))
            self._successes += 1
            return validated

        except ValidationError as e:
            logger.debug(f"Workflow validation failed: {e.error_count()} errors")
        except (TypeError, ValueError) as e:
            logger.debug(f"Unexpected workflow validation error: {e}")

        self._errors += 1
        return None

    @staticmethod
    def _validate_properties(name: str, properties: dict) -> dict:
        schema = EVENT_PROPERTY_SCHEMAS.get(name)
        if schema is None:
            return properties
        return schema.model_validate(properties).model_dump(by_alias=True, exclude_none=True)

    def get_stats(self) -> dict:
        """Get validation statistics."""
        total = self._errors + self._successes
        return {
            "errors": self._errors,
            "successes": self._successes,
            "total": total,
            "error_rate": self._errors / total if total else 0.0,
        }

    def reset_stats(self) -> None:
        self._errors = 0
        self._successes = 0


def event_name(event: Any) -> str:
    if isinstance(event, TelemetryEvent):
        return event.event
    if isinstance(event, Mapping):
        return str(event.get("event", ""))
    return ""
