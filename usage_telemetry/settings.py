"""
Telemetry pipeline settings.

Defaults match the production tuning. Values can be overridden from a YAML
file or from USAGE_TELEMETRY_* environment variables.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

ENV_PREFIX = "USAGE_TELEMETRY_"
SETTINGS_FILE_ENV_VAR = "USAGE_TELEMETRY_SETTINGS_FILE"

DEFAULT_EVENTS_TABLE = "telemetry_events"
DEFAULT_WORKFLOWS_TABLE = "telemetry_workflows"


class TelemetrySettings(BaseModel):
    """Tunable limits and backend location for the telemetry pipeline."""

    model_config = ConfigDict(extra="forbid")

    # Batching
    batch_flush_interval: float = Field(5.0, gt=0, description="Seconds between periodic flushes")
    max_batch_size: int = Field(50, gt=0, le=1000)
    max_queue_size: int = Field(1000, gt=0, description="Per-kind producer queue bound")
    dead_letter_size: int = Field(100, gt=0)

    # Retry
    max_retries: int = Field(3, ge=1, le=10)
    retry_delay: float = Field(1.0, ge=0, description="Base backoff delay in seconds")
    operation_timeout: float = Field(5.0, gt=0, description="Per-attempt timeout in seconds")
    skip_retry_delays: bool = False

    # Rate limiting
    rate_limit_window: float = Field(60.0, gt=0, description="Sliding window in seconds")
    rate_limit_max_events: int = Field(100, gt=0)

    # Circuit breaker
    failure_threshold: int = Field(5, gt=0)
    reset_timeout: float = Field(60.0, gt=0)
    half_open_requests: int = Field(3, gt=0)

    # Shutdown
    shutdown_timeout: float = Field(2.0, gt=0, description="Deadline for the final flush")
    install_signal_handlers: bool = True

    # Backend
    backend_url: Optional[str] = None
    backend_key: Optional[str] = None
    events_table: str = DEFAULT_EVENTS_TABLE
    workflows_table: str = DEFAULT_WORKFLOWS_TABLE

    # Preferences location
    config_dir: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "TelemetrySettings":
        """
        Create settings from environment variables.

        Every field can be set as USAGE_TELEMETRY_<FIELD_NAME>, e.g.
        USAGE_TELEMETRY_MAX_BATCH_SIZE=25. Unknown variables are ignored.
        """
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        for name in cls.model_fields:
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = raw

        return cls.model_validate(values)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "TelemetrySettings":
        """Load settings from a YAML file. Missing file means defaults."""
        config_path = Path(path)
        if not config_path.exists():
            logger.debug(f"Telemetry settings file {config_path} not found, using defaults")
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls.model_validate(data.get("telemetry", data))

    def save(self, path: Union[str, Path]) -> None:
        """Write settings to a YAML file."""
        config_path = Path(path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w") as f:
            yaml.dump({"telemetry": self.model_dump()}, f, default_flow_style=False)
