"""
Telemetry preferences: opt-in/opt-out state and the anonymous user id.

Stored as JSON in ~/.usage-telemetry/telemetry.json. Environment variables
can force telemetry off regardless of the stored preference.
"""

import hashlib
import json
import logging
import os
import platform
import re
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, ValidationError

from usage_telemetry import __version__

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".usage-telemetry"
CONFIG_FILENAME = "telemetry.json"

DISABLE_ENV_VARS = ("USAGE_TELEMETRY_DISABLED", "TELEMETRY_DISABLED", "DISABLE_TELEMETRY")
CLOUD_ENV_VARS = (
    "RAILWAY_ENVIRONMENT",
    "RENDER",
    "FLY_APP_NAME",
    "HEROKU_APP_NAME",
    "AWS_EXECUTION_ENV",
    "KUBERNETES_SERVICE_HOST",
    "GOOGLE_CLOUD_PROJECT",
    "AZURE_FUNCTIONS_ENVIRONMENT",
)
BOOT_ID_PATH = Path("/proc/sys/kernel/random/boot_id")
UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

FIRST_RUN_NOTICE = """
Anonymous usage statistics are enabled.

Collected: which tools are used, sanitized workflow structure, error
categories and timing. Never collected: URLs, API keys, credentials,
workflow content or personal information.

Your anonymous ID: {user_id}
To opt out at any time: usage-telemetry disable
"""


class PreferencesFile(BaseModel):
    """On-disk preferences document."""

    enabled: bool = True
    user_id: str
    first_run: Optional[datetime] = None
    last_modified: Optional[datetime] = None
    version: Optional[str] = None


def _hash_id(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:16]


def is_disabled_by_environment(environ: Optional[Mapping[str, str]] = None) -> bool:
    """Whether any disable variable is set to a truthy value."""
    env = os.environ if environ is None else environ

    for name in DISABLE_ENV_VARS:
        value = env.get(name)
        if value is None:
            continue

        normalized = value.strip().lower()
        if normalized not in ("true", "false", "1", "0", ""):
            logger.warning(
                f'Invalid telemetry environment variable value: {name}="{value}". '
                'Use "true" to disable or "false" to enable telemetry.'
            )
        if normalized in ("true", "1"):
            return True

    return False


def is_container_environment(environ: Optional[Mapping[str, str]] = None) -> bool:
    env = os.environ if environ is None else environ
    if env.get("IS_DOCKER", "").lower() == "true":
        return True
    return any(env.get(name) for name in CLOUD_ENV_VARS)


def read_boot_id(path: Path = BOOT_ID_PATH) -> Optional[str]:
    """Host boot id, or None if unavailable or malformed."""
    try:
        boot_id = path.read_text().strip()
    except OSError:
        return None
    return boot_id if UUID_PATTERN.match(boot_id) else None


def generate_user_id(environ: Optional[Mapping[str, str]] = None) -> str:
    """
    Deterministic anonymous id derived from machine characteristics.

    Containers and cloud hosts change hostname on every deploy, so they use
    the kernel boot id instead, falling back to a generic per-platform id.
    """
    system = platform.system().lower()
    machine = platform.machine()

    if is_container_environment(environ):
        boot_id = read_boot_id()
        if boot_id:
            return _hash_id(f"{boot_id}-{system}-{machine}")
        return _hash_id(f"docker-{system}-{machine}")

    return _hash_id(f"{socket.gethostname()}-{system}-{machine}-{Path.home()}")


class TelemetryPreferences:
    """Loads and persists the user's telemetry preference."""

    def __init__(
        self,
        config_dir: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self.config_path = self.config_dir / CONFIG_FILENAME
        self._environ = environ
        self._config: Optional[PreferencesFile] = None

    def load(self) -> PreferencesFile:
        """Load preferences, creating them on first run."""
        if self._config is not None:
            return self._config

        if not self.config_path.exists():
            env_disabled = self.is_disabled_by_environment()
            self._config = PreferencesFile(
                enabled=not env_disabled,
                user_id=generate_user_id(self._environ),
                first_run=datetime.now(timezone.utc),
                version=__version__,
            )
            self._save()
            if not env_disabled:
                logger.info(FIRST_RUN_NOTICE.format(user_id=self._config.user_id))
            return self._config

        try:
            with open(self.config_path, "r") as f:
                data = json.load(f)
            if not data.get("user_id"):
                data["user_id"] = generate_user_id(self._environ)
                self._config = PreferencesFile.model_validate(data)
                self._save()
            else:
                self._config = PreferencesFile.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Failed to load telemetry preferences, telemetry disabled: {e}")
            self._config = PreferencesFile(enabled=False, user_id=generate_user_id(self._environ))

        return self._config

    def _save(self) -> None:
        if self._config is None:
            return

        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            self._config.last_modified = datetime.now(timezone.utc)
            with open(self.config_path, "w") as f:
                f.write(self._config.model_dump_json(indent=2))
        except OSError as e:
            logger.warning(f"Failed to save telemetry preferences: {e}")

    def is_disabled_by_environment(self) -> bool:
        return is_disabled_by_environment(self._environ)

    def is_enabled(self) -> bool:
        """Environment override, then stored preference."""
        if self.is_disabled_by_environment():
            return False
        return self.load().enabled

    def is_first_run(self) -> bool:
        return not self.config_path.exists()

    def get_user_id(self) -> str:
        return self.load().user_id

    def enable(self) -> None:
        self.load().enabled = True
        self._save()
        logger.info("Anonymous telemetry enabled")

    def disable(self) -> None:
        self.load().enabled = False
        self._save()
        logger.info("Anonymous telemetry disabled")

    def get_status(self) -> dict:
        config = self.load()
        env_disabled = self.is_disabled_by_environment()

        if env_disabled:
            status = "DISABLED (via environment variable)"
        else:
            status = "ENABLED" if config.enabled else "DISABLED"

        return {
            "status": status,
            "enabled": config.enabled and not env_disabled,
            "user_id": config.user_id,
            "first_run": config.first_run.isoformat() if config.first_run else None,
            "config_path": str(self.config_path),
        }
