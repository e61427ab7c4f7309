"""
Logging configuration for usage-telemetry.

Telemetry internals log at DEBUG through module loggers. Hosts that
already configure logging need nothing from here; the CLI and standalone
runs use setup_logging() for console output and an optional rotating file.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in ("error_type", "duration_ms", "batch_size"):
            if hasattr(record, field):
                log_obj[field] = getattr(record, field)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable formatter for console and file logs."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False, verbose: bool = True):
        self.use_colors = use_colors
        if verbose:
            fmt = "%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s"
        else:
            fmt = "%(message)s"
        super().__init__(fmt=fmt, datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        if self.use_colors and record.levelname in self.COLORS:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logging(
    console_level: str = "INFO",
    log_file: Optional[str] = None,
    file_level: str = "DEBUG",
    use_json: bool = False,
    verbose: bool = True,
    max_bytes: int = 5 * 1024 * 1024,  # 5MB
    backup_count: int = 3,
) -> None:
    """
    Configure logging for the telemetry package.

    Args:
        console_level: Console logging level
        log_file: Optional path of a rotating log file
        file_level: File logging level
        use_json: Use JSON formatting for the file
        verbose: Include timestamp and location on the console
        max_bytes: Max size per log file before rotation
        backup_count: Number of backup files to keep
    """
    package_logger = logging.getLogger("usage_telemetry")
    package_logger.setLevel(logging.DEBUG)
    package_logger.handlers.clear()
    package_logger.propagate = False

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, console_level.upper()))
    console_handler.setFormatter(
        HumanReadableFormatter(use_colors=sys.stderr.isatty(), verbose=verbose)
    )
    package_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count
        )
        file_handler.setLevel(getattr(logging, file_level.upper()))
        file_handler.setFormatter(StructuredFormatter() if use_json else HumanReadableFormatter())
        package_logger.addHandler(file_handler)

    # Keep transport chatter out of telemetry output
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    package_logger.debug(
        f"Logging initialized - Console: {console_level}, File: {log_file or 'none'}, JSON: {use_json}"
    )
