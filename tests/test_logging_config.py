"""
Tests for logging configuration.
"""

import json
import logging

import pytest

from usage_telemetry.logging_config import (
    HumanReadableFormatter,
    StructuredFormatter,
    setup_logging,
)


def make_record(message="flush complete", level=logging.INFO, **extra):
    record = logging.LogRecord(
        name="usage_telemetry.batch_processor",
        level=level,
        pathname=__file__,
        lineno=10,
        msg=message,
        args=(),
        exc_info=None,
        func="flush",
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    def test_structured_formatter(self):
        output = json.loads(StructuredFormatter().format(make_record(batch_size=50)))

        assert output["level"] == "INFO"
        assert output["logger"] == "usage_telemetry.batch_processor"
        assert output["message"] == "flush complete"
        assert output["function"] == "flush"
        assert output["batch_size"] == 50
        assert "error_type" not in output

    def test_human_readable_plain(self):
        formatter = HumanReadableFormatter(verbose=False)

        assert formatter.format(make_record()) == "flush complete"

    def test_colors_do_not_leak_into_record(self):
        formatter = HumanReadableFormatter(use_colors=True)
        record = make_record(level=logging.WARNING)

        output = formatter.format(record)

        assert "\033[33m" in output
        assert record.levelname == "WARNING"


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def restore_logger(self):
        package_logger = logging.getLogger("usage_telemetry")
        handlers = list(package_logger.handlers)
        level = package_logger.level
        propagate = package_logger.propagate
        yield
        for handler in package_logger.handlers:
            handler.close()
        package_logger.handlers = handlers
        package_logger.setLevel(level)
        package_logger.propagate = propagate

    def test_console_only(self):
        setup_logging(console_level="WARNING")

        package_logger = logging.getLogger("usage_telemetry")
        assert len(package_logger.handlers) == 1
        assert package_logger.handlers[0].level == logging.WARNING
        assert package_logger.propagate is False

    def test_json_log_file(self, tmp_path):
        log_file = tmp_path / "logs" / "telemetry.log"

        setup_logging(log_file=str(log_file), use_json=True)
        logging.getLogger("usage_telemetry.tracker").debug("queued event")
        for handler in logging.getLogger("usage_telemetry").handlers:
            handler.flush()

        lines = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert any(line["message"] == "queued event" for line in lines)
