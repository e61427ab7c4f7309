"""
Tests for startup checkpoints and direct startup error reporting.
"""

import asyncio
import logging

import pytest

from usage_telemetry.startup import (
    StartupCheckpoint,
    StartupErrorLogger,
    describe_error,
    find_failed_checkpoint,
    get_checkpoint_description,
    get_completion_percentage,
    get_next_checkpoint,
    is_valid_checkpoint,
)


class TestCheckpoints:
    def test_validity_and_description(self):
        assert is_valid_checkpoint("database_connected")
        assert not is_valid_checkpoint("warming_up")
        assert get_checkpoint_description("server_ready") == "Server fully initialized and ready"
        assert get_checkpoint_description("warming_up") == "Unknown checkpoint"

    def test_find_failed_checkpoint(self):
        passed = ["process_started", "database_connecting"]

        assert find_failed_checkpoint(passed) == StartupCheckpoint.DATABASE_CONNECTED
        assert find_failed_checkpoint([c.value for c in StartupCheckpoint]) == StartupCheckpoint.SERVER_READY

    def test_next_checkpoint(self):
        assert get_next_checkpoint("process_started") == StartupCheckpoint.DATABASE_CONNECTING
        assert get_next_checkpoint("server_ready") is None
        assert get_next_checkpoint("warming_up") is None

    def test_completion_percentage(self):
        assert get_completion_percentage([]) == 0
        assert get_completion_percentage(["process_started", "database_connecting", "database_connected"]) == 30


class TestDescribeError:
    def test_exception(self):
        described = describe_error(ConnectionError("failed to reach admin@example.com"))

        assert described["type"] == "ConnectionError"
        assert described["message"] == "ConnectionError: failed to reach [EMAIL]"

    def test_string_and_other(self):
        assert describe_error("boom")["type"] == "string_error"
        assert describe_error(42) == {"message": "42", "type": "unknown"}

    def test_message_truncated(self):
        assert len(describe_error("x " * 400)["message"]) == 500


class TestStartupErrorLogger:
    @pytest.fixture
    def startup(self, backend, clock):
        return StartupErrorLogger(
            get_backend=lambda: backend,
            get_user_id=lambda: "user-1",
            is_enabled=lambda: True,
            clock=clock,
            environ={"IS_DOCKER": "true"},
        )

    def test_checkpoints_recorded_once(self, startup):
        startup.log_checkpoint("process_started")
        startup.log_checkpoint("process_started")
        startup.log_checkpoint(StartupCheckpoint.DATABASE_CONNECTING.value)

        assert startup.get_checkpoints() == ["process_started", "database_connecting"]

    def test_invalid_checkpoint_warns(self, startup, caplog):
        with caplog.at_level(logging.WARNING, logger="usage_telemetry.startup"):
            startup.log_checkpoint("warming_up")

        assert startup.get_checkpoints() == []
        assert "Invalid startup checkpoint" in caplog.text

    @pytest.mark.asyncio
    async def test_startup_error_sent_directly(self, startup, backend, clock):
        startup.log_checkpoint("process_started")
        startup.log_checkpoint("database_connecting")
        clock.advance(1.5)

        sent = await startup.log_startup_error("database_connected", RuntimeError("no such table"))

        assert sent is True
        [record] = backend.records_for("telemetry_events")
        assert record["event"] == "startup_error"
        properties = record["properties"]
        assert properties["checkpoint"] == "database_connected"
        assert properties["errorMessage"] == "RuntimeError: no such table"
        assert properties["errorType"] == "RuntimeError"
        assert properties["checkpointsPassed"] == ["process_started", "database_connecting"]
        assert properties["checkpointsPassedCount"] == 2
        assert properties["startupDuration"] == 1500
        assert properties["isDocker"] is True

    @pytest.mark.asyncio
    async def test_startup_duration_capped(self, startup, backend, clock):
        clock.advance(600)

        await startup.log_startup_error("process_started", "slow boot")

        [record] = backend.records_for("telemetry_events")
        assert record["properties"]["startupDuration"] == 300_000

    @pytest.mark.asyncio
    async def test_startup_completed(self, startup, backend):
        assert await startup.log_startup_completed("1.0.0") is True

        [record] = backend.records_for("telemetry_events")
        assert record["event"] == "startup_completed"
        assert record["properties"] == {"version": "1.0.0"}

    @pytest.mark.asyncio
    async def test_insert_bounded_by_timeout(self, blocking_backend):
        startup = StartupErrorLogger(
            get_backend=lambda: blocking_backend,
            get_user_id=lambda: "user-1",
            is_enabled=lambda: True,
            timeout=0.05,
        )

        sent = await asyncio.wait_for(startup.log_startup_error("process_started", "boom"), timeout=1)

        assert sent is False

    @pytest.mark.asyncio
    async def test_backend_failure_not_raised(self, backend_factory):
        backend = backend_factory(always_fail=True)
        startup = StartupErrorLogger(
            get_backend=lambda: backend, get_user_id=lambda: "user-1", is_enabled=lambda: True
        )

        assert await startup.log_startup_error("process_started", "boom") is False
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_disabled_or_no_backend(self, backend):
        disabled = StartupErrorLogger(
            get_backend=lambda: backend, get_user_id=lambda: "user-1", is_enabled=lambda: False
        )
        no_backend = StartupErrorLogger(
            get_backend=lambda: None, get_user_id=lambda: "user-1", is_enabled=lambda: True
        )

        assert await disabled.log_startup_error("process_started", "boom") is False
        assert await no_backend.log_startup_completed("1.0.0") is False
        assert backend.calls == []
        assert disabled.get_startup_data() is None

    def test_startup_data(self, startup, clock):
        startup.log_checkpoint("process_started")
        clock.advance(2)

        assert startup.get_startup_data() == {
            "duration_ms": 2000,
            "checkpoints": ["process_started"],
            "completion": 10,
        }
