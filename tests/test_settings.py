"""
Tests for telemetry settings loading.
"""

import pytest
import yaml
from pydantic import ValidationError

from usage_telemetry.settings import TelemetrySettings


class TestTelemetrySettings:
    def test_defaults(self):
        settings = TelemetrySettings()

        assert settings.batch_flush_interval == 5.0
        assert settings.max_batch_size == 50
        assert settings.max_retries == 3
        assert settings.retry_delay == 1.0
        assert settings.operation_timeout == 5.0
        assert settings.rate_limit_window == 60.0
        assert settings.rate_limit_max_events == 100
        assert settings.dead_letter_size == 100
        assert settings.max_queue_size == 1000
        assert settings.failure_threshold == 5
        assert settings.reset_timeout == 60.0
        assert settings.half_open_requests == 3

    def test_from_env(self):
        settings = TelemetrySettings.from_env(
            {
                "USAGE_TELEMETRY_MAX_BATCH_SIZE": "25",
                "USAGE_TELEMETRY_SKIP_RETRY_DELAYS": "true",
                "USAGE_TELEMETRY_BACKEND_URL": "https://project.supabase.co",
                "USAGE_TELEMETRY_DISABLED": "true",
                "UNRELATED": "x",
            }
        )

        assert settings.max_batch_size == 25
        assert settings.skip_retry_delays is True
        assert settings.backend_url == "https://project.supabase.co"

    def test_from_env_rejects_invalid_values(self):
        with pytest.raises(ValidationError):
            TelemetrySettings.from_env({"USAGE_TELEMETRY_MAX_BATCH_SIZE": "0"})

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            TelemetrySettings(batch_size=10)

    def test_missing_file_gives_defaults(self, tmp_path):
        assert TelemetrySettings.from_file(tmp_path / "missing.yml") == TelemetrySettings()

    def test_from_file(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text(yaml.dump({"telemetry": {"max_retries": 5, "events_table": "events"}}))

        settings = TelemetrySettings.from_file(path)

        assert settings.max_retries == 5
        assert settings.events_table == "events"

    def test_save(self, tmp_path):
        path = tmp_path / "nested" / "config.yml"

        TelemetrySettings(reset_timeout=30).save(path)

        data = yaml.safe_load(path.read_text())
        assert data["telemetry"]["reset_timeout"] == 30
