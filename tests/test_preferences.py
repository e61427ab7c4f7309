"""
Unit tests for telemetry preferences and anonymous ids.
"""

import json
import logging
from unittest.mock import patch

import pytest

from usage_telemetry.preferences import (
    TelemetryPreferences,
    generate_user_id,
    is_container_environment,
    is_disabled_by_environment,
    read_boot_id,
)

BOOT_ID = "0f8fad5b-d9cb-469f-a165-70867728950e"


class TestTelemetryPreferences:
    @pytest.fixture
    def preferences(self, tmp_path):
        return TelemetryPreferences(tmp_path / "prefs", environ={})

    def test_first_run_creates_config(self, preferences):
        assert preferences.is_first_run()

        assert preferences.is_enabled()
        assert not preferences.is_first_run()

        data = json.loads(preferences.config_path.read_text())
        assert data["enabled"] is True
        assert len(data["user_id"]) == 16
        assert data["first_run"] is not None

    def test_first_run_notice_logged(self, preferences, caplog):
        with caplog.at_level(logging.INFO, logger="usage_telemetry.preferences"):
            preferences.load()

        assert preferences.get_user_id() in caplog.text

    def test_disable_persists(self, preferences, tmp_path):
        preferences.disable()

        reloaded = TelemetryPreferences(tmp_path / "prefs", environ={})
        assert not reloaded.is_enabled()

        reloaded.enable()
        assert TelemetryPreferences(tmp_path / "prefs", environ={}).is_enabled()

    def test_user_id_is_stable(self, preferences, tmp_path):
        first = preferences.get_user_id()

        assert TelemetryPreferences(tmp_path / "prefs", environ={}).get_user_id() == first

    def test_environment_disables(self, tmp_path):
        preferences = TelemetryPreferences(tmp_path, environ={"TELEMETRY_DISABLED": "true"})

        assert not preferences.is_enabled()
        assert preferences.get_status()["status"] == "DISABLED (via environment variable)"
        # Stored preference also starts disabled when the first run is env-disabled
        assert preferences.load().enabled is False

    def test_environment_overrides_stored_preference(self, tmp_path):
        TelemetryPreferences(tmp_path, environ={}).enable()

        preferences = TelemetryPreferences(tmp_path, environ={"DISABLE_TELEMETRY": "1"})

        assert not preferences.is_enabled()

    def test_corrupt_file_disables(self, tmp_path):
        (tmp_path / "telemetry.json").write_text("{not json")

        preferences = TelemetryPreferences(tmp_path, environ={})

        assert not preferences.is_enabled()
        assert len(preferences.get_user_id()) == 16

    def test_missing_user_id_is_generated(self, tmp_path):
        (tmp_path / "telemetry.json").write_text(json.dumps({"enabled": True}))

        preferences = TelemetryPreferences(tmp_path, environ={})

        assert len(preferences.get_user_id()) == 16
        saved = json.loads((tmp_path / "telemetry.json").read_text())
        assert saved["user_id"] == preferences.get_user_id()

    def test_get_status(self, preferences):
        status = preferences.get_status()

        assert status["status"] == "ENABLED"
        assert status["enabled"] is True
        assert status["config_path"].endswith("telemetry.json")


class TestEnvironmentDetection:
    def test_truthy_values_disable(self):
        assert is_disabled_by_environment({"USAGE_TELEMETRY_DISABLED": "true"})
        assert is_disabled_by_environment({"TELEMETRY_DISABLED": " 1 "})
        assert not is_disabled_by_environment({"TELEMETRY_DISABLED": "false"})
        assert not is_disabled_by_environment({})

    def test_invalid_value_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="usage_telemetry.preferences"):
            assert not is_disabled_by_environment({"DISABLE_TELEMETRY": "maybe"})

        assert "Invalid telemetry environment variable" in caplog.text

    def test_container_detection(self):
        assert is_container_environment({"IS_DOCKER": "true"})
        assert is_container_environment({"KUBERNETES_SERVICE_HOST": "10.0.0.1"})
        assert not is_container_environment({})


class TestUserId:
    def test_local_id_is_deterministic(self):
        assert generate_user_id({}) == generate_user_id({})
        assert len(generate_user_id({})) == 16

    def test_container_id_uses_boot_id(self):
        with patch("usage_telemetry.preferences.read_boot_id", return_value=BOOT_ID):
            with_boot_id = generate_user_id({"IS_DOCKER": "true"})
        with patch("usage_telemetry.preferences.read_boot_id", return_value=None):
            generic = generate_user_id({"IS_DOCKER": "true"})

        assert with_boot_id != generic
        assert len(with_boot_id) == 16

    def test_read_boot_id(self, tmp_path):
        path = tmp_path / "boot_id"

        path.write_text(BOOT_ID + "\n")
        assert read_boot_id(path) == BOOT_ID

        path.write_text("not-a-uuid")
        assert read_boot_id(path) is None

        assert read_boot_id(tmp_path / "missing") is None
