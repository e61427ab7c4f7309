"""
Unit tests for the event tracker.
"""

import pytest

from usage_telemetry.errors import TelemetryError, TelemetryErrorType
from usage_telemetry.rate_limiter import TelemetryRateLimiter
from usage_telemetry.tracker import (
    TelemetryEventTracker,
    categorize_config_complexity,
    categorize_error,
)


class TestTelemetryEventTracker:
    @pytest.fixture
    def enabled(self):
        return {"value": True}

    @pytest.fixture
    def tracker(self, enabled, clock):
        return TelemetryEventTracker(
            get_user_id=lambda: "user-1",
            is_enabled=lambda: enabled["value"],
            rate_limiter=TelemetryRateLimiter(window_seconds=60, max_events=100, clock=clock),
        )

    def test_track_tool_usage(self, tracker):
        assert tracker.track_tool_usage("search_nodes", True, 12)

        [event] = tracker.get_event_queue()
        assert event.event == "tool_used"
        assert event.user_id == "user-1"
        assert event.properties == {"tool": "search_nodes", "success": True, "duration": 12}

    def test_disabled_tracks_nothing(self, tracker, enabled):
        enabled["value"] = False

        assert not tracker.track_event("custom", {})
        assert not tracker.track_tool_usage("search_nodes", True)
        assert tracker.get_event_queue() == []

    def test_rate_limited(self, clock):
        tracker = TelemetryEventTracker(
            get_user_id=lambda: "user-1",
            is_enabled=lambda: True,
            rate_limiter=TelemetryRateLimiter(window_seconds=60, max_events=2, clock=clock),
        )

        results = [tracker.track_event("custom", {"n": i}) for i in range(3)]

        assert results == [True, True, False]
        assert len(tracker.get_event_queue()) == 2

    def test_invalid_event_is_not_queued(self, tracker):
        assert not tracker.track_event("not valid!", {})
        assert tracker.get_event_queue() == []

    def test_queue_overflow_drops_oldest(self):
        tracker = TelemetryEventTracker(
            get_user_id=lambda: "user-1", is_enabled=lambda: True, max_queue_size=3
        )

        for i in range(5):
            tracker.track_event("custom", {"n": i})

        assert [e.properties["n"] for e in tracker.get_event_queue()] == [2, 3, 4]
        assert tracker.queue_overflows == 2

    def test_track_error_redacts_context(self, tracker):
        tracker.track_error("ValidationError", "failed for bob@example.com", tool_name="validate node")

        [event] = tracker.get_event_queue()
        assert event.event == "error_occurred"
        assert event.properties == {
            "errorType": "ValidationError",
            "context": "failed for [EMAIL]",
            "tool": "validate_node",
        }

    def test_track_error_is_rate_limited(self, clock):
        tracker = TelemetryEventTracker(
            get_user_id=lambda: "user-1",
            is_enabled=lambda: True,
            rate_limiter=TelemetryRateLimiter(window_seconds=60, max_events=1, clock=clock),
        )

        assert tracker.track_error("TypeError", "first")
        assert not tracker.track_error("TypeError", "second")

    @pytest.mark.asyncio
    async def test_workflow_creation(self, tracker, sample_workflow):
        assert await tracker.track_workflow_creation(sample_workflow, validation_passed=True)

        [workflow] = tracker.get_workflow_queue()
        assert workflow.node_count == 2
        assert workflow.has_webhook
        assert "pinData" not in workflow.sanitized_workflow.model_dump()

        [event] = tracker.get_event_queue()
        assert event.event == "workflow_created"
        assert event.properties["nodeCount"] == 2

        # The derived event does not consume a second admission
        assert tracker.rate_limiter.get_stats()["current_events"] == 1

    @pytest.mark.asyncio
    async def test_workflow_validation_failed(self, tracker, sample_workflow):
        assert not await tracker.track_workflow_creation(sample_workflow, validation_passed=False)

        assert tracker.get_workflow_queue() == []
        [event] = tracker.get_event_queue()
        assert event.event == "workflow_validation_failed"
        assert event.properties == {"nodeCount": 2}

    @pytest.mark.asyncio
    async def test_unsanitizable_workflow_raises(self, tracker):
        with pytest.raises(TelemetryError) as exc_info:
            await tracker.track_workflow_creation([1, 2], validation_passed=True)

        assert exc_info.value.type == TelemetryErrorType.VALIDATION_ERROR

    def test_tool_sequence(self, tracker):
        tracker.update_tool_sequence("search_nodes")
        tracker.update_tool_sequence("get_node_info")

        [event] = tracker.get_event_queue()
        assert event.event == "tool_sequence"
        assert event.properties["sequence"] == "search_nodes->get_node_info"
        assert event.properties["isSlowTransition"] is False

    def test_search_query(self, tracker):
        tracker.track_search_query("webhook", 0, "fts")

        [event] = tracker.get_event_queue()
        assert event.properties["isZeroResults"] is True
        assert event.properties["hasResults"] is False

    def test_validation_details(self, tracker):
        tracker.track_validation_details("n8n-nodes-base.set", "required_field", {"field": "value"})

        [event] = tracker.get_event_queue()
        assert event.properties["nodeType"] == "n8n-nodes-base.set"
        assert event.properties["errorCategory"] == "required_field_error"

    def test_performance_stats(self, tracker):
        for duration in (10, 20, 30, 40):
            tracker.track_performance_metric("flush", duration)

        stats = tracker.get_stats()["performance_metrics"]["flush"]

        assert stats["count"] == 4
        assert stats["min"] == 10
        assert stats["max"] == 40
        assert stats["avg"] == 25

    def test_drain(self, tracker):
        tracker.track_event("custom", {})

        assert len(tracker.drain_events()) == 1
        assert tracker.get_event_queue() == []
        assert tracker.drain_workflows() == []


def test_categorize_error():
    assert categorize_error("TypeError") == "type_error"
    assert categorize_error("connection refused") == "connection_error"
    assert categorize_error("boom") == "other_error"


def test_categorize_config_complexity():
    assert categorize_config_complexity(0) == "defaults_only"
    assert categorize_config_complexity(3) == "simple"
    assert categorize_config_complexity(10) == "moderate"
    assert categorize_config_complexity(11) == "complex"
