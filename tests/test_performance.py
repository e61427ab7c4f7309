"""
Unit tests for the telemetry performance monitor.
"""

from unittest.mock import Mock, patch

import pytest

from usage_telemetry.performance import TelemetryPerformanceMonitor, percentile


class TestTelemetryPerformanceMonitor:
    @pytest.fixture
    def monitor(self, clock):
        return TelemetryPerformanceMonitor(clock=clock, capture_memory=False)

    def test_end_without_start(self, monitor):
        assert monitor.end_operation("flush") == 0.0
        assert monitor.get_statistics()["operations_in_last_minute"] == 0

    def test_start_end_records(self, monitor):
        monitor.start_operation("flush")
        duration = monitor.end_operation("flush")

        assert duration >= 0
        assert monitor.get_statistics()["operations_by_type"]["flush"]["count"] == 1

    def test_statistics(self, monitor):
        for duration in (10, 20, 30, 100):
            monitor.record("track_tool_usage", duration)
        monitor.record("flush", 40)

        stats = monitor.get_statistics()

        assert stats["total_operations"] == 2
        assert stats["operations_in_last_minute"] == 5
        assert stats["average_duration"] == 40
        assert stats["slow_operations"] == 1
        assert stats["operations_by_type"]["track_tool_usage"] == {"count": 4, "avg_duration": 40}
        assert stats["overhead"]["percentage"] == 4.0

    def test_old_operations_leave_the_window(self, monitor, clock):
        monitor.record("flush", 10)
        clock.advance(61)

        assert monitor.get_statistics()["operations_in_last_minute"] == 0

    def test_detailed_report(self, monitor):
        for duration in range(1, 101):
            monitor.record("flush", float(duration))

        report = monitor.get_detailed_report()

        assert report["percentiles"]["p50"] == 50
        assert report["percentiles"]["p99"] == 99
        assert [op["duration"] for op in report["top_slow_operations"]] == [100, 99, 98, 97, 96]
        assert report["memory_trend"] == {"trend": "stable", "delta": 0}
        assert "Consider batching more events to reduce overhead" in report["recommendations"]

    def test_overhead_impact(self, monitor):
        assert monitor.get_telemetry_overhead() == {"percentage": 0.0, "impact": "minimal"}

        monitor.record("flush", 100)
        assert monitor.get_telemetry_overhead() == {"percentage": 5.0, "impact": "high"}

    def test_memory_capture(self, clock):
        process = Mock()
        process.memory_info.return_value = Mock(rss=50 * 1024 * 1024, vms=200 * 1024 * 1024)

        with patch("usage_telemetry.performance.psutil.Process", return_value=process):
            monitor = TelemetryPerformanceMonitor(clock=clock)
            monitor.record("flush", 5)
            stats = monitor.get_statistics()

        assert stats["memory_usage"] == {"rss": 50, "vms": 200}

    def test_reset(self, monitor):
        monitor.record("flush", 10)

        monitor.reset()

        assert monitor.get_statistics()["total_operations"] == 0


def test_percentile():
    assert percentile([], 0.5) == 0.0
    assert percentile([1.0, 2.0, 3.0, 4.0], 0.5) == 2.0
    assert percentile([1.0, 2.0, 3.0, 4.0], 0.99) == 4.0
