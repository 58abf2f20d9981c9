"""
Tests for provider call telemetry
"""

from datetime import timedelta
from unittest.mock import Mock

from ai.telemetry import ProviderTelemetry
from tests.helpers import NOW


def _record(telemetry, status="success", latency_ms=100.0, provider="primary", retries=0, **extra):
    return telemetry.record(
        model="gpt-test",
        provider=provider,
        status=status,
        latency_ms=latency_ms,
        retries=retries,
        fallback_used=status != "success",
        **extra,
    )


class TestProviderTelemetry:

    def test_newest_first_and_bounded(self, clock):
        telemetry = ProviderTelemetry(max_entries=3, clock=clock)
        for i in range(5):
            _record(telemetry, latency_ms=float(i))

        latencies = [m["latency_ms"] for m in telemetry.get_metrics(limit=10)["metrics"]]
        assert latencies == [4.0, 3.0, 2.0]
        assert len(telemetry) == 3

    def test_summary_counts_and_average(self, telemetry):
        _record(telemetry, latency_ms=100.0)
        _record(telemetry, latency_ms=300.0)
        _record(telemetry, status="error", latency_ms=5000.0, error_message="timeout")
        _record(telemetry, status="skipped", latency_ms=0.0)

        summary = telemetry.summary()

        assert summary["total_calls"] == 4
        assert summary["success_count"] == 2
        assert summary["error_count"] == 1
        assert summary["skipped_count"] == 1
        # only successful calls contribute to latency
        assert summary["average_latency_ms"] == 200.0
        assert summary["last_error_at"] == NOW.isoformat()

    def test_empty_summary(self, telemetry):
        summary = telemetry.summary()

        assert summary["total_calls"] == 0
        assert summary["average_latency_ms"] is None
        assert summary["last_call_at"] is None

    def test_limit_slices_metrics(self, telemetry):
        for _ in range(5):
            _record(telemetry)

        payload = telemetry.get_metrics(limit=2)

        assert len(payload["metrics"]) == 2
        assert payload["summary"]["total_calls"] == 5

    def test_last_by_status(self, telemetry):
        _record(telemetry, status="error")
        _record(telemetry, provider="secondary")

        assert telemetry.last().provider == "secondary"
        assert telemetry.last("error").status == "error"
        assert telemetry.last("skipped") is None

    def test_explicit_created_at_is_kept(self, telemetry):
        earlier = NOW - timedelta(minutes=5)

        metric = _record(telemetry, created_at=earlier)

        assert metric.created_at == earlier
        assert metric.id

    def test_forwards_to_metrics_recorder(self, clock):
        recorder = Mock()
        telemetry = ProviderTelemetry(clock=clock, metrics=recorder)

        _record(telemetry, status="error", latency_ms=42.0, retries=2)

        recorder.record_provider_call.assert_called_once_with(
            provider="primary", status="error", latency_ms=42.0, retries=2,
        )

    def test_reset(self, telemetry):
        _record(telemetry)
        telemetry.reset()

        assert len(telemetry) == 0
