"""Tests for Prometheus metrics hooks."""

import pytest

from infra.metrics import IterationStats, MetricsRecorder


@pytest.fixture
def recorder():
    return MetricsRecorder(enabled=True, port=0)


def _value(recorder, name, **labels):
    return recorder.registry.get_sample_value(name, labels or None)


def test_provider_call_counters(recorder):
    recorder.record_provider_call(provider="primary", status="success", latency_ms=250.0, retries=0)
    recorder.record_provider_call(provider="primary", status="error", latency_ms=900.0, retries=3)

    assert _value(recorder, "engine_provider_calls_total", provider="primary", status="success") == 1.0
    assert _value(recorder, "engine_provider_retries_total", provider="primary") == 3.0
    assert _value(recorder, "engine_provider_latency_seconds_sum", provider="primary", status="error") == 0.9
    assert recorder.provider_call_counts() == {"success": 1, "error": 1}
    assert recorder.last_provider_event()["status"] == "error"


def test_execution_outcomes_and_skip_reasons(recorder):
    recorder.record_execution(150.0, skipped_reasons=["not in whitelist", "risk exceeds limit"])
    recorder.record_execution(0.0, skipped_reasons=["insufficient daily limit"])
    recorder.record_execution(20.0, fallback_used=True)

    assert _value(recorder, "engine_executions_total", outcome="executed") == 1.0
    assert _value(recorder, "engine_executions_total", outcome="noop") == 1.0
    assert _value(recorder, "engine_executions_total", outcome="fallback") == 1.0
    assert _value(recorder, "engine_executed_usd_total") == 170.0
    assert _value(recorder, "engine_skipped_actions_total", reason="not_whitelisted") == 1.0
    assert _value(recorder, "engine_skipped_actions_total", reason="risk_limit") == 1.0
    assert _value(recorder, "engine_skipped_actions_total", reason="daily_limit") == 1.0
    assert recorder.executed_usd_total() == 170.0


def test_scheduler_run_and_conflicts(recorder):
    stats = IterationStats(source="automatic", processed=3, succeeded=2, failed=1, duration_seconds=1.5)

    recorder.record_scheduler_run(stats)
    recorder.record_scheduler_conflict("manual")

    assert recorder.last_iteration() is stats
    assert _value(recorder, "engine_scheduler_last_iteration_accounts", result="error") == 1.0
    assert _value(recorder, "engine_scheduler_iteration_seconds_count", source="automatic") == 1.0
    assert _value(recorder, "engine_scheduler_conflicts_total", source="manual") == 1.0


def test_disabled_recorder_keeps_snapshots_only():
    recorder = MetricsRecorder(enabled=False)

    recorder.record_execution(50.0)
    recorder.record_provider_call(provider="primary", status="skipped", latency_ms=0.0, retries=0)
    recorder.start()

    assert recorder.executed_usd_total() == 50.0
    assert recorder.provider_call_counts() == {"skipped": 1}
    assert _value(recorder, "engine_executions_total", outcome="noop") is None
    assert not recorder.is_enabled()


def test_separate_recorders_do_not_collide():
    MetricsRecorder(enabled=True)
    MetricsRecorder(enabled=True)
