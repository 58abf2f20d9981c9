"""
Tests for the execution scheduler

Validates:
- Single-flight: manual vs manual conflicts, manual vs automatic is skipped
- Per-account failure isolation
- Status bookkeeping (last_error cleared on a clean run)
- start/stop idempotence
"""

import threading
from datetime import timedelta
from unittest.mock import Mock

import pytest

from core.exceptions import ConcurrencyConflict
from core.models import ExecutionRecord
from runner.scheduler import ITERATION_FAILED, MIN_INTERVAL_MS, ExecutionScheduler
from tests.helpers import NOW, InMemoryDelegationStore, fixed_clock, make_delegation


def _record(account, executed=50.0, remaining=150.0):
    return ExecutionRecord(
        account=account,
        delegate="0xdelegate",
        generated_at=NOW,
        summary=f"Executed actions worth {executed:.2f} USD.",
        total_executed_usd=executed,
        remaining_daily_limit_usd=remaining,
        actions=(),
    )


class RecordingOrchestrator:
    """execute() succeeds unless the account is listed in failures."""

    def __init__(self, failures=()):
        self.failures = set(failures)
        self.calls = []
        self._lock = threading.Lock()

    def execute(self, account):
        with self._lock:
            self.calls.append(account)
        if account in self.failures:
            raise RuntimeError(f"boom for {account}")
        return _record(account)


class BlockingOrchestrator(RecordingOrchestrator):
    """execute() blocks until released so a second run can overlap it."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def execute(self, account):
        self.entered.set()
        self.release.wait(timeout=5)
        return super().execute(account)


def build(orchestrator=None, delegations=None, metrics=None, interval_ms=60_000):
    store = InMemoryDelegationStore(*(delegations or [make_delegation()]))
    scheduler = ExecutionScheduler(
        orchestrator or RecordingOrchestrator(),
        store,
        interval_ms=interval_ms,
        clock=fixed_clock(),
        metrics=metrics,
    )
    return scheduler


def _run_in_thread(scheduler, source):
    out = {}

    def target():
        out["summary"] = scheduler.run_once(source)

    thread = threading.Thread(target=target)
    thread.start()
    return thread, out


class TestSingleFlight:

    def test_second_manual_run_conflicts(self):
        orchestrator = BlockingOrchestrator()
        scheduler = build(orchestrator)

        thread, out = _run_in_thread(scheduler, "manual")
        assert orchestrator.entered.wait(timeout=5)

        with pytest.raises(ConcurrencyConflict):
            scheduler.run_once("manual")

        orchestrator.release.set()
        thread.join(timeout=5)
        assert out["summary"].success_count == 1
        assert orchestrator.calls == ["0xabc"]

    def test_manual_run_during_automatic_is_skipped(self):
        orchestrator = BlockingOrchestrator()
        scheduler = build(orchestrator)

        thread, out = _run_in_thread(scheduler, "automatic")
        assert orchestrator.entered.wait(timeout=5)

        assert scheduler.run_once("manual") is None
        assert scheduler.get_status()["running"] is True

        orchestrator.release.set()
        thread.join(timeout=5)
        assert out["summary"].source == "automatic"
        assert scheduler.get_status()["running"] is False

    def test_automatic_tick_during_manual_is_skipped(self):
        orchestrator = BlockingOrchestrator()
        metrics = Mock()
        scheduler = build(orchestrator, metrics=metrics)

        thread, _ = _run_in_thread(scheduler, "manual")
        assert orchestrator.entered.wait(timeout=5)

        assert scheduler.run_once("automatic") is None
        metrics.record_scheduler_conflict.assert_called_once_with("automatic")

        orchestrator.release.set()
        thread.join(timeout=5)

    def test_lock_released_after_run(self):
        scheduler = build()

        assert scheduler.run_once() is not None
        assert scheduler.run_once() is not None


class TestIteration:

    def test_only_eligible_delegations_are_processed(self):
        orchestrator = RecordingOrchestrator()
        scheduler = build(orchestrator, delegations=[
            make_delegation(account="0xa"),
            make_delegation(account="0xb", active=False),
            make_delegation(account="0xc", valid_until=NOW - timedelta(minutes=1)),
        ])

        summary = scheduler.run_once()

        assert orchestrator.calls == ["0xa"]
        assert summary.processed_accounts == 1

    def test_one_failure_does_not_abort_the_rest(self):
        orchestrator = RecordingOrchestrator(failures={"0xb"})
        scheduler = build(orchestrator, delegations=[
            make_delegation(account="0xa"),
            make_delegation(account="0xb"),
            make_delegation(account="0xc"),
        ])

        summary = scheduler.run_once()

        assert orchestrator.calls == ["0xa", "0xb", "0xc"]
        assert summary.success_count == 2
        assert summary.error_count == 1
        failed = [r for r in summary.results if r.status == "error"]
        assert failed[0].account == "0xb"
        assert failed[0].error == "boom for 0xb"
        assert failed[0].delegate == "0xdelegate"

    def test_success_result_fields(self):
        summary = build().run_once()

        result = summary.results[0]
        assert result.status == "success"
        assert result.executed_usd == 50.0
        assert result.remaining_daily_limit_usd == 150.0
        assert result.summary == "Executed actions worth 50.00 USD."

    def test_listing_failure_is_an_iteration_error(self):
        scheduler = build()
        scheduler.delegations = Mock()
        scheduler.delegations.list_delegations.side_effect = IOError("state unreadable")

        summary = scheduler.run_once()

        assert summary.processed_accounts == 0
        assert summary.error_count == 1
        assert scheduler.get_status()["last_error"] == "state unreadable"

    def test_metrics_receive_iteration_stats(self):
        metrics = Mock()
        build(metrics=metrics).run_once()

        stats = metrics.record_scheduler_run.call_args.args[0]
        assert stats.source == "manual"
        assert stats.processed == 1
        assert stats.succeeded == 1
        assert stats.failed == 0


class TestStatus:

    def test_initial_status(self):
        status = build().get_status()

        assert status["enabled"] is False
        assert status["running"] is False
        assert status["last_run_at"] is None
        assert status["last_summary"] is None

    def test_last_error_set_then_cleared(self):
        orchestrator = RecordingOrchestrator(failures={"0xabc"})
        scheduler = build(orchestrator)

        scheduler.run_once()
        assert scheduler.get_status()["last_error"] == ITERATION_FAILED

        orchestrator.failures.clear()
        scheduler.run_once()
        status = scheduler.get_status()
        assert status["last_error"] is None
        assert status["last_run_at"] == NOW.isoformat()
        assert status["last_summary"]["success_count"] == 1

    def test_interval_is_clamped(self):
        assert build(interval_ms=1000).interval_ms == MIN_INTERVAL_MS


class TestStartStop:

    def test_start_runs_immediately_and_is_idempotent(self):
        orchestrator = RecordingOrchestrator()
        scheduler = build(orchestrator)
        done = threading.Event()
        original = orchestrator.execute

        def execute(account):
            record = original(account)
            done.set()
            return record

        orchestrator.execute = execute
        try:
            assert scheduler.start() is True
            assert scheduler.start() is False
            assert done.wait(timeout=5)
            assert scheduler.get_status()["enabled"] is True
        finally:
            assert scheduler.stop() is True

        assert scheduler.stop() is False
        assert scheduler.get_status()["enabled"] is False
