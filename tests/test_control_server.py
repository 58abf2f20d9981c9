"""
Tests for the control API routes

Routes are exercised through ControlApi.handle_request; one test goes
through a real socket to cover the HTTP wrapper.
"""

import json
import urllib.request
from unittest.mock import Mock

import pytest

from core.exceptions import ConcurrencyConflict, DelegationExpired, DelegationNotFound
from core.models import PreviewResult
from infra.control_server import ControlApi, ControlServer
from runner.scheduler import SchedulerRunSummary
from tests.helpers import NOW

STATUS = {"enabled": True, "running": False, "interval_ms": 300000, "last_error": None}


@pytest.fixture
def api():
    scheduler = Mock()
    scheduler.get_status.return_value = dict(STATUS)
    telemetry = Mock()
    telemetry.summary.return_value = {"total_calls": 0}
    telemetry.get_metrics.return_value = {"summary": {}, "metrics": []}
    history = Mock()
    history.list.return_value = []
    history.summarize.return_value = {"total_executions": 0}
    history.analyze.return_value = {"top_protocols": []}
    orchestrator = Mock()
    return ControlApi(scheduler, telemetry, history, orchestrator)


def _summary():
    return SchedulerRunSummary(
        source="manual", started_at=NOW, finished_at=NOW, duration_ms=12.0,
        processed_accounts=1, success_count=1, error_count=0,
    )


class TestReadRoutes:

    def test_health(self, api):
        status, payload = api.handle_request("GET", "/health")

        assert status == 200
        assert payload["ok"] is True
        assert payload["scheduler"] == {"enabled": True, "running": False}

    def test_scheduler_status(self, api):
        assert api.handle_request("GET", "/scheduler/status") == (200, STATUS)

    def test_telemetry_limit_is_clamped(self, api):
        api.handle_request("GET", "/telemetry?limit=9999")
        api.telemetry.get_metrics.assert_called_with(500)

        api.handle_request("GET", "/telemetry?limit=abc")
        api.telemetry.get_metrics.assert_called_with(20)

    def test_executions_list(self, api):
        status, payload = api.handle_request("GET", "/executions/0xABC?limit=0")

        assert status == 200
        assert payload == {"account": "0xabc", "executions": []}
        api.history.list.assert_called_once_with("0xABC", 1)

    def test_executions_summary_and_analytics(self, api):
        assert api.handle_request("GET", "/executions/0xabc/summary")[1] == {"total_executions": 0}
        assert api.handle_request("GET", "/executions/0xabc/analytics/")[1] == {"top_protocols": []}

    def test_preview(self, api):
        api.orchestrator.preview.return_value = PreviewResult(
            account="0xabc", delegate="0xdelegate", generated_at=NOW, summary="s",
            total_executable_usd=150.0, remaining_daily_limit_usd=50.0, actions=(),
        )

        status, payload = api.handle_request("GET", "/preview/0xabc")

        assert status == 200
        assert payload["total_executable_usd"] == 150.0

    def test_preview_errors(self, api):
        api.orchestrator.preview.side_effect = DelegationNotFound("0xabc")
        assert api.handle_request("GET", "/preview/0xabc")[0] == 404

        api.orchestrator.preview.side_effect = DelegationExpired("0xabc", NOW.isoformat())
        assert api.handle_request("GET", "/preview/0xabc")[0] == 422

    def test_unknown_route(self, api):
        assert api.handle_request("GET", "/nope")[0] == 404

    def test_internal_error_is_500(self, api):
        api.history.summarize.side_effect = RuntimeError("db locked")

        assert api.handle_request("GET", "/executions/0xabc/summary") == (500, {"message": "db locked"})


class TestSchedulerRoutes:

    def test_start_and_stop(self, api):
        api.scheduler.start.return_value = True
        api.scheduler.stop.return_value = False

        assert api.handle_request("POST", "/scheduler/start")[1]["started"] is True
        assert api.handle_request("POST", "/scheduler/stop")[1]["stopped"] is False

    def test_run_once_success(self, api):
        api.scheduler.run_once.return_value = _summary()

        status, payload = api.handle_request("POST", "/scheduler/run-once")

        assert status == 200
        assert payload["summary"]["success_count"] == 1
        assert payload["status"] == STATUS
        api.scheduler.run_once.assert_called_once_with("manual")

    def test_run_once_skipped(self, api):
        api.scheduler.run_once.return_value = None

        assert api.handle_request("POST", "/scheduler/run-once")[0] == 202

    def test_run_once_conflict(self, api):
        api.scheduler.run_once.side_effect = ConcurrencyConflict("Scheduler iteration already running.")

        status, payload = api.handle_request("POST", "/scheduler/run-once")

        assert status == 409
        assert payload["message"] == "Scheduler iteration already running."

    def test_run_once_failure(self, api):
        api.scheduler.run_once.side_effect = RuntimeError("boom")

        assert api.handle_request("POST", "/scheduler/run-once")[0] == 500

    def test_method_not_allowed(self, api):
        assert api.handle_request("DELETE", "/health")[0] == 405


class TestControlServer:

    def test_serves_json_over_http(self, api):
        server = ControlServer(api, port=0, host="127.0.0.1")
        server.start()
        try:
            with urllib.request.urlopen(f"http://127.0.0.1:{server.port}/scheduler/status", timeout=5) as resp:
                assert resp.status == 200
                assert resp.headers["Content-Type"] == "application/json"
                assert json.loads(resp.read()) == STATUS
        finally:
            server.stop()

        assert server.port is None
