"""
Pytest configuration and fixtures for the execution engine tests.

This conftest.py provides shared fixtures for all tests.
"""
import json

import pytest

from ai.telemetry import ProviderTelemetry
from analytics.execution_history import ExecutionHistory
from infra.delegation_store import JsonDelegationStore
from tests.helpers import NOW, fixed_clock


@pytest.fixture
def clock():
    return fixed_clock(NOW)


@pytest.fixture
def telemetry(clock):
    return ProviderTelemetry(max_entries=50, clock=clock)


@pytest.fixture
def history(tmp_path):
    return ExecutionHistory(str(tmp_path / "history.db"))


@pytest.fixture
def state_file(tmp_path):
    """State file with one delegation (limit 1000, spent 800) and its portfolio."""
    path = tmp_path / "state.json"
    path.write_text(json.dumps({
        "delegations": {
            "0xabc": {
                "delegate": "0xDelegate",
                "daily_limit_usd": 1000.0,
                "spent_24h_usd": 800.0,
                "whitelist": ["Aave"],
                "max_risk_score": 3.0,
                "valid_until": "2025-02-01T00:00:00+00:00",
                "active": True,
                "window_started_at": "2025-01-15T06:00:00+00:00",
            }
        },
        "portfolios": {
            "0xabc": {"total_value_usd": 1000.0, "net_apy": 4.2, "positions": []}
        },
    }))
    return path


@pytest.fixture
def delegation_store(state_file, clock):
    return JsonDelegationStore(str(state_file), clock=clock)
