"""
Tests for configuration loading

Validates:
- Defaults and YAML loading
- Environment overrides
- Clamping of timing values
- ConfigError on invalid input
"""

import json

import pytest

from core.exceptions import ConfigError
from infra.config import MIN_INTERVAL_MS, AppConfig, load_config


@pytest.fixture
def config_file(tmp_path):
    def _write(text):
        path = tmp_path / "app.yaml"
        path.write_text(text)
        return str(path)
    return _write


class TestLoadConfig:

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(str(tmp_path / "absent.yaml"), env={})

        assert config == AppConfig()
        assert config.scheduler.interval_ms == 300_000
        assert config.recommendation.max_retries == 3

    def test_bundled_config_loads(self):
        config = load_config(env={})

        assert config.storage.history_db == "data/history.db"
        assert config.scheduler.jitter_pct == 10

    def test_yaml_values_are_used(self, config_file):
        path = config_file("""
scheduler:
  interval_ms: 60000
alerts:
  enabled: true
  dry_run: true
""")
        config = load_config(path, env={})

        assert config.scheduler.interval_ms == 60000
        assert config.alerts.dry_run is True

    def test_invalid_yaml_raises(self, config_file):
        with pytest.raises(ConfigError):
            load_config(config_file("scheduler: [unclosed"), env={})

    def test_non_mapping_raises(self, config_file):
        with pytest.raises(ConfigError):
            load_config(config_file("- just\n- a list\n"), env={})

    def test_validation_error_is_wrapped(self, config_file):
        with pytest.raises(ConfigError) as exc:
            load_config(config_file("scheduler:\n  jitter_pct: 90\n"), env={})

        assert "scheduler.jitter_pct" in str(exc.value)

    def test_log_level_is_normalized(self, config_file):
        config = load_config(config_file("logging:\n  level: debug\n"), env={})

        assert config.logging.level == "DEBUG"


class TestClamping:

    def test_interval_floor(self, config_file):
        config = load_config(config_file("scheduler:\n  interval_ms: 1000\n"), env={})

        assert config.scheduler.interval_ms == MIN_INTERVAL_MS

    def test_timeout_and_retry_delay_bounds(self, config_file):
        config = load_config(config_file("""
recommendation:
  timeout_ms: 500000
  retry_delay_ms: 10
"""), env={})

        assert config.recommendation.timeout_ms == 120_000
        assert config.recommendation.retry_delay_ms == 1_000

        policy = config.recommendation.retry_policy()
        assert policy.timeout_s == 120.0
        assert policy.base_delay_ms == 1_000


class TestEnvOverrides:

    def test_api_key_and_interval(self, tmp_path):
        config = load_config(str(tmp_path / "absent.yaml"), env={
            "OPENROUTER_API_KEY": "sk-test",
            "OPENROUTER_MODEL": "openai/gpt-4o-mini",
            "AI_EXECUTION_INTERVAL_MS": "20000",
            "AI_EXECUTION_ENABLED": "false",
        })

        [provider] = config.recommendation.provider_configs()
        assert provider.api_key == "sk-test"
        assert provider.model == "openai/gpt-4o-mini"
        assert provider.configured
        assert config.scheduler.interval_ms == 20000
        assert config.scheduler.enabled is False

    def test_provider_list_from_env(self, tmp_path):
        providers = [
            {"label": "primary", "model": "a/model", "api_key": "k1"},
            {"label": "backup", "model": "b/model", "base_url": "https://backup.example/v1"},
        ]
        config = load_config(str(tmp_path / "absent.yaml"), env={"OPENROUTER_PROVIDERS": json.dumps(providers)})

        configs = config.recommendation.provider_configs()
        assert [p.label for p in configs] == ["primary", "backup"]
        assert configs[1].base_url == "https://backup.example/v1"
        assert configs[1].configured is False

    def test_bad_provider_json(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(str(tmp_path / "absent.yaml"), env={"OPENROUTER_PROVIDERS": "{oops"})

    def test_bad_interval(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(str(tmp_path / "absent.yaml"), env={"AI_EXECUTION_INTERVAL_MS": "soon"})

    def test_webhook_enables_alerts(self, tmp_path):
        config = load_config(str(tmp_path / "absent.yaml"), env={"ALERT_WEBHOOK_URL": "https://hooks.example/x"})

        assert config.alerts.enabled is True
        assert config.alerts.webhook_url == "https://hooks.example/x"

    def test_storage_paths(self, tmp_path):
        config = load_config(str(tmp_path / "absent.yaml"), env={
            "STATE_FILE": "/tmp/state.json",
            "HISTORY_DB": "/tmp/history.db",
        })

        assert config.storage.state_file == "/tmp/state.json"
        assert config.storage.history_db == "/tmp/history.db"
