"""
Application configuration.

Loads config/app.yaml, applies environment overrides, and validates the
result with pydantic. Out-of-range timing values are clamped rather than
rejected so a bad env var degrades to a safe bound.

Usage:
    from infra.config import load_config

    config = load_config("config/app.yaml")
    providers = config.recommendation.provider_configs()
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ai.recommendation_client import DEFAULT_BASE_URL, DEFAULT_MODEL, ProviderConfig, RetryPolicy
from core.exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "app.yaml"

MIN_INTERVAL_MS = 15_000
TIMEOUT_BOUNDS_MS = (5_000, 120_000)
RETRY_DELAY_BOUNDS_MS = (1_000, 20_000)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class ProviderSettings(BaseModel):
    label: str = Field(min_length=1)
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    api_key: Optional[str] = None


class RecommendationSettings(BaseModel):
    """Provider list and retry policy"""
    api_key: Optional[str] = Field(default=None, description="Key for the default provider")
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    providers: List[ProviderSettings] = Field(default_factory=list, description="Ordered failover list")
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_delay_ms: float = 5000.0
    retry_jitter_ms: float = Field(default=250.0, ge=0)
    timeout_ms: float = 30000.0
    telemetry_max_entries: int = Field(default=50, gt=0)

    @field_validator("timeout_ms")
    @classmethod
    def clamp_timeout(cls, v: float) -> float:
        return _clamp(v, *TIMEOUT_BOUNDS_MS)

    @field_validator("retry_delay_ms")
    @classmethod
    def clamp_retry_delay(cls, v: float) -> float:
        return _clamp(v, *RETRY_DELAY_BOUNDS_MS)

    def provider_configs(self) -> List[ProviderConfig]:
        """
        Ordered providers for RecommendationClient.

        An explicit providers list wins; otherwise a single default provider
        is built from api_key/model/base_url.
        """
        if self.providers:
            return [
                ProviderConfig(label=p.label, model=p.model, base_url=p.base_url, api_key=p.api_key or None)
                for p in self.providers
            ]
        return [ProviderConfig(label="openrouter", model=self.model, base_url=self.base_url,
                               api_key=self.api_key or None)]

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay_ms=self.retry_delay_ms,
            jitter_ms=self.retry_jitter_ms,
            timeout_s=self.timeout_ms / 1000.0,
        )


class SchedulerSettings(BaseModel):
    enabled: bool = True
    interval_ms: int = 300_000
    jitter_pct: float = Field(default=0.0, ge=0, le=50, description="Random extra delay, as percent of the interval")

    @field_validator("interval_ms")
    @classmethod
    def clamp_interval(cls, v: int) -> int:
        return max(MIN_INTERVAL_MS, int(v))


class StorageSettings(BaseModel):
    state_file: str = "data/state.json"
    history_db: str = "data/history.db"
    log_recommendation_calls: bool = True


class AlertSettings(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=60.0, ge=0)
    utilization_threshold: float = Field(default=0.85, gt=0, le=1)
    risk_threshold: float = Field(default=4.2, ge=0, le=5)


class MetricsSettings(BaseModel):
    enabled: bool = False
    port: int = Field(default=9100, gt=0, lt=65536)


class ControlServerSettings(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=0, lt=65536)


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "logs/engine.log"

    @field_validator("level")
    @classmethod
    def upper_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


class AppConfig(BaseModel):
    """Root configuration"""
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    recommendation: RecommendationSettings = Field(default_factory=RecommendationSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    control_server: ControlServerSettings = Field(default_factory=ControlServerSettings)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def apply_env_overrides(raw: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    """
    Overlay environment variables onto raw YAML data.

    Raises:
        ConfigError: If an override cannot be parsed
    """
    def section(name: str) -> Dict[str, Any]:
        value = raw.get(name)
        if not isinstance(value, dict):
            value = {}
            raw[name] = value
        return value

    rec = section("recommendation")
    if env.get("OPENROUTER_API_KEY"):
        rec["api_key"] = env["OPENROUTER_API_KEY"]
    if env.get("OPENROUTER_MODEL"):
        rec["model"] = env["OPENROUTER_MODEL"]
    if env.get("OPENROUTER_BASE_URL"):
        rec["base_url"] = env["OPENROUTER_BASE_URL"]
    if env.get("OPENROUTER_PROVIDERS"):
        try:
            providers = json.loads(env["OPENROUTER_PROVIDERS"])
        except json.JSONDecodeError as e:
            raise ConfigError(f"OPENROUTER_PROVIDERS is not valid JSON: {e}") from e
        if not isinstance(providers, list):
            raise ConfigError("OPENROUTER_PROVIDERS must be a JSON list")
        rec["providers"] = providers

    sched = section("scheduler")
    if env.get("AI_EXECUTION_INTERVAL_MS"):
        try:
            sched["interval_ms"] = int(env["AI_EXECUTION_INTERVAL_MS"])
        except ValueError as e:
            raise ConfigError(f"AI_EXECUTION_INTERVAL_MS must be an integer: {e}") from e
    if env.get("AI_EXECUTION_ENABLED"):
        sched["enabled"] = _parse_bool(env["AI_EXECUTION_ENABLED"])

    storage = section("storage")
    if env.get("STATE_FILE"):
        storage["state_file"] = env["STATE_FILE"]
    if env.get("HISTORY_DB"):
        storage["history_db"] = env["HISTORY_DB"]

    if env.get("ALERT_WEBHOOK_URL"):
        alerts = section("alerts")
        alerts["webhook_url"] = env["ALERT_WEBHOOK_URL"]
        alerts.setdefault("enabled", True)

    if env.get("LOG_LEVEL"):
        section("logging")["level"] = env["LOG_LEVEL"]

    return raw


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Load, override and validate configuration.

    Args:
        path: YAML file (default: config/app.yaml next to the packages); a
            missing file means all defaults
        env: Environment mapping (default: os.environ)

    Raises:
        ConfigError: Unreadable YAML, bad override or failed validation
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    env = os.environ if env is None else env

    raw: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {config_path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
    else:
        logger.warning(f"Config file {config_path} not found, using defaults")

    raw = apply_env_overrides(raw, env)

    try:
        config = AppConfig.model_validate(raw)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {errors}") from e

    keyed = sum(1 for p in config.recommendation.provider_configs() if p.configured)
    logger.info(
        f"Loaded config from {config_path}: {keyed} keyed provider(s), "
        f"scheduler {'enabled' if config.scheduler.enabled else 'disabled'} "
        f"every {config.scheduler.interval_ms}ms"
    )
    return config


__all__ = ["AppConfig", "load_config", "apply_env_overrides", "MIN_INTERVAL_MS"]
