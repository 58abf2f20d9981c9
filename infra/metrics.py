"""Prometheus-backed metrics hooks for provider calls, executions and the scheduler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


@dataclass
class IterationStats:
    source: str
    processed: int
    succeeded: int
    failed: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose engine stats via Prometheus.

    Each recorder owns its CollectorRegistry, so several recorders (one per
    test, for instance) never collide on metric registration. When disabled,
    every record_* call only updates the in-process snapshots.
    """

    def __init__(self, enabled: bool = True, port: int = 9100,
                 registry: Optional[CollectorRegistry] = None) -> None:
        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = registry or CollectorRegistry()

        self._last_iteration: Optional[IterationStats] = None
        self._last_provider_event: Optional[Dict[str, str]] = None
        self._provider_calls_by_status: Dict[str, int] = {}
        self._executed_usd_total = 0.0

        self._provider_latency = Summary(
            "engine_provider_latency_seconds",
            "Latency of recommendation provider calls including retries",
            labelnames=("provider", "status"),
            registry=self.registry,
        )
        self._provider_calls = Counter(
            "engine_provider_calls_total",
            "Recommendation calls by provider and outcome",
            labelnames=("provider", "status"),
            registry=self.registry,
        )
        self._provider_retries = Counter(
            "engine_provider_retries_total",
            "Failed provider attempts that preceded the final outcome",
            labelnames=("provider",),
            registry=self.registry,
        )
        self._executions = Counter(
            "engine_executions_total",
            "Execution cycles by outcome",
            labelnames=("outcome",),  # outcome: "executed", "noop", "fallback"
            registry=self.registry,
        )
        self._executed_usd = Counter(
            "engine_executed_usd_total",
            "Total USD moved by executed actions",
            registry=self.registry,
        )
        self._skipped_actions = Counter(
            "engine_skipped_actions_total",
            "Actions skipped by guardrails, grouped by reason",
            labelnames=("reason",),
            registry=self.registry,
        )
        self._iteration_summary = Summary(
            "engine_scheduler_iteration_seconds",
            "Duration of a full scheduler iteration",
            labelnames=("source",),
            registry=self.registry,
        )
        self._iteration_accounts = Gauge(
            "engine_scheduler_last_iteration_accounts",
            "Account counts of the last scheduler iteration",
            labelnames=("result",),  # result: "processed", "success", "error"
            registry=self.registry,
        )
        self._scheduler_conflicts = Counter(
            "engine_scheduler_conflicts_total",
            "Iterations refused because another one was in progress",
            labelnames=("source",),
            registry=self.registry,
        )

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port, registry=self.registry)
                self._started = True
                if port != self._port:
                    logger.warning(
                        "Port %s in use, successfully bound to port %s instead",
                        self._port, port
                    )
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                if port != ports_to_try[-1]:
                    logger.debug("Port %s in use, trying next port...", port)
                continue

        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def port(self) -> int:
        return self._port

    def record_provider_call(self, provider: str, status: str, latency_ms: float, retries: int) -> None:
        self._last_provider_event = {
            "provider": provider,
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self._provider_calls_by_status[status] = self._provider_calls_by_status.get(status, 0) + 1
        if not self._enabled:
            return
        self._provider_calls.labels(provider=provider, status=status).inc()
        self._provider_latency.labels(provider=provider, status=status).observe(max(latency_ms, 0.0) / 1000.0)
        if retries > 0:
            self._provider_retries.labels(provider=provider).inc(retries)

    def record_execution(self, executed_usd: float, skipped_reasons=(), fallback_used: bool = False) -> None:
        """Record one recorded execution cycle."""
        self._executed_usd_total += max(executed_usd, 0.0)
        if not self._enabled:
            return
        if fallback_used:
            outcome = "fallback"
        elif executed_usd > 0:
            outcome = "executed"
        else:
            outcome = "noop"
        self._executions.labels(outcome=outcome).inc()
        if executed_usd > 0:
            self._executed_usd.inc(executed_usd)
        for reason in skipped_reasons:
            self._skipped_actions.labels(reason=self._normalize_skip_reason(reason)).inc()

    def record_scheduler_run(self, stats: IterationStats) -> None:
        self._last_iteration = stats
        if not self._enabled:
            return
        self._iteration_summary.labels(source=stats.source).observe(stats.duration_seconds)
        self._iteration_accounts.labels(result="processed").set(stats.processed)
        self._iteration_accounts.labels(result="success").set(stats.succeeded)
        self._iteration_accounts.labels(result="error").set(stats.failed)

    def record_scheduler_conflict(self, source: str) -> None:
        if self._enabled:
            self._scheduler_conflicts.labels(source=source).inc()

    def last_iteration(self) -> Optional[IterationStats]:
        return self._last_iteration

    def last_provider_event(self) -> Optional[Dict[str, str]]:
        return dict(self._last_provider_event) if self._last_provider_event else None

    def provider_call_counts(self) -> Dict[str, int]:
        return dict(self._provider_calls_by_status)

    def executed_usd_total(self) -> float:
        return round(self._executed_usd_total, 2)

    @staticmethod
    def _normalize_skip_reason(reason: Optional[str]) -> str:
        """Normalize skip reasons to keep label cardinality bounded"""
        reason_lower = (reason or "").lower()
        if "whitelist" in reason_lower:
            return "not_whitelisted"
        elif "risk" in reason_lower:
            return "risk_limit"
        elif "limit" in reason_lower:
            return "daily_limit"
        else:
            return "other"


__all__ = ["MetricsRecorder", "IterationStats"]
