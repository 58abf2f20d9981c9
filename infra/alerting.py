"""Alerting helpers for webhook notifications about execution cycles."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

import requests

if TYPE_CHECKING:
    from core.models import ExecutionRecord

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name.lower()

    @classmethod
    def from_string(cls, value: str, default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        if not value:
            return default or cls.WARNING
        normalized = value.strip().lower()
        for member in cls:
            if member.name.lower() == normalized:
                return member
        return default or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity = AlertSeverity.WARNING
    dry_run: bool = False
    timeout: float = 5.0
    dedupe_seconds: float = 60.0  # Dedupe identical alerts within 60s
    utilization_threshold: float = 0.85
    risk_threshold: float = 4.2


@dataclass
class AlertRecord:
    """Track alert history for dedupe."""
    fingerprint: str
    title: str
    first_seen: float  # monotonic seconds
    last_seen: float
    count: int = 1


class AlertService:
    """
    Send notifications for notable execution cycles.

    An execution triggers an alert when it uses a large share of the
    delegation's daily limit or when the executed actions carry a high
    average risk score. Identical alerts within the dedupe window are
    suppressed. Delivery failures are logged, never raised.
    """

    def __init__(
        self,
        config: AlertConfig,
        session: Optional[requests.Session] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not config.webhook_url and not config.dry_run:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._session = session or requests.Session()
        self._monotonic = monotonic
        self._alert_history: Dict[str, AlertRecord] = {}
        self._last_cleanup: float = monotonic()

    @classmethod
    def from_settings(cls, settings) -> "AlertService":
        """Build from an infra.config.AlertSettings model."""
        return cls(
            AlertConfig(
                enabled=settings.enabled,
                webhook_url=settings.webhook_url or None,
                min_severity=AlertSeverity.from_string(settings.min_severity),
                dry_run=settings.dry_run,
                timeout=settings.timeout_seconds,
                dedupe_seconds=settings.dedupe_seconds,
                utilization_threshold=settings.utilization_threshold,
                risk_threshold=settings.risk_threshold,
            )
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def notify_execution(self, record: "ExecutionRecord", daily_limit_usd: float) -> bool:
        """
        Alert on a recorded execution if it crosses a threshold.

        Returns:
            True if an alert was raised (sent, dry-run logged, or deduped)
        """
        executed = record.executed_actions
        if not executed:
            return False

        spent = max(daily_limit_usd - record.remaining_daily_limit_usd, 0.0)
        utilization = spent / daily_limit_usd if daily_limit_usd > 0 else 0.0
        avg_risk = sum(a.risk_score for a in executed) / len(executed)

        reasons = []
        if utilization >= self._config.utilization_threshold:
            reasons.append(f"daily limit utilization {utilization:.0%}")
        if avg_risk >= self._config.risk_threshold:
            reasons.append(f"average risk {avg_risk:.2f}")
        if not reasons:
            return False

        severity = AlertSeverity.CRITICAL if len(reasons) > 1 else AlertSeverity.WARNING
        self.notify(
            severity,
            f"Execution for {record.account}",
            f"Executed {record.total_executed_usd:.2f} USD across {len(executed)} action(s); "
            + ", ".join(reasons),
            context={
                "account": record.account,
                "delegate": record.delegate,
                "remaining_daily_limit_usd": record.remaining_daily_limit_usd,
                "protocols": [a.protocol for a in executed],
                "fallback_used": record.fallback_used,
            },
        )
        return True

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Send alert notification, suppressing duplicates within the dedupe window."""
        if not self._enabled:
            return
        if severity.value < self._config.min_severity.value:
            return

        self._cleanup_old_alerts()

        fingerprint = self._generate_fingerprint(severity, title, message)
        now = self._monotonic()
        record = self._alert_history.get(fingerprint)
        if record and now - record.first_seen <= self._config.dedupe_seconds:
            record.last_seen = now
            record.count += 1
            logger.debug(f"Alert deduped: {title} (fingerprint={fingerprint[:8]}...)")
            return

        self._alert_history[fingerprint] = AlertRecord(
            fingerprint=fingerprint, title=title, first_seen=now, last_seen=now
        )
        self._send_alert(severity, title, message, context)

    def _generate_fingerprint(self, severity: AlertSeverity, title: str, message: str) -> str:
        content = f"{severity.name}|{title}|{message}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _send_alert(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> None:
        payload = self._build_payload(severity, title, message, context)

        if self._config.dry_run:
            logger.info("[ALERT:%s] %s - %s | %s", severity.name, title, message, context or {})
            return

        try:
            response = self._session.post(
                self._config.webhook_url, json=payload, timeout=self._config.timeout
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            logger.error("Failed to deliver alert '%s': %s", title, exc)

    def _cleanup_old_alerts(self) -> None:
        """Remove alerts older than 5 minutes."""
        now = self._monotonic()
        if now - self._last_cleanup < 60.0:
            return
        self._last_cleanup = now

        to_remove = [
            fp for fp, record in self._alert_history.items()
            if (now - record.last_seen) > 300.0
        ]
        for fp in to_remove:
            del self._alert_history[fp]
        if to_remove:
            logger.debug(f"Cleaned up {len(to_remove)} old alert records")

    @staticmethod
    def _build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        line_items = [f"[{severity.name}] {title}", message]
        if context:
            try:
                context_json = json.dumps(context, sort_keys=True)
            except TypeError:
                context_json = str(context)
            line_items.append(f"context={context_json}")
        return {"text": " | ".join(filter(None, line_items))}


__all__ = ["AlertService", "AlertSeverity", "AlertConfig"]
