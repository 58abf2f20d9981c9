"""
Provider call telemetry.

Bounded in-memory log of recommendation calls. Newest first. Every call to
RecommendationClient.get_recommendation adds exactly one entry.
"""

import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from .schemas import CallStatus, ProviderCallMetric

DEFAULT_MAX_ENTRIES = 50


class ProviderTelemetry:
    """Ring buffer of ProviderCallMetric with summary statistics."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Optional[Callable[[], datetime]] = None,
        metrics=None,
    ):
        self._metrics: Deque[ProviderCallMetric] = deque(maxlen=max(1, int(max_entries)))
        self._lock = threading.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._recorder = metrics
        self.max_entries = self._metrics.maxlen

    def record(self, **fields: Any) -> ProviderCallMetric:
        metric = ProviderCallMetric(
            id=str(uuid.uuid4()),
            created_at=fields.pop("created_at", None) or self._clock(),
            **fields,
        )
        with self._lock:
            self._metrics.appendleft(metric)

        if self._recorder is not None:
            self._recorder.record_provider_call(
                provider=metric.provider,
                status=metric.status,
                latency_ms=metric.latency_ms,
                retries=metric.retries,
            )
        return metric

    def get_metrics(self, limit: int = 20) -> Dict[str, Any]:
        with self._lock:
            items = list(self._metrics)[: max(0, limit)]
        return {
            "summary": self.summary(),
            "metrics": [m.to_dict() for m in items],
        }

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            items = list(self._metrics)

        counts = {"success": 0, "error": 0, "skipped": 0}
        latencies: List[float] = []
        last_success_at = None
        last_error_at = None

        for metric in items:
            counts[metric.status] += 1
            if metric.status == "success":
                latencies.append(metric.latency_ms)
                if last_success_at is None:
                    last_success_at = metric.created_at.isoformat()
            elif metric.status == "error" and last_error_at is None:
                last_error_at = metric.created_at.isoformat()

        return {
            "total_calls": len(items),
            "success_count": counts["success"],
            "error_count": counts["error"],
            "skipped_count": counts["skipped"],
            "average_latency_ms": round(sum(latencies) / len(latencies), 2) if latencies else None,
            "last_call_at": items[0].created_at.isoformat() if items else None,
            "last_success_at": last_success_at,
            "last_error_at": last_error_at,
        }

    def last(self, status: Optional[CallStatus] = None) -> Optional[ProviderCallMetric]:
        with self._lock:
            for metric in self._metrics:
                if status is None or metric.status == status:
                    return metric
        return None

    def __len__(self) -> int:
        return len(self._metrics)

    def reset(self) -> None:
        with self._lock:
            self._metrics.clear()
