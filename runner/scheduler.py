"""
Execution scheduler.

Runs the orchestrator for every eligible account on a timer and on manual
request. One iteration at a time per process:

- automatic tick while an iteration runs   -> skipped (None), warning logged
- manual run while an automatic one runs  -> skipped (None)
- manual run while a manual one runs      -> ConcurrencyConflict

A failure on one account is recorded in that account's result and never
aborts the rest of the iteration.
"""

import logging
import random
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

from core.exceptions import ConcurrencyConflict
from core.models import round_usd
from infra.metrics import IterationStats

logger = logging.getLogger(__name__)

TriggerSource = Literal["automatic", "manual"]

MIN_INTERVAL_MS = 15_000
ITERATION_FAILED = "Scheduler iteration completed with errors"


@dataclass
class AccountResult:
    account: str
    delegate: str
    status: Literal["success", "error"]
    executed_usd: Optional[float] = None
    remaining_daily_limit_usd: Optional[float] = None
    summary: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SchedulerRunSummary:
    source: TriggerSource
    started_at: datetime
    finished_at: datetime
    duration_ms: float
    processed_accounts: int
    success_count: int
    error_count: int
    results: List[AccountResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_ms": self.duration_ms,
            "processed_accounts": self.processed_accounts,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "results": [asdict(r) for r in self.results],
        }


class ExecutionScheduler:
    """Single-flight timer and manual trigger around ExecutionOrchestrator.execute."""

    def __init__(
        self,
        orchestrator,
        delegations,
        interval_ms: int = 300_000,
        jitter_pct: float = 0.0,
        clock: Optional[Callable[[], datetime]] = None,
        metrics=None,
    ):
        """
        Args:
            orchestrator: Object with execute(account) -> ExecutionRecord
            delegations: Store with list_delegations() -> [Delegation]
            interval_ms: Time between automatic iterations (min 15s)
            jitter_pct: Random extra delay of up to this percent of the interval
            clock: Returns the current aware UTC time
            metrics: Optional MetricsRecorder
        """
        self.orchestrator = orchestrator
        self.delegations = delegations
        self.interval_ms = max(MIN_INTERVAL_MS, int(interval_ms))
        self.jitter_pct = max(0.0, min(float(jitter_pct), 50.0))
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._iteration_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._running_source: Optional[TriggerSource] = None

        self._enabled = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._last_run_at: Optional[datetime] = None
        self._last_duration_ms: Optional[float] = None
        self._last_error: Optional[str] = None
        self._last_summary: Optional[SchedulerRunSummary] = None

    def get_status(self) -> Dict[str, Any]:
        with self._state_lock:
            return {
                "enabled": self._enabled,
                "running": self._running_source is not None,
                "interval_ms": self.interval_ms,
                "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
                "last_duration_ms": self._last_duration_ms,
                "last_error": self._last_error,
                "last_summary": self._last_summary.to_dict() if self._last_summary else None,
            }

    def start(self) -> bool:
        """
        Enable the timer and run one iteration immediately (in the timer thread).

        Returns:
            False if already started
        """
        with self._state_lock:
            if self._enabled:
                logger.info("Scheduler already running, skipping start.")
                return False
            self._enabled = True
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._timer_loop, args=(self._stop_event,), name="ExecutionScheduler", daemon=True
            )
            self._thread.start()

        logger.info(f"Execution scheduler started (interval={self.interval_ms}ms, jitter={self.jitter_pct:.1f}%)")
        return True

    def stop(self, timeout: float = 5.0) -> bool:
        """
        Disable the timer. An iteration already in progress runs to completion.

        Returns:
            False if already stopped
        """
        with self._state_lock:
            if not self._enabled:
                logger.info("Scheduler already stopped, skipping.")
                return False
            self._enabled = False
            self._stop_event.set()
            thread = self._thread
            self._thread = None

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        logger.info("Execution scheduler stopped.")
        return True

    def run_once(self, source: TriggerSource = "manual") -> Optional[SchedulerRunSummary]:
        """
        Run one iteration now.

        Returns:
            The iteration summary, or None when skipped because another
            iteration is in progress (always for automatic ticks; for manual
            calls only when the running iteration is automatic)

        Raises:
            ConcurrencyConflict: Manual call while a manual iteration runs
        """
        with self._state_lock:
            acquired = self._iteration_lock.acquire(blocking=False)
            if acquired:
                self._running_source = source
            else:
                running = self._running_source

        if not acquired:
            if self.metrics is not None:
                self.metrics.record_scheduler_conflict(source)
            if source == "manual" and running == "manual":
                raise ConcurrencyConflict("Scheduler iteration already running.")
            logger.warning(f"Scheduler iteration already running ({running}); skipping {source} run.")
            return None

        try:
            return self._run_iteration(source)
        finally:
            with self._state_lock:
                self._running_source = None
                self._iteration_lock.release()

    def _run_iteration(self, source: TriggerSource) -> SchedulerRunSummary:
        started_at = self._clock()
        start = time.monotonic()
        results: List[AccountResult] = []
        iteration_error: Optional[str] = None

        try:
            delegations = [d for d in self.delegations.list_delegations() if d.is_eligible(started_at)]
            logger.info(f"Scheduler {source} iteration: {len(delegations)} eligible account(s)")

            for delegation in delegations:
                try:
                    record = self.orchestrator.execute(delegation.account)
                    results.append(AccountResult(
                        account=delegation.account,
                        delegate=record.delegate,
                        status="success",
                        executed_usd=round_usd(record.total_executed_usd),
                        remaining_daily_limit_usd=round_usd(record.remaining_daily_limit_usd),
                        summary=record.summary,
                    ))
                except Exception as e:
                    logger.error(f"Scheduler failed to process {delegation.account}: {e}", exc_info=True)
                    results.append(AccountResult(
                        account=delegation.account,
                        delegate=delegation.delegate or "unknown",
                        status="error",
                        error=str(e) or type(e).__name__,
                    ))
        except Exception as e:
            iteration_error = str(e) or type(e).__name__
            logger.error(f"Scheduler iteration failed: {e}", exc_info=True)

        duration_ms = round((time.monotonic() - start) * 1000, 2)
        success_count = sum(1 for r in results if r.status == "success")
        error_count = len(results) - success_count + (1 if iteration_error else 0)

        summary = SchedulerRunSummary(
            source=source,
            started_at=started_at,
            finished_at=self._clock(),
            duration_ms=duration_ms,
            processed_accounts=len(results),
            success_count=success_count,
            error_count=error_count,
            results=results,
        )

        with self._state_lock:
            self._last_run_at = started_at
            self._last_duration_ms = duration_ms
            self._last_summary = summary
            if error_count == 0:
                self._last_error = None
            else:
                self._last_error = iteration_error or ITERATION_FAILED

        if self.metrics is not None:
            self.metrics.record_scheduler_run(IterationStats(
                source=source,
                processed=len(results),
                succeeded=success_count,
                failed=error_count,
                duration_seconds=duration_ms / 1000.0,
            ))

        logger.info(
            f"Scheduler {source} iteration done in {duration_ms:.0f}ms: "
            f"{success_count} ok, {error_count} error(s)"
        )
        return summary

    def _next_delay_seconds(self) -> float:
        interval = self.interval_ms / 1000.0
        jitter = random.uniform(0, self.jitter_pct / 100.0) * interval
        return interval + jitter

    def _timer_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.run_once("automatic")
            except Exception as e:
                # Automatic runs never raise ConcurrencyConflict
                logger.error(f"Automatic scheduler iteration raised: {e}", exc_info=True)
            delay = self._next_delay_seconds()
            logger.debug(f"Next automatic iteration in {delay:.1f}s")
            stop_event.wait(delay)


__all__ = ["ExecutionScheduler", "SchedulerRunSummary", "AccountResult", "MIN_INTERVAL_MS"]
