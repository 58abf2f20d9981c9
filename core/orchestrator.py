"""
Execution orchestrator.

One execution cycle for one account:

    load delegation -> portfolio snapshot -> recommendation -> guardrails
        -> single spend update -> history append -> alert

The spend update is the commit point. If it fails nothing is appended to
history and the error propagates; a cycle is never "executed but unbilled".
The whole sequence runs under a per-account lock so two cycles can never
read the same spent_24h_usd and both bill against it.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from ai.schemas import (
    Constraints,
    Recommendation,
    RecommendationRequest,
    RequestContext,
    evaluation_to_dict,
)
from core import guardrails
from core.exceptions import BudgetExceeded, DelegationExpired, DelegationNotFound
from core.models import (
    Action,
    Delegation,
    ExecutionRecord,
    PortfolioSnapshot,
    PreviewResult,
    RiskTolerance,
    round_usd,
)

logger = logging.getLogger(__name__)

# Float slack when comparing summed USD against the limit
BUDGET_TOLERANCE_USD = 0.005

NO_PROTOCOLS_SUMMARY = "Delegation has no whitelisted protocols; nothing to allocate."


class DelegationStore(Protocol):
    def get(self, account: str) -> Optional[Delegation]: ...
    def update(self, account: str, patch: Dict) -> Delegation: ...


class PortfolioSource(Protocol):
    def get_snapshot(self, account: str) -> PortfolioSnapshot: ...


class RecommendationSource(Protocol):
    def get_recommendation(self, request: RecommendationRequest) -> Recommendation: ...


class HistoryStore(Protocol):
    def append(self, record: ExecutionRecord) -> int: ...


class ExecutionOrchestrator:
    """Runs guarded execution cycles and keeps the spend counter authoritative."""

    def __init__(
        self,
        delegations: DelegationStore,
        portfolios: PortfolioSource,
        recommender: RecommendationSource,
        history: HistoryStore,
        alerts=None,
        metrics=None,
        risk_tolerance: RiskTolerance = "balanced",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.delegations = delegations
        self.portfolios = portfolios
        self.recommender = recommender
        self.history = history
        self.alerts = alerts
        self.metrics = metrics
        self.risk_tolerance = risk_tolerance
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # One lock per account ever executed; never trimmed, bounded by the
        # number of delegations
        self._account_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, account: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._account_locks.get(account)
            if lock is None:
                lock = threading.Lock()
                self._account_locks[account] = lock
            return lock

    def execute(self, account: str) -> ExecutionRecord:
        """
        Run one execution cycle.

        Args:
            account: Account identifier (case-insensitive)

        Returns:
            The persisted ExecutionRecord

        Raises:
            DelegationNotFound: No delegation, or delegation inactive
            DelegationExpired: valid_until has passed
            BudgetExceeded: Executed total exceeds the remaining daily allowance
            Exception: Spend update or history failures propagate unchanged
        """
        key = account.lower()
        with self._lock_for(key):
            delegation = self._load_delegation(key)
            recommendation, actions = self._plan(delegation)

            # Only this cycle's spend is checked; a limit lowered below the
            # current spend leaves remaining at 0 and the cycle executes nothing
            executed_total = guardrails.total_executed(actions)
            if executed_total > delegation.remaining_usd + BUDGET_TOLERANCE_USD:
                raise BudgetExceeded(
                    f"Cycle for {key} would execute {executed_total:.2f} USD "
                    f"with only {delegation.remaining_usd:.2f} USD remaining"
                )
            new_spent = round_usd(delegation.spent_24h_usd + executed_total)

            # Commit point: one write for the whole cycle
            patch = {"spent_24h_usd": new_spent}
            if delegation.window_started_at is not None:
                patch["window_started_at"] = delegation.window_started_at.isoformat()
            updated = self.delegations.update(key, patch)

            record = self._build_record(delegation, updated, recommendation, actions, executed_total)
            self.history.append(record)

        logger.info(
            f"Execution for {key}: executed {executed_total:.2f} USD across "
            f"{len(record.executed_actions)}/{len(actions)} action(s), "
            f"remaining {record.remaining_daily_limit_usd:.2f} USD"
            + (" (fallback recommendation)" if record.fallback_used else "")
        )

        if self.metrics is not None:
            self.metrics.record_execution(
                executed_total,
                skipped_reasons=[a.reason for a in actions if a.status == "skipped"],
                fallback_used=record.fallback_used,
            )
        if self.alerts is not None:
            try:
                self.alerts.notify_execution(record, delegation.daily_limit_usd)
            except Exception as e:
                logger.error(f"Execution alert for {key} failed: {e}", exc_info=True)

        return record

    def preview(self, account: str) -> PreviewResult:
        """
        Dry-run of execute(): same delegation checks, recommendation and
        guardrails, but no spend update, no history, no alerts.
        """
        key = account.lower()
        delegation = self._load_delegation(key)
        recommendation, actions = self._plan(delegation)
        executable = guardrails.total_executed(actions)

        return PreviewResult(
            account=key,
            delegate=delegation.delegate,
            generated_at=self._clock(),
            summary=recommendation.summary if recommendation else NO_PROTOCOLS_SUMMARY,
            total_executable_usd=executable,
            remaining_daily_limit_usd=round_usd(max(0.0, delegation.remaining_usd - executable)),
            actions=tuple(actions),
            delegation={
                "daily_limit_usd": delegation.daily_limit_usd,
                "spent_24h_usd": delegation.spent_24h_usd,
                "remaining_usd": delegation.remaining_usd,
                "max_risk_score": delegation.max_risk_score,
                "whitelist": list(delegation.whitelist),
                "valid_until": delegation.valid_until.isoformat(),
            },
            warnings=recommendation.evaluation.warnings if recommendation and recommendation.evaluation else (),
            model=recommendation.model if recommendation else None,
            provider=recommendation.provider if recommendation else None,
        )

    def _load_delegation(self, account: str) -> Delegation:
        delegation = self.delegations.get(account)
        if delegation is None or not delegation.active:
            raise DelegationNotFound(account)
        if delegation.is_expired(self._clock()):
            raise DelegationExpired(account, delegation.valid_until.isoformat())
        return delegation

    def _plan(self, delegation: Delegation) -> Tuple[Optional[Recommendation], List[Action]]:
        portfolio = self.portfolios.get_snapshot(delegation.account)
        protocols = tuple(delegation.whitelist)
        if not protocols:
            logger.warning(f"Delegation {delegation.account} has an empty whitelist; skipping recommendation")
            return None, []

        request = RecommendationRequest(
            portfolio=portfolio,
            risk_tolerance=self.risk_tolerance,
            protocols=protocols,
            constraints=Constraints(
                daily_limit_usd=delegation.daily_limit_usd,
                remaining_daily_limit_usd=delegation.remaining_usd,
                max_risk_score=delegation.max_risk_score,
                whitelist=protocols,
                notes="Automated execution cycle",
            ),
            context=RequestContext(account=delegation.account, delegate=delegation.delegate),
        )
        recommendation = self.recommender.get_recommendation(request)
        actions = guardrails.evaluate(recommendation, delegation, portfolio.total_value_usd)
        return recommendation, actions

    def _build_record(
        self,
        before: Delegation,
        after: Delegation,
        recommendation: Optional[Recommendation],
        actions: List[Action],
        executed_total: float,
    ) -> ExecutionRecord:
        if executed_total > 0:
            summary = f"Executed actions worth {executed_total:.2f} USD."
        elif recommendation is None:
            summary = NO_PROTOCOLS_SUMMARY
        else:
            summary = "No actions satisfied the guardrails."

        return ExecutionRecord(
            account=before.account,
            delegate=before.delegate,
            generated_at=self._clock(),
            summary=summary,
            total_executed_usd=executed_total,
            remaining_daily_limit_usd=after.remaining_usd,
            actions=tuple(actions),
            analysis=recommendation.analysis if recommendation else "",
            warnings=recommendation.evaluation.warnings if recommendation and recommendation.evaluation else (),
            model=recommendation.model if recommendation else None,
            provider=recommendation.provider if recommendation else None,
            fallback_used=recommendation.fallback_used if recommendation else False,
            suggested_actions=recommendation.suggested_actions if recommendation else (),
            evaluation=evaluation_to_dict(recommendation.evaluation) if recommendation else None,
            governance_summary=recommendation.governance_summary if recommendation else "",
        )


__all__ = ["ExecutionOrchestrator", "BUDGET_TOLERANCE_USD"]
