"""
Guardrail evaluator.

Turns a recommendation into a list of actions for one delegation. Pure
function: no I/O, no clock, identical inputs give identical output.

Rules, applied per allocation in the order the recommendation returned them:
1. protocol must be whitelisted
2. risk score must not exceed the delegation's ceiling
3. candidate USD = capital * allocation_percent / 100
4. candidate must fit in what is left of the daily allowance; allowance is
   consumed greedily, so earlier allocations win when the budget is tight

Every allocation yields exactly one action, skipped ones included.
"""

from typing import Iterable, List, Optional, TYPE_CHECKING

from core.models import (
    Action,
    Delegation,
    SKIP_DAILY_LIMIT,
    SKIP_NOT_WHITELISTED,
    SKIP_RISK_LIMIT,
    round_usd,
)

if TYPE_CHECKING:
    from ai.schemas import Recommendation


def normalize_protocol(protocol: str) -> str:
    return protocol.strip().lower()


def is_whitelisted(protocol: str, whitelist: Iterable[str]) -> bool:
    """
    Case-insensitive whitelist check.

    Identifiers like "aave:usdc" also match a bare "aave" entry.
    """
    allowed = {normalize_protocol(p) for p in whitelist}
    normalized = normalize_protocol(protocol)
    base = normalized.split(":", 1)[0]
    return normalized in allowed or base in allowed


def evaluate(
    recommendation: "Recommendation",
    delegation: Delegation,
    capital_usd: float,
) -> List[Action]:
    """
    Apply whitelist, risk and budget guardrails.

    Args:
        recommendation: Recommendation for this cycle
        delegation: Current delegation state (spent_24h_usd already windowed)
        capital_usd: AI-manageable capital the percentages apply to

    Returns:
        One Action per allocation, in recommendation order
    """
    remaining = delegation.remaining_usd
    actions: List[Action] = []

    for allocation in recommendation.allocations:
        amount = round_usd(capital_usd * (allocation.allocation_percent / 100.0))

        def build(status: str, reason: Optional[str] = None) -> Action:
            return Action(
                protocol=allocation.protocol,
                amount_usd=amount,
                expected_apy=allocation.expected_apy,
                risk_score=allocation.risk_score,
                allocation_percent=allocation.allocation_percent,
                status=status,
                reason=reason,
            )

        if not is_whitelisted(allocation.protocol, delegation.whitelist):
            actions.append(build("skipped", SKIP_NOT_WHITELISTED))
            continue

        if allocation.risk_score > delegation.max_risk_score:
            actions.append(build("skipped", SKIP_RISK_LIMIT))
            continue

        if remaining <= 0 or amount > remaining:
            actions.append(build("skipped", SKIP_DAILY_LIMIT))
            continue

        remaining = round_usd(remaining - amount)
        actions.append(build("executed"))

    return actions


def total_executed(actions: Iterable[Action]) -> float:
    return round_usd(sum(a.amount_usd for a in actions if a.status == "executed"))
