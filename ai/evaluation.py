"""
Recommendation enrichment and the local fallback strategy.

Both live and fallback recommendations go through build_recommendation so
callers cannot tell them apart by shape.
"""

from datetime import datetime
from typing import List, Optional, Sequence

from core.guardrails import is_whitelisted
from core.models import round_usd

from .schemas import Allocation, Recommendation, RecommendationEvaluation, RecommendationRequest

DEFAULT_SUMMARY = "AI generated a portfolio rebalancing plan."
DEFAULT_ANALYSIS = "No analytical commentary provided."
FALLBACK_SUMMARY = "Recommendation provider unavailable, using fallback allocation logic."
FALLBACK_ANALYSIS = (
    "AI provider is offline. Applying local strategy: evenly distribute capital "
    "across the candidate protocols with conservative risk assumptions."
)


def evaluate_allocations(
    request: RecommendationRequest,
    allocations: Sequence[Allocation],
) -> RecommendationEvaluation:
    """
    Simulate the allocations against the request constraints.

    Produces human-readable warnings and a confidence score; it never filters
    anything. Filtering is the guardrail evaluator's job.
    """
    constraints = request.constraints
    capital = request.portfolio.total_value_usd
    remaining = round_usd(max(constraints.remaining_daily_limit_usd, 0.0))
    simulated = 0.0
    warnings: List[str] = []

    for allocation in allocations:
        planned = round_usd(capital * (allocation.allocation_percent / 100.0))
        executable = min(remaining, planned)

        if not is_whitelisted(allocation.protocol, constraints.whitelist):
            warnings.append(f"Protocol {allocation.protocol} is not whitelisted.")

        if allocation.risk_score > constraints.max_risk_score:
            warnings.append(
                f"Protocol {allocation.protocol} risk score ({allocation.risk_score}) "
                f"exceeds the limit {constraints.max_risk_score}."
            )

        if planned > remaining:
            warnings.append(
                f"Insufficient daily limit for {allocation.protocol}: "
                f"required {planned} USD, available {remaining} USD."
            )

        simulated = round_usd(simulated + max(0.0, executable))
        remaining = round_usd(max(0.0, remaining - executable))

    total_percent = sum(a.allocation_percent for a in allocations)
    if total_percent > 101:
        warnings.append(f"Total allocation exceeds 100% ({total_percent:.2f}%).")

    # Preserve first-seen order while deduplicating
    unique_warnings = tuple(dict.fromkeys(warnings))
    average_risk = (
        sum(a.risk_score for a in allocations) / len(allocations) if allocations else 0.0
    )
    confidence = max(0.1, min(0.99, 0.9 - len(unique_warnings) * 0.15))

    return RecommendationEvaluation(
        confidence=round(confidence, 2),
        risk_score=round(average_risk, 2),
        warnings=unique_warnings,
        notes=f"Remaining daily limit after simulation: {remaining:.2f} USD.",
        simulated_usd=round_usd(simulated),
    )


def build_recommendation(
    request: RecommendationRequest,
    allocations: Sequence[Allocation],
    *,
    model: str,
    provider: str,
    generated_at: datetime,
    summary: Optional[str] = None,
    analysis: Optional[str] = None,
    suggested_actions: Sequence[str] = (),
    governance_summary: Optional[str] = None,
    fallback_used: bool = False,
) -> Recommendation:
    """Assemble an immutable Recommendation with evaluation and defaults filled in."""
    evaluation = evaluate_allocations(request, allocations)
    capital = request.portfolio.total_value_usd

    actions = tuple(suggested_actions) or tuple(
        f"Allocate {a.allocation_percent}% ({capital * a.allocation_percent / 100:.2f} USD) to {a.protocol}."
        for a in allocations
    )

    governance = governance_summary or (
        f"Confidence {round(evaluation.confidence * 100)}%. "
        f"Simulated spend: {evaluation.simulated_usd:.2f} USD "
        f"with limit {request.constraints.daily_limit_usd:.2f} USD."
    )

    return Recommendation(
        allocations=tuple(allocations),
        summary=(summary or "").strip() or DEFAULT_SUMMARY,
        analysis=(analysis or "").strip() or DEFAULT_ANALYSIS,
        suggested_actions=actions,
        generated_at=generated_at,
        model=model,
        provider=provider,
        evaluation=evaluation,
        governance_summary=governance,
        fallback_used=fallback_used,
    )


def fallback_allocations(request: RecommendationRequest) -> List[Allocation]:
    """
    Deterministic, network-free allocation.

    Equal split over the candidate protocols. Risk scores start at 5 and step
    down by one per protocol (floor 1); expected APY steps up from net APY.
    """
    protocols = request.protocols
    share = round(100.0 / len(protocols), 2)
    net_apy = request.portfolio.net_apy
    return [
        Allocation(
            protocol=protocol,
            allocation_percent=share,
            expected_apy=round(net_apy + 1 + index, 2),
            risk_score=float(max(1, 5 - index)),
            rationale="Fallback without provider: equal split across candidate protocols.",
        )
        for index, protocol in enumerate(protocols)
    ]


def build_fallback(
    request: RecommendationRequest,
    *,
    model: str,
    provider: str,
    generated_at: datetime,
) -> Recommendation:
    allocations = fallback_allocations(request)
    return build_recommendation(
        request,
        allocations,
        model=model,
        provider=provider,
        generated_at=generated_at,
        summary=FALLBACK_SUMMARY,
        analysis=FALLBACK_ANALYSIS,
        suggested_actions=[f"Move {a.allocation_percent}% into {a.protocol}." for a in allocations],
        fallback_used=True,
    )
