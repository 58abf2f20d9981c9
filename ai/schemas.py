"""
Recommendation schemas and data structures.

Defines the contract between the execution orchestrator and the
recommendation layer. Provider JSON is parsed into these types at the
network boundary so nothing downstream ever sees a raw model response.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from core.exceptions import ValidationError
from core.models import PortfolioSnapshot, RiskTolerance

logger = logging.getLogger(__name__)

CallStatus = Literal["success", "error", "skipped"]

RISK_TOLERANCES = ("conservative", "balanced", "aggressive")
MAX_RISK_SCORE = 5.0


@dataclass(frozen=True)
class Allocation:
    """Proposed share of capital for one protocol."""
    protocol: str
    allocation_percent: float     # 0-100
    expected_apy: float
    risk_score: float             # 0-5, lower is safer
    rationale: str = "No rationale provided."


@dataclass(frozen=True)
class RecommendationEvaluation:
    """Local sanity check of a recommendation against the request constraints."""
    confidence: float
    risk_score: float
    warnings: Tuple[str, ...]
    notes: str
    simulated_usd: float


@dataclass(frozen=True)
class Recommendation:
    """Immutable per-cycle recommendation, live or locally computed."""
    allocations: Tuple[Allocation, ...]
    summary: str
    analysis: str
    suggested_actions: Tuple[str, ...]
    generated_at: datetime
    model: str
    provider: str
    evaluation: Optional[RecommendationEvaluation] = None
    governance_summary: str = ""
    fallback_used: bool = False


@dataclass(frozen=True)
class Constraints:
    daily_limit_usd: float
    remaining_daily_limit_usd: float
    max_risk_score: float
    whitelist: Tuple[str, ...]
    notes: str = ""


@dataclass(frozen=True)
class RequestContext:
    account: str = "unknown"
    delegate: str = "unknown"
    scenario: str = "execution"


@dataclass(frozen=True)
class RecommendationRequest:
    """Complete input payload for a recommendation call."""
    portfolio: PortfolioSnapshot
    risk_tolerance: RiskTolerance
    protocols: Tuple[str, ...]
    constraints: Constraints
    context: RequestContext = field(default_factory=RequestContext)

    def __post_init__(self):
        if self.risk_tolerance not in RISK_TOLERANCES:
            raise ValidationError(f"Unknown risk tolerance: {self.risk_tolerance}")
        if not self.protocols:
            raise ValidationError("At least one candidate protocol is required")
        for name in ("daily_limit_usd", "remaining_daily_limit_usd", "max_risk_score"):
            value = getattr(self.constraints, name)
            if not isinstance(value, (int, float)) or math.isnan(value) or value < 0:
                raise ValidationError(f"constraints.{name} must be a non-negative number, got {value!r}")
        if self.constraints.max_risk_score > MAX_RISK_SCORE:
            raise ValidationError(f"constraints.max_risk_score must be <= {MAX_RISK_SCORE}")
        if len(self.constraints.notes) > 240:
            raise ValidationError("constraints.notes must be at most 240 characters")


@dataclass
class ProviderCallMetric:
    """One telemetry row per recommendation call."""
    id: str
    created_at: datetime
    model: str
    provider: str
    status: CallStatus
    latency_ms: float
    retries: int
    fallback_used: bool
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    rate_limit_remaining: Optional[float] = None
    rate_limit_reset_ms: Optional[float] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "model": self.model,
            "provider": self.provider,
            "status": self.status,
            "latency_ms": self.latency_ms,
            "retries": self.retries,
            "fallback_used": self.fallback_used,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "rate_limit_remaining": self.rate_limit_remaining,
            "rate_limit_reset_ms": self.rate_limit_reset_ms,
            "error_message": self.error_message,
        }


# ─── Provider payload (network boundary) ──────────────────────────────────

class AllocationPayload(BaseModel):
    """Single allocation as returned by the model. Coerced, then clamped."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    protocol: str = Field(min_length=1)
    allocation_percent: float = Field(default=0.0, alias="allocationPercent")
    expected_apy: float = Field(default=0.0, alias="expectedAPY")
    risk_score: float = Field(default=0.0, alias="riskScore")
    rationale: Optional[str] = None

    @field_validator("protocol")
    @classmethod
    def strip_protocol(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("protocol is blank")
        return v

    @field_validator("allocation_percent", "expected_apy", "risk_score")
    @classmethod
    def finite(cls, v: float) -> float:
        if math.isnan(v) or math.isinf(v):
            raise ValueError("value must be finite")
        return v

    def to_allocation(self) -> Allocation:
        return Allocation(
            protocol=self.protocol,
            allocation_percent=round(max(0.0, min(100.0, self.allocation_percent)), 2),
            expected_apy=round(self.expected_apy, 2),
            risk_score=round(max(0.0, min(MAX_RISK_SCORE, self.risk_score)), 2),
            rationale=(self.rationale or "").strip() or "No rationale provided.",
        )


class ProviderPayload(BaseModel):
    """Top-level JSON object the model is asked to produce."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    summary: Optional[str] = None
    analysis: Optional[Any] = None
    allocations: List[Any] = Field(default_factory=list)
    suggested_actions: List[Any] = Field(default_factory=list, alias="suggestedActions")
    governance_summary: Optional[str] = Field(default=None, alias="governanceSummary")

    @field_validator("allocations", "suggested_actions", mode="before")
    @classmethod
    def listify(cls, v: Any) -> List[Any]:
        if v is None:
            return []
        if not isinstance(v, list):
            raise ValueError("expected a list")
        return v


def parse_allocations(raw_allocations: List[Any]) -> List[Allocation]:
    """Validate allocations one by one, dropping malformed entries."""
    allocations: List[Allocation] = []
    for raw in raw_allocations:
        if not isinstance(raw, dict):
            logger.warning(f"Dropping non-object allocation: {raw!r}")
            continue
        try:
            allocations.append(AllocationPayload.model_validate(raw).to_allocation())
        except PydanticValidationError as e:
            logger.warning(f"Dropping malformed allocation {raw!r}: {e.error_count()} error(s)")
    return allocations


def parse_suggested_action(action: Any) -> str:
    """Models return suggested actions as strings or {action, expectedImpact} objects."""
    if isinstance(action, str):
        return action
    if isinstance(action, dict):
        text = action.get("action") or action.get("text") or ""
        impact = action.get("expectedImpact") or action.get("impact") or action.get("details") or ""
        return f"{text} ({impact})" if impact else str(text)
    return str(action)


def parse_provider_payload(data: Any) -> ProviderPayload:
    """
    Parse decoded JSON from a provider.

    Raises:
        ValueError: If the payload is not an object or has the wrong shape
    """
    if not isinstance(data, dict):
        raise ValueError("Provider response is not a JSON object")
    try:
        return ProviderPayload.model_validate(data)
    except PydanticValidationError as e:
        raise ValueError(f"Provider response failed validation: {e.error_count()} error(s)") from e


def evaluation_to_dict(evaluation: Optional[RecommendationEvaluation]) -> Optional[Dict[str, Any]]:
    if evaluation is None:
        return None
    return {
        "confidence": evaluation.confidence,
        "risk_score": evaluation.risk_score,
        "warnings": list(evaluation.warnings),
        "notes": evaluation.notes,
        "simulated_usd": evaluation.simulated_usd,
    }


def recommendation_to_dict(rec: Recommendation) -> Dict[str, Any]:
    return {
        "allocations": [
            {
                "protocol": a.protocol,
                "allocation_percent": a.allocation_percent,
                "expected_apy": a.expected_apy,
                "risk_score": a.risk_score,
                "rationale": a.rationale,
            }
            for a in rec.allocations
        ],
        "summary": rec.summary,
        "analysis": rec.analysis,
        "suggested_actions": list(rec.suggested_actions),
        "generated_at": rec.generated_at.isoformat(),
        "model": rec.model,
        "provider": rec.provider,
        "governance_summary": rec.governance_summary,
        "fallback_used": rec.fallback_used,
        "evaluation": evaluation_to_dict(rec.evaluation),
    }
