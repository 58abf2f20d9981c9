"""
Domain models for the execution engine.

Delegation and portfolio data come from external collaborators and are
validated on the way in (from_dict). Recommendation, Action and
ExecutionRecord are immutable once built.
"""

import math
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

from core.exceptions import ValidationError

ActionStatus = Literal["executed", "skipped", "deferred"]
RiskTolerance = Literal["conservative", "balanced", "aggressive"]

SKIP_NOT_WHITELISTED = "not in whitelist"
SKIP_RISK_LIMIT = "risk exceeds limit"
SKIP_DAILY_LIMIT = "insufficient daily limit"


def round_usd(value: float) -> float:
    return round(float(value), 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse ISO string / datetime into an aware UTC datetime."""
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str) and value.strip():
        try:
            ts = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp: {value!r}") from e
    else:
        raise ValidationError(f"Invalid timestamp: {value!r}")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _non_negative(name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be numeric, got {value!r}") from e
    if math.isnan(number) or math.isinf(number):
        raise ValidationError(f"{name} must be finite, got {value!r}")
    if number < 0:
        raise ValidationError(f"{name} cannot be negative, got {number}")
    return number


@dataclass
class Delegation:
    """Budget + policy grant from an account to an automated delegate."""
    account: str
    delegate: str
    daily_limit_usd: float
    spent_24h_usd: float
    whitelist: List[str]
    max_risk_score: float
    valid_until: datetime
    active: bool = True
    window_started_at: Optional[datetime] = None

    @property
    def remaining_usd(self) -> float:
        return round_usd(max(0.0, self.daily_limit_usd - self.spent_24h_usd))

    def is_expired(self, now: datetime) -> bool:
        return self.valid_until <= now

    def is_eligible(self, now: datetime) -> bool:
        return self.active and not self.is_expired(now)

    @classmethod
    def from_dict(cls, account: str, data: Dict[str, Any]) -> "Delegation":
        if not isinstance(data, dict):
            raise ValidationError(f"Delegation for {account} must be an object")

        daily_limit = _non_negative("daily_limit_usd", data.get("daily_limit_usd"))
        spent = _non_negative("spent_24h_usd", data.get("spent_24h_usd", 0.0))
        max_risk = _non_negative("max_risk_score", data.get("max_risk_score"))

        whitelist = data.get("whitelist") or []
        if not isinstance(whitelist, list) or not all(isinstance(p, str) for p in whitelist):
            raise ValidationError(f"whitelist for {account} must be a list of strings")

        window = data.get("window_started_at")
        return cls(
            account=account.lower(),
            delegate=str(data.get("delegate", "")).lower(),
            daily_limit_usd=daily_limit,
            spent_24h_usd=spent,
            whitelist=[p.strip() for p in whitelist if p.strip()],
            max_risk_score=max_risk,
            valid_until=parse_timestamp(data.get("valid_until")),
            active=bool(data.get("active", True)),
            window_started_at=parse_timestamp(window) if window else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delegate": self.delegate,
            "daily_limit_usd": self.daily_limit_usd,
            "spent_24h_usd": self.spent_24h_usd,
            "whitelist": list(self.whitelist),
            "max_risk_score": self.max_risk_score,
            "valid_until": self.valid_until.isoformat(),
            "active": self.active,
            "window_started_at": self.window_started_at.isoformat() if self.window_started_at else None,
        }


@dataclass(frozen=True)
class Position:
    protocol: str
    asset: str
    value_usd: float
    current_apy: float = 0.0
    risk_score: float = 0.0


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Capital the delegate is allowed to manage for one account."""
    total_value_usd: float
    net_apy: float = 0.0
    positions: Tuple[Position, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PortfolioSnapshot":
        if not isinstance(data, dict):
            raise ValidationError("Portfolio snapshot must be an object")
        positions = []
        for raw in data.get("positions") or []:
            positions.append(
                Position(
                    protocol=str(raw.get("protocol", "")),
                    asset=str(raw.get("asset", "")),
                    value_usd=_non_negative("positions.value_usd", raw.get("value_usd", 0.0)),
                    current_apy=float(raw.get("current_apy", 0.0)),
                    risk_score=_non_negative("positions.risk_score", raw.get("risk_score", 0.0)),
                )
            )
        net_apy = float(data.get("net_apy", 0.0))
        if math.isnan(net_apy) or math.isinf(net_apy):
            raise ValidationError("net_apy must be finite")
        return cls(
            total_value_usd=_non_negative("total_value_usd", data.get("total_value_usd")),
            net_apy=net_apy,
            positions=tuple(positions),
        )


@dataclass(frozen=True)
class Action:
    """Guardrail-filtered, budget-checked outcome of one allocation."""
    protocol: str
    amount_usd: float
    expected_apy: float
    risk_score: float
    allocation_percent: float
    status: ActionStatus
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Action":
        return cls(
            protocol=data["protocol"],
            amount_usd=float(data.get("amount_usd", 0.0)),
            expected_apy=float(data.get("expected_apy", 0.0)),
            risk_score=float(data.get("risk_score", 0.0)),
            allocation_percent=float(data.get("allocation_percent", 0.0)),
            status=data.get("status", "skipped"),
            reason=data.get("reason"),
        )


@dataclass(frozen=True)
class ExecutionRecord:
    """Durable outcome of one execution cycle for one account."""
    account: str
    delegate: str
    generated_at: datetime
    summary: str
    total_executed_usd: float
    remaining_daily_limit_usd: float
    actions: Tuple[Action, ...]
    analysis: str = ""
    warnings: Tuple[str, ...] = ()
    model: Optional[str] = None
    provider: Optional[str] = None
    fallback_used: bool = False
    suggested_actions: Tuple[str, ...] = ()
    evaluation: Optional[Dict[str, Any]] = None
    governance_summary: str = ""

    @property
    def executed_actions(self) -> List[Action]:
        return [a for a in self.actions if a.status == "executed"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "delegate": self.delegate,
            "generated_at": self.generated_at.isoformat(),
            "summary": self.summary,
            "total_executed_usd": self.total_executed_usd,
            "remaining_daily_limit_usd": self.remaining_daily_limit_usd,
            "actions": [a.to_dict() for a in self.actions],
            "analysis": self.analysis,
            "warnings": list(self.warnings),
            "model": self.model,
            "provider": self.provider,
            "fallback_used": self.fallback_used,
            "suggested_actions": list(self.suggested_actions),
            "evaluation": dict(self.evaluation) if self.evaluation is not None else None,
            "governance_summary": self.governance_summary,
        }


@dataclass(frozen=True)
class PreviewResult:
    """Dry-run of an execution cycle. Never persisted, never billed."""
    account: str
    delegate: str
    generated_at: datetime
    summary: str
    total_executable_usd: float
    remaining_daily_limit_usd: float
    actions: Tuple[Action, ...]
    delegation: Dict[str, Any] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()
    model: Optional[str] = None
    provider: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "delegate": self.delegate,
            "generated_at": self.generated_at.isoformat(),
            "summary": self.summary,
            "total_executable_usd": self.total_executable_usd,
            "remaining_daily_limit_usd": self.remaining_daily_limit_usd,
            "actions": [a.to_dict() for a in self.actions],
            "delegation": dict(self.delegation),
            "warnings": list(self.warnings),
            "model": self.model,
            "provider": self.provider,
        }
