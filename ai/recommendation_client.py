"""
Recommendation client for OpenAI-compatible chat completion providers.

Handles prompt building, HTTP calls, retries with backoff, provider failover
and the local fallback. get_recommendation never raises for provider
trouble: the worst case is a locally computed recommendation with the same
shape as a live one.
"""

import json
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests

from core.exceptions import ProviderError, RateLimitError

from .evaluation import build_fallback, build_recommendation
from .schemas import (
    Recommendation,
    RecommendationRequest,
    parse_allocations,
    parse_provider_payload,
    parse_suggested_action,
    recommendation_to_dict,
)
from .telemetry import ProviderTelemetry

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-3.5-sonnet"

SYSTEM_PROMPT = (
    "You are the AI treasurer of a corporation managing DeFi positions. "
    "Respond strictly in JSON with fields summary, analysis, allocations[], suggestedActions[]. "
    "Each allocations[] entry has protocol, allocationPercent (0-100), expectedAPY, riskScore (0-5) "
    "and rationale. Use the protocol identifiers given in the candidate list. "
    "You may suggest protocols outside the whitelist; the system will flag them for review."
)


@dataclass(frozen=True)
class ProviderConfig:
    """One upstream model endpoint. Providers are tried in list order."""
    label: str
    model: str
    base_url: str = DEFAULT_BASE_URL
    api_key: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3            # per provider, on top of the first attempt
    base_delay_ms: float = 5000.0
    jitter_ms: float = 250.0
    timeout_s: float = 30.0


def parse_number_header(value: Any) -> Optional[float]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def parse_retry_after(value: Any, now: Optional[datetime] = None) -> Optional[float]:
    """Retry-After is either delta-seconds or an HTTP date."""
    seconds = parse_number_header(value)
    if seconds is not None:
        return max(0.0, seconds)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        when = parsedate_to_datetime(value.strip())
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


class RecommendationClient:
    """
    Multi-provider recommendation client.

    Per provider: up to 1 + max_retries attempts on retryable failures
    (timeout, connection error, 5xx, 429). Non-retryable failures move on to
    the next provider straight away. When every provider is exhausted, or
    none has an API key, the local fallback is returned.
    """

    def __init__(
        self,
        providers: Sequence[ProviderConfig],
        retry_policy: Optional[RetryPolicy] = None,
        telemetry: Optional[ProviderTelemetry] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
        call_log=None,
        rng: Optional[random.Random] = None,
    ):
        self.providers: List[ProviderConfig] = list(providers)
        self.retry_policy = retry_policy or RetryPolicy()
        self.telemetry = telemetry or ProviderTelemetry()
        self.session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._call_log = call_log
        self._rng = rng or random.Random()

    def get_recommendation(self, request: RecommendationRequest) -> Recommendation:
        """
        Get a recommendation for the request.

        Returns:
            Live recommendation from the first provider that answers, or the
            local fallback (telemetry status "skipped" if no provider is
            configured, "error" if all failed)
        """
        prompt = self.build_prompt(request)
        available = [p for p in self.providers if p.configured]
        primary = self.providers[0] if self.providers else None
        default_model = primary.model if primary else DEFAULT_MODEL

        if not available:
            provider_label = primary.label if primary else "offline"
            message = "No recommendation providers configured"
            log.warning(f"{message}; using local fallback")
            self.telemetry.record(
                model=default_model,
                provider=provider_label,
                status="skipped",
                latency_ms=0.0,
                retries=0,
                fallback_used=True,
                error_message=message,
            )
            recommendation = build_fallback(
                request, model=default_model, provider=provider_label, generated_at=self._clock()
            )
            self._log_call(request, recommendation, prompt, "skipped", 0.0, message)
            return recommendation

        start = time.perf_counter()
        failed_attempts = 0
        last_error: Optional[ProviderError] = None
        last_provider = available[0]

        for provider in available:
            for attempt in range(self.retry_policy.max_retries + 1):
                last_provider = provider
                try:
                    payload, headers, usage = self._call_provider(provider, prompt)
                    recommendation = self._to_recommendation(request, provider, payload)
                except ProviderError as e:
                    last_error = e
                    failed_attempts += 1
                    if not e.retryable or attempt >= self.retry_policy.max_retries:
                        log.warning(
                            f"Provider {provider.label} gave up after attempt {attempt + 1}: {e}"
                        )
                        break
                    delay = self.retry_delay(e, attempt + 1)
                    log.info(
                        f"Provider {provider.label} attempt {attempt + 1} failed ({e}), "
                        f"retrying in {delay:.1f}s"
                    )
                    self._sleep(delay)
                    continue

                latency_ms = (time.perf_counter() - start) * 1000
                remaining, reset_ms = self._rate_limit_info(headers)
                self.telemetry.record(
                    model=provider.model,
                    provider=provider.label,
                    status="success",
                    latency_ms=round(latency_ms, 2),
                    retries=failed_attempts,
                    fallback_used=False,
                    input_tokens=usage.get("prompt_tokens"),
                    output_tokens=usage.get("completion_tokens"),
                    total_tokens=usage.get("total_tokens"),
                    rate_limit_remaining=remaining,
                    rate_limit_reset_ms=reset_ms,
                )
                log.info(
                    f"Recommendation from {provider.label} ({provider.model}) in {latency_ms:.1f}ms, "
                    f"{len(recommendation.allocations)} allocations, retries={failed_attempts}"
                )
                self._log_call(request, recommendation, prompt, "success", latency_ms, None)
                return recommendation

        latency_ms = (time.perf_counter() - start) * 1000
        message = str(last_error) if last_error else "All providers failed"
        log.error(f"All recommendation providers exhausted ({message}); using local fallback")
        self.telemetry.record(
            model=last_provider.model,
            provider=last_provider.label,
            status="error",
            latency_ms=round(latency_ms, 2),
            retries=failed_attempts,
            fallback_used=True,
            error_message=message,
        )
        recommendation = build_fallback(
            request, model=last_provider.model, provider=last_provider.label, generated_at=self._clock()
        )
        self._log_call(request, recommendation, prompt, "error", latency_ms, message)
        return recommendation

    def retry_delay(self, error: ProviderError, retries: int) -> float:
        """
        Seconds to wait before retry number `retries` (1-based).

        A server Retry-After hint wins over the computed backoff.
        """
        if error.retry_after is not None:
            return min(max(error.retry_after, 1.0), 60.0)

        base_s = self.retry_policy.base_delay_ms / 1000.0
        if isinstance(error, RateLimitError):
            delay = min(max(base_s * (2 ** (retries - 1)), 2.0), 60.0)
        else:
            delay = min(max(base_s * (1.5 ** (retries - 1)), 1.0), 30.0)
        return delay + self._rng.uniform(0, self.retry_policy.jitter_ms / 1000.0)

    def build_prompt(self, request: RecommendationRequest) -> str:
        portfolio = request.portfolio
        constraints = request.constraints

        constraint_lines = [
            f"Daily limit: {constraints.daily_limit_usd:.2f} USD",
            f"Remaining limit: {constraints.remaining_daily_limit_usd:.2f} USD",
            f"Max allowed risk score: {constraints.max_risk_score}",
            f"Whitelisted protocols: {', '.join(constraints.whitelist)}",
        ]
        if constraints.notes.strip():
            constraint_lines.append(f"Notes: {constraints.notes.strip()}")

        if portfolio.positions:
            positions = "\n".join(
                f"{p.protocol} ({p.asset}): {p.value_usd:.2f} USD, APY {p.current_apy:.2f}%, risk {p.risk_score}"
                for p in portfolio.positions
            )
        else:
            positions = "No current positions."

        return "\n".join([
            f"Portfolio value {portfolio.total_value_usd:.2f} USD, net APY {portfolio.net_apy:.2f}%. "
            f"Risk tolerance: {request.risk_tolerance}.",
            "Current positions:",
            positions,
            f"Candidate protocols: {', '.join(request.protocols)}",
            "Constraints and context:",
            "; ".join(constraint_lines),
            "",
            "Propose the optimal allocation strategy. Return JSON only.",
        ])

    def _call_provider(
        self,
        provider: ProviderConfig,
        prompt: str,
    ) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]:
        """
        One HTTP round trip.

        Returns:
            (decoded JSON object, response headers, usage dict)

        Raises:
            RateLimitError: HTTP 429
            ProviderError: anything else; retryable for network errors and 5xx
        """
        url = provider.base_url.rstrip("/") + "/chat/completions"
        body = {
            "model": provider.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {provider.api_key}",
        }

        try:
            response = self.session.post(
                url, json=body, headers=headers, timeout=self.retry_policy.timeout_s
            )
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            raise ProviderError(f"{provider.label} network error: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{provider.label} request failed: {e}") from e

        status = response.status_code
        if status == 429:
            raise RateLimitError(
                f"{provider.label} rate limited (429)",
                retry_after=parse_retry_after(response.headers.get("retry-after"), self._clock()),
            )
        if status >= 500:
            raise ProviderError(
                f"{provider.label} server error ({status})",
                status_code=status,
                retry_after=parse_retry_after(response.headers.get("retry-after"), self._clock()),
            )
        if status >= 400:
            raise ProviderError(
                f"{provider.label} client error ({status})", status_code=status, retryable=False
            )

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"{provider.label} returned an unexpected body", retryable=False) from e

        if not isinstance(content, str) or not content.strip():
            raise ProviderError(f"{provider.label} returned an empty response", retryable=False)

        content = content.strip()
        # Some models wrap JSON in markdown fences despite response_format
        if "```json" in content:
            content = content.split("```json")[1].split("```")[0].strip()
        elif content.startswith("```"):
            content = content.split("```")[1].split("```")[0].strip()

        try:
            payload = json.loads(content)
        except json.JSONDecodeError as e:
            raise ProviderError(f"{provider.label} returned invalid JSON: {e}", retryable=False) from e

        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        return payload, dict(response.headers), usage

    def _to_recommendation(
        self,
        request: RecommendationRequest,
        provider: ProviderConfig,
        payload: Dict[str, Any],
    ) -> Recommendation:
        try:
            parsed = parse_provider_payload(payload)
        except ValueError as e:
            raise ProviderError(f"{provider.label}: {e}", retryable=False) from e

        analysis = parsed.analysis
        if analysis is not None and not isinstance(analysis, str):
            analysis = json.dumps(analysis)

        return build_recommendation(
            request,
            parse_allocations(parsed.allocations),
            model=provider.model,
            provider=provider.label,
            generated_at=self._clock(),
            summary=parsed.summary,
            analysis=analysis,
            suggested_actions=[parse_suggested_action(a) for a in parsed.suggested_actions],
            governance_summary=parsed.governance_summary,
        )

    def _rate_limit_info(self, headers: Dict[str, Any]) -> Tuple[Optional[float], Optional[float]]:
        lowered = {str(k).lower(): v for k, v in (headers or {}).items()}
        remaining = parse_number_header(lowered.get("x-ratelimit-remaining"))
        reset = parse_number_header(lowered.get("x-ratelimit-reset"))
        if reset is None:
            return remaining, None
        if reset > 1_000_000_000:
            # Epoch milliseconds
            now_ms = self._clock().timestamp() * 1000
            return remaining, float(max(0, round(reset - now_ms)))
        return remaining, float(round(reset * 1000))

    def _log_call(
        self,
        request: RecommendationRequest,
        recommendation: Recommendation,
        prompt: str,
        status: str,
        latency_ms: float,
        error_message: Optional[str],
    ) -> None:
        if self._call_log is None:
            return
        try:
            self._call_log.record_call(
                account=request.context.account,
                delegate=request.context.delegate,
                model=recommendation.model,
                provider=recommendation.provider,
                status=status,
                latency_ms=latency_ms,
                fallback_used=recommendation.fallback_used,
                prompt=prompt,
                response=json.dumps(recommendation_to_dict(recommendation)),
                error_message=error_message,
            )
        except Exception as e:
            log.error(f"Failed to record recommendation call log: {e}", exc_info=True)
