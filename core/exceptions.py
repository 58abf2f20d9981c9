"""Shared exception types for the execution engine."""

from typing import Optional


class EngineError(RuntimeError):
    """Base class for execution engine failures."""


class ValidationError(EngineError, ValueError):
    """Raised when input at a boundary is malformed. Never retried."""


class ConfigError(EngineError):
    """Raised when app configuration cannot be loaded or validated."""


class ProviderError(EngineError):
    """Transient failure talking to a recommendation provider."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after
        self.retryable = retryable


class RateLimitError(ProviderError):
    """HTTP 429 from a provider; retry_after carries the server hint in seconds."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429, retry_after=retry_after, retryable=True)


class DelegationNotFound(EngineError):
    """No active delegation exists for the account."""

    def __init__(self, account: str):
        super().__init__(f"No active delegation for account {account}")
        self.account = account


class DelegationExpired(EngineError):
    """The delegation's valid_until has passed."""

    def __init__(self, account: str, valid_until: str):
        super().__init__(f"Delegation for account {account} expired at {valid_until}")
        self.account = account
        self.valid_until = valid_until


class BudgetExceeded(EngineError):
    """Spend update would push spent_24h_usd past daily_limit_usd."""


class ConcurrencyConflict(EngineError):
    """A manual scheduler run was requested while another manual run is in progress."""
