"""
Error taxonomy for metering operations.

Every failure that can reach a caller has a stable code and a human-readable
message. Internals raise these; the public operations convert them into
result objects so nothing escapes the contract boundary uncaught.
"""

from typing import Any, Dict, Optional


class MeteringError(Exception):
    """Base class for all metering failures."""
    code = "METERING_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Render the error for an API response body."""
        return {"code": self.code, "message": self.message}


class ValidationError(MeteringError, ValueError):
    """Bad kind, units or options. Never retried, never billed."""
    code = "VALIDATION_ERROR"


class RateLimited(MeteringError):
    """Caller exceeded the request quota for a route."""
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: int, limit: int):
        super().__init__(message)
        self.retry_after = retry_after
        self.limit = limit
        self.remaining = 0

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


class InsufficientCredits(MeteringError):
    """Balance too low for the requested amount."""
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, message: str, required: int, balance: int):
        super().__init__(message)
        self.required = required
        self.balance = balance


class AccountNotFound(MeteringError):
    code = "ACCOUNT_NOT_FOUND"


class LedgerConflictError(MeteringError):
    """Concurrent modification prevented the ledger commit."""
    code = "LEDGER_CONFLICT"


class ProviderTransientError(MeteringError):
    """Upstream failure worth retrying (429, timeout, 5xx, network)."""
    code = "PROVIDER_TRANSIENT"


class ProviderPermanentError(MeteringError):
    """Upstream failure that will not succeed on retry."""
    code = "PROVIDER_ERROR"


class ProviderUnavailable(MeteringError):
    """Transient upstream failures persisted through every retry."""
    code = "PROVIDER_UNAVAILABLE"

    def __init__(self, message: str, attempts: int, last_error: Optional[Exception] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class OperationCancelled(MeteringError):
    code = "CANCELLED"


class PromoCodeError(MeteringError):
    """Promo code rejected. The code attribute carries the specific reason."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
