"""
Provider contract for upstream AI services.

A provider either returns a ProviderResult or raises a classified error:
ProviderTransientError for failures worth retrying, ProviderPermanentError
for everything else. The executor relies on that classification alone to
decide whether to retry.
"""

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from ai_credit_meter.core.errors import (
    MeteringError,
    ProviderPermanentError,
    ProviderTransientError,
)
from ai_credit_meter.core.pricing import OperationKind
from ai_credit_meter.core.units import TokenUsage

# Status codes worth retrying: timeout, conflict on a busy upstream, throttling
TRANSIENT_STATUSES = frozenset({408, 409, 425, 429})

# Error codes that arrive as 429 but will not clear by waiting
PERMANENT_ERROR_CODES = frozenset({"insufficient_quota", "billing_hard_limit_reached"})


@dataclass(frozen=True)
class ProviderResult:
    """Successful upstream response."""
    output: Any
    units: Optional[float] = None  # billable units measured by the provider
    usage: Optional[TokenUsage] = None
    output_size: Optional[int] = None


class Provider:
    """Adapter for one kind of AI operation."""
    kind: OperationKind

    def validate(self, payload: Any, options: Mapping[str, Any]) -> None:
        """Raise ValidationError for payloads the upstream would refuse."""

    def invoke(self, payload: Any, options: Mapping[str, Any], timeout: float) -> ProviderResult:
        """Call the upstream service once.

        Args:
            payload: Operation input (text, audio file, prompt)
            options: Validated kind-specific options
            timeout: Seconds allowed for this attempt

        Raises:
            ProviderTransientError: Failure worth retrying
            ProviderPermanentError: Failure that retrying will not fix

        Input is checked by validate() before the first attempt, not here.
        """
        raise NotImplementedError


class CallableProvider(Provider):
    """Provider backed by a plain function, for integrations without an SDK."""

    def __init__(self, kind: OperationKind, fn: Callable[[Any, Mapping[str, Any], float], ProviderResult]):
        self.kind = kind
        self.fn = fn

    def invoke(self, payload: Any, options: Mapping[str, Any], timeout: float) -> ProviderResult:
        return self.fn(payload, options, timeout)


def classify_status(status: int, message: str, code: Optional[str] = None) -> MeteringError:
    """Map an upstream HTTP status to a transient or permanent error."""
    if code in PERMANENT_ERROR_CODES:
        return ProviderPermanentError(f"Upstream quota exhausted: {message}")
    if status in TRANSIENT_STATUSES or status >= 500:
        return ProviderTransientError(f"Upstream error {status}: {message}")
    return ProviderPermanentError(f"Upstream error {status}: {message}")
