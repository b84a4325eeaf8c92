"""
Metered operation executor.

Runs one AI operation through the metering pipeline:

    ESTIMATING -> RATE_CHECKING -> PRICED -> BALANCE_CHECKED -> EXECUTING
        -> COMMITTED | FAILED

Credits are debited only after the provider succeeds, so a failed or
cancelled provider call never moves money. If the debit itself fails after
a successful call, the output is discarded: a committed ledger entry is the
precondition for releasing a result.

Every outcome, including failures, is returned as an OperationResult.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from ai_credit_meter.sdk.provider import Provider, ProviderResult
from ai_credit_meter.storage.ledger import CreditLedger
from ai_credit_meter.storage.models import EntryKind

from .errors import (
    InsufficientCredits,
    MeteringError,
    ProviderPermanentError,
    RateLimited,
    ValidationError,
)
from .pricing import (
    DEFAULT_PRICING,
    LINEAR_KINDS,
    OperationKind,
    PriceQuote,
    PricingConfig,
    parse_kind,
    preview_text,
    price,
)
from .rate_limit import RATE_LIMITS, RateDecision, RateLimitConfig, RateLimiter
from .retry import CancelToken, RetryPolicy, call_with_retry
from .units import count_characters, count_words

if TYPE_CHECKING:
    from ai_credit_meter.config.loader import MeteringConfig

logger = logging.getLogger(__name__)

# Kinds whose charge follows measured input size
MEASURED_KINDS = LINEAR_KINDS + (OperationKind.TTS,)


class OperationState(Enum):
    ESTIMATING = "ESTIMATING"
    RATE_CHECKING = "RATE_CHECKING"
    PRICED = "PRICED"
    BALANCE_CHECKED = "BALANCE_CHECKED"
    EXECUTING = "EXECUTING"
    COMMITTED = "COMMITTED"
    # Unreachable while debits happen after provider success
    REFUNDING = "REFUNDING"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


@dataclass
class OperationResult:
    """Outcome of an estimate or an execution."""
    state: OperationState
    quote: Optional[PriceQuote] = None
    output: Any = None
    error: Optional[MeteringError] = None
    rate_limit: Optional[RateDecision] = None
    new_balance: Optional[int] = None
    entry_id: Optional[str] = None
    attempts: int = 0
    has_enough_credits: Optional[bool] = None
    failed_in: Optional[OperationState] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        """Render the result for an API response body."""
        data: Dict[str, Any] = {"state": self.state.value}
        if self.quote is not None:
            data["quote"] = self.quote.to_dict()
        if self.error is not None:
            data["error"] = self.error.to_dict()
            return data
        if self.output is not None:
            data["output"] = self.output
        if self.new_balance is not None:
            data["new_balance"] = self.new_balance
        if self.has_enough_credits is not None:
            data["has_enough_credits"] = self.has_enough_credits
        if self.quote is not None and self.state is OperationState.COMMITTED:
            data["credits_used"] = self.quote.total_credits
        return data


@dataclass
class _Run:
    """Mutable bookkeeping for one invocation."""
    state: OperationState = OperationState.ESTIMATING
    quote: Optional[PriceQuote] = None
    rate_limit: Optional[RateDecision] = None
    attempts: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    def advance(self, state: OperationState) -> None:
        self.state = state

    def fail(self, error: MeteringError) -> OperationResult:
        return OperationResult(
            state=OperationState.FAILED,
            quote=self.quote,
            error=error,
            rate_limit=self.rate_limit,
            attempts=self.attempts,
            failed_in=self.state,
            **self.extra,
        )


def route_for(kind: OperationKind) -> str:
    """Default rate-limit route of an operation kind."""
    return f"/api/ai/{kind.value}"


class MeteredExecutor:
    """Entry point for metered AI operations.

    Thread-safe: holds no per-call state, and its collaborators serialize
    their own shared state per key.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        providers: Mapping[OperationKind, Provider],
        limiter: Optional[RateLimiter] = None,
        pricing: PricingConfig = DEFAULT_PRICING,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limit: Optional[RateLimitConfig] = None,
    ):
        """
        Args:
            ledger: Credit ledger to check and debit
            providers: Upstream adapter per operation kind
            limiter: Rate limiter (a private in-memory one if omitted)
            pricing: Pricing configuration
            retry_policy: Attempts, backoff and per-attempt timeout
            rate_limit: Quota applied to every operation route
        """
        self.ledger = ledger
        self.providers = dict(providers)
        self.limiter = limiter or RateLimiter()
        self.pricing = pricing
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limit = rate_limit or RATE_LIMITS["ai"]

    @classmethod
    def from_config(
        cls,
        ledger: CreditLedger,
        providers: Mapping[OperationKind, Provider],
        config: "MeteringConfig",
        limiter: Optional[RateLimiter] = None,
    ) -> "MeteredExecutor":
        """Build an executor from loaded metering configuration."""
        return cls(
            ledger,
            providers,
            limiter=limiter,
            pricing=config.pricing,
            retry_policy=config.retry,
            rate_limit=config.get_rate_limit("ai"),
        )

    def _price(self, run: _Run, kind: Any, units: Any, options: Optional[Mapping[str, Any]]) -> PriceQuote:
        run.quote = price(kind, units, options, self.pricing)
        return run.quote

    def _rate_check(self, run: _Run, caller_key: str, route_key: str) -> None:
        run.advance(OperationState.RATE_CHECKING)
        decision = self.limiter.check(caller_key, route_key, self.rate_limit)
        run.rate_limit = decision
        if not decision.allowed:
            raise RateLimited(
                "Rate limit exceeded. Please wait before trying again.",
                retry_after=decision.retry_after,
                limit=decision.limit,
            )
        run.advance(OperationState.PRICED)

    def estimate(
        self,
        caller_key: str,
        kind: Any,
        units: Any,
        options: Optional[Mapping[str, Any]] = None,
        account_id: Optional[str] = None,
        route_key: Optional[str] = None,
    ) -> OperationResult:
        """Quote an operation without touching balances or providers.

        When account_id is given the result also says whether the account
        can currently afford the operation.
        """
        run = _Run()
        try:
            quote = self._price(run, kind, units, options)
            self._rate_check(run, caller_key, route_key or route_for(parse_kind(kind)))
        except MeteringError as e:
            return run.fail(e)

        enough = None
        if account_id is not None:
            enough = self.ledger.has_enough_credits(account_id, quote.total_credits)
        return OperationResult(
            state=OperationState.PRICED,
            quote=quote,
            rate_limit=run.rate_limit,
            has_enough_credits=enough,
        )

    def execute(
        self,
        caller_key: str,
        account_id: str,
        kind: Any,
        units: Any,
        options: Optional[Mapping[str, Any]] = None,
        payload: Any = None,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
        route_key: Optional[str] = None,
    ) -> OperationResult:
        """Run a metered operation end to end.

        Args:
            caller_key: Rate-limit identity of the caller
            account_id: Account paying for the operation
            kind: Operation kind
            units: Billable input units (words, seconds, characters);
                a text payload is measured instead
            options: Kind-specific options
            payload: Input handed to the provider
            cancel: Token that aborts the operation before any debit
            timeout: Seconds per provider attempt (policy default if omitted)
            route_key: Rate-limit route (defaults to the kind's API route)

        Returns:
            OperationResult in state COMMITTED with the provider output, or
            FAILED with a typed error and no credits moved
        """
        run = _Run()
        try:
            if not account_id:
                raise ValidationError("account_id is required to execute an operation")
            quote = self._price(run, kind, units, options)
            op = parse_kind(kind)
            payload = self._resolve_payload(op, quote, payload)
            quote = self._measure(run, op, quote, payload)
            provider = self.providers.get(op)
            if provider is None:
                raise ValidationError(f"No provider available for {op.value}")
            provider.validate(payload, quote.options)

            self._rate_check(run, caller_key, route_key or route_for(op))

            if not self.ledger.has_enough_credits(account_id, quote.total_credits):
                balance = self.ledger.get_balance(account_id)
                raise InsufficientCredits(
                    f"Insufficient credits: {quote.total_credits} required, {balance} available",
                    required=quote.total_credits,
                    balance=balance,
                )
            run.advance(OperationState.BALANCE_CHECKED)

            run.advance(OperationState.EXECUTING)
            result = self._invoke(run, provider, payload, quote, cancel, timeout)
            charge = self._final_quote(op, quote, result)
        except MeteringError as e:
            if not isinstance(e, (RateLimited, InsufficientCredits, ValidationError)):
                logger.warning("Operation %s for %s failed: %s", kind, account_id, e)
            return run.fail(e)

        if charge.total_credits == 0:
            run.quote = charge
            return self._committed(run, result, self.ledger.get_balance(account_id), None)

        debit = self.ledger.debit(
            account_id,
            charge.total_credits,
            description=f"{op.value}: {charge.units:g} units",
            kind=EntryKind.USAGE,
            metadata=self._metadata(charge, result),
            operation=op.value,
            input_size=int(charge.units),
            output_size=result.output_size,
        )
        run.quote = charge
        if not debit.success:
            logger.error(
                "Discarding %s output for %s: debit of %d failed (%s)",
                op.value, account_id, charge.total_credits, debit.error.code,
            )
            run.extra["new_balance"] = debit.new_balance
            return run.fail(debit.error)
        return self._committed(run, result, debit.new_balance, debit.entry.id)

    def _invoke(
        self,
        run: _Run,
        provider: Provider,
        payload: Any,
        quote: PriceQuote,
        cancel: Optional[CancelToken],
        timeout: Optional[float],
    ) -> ProviderResult:
        per_attempt = timeout if timeout is not None else self.retry_policy.timeout_seconds

        def attempt(number: int) -> ProviderResult:
            run.attempts = number
            try:
                return provider.invoke(payload, quote.options, per_attempt)
            except MeteringError:
                raise
            except Exception as e:
                # Unclassified failures are not retried
                raise ProviderPermanentError(f"Provider failed: {e}") from e

        result = call_with_retry(attempt, self.retry_policy, cancel)
        # A cancel that lands while the last attempt is in flight still wins
        if cancel is not None:
            cancel.raise_if_cancelled()
        return result

    @staticmethod
    def _resolve_payload(op: OperationKind, quote: PriceQuote, payload: Any) -> Any:
        """Swap in the sample text for a free voice preview."""
        if op is not OperationKind.TTS or not quote.options["preview"]:
            return payload
        sample = preview_text(quote.options)
        if payload is not None and payload != sample:
            raise ValidationError("Voice previews speak the built-in sample text and take no payload")
        return sample

    def _measure(self, run: _Run, op: OperationKind, quote: PriceQuote, payload: Any) -> PriceQuote:
        """Price text payloads on their own size rather than the declared units."""
        if not isinstance(payload, str):
            return quote
        if op in (OperationKind.TRANSLATE, OperationKind.SUMMARIZE):
            measured = count_words(payload)
        elif op is OperationKind.TTS:
            measured = count_characters(payload)
        else:
            return quote
        if measured == quote.units:
            return quote
        logger.debug("Repricing %s on %d measured units (declared %g)", op.value, measured, quote.units)
        run.quote = price(op, measured, quote.options, self.pricing)
        return run.quote

    def _final_quote(self, op: OperationKind, quote: PriceQuote, result: ProviderResult) -> PriceQuote:
        """Reprice on the units the provider actually measured."""
        if op not in MEASURED_KINDS or result.units is None:
            return quote
        return price(op, result.units, quote.options, self.pricing)

    @staticmethod
    def _metadata(quote: PriceQuote, result: ProviderResult) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "base_credits": quote.base_credits,
            "service_fee": quote.service_fee,
        }
        metadata.update({k: v for k, v in quote.options.items() if isinstance(v, (str, int, float, bool))})
        if result.usage is not None:
            metadata["usage"] = result.usage.to_dict()
        return metadata

    @staticmethod
    def _committed(run: _Run, result: ProviderResult, balance: int, entry_id: Optional[str]) -> OperationResult:
        return OperationResult(
            state=OperationState.COMMITTED,
            quote=run.quote,
            output=result.output,
            rate_limit=run.rate_limit,
            new_balance=balance,
            entry_id=entry_id,
            attempts=run.attempts,
        )
