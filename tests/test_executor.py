"""
Unit tests for the metered operation executor.

Tests the estimate and execute pipelines end to end against a real ledger
and stub providers.
"""

import os
import shutil
import tempfile
from unittest.mock import Mock

from ai_credit_meter.core.errors import ProviderPermanentError, ProviderTransientError
from ai_credit_meter.core.executor import MeteredExecutor, OperationState, route_for
from ai_credit_meter.core.pricing import TTS_PREVIEW_TEXT, OperationKind
from ai_credit_meter.core.rate_limit import RateLimitConfig, RateLimiter
from ai_credit_meter.core.retry import CancelToken, RetryPolicy
from ai_credit_meter.core.units import TokenUsage
from ai_credit_meter.sdk.provider import CallableProvider, ProviderResult
from ai_credit_meter.storage.ledger import CreditLedger, initialize_schema
from ai_credit_meter.storage.models import EntryKind, LedgerResult

FAST_RETRY = RetryPolicy(max_retries=3, base_delay_ms=0, timeout_seconds=5)


def _translated(payload, options, timeout):
    return ProviderResult(
        output=f"[{options['target_language']}] {payload}",
        usage=TokenUsage(prompt_tokens=1200, completion_tokens=1100),
        output_size=len(payload.split()),
    )


class ExecutorTestCase:
    """Temporary ledger and a translate provider that records its calls."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.ledger = CreditLedger(self.db_path)
        self.translate = Mock(side_effect=_translated)
        self.providers = {OperationKind.TRANSLATE: CallableProvider(OperationKind.TRANSLATE, self.translate)}
        self.executor = self._executor()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _executor(self, **kwargs):
        kwargs.setdefault("retry_policy", FAST_RETRY)
        return MeteredExecutor(self.ledger, self.providers, **kwargs)

    def _translate(self, account_id="acct", units=1000, **kwargs):
        return self.executor.execute(
            "1.2.3.4", account_id, "translate", units,
            options={"target_language": "de"}, payload="word " * 1000, **kwargs
        )


class TestEstimate(ExecutorTestCase):
    """Test quoting without side effects."""

    def test_estimate_quotes_and_checks_balance(self):
        self.ledger.open_account("acct", 1)
        result = self.executor.estimate("1.2.3.4", "translate", 1000, account_id="acct")
        assert result.ok
        assert result.state is OperationState.PRICED
        assert result.quote.total_credits == 2
        assert result.has_enough_credits is False
        assert self.ledger.get_balance("acct") == 1
        self.translate.assert_not_called()

    def test_estimate_without_account(self):
        result = self.executor.estimate("1.2.3.4", "generateVideo", 0, options={"duration": 10})
        assert result.quote.total_credits == 40
        assert result.has_enough_credits is None
        assert "has_enough_credits" not in result.to_dict()

    def test_estimate_invalid_kind(self):
        result = self.executor.estimate("1.2.3.4", "paint", 1)
        assert not result.ok
        assert result.state is OperationState.FAILED
        assert result.failed_in is OperationState.ESTIMATING
        assert result.error.code == "VALIDATION_ERROR"

    def test_estimate_counts_against_rate_limit(self):
        executor = self._executor(rate_limit=RateLimitConfig(window_ms=60000, limit=1))
        assert executor.estimate("1.2.3.4", "translate", 10).ok
        result = executor.estimate("1.2.3.4", "translate", 10)
        assert result.error.code == "RATE_LIMITED"
        assert result.failed_in is OperationState.RATE_CHECKING


class TestExecute(ExecutorTestCase):
    """Test the charge-after-success pipeline."""

    def test_successful_operation_debits_once(self):
        """Verify a 1000-word translation costs 2 credits and writes one entry."""
        self.ledger.open_account("acct", 10)
        result = self._translate()

        assert result.ok
        assert result.state is OperationState.COMMITTED
        assert result.output.startswith("[de] word")
        assert result.new_balance == 8
        assert result.attempts == 1
        assert self.ledger.get_balance("acct") == 8

        page = self.ledger.history("acct")
        assert page.total == 1
        entry = page.entries[0]
        assert entry.id == result.entry_id
        assert entry.kind is EntryKind.USAGE
        assert entry.amount == -2
        assert entry.operation == "translate"
        assert entry.input_size == 1000
        assert entry.metadata["base_credits"] == 1
        assert entry.metadata["target_language"] == "de"
        assert entry.metadata["usage"]["total_tokens"] == 2300

        body = result.to_dict()
        assert body["credits_used"] == 2
        assert body["new_balance"] == 8

    def test_insufficient_credits_skips_provider(self):
        """Verify an unaffordable operation never reaches the provider."""
        self.ledger.open_account("acct", 1)
        result = self._translate()

        assert not result.ok
        assert result.error.code == "INSUFFICIENT_CREDITS"
        assert result.error.required == 2
        assert result.error.balance == 1
        assert result.failed_in is OperationState.PRICED
        self.translate.assert_not_called()
        assert self.ledger.get_balance("acct") == 1
        assert self.ledger.history("acct").total == 0

    def test_rate_limited_before_balance_check(self):
        executor = self._executor(rate_limit=RateLimitConfig(window_ms=60000, limit=1))
        self.executor = executor
        self.ledger.open_account("acct", 10)
        assert self._translate().ok
        result = self._translate()
        assert result.error.code == "RATE_LIMITED"
        assert result.error.retry_after == 60
        assert self.translate.call_count == 1
        assert self.ledger.get_balance("acct") == 8

    def test_route_key_defaults_to_kind_route(self):
        limiter = RateLimiter()
        self.executor = self._executor(limiter=limiter, rate_limit=RateLimitConfig(window_ms=60000, limit=1))
        self.ledger.open_account("acct", 10)
        self._translate()
        decision = limiter.check("1.2.3.4", route_for(OperationKind.TRANSLATE), RateLimitConfig(window_ms=60000, limit=1))
        assert not decision.allowed

    def test_missing_provider(self):
        self.ledger.open_account("acct", 100)
        result = self.executor.execute("1.2.3.4", "acct", "generateVideo", 0, options={"duration": 5})
        assert result.error.code == "VALIDATION_ERROR"
        assert self.ledger.get_balance("acct") == 100

    def test_missing_account_id(self):
        result = self.executor.execute("1.2.3.4", "", "translate", 10)
        assert result.error.code == "VALIDATION_ERROR"

    def test_invalid_options(self):
        self.ledger.open_account("acct", 10)
        result = self.executor.execute(
            "1.2.3.4", "acct", "translate", 10, options={"target_language": "xx"}, payload="hi"
        )
        assert result.error.code == "VALIDATION_ERROR"
        self.translate.assert_not_called()

    def test_transient_failures_retried_then_charged(self):
        self.ledger.open_account("acct", 10)
        self.translate.side_effect = [
            ProviderTransientError("429"),
            ProviderTransientError("503"),
            _translated("word", {"target_language": "de"}, 5),
        ]
        result = self._translate()
        assert result.ok
        assert result.attempts == 3
        assert self.ledger.get_balance("acct") == 8
        assert self.ledger.history("acct").total == 1

    def test_retries_are_bounded(self):
        """Verify persistent transient failures stop after max_retries and charge nothing."""
        self.ledger.open_account("acct", 10)
        self.translate.side_effect = ProviderTransientError("503")
        result = self._translate()

        assert result.error.code == "PROVIDER_UNAVAILABLE"
        assert result.failed_in is OperationState.EXECUTING
        assert self.translate.call_count == 3
        assert self.ledger.get_balance("acct") == 10
        assert self.ledger.history("acct").total == 0

    def test_permanent_failure_not_retried(self):
        self.ledger.open_account("acct", 10)
        self.translate.side_effect = ProviderPermanentError("content policy")
        result = self._translate()
        assert result.error.code == "PROVIDER_ERROR"
        assert self.translate.call_count == 1
        assert self.ledger.get_balance("acct") == 10

    def test_unclassified_exception_is_permanent(self):
        self.ledger.open_account("acct", 10)
        self.translate.side_effect = KeyError("choices")
        result = self._translate()
        assert result.error.code == "PROVIDER_ERROR"
        assert self.translate.call_count == 1

    def test_cancelled_operation_not_charged(self):
        self.ledger.open_account("acct", 10)
        token = CancelToken()
        token.cancel()
        result = self._translate(cancel=token)
        assert result.error.code == "CANCELLED"
        self.translate.assert_not_called()
        assert self.ledger.get_balance("acct") == 10

    def test_cancel_during_provider_call_not_charged(self):
        """Verify a cancel that arrives while the provider runs wins over its result."""
        self.ledger.open_account("acct", 10)
        token = CancelToken()

        def cancelled_midway(payload, options, timeout):
            token.cancel()
            return _translated(payload, options, timeout)

        self.translate.side_effect = cancelled_midway
        result = self._translate(cancel=token)

        assert result.state is OperationState.FAILED
        assert result.error.code == "CANCELLED"
        assert result.failed_in is OperationState.EXECUTING
        assert result.output is None
        assert self.translate.call_count == 1
        assert self.ledger.get_balance("acct") == 10
        assert self.ledger.history("acct").total == 0

    def test_failed_debit_discards_output(self):
        """Verify output is withheld when the debit cannot be committed."""
        self.ledger.open_account("acct", 10)
        failure = LedgerResult(success=False, new_balance=10, error=Mock(code="LEDGER_CONFLICT"))
        self.ledger.debit = Mock(return_value=failure)
        result = self._translate()

        assert not result.ok
        assert result.state is OperationState.FAILED
        assert result.output is None
        assert result.new_balance == 10
        assert self.translate.call_count == 1

    def test_balance_drained_during_call_discards_output(self):
        """Verify a concurrent spend during the provider call blocks the debit and the output."""
        self.ledger.open_account("acct", 10)

        def drain_then_translate(payload, options, timeout):
            assert self.ledger.debit("acct", 10, "spent elsewhere").success
            return _translated(payload, options, timeout)

        self.translate.side_effect = drain_then_translate
        result = self._translate()

        assert result.state is OperationState.FAILED
        assert result.error.code == "INSUFFICIENT_CREDITS"
        assert result.output is None
        assert result.new_balance == 0
        assert self.ledger.get_balance("acct") == 0
        page = self.ledger.history("acct")
        assert page.total == 1
        assert page.entries[0].description == "spent elsewhere"

    def test_timeout_passed_to_provider(self):
        self.ledger.open_account("acct", 10)
        self._translate(timeout=2.5)
        assert self.translate.call_args[0][2] == 2.5


class TestVoice(ExecutorTestCase):
    """Test voice previews and character-based voice billing."""

    def setup_method(self):
        super().setup_method()
        self.tts = Mock(return_value=ProviderResult(output=b"audio", output_size=5))
        self.providers[OperationKind.TTS] = CallableProvider(OperationKind.TTS, self.tts)
        self.executor = self._executor()

    def _speak(self, units, options=None, payload=None):
        return self.executor.execute("1.2.3.4", "acct", "tts", units, options=options, payload=payload)

    def test_free_preview_speaks_sample_text(self):
        """Verify a preview commits without an entry and speaks only the sample."""
        self.ledger.open_account("acct", 0)
        result = self._speak(80, options={"preview": True})

        assert result.ok
        assert result.entry_id is None
        assert result.new_balance == 0
        assert self.ledger.history("acct").total == 0
        assert self.tts.call_args[0][0] == TTS_PREVIEW_TEXT["en"]

    def test_preview_language(self):
        self.ledger.open_account("acct", 0)
        result = self._speak(0, options={"preview": True, "preview_language": "de"})
        assert result.ok
        assert self.tts.call_args[0][0] == TTS_PREVIEW_TEXT["de"]

    def test_preview_cannot_carry_custom_text(self):
        """Verify a long custom text flagged as a preview is never synthesized for free."""
        self.ledger.open_account("acct", 10)
        result = self._speak(0, options={"preview": True}, payload="x" * 4000)

        assert result.error.code == "VALIDATION_ERROR"
        self.tts.assert_not_called()
        assert self.ledger.get_balance("acct") == 10
        assert self.ledger.history("acct").total == 0

    def test_truthy_preview_flag_rejected(self):
        self.ledger.open_account("acct", 10)
        result = self._speak(0, options={"preview": "yes"}, payload="x" * 4000)
        assert result.error.code == "VALIDATION_ERROR"
        self.tts.assert_not_called()
        assert self.ledger.get_balance("acct") == 10

    def test_charged_on_text_length(self):
        """Verify voice is billed on the characters actually sent, not the declared count."""
        self.ledger.open_account("acct", 20)
        result = self._speak(10, payload="a" * 2500)
        # 3 blocks * 2 = 6, fee 0.6, total 7
        assert result.quote.units == 2500
        assert result.quote.total_credits == 7
        assert self.ledger.get_balance("acct") == 13

    def test_reprices_on_provider_units(self):
        self.tts.return_value = ProviderResult(output=b"audio", units=3000, output_size=5)
        self.ledger.open_account("acct", 20)
        result = self._speak(5, payload="Hello")
        assert result.quote.total_credits == 7
        assert self.ledger.get_balance("acct") == 13


class TestMeasuredUnits(ExecutorTestCase):
    """Test that billing follows measured input size."""

    def test_declared_units_cannot_undercut_text_payload(self):
        """Verify a text payload is priced on its word count."""
        self.ledger.open_account("acct", 100)
        result = self.executor.execute(
            "1.2.3.4", "acct", "translate", 0,
            options={"target_language": "de"}, payload="word " * 50000,
        )
        # 50000/1000 * 0.5 = 25, fee 2.5, total 28
        assert result.ok
        assert result.quote.units == 50000
        assert result.quote.total_credits == 28
        assert self.ledger.get_balance("acct") == 72
        assert self.ledger.history("acct").entries[0].input_size == 50000

    def test_measured_size_checked_against_balance(self):
        self.ledger.open_account("acct", 10)
        result = self.executor.execute(
            "1.2.3.4", "acct", "translate", 0,
            options={"target_language": "de"}, payload="word " * 50000,
        )
        assert result.error.code == "INSUFFICIENT_CREDITS"
        assert result.error.required == 28
        self.translate.assert_not_called()
        assert self.ledger.get_balance("acct") == 10

    def test_reprices_on_measured_units(self):
        """Verify a linear kind is charged on the units the provider measured."""
        transcribe = Mock(return_value=ProviderResult(output={"text": "hi"}, units=300.0))
        self.providers[OperationKind.TRANSCRIBE] = CallableProvider(OperationKind.TRANSCRIBE, transcribe)
        self.executor = self._executor()
        self.ledger.open_account("acct", 20)
        result = self.executor.execute("1.2.3.4", "acct", "transcribe", 60, payload=b"audio")
        # Estimated 60 s = 3 credits; measured 300 s = 6 credits
        assert result.quote.total_credits == 6
        assert result.new_balance == 14


class TestFromConfig(ExecutorTestCase):
    """Test building an executor from metering configuration."""

    def test_uses_configured_pricing_retry_and_quota(self):
        from dataclasses import replace
        from decimal import Decimal

        from ai_credit_meter.config.loader import MeteringConfig

        base = MeteringConfig()
        config = replace(
            base,
            pricing=replace(base.pricing, fee_percent=Decimal("0")),
            retry=RetryPolicy(max_retries=2, base_delay_ms=0),
            rate_limits={**base.rate_limits, "ai": RateLimitConfig(window_ms=1000, limit=4)},
        )
        executor = MeteredExecutor.from_config(self.ledger, self.providers, config)
        assert executor.retry_policy.max_retries == 2
        assert executor.rate_limit.limit == 4
        assert executor.estimate("1.2.3.4", "translate", 1000).quote.total_credits == 1
