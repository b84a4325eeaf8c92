"""
Unit tests for credit packages, promo codes and referrals.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from ai_credit_meter.core.errors import AccountNotFound, PromoCodeError, ValidationError
from ai_credit_meter.storage.grants import (
    CREDIT_PACKAGES,
    REFERRAL_BONUS,
    PromoCodes,
    Referrals,
    generate_referral_code,
    get_package,
    grant_package,
)
from ai_credit_meter.storage.ledger import CreditLedger, initialize_schema
from ai_credit_meter.storage.models import EntryKind

NOW = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)


class TestPackages:
    """Test package purchases."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.ledger = CreditLedger(self.db_path)
        self.ledger.open_account("acct")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_package_catalogue(self):
        assert CREDIT_PACKAGES["starter"].credits == 50
        assert CREDIT_PACKAGES["popular"].price_cents == 999
        assert get_package("pro").credits == 500

    def test_unknown_package(self):
        with pytest.raises(ValidationError, match="Unknown credit package"):
            get_package("enterprise")

    def test_grant_posts_purchase(self):
        result = grant_package(self.ledger, "acct", "popular", "cs_test_123")
        assert result.success
        assert result.new_balance == 150
        assert result.entry.kind is EntryKind.PURCHASE
        assert result.entry.reference == "payment:cs_test_123"
        assert result.entry.metadata["package_id"] == "popular"

    def test_duplicate_payment_notification(self):
        """Verify a redelivered payment does not grant credits twice."""
        grant_package(self.ledger, "acct", "starter", "cs_test_123")
        result = grant_package(self.ledger, "acct", "starter", "cs_test_123")
        assert result.success
        assert result.new_balance == 50
        assert self.ledger.history("acct").total == 1

    def test_grant_requires_reference(self):
        result = grant_package(self.ledger, "acct", "starter", "")
        assert not result.success
        assert result.error.code == "VALIDATION_ERROR"

    def test_grant_unknown_package_fails_softly(self):
        result = grant_package(self.ledger, "acct", "gold", "cs_1")
        assert not result.success
        assert result.new_balance == 0


class TestPromoCodes:
    """Test promo code creation, validation and redemption."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.ledger = CreditLedger(self.db_path, clock=lambda: NOW)
        self.ledger.open_account("alice", 5)
        self.ledger.open_account("bob", 0)
        self.promos = PromoCodes(self.ledger)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _reason(self, code, account_id):
        with pytest.raises(PromoCodeError) as exc_info:
            self.promos.validate(code, account_id)
        return exc_info.value.code

    def test_redeem_grants_bonus(self):
        self.promos.create("welcome20", 20, description="Launch promo")
        result = self.promos.redeem("WELCOME20", "alice")
        assert result.success
        assert result.new_balance == 25
        assert result.entry.kind is EntryKind.BONUS
        assert self.ledger.reconcile("alice").consistent

    def test_codes_are_case_insensitive(self):
        promo = self.promos.create(" Spring ", 10)
        assert promo.code == "SPRING"
        assert self.promos.redeem("spring", "bob").success

    def test_duplicate_code_rejected(self):
        self.promos.create("SPRING", 10)
        with pytest.raises(ValidationError, match="already exists"):
            self.promos.create("spring", 5)

    def test_invalid_code(self):
        assert self._reason("NOPE", "alice") == "INVALID_CODE"
        result = self.promos.redeem("NOPE", "alice")
        assert not result.success
        assert result.error.code == "INVALID_CODE"
        assert result.new_balance == 5

    def test_inactive_code(self):
        self.promos.create("OLD", 10)
        self.promos.deactivate("old")
        assert self._reason("OLD", "alice") == "CODE_INACTIVE"

    def test_expired_code(self):
        self.promos.create("LATE", 10, expires_at=NOW - timedelta(days=1))
        assert self._reason("LATE", "alice") == "CODE_EXPIRED"

    def test_exhausted_code(self):
        self.promos.create("ONCE", 10, max_uses=1)
        assert self.promos.redeem("ONCE", "alice").success
        assert self._reason("ONCE", "bob") == "CODE_EXHAUSTED"

    def test_one_redemption_per_account(self):
        """Verify an account cannot redeem the same code twice."""
        self.promos.create("TWICE", 10)
        assert self.promos.redeem("TWICE", "alice").success
        result = self.promos.redeem("TWICE", "alice")
        assert not result.success
        assert result.error.code == "ALREADY_USED"
        assert self.ledger.get_balance("alice") == 15
        # Another account can still use it
        assert self.promos.redeem("TWICE", "bob").success

    def test_redeem_for_unknown_account(self):
        self.promos.create("GHOST", 10)
        result = self.promos.redeem("GHOST", "nobody")
        assert not result.success
        assert result.error.code == "ACCOUNT_NOT_FOUND"

    def test_create_validation(self):
        with pytest.raises(ValidationError):
            self.promos.create("", 10)
        with pytest.raises(ValidationError):
            self.promos.create("ZERO", 0)
        with pytest.raises(ValidationError):
            self.promos.create("NEG", 5, max_uses=0)


class TestReferrals:
    """Test referral codes and sign-up bonuses."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.ledger = CreditLedger(self.db_path, clock=lambda: NOW)
        self.ledger.open_account("alice", 5)
        self.ledger.open_account("bob")
        self.referrals = Referrals(self.ledger)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_code_format(self):
        code = generate_referral_code()
        assert code.startswith("PT")
        assert len(code) == 10
        assert code == code.upper()

    def test_code_is_stable_per_account(self):
        code = self.referrals.code_for("alice")
        assert self.referrals.code_for("alice") == code
        assert self.referrals.code_for("bob") != code
        assert self.referrals.find_account(code.lower()) == "alice"
        assert self.referrals.find_account("PTNOPE0000") is None

    def test_code_for_unknown_account(self):
        with pytest.raises(AccountNotFound):
            self.referrals.code_for("ghost")

    def test_redeem_credits_both_sides(self):
        """Verify referrer and new account each get the bonus as BONUS entries."""
        code = self.referrals.code_for("alice")
        result = self.referrals.redeem(code, "bob")

        assert result.success
        assert result.new_balance == REFERRAL_BONUS
        assert result.entry.kind is EntryKind.BONUS
        assert result.entry.description == "Referral bonus - signed up with referral"
        assert self.ledger.get_balance("alice") == 5 + REFERRAL_BONUS

        referrer_entry = self.ledger.history("alice").entries[0]
        assert referrer_entry.kind is EntryKind.BONUS
        assert referrer_entry.description == "Referral bonus - friend signed up"
        assert referrer_entry.metadata["referred_id"] == "bob"

    def test_repeated_referral_is_idempotent(self):
        first = self.referrals.apply("alice", "bob")
        second = self.referrals.apply("alice", "bob")

        assert second.success
        assert second.entry.id == first.entry.id
        assert self.ledger.get_balance("bob") == REFERRAL_BONUS
        assert self.ledger.get_balance("alice") == 5 + REFERRAL_BONUS
        assert self.ledger.history("alice").total == 1

    def test_account_referred_once(self):
        self.ledger.open_account("carol")
        self.referrals.apply("alice", "bob")
        result = self.referrals.apply("carol", "bob")

        assert not result.success
        assert result.error.code == "VALIDATION_ERROR"
        assert self.ledger.get_balance("carol") == 0
        assert self.ledger.get_balance("bob") == REFERRAL_BONUS

    def test_self_referral_rejected(self):
        code = self.referrals.code_for("alice")
        result = self.referrals.redeem(code, "alice")
        assert not result.success
        assert "yourself" in result.error.message
        assert self.ledger.get_balance("alice") == 5

    def test_invalid_code(self):
        result = self.referrals.redeem("PTUNKNOWN1", "bob")
        assert not result.success
        assert result.error.code == "VALIDATION_ERROR"
        assert self.ledger.get_balance("bob") == 0

    def test_missing_referred_account_rolls_back(self):
        """Verify neither side is credited when one account is missing."""
        result = self.referrals.apply("alice", "ghost")
        assert not result.success
        assert result.error.code == "ACCOUNT_NOT_FOUND"
        assert self.ledger.get_balance("alice") == 5
        assert self.ledger.history("alice").total == 0

    def test_stats(self):
        self.ledger.open_account("carol")
        self.referrals.apply("alice", "bob")
        self.referrals.apply("alice", "carol")

        stats = self.referrals.stats("alice")
        assert stats.referral_code == self.referrals.code_for("alice")
        assert stats.total_referrals == 2
        assert stats.credits_earned == 2 * REFERRAL_BONUS
        assert self.referrals.stats("bob").total_referrals == 0

    def test_grants_reconcile(self):
        self.referrals.apply("alice", "bob")
        assert self.ledger.reconcile("alice").consistent
        assert self.ledger.reconcile("bob").consistent
