"""
Credit grants: package purchases, promo codes and referral bonuses.

All of them post through the ledger, so grants show up in history and reconcile
like any other balance change.
"""

import logging
import secrets
import sqlite3
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from ai_credit_meter.core.errors import (
    AccountNotFound,
    LedgerConflictError,
    MeteringError,
    PromoCodeError,
    ValidationError,
)

from .db import get_connection
from .ledger import CreditLedger, find_entry_by_reference, format_timestamp, post_entry
from .models import EntryKind, LedgerResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditPackage:
    """Purchasable bundle of credits."""
    id: str
    name: str
    credits: int
    price_cents: int
    currency: str = "eur"


CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    "starter": CreditPackage(id="starter", name="Starter", credits=50, price_cents=499),
    "popular": CreditPackage(id="popular", name="Popular", credits=150, price_cents=999),
    "pro": CreditPackage(id="pro", name="Pro", credits=500, price_cents=2499),
}


def get_package(package_id: str) -> CreditPackage:
    """Look up a credit package.

    Raises:
        ValidationError: If the package does not exist
    """
    if package_id not in CREDIT_PACKAGES:
        raise ValidationError(f"Unknown credit package: {package_id}")
    return CREDIT_PACKAGES[package_id]


def grant_package(
    ledger: CreditLedger,
    account_id: str,
    package_id: str,
    payment_reference: str,
) -> LedgerResult:
    """Credit a purchased package to an account.

    Payment notifications can be delivered more than once; the payment
    reference makes the grant idempotent.
    """
    try:
        package = get_package(package_id)
    except ValidationError as e:
        return LedgerResult(success=False, new_balance=ledger.get_balance(account_id), error=e)
    if not payment_reference:
        return LedgerResult(
            success=False,
            new_balance=ledger.get_balance(account_id),
            error=ValidationError("payment_reference is required"),
        )
    return ledger.credit(
        account_id,
        package.credits,
        EntryKind.PURCHASE,
        f"Purchased {package.name} package",
        metadata={"package_id": package.id, "price_cents": package.price_cents, "currency": package.currency},
        reference=f"payment:{payment_reference}",
    )


@dataclass(frozen=True)
class PromoCode:
    code: str
    credits: int
    description: Optional[str]
    is_active: bool
    max_uses: Optional[int]
    used_count: int
    expires_at: Optional[datetime]


class PromoCodes:
    """Promo codes redeemable once per account for BONUS credits."""

    def __init__(self, ledger: CreditLedger):
        self.ledger = ledger

    def create(
        self,
        code: str,
        credits: int,
        description: Optional[str] = None,
        max_uses: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        is_active: bool = True,
    ) -> PromoCode:
        """Register a new promo code. Codes are case-insensitive."""
        if not code or not code.strip():
            raise ValidationError("code is required")
        if credits <= 0:
            raise ValidationError("credits must be > 0")
        if max_uses is not None and max_uses <= 0:
            raise ValidationError("max_uses must be > 0")
        normalized = code.strip().upper()
        try:
            with self.ledger.write_transaction() as conn:
                conn.execute(
                    "INSERT INTO promo_code (code, credits, description, is_active, max_uses, "
                    "used_count, expires_at, created_at) VALUES (?, ?, ?, ?, ?, 0, ?, ?)",
                    (
                        normalized,
                        credits,
                        description,
                        1 if is_active else 0,
                        max_uses,
                        format_timestamp(expires_at) if expires_at else None,
                        format_timestamp(self.ledger.clock()),
                    ),
                )
        except sqlite3.IntegrityError:
            raise ValidationError(f"Promo code already exists: {normalized}")
        return PromoCode(
            code=normalized,
            credits=credits,
            description=description,
            is_active=is_active,
            max_uses=max_uses,
            used_count=0,
            expires_at=expires_at,
        )

    def deactivate(self, code: str) -> None:
        with self.ledger.write_transaction() as conn:
            conn.execute("UPDATE promo_code SET is_active = 0 WHERE code = ?", (code.strip().upper(),))

    def _check(self, conn, code: str, account_id: str) -> PromoCode:
        row = conn.execute(
            "SELECT code, credits, description, is_active, max_uses, used_count, expires_at "
            "FROM promo_code WHERE code = ?",
            (code,),
        ).fetchone()
        if row is None:
            raise PromoCodeError("INVALID_CODE", "Invalid promo code")
        promo = PromoCode(
            code=row["code"],
            credits=row["credits"],
            description=row["description"],
            is_active=bool(row["is_active"]),
            max_uses=row["max_uses"],
            used_count=row["used_count"],
            expires_at=datetime.fromisoformat(row["expires_at"]) if row["expires_at"] else None,
        )
        if not promo.is_active:
            raise PromoCodeError("CODE_INACTIVE", "This promo code is no longer active")
        if promo.expires_at is not None and format_timestamp(promo.expires_at) < format_timestamp(self.ledger.clock()):
            raise PromoCodeError("CODE_EXPIRED", "This promo code has expired")
        if promo.max_uses is not None and promo.used_count >= promo.max_uses:
            raise PromoCodeError("CODE_EXHAUSTED", "This promo code has reached its usage limit")
        redeemed = conn.execute(
            "SELECT 1 FROM promo_redemption WHERE code = ? AND account_id = ?",
            (code, account_id),
        ).fetchone()
        if redeemed is not None:
            raise PromoCodeError("ALREADY_USED", "You have already used this promo code")
        return promo

    def validate(self, code: str, account_id: str) -> PromoCode:
        """Check that account_id may redeem code.

        Raises:
            PromoCodeError: With the reason as its code
        """
        conn = get_connection(self.ledger.db_path)
        try:
            return self._check(conn, code.strip().upper(), account_id)
        finally:
            conn.close()

    def redeem(self, code: str, account_id: str) -> LedgerResult:
        """Redeem a promo code for BONUS credits.

        The credit, the redemption record and the use count change in one
        transaction.
        """
        normalized = code.strip().upper()
        with self.ledger.locks.hold(account_id):
            try:
                with self.ledger.write_transaction() as conn:
                    promo = self._check(conn, normalized, account_id)
                    entry = post_entry(
                        conn,
                        account_id,
                        EntryKind.BONUS,
                        promo.credits,
                        f"Promo code: {promo.code}",
                        self.ledger.clock(),
                        metadata={"promo_code": promo.code},
                    )
                    conn.execute(
                        "INSERT INTO promo_redemption (code, account_id, entry_id, credits_awarded, created_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (promo.code, account_id, entry.id, promo.credits, format_timestamp(entry.created_at)),
                    )
                    conn.execute(
                        "UPDATE promo_code SET used_count = used_count + 1 WHERE code = ?", (promo.code,)
                    )
            except MeteringError as e:
                logger.warning("Promo code %s refused for %s: %s", normalized, account_id, e.code)
                return LedgerResult(success=False, new_balance=self.ledger.get_balance(account_id), error=e)
            except sqlite3.OperationalError as e:
                logger.error("Promo redemption for %s hit a ledger conflict: %s", account_id, e)
                return LedgerResult(
                    success=False,
                    new_balance=self.ledger.get_balance(account_id),
                    error=LedgerConflictError(f"Ledger busy, promo code not redeemed: {e}"),
                )

        new_balance = self.ledger.get_balance(account_id)
        logger.info("Redeemed promo code %s for %s (+%d)", promo.code, account_id, promo.credits)
        return LedgerResult(success=True, new_balance=new_balance, entry=entry)


REFERRAL_BONUS = 100
REFERRAL_CODE_PREFIX = "PT"
REFERRAL_CODE_LENGTH = 8
REFERRAL_CODE_ATTEMPTS = 5
_REFERRAL_ALPHABET = string.ascii_uppercase + string.digits


def generate_referral_code() -> str:
    """Random shareable code such as PT7Q2K9XZA."""
    suffix = "".join(secrets.choice(_REFERRAL_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
    return REFERRAL_CODE_PREFIX + suffix


@dataclass(frozen=True)
class ReferralStats:
    referral_code: str
    total_referrals: int
    credits_earned: int


class Referrals:
    """Referral codes and the BONUS credits both sides get on sign-up."""

    def __init__(self, ledger: CreditLedger, bonus: int = REFERRAL_BONUS):
        if bonus <= 0:
            raise ValidationError("bonus must be > 0")
        self.ledger = ledger
        self.bonus = bonus

    def _code_of(self, account_id: str) -> Optional[str]:
        conn = get_connection(self.ledger.db_path)
        try:
            row = conn.execute("SELECT code FROM referral_code WHERE account_id = ?", (account_id,)).fetchone()
        finally:
            conn.close()
        return None if row is None else row["code"]

    def code_for(self, account_id: str) -> str:
        """Return the account's referral code, creating it on first use.

        Raises:
            AccountNotFound: If the account does not exist
            LedgerConflictError: If no unused code could be generated
        """
        existing = self._code_of(account_id)
        if existing is not None:
            return existing
        if self.ledger.get_account(account_id) is None:
            raise AccountNotFound(f"Account not found: {account_id}")

        for _ in range(REFERRAL_CODE_ATTEMPTS):
            code = generate_referral_code()
            try:
                with self.ledger.write_transaction() as conn:
                    row = conn.execute(
                        "SELECT code FROM referral_code WHERE account_id = ?", (account_id,)
                    ).fetchone()
                    if row is not None:
                        return row["code"]
                    conn.execute(
                        "INSERT INTO referral_code (code, account_id, created_at) VALUES (?, ?, ?)",
                        (code, account_id, format_timestamp(self.ledger.clock())),
                    )
            except sqlite3.IntegrityError:
                logger.debug("Referral code %s already taken, drawing another", code)
                continue
            logger.info("Created referral code %s for %s", code, account_id)
            return code
        raise LedgerConflictError("Could not generate a unique referral code")

    def find_account(self, code: str) -> Optional[str]:
        """Account that owns a referral code. Codes are case-insensitive."""
        conn = get_connection(self.ledger.db_path)
        try:
            row = conn.execute(
                "SELECT account_id FROM referral_code WHERE code = ?", (code.strip().upper(),)
            ).fetchone()
        finally:
            conn.close()
        return None if row is None else row["account_id"]

    def redeem(self, code: str, referred_id: str) -> LedgerResult:
        """Apply the referral bonus for a new account that signed up with code."""
        referrer_id = self.find_account(code)
        if referrer_id is None:
            return LedgerResult(
                success=False,
                new_balance=self.ledger.get_balance(referred_id),
                error=ValidationError("Invalid referral code"),
            )
        return self.apply(referrer_id, referred_id)

    def apply(self, referrer_id: str, referred_id: str) -> LedgerResult:
        """Credit the referral bonus to both accounts.

        Both BONUS entries and the referral record are written in one
        transaction. An account can be referred once; applying the same
        pair again returns the original entry and moves no money.

        Returns:
            LedgerResult for the referred account; on failure error is
            ValidationError, AccountNotFound or LedgerConflictError
        """
        if referrer_id == referred_id:
            return LedgerResult(
                success=False,
                new_balance=self.ledger.get_balance(referred_id),
                error=ValidationError("Cannot refer yourself"),
            )

        referred_ref = f"referral:{referred_id}:referred"
        first, second = sorted((referrer_id, referred_id))
        with self.ledger.locks.hold(first), self.ledger.locks.hold(second):
            try:
                with self.ledger.write_transaction() as conn:
                    row = conn.execute(
                        "SELECT referrer_id FROM referral WHERE referred_id = ?", (referred_id,)
                    ).fetchone()
                    if row is not None and row["referrer_id"] != referrer_id:
                        raise ValidationError(f"Account {referred_id} was already referred")
                    if row is not None:
                        entry = find_entry_by_reference(conn, referred_ref)
                        applied = False
                    else:
                        referrer_entry = post_entry(
                            conn,
                            referrer_id,
                            EntryKind.BONUS,
                            self.bonus,
                            "Referral bonus - friend signed up",
                            self.ledger.clock(),
                            metadata={"referred_id": referred_id},
                            reference=f"referral:{referred_id}:referrer",
                        )
                        entry = post_entry(
                            conn,
                            referred_id,
                            EntryKind.BONUS,
                            self.bonus,
                            "Referral bonus - signed up with referral",
                            self.ledger.clock(),
                            metadata={"referrer_id": referrer_id},
                            reference=referred_ref,
                        )
                        conn.execute(
                            "INSERT INTO referral (referred_id, referrer_id, referrer_entry_id, "
                            "referred_entry_id, created_at) VALUES (?, ?, ?, ?, ?)",
                            (
                                referred_id,
                                referrer_id,
                                referrer_entry.id,
                                entry.id,
                                format_timestamp(entry.created_at),
                            ),
                        )
                        applied = True
            except MeteringError as e:
                logger.warning("Referral of %s by %s refused: %s", referred_id, referrer_id, e)
                return LedgerResult(success=False, new_balance=self.ledger.get_balance(referred_id), error=e)
            except sqlite3.OperationalError as e:
                logger.error("Referral of %s hit a ledger conflict: %s", referred_id, e)
                return LedgerResult(
                    success=False,
                    new_balance=self.ledger.get_balance(referred_id),
                    error=LedgerConflictError(f"Ledger busy, referral bonus not applied: {e}"),
                )

        if applied:
            logger.info("Referral bonus of %d applied to %s and %s", self.bonus, referrer_id, referred_id)
        else:
            logger.info("Referral of %s by %s already applied", referred_id, referrer_id)
        return LedgerResult(success=True, new_balance=self.ledger.get_balance(referred_id), entry=entry)

    def stats(self, account_id: str) -> ReferralStats:
        """Referral code, number of referred accounts and bonus credits earned."""
        code = self.code_for(account_id)
        conn = get_connection(self.ledger.db_path)
        try:
            row = conn.execute(
                "SELECT COUNT(*) AS referrals, COALESCE(SUM(e.amount), 0) AS earned "
                "FROM referral r JOIN ledger_entry e ON e.id = r.referrer_entry_id "
                "WHERE r.referrer_id = ?",
                (account_id,),
            ).fetchone()
        finally:
            conn.close()
        return ReferralStats(referral_code=code, total_referrals=row["referrals"], credits_earned=row["earned"])
