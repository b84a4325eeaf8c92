"""
Credit ledger backed by SQLite.

Balances live on the account row; every change to a balance is recorded as an
immutable ledger entry in the same transaction. Usage reporting reads the
usage_log view, a projection of USAGE entries, so there is one source of
truth for both accounting and reporting.

Debits on one account are serialized twice over: an in-process lock per
account, and SQLite's BEGIN IMMEDIATE write lock for other processes.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, Optional

from ai_credit_meter.core.errors import (
    AccountNotFound,
    InsufficientCredits,
    LedgerConflictError,
    MeteringError,
    ValidationError,
)
from ai_credit_meter.core.keyed_lock import KeyedLock

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    Account,
    DailyUsage,
    EntryKind,
    HistoryPage,
    LedgerEntry,
    LedgerResult,
    Reconciliation,
    UsageStats,
)

logger = logging.getLogger(__name__)

_ENTRY_COLUMNS = (
    "id, account_id, kind, amount, description, metadata, operation, "
    "input_size, output_size, reference, created_at"
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS account (
    id TEXT PRIMARY KEY,
    balance INTEGER NOT NULL CHECK (balance >= 0),
    initial_balance INTEGER NOT NULL CHECK (initial_balance >= 0),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_entry (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    account_id TEXT NOT NULL REFERENCES account(id),
    kind TEXT NOT NULL CHECK (kind IN ('USAGE', 'PURCHASE', 'BONUS', 'REFUND')),
    amount INTEGER NOT NULL,
    description TEXT NOT NULL,
    metadata TEXT,
    operation TEXT,
    input_size INTEGER,
    output_size INTEGER,
    reference TEXT UNIQUE,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ledger_entry_account_created
    ON ledger_entry (account_id, created_at);

CREATE TRIGGER IF NOT EXISTS ledger_entry_no_update
BEFORE UPDATE ON ledger_entry
BEGIN
    SELECT RAISE(ABORT, 'ledger entries are immutable');
END;

CREATE TRIGGER IF NOT EXISTS ledger_entry_no_delete
BEFORE DELETE ON ledger_entry
BEGIN
    SELECT RAISE(ABORT, 'ledger entries are immutable');
END;

CREATE VIEW IF NOT EXISTS usage_log AS
    SELECT account_id, operation, -amount AS credits, input_size, output_size,
           metadata, created_at
    FROM ledger_entry
    WHERE kind = 'USAGE';

CREATE TABLE IF NOT EXISTS promo_code (
    code TEXT PRIMARY KEY,
    credits INTEGER NOT NULL CHECK (credits > 0),
    description TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    max_uses INTEGER,
    used_count INTEGER NOT NULL DEFAULT 0,
    expires_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS promo_redemption (
    code TEXT NOT NULL REFERENCES promo_code(code),
    account_id TEXT NOT NULL REFERENCES account(id),
    entry_id TEXT NOT NULL REFERENCES ledger_entry(id),
    credits_awarded INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (code, account_id)
);

CREATE TABLE IF NOT EXISTS referral_code (
    code TEXT PRIMARY KEY,
    account_id TEXT NOT NULL UNIQUE REFERENCES account(id),
    created_at TEXT NOT NULL
);

-- An account can be referred once
CREATE TABLE IF NOT EXISTS referral (
    referred_id TEXT PRIMARY KEY REFERENCES account(id),
    referrer_id TEXT NOT NULL REFERENCES account(id),
    referrer_entry_id TEXT NOT NULL REFERENCES ledger_entry(id),
    referred_entry_id TEXT NOT NULL REFERENCES ledger_entry(id),
    created_at TEXT NOT NULL,
    CHECK (referrer_id != referred_id)
);

CREATE INDEX IF NOT EXISTS idx_referral_referrer ON referral (referrer_id);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Fixed-width UTC ISO timestamp, so text order matches time order."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger tables, triggers and views if they don't exist.

    The ledger_entry table is append-only; triggers reject UPDATE and DELETE.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(f"amount must be an integer number of credits, got {amount!r}")
    if amount <= 0:
        raise ValidationError("amount must be > 0")
    return amount


def _read_balance(conn: sqlite3.Connection, account_id: str) -> Optional[int]:
    row = conn.execute("SELECT balance FROM account WHERE id = ?", (account_id,)).fetchone()
    return None if row is None else row["balance"]


def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        account_id=row["account_id"],
        kind=EntryKind(row["kind"]),
        amount=row["amount"],
        description=row["description"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        operation=row["operation"],
        input_size=row["input_size"],
        output_size=row["output_size"],
        reference=row["reference"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def find_entry_by_reference(conn: sqlite3.Connection, reference: str) -> Optional[LedgerEntry]:
    row = conn.execute(
        f"SELECT {_ENTRY_COLUMNS} FROM ledger_entry WHERE reference = ?", (reference,)
    ).fetchone()
    return None if row is None else _row_to_entry(row)


def post_entry(
    conn: sqlite3.Connection,
    account_id: str,
    kind: EntryKind,
    amount: int,
    description: str,
    created_at: datetime,
    metadata: Optional[Dict[str, Any]] = None,
    operation: Optional[str] = None,
    input_size: Optional[int] = None,
    output_size: Optional[int] = None,
    reference: Optional[str] = None,
) -> LedgerEntry:
    """Apply a signed amount to a balance and append its ledger entry.

    Must run inside a write transaction opened by the caller; the balance
    update and the entry become visible together or not at all.
    """
    cursor = conn.execute(
        "UPDATE account SET balance = balance + ? WHERE id = ?", (amount, account_id)
    )
    if cursor.rowcount != 1:
        raise AccountNotFound(f"Account not found: {account_id}")

    entry = LedgerEntry(
        id=uuid.uuid4().hex,
        account_id=account_id,
        kind=kind,
        amount=amount,
        description=description,
        metadata=dict(metadata or {}),
        operation=operation,
        input_size=input_size,
        output_size=output_size,
        reference=reference,
        created_at=created_at,
    )
    conn.execute(
        f"INSERT INTO ledger_entry ({_ENTRY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            entry.id,
            entry.account_id,
            entry.kind.value,
            entry.amount,
            entry.description,
            json.dumps(entry.metadata, sort_keys=True, default=str) if entry.metadata else None,
            entry.operation,
            entry.input_size,
            entry.output_size,
            entry.reference,
            format_timestamp(entry.created_at),
        ),
    )
    return entry


class CreditLedger:
    """Balances and the append-only transaction log for accounts.

    Every mutating operation is a single transaction and returns a
    LedgerResult instead of raising, so callers always get a typed outcome.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Callable[[], datetime] = utcnow):
        """Initialize the ledger with a database path.

        Args:
            db_path: Path to SQLite database file
            clock: Source of entry timestamps, injectable for tests
        """
        self.db_path = db_path
        self.clock = clock
        self.locks = KeyedLock()

    @contextmanager
    def write_transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a connection holding the database write lock.

        Commits when the block exits normally and rolls back on any
        exception, which is re-raised.
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()
        finally:
            conn.close()

    def open_account(self, account_id: str, initial_balance: int = 0) -> Account:
        """Create an account if it does not exist yet and return it.

        Used by the identity subsystem when a user signs up. Opening an
        existing account leaves it untouched.
        """
        if not account_id:
            raise ValidationError("account_id is required")
        if isinstance(initial_balance, bool) or not isinstance(initial_balance, int) or initial_balance < 0:
            raise ValidationError("initial_balance must be a non-negative integer")
        with self.write_transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO account (id, balance, initial_balance, created_at) "
                "VALUES (?, ?, ?, ?)",
                (account_id, initial_balance, initial_balance, format_timestamp(self.clock())),
            )
        account = self.get_account(account_id)
        assert account is not None
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT id, balance, initial_balance, created_at FROM account WHERE id = ?",
                (account_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return Account(
            id=row["id"],
            balance=row["balance"],
            initial_balance=row["initial_balance"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def get_balance(self, account_id: str) -> int:
        """Current balance; a missing account has a balance of 0."""
        conn = get_connection(self.db_path)
        try:
            balance = _read_balance(conn, account_id)
        finally:
            conn.close()
        return balance or 0

    def has_enough_credits(self, account_id: str, amount: int) -> bool:
        """Read-only check that the balance covers amount."""
        return self.get_balance(account_id) >= amount

    def debit(
        self,
        account_id: str,
        amount: int,
        description: str,
        kind: EntryKind = EntryKind.USAGE,
        metadata: Optional[Dict[str, Any]] = None,
        operation: Optional[str] = None,
        input_size: Optional[int] = None,
        output_size: Optional[int] = None,
    ) -> LedgerResult:
        """Withdraw credits and record the usage.

        Re-reads the balance inside the transaction and refuses to go below
        zero; a refused debit changes nothing.

        Args:
            account_id: Account to charge
            amount: Positive number of credits
            description: Human-readable entry description
            kind: Entry kind, USAGE for metered operations
            metadata: Extra details stored with the entry
            operation: Operation kind, grouped on by usage_stats
            input_size: Billable input units
            output_size: Size of the produced output

        Returns:
            LedgerResult; on failure error is InsufficientCredits,
            ValidationError or LedgerConflictError
        """
        try:
            _validate_amount(amount)
        except ValidationError as e:
            return LedgerResult(success=False, new_balance=self.get_balance(account_id), error=e)

        with self.locks.hold(account_id):
            try:
                with self.write_transaction() as conn:
                    balance = _read_balance(conn, account_id) or 0
                    if balance < amount:
                        raise InsufficientCredits(
                            f"Insufficient credits: {amount} required, {balance} available",
                            required=amount,
                            balance=balance,
                        )
                    entry = post_entry(
                        conn,
                        account_id,
                        kind,
                        -amount,
                        description,
                        self.clock(),
                        metadata=metadata,
                        operation=operation,
                        input_size=input_size,
                        output_size=output_size,
                    )
            except InsufficientCredits as e:
                logger.warning("Debit of %d refused for %s: %s", amount, account_id, e)
                return LedgerResult(success=False, new_balance=e.balance, error=e)
            except sqlite3.OperationalError as e:
                logger.error("Debit of %d for %s hit a ledger conflict: %s", amount, account_id, e)
                return LedgerResult(
                    success=False,
                    new_balance=self.get_balance(account_id),
                    error=LedgerConflictError(f"Ledger busy, debit not applied: {e}"),
                )

        new_balance = balance - amount
        logger.info("Debited %d credits from %s (%s), balance %d", amount, account_id, kind.value, new_balance)
        return LedgerResult(success=True, new_balance=new_balance, entry=entry)

    def credit(
        self,
        account_id: str,
        amount: int,
        kind: EntryKind,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        reference: Optional[str] = None,
    ) -> LedgerResult:
        """Add credits to an account.

        When reference is given the credit is idempotent: a second call with
        the same reference returns the original entry and moves no money.

        Returns:
            LedgerResult; on failure error is AccountNotFound,
            ValidationError or LedgerConflictError
        """
        try:
            _validate_amount(amount)
        except ValidationError as e:
            return LedgerResult(success=False, new_balance=self.get_balance(account_id), error=e)

        with self.locks.hold(account_id):
            try:
                with self.write_transaction() as conn:
                    existing = find_entry_by_reference(conn, reference) if reference else None
                    if existing is None:
                        entry = post_entry(
                            conn, account_id, kind, amount, description, self.clock(),
                            metadata=metadata, reference=reference,
                        )
                    elif existing.account_id != account_id:
                        raise ValidationError(f"Reference {reference} belongs to another account")
                    else:
                        entry = existing
                    new_balance = _read_balance(conn, account_id) or 0
            except MeteringError as e:
                logger.warning("Credit of %d refused for %s: %s", amount, account_id, e)
                return LedgerResult(success=False, new_balance=self.get_balance(account_id), error=e)
            except sqlite3.OperationalError as e:
                logger.error("Credit of %d for %s hit a ledger conflict: %s", amount, account_id, e)
                return LedgerResult(
                    success=False,
                    new_balance=self.get_balance(account_id),
                    error=LedgerConflictError(f"Ledger busy, credit not applied: {e}"),
                )

        if existing is not None:
            logger.info("Credit with reference %s already applied to %s", reference, account_id)
        else:
            logger.info("Credited %d credits to %s (%s), balance %d", amount, account_id, kind.value, new_balance)
        return LedgerResult(success=True, new_balance=new_balance, entry=entry)

    def history(self, account_id: str, limit: int = 20, offset: int = 0) -> HistoryPage:
        """Ledger entries for an account, newest first.

        Args:
            account_id: Account to list
            limit: Page size
            offset: Number of newest entries to skip

        Returns:
            HistoryPage whose total counts every entry of the account

        Raises:
            ValidationError: If limit or offset is negative
        """
        if limit < 0 or offset < 0:
            raise ValidationError("limit and offset must be >= 0")
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM ledger_entry WHERE account_id = ? "
                "ORDER BY created_at DESC, seq DESC LIMIT ? OFFSET ?",
                (account_id, limit, offset),
            ).fetchall()
            total = conn.execute(
                "SELECT COUNT(*) FROM ledger_entry WHERE account_id = ?", (account_id,)
            ).fetchone()[0]
        finally:
            conn.close()
        return HistoryPage(entries=[_row_to_entry(row) for row in rows], total=total)

    def usage_stats(self, account_id: str, days: int = 30) -> UsageStats:
        """Aggregate credits spent during the last `days` days.

        Daily totals are sparse: days without usage are omitted.
        """
        if days < 0:
            raise ValidationError("days must be >= 0")
        now = self.clock()
        since = now - timedelta(days=days)
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT operation, credits, created_at FROM usage_log "
                "WHERE account_id = ? AND created_at >= ? AND created_at <= ?",
                (account_id, format_timestamp(since), format_timestamp(now)),
            ).fetchall()
        finally:
            conn.close()

        total = 0
        by_kind: Dict[str, int] = {}
        per_day: Dict[str, int] = {}
        for row in rows:
            credits = row["credits"]
            operation = row["operation"] or "unknown"
            total += credits
            by_kind[operation] = by_kind.get(operation, 0) + credits
            day = row["created_at"][:10]
            per_day[day] = per_day.get(day, 0) + credits

        daily = [DailyUsage(date=day, credits=per_day[day]) for day in sorted(per_day)]
        return UsageStats(total_credits_used=total, by_kind=by_kind, daily=daily)

    def reconcile(self, account_id: str) -> Reconciliation:
        """Compare the stored balance with initial balance plus all entries.

        Raises:
            AccountNotFound: If the account does not exist
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT a.balance, a.initial_balance, "
                "COALESCE((SELECT SUM(amount) FROM ledger_entry e WHERE e.account_id = a.id), 0) "
                "AS movement FROM account a WHERE a.id = ?",
                (account_id,),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise AccountNotFound(f"Account not found: {account_id}")
        return Reconciliation(
            account_id=account_id,
            balance=row["balance"],
            expected_balance=row["initial_balance"] + row["movement"],
        )
