"""
Data models for storage layer.

Defines ledger entities and the result types of ledger operations.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ai_credit_meter.core.errors import MeteringError


class EntryKind(Enum):
    """Reason for a balance change."""
    USAGE = "USAGE"
    PURCHASE = "PURCHASE"
    BONUS = "BONUS"
    REFUND = "REFUND"


@dataclass(frozen=True)
class Account:
    id: str
    balance: int
    initial_balance: int
    created_at: datetime


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of a balance change.

    Append-only: once written an entry is never updated or deleted. The
    signed amounts of an account's entries always sum to the difference
    between its balance and its initial balance.
    """
    id: str
    account_id: str
    kind: EntryKind
    amount: int
    description: str
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    operation: Optional[str] = None
    input_size: Optional[int] = None
    output_size: Optional[int] = None
    reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "amount": self.amount,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a debit or credit."""
    success: bool
    new_balance: int
    error: Optional[MeteringError] = None
    entry: Optional[LedgerEntry] = None


@dataclass(frozen=True)
class HistoryPage:
    entries: List[LedgerEntry]
    total: int


@dataclass(frozen=True)
class DailyUsage:
    date: str  # YYYY-MM-DD, UTC
    credits: int


@dataclass(frozen=True)
class UsageStats:
    """Credits spent over a reporting window."""
    total_credits_used: int
    by_kind: Dict[str, int]
    daily: List[DailyUsage]


@dataclass(frozen=True)
class Reconciliation:
    account_id: str
    balance: int
    expected_balance: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.expected_balance
