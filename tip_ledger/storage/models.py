"""
Data models for storage layer.

Defines ledger entities, per-transaction-type snapshot rules and the
records owned by the escrow and verification stores.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class TransactionType(Enum):
    """Balance-affecting event kinds recorded in the ledger."""
    TIP = "TIP"
    REFUND = "REFUND"
    TOP_UP = "TOP_UP"
    PAY_OUT = "PAY_OUT"
    BONUS_CREDIT = "BONUS_CREDIT"


class BalanceField(Enum):
    """Account column tracked by an entry's user_balance snapshots."""
    SPENDABLE = "spendable_balance"
    ESCROW = "escrow_balance"
    BONUS = "bonus_balance"


@dataclass(frozen=True)
class TransactionRule:
    """Which snapshot fields a transaction type moves, and in which direction.

    aggregate_sign of 0 means user, content and global aggregates are
    carried through unchanged. Negative aggregate movement floors at zero.
    """
    balance_field: BalanceField
    balance_sign: int
    aggregate_sign: int
    requires_content: bool
    reference_type: str


TRANSACTION_RULES: Dict[TransactionType, TransactionRule] = {
    TransactionType.TIP: TransactionRule(BalanceField.SPENDABLE, -1, 1, True, "tip"),
    TransactionType.REFUND: TransactionRule(BalanceField.SPENDABLE, 1, -1, True, "tip"),
    TransactionType.TOP_UP: TransactionRule(BalanceField.SPENDABLE, 1, 0, False, "settlement"),
    TransactionType.PAY_OUT: TransactionRule(BalanceField.ESCROW, -1, 0, False, "payout_request"),
    TransactionType.BONUS_CREDIT: TransactionRule(BalanceField.BONUS, 1, 0, False, "bonus"),
}


def signed_amount(transaction_type: TransactionType, amount: int) -> int:
    """Amount as applied to the entry's tracked balance."""
    return TRANSACTION_RULES[transaction_type].balance_sign * amount


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of one balance-changing event.

    Append-only: rows are written once by the ledger service and never
    updated or deleted. Corrections are new entries.
    """
    entry_id: str
    sequence: int
    transaction_type: TransactionType
    actor_id: str
    amount: int
    user_balance_pre: int
    user_balance_post: int
    user_aggregate_pre: int
    user_aggregate_post: int
    global_aggregate_pre: int
    global_aggregate_post: int
    created_at: datetime
    content_id: Optional[str] = None
    session_id: Optional[str] = None
    content_aggregate_pre: Optional[int] = None
    content_aggregate_post: Optional[int] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    username: Optional[str] = None
    content_title: Optional[str] = None
    session_name: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def rule(self) -> TransactionRule:
        return TRANSACTION_RULES[self.transaction_type]


class VerificationStatus(Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class VerificationRecord:
    """Hash of a ledger entry kept in the verification store.

    original_hash is written once at creation; only the observed hash,
    status and counters move afterwards.
    """
    record_id: str
    entry_id: str
    entry_sequence: int
    transaction_type: TransactionType
    original_hash: str
    status: VerificationStatus
    created_at: datetime
    last_observed_hash: Optional[str] = None
    verification_count: int = 0
    mismatch_count: int = 0
    last_verified_at: Optional[datetime] = None


@dataclass(frozen=True)
class PendingAllocation:
    """Revenue share held for a payee with no registered account."""
    allocation_id: str
    tip_id: str
    content_id: str
    payee_name: str
    match_key: str
    percentage: float
    amount: int
    allocated_at: datetime
    channel_id: Optional[str] = None
    claimed: bool = False
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None


class EscrowStatus(Enum):
    PENDING = "pending"
    PARTIALLY_CLAIMED = "partially_claimed"
    CLAIMED = "claimed"


class EscrowSource(Enum):
    ALLOCATION = "allocation"
    MATCHED = "matched"


@dataclass(frozen=True)
class EscrowHistoryItem:
    """One escrow credit owed to a registered user."""
    history_id: int
    user_id: str
    tip_id: str
    content_id: str
    amount: int
    claimed_amount: int
    status: EscrowStatus
    source: EscrowSource
    allocated_at: datetime
    claimed_at: Optional[datetime] = None
    payout_reference: Optional[str] = None

    @property
    def outstanding(self) -> int:
        return self.amount - self.claimed_amount


@dataclass(frozen=True)
class Account:
    """Local mirror of a user's balance fields."""
    user_id: str
    username: str
    spendable_balance: int = 0
    tip_aggregate: int = 0
    escrow_balance: int = 0
    bonus_balance: int = 0


@dataclass(frozen=True)
class OwnershipShare:
    """A rights-holder's percentage of a content item."""
    payee_name: str
    percentage: float
    user_id: Optional[str] = None
    channel_id: Optional[str] = None


@dataclass(frozen=True)
class ContentItem:
    content_id: str
    title: str
    tip_aggregate: int = 0
    owners: List[OwnershipShare] = field(default_factory=list)


class TipStatus(Enum):
    ACTIVE = "active"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class Tip:
    """Tip record; the active set is the source of the global aggregate."""
    tip_id: str
    actor_id: str
    content_id: str
    amount: int
    status: TipStatus
    created_at: datetime
    session_id: Optional[str] = None
