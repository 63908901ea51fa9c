"""
Revenue allocation and artist escrow.

Splits each tip into a creator pool and a platform take, divides the
creator pool between rights-holders by ownership percentage, and tracks
what each payee is owed until it is paid out.

Routing:
1. Payee resolves to a registered account - escrow balance credit plus a
   pending escrow history item
2. Payee unknown - PendingAllocation row, claimable once the payee's
   identity is verified
3. No ownership data - the whole tip is platform revenue
"""

import difflib
import re
import sqlite3
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import structlog

from .amounts import HUNDRED, percentage_of, round_half_up, validate_minor_units, validate_percentage
from .errors import UnknownAccountError, UnresolvedPayeeError
from ..config.loader import LedgerConfig
from ..storage.models import (
    BalanceField,
    EscrowHistoryItem,
    EscrowSource,
    EscrowStatus,
    OwnershipShare,
    PendingAllocation,
    Tip,
)
from ..storage.repository import LedgerRepository, utcnow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PayeeAllocation:
    """Integer share of the creator pool owed to one payee."""
    payee_name: str
    percentage: Decimal
    amount: int
    user_id: Optional[str] = None
    channel_id: Optional[str] = None


@dataclass(frozen=True)
class AllocationResult:
    """Outcome of splitting one tip.

    Invariant: payee_total + platform_take == tip_amount exactly.
    """
    tip_amount: int
    creator_pool: int
    platform_take: int
    payees: List[PayeeAllocation] = field(default_factory=list)
    normalized: bool = False

    @property
    def payee_total(self) -> int:
        return sum(p.amount for p in self.payees)

    def summary(self) -> Dict[str, Any]:
        return {
            "creator_pool": self.creator_pool,
            "platform_take": self.platform_take,
            "normalized": self.normalized,
            "payees": [
                {"payee": p.payee_name, "percentage": str(p.percentage), "amount": p.amount}
                for p in self.payees
            ],
        }


def allocate(
    tip_amount: int,
    shares: Sequence[OwnershipShare],
    creator_share_percent: Decimal = Decimal("70"),
    tolerance: Decimal = Decimal("0.01"),
) -> AllocationResult:
    """Split a tip between rights-holders and the platform.

    Percentages that don't sum to 100 (within ``tolerance``) are
    normalized rather than rejected. Every unit not paid to a payee,
    rounding residue included, is the platform's.

    Args:
        tip_amount: Tip in minor units
        shares: Ownership shares of the tipped content
        creator_share_percent: Part of the tip reserved for creators (0-100)
        tolerance: Allowed deviation of the percentage sum from 100

    Returns:
        AllocationResult with per-payee integer shares

    Raises:
        InvalidAmountError: If tip_amount is not a positive integer
        UnresolvedPayeeError: If no usable percentage remains
    """
    tip_amount = validate_minor_units(tip_amount, "tip amount")

    if not shares:
        return AllocationResult(tip_amount=tip_amount, creator_pool=0, platform_take=tip_amount)

    usable = []
    for share in shares:
        try:
            usable.append((share, validate_percentage(share.percentage)))
        except ValueError:
            logger.warning("ownership_share_skipped", payee=share.payee_name, percentage=str(share.percentage))

    total = sum((pct for _, pct in usable), Decimal("0"))
    if total <= 0:
        raise UnresolvedPayeeError(
            f"Ownership percentages sum to {total}; cannot allocate tip of {tip_amount}"
        )

    normalized = abs(total - HUNDRED) > tolerance
    if normalized:
        logger.warning("ownership_percentages_normalized", total=str(total), payees=len(usable))
        usable = [(share, pct * HUNDRED / total) for share, pct in usable]

    creator_pool = percentage_of(tip_amount, creator_share_percent)

    exact = [Decimal(creator_pool) * pct / HUNDRED for _, pct in usable]
    rounded = [round_half_up(value) for value in exact]

    # Half-up rounding can overshoot the pool by up to half a unit per
    # payee; take the excess back from the largest round-ups first.
    excess = sum(rounded) - creator_pool
    if excess > 0:
        order = sorted(range(len(rounded)), key=lambda i: (-(rounded[i] - exact[i]), i))
        while excess > 0:
            for i in order:
                if excess == 0:
                    break
                if rounded[i] > 0:
                    rounded[i] -= 1
                    excess -= 1

    payees = [
        PayeeAllocation(
            payee_name=share.payee_name,
            percentage=pct,
            amount=amount,
            user_id=share.user_id,
            channel_id=share.channel_id,
        )
        for (share, pct), amount in zip(usable, rounded)
        if amount > 0
    ]
    payee_total = sum(p.amount for p in payees)

    return AllocationResult(
        tip_amount=tip_amount,
        creator_pool=creator_pool,
        platform_take=tip_amount - payee_total,
        payees=payees,
        normalized=normalized,
    )


_NON_WORD = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")


def normalize_identity(name: str) -> str:
    """Matching key for a payee name: case, accents-compatibility, punctuation and spacing folded."""
    folded = unicodedata.normalize("NFKC", name).casefold()
    folded = _NON_WORD.sub(" ", folded)
    return _SPACES.sub(" ", folded).strip()


def name_similarity(a: str, b: str) -> float:
    if a == b:
        return 1.0
    return difflib.SequenceMatcher(None, a, b).ratio()


@dataclass(frozen=True)
class IdentityKey:
    """Verified identity of a payee: display name plus optional external channel id."""
    name: str
    channel_id: Optional[str] = None


@dataclass(frozen=True)
class MatchResult:
    user_id: str
    matched_count: int
    total_amount: int
    allocations: List[PendingAllocation] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.matched_count > 0


@dataclass(frozen=True)
class EscrowInfo:
    user_id: str
    balance: int
    history: List[EscrowHistoryItem]
    claimed_total: int
    outstanding_total: int


@dataclass(frozen=True)
class EscrowStats:
    unclaimed_total: int
    claimed_total: int
    users_with_escrow: int


class EscrowService:
    """Routes allocations to escrow and settles escrow against payouts."""

    def __init__(self, repository: LedgerRepository, config: LedgerConfig):
        self.repository = repository
        self.config = config

    def split(self, tip_amount: int, shares: Sequence[OwnershipShare]) -> AllocationResult:
        split = self.config.revenue_split
        return allocate(tip_amount, shares, split.creator_share_percent, split.percentage_tolerance)

    def route_allocation(
        self,
        conn: sqlite3.Connection,
        tip: Tip,
        result: AllocationResult,
        allocated_at: datetime,
    ) -> List[Dict[str, Any]]:
        """Credit registered payees and park the rest as pending allocations.

        Runs inside the tip's write transaction, so the escrow credits
        commit or roll back together with the ledger entry.

        Returns:
            Routing summary, one dict per payee, for the entry metadata
        """
        routed = []
        for payee in result.payees:
            account = self.repository.get_account_in(conn, payee.user_id) if payee.user_id else None
            if account is not None:
                self.repository.apply_conditional_delta(conn, account.user_id, BalanceField.ESCROW, payee.amount)
                history_id = self.repository.add_escrow_history(
                    conn, account.user_id, tip.tip_id, tip.content_id, payee.amount,
                    EscrowSource.ALLOCATION, allocated_at,
                )
                routed.append({
                    "payee": payee.payee_name, "amount": payee.amount,
                    "route": "escrow", "user_id": account.user_id, "history_id": history_id,
                })
            else:
                allocation_id = self.repository.insert_pending_allocation(
                    conn,
                    tip_id=tip.tip_id,
                    content_id=tip.content_id,
                    payee_name=payee.payee_name,
                    match_key=normalize_identity(payee.payee_name),
                    channel_id=payee.channel_id,
                    percentage=str(payee.percentage),
                    amount=payee.amount,
                    allocated_at=allocated_at,
                )
                routed.append({
                    "payee": payee.payee_name, "amount": payee.amount,
                    "route": "pending", "allocation_id": allocation_id,
                })
        return routed

    def match_pending_allocations(self, user_id: str, identity_key: IdentityKey) -> MatchResult:
        """Claim unregistered-payee allocations for a newly verified user.

        An allocation matches on an identical external channel id, or when
        its normalized payee name is at least as similar to the identity
        name as the configured threshold. Matched allocations are claimed
        and their total credited to the user's escrow in one transaction.

        Raises:
            ValueError: If the identity name is empty
            UnknownAccountError: If the user has no account
        """
        if not identity_key.name or not identity_key.name.strip():
            raise ValueError("identity name is required for matching")

        key = normalize_identity(identity_key.name)
        threshold = self.config.matching.name_similarity_threshold
        now = utcnow()

        with self.repository.transaction() as conn:
            if self.repository.get_account_in(conn, user_id) is None:
                raise UnknownAccountError(f"User {user_id} not found")

            claimed: List[PendingAllocation] = []
            for allocation in self.repository.unclaimed_allocations_in(conn):
                by_channel = bool(identity_key.channel_id) and allocation.channel_id == identity_key.channel_id
                if not by_channel and name_similarity(key, allocation.match_key) < threshold:
                    continue
                if not self.repository.claim_allocation(conn, allocation.allocation_id, user_id, now):
                    continue
                # Keep the original allocation time so payouts stay oldest-first
                self.repository.add_escrow_history(
                    conn, user_id, allocation.tip_id, allocation.content_id, allocation.amount,
                    EscrowSource.MATCHED, allocation.allocated_at,
                )
                claimed.append(allocation)

            total = sum(a.amount for a in claimed)
            if total:
                self.repository.apply_conditional_delta(conn, user_id, BalanceField.ESCROW, total)

        if claimed:
            logger.info("pending_allocations_matched", user_id=user_id, count=len(claimed), total=total)
        else:
            logger.info("pending_allocations_unmatched", user_id=user_id, identity=key)

        return MatchResult(user_id=user_id, matched_count=len(claimed), total_amount=total, allocations=claimed)

    def consume_fifo(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        amount: int,
        payout_reference: Optional[str],
        claimed_at: datetime,
    ) -> List[Dict[str, int]]:
        """Mark escrow history paid, oldest allocation first, up to ``amount``.

        Only the history a payout actually covers is claimed: the boundary
        item is partially claimed and everything after it stays pending.

        Returns:
            One {"history_id", "claimed"} dict per touched item
        """
        remaining = amount
        touched = []
        for item in self.repository.outstanding_escrow_in(conn, user_id):
            if remaining == 0:
                break
            take = min(item.outstanding, remaining)
            claimed_amount = item.claimed_amount + take
            status = EscrowStatus.CLAIMED if claimed_amount == item.amount else EscrowStatus.PARTIALLY_CLAIMED
            self.repository.record_escrow_claim(
                conn, item.history_id, claimed_amount, status, claimed_at, payout_reference
            )
            touched.append({"history_id": item.history_id, "claimed": take})
            remaining -= take

        if remaining:
            # Balance covered the payout but history did not: legacy escrow
            logger.warning(
                "escrow_history_shortfall", user_id=user_id, payout=amount, uncovered=remaining
            )
        return touched

    def get_escrow_info(self, user_id: str) -> EscrowInfo:
        account = self.repository.get_account(user_id)
        if account is None:
            raise UnknownAccountError(f"User {user_id} not found")
        history = self.repository.get_escrow_history(user_id)
        return EscrowInfo(
            user_id=user_id,
            balance=account.escrow_balance,
            history=history,
            claimed_total=sum(item.claimed_amount for item in history),
            outstanding_total=sum(item.outstanding for item in history),
        )

    def get_escrow_stats(self) -> EscrowStats:
        totals = self.repository.pending_allocation_totals()
        return EscrowStats(
            unclaimed_total=totals["unclaimed"],
            claimed_total=totals["claimed"],
            users_with_escrow=self.repository.count_users_with_escrow(),
        )
