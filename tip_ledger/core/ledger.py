"""
Ledger service.

Appends one immutable entry per balance-changing event, with pre/post
snapshots of the actor's tracked balance, the actor's and content's tip
aggregates and the platform-wide aggregate.

Every record operation runs in a single write transaction: snapshots are
read under the write lock, balances move through conditional UPDATEs,
and any failure rolls back before an entry exists. The verification hash
is stored after commit.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog

from .allocation import AllocationResult, EscrowService
from .amounts import validate_minor_units
from .errors import (
    DuplicateSettlementError,
    InsufficientEscrowError,
    InsufficientFundsError,
    InvalidAmountError,
    LedgerInvariantError,
    TipNotActiveError,
    UnknownAccountError,
    UnknownContentError,
    VerificationStorageError,
)
from ..storage.models import (
    BalanceField,
    LedgerEntry,
    TRANSACTION_RULES,
    TipStatus,
    TransactionType,
    signed_amount,
)
from ..storage.repository import LedgerRepository, utcnow

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 500


def check_snapshot_invariants(entry: LedgerEntry) -> None:
    """Check an entry's snapshots against the sign rule of its type.

    Args:
        entry: Entry to check, either about to be written or read back

    Raises:
        LedgerInvariantError: On the first rule the entry breaks
    """
    rule = TRANSACTION_RULES[entry.transaction_type]
    kind = entry.transaction_type.value

    if entry.amount <= 0:
        raise LedgerInvariantError(f"{kind}: amount must be positive, got {entry.amount}")
    if entry.user_balance_pre < 0 or entry.user_balance_post < 0:
        raise LedgerInvariantError(f"{kind}: balance snapshot is negative")

    expected_balance = entry.user_balance_pre + signed_amount(entry.transaction_type, entry.amount)
    if entry.user_balance_post != expected_balance:
        raise LedgerInvariantError(
            f"{kind}: user_balance_post {entry.user_balance_post} != {expected_balance}"
        )

    has_content = entry.content_aggregate_pre is not None or entry.content_aggregate_post is not None
    if rule.requires_content:
        if entry.content_id is None or entry.content_aggregate_pre is None or entry.content_aggregate_post is None:
            raise LedgerInvariantError(f"{kind}: content snapshot is required")
    elif has_content or entry.content_id is not None:
        raise LedgerInvariantError(f"{kind}: content fields must be empty")

    pairs = [
        ("user_aggregate", entry.user_aggregate_pre, entry.user_aggregate_post),
        ("global_aggregate", entry.global_aggregate_pre, entry.global_aggregate_post),
    ]
    if rule.requires_content:
        pairs.append(("content_aggregate", entry.content_aggregate_pre, entry.content_aggregate_post))

    for name, pre, post in pairs:
        if rule.aggregate_sign == 0:
            expected = pre
        elif rule.aggregate_sign > 0:
            expected = pre + entry.amount
        else:
            expected = max(0, pre - entry.amount)
        if post != expected:
            raise LedgerInvariantError(f"{kind}: {name}_post {post} != {expected}")


@dataclass(frozen=True)
class Balance:
    """Outward view of a user's balances, in minor units."""
    user_id: str
    username: str
    spendable: int
    tip_aggregate: int
    escrow: int
    bonus: int


@dataclass(frozen=True)
class LedgerPage:
    entries: List[LedgerEntry]
    page: int
    page_size: int
    total: int

    @property
    def has_next(self) -> bool:
        return self.page * self.page_size < self.total


@dataclass(frozen=True)
class LedgerStats:
    """Whole-ledger counts.

    ``by_type`` maps each transaction type value to its entry count and
    summed amount. ``sequence_first`` and ``sequence_last`` are 0 on an
    empty ledger.
    """
    total_entries: int
    total_volume: int
    by_type: Dict[str, Dict[str, int]]
    sequence_first: int
    sequence_last: int
    last_24_hours: int

    @property
    def sequence_span(self) -> int:
        if not self.total_entries:
            return 0
        return self.sequence_last - self.sequence_first + 1


@dataclass(frozen=True)
class TipReceipt:
    """TIP entry together with the split it produced."""
    entry: LedgerEntry
    allocation: AllocationResult
    routes: List[Dict[str, Any]] = field(default_factory=list)


class LedgerService:
    """Writes and reads the append-only ledger."""

    def __init__(self, repository: LedgerRepository, escrow: EscrowService, verification=None):
        self.repository = repository
        self.escrow = escrow
        self.verification = verification

    # ------------------------------------------------------------------
    # Record operations
    # ------------------------------------------------------------------

    def record_tip(
        self,
        actor_id: str,
        content_id: str,
        session_id: Optional[str],
        amount: int,
        actor_balance_pre: Optional[int] = None,
        actor_aggregate_pre: Optional[int] = None,
        content_aggregate_pre: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TipReceipt:
        """Debit the actor, raise the aggregates and split the tip.

        Args:
            actor_id: Tipping user
            content_id: Tipped content item
            session_id: Session the tip was placed in, if any
            amount: Tip in minor units
            actor_balance_pre: Caller's view of the spendable balance
            actor_aggregate_pre: Caller's view of the actor's tip aggregate
            content_aggregate_pre: Caller's view of the content's tip aggregate
            metadata: Provenance stored on the entry

        Returns:
            TipReceipt with the stored entry and its allocation

        Raises:
            InvalidAmountError: If the amount or a supplied pre value is malformed
            InsufficientFundsError: If the spendable balance doesn't cover the tip
            UnknownAccountError: If the actor has no account
            UnknownContentError: If the content item isn't registered
            UnresolvedPayeeError: If the ownership shares can't be normalized
        """
        amount = validate_minor_units(amount, "tip amount")
        self._validate_supplied_pre(actor_balance_pre, "actor_balance_pre", amount, InsufficientFundsError)
        self._validate_supplied_pre(actor_aggregate_pre, "actor_aggregate_pre")
        self._validate_supplied_pre(content_aggregate_pre, "content_aggregate_pre")
        now = utcnow()

        with self.repository.transaction() as conn:
            account = self._account_in(conn, actor_id)
            content = self.repository.get_content_in(conn, content_id)
            if content is None:
                raise UnknownContentError(f"Content {content_id} not found")

            self._compare_pre(actor_id, "actor_balance_pre", actor_balance_pre, account.spendable_balance)
            self._compare_pre(actor_id, "actor_aggregate_pre", actor_aggregate_pre, account.tip_aggregate)
            self._compare_pre(actor_id, "content_aggregate_pre", content_aggregate_pre, content.tip_aggregate)

            # Split before any write so a bad ownership table leaves no trace
            allocation = self.escrow.split(amount, content.owners)
            global_pre = self.repository.active_tip_total(conn)

            if not self.repository.apply_conditional_delta(conn, actor_id, BalanceField.SPENDABLE, -amount):
                raise InsufficientFundsError(
                    f"Insufficient balance for tip: have {account.spendable_balance}, need {amount}",
                    available=account.spendable_balance,
                    requested=amount,
                )
            self.repository.apply_user_aggregate_delta(conn, actor_id, amount)
            self.repository.apply_content_aggregate_delta(conn, content_id, amount)

            tip = self.repository.insert_tip(conn, actor_id, content_id, session_id, amount, now)
            routes = self.escrow.route_allocation(conn, tip, allocation, now)

            entry_metadata = dict(metadata or {})
            entry_metadata["allocation"] = dict(allocation.summary(), routes=routes)

            entry = self._append(
                conn,
                transaction_type=TransactionType.TIP,
                actor_id=actor_id,
                amount=amount,
                user_balance_pre=account.spendable_balance,
                user_balance_post=account.spendable_balance - amount,
                user_aggregate_pre=account.tip_aggregate,
                user_aggregate_post=account.tip_aggregate + amount,
                content_id=content_id,
                content_aggregate_pre=content.tip_aggregate,
                content_aggregate_post=content.tip_aggregate + amount,
                global_aggregate_pre=global_pre,
                global_aggregate_post=global_pre + amount,
                session_id=session_id,
                reference_id=tip.tip_id,
                username=account.username,
                content_title=content.title,
                session_name=self.repository.get_session_name_in(conn, session_id),
                description=f"Tip on {content.title}",
                metadata=entry_metadata,
                created_at=now,
            )

        logger.info(
            "tip_recorded",
            entry_id=entry.entry_id,
            actor_id=actor_id,
            content_id=content_id,
            amount=amount,
            platform_take=allocation.platform_take,
        )
        self._store_verification(entry)
        return TipReceipt(entry=entry, allocation=allocation, routes=routes)

    def record_refund(
        self,
        actor_id: str,
        tip_id: str,
        amount: Optional[int] = None,
        actor_balance_pre: Optional[int] = None,
        actor_aggregate_pre: Optional[int] = None,
        content_aggregate_pre: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """Return a whole active tip to its actor.

        Aggregates fall by the tip amount but never below zero. A floor
        that bites means the cached aggregate had already drifted; the
        shortfall is logged and kept in ``metadata["clamped"]``.

        Raises:
            TipNotActiveError: If the tip is unknown, foreign or already refunded
            InvalidAmountError: If ``amount`` is given and differs from the tip
        """
        if amount is not None:
            amount = validate_minor_units(amount, "refund amount")
        self._validate_supplied_pre(actor_balance_pre, "actor_balance_pre")
        self._validate_supplied_pre(actor_aggregate_pre, "actor_aggregate_pre")
        self._validate_supplied_pre(content_aggregate_pre, "content_aggregate_pre")
        now = utcnow()

        with self.repository.transaction() as conn:
            account = self._account_in(conn, actor_id)
            tip = self.repository.get_tip_in(conn, tip_id)
            if tip is None or tip.actor_id != actor_id or tip.status != TipStatus.ACTIVE:
                raise TipNotActiveError(f"Tip {tip_id} is not an active tip of {actor_id}")
            if amount is not None and amount != tip.amount:
                raise InvalidAmountError(
                    f"Invalid refund amount: {amount} (tip {tip_id} is {tip.amount}; partial refunds unsupported)"
                )
            amount = tip.amount

            content = self.repository.get_content_in(conn, tip.content_id)
            if content is None:
                raise UnknownContentError(f"Content {tip.content_id} not found")

            self._compare_pre(actor_id, "actor_balance_pre", actor_balance_pre, account.spendable_balance)
            self._compare_pre(actor_id, "actor_aggregate_pre", actor_aggregate_pre, account.tip_aggregate)
            self._compare_pre(actor_id, "content_aggregate_pre", content_aggregate_pre, content.tip_aggregate)

            global_pre = self.repository.active_tip_total(conn)
            if not self.repository.mark_tip_refunded(conn, tip_id):
                raise TipNotActiveError(f"Tip {tip_id} is not an active tip of {actor_id}")
            self.repository.apply_conditional_delta(conn, actor_id, BalanceField.SPENDABLE, amount)
            self.repository.apply_user_aggregate_delta(conn, actor_id, -amount)
            self.repository.apply_content_aggregate_delta(conn, tip.content_id, -amount)

            clamped = {}
            for name, pre in (
                ("user_aggregate", account.tip_aggregate),
                ("content_aggregate", content.tip_aggregate),
                ("global_aggregate", global_pre),
            ):
                if pre < amount:
                    clamped[name] = amount - pre

            entry_metadata = dict(metadata or {})
            if clamped:
                entry_metadata["clamped"] = clamped
                logger.warning("refund_aggregate_clamped", tip_id=tip_id, actor_id=actor_id, clamped=clamped)

            entry = self._append(
                conn,
                transaction_type=TransactionType.REFUND,
                actor_id=actor_id,
                amount=amount,
                user_balance_pre=account.spendable_balance,
                user_balance_post=account.spendable_balance + amount,
                user_aggregate_pre=account.tip_aggregate,
                user_aggregate_post=max(0, account.tip_aggregate - amount),
                content_id=tip.content_id,
                content_aggregate_pre=content.tip_aggregate,
                content_aggregate_post=max(0, content.tip_aggregate - amount),
                global_aggregate_pre=global_pre,
                global_aggregate_post=max(0, global_pre - amount),
                session_id=tip.session_id,
                reference_id=tip_id,
                username=account.username,
                content_title=content.title,
                session_name=self.repository.get_session_name_in(conn, tip.session_id),
                description=f"Refund of tip on {content.title}",
                metadata=entry_metadata,
                created_at=now,
            )

        logger.info("refund_recorded", entry_id=entry.entry_id, tip_id=tip_id, amount=amount)
        self._store_verification(entry)
        return entry

    def record_top_up(
        self,
        actor_id: str,
        amount: int,
        provider_reference: str,
        actor_balance_pre: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """Credit settled external funds to the spendable balance.

        Raises:
            DuplicateSettlementError: If ``provider_reference`` was already settled
        """
        amount = validate_minor_units(amount, "top-up amount")
        if not provider_reference:
            raise ValueError("provider_reference is required for a top-up")
        self._validate_supplied_pre(actor_balance_pre, "actor_balance_pre")
        now = utcnow()

        with self.repository.transaction() as conn:
            existing = self.repository.find_top_up_in(conn, provider_reference)
            if existing is not None:
                raise DuplicateSettlementError(
                    f"Settlement {provider_reference} already recorded as {existing.entry_id}",
                    provider_reference=provider_reference,
                    existing_entry_id=existing.entry_id,
                )

            account = self._account_in(conn, actor_id)
            self._compare_pre(actor_id, "actor_balance_pre", actor_balance_pre, account.spendable_balance)
            global_pre = self.repository.active_tip_total(conn)

            self.repository.apply_conditional_delta(conn, actor_id, BalanceField.SPENDABLE, amount)

            entry = self._append(
                conn,
                transaction_type=TransactionType.TOP_UP,
                actor_id=actor_id,
                amount=amount,
                user_balance_pre=account.spendable_balance,
                user_balance_post=account.spendable_balance + amount,
                user_aggregate_pre=account.tip_aggregate,
                user_aggregate_post=account.tip_aggregate,
                global_aggregate_pre=global_pre,
                global_aggregate_post=global_pre,
                reference_id=provider_reference,
                username=account.username,
                description="Wallet top-up",
                metadata=dict(metadata or {}),
                created_at=now,
            )

        logger.info("top_up_recorded", entry_id=entry.entry_id, actor_id=actor_id, amount=amount)
        self._store_verification(entry)
        return entry

    def record_payout(
        self,
        actor_id: str,
        amount: int,
        escrow_balance_pre: Optional[int] = None,
        payout_request_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """Pay out escrow and mark the covered escrow history claimed, oldest first.

        The escrow check and debit are one conditional UPDATE, so two
        concurrent payouts can never both spend the same escrow.

        Raises:
            InsufficientEscrowError: If the escrow balance doesn't cover the payout
        """
        amount = validate_minor_units(amount, "payout amount")
        self._validate_supplied_pre(escrow_balance_pre, "escrow_balance_pre", amount, InsufficientEscrowError)
        payout_request_id = payout_request_id or uuid4().hex
        now = utcnow()

        with self.repository.transaction() as conn:
            account = self._account_in(conn, actor_id)
            self._compare_pre(actor_id, "escrow_balance_pre", escrow_balance_pre, account.escrow_balance)
            global_pre = self.repository.active_tip_total(conn)

            if not self.repository.apply_conditional_delta(conn, actor_id, BalanceField.ESCROW, -amount):
                raise InsufficientEscrowError(
                    f"Insufficient escrow for payout: have {account.escrow_balance}, need {amount}",
                    available=account.escrow_balance,
                    requested=amount,
                )
            claims = self.escrow.consume_fifo(conn, actor_id, amount, payout_request_id, now)

            entry_metadata = dict(metadata or {})
            entry_metadata["escrow_claims"] = claims

            entry = self._append(
                conn,
                transaction_type=TransactionType.PAY_OUT,
                actor_id=actor_id,
                amount=amount,
                user_balance_pre=account.escrow_balance,
                user_balance_post=account.escrow_balance - amount,
                user_aggregate_pre=account.tip_aggregate,
                user_aggregate_post=account.tip_aggregate,
                global_aggregate_pre=global_pre,
                global_aggregate_post=global_pre,
                reference_id=payout_request_id,
                username=account.username,
                description="Escrow payout",
                metadata=entry_metadata,
                created_at=now,
            )

        logger.info("payout_recorded", entry_id=entry.entry_id, actor_id=actor_id, amount=amount)
        self._store_verification(entry)
        return entry

    def record_bonus_credit(
        self,
        actor_id: str,
        amount: int,
        reason: str,
        admin_actor: Optional[str] = None,
    ) -> LedgerEntry:
        """Credit the non-withdrawable bonus balance."""
        amount = validate_minor_units(amount, "bonus amount")
        if not reason or not reason.strip():
            raise ValueError("reason is required for a bonus credit")
        now = utcnow()

        with self.repository.transaction() as conn:
            account = self._account_in(conn, actor_id)
            global_pre = self.repository.active_tip_total(conn)
            self.repository.apply_conditional_delta(conn, actor_id, BalanceField.BONUS, amount)

            metadata: Dict[str, Any] = {}
            if admin_actor:
                metadata["admin_actor"] = admin_actor

            entry = self._append(
                conn,
                transaction_type=TransactionType.BONUS_CREDIT,
                actor_id=actor_id,
                amount=amount,
                user_balance_pre=account.bonus_balance,
                user_balance_post=account.bonus_balance + amount,
                user_aggregate_pre=account.tip_aggregate,
                user_aggregate_post=account.tip_aggregate,
                global_aggregate_pre=global_pre,
                global_aggregate_post=global_pre,
                username=account.username,
                description=reason,
                metadata=metadata,
                created_at=now,
            )

        logger.info("bonus_credit_recorded", entry_id=entry.entry_id, actor_id=actor_id, amount=amount)
        self._store_verification(entry)
        return entry

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self, user_id: str) -> Balance:
        account = self.repository.get_account(user_id)
        if account is None:
            raise UnknownAccountError(f"User {user_id} not found")
        return Balance(
            user_id=account.user_id,
            username=account.username,
            spendable=account.spendable_balance,
            tip_aggregate=account.tip_aggregate,
            escrow=account.escrow_balance,
            bonus=account.bonus_balance,
        )

    def get_ledger_history(self, user_id: str, page: int = 1, page_size: int = 50) -> LedgerPage:
        """One page of a user's entries, newest first.

        Raises:
            ValueError: If page < 1 or page_size is outside 1..500
        """
        self._check_paging(page, page_size)
        entries = self.repository.get_entries_for_actor(user_id, limit=page_size, offset=(page - 1) * page_size)
        return LedgerPage(
            entries=entries,
            page=page,
            page_size=page_size,
            total=self.repository.count_entries_for_actor(user_id),
        )

    def get_content_history(self, content_id: str, page: int = 1, page_size: int = 50) -> LedgerPage:
        """One page of the entries against a content item, newest first.

        Raises:
            UnknownContentError: If the content item is not registered
            ValueError: If page < 1 or page_size is outside 1..500
        """
        self._check_paging(page, page_size)
        if self.repository.get_content(content_id) is None:
            raise UnknownContentError(f"Content {content_id} not found")
        entries = self.repository.get_entries_for_content(
            content_id, limit=page_size, offset=(page - 1) * page_size
        )
        return LedgerPage(
            entries=entries,
            page=page,
            page_size=page_size,
            total=self.repository.count_entries_for_content(content_id),
        )

    def get_ledger_stats(self) -> LedgerStats:
        by_type = {t.value: {"count": 0, "volume": 0} for t in TransactionType}
        by_type.update(self.repository.entry_counts_by_type())
        first, last = self.repository.sequence_range()
        return LedgerStats(
            total_entries=sum(v["count"] for v in by_type.values()),
            total_volume=sum(v["volume"] for v in by_type.values()),
            by_type=by_type,
            sequence_first=first,
            sequence_last=last,
            last_24_hours=self.repository.count_entries_since(utcnow() - timedelta(hours=24)),
        )

    def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        return self.repository.get_entry(entry_id)

    def global_aggregate(self) -> int:
        return self.repository.global_aggregate()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _check_paging(page: int, page_size: int) -> None:
        if page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")

    def _account_in(self, conn, user_id: str):
        account = self.repository.get_account_in(conn, user_id)
        if account is None:
            raise UnknownAccountError(f"User {user_id} not found")
        return account

    def _append(self, conn, **values: Any) -> LedgerEntry:
        values.setdefault("reference_type", TRANSACTION_RULES[values["transaction_type"]].reference_type)
        # Checked with placeholder ids; the row gets its real ones on insert
        check_snapshot_invariants(LedgerEntry(entry_id="", sequence=0, **values))
        return self.repository.insert_entry(conn, values)

    @staticmethod
    def _validate_supplied_pre(
        value: Optional[int],
        name: str,
        debit: Optional[int] = None,
        insufficient=None,
    ) -> None:
        if value is None:
            return
        validate_minor_units(value, name, allow_zero=True)
        if debit is not None and value < debit:
            raise insufficient(
                f"{name} {value} does not cover {debit}", available=value, requested=debit
            )

    @staticmethod
    def _compare_pre(actor_id: str, name: str, supplied: Optional[int], observed: int) -> None:
        if supplied is not None and supplied != observed:
            logger.warning("stale_pre_balance", actor_id=actor_id, field=name, supplied=supplied, observed=observed)

    def _store_verification(self, entry: LedgerEntry) -> None:
        if self.verification is None:
            return
        try:
            self.verification.store_verification_hash(entry)
        except VerificationStorageError as e:
            # The entry is committed; a later verification sweep reports it as missing_record
            logger.error("verification_hash_store_failed", entry_id=entry.entry_id, error=str(e))
