"""
Tip ledger facade.

Entry point for collaborators: inbound event handlers for the tipping,
payment, payout and identity subsystems, and the read APIs exposed to
the rest of the platform. All amounts in and out are integer minor
units.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from .allocation import EscrowInfo, EscrowService, IdentityKey, MatchResult
from .errors import DuplicateSettlementError
from .amounts import validate_percentage
from .ledger import Balance, LedgerPage, LedgerService, LedgerStats, TipReceipt
from .reconciliation import ReconciliationReport, reconcile
from .verification import VerificationService, VerificationStats
from ..config.loader import LedgerConfig, default_config
from ..storage.models import Account, ContentItem, LedgerEntry, OwnershipShare, VerificationRecord
from ..storage.repository import (
    LedgerRepository,
    VerificationRepository,
    initialize_schema,
    initialize_verification_schema,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of an external settlement.

    ``duplicate`` marks a replayed reference. ``conflict`` marks a replay
    whose actor or amount differs from the entry already recorded for
    that reference; the original entry still stands.
    """
    entry: LedgerEntry
    duplicate: bool = False
    conflict: bool = False


class TipLedger:
    """Ledger, escrow and verification services wired over one configuration."""

    def __init__(
        self,
        config: LedgerConfig,
        ledger_repository: LedgerRepository,
        verification_repository: VerificationRepository,
    ):
        self.config = config
        self.repository = ledger_repository
        self.escrow = EscrowService(ledger_repository, config)
        self.verification = VerificationService(
            ledger_repository, verification_repository, config.verification.batch_size
        )
        self.ledger = LedgerService(ledger_repository, self.escrow, self.verification)

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None) -> "TipLedger":
        """Build the services and make sure both stores have their schema."""
        config = config or default_config()
        storage = config.storage
        initialize_schema(storage.ledger_db)
        initialize_verification_schema(storage.verification_db)
        return cls(
            config,
            LedgerRepository(storage.ledger_db, storage.busy_timeout_seconds),
            VerificationRepository(storage.verification_db, storage.busy_timeout_seconds),
        )

    # ------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------

    def register_account(self, user_id: str, username: str) -> Account:
        if not user_id or not username:
            raise ValueError("user_id and username are required")
        return self.repository.upsert_account(user_id, username)

    def register_content(
        self, content_id: str, title: str, owners: Optional[List[OwnershipShare]] = None
    ) -> ContentItem:
        if not content_id or not title:
            raise ValueError("content_id and title are required")
        for owner in owners or []:
            validate_percentage(owner.percentage, f"percentage for {owner.payee_name}")
        return self.repository.upsert_content(content_id, title, owners or [])

    def register_session(self, session_id: str, name: str) -> None:
        if not session_id or not name:
            raise ValueError("session_id and name are required")
        self.repository.upsert_session(session_id, name)

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    def on_tip_placed(
        self,
        actor_id: str,
        content_id: str,
        session_id: Optional[str],
        amount: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TipReceipt:
        return self.ledger.record_tip(actor_id, content_id, session_id, amount, metadata=metadata)

    def on_tip_refunded(self, actor_id: str, tip_id: str) -> LedgerEntry:
        return self.ledger.record_refund(actor_id, tip_id)

    def on_external_settlement(
        self,
        actor_id: str,
        amount: int,
        provider_reference: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SettlementResult:
        """Credit a settled payment.

        Replaying a reference returns the original entry and credits
        nothing. A replay that disagrees on actor or amount is flagged and
        logged as a conflict.
        """
        try:
            entry = self.ledger.record_top_up(actor_id, amount, provider_reference, metadata=metadata)
        except DuplicateSettlementError as e:
            existing = self.ledger.get_entry(e.existing_entry_id)
            conflict = existing.actor_id != actor_id or existing.amount != amount
            if conflict:
                logger.warning(
                    "settlement_replay_conflict",
                    provider_reference=provider_reference,
                    entry_id=existing.entry_id,
                    recorded_actor=existing.actor_id,
                    recorded_amount=existing.amount,
                    replayed_actor=actor_id,
                    replayed_amount=amount,
                )
            else:
                logger.info("settlement_replayed", provider_reference=provider_reference, entry_id=existing.entry_id)
            return SettlementResult(entry=existing, duplicate=True, conflict=conflict)
        return SettlementResult(entry=entry)

    def on_payout_approved(self, actor_id: str, amount: int, payout_request_id: str) -> LedgerEntry:
        return self.ledger.record_payout(actor_id, amount, payout_request_id=payout_request_id)

    def on_bonus_granted(
        self, actor_id: str, amount: int, reason: str, admin_actor: Optional[str] = None
    ) -> LedgerEntry:
        return self.ledger.record_bonus_credit(actor_id, amount, reason, admin_actor=admin_actor)

    def on_identity_verified(self, user_id: str, identity_key: IdentityKey) -> MatchResult:
        return self.escrow.match_pending_allocations(user_id, identity_key)

    # ------------------------------------------------------------------
    # Outward reads
    # ------------------------------------------------------------------

    def get_balance(self, user_id: str) -> Balance:
        return self.ledger.get_balance(user_id)

    def get_ledger_history(self, user_id: str, page: int = 1, page_size: int = 50) -> LedgerPage:
        return self.ledger.get_ledger_history(user_id, page, page_size)

    def get_content_history(self, content_id: str, page: int = 1, page_size: int = 50) -> LedgerPage:
        return self.ledger.get_content_history(content_id, page, page_size)

    def get_ledger_stats(self) -> LedgerStats:
        return self.ledger.get_ledger_stats()

    def get_escrow_info(self, user_id: str) -> EscrowInfo:
        return self.escrow.get_escrow_info(user_id)

    def get_verification_stats(self) -> VerificationStats:
        return self.verification.get_verification_stats()

    def get_anomalies(self, limit: int = 100) -> List[VerificationRecord]:
        return self.verification.get_anomalies(limit)

    def reconcile(self) -> ReconciliationReport:
        return reconcile(self.repository, self.verification, self.config.verification.batch_size)
