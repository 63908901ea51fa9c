"""
Unit tests for the ledger service.

Every record operation must leave snapshots that satisfy the sign rule
of its transaction type, and every failure must leave no entry behind.
"""

from dataclasses import replace

import pytest

from conftest import execute_sql
from tip_ledger.core.errors import (
    InsufficientEscrowError,
    InsufficientFundsError,
    InvalidAmountError,
    LedgerInvariantError,
    TipNotActiveError,
    UnknownAccountError,
    UnknownContentError,
    UnresolvedPayeeError,
    VerificationStorageError,
)
from tip_ledger.core.ledger import check_snapshot_invariants
from tip_ledger.storage.models import OwnershipShare, TipStatus, TransactionType


class TestTopUp:
    """Test TOP_UP entries."""

    def test_top_up_snapshots(self, funded):
        entry = funded.get_ledger_history("alice").entries[0]

        assert entry.transaction_type == TransactionType.TOP_UP
        assert entry.amount == 1000
        assert entry.user_balance_pre == 0
        assert entry.user_balance_post == 1000
        assert entry.user_aggregate_pre == entry.user_aggregate_post == 0
        assert entry.global_aggregate_pre == entry.global_aggregate_post == 0
        assert entry.content_id is None
        assert entry.content_aggregate_pre is None
        assert entry.reference_id == "pi-alice-1"
        assert entry.reference_type == "settlement"
        assert entry.username == "alice"

    def test_missing_provider_reference(self, funded):
        with pytest.raises(ValueError, match="provider_reference"):
            funded.ledger.record_top_up("alice", 100, "")

    def test_unknown_account(self, funded):
        with pytest.raises(UnknownAccountError):
            funded.ledger.record_top_up("ghost", 100, "pi-ghost")


class TestTip:
    """Test TIP entries."""

    def test_tip_snapshots(self, funded):
        receipt = funded.ledger.record_tip("alice", "track-1", "party-1", 300)
        entry = receipt.entry

        assert entry.transaction_type == TransactionType.TIP
        assert entry.user_balance_pre == 1000
        assert entry.user_balance_post == 700
        assert entry.user_aggregate_pre == 0
        assert entry.user_aggregate_post == 300
        assert entry.content_aggregate_pre == 0
        assert entry.content_aggregate_post == 300
        assert entry.global_aggregate_pre == 0
        assert entry.global_aggregate_post == 300
        assert entry.reference_type == "tip"
        assert entry.content_title == "Midnight Drive"
        assert entry.session_name == "Friday Party"
        assert entry.metadata["allocation"]["platform_take"] == 90

        tip = funded.repository.get_tip(entry.reference_id)
        assert tip.status == TipStatus.ACTIVE
        assert tip.amount == 300

    def test_second_tip_chains_snapshots(self, funded):
        first = funded.ledger.record_tip("alice", "track-1", None, 300).entry
        second = funded.ledger.record_tip("alice", "track-1", None, 200).entry

        assert second.user_balance_pre == first.user_balance_post
        assert second.user_aggregate_pre == first.user_aggregate_post
        assert second.content_aggregate_pre == first.content_aggregate_post
        assert second.global_aggregate_pre == first.global_aggregate_post
        assert second.global_aggregate_post == 500

    def test_insufficient_funds_writes_nothing(self, funded):
        with pytest.raises(InsufficientFundsError) as exc_info:
            funded.ledger.record_tip("alice", "track-1", None, 1500)

        assert exc_info.value.available == 1000
        assert exc_info.value.requested == 1500
        assert funded.get_balance("alice").spendable == 1000
        assert funded.get_ledger_history("alice").total == 1
        assert funded.ledger.global_aggregate() == 0
        assert funded.get_balance("artist").escrow == 0

    def test_supplied_pre_below_amount_rejected(self, funded):
        with pytest.raises(InsufficientFundsError):
            funded.ledger.record_tip("alice", "track-1", None, 300, actor_balance_pre=200)
        assert funded.get_ledger_history("alice").total == 1

    def test_stale_supplied_pre_uses_observed_value(self, funded):
        entry = funded.ledger.record_tip(
            "alice", "track-1", None, 300,
            actor_balance_pre=999, actor_aggregate_pre=5, content_aggregate_pre=7,
        ).entry

        assert entry.user_balance_pre == 1000
        assert entry.user_aggregate_pre == 0
        assert entry.content_aggregate_pre == 0

    def test_malformed_supplied_pre_rejected(self, funded):
        with pytest.raises(InvalidAmountError):
            funded.ledger.record_tip("alice", "track-1", None, 300, actor_balance_pre=-1)

    @pytest.mark.parametrize("amount", [0, -5, 2.5, "300", True])
    def test_invalid_amount_writes_nothing(self, funded, amount):
        with pytest.raises(InvalidAmountError):
            funded.ledger.record_tip("alice", "track-1", None, amount)
        assert funded.get_ledger_history("alice").total == 1

    def test_unknown_content(self, funded):
        with pytest.raises(UnknownContentError):
            funded.ledger.record_tip("alice", "no-such-track", None, 100)
        assert funded.get_balance("alice").spendable == 1000

    def test_unknown_actor(self, funded):
        with pytest.raises(UnknownAccountError):
            funded.ledger.record_tip("ghost", "track-1", None, 100)

    def test_unresolvable_ownership_writes_nothing(self, funded):
        funded.register_content("track-0", "Silence", [OwnershipShare(payee_name="Nobody", percentage=0)])

        with pytest.raises(UnresolvedPayeeError):
            funded.ledger.record_tip("alice", "track-0", None, 100)

        assert funded.get_balance("alice").spendable == 1000
        assert funded.get_ledger_history("alice").total == 1

    def test_unowned_content_is_all_platform(self, funded):
        funded.register_content("track-2", "Library Music")
        receipt = funded.ledger.record_tip("alice", "track-2", None, 100)

        assert receipt.allocation.platform_take == 100
        assert receipt.routes == []


class TestRefund:
    """Test REFUND entries."""

    def test_refund_reverses_tip(self, funded):
        tip_entry = funded.ledger.record_tip("alice", "track-1", "party-1", 300).entry
        refund = funded.ledger.record_refund("alice", tip_entry.reference_id)

        assert refund.transaction_type == TransactionType.REFUND
        assert refund.amount == 300
        assert refund.user_balance_pre == 700
        assert refund.user_balance_post == 1000
        assert refund.user_aggregate_pre == 300
        assert refund.user_aggregate_post == 0
        assert refund.content_aggregate_pre == 300
        assert refund.content_aggregate_post == 0
        assert refund.global_aggregate_pre == 300
        assert refund.global_aggregate_post == 0
        assert refund.session_id == "party-1"
        assert "clamped" not in refund.metadata
        assert funded.repository.get_tip(tip_entry.reference_id).status == TipStatus.REFUNDED

    def test_double_refund_rejected(self, funded):
        tip_id = funded.ledger.record_tip("alice", "track-1", None, 300).entry.reference_id
        funded.ledger.record_refund("alice", tip_id)

        with pytest.raises(TipNotActiveError):
            funded.ledger.record_refund("alice", tip_id)
        assert funded.get_balance("alice").spendable == 1000

    def test_refund_of_foreign_tip_rejected(self, funded):
        funded.register_account("bob", "bob")
        tip_id = funded.ledger.record_tip("alice", "track-1", None, 300).entry.reference_id

        with pytest.raises(TipNotActiveError):
            funded.ledger.record_refund("bob", tip_id)

    def test_refund_of_unknown_tip_rejected(self, funded):
        with pytest.raises(TipNotActiveError):
            funded.ledger.record_refund("alice", "no-such-tip")

    def test_partial_refund_rejected(self, funded):
        tip_id = funded.ledger.record_tip("alice", "track-1", None, 300).entry.reference_id

        with pytest.raises(InvalidAmountError, match="partial"):
            funded.ledger.record_refund("alice", tip_id, amount=100)
        assert funded.repository.get_tip(tip_id).status == TipStatus.ACTIVE

    def test_refund_with_matching_amount(self, funded):
        tip_id = funded.ledger.record_tip("alice", "track-1", None, 300).entry.reference_id
        assert funded.ledger.record_refund("alice", tip_id, amount=300).amount == 300

    def test_refund_clamps_drifted_aggregate(self, funded):
        tip_id = funded.ledger.record_tip("alice", "track-1", None, 300).entry.reference_id
        execute_sql(
            funded.config.storage.ledger_db,
            "UPDATE content_items SET tip_aggregate = 100 WHERE content_id = 'track-1'",
        )

        refund = funded.ledger.record_refund("alice", tip_id)

        assert refund.content_aggregate_pre == 100
        assert refund.content_aggregate_post == 0
        assert refund.metadata["clamped"] == {"content_aggregate": 200}
        check_snapshot_invariants(refund)


class TestPayout:
    """Test PAY_OUT entries."""

    def test_payout_snapshots(self, funded):
        funded.ledger.record_tip("alice", "track-1", None, 300)
        entry = funded.ledger.record_payout("artist", 100, payout_request_id="po-1")

        assert entry.transaction_type == TransactionType.PAY_OUT
        assert entry.user_balance_pre == 210
        assert entry.user_balance_post == 110
        assert entry.user_aggregate_pre == entry.user_aggregate_post == 0
        assert entry.global_aggregate_pre == entry.global_aggregate_post == 300
        assert entry.reference_id == "po-1"
        assert entry.reference_type == "payout_request"
        assert funded.get_balance("artist").escrow == 110

    def test_payout_beyond_escrow_rejected(self, funded):
        funded.ledger.record_tip("alice", "track-1", None, 300)

        with pytest.raises(InsufficientEscrowError) as exc_info:
            funded.ledger.record_payout("artist", 500)

        assert exc_info.value.available == 210
        assert funded.get_balance("artist").escrow == 210
        assert funded.get_ledger_history("artist").total == 0

    def test_supplied_escrow_pre_below_amount_rejected(self, funded):
        funded.ledger.record_tip("alice", "track-1", None, 300)
        with pytest.raises(InsufficientEscrowError):
            funded.ledger.record_payout("artist", 200, escrow_balance_pre=100)

    def test_payout_request_id_generated(self, funded):
        funded.ledger.record_tip("alice", "track-1", None, 300)
        entry = funded.ledger.record_payout("artist", 10)
        assert entry.reference_id


class TestBonusCredit:
    """Test BONUS_CREDIT entries."""

    def test_bonus_moves_only_bonus_balance(self, funded):
        entry = funded.ledger.record_bonus_credit("alice", 50, "Welcome bonus", admin_actor="admin-1")

        assert entry.user_balance_pre == 0
        assert entry.user_balance_post == 50
        assert entry.description == "Welcome bonus"
        assert entry.metadata == {"admin_actor": "admin-1"}
        balance = funded.get_balance("alice")
        assert balance.bonus == 50
        assert balance.spendable == 1000

    def test_reason_required(self, funded):
        with pytest.raises(ValueError, match="reason"):
            funded.ledger.record_bonus_credit("alice", 50, "  ")


class TestSnapshotInvariants:
    """Test the per-type sign rules."""

    def _all_types(self, ledger):
        tip_id = ledger.ledger.record_tip("alice", "track-1", None, 300).entry.reference_id
        ledger.ledger.record_tip("alice", "track-1", None, 100)
        ledger.ledger.record_refund("alice", tip_id)
        ledger.ledger.record_payout("artist", 50)
        ledger.ledger.record_bonus_credit("alice", 25, "Promo")
        return list(ledger.repository.iter_entries())

    def test_every_stored_entry_satisfies_rules(self, funded):
        entries = self._all_types(funded)

        assert {e.transaction_type for e in entries} == set(TransactionType)
        for entry in entries:
            check_snapshot_invariants(entry)

    def test_wrong_balance_post_detected(self, funded):
        for entry in self._all_types(funded):
            with pytest.raises(LedgerInvariantError):
                check_snapshot_invariants(replace(entry, user_balance_post=entry.user_balance_post + 1))

    def test_aggregate_movement_on_non_tip_detected(self, funded):
        entry = funded.get_ledger_history("alice").entries[0]
        with pytest.raises(LedgerInvariantError, match="user_aggregate"):
            check_snapshot_invariants(replace(entry, user_aggregate_post=entry.user_aggregate_pre + 1))

    def test_content_on_top_up_detected(self, funded):
        entry = funded.get_ledger_history("alice").entries[0]
        with pytest.raises(LedgerInvariantError, match="content fields"):
            check_snapshot_invariants(replace(entry, content_id="track-1"))

    def test_tip_without_content_detected(self, funded):
        entry = funded.ledger.record_tip("alice", "track-1", None, 300).entry
        with pytest.raises(LedgerInvariantError, match="content snapshot"):
            check_snapshot_invariants(replace(entry, content_aggregate_pre=None))

    def test_tip_global_not_moving_detected(self, funded):
        entry = funded.ledger.record_tip("alice", "track-1", None, 300).entry
        with pytest.raises(LedgerInvariantError, match="global_aggregate"):
            check_snapshot_invariants(replace(entry, global_aggregate_post=entry.global_aggregate_pre))


class TestReads:
    """Test read APIs."""

    def test_balance_of_unknown_user(self, funded):
        with pytest.raises(UnknownAccountError):
            funded.get_balance("ghost")

    def test_history_pagination(self, funded):
        for _ in range(4):
            funded.ledger.record_tip("alice", "track-1", None, 10)

        first = funded.get_ledger_history("alice", page=1, page_size=2)
        third = funded.get_ledger_history("alice", page=3, page_size=2)

        assert first.total == 5
        assert first.has_next
        assert [e.transaction_type for e in first.entries] == [TransactionType.TIP, TransactionType.TIP]
        assert first.entries[0].sequence > first.entries[1].sequence
        assert [e.transaction_type for e in third.entries] == [TransactionType.TOP_UP]
        assert not third.has_next

    def test_history_bad_paging(self, funded):
        with pytest.raises(ValueError):
            funded.get_ledger_history("alice", page=0)
        with pytest.raises(ValueError):
            funded.get_ledger_history("alice", page_size=501)

    def test_get_entry(self, funded):
        entry = funded.get_ledger_history("alice").entries[0]
        assert funded.ledger.get_entry(entry.entry_id) == entry
        assert funded.ledger.get_entry("missing") is None


class TestVerificationBoundary:
    """Test that hash storage failures never undo a ledger write."""

    def test_verification_failure_is_not_fatal(self, funded, monkeypatch):
        def fail(entry):
            raise VerificationStorageError("store offline")

        monkeypatch.setattr(funded.verification, "store_verification_hash", fail)

        entry = funded.ledger.record_top_up("alice", 250, "pi-alice-2")

        assert funded.get_balance("alice").spendable == 1250
        assert funded.ledger.get_entry(entry.entry_id) == entry

    def test_hash_stored_after_every_write(self, funded):
        entry = funded.ledger.record_tip("alice", "track-1", None, 300).entry
        record = funded.verification.records.get_record(entry.entry_id)
        assert record is not None
        assert record.entry_sequence == entry.sequence
