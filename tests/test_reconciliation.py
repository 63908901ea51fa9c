"""
Tests for the reconciliation sweep.
"""

from conftest import execute_sql
from tip_ledger.core.reconciliation import (
    KIND_CONTENT_AGGREGATE,
    KIND_BONUS_SNAPSHOT,
    KIND_CONTENT_SNAPSHOT,
    KIND_ESCROW_BALANCE,
    KIND_HASH_MISMATCH,
    KIND_MISSING_ENTRY,
    KIND_REFUND_CLAMPED,
    KIND_SNAPSHOT_INVARIANT,
    KIND_SPENDABLE_SNAPSHOT,
    KIND_UNDECODABLE,
    KIND_USER_AGGREGATE,
)


class TestReconcile:
    """Test drift and tamper detection across the whole ledger."""

    def test_clean_ledger(self, funded):
        receipt = funded.on_tip_placed("alice", "track-1", "party-1", 500)
        funded.on_tip_placed("alice", "track-1", None, 200)
        funded.on_tip_refunded("alice", receipt.entry.reference_id)
        funded.on_payout_approved("artist", 300, "po-1")

        report = funded.reconcile()

        assert report.clean
        assert report.entries_checked == 5
        assert report.verification.verified == 5
        assert report.counts_by_kind() == {}

    def test_content_aggregate_drift(self, funded):
        funded.on_tip_placed("alice", "track-1", None, 100)
        execute_sql(
            funded.config.storage.ledger_db,
            "UPDATE content_items SET tip_aggregate = 0 WHERE content_id = 'track-1'",
        )

        report = funded.reconcile()

        assert report.counts_by_kind() == {KIND_CONTENT_AGGREGATE: 1, KIND_CONTENT_SNAPSHOT: 1}
        aggregate, snapshot = report.findings
        assert (aggregate.subject_id, aggregate.stored, aggregate.derived) == ("track-1", 0, 100)
        assert (snapshot.subject_id, snapshot.stored, snapshot.derived) == ("track-1", 0, 100)

    def test_user_aggregate_drift(self, funded):
        funded.on_tip_placed("alice", "track-1", None, 100)
        execute_sql(
            funded.config.storage.ledger_db,
            "UPDATE accounts SET tip_aggregate = 250 WHERE user_id = 'alice'",
        )

        report = funded.reconcile()

        assert report.counts_by_kind() == {KIND_USER_AGGREGATE: 1}
        assert report.findings[0].stored == 250
        assert report.findings[0].derived == 100

    def test_escrow_balance_drift(self, funded):
        funded.on_tip_placed("alice", "track-1", None, 100)
        execute_sql(
            funded.config.storage.ledger_db,
            "UPDATE accounts SET escrow_balance = 999 WHERE user_id = 'artist'",
        )

        report = funded.reconcile()

        assert report.counts_by_kind() == {KIND_ESCROW_BALANCE: 1}
        finding = report.findings[0]
        assert (finding.subject_id, finding.stored, finding.derived) == ("artist", 999, 70)

    def test_clamped_refund_reported(self, funded):
        receipt = funded.on_tip_placed("alice", "track-1", None, 100)
        execute_sql(
            funded.config.storage.ledger_db,
            "UPDATE content_items SET tip_aggregate = 40 WHERE content_id = 'track-1'",
        )
        refund = funded.on_tip_refunded("alice", receipt.entry.reference_id)

        report = funded.reconcile()

        assert refund.metadata["clamped"] == {"content_aggregate": 60}
        assert refund.content_aggregate_post == 0
        assert report.counts_by_kind() == {KIND_REFUND_CLAMPED: 1}
        finding = report.findings[0]
        assert finding.subject_id == refund.entry_id
        assert finding.derived == 40
        assert "content_aggregate=60" in finding.detail

    def test_tampered_snapshot_reported(self, funded):
        receipt = funded.on_tip_placed("alice", "track-1", None, 100)
        execute_sql(
            funded.config.storage.ledger_db,
            "UPDATE ledger_entries SET user_balance_post = 1 WHERE entry_id = ?",
            (receipt.entry.entry_id,),
        )

        report = funded.reconcile()

        assert report.counts_by_kind() == {
            KIND_HASH_MISMATCH: 1, KIND_SNAPSHOT_INVARIANT: 1, KIND_SPENDABLE_SNAPSHOT: 1,
        }
        assert {f.subject_id for f in report.findings} == {receipt.entry.entry_id, "alice"}
        spendable = [f for f in report.findings if f.kind == KIND_SPENDABLE_SNAPSHOT][0]
        assert (spendable.stored, spendable.derived) == (900, 1)
        invariant = [f for f in report.findings if f.kind == KIND_SNAPSHOT_INVARIANT][0]
        assert "user_balance_post" in invariant.detail
        assert funded.get_anomalies()[0].entry_id == receipt.entry.entry_id

    def test_deleted_entry_reported(self, funded):
        entry = funded.get_ledger_history("alice").entries[0]
        execute_sql(
            funded.config.storage.ledger_db, "DELETE FROM ledger_entries WHERE entry_id = ?", (entry.entry_id,)
        )

        report = funded.reconcile()

        assert report.counts_by_kind() == {KIND_MISSING_ENTRY: 1, KIND_SPENDABLE_SNAPSHOT: 1}
        assert report.entries_checked == 0


class TestSnapshotDrift:
    """Test balances against the post snapshot of the latest entry that moved them."""

    def test_spendable_drift(self, funded):
        funded.on_tip_placed("alice", "track-1", None, 100)
        execute_sql(
            funded.config.storage.ledger_db,
            "UPDATE accounts SET spendable_balance = 5000 WHERE user_id = 'alice'",
        )

        report = funded.reconcile()

        assert report.counts_by_kind() == {KIND_SPENDABLE_SNAPSHOT: 1}
        finding = report.findings[0]
        assert (finding.subject_id, finding.stored, finding.derived) == ("alice", 5000, 900)

    def test_balance_without_any_entry(self, funded):
        funded.register_account("bob", "bob")
        execute_sql(
            funded.config.storage.ledger_db,
            "UPDATE accounts SET spendable_balance = 300 WHERE user_id = 'bob'",
        )

        report = funded.reconcile()

        assert report.counts_by_kind() == {KIND_SPENDABLE_SNAPSHOT: 1}
        assert (report.findings[0].subject_id, report.findings[0].derived) == ("bob", 0)

    def test_bonus_drift(self, funded):
        funded.on_bonus_granted("alice", 50, "promo")
        execute_sql(
            funded.config.storage.ledger_db,
            "UPDATE accounts SET bonus_balance = 80 WHERE user_id = 'alice'",
        )

        report = funded.reconcile()

        assert report.counts_by_kind() == {KIND_BONUS_SNAPSHOT: 1}
        assert (report.findings[0].stored, report.findings[0].derived) == (80, 50)

    def test_bonus_does_not_affect_spendable_check(self, funded):
        funded.on_bonus_granted("alice", 50, "promo")
        funded.on_tip_placed("alice", "track-1", None, 100)
        funded.on_bonus_granted("alice", 25, "promo")

        assert funded.reconcile().clean


class TestUndecodableRows:
    """Test reconciliation over rows edited into values that no longer parse."""

    def test_corrupt_timestamp(self, funded):
        receipt = funded.on_tip_placed("alice", "track-1", None, 100)
        execute_sql(
            funded.config.storage.ledger_db,
            "UPDATE ledger_entries SET created_at = 'tampered' WHERE entry_id = ?",
            (receipt.entry.entry_id,),
        )

        report = funded.reconcile()

        assert report.counts_by_kind() == {KIND_HASH_MISMATCH: 1, KIND_UNDECODABLE: 1}
        assert report.entries_checked == 2
        assert {f.subject_id for f in report.findings} == {receipt.entry.entry_id}

    def test_corrupt_transaction_type(self, funded):
        receipt = funded.on_tip_placed("alice", "track-1", None, 100)
        execute_sql(
            funded.config.storage.ledger_db,
            "UPDATE ledger_entries SET transaction_type = 'GIFT' WHERE entry_id = ?",
            (receipt.entry.entry_id,),
        )

        report = funded.reconcile()

        # With the TIP unreadable the latest spendable and content snapshots
        # are the top-up's and none at all
        assert report.counts_by_kind() == {
            KIND_HASH_MISMATCH: 1,
            KIND_UNDECODABLE: 1,
            KIND_SPENDABLE_SNAPSHOT: 1,
            KIND_CONTENT_SNAPSHOT: 1,
        }
        undecodable = [f for f in report.findings if f.kind == KIND_UNDECODABLE][0]
        assert undecodable.subject_id == receipt.entry.entry_id
        assert "GIFT" in undecodable.detail

    def test_later_rows_still_checked(self, funded):
        first = funded.on_tip_placed("alice", "track-1", None, 100)
        second = funded.on_tip_placed("alice", "track-1", None, 50)
        execute_sql(
            funded.config.storage.ledger_db,
            "UPDATE ledger_entries SET created_at = 'tampered' WHERE entry_id = ?",
            (first.entry.entry_id,),
        )
        execute_sql(
            funded.config.storage.ledger_db,
            "UPDATE ledger_entries SET user_balance_post = 1 WHERE entry_id = ?",
            (second.entry.entry_id,),
        )

        report = funded.reconcile()

        assert report.entries_checked == 3
        assert report.counts_by_kind()[KIND_UNDECODABLE] == 1
        assert report.counts_by_kind()[KIND_SNAPSHOT_INVARIANT] == 1
