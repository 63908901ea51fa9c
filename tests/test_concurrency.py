"""
Concurrent writers against one ledger: balances must never go negative
and every accepted operation must leave exactly one entry.
"""

from concurrent.futures import ThreadPoolExecutor

from tip_ledger.core.allocation import IdentityKey
from tip_ledger.core.errors import InsufficientEscrowError, InsufficientFundsError
from tip_ledger.storage.models import OwnershipShare, TransactionType


def _run_all(calls, workers: int = 8):
    """Run zero-arg callables in parallel; return (results, errors)."""
    results, errors = [], []

    def attempt(call):
        try:
            return call(), None
        except (InsufficientFundsError, InsufficientEscrowError) as e:
            return None, e

    with ThreadPoolExecutor(max_workers=workers) as pool:
        for result, error in pool.map(attempt, calls):
            if error is None:
                results.append(result)
            else:
                errors.append(error)
    return results, errors


class TestConcurrentWrites:
    """Test the conditional-update guarantees under contention."""

    def test_concurrent_payouts_spend_escrow_once(self, funded):
        funded.on_tip_placed("alice", "track-1", None, 300)
        assert funded.get_balance("artist").escrow == 210

        calls = [
            (lambda i=i: funded.on_payout_approved("artist", 210, f"po-{i}"))
            for i in range(8)
        ]
        results, errors = _run_all(calls)

        assert len(results) == 1
        assert len(errors) == 7
        assert all(isinstance(e, InsufficientEscrowError) for e in errors)
        assert funded.get_balance("artist").escrow == 0
        assert funded.verification.verify_all(transaction_type=TransactionType.PAY_OUT).checked == 1

    def test_concurrent_tips_within_balance_all_succeed(self, funded):
        calls = [
            (lambda: funded.on_tip_placed("alice", "track-1", None, 100))
            for _ in range(10)
        ]
        results, errors = _run_all(calls)

        assert len(results) == 10
        assert errors == []
        balance = funded.get_balance("alice")
        assert balance.spendable == 0
        assert balance.tip_aggregate == 1000
        assert funded.ledger.global_aggregate() == 1000
        assert funded.reconcile().clean

    def test_concurrent_tips_beyond_balance(self, funded):
        calls = [
            (lambda: funded.on_tip_placed("alice", "track-1", None, 100))
            for _ in range(15)
        ]
        results, errors = _run_all(calls)

        assert len(results) == 10
        assert len(errors) == 5
        assert all(isinstance(e, InsufficientFundsError) for e in errors)
        assert funded.get_balance("alice").spendable == 0
        assert funded.get_ledger_history("alice").total == 11

        # Every successful tip saw a distinct pre-balance
        pre_balances = sorted(r.entry.user_balance_pre for r in results)
        assert pre_balances == list(range(100, 1001, 100))

    def test_concurrent_claims_credit_once(self, funded):
        funded.register_content(
            "track-2", "Cover", [OwnershipShare(payee_name="The Unsigned", percentage=100)]
        )
        funded.on_tip_placed("alice", "track-2", None, 1000)
        for user_id in ("band-a", "band-b", "band-c", "band-d"):
            funded.register_account(user_id, "The Unsigned")

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(
                lambda user_id: funded.on_identity_verified(user_id, IdentityKey(name="The Unsigned")),
                ["band-a", "band-b", "band-c", "band-d"],
            ))

        assert sum(r.total_amount for r in results) == 700
        assert sum(1 for r in results if r.matched) == 1
        assert funded.reconcile().clean
