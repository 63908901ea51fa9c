"""
Unit tests for the revenue allocation engine.

Every split must account for the whole tip: payee shares plus platform
take equal the tip exactly, for any ownership table.
"""

from decimal import Decimal

import pytest

from tip_ledger.core.allocation import allocate, name_similarity, normalize_identity
from tip_ledger.core.errors import InvalidAmountError, UnresolvedPayeeError
from tip_ledger.storage.models import OwnershipShare


def share(name: str, percentage, user_id=None) -> OwnershipShare:
    return OwnershipShare(payee_name=name, percentage=percentage, user_id=user_id)


class TestAllocate:
    """Test tip splitting."""

    def test_no_owners_is_all_platform(self):
        result = allocate(500, [])
        assert result.creator_pool == 0
        assert result.payees == []
        assert result.platform_take == 500

    def test_single_owner_full_share(self):
        result = allocate(500, [share("Nova Lines", 100, "artist")])
        assert result.creator_pool == 350
        assert len(result.payees) == 1
        assert result.payees[0].amount == 350
        assert result.payees[0].user_id == "artist"
        assert result.platform_take == 150
        assert not result.normalized

    def test_percentages_summing_to_99_are_normalized(self):
        result = allocate(1000, [share("A", 49.5), share("B", 49.5)])
        assert result.normalized
        assert [p.amount for p in result.payees] == [350, 350]
        assert result.platform_take == 300

    def test_percentages_summing_to_101_are_normalized(self):
        result = allocate(1000, [share("A", 60), share("B", 41)])
        assert result.normalized
        assert result.payee_total == 700
        assert [p.amount for p in result.payees] == [416, 284]
        assert result.platform_take == 300

    def test_within_tolerance_not_normalized(self):
        result = allocate(1000, [share("A", 33.33), share("B", 33.33), share("C", 33.33)])
        assert not result.normalized
        assert result.payee_total + result.platform_take == 1000

    def test_rounding_overshoot_trimmed(self):
        # Pool of 7 split 50/50 rounds to 4 + 4; one unit must come back
        result = allocate(10, [share("A", 50), share("B", 50)])
        assert result.creator_pool == 7
        assert result.payee_total == 7
        assert sorted(p.amount for p in result.payees) == [3, 4]
        assert result.platform_take == 3

    def test_out_of_range_share_skipped(self):
        result = allocate(1000, [share("A", 150), share("B", 100)])
        assert [p.payee_name for p in result.payees] == ["B"]
        assert result.payees[0].amount == 700

    def test_negative_share_skipped(self):
        result = allocate(1000, [share("A", -10), share("B", 100)])
        assert [p.payee_name for p in result.payees] == ["B"]

    def test_zero_share_produces_no_payee(self):
        result = allocate(1000, [share("A", 0), share("B", 100)])
        assert [p.payee_name for p in result.payees] == ["B"]

    def test_all_zero_shares_unresolved(self):
        with pytest.raises(UnresolvedPayeeError):
            allocate(1000, [share("A", 0), share("B", 0)])

    def test_all_shares_invalid_unresolved(self):
        with pytest.raises(UnresolvedPayeeError):
            allocate(1000, [share("A", 101), share("B", -1)])

    @pytest.mark.parametrize("bad", [Decimal("NaN"), Decimal("sNaN"), Decimal("Infinity"), float("nan"), "nan", "n/a"])
    def test_non_finite_share_skipped(self, bad):
        result = allocate(1000, [share("A", bad), share("B", 100)])
        assert [p.payee_name for p in result.payees] == ["B"]
        assert result.payees[0].amount == 700

    def test_all_shares_non_finite_unresolved(self):
        with pytest.raises(UnresolvedPayeeError):
            allocate(1000, [share("A", Decimal("NaN")), share("B", float("inf"))])

    def test_tiny_tip_residue_goes_to_platform(self):
        result = allocate(1, [share("A", 33.33), share("B", 33.33), share("C", 33.34)])
        assert result.creator_pool == 1
        assert result.payee_total + result.platform_take == 1
        assert result.payee_total <= result.creator_pool

    def test_custom_creator_share(self):
        result = allocate(1000, [share("A", 100)], creator_share_percent=Decimal("85"))
        assert result.payees[0].amount == 850
        assert result.platform_take == 150

    def test_zero_creator_share(self):
        result = allocate(1000, [share("A", 100)], creator_share_percent=Decimal("0"))
        assert result.payees == []
        assert result.platform_take == 1000

    def test_invalid_tip_amount(self):
        with pytest.raises(InvalidAmountError):
            allocate(0, [share("A", 100)])
        with pytest.raises(InvalidAmountError):
            allocate(9.99, [share("A", 100)])

    @pytest.mark.parametrize("shares", [
        [share("A", 100)],
        [share("A", 50), share("B", 50)],
        [share("A", 33.33), share("B", 33.33), share("C", 33.34)],
        [share("A", 70), share("B", 20), share("C", 9.5)],
        [share("A", 1), share("B", 1), share("C", 1)],
        [share(str(i), 100 / 7) for i in range(7)],
    ])
    def test_split_always_accounts_for_whole_tip(self, shares):
        for tip in range(1, 301):
            result = allocate(tip, shares)
            assert result.payee_total + result.platform_take == tip
            assert result.payee_total <= result.creator_pool
            assert result.platform_take >= 0
            assert all(p.amount > 0 for p in result.payees)


class TestIdentityMatching:
    """Test payee name normalization and similarity."""

    def test_normalize_folds_case_and_punctuation(self):
        assert normalize_identity("  The   Unsigned! ") == "the unsigned"
        assert normalize_identity("NOVA-LINES") == "nova lines"

    def test_identical_names_are_fully_similar(self):
        assert name_similarity("nova lines", "nova lines") == 1.0

    def test_near_names_score_high(self):
        assert name_similarity("nova lines", "nova line") > 0.9

    def test_different_names_score_low(self):
        assert name_similarity("nova lines", "harbour lights") < 0.5
