"""
test_premium_settlement.py - Unit tests for premium splits
"""

import pytest
from decimal import Decimal

from protection_pool import ValidationError, compute_premium_distribution
from protection_pool.components.premium_settlement import (
    calculate_platform_fee, calculate_premium_split,
)
from protection_pool.core import TABLE_POSITIONS, TABLE_REMAINDER_POOLS, TABLE_PLATFORM_FEES

from tests.conftest import make_position
from tests.fake_view import FakeView


class TestPlatformFee:

    def test_fee_rounds_down(self):
        assert calculate_platform_fee(999, Decimal("0.1")) == 99

    @pytest.mark.parametrize("pct", ["-0.01", "1.01"])
    def test_fee_pct_bounds(self, pct):
        with pytest.raises(ValidationError):
            calculate_platform_fee(100, Decimal(pct))


class TestPremiumSplit:

    def test_shares_by_deposit(self):
        split = calculate_premium_split("balanced", "BTC", 1000, Decimal("0.1"), {"a": 1, "b": 2})
        assert split.platform_fee == 100
        assert split.shares == {"a": 300, "b": 600}
        assert split.remainder_out == 0

    def test_residual_is_carried(self):
        split = calculate_premium_split("balanced", "BTC", 100, Decimal("0"), {"a": 1, "b": 1, "c": 1})
        assert split.shares == {"a": 33, "b": 33, "c": 33}
        assert split.remainder_out == 1
        assert split.is_conserved()

    def test_remainder_joins_next_distribution(self):
        split = calculate_premium_split("balanced", "BTC", 100, Decimal("0"), {"a": 1, "b": 1, "c": 1}, remainder_in=2)
        assert split.shares == {"a": 34, "b": 34, "c": 34}
        assert split.remainder_out == 0
        assert split.is_conserved()

    def test_empty_tier_keeps_everything_in_remainder(self):
        split = calculate_premium_split("balanced", "BTC", 100, Decimal("0.1"), {})
        assert split.shares == {}
        assert split.remainder_out == 90
        assert split.is_conserved()

    def test_withheld_share_stays_in_remainder(self):
        split = calculate_premium_split(
            "balanced", "BTC", 1000, Decimal("0.1"), {"a": 1, "b": 2}, withheld={"b"},
        )
        assert split.shares == {"a": 300}
        assert split.remainder_out == 600
        assert split.is_conserved()

    def test_negative_premium_rejected(self):
        with pytest.raises(ValidationError):
            calculate_premium_split("balanced", "BTC", -1, Decimal("0.1"), {"a": 1})


class TestDistribution:

    def test_credits_yield_fees_and_remainder(self):
        view = FakeView(
            positions=[make_position("alice", deposited=1000), make_position("bob", deposited=2000)],
            fees={"BTC": 5},
        )
        update, split = compute_premium_distribution(view, "balanced", 100, Decimal("0.1"))
        yields = {c.new.provider_id: c.new.yield_accrued["BTC"] for c in update.changes_for(TABLE_POSITIONS)}
        assert yields == {"alice": 30, "bob": 60}
        (fees,) = update.changes_for(TABLE_PLATFORM_FEES)
        assert (fees.old, fees.new) == (5, 15)
        assert not update.changes_for(TABLE_REMAINDER_POOLS)
        assert split.is_conserved()

    def test_deposits_unchanged(self):
        view = FakeView(positions=[make_position("alice", deposited=1000, locked=500)])
        update, _ = compute_premium_distribution(view, "balanced", 77, Decimal("0"))
        (change,) = update.changes_for(TABLE_POSITIONS)
        assert change.new.deposited == change.old.deposited
        assert change.new.locked == change.old.locked

    def test_remainder_row_written_when_it_changes(self):
        view = FakeView(positions=[make_position("alice", deposited=2), make_position("bob", deposited=1)])
        update, split = compute_premium_distribution(view, "balanced", 10, Decimal("0"))
        (remainder,) = update.changes_for(TABLE_REMAINDER_POOLS)
        assert remainder.key == ("balanced", "BTC")
        assert (remainder.old, remainder.new) == (0, split.remainder_out)

    def test_other_tiers_are_not_credited(self):
        view = FakeView(positions=[make_position("alice", deposited=1000), make_position("bob", tier="aggressive", deposited=1000)])
        _, split = compute_premium_distribution(view, "balanced", 100, Decimal("0"))
        assert split.shares == {"alice": 100}

    def test_halted_provider_is_not_credited(self):
        view = FakeView(
            positions=[make_position("alice", deposited=1000), make_position("carol", deposited=2000)],
            remainders={("balanced", "BTC"): 3},
            halted_providers=["carol"],
        )
        update, split = compute_premium_distribution(view, "balanced", 100, Decimal("0.1"))
        assert [c.key[0] for c in update.changes_for(TABLE_POSITIONS)] == ["alice"]
        assert "carol" not in update.touched_providers
        assert split.shares == {"alice": 31}
        (remainder,) = update.changes_for(TABLE_REMAINDER_POOLS)
        assert (remainder.old, remainder.new) == (3, 62)
        assert split.is_conserved()
