"""
test_health.py - Unit tests for collateral health reports

Tests cover:
1. Classification bands
2. Obligation, collateral and required values
3. Threshold weighting across tiers
4. Deficit and collateral needed
"""

import pytest
from decimal import Decimal

from protection_pool import (
    HealthStatus, PolicyType,
    calculate_provider_health, collateral_needed, assess_provider,
)
from protection_pool.components.health import (
    classify_health, calculate_obligation_value, calculate_required_value, calculate_thresholds,
)
from protection_pool.core import INFINITE_RATIO

from tests.conftest import make_obligation, make_position
from tests.fake_view import FakeView


class TestClassification:

    @pytest.mark.parametrize("ratio,expected", [
        (Decimal("1.19"), HealthStatus.UNDER_COLLATERALIZED),
        (Decimal("1.2"), HealthStatus.WARNING),
        (Decimal("1.29"), HealthStatus.WARNING),
        (Decimal("1.3"), HealthStatus.HEALTHY),
    ])
    def test_bands(self, ratio, expected):
        assert classify_health(ratio, Decimal("1.2"), Decimal("0.1")) is expected


class TestValues:

    def test_put_value_is_strike_notional(self):
        obligation = make_obligation(protected_amount=1000, protected_value=Decimal("40000"))
        assert calculate_obligation_value(obligation, {"BTC": Decimal("30000")}) == Decimal("40000000")

    def test_call_value_moves_with_price(self):
        obligation = make_obligation(policy_type=PolicyType.CALL, allocations={"alice": 1000})
        assert calculate_obligation_value(obligation, {"BTC": Decimal("30000")}) == Decimal("30000000")

    def test_required_value_is_provider_share(self):
        obligation = make_obligation(allocations={"alice": 600, "bob": 200})
        value = calculate_required_value("alice", [obligation], {"BTC": Decimal("50000")})
        assert value == Decimal("30000000")

    def test_missing_price_raises(self):
        with pytest.raises(ValueError):
            calculate_obligation_value(make_obligation(), {})


class TestThresholds:

    def test_weighted_by_locked_value(self, tiers):
        positions = [
            make_position(tier="balanced", deposited=1000, locked=500),
            make_position(tier="aggressive", deposited=1000, locked=500),
        ]
        min_ratio, buffer = calculate_thresholds(positions, tiers, {"BTC": Decimal("50000")})
        assert min_ratio == Decimal("1.35")
        assert buffer == Decimal("0.125")

    def test_strictest_tier_when_nothing_locked(self, tiers):
        positions = [
            make_position(tier="conservative", deposited=1000),
            make_position(tier="aggressive", deposited=1000),
        ]
        assert calculate_thresholds(positions, tiers, {"BTC": Decimal("50000")}) == (Decimal("1.5"), Decimal("0.15"))

    def test_unknown_tier_raises(self, tiers):
        with pytest.raises(ValueError):
            calculate_thresholds([make_position(tier="missing")], tiers, {"BTC": Decimal("1")})


class TestProviderHealth:

    def test_no_obligations_is_healthy_with_infinite_ratio(self, tiers):
        report = calculate_provider_health("alice", [make_position()], [], tiers, {"BTC": Decimal("50000")})
        assert report.ratio == INFINITE_RATIO
        assert report.is_healthy
        assert report.deficit == 0

    def test_warning_at_purchase_price(self, tiers):
        report = calculate_provider_health(
            "alice", [make_position(deposited=1000, locked=800)], [make_obligation()],
            tiers, {"BTC": Decimal("50000")},
        )
        assert report.ratio == Decimal("1.25")
        assert report.status is HealthStatus.WARNING
        assert not report.below_minimum

    def test_under_collateralized_after_drop(self, tiers):
        report = calculate_provider_health(
            "alice", [make_position(deposited=1000, locked=800)], [make_obligation()],
            tiers, {"BTC": Decimal("40000")},
        )
        assert report.ratio == Decimal("1")
        assert report.status is HealthStatus.UNDER_COLLATERALIZED
        assert report.deficit == Decimal("8000000")
        assert collateral_needed(report, Decimal("40000")) == 200

    def test_ignores_other_providers_rows(self, tiers):
        report = calculate_provider_health(
            "alice",
            [make_position(deposited=1000, locked=800), make_position("bob", deposited=5)],
            [make_obligation(obligation_id="other", allocations={"bob": 5})],
            tiers, {"BTC": Decimal("40000")},
        )
        assert report.required_value == 0

    def test_stale_flag_carried(self, tiers):
        report = calculate_provider_health("alice", [make_position()], [], tiers, {"BTC": Decimal("1")}, stale=True)
        assert report.stale

    def test_pure_and_repeatable(self, tiers):
        args = ("alice", [make_position(deposited=1000, locked=800)], [make_obligation()], tiers, {"BTC": Decimal("43210")})
        assert calculate_provider_health(*args) == calculate_provider_health(*args)

    def test_collateral_needed_rounds_up(self, tiers):
        report = calculate_provider_health(
            "alice", [make_position(deposited=1000, locked=800)], [make_obligation()],
            tiers, {"BTC": Decimal("39999")},
        )
        needed = collateral_needed(report, Decimal("39999"))
        assert Decimal(needed) * Decimal("39999") >= report.deficit
        assert Decimal(needed - 1) * Decimal("39999") < report.deficit

    def test_assess_provider_reads_view(self, tiers):
        view = FakeView(positions=[make_position(deposited=1000, locked=800)], obligations=[make_obligation()])
        report = assess_provider(view, tiers, "alice", {"BTC": Decimal("40000")})
        assert report.status is HealthStatus.UNDER_COLLATERALIZED
