"""
test_scenarios.py - End-to-end acceptance scenarios through ProtectionEngine

Scenarios:
- A: reservation against a funded tier
- B: reservation refused for lack of capital
- C: price drop issues a margin call
- D: adding the deficit resolves the call
- E: deadline passes, half the locked collateral goes to the Insurance Fund
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from protection_pool import (
    ProtectionRequest, InsufficientTierCapital, HealthStatus, MarginCallStatus,
    ObligationStatus, ResolutionMethod, INSURANCE_FUND,
    EVENT_MARGIN_CALL_ISSUED, EVENT_MARGIN_CALL_RESOLVED,
    EVENT_PROVIDER_LIQUIDATED, EVENT_OBLIGATION_TRANSFERRED,
)

from tests.conftest import T0


def put_request(amount, strike, days=30):
    return ProtectionRequest(
        owner="bob", protected_value=Decimal(strike), protected_amount=amount,
        duration=timedelta(days=days),
    )


@pytest.fixture
def exposed(engine):
    """alice backs a 1000-unit PUT struck at 40,000 with 1000 deposited, 800 locked."""
    engine.deposit("alice", "balanced", 1_000)
    oid = engine.classify_and_reserve(put_request(1_000, "40000"))
    return engine, oid


@pytest.fixture
def called(exposed, price_source):
    """Price falls to 40,000 and the next tick issues a margin call."""
    engine, oid = exposed
    price_source.update_price("BTC", Decimal("40000"))
    sweep = engine.tick(T0 + timedelta(hours=1))
    return engine, oid, sweep


class TestScenarioA:

    def test_reservation_locks_and_reports_utilization(self, engine):
        engine.deposit("alice", "balanced", 3_000)
        oid = engine.classify_and_reserve(put_request(300, "43000"))
        account = engine.store.get_tier_account("balanced", "BTC")
        assert account.total == 3_000
        assert account.locked == 258
        assert account.utilization == Decimal(258) / Decimal(3000)
        obligation = engine.store.get_obligation(oid)
        assert obligation.tier == "balanced"
        assert obligation.reserved == 258
        assert engine.verify()['valid']


class TestScenarioB:

    def test_insufficient_capital_leaves_state_unchanged(self, engine, policy_registry):
        engine.deposit("alice", "balanced", 200)
        log_length = len(engine.store.update_log)
        with pytest.raises(InsufficientTierCapital):
            engine.classify_and_reserve(put_request(300, "43000"))
        assert len(engine.store.update_log) == log_length
        assert engine.store.get_tier_account("balanced", "BTC").locked == 0
        assert policy_registry.policies == {}


class TestScenarioC:

    def test_price_drop_issues_call_with_deficit(self, called, notifier):
        engine, _, sweep = called
        assert sweep.issued == ("alice",)
        report = sweep.reports["alice"]
        assert report.ratio == Decimal("1")
        assert report.status is HealthStatus.UNDER_COLLATERALIZED
        call = engine.store.get_active_margin_call("alice")
        assert call.deficit == report.min_ratio * report.required_value - report.collateral_value
        assert call.deficit == Decimal("8000000")
        assert call.severity is HealthStatus.UNDER_COLLATERALIZED
        assert call.deadline == T0 + timedelta(hours=5)
        assert EVENT_MARGIN_CALL_ISSUED in notifier.kinds("alice")

    def test_repeated_sweeps_keep_one_call(self, called):
        engine, _, _ = called
        sweep = engine.tick(T0 + timedelta(hours=2))
        assert sweep.issued == ()
        assert len(engine.store.list_margin_calls()) == 1


class TestScenarioD:

    def test_adding_the_deficit_resolves(self, called, notifier):
        engine, _, _ = called
        call = engine.store.get_active_margin_call("alice")
        engine.deposit("alice", "balanced", 200)
        resolved = engine.store.get_margin_call(call.call_id)
        assert resolved.status is MarginCallStatus.RESOLVED
        assert resolved.resolution is ResolutionMethod.ADD_COLLATERAL
        assert engine.get_health("alice").ratio >= Decimal("1.2")
        assert engine.store.get_active_margin_call("alice") is None
        assert EVENT_MARGIN_CALL_RESOLVED in notifier.kinds("alice")

    def test_resolve_margin_call_entry_point(self, called):
        engine, _, _ = called
        call = engine.resolve_margin_call("alice", ResolutionMethod.ADD_COLLATERAL, amount=200)
        assert call.status is MarginCallStatus.RESOLVED

    def test_too_little_keeps_call_active(self, called):
        engine, _, _ = called
        call = engine.resolve_margin_call("alice", ResolutionMethod.ADD_COLLATERAL, amount=199)
        assert call.status is MarginCallStatus.ACTIVE
        assert engine.store.get_position("alice", "balanced").deposited_of("BTC") == 1_199


class TestScenarioE:

    def test_deadline_passes_and_half_is_liquidated(self, called, insurance_fund, policy_registry, notifier):
        engine, oid, _ = called
        call = engine.store.get_active_margin_call("alice")
        sweep = engine.tick(call.deadline + timedelta(seconds=1))

        assert sweep.liquidated == ("alice",)
        position = engine.store.get_position("alice", "balanced")
        assert position.locked_of("BTC") == 400
        assert position.deposited_of("BTC") == 600

        (event,) = engine.store.liquidation_events
        assert event.liquidated_amount == {"BTC": 400}
        assert event.remaining_amount == {"BTC": 400}
        assert event.fraction == Decimal("0.5")
        assert event.call_id == call.call_id

        obligation = engine.store.get_obligation(oid)
        assert obligation.status is ObligationStatus.TRANSFERRED
        assert obligation.allocations == {"alice": 400}
        assert obligation.fund_share == 400
        assert INSURANCE_FUND in obligation.counterparty_set

        assert engine.store.get_margin_call(call.call_id).status is MarginCallStatus.LIQUIDATED
        assert insurance_fund.obligation_ids == [oid]
        assert policy_registry.status(oid) is ObligationStatus.TRANSFERRED
        kinds = notifier.kinds("alice")
        assert EVENT_PROVIDER_LIQUIDATED in kinds
        assert EVENT_OBLIGATION_TRANSFERRED in kinds
        assert engine.verify()['valid']

    def test_no_liquidation_at_the_deadline(self, called):
        engine, _, _ = called
        call = engine.store.get_active_margin_call("alice")
        sweep = engine.tick(call.deadline)
        assert sweep.liquidated == ()
        assert engine.store.liquidation_events == []

    def test_no_cascade_in_the_same_tick(self, called):
        engine, _, _ = called
        call = engine.store.get_active_margin_call("alice")
        engine.tick(call.deadline + timedelta(seconds=1))
        assert len(engine.store.liquidation_events) == 1
        assert engine.store.get_active_margin_call("alice") is None

    def test_deeper_drop_liquidates_once_then_calls_again(self, called, price_source):
        engine, _, _ = called
        call = engine.store.get_active_margin_call("alice")
        price_source.update_price("BTC", Decimal("30000"))

        sweep = engine.tick(call.deadline + timedelta(seconds=1))
        assert sweep.liquidated == ("alice",)
        assert sweep.reports["alice"].status is HealthStatus.UNDER_COLLATERALIZED
        assert len(engine.store.liquidation_events) == 1
        assert engine.store.get_active_margin_call("alice") is None

        sweep = engine.tick(call.deadline + timedelta(minutes=1))
        assert sweep.liquidated == ()
        assert sweep.issued == ("alice",)
        assert sweep.reports["alice"].ratio == Decimal("0.9")
        assert len(engine.store.liquidation_events) == 1
        fresh = engine.store.get_active_margin_call("alice")
        assert fresh.call_id != call.call_id
        assert fresh.deadline > engine.store.current_time
        assert engine.verify()['valid']
