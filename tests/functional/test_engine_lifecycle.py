"""
test_engine_lifecycle.py - ProtectionEngine operations end to end

Tests cover:
1. Reservation, premium and expiry through tick()
2. Exercise and cancellation with the policy registry
3. Withdrawals and yield claims
4. Margin call resolution by migration and self-liquidation
5. Deferred liquidations (insurance fund failure, stale prices)
6. Concurrent provider operations
"""

import pytest
import threading
from datetime import timedelta
from decimal import Decimal

from protection_pool import (
    ProtectionEngine, ProtectionRequest, EngineConfig, TimeSeriesPriceSource,
    FixedRatePremiumCalculator, RecordingNotifier, InMemoryPolicyRegistry,
    PoolStore, ObligationStatus, MarginCallStatus, ResolutionMethod,
    ValidationError, PriceStale,
)
from protection_pool.components.provider_ledger import (
    REASON_ACTIVE_MARGIN_CALL, REASON_INSUFFICIENT_AVAILABLE, REASON_UNHEALTHY_AFTER_WITHDRAWAL,
)

from tests.conftest import T0


def put_request(amount, strike, days=30, owner="bob"):
    return ProtectionRequest(
        owner=owner, protected_value=Decimal(strike), protected_amount=amount,
        duration=timedelta(days=days),
    )


class TestReservationAndPremium:

    def test_premium_split_to_providers_and_platform(self, engine, policy_registry):
        engine.deposit("alice", "balanced", 1_000)
        engine.deposit("bob", "balanced", 3_000)
        oid = engine.classify_and_reserve(put_request(3_000, "43000"))
        # 3,000 * 1% = 30; 3 to the platform, 27 split 1:3
        assert policy_registry.policies[oid]["premium"] == 30
        assert engine.store.get_platform_fees("BTC") == 3
        assert engine.store.get_position("alice", "balanced").yield_accrued == {"BTC": 6}
        assert engine.store.get_position("bob", "balanced").yield_accrued == {"BTC": 20}
        assert engine.store.get_remainder("balanced", "BTC") == 1

    def test_reservation_and_premium_are_one_update(self, engine):
        engine.deposit("alice", "balanced", 3_000)
        log_length = len(engine.store.update_log)
        engine.classify_and_reserve(put_request(3_000, "43000"))
        assert len(engine.store.update_log) == log_length + 1
        assert engine.verify()['valid']

    def test_halted_provider_does_not_block_the_tier(self, engine, policy_registry):
        engine.deposit("alice", "balanced", 3_000)
        engine.deposit("carol", "balanced", 3_000)
        engine.store.halted_providers["carol"] = "manual review"

        oid = engine.classify_and_reserve(put_request(300, "43000"))
        # premium 3, no fee; half would go to carol and stays in the remainder
        assert engine.store.get_obligation(oid).allocations == {"alice": 258}
        assert policy_registry.status(oid) is ObligationStatus.ACTIVE
        assert engine.store.get_position("alice", "balanced").yield_accrued == {"BTC": 1}
        assert engine.store.get_position("carol", "balanced").yield_accrued == {}
        assert engine.store.get_remainder("balanced", "BTC") == 2

        split = engine.distribute_premium("balanced", 1_000)
        assert split.shares == {"alice": 451}
        assert engine.store.get_remainder("balanced", "BTC") == 451

        engine.store.clear_halt(provider_id="carol")
        split = engine.distribute_premium("balanced", 100)
        assert split.shares == {"alice": 270, "carol": 270}
        assert engine.verify()['valid']

    def test_claim_yield(self, engine):
        engine.deposit("alice", "balanced", 3_000)
        engine.classify_and_reserve(put_request(300, "43000"))
        assert engine.claim_yield("alice") == 3
        assert engine.claim_yield("alice") == 0
        assert engine.store.get_position("alice", "balanced").yield_withdrawn == {"BTC": 3}


class TestSettlement:

    def test_expiry_through_tick(self, engine, policy_registry):
        engine.deposit("alice", "balanced", 3_000)
        oid = engine.classify_and_reserve(put_request(300, "43000"))
        engine.tick(T0 + timedelta(days=29))
        assert engine.store.get_obligation(oid).status is ObligationStatus.ACTIVE

        engine.tick(T0 + timedelta(days=30))
        assert engine.store.get_obligation(oid).status is ObligationStatus.EXPIRED
        assert policy_registry.status(oid) is ObligationStatus.EXPIRED
        assert engine.store.get_tier_account("balanced", "BTC").locked == 0
        assert engine.scheduler.pending_count() == 0

    def test_exercise(self, engine, policy_registry):
        engine.deposit("alice", "balanced", 1_000)
        oid = engine.classify_and_reserve(put_request(1_000, "40000"))
        result = engine.exercise(oid, Decimal("32000"))
        assert result.payout == 250
        assert result.provider_payments == {"alice": 250}
        assert policy_registry.status(oid) is ObligationStatus.EXERCISED
        assert engine.store.get_position("alice", "balanced").deposited_of("BTC") == 750

    def test_cancel(self, engine, policy_registry):
        engine.deposit("alice", "balanced", 1_000)
        oid = engine.classify_and_reserve(put_request(1_000, "40000"))
        engine.cancel(oid)
        assert policy_registry.status(oid) is ObligationStatus.CANCELED
        assert engine.store.get_tier_account("balanced", "BTC").locked == 0
        # the scheduled expiry finds nothing left to do
        engine.tick(T0 + timedelta(days=31))
        assert engine.store.get_obligation(oid).status is ObligationStatus.CANCELED


class RecordingPolicyRegistry(InMemoryPolicyRegistry):

    def __init__(self):
        super().__init__()
        self.settlements = []

    def mark_exercised(self, obligation_id):
        self.settlements.append(("exercised", obligation_id))
        super().mark_exercised(obligation_id)

    def mark_expired(self, obligation_id):
        self.settlements.append(("expired", obligation_id))
        super().mark_expired(obligation_id)

    def mark_canceled(self, obligation_id):
        self.settlements.append(("canceled", obligation_id))
        super().mark_canceled(obligation_id)


class TestRegistryNotifications:

    @pytest.fixture
    def policy_registry(self):
        return RecordingPolicyRegistry()

    @pytest.fixture
    def transferred(self, engine, price_source):
        """alice is liquidated; half of her PUT now sits with the insurance fund."""
        engine.deposit("alice", "balanced", 1_000)
        oid = engine.classify_and_reserve(put_request(1_000, "40000"))
        price_source.update_price("BTC", Decimal("40000"))
        engine.tick(T0 + timedelta(hours=1))
        call = engine.store.get_active_margin_call("alice")
        engine.tick(call.deadline + timedelta(seconds=1))
        assert engine.store.get_obligation(oid).status is ObligationStatus.TRANSFERRED
        return engine, oid

    def test_exercise_of_transferred_obligation_is_not_reported_as_exercised(self, transferred, policy_registry):
        engine, oid = transferred
        result = engine.exercise(oid, Decimal("32000"))
        assert result.payout == 250
        assert result.fund_payment == 125
        assert engine.store.get_obligation(oid).status is ObligationStatus.TRANSFERRED
        assert policy_registry.settlements == []
        assert policy_registry.status(oid) is ObligationStatus.TRANSFERRED

    def test_expiry_of_transferred_obligation_is_not_reported_as_expired(self, transferred, policy_registry):
        engine, oid = transferred
        engine.tick(T0 + timedelta(days=30))
        assert engine.store.get_obligation(oid).allocations == {}
        assert policy_registry.settlements == []

    def test_exercise_reported_once(self, engine, policy_registry):
        engine.deposit("alice", "balanced", 1_000)
        oid = engine.classify_and_reserve(put_request(1_000, "40000"))
        engine.exercise(oid, Decimal("32000"))
        with pytest.raises(ValidationError):
            engine.exercise(oid, Decimal("32000"))
        assert policy_registry.settlements == [("exercised", oid)]

    def test_cancel_reported_once(self, engine, policy_registry):
        engine.deposit("alice", "balanced", 1_000)
        oid = engine.classify_and_reserve(put_request(1_000, "40000"))
        engine.cancel(oid)
        with pytest.raises(ValidationError):
            engine.cancel(oid)
        engine.tick(T0 + timedelta(days=31))
        assert policy_registry.settlements == [("canceled", oid)]


class TestWithdrawals:

    def test_free_capital(self, engine):
        engine.deposit("alice", "balanced", 3_000)
        engine.classify_and_reserve(put_request(300, "43000"))
        result = engine.request_withdrawal("alice", 1_000)
        assert result.ok
        assert engine.store.get_position("alice", "balanced").deposited_of("BTC") == 2_000

    def test_refusal_reasons(self, engine, price_source):
        engine.deposit("alice", "balanced", 1_000)
        engine.classify_and_reserve(put_request(1_000, "40000"))
        assert engine.request_withdrawal("alice", 300).reason == REASON_INSUFFICIENT_AVAILABLE
        assert engine.request_withdrawal("alice", 100).reason == REASON_UNHEALTHY_AFTER_WITHDRAWAL

        engine.tick(T0 + timedelta(hours=1))
        assert engine.store.get_active_margin_call("alice") is not None
        assert engine.request_withdrawal("alice", 1).reason == REASON_ACTIVE_MARGIN_CALL
        assert engine.store.get_position("alice", "balanced").deposited_of("BTC") == 1_000


class TestResolution:

    @pytest.fixture
    def under_water(self, engine, price_source):
        engine.deposit("alice", "balanced", 1_000)
        engine.classify_and_reserve(put_request(1_000, "40000"))
        return engine

    def test_migration_to_a_less_demanding_tier(self, under_water, price_source):
        engine = under_water
        price_source.update_price("BTC", Decimal("45000"))
        engine.tick(T0 + timedelta(hours=1))
        call = engine.resolve_margin_call(
            "alice", ResolutionMethod.MIGRATE_TIER, target_tier="conservative",
        )
        assert call.status is MarginCallStatus.RESOLVED
        assert call.resolution is ResolutionMethod.MIGRATE_TIER
        assert engine.store.get_position("alice", "conservative").locked_of("BTC") == 800
        assert engine.store.get_position("alice", "balanced").deposited == {}
        assert engine.verify()['valid']

    def test_self_liquidation(self, under_water, price_source, insurance_fund):
        engine = under_water
        price_source.update_price("BTC", Decimal("40000"))
        engine.tick(T0 + timedelta(hours=1))
        call = engine.resolve_margin_call("alice", ResolutionMethod.SELF_LIQUIDATE, fraction=Decimal("0.5"))
        assert call.status is MarginCallStatus.RESOLVED
        assert call.resolution is ResolutionMethod.SELF_LIQUIDATE
        (event,) = engine.store.liquidation_events
        assert event.voluntary
        assert len(insurance_fund.received) == 1

    def test_price_recovery(self, under_water, price_source):
        engine = under_water
        price_source.update_price("BTC", Decimal("40000"))
        engine.tick(T0 + timedelta(hours=1))
        price_source.update_price("BTC", Decimal("48000"))
        call = engine.resolve_margin_call("alice", ResolutionMethod.PRICE_RECOVERY)
        assert call.status is MarginCallStatus.RESOLVED

    def test_requires_an_active_call(self, under_water):
        with pytest.raises(ValidationError):
            under_water.resolve_margin_call("alice", ResolutionMethod.PRICE_RECOVERY)

    def test_warning_call_opened_at_purchase_price(self, under_water):
        sweep = under_water.tick(T0 + timedelta(minutes=1))
        assert sweep.issued == ("alice",)
        assert sweep.reports["alice"].ratio == Decimal("1.25")


class TestDeferredLiquidation:

    def test_insurance_fund_failure_defers_until_next_tick(self, engine, price_source, insurance_fund):
        engine.deposit("alice", "balanced", 1_000)
        engine.classify_and_reserve(put_request(1_000, "40000"))
        price_source.update_price("BTC", Decimal("40000"))
        engine.tick(T0 + timedelta(hours=1))
        deadline = engine.store.get_active_margin_call("alice").deadline

        insurance_fund.fail_next = 1
        sweep = engine.tick(deadline + timedelta(seconds=1))
        assert sweep.deferred == ("alice",)
        assert engine.store.liquidation_events == []
        assert engine.store.get_position("alice", "balanced").locked_of("BTC") == 800

        sweep = engine.tick(deadline + timedelta(minutes=1))
        assert sweep.liquidated == ("alice",)

    def test_stale_price_defers_liquidation(self):
        source = TimeSeriesPriceSource({"BTC": [(T0, 50000), (T0 + timedelta(hours=1), 40000)]})
        engine = ProtectionEngine(
            source,
            store=PoolStore("stale", initial_time=T0),
            premium_calculator=FixedRatePremiumCalculator(Decimal("0.01")),
            notifier=RecordingNotifier(),
            config=EngineConfig(retry_backoff_seconds=0.0),
        )
        try:
            engine.deposit("alice", "balanced", 1_000)
            engine.classify_and_reserve(put_request(1_000, "40000"))
            assert engine.tick(T0 + timedelta(hours=1)).issued == ("alice",)

            sweep = engine.tick(T0 + timedelta(hours=6))
            assert sweep.stale
            assert sweep.deferred == ("alice",)
            assert engine.store.liquidation_events == []

            source.add_price("BTC", T0 + timedelta(hours=7), 40000)
            assert engine.tick(T0 + timedelta(hours=7)).liquidated == ("alice",)
        finally:
            engine.close()

    def test_stale_price_refuses_new_protection(self):
        source = TimeSeriesPriceSource({"BTC": [(T0, 50000)]})
        engine = ProtectionEngine(
            source,
            store=PoolStore("stale", initial_time=T0),
            premium_calculator=FixedRatePremiumCalculator(Decimal("0.01")),
            config=EngineConfig(retry_backoff_seconds=0.0),
        )
        try:
            engine.deposit("alice", "balanced", 3_000)
            engine.store.advance_time(T0 + timedelta(hours=1))
            with pytest.raises(PriceStale):
                engine.classify_and_reserve(put_request(300, "43000"))
            assert engine.store.obligations == {}
        finally:
            engine.close()


class TestNotifierIsolation:

    def test_failing_notifier_does_not_roll_back(self, store, registry, price_source):
        class BrokenNotifier:
            def notify(self, event):
                raise RuntimeError("mail server down")

        engine = ProtectionEngine(
            price_source, store=store, tiers=registry,
            premium_calculator=FixedRatePremiumCalculator(Decimal("0.01")),
            notifier=BrokenNotifier(),
            config=EngineConfig(retry_backoff_seconds=0.0),
        )
        try:
            engine.deposit("alice", "balanced", 1_000)
            engine.classify_and_reserve(put_request(1_000, "40000"))
            sweep = engine.tick(T0 + timedelta(minutes=1))
            assert sweep.issued == ("alice",)
            assert engine.store.get_active_margin_call("alice") is not None
        finally:
            engine.close()


class TestConcurrency:

    @pytest.fixture
    def config(self):
        return EngineConfig(retry_backoff_seconds=0.0, max_conflict_retries=10)

    def test_parallel_deposits_and_reservations(self, engine):
        errors = []

        def provider(i):
            try:
                engine.deposit(f"p{i}", "balanced", 1_000)
            except Exception as exc:
                errors.append(exc)

        def buyer(i):
            try:
                engine.classify_and_reserve(put_request(100, "43000", owner=f"b{i}"))
            except Exception as exc:
                errors.append(exc)

        engine.deposit("seed", "balanced", 10_000)
        threads = [threading.Thread(target=provider, args=(i,)) for i in range(8)]
        threads += [threading.Thread(target=buyer, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        account = engine.store.get_tier_account("balanced", "BTC")
        assert account.total == 18_000
        assert account.locked == 8 * 86
        assert account.active_obligation_count == 8
        assert engine.verify()['valid']
