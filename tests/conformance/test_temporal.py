"""
Temporal Conformance Tests

INVARIANTS:
    pool time never moves backwards
    an active margin call's deadline never moves later
    an active margin call's severity never decreases
    clone_at(t) reproduces the state that was committed at t
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from datetime import datetime, timedelta
from decimal import Decimal

from protection_pool import (
    PoolStore, RiskTierRegistry, assess_provider, compute_margin_call_transition,
)

from tests.conftest import deposit, reserve


T0 = datetime(2025, 1, 1)
WARNING_GRACE = timedelta(hours=24)
EMERGENCY_GRACE = timedelta(hours=4)


class TestPoolClock:

    @given(st.lists(st.integers(min_value=0, max_value=10_000), min_size=1, max_size=20))
    @settings(max_examples=50)
    def test_time_only_moves_forward(self, steps):
        store = PoolStore("temporal", initial_time=T0)
        now = T0
        for minutes in steps:
            now += timedelta(minutes=minutes)
            store.advance_time(now)
            assert store.current_time == now
        with pytest.raises(ValueError):
            store.advance_time(now - timedelta(seconds=1))
        assert store.current_time == now


class TestMarginCallDeadlines:

    @given(
        st.lists(
            st.tuples(
                st.integers(min_value=30_000, max_value=60_000),
                st.integers(min_value=1, max_value=180),
            ),
            min_size=1, max_size=20,
        )
    )
    @settings(max_examples=50, deadline=None)
    def test_deadline_never_extends(self, path):
        store = PoolStore("temporal", initial_time=T0)
        tiers = RiskTierRegistry().snapshot()
        deposit(store, tiers, "alice", "balanced", 1_000)
        reserve(store, tiers, "pol-1", 1_000, Decimal("40000"))

        now = T0
        previous = None
        for price, minutes in path:
            now += timedelta(minutes=minutes)
            store.advance_time(now)
            report = assess_provider(store, tiers, "alice", {"BTC": Decimal(price)})
            store.apply(compute_margin_call_transition(store, report, WARNING_GRACE, EMERGENCY_GRACE))
            call = store.get_active_margin_call("alice")
            if call is not None and previous is not None and call.call_id == previous.call_id:
                assert call.deadline <= previous.deadline
                assert call.severity.severity >= previous.severity.severity
            if call is not None:
                assert call.deadline > call.issued_at
            previous = call

        assert store.verify_invariants()['valid']


class TestHistoricalClone:

    @given(st.lists(st.integers(min_value=1, max_value=1_000), min_size=1, max_size=10))
    @settings(max_examples=50, deadline=None)
    def test_clone_at_reproduces_history(self, amounts):
        store = PoolStore("temporal", initial_time=T0)
        tiers = RiskTierRegistry().snapshot()
        history = []
        for hour, amount in enumerate(amounts, start=1):
            store.advance_time(T0 + timedelta(hours=hour))
            deposit(store, tiers, "alice", "balanced", amount)
            history.append((store.current_time, dict(store.positions), dict(store.tier_accounts)))

        for when, positions, accounts in history:
            past = store.clone_at(when)
            assert past.positions == positions
            assert past.tier_accounts == accounts
            assert past.current_time == when

        with pytest.raises(ValueError):
            store.clone_at(store.current_time + timedelta(seconds=1))
