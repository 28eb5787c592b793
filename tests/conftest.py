"""
conftest.py - Shared pytest fixtures for protection pool tests

Provides common fixtures used across unit, functional and conformance tests:
- Tier snapshots and registries
- Stores seeded with provider capital and obligations
- Engines wired to in-memory collaborators
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Mapping, Optional

from protection_pool import (
    PoolStore, RiskTierRegistry, RiskTier, EngineConfig, ProtectionEngine,
    ProtectionRequest, ProviderPosition, ProtectionObligation, PolicyType,
    StaticPriceSource, FixedRatePremiumCalculator,
    InMemoryPolicyRegistry, InMemoryInsuranceFund, RecordingNotifier,
    compute_deposit, compute_reservation,
)


T0 = datetime(2025, 1, 1)
BTC_PRICE = Decimal("50000")


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def deposit(store: PoolStore, tiers: Mapping[str, RiskTier], provider_id: str, tier: str, amount: int) -> None:
    """Apply a deposit straight to the store."""
    store.apply(compute_deposit(store, tiers, provider_id, tier, amount))


def reserve(
    store: PoolStore,
    tiers: Mapping[str, RiskTier],
    obligation_id: str,
    protected_amount: int,
    protected_value: Decimal,
    price: Decimal = BTC_PRICE,
    premium: int = 0,
    duration: timedelta = timedelta(days=30),
    policy_type: PolicyType = PolicyType.PUT,
    owner: str = "buyer",
) -> ProtectionObligation:
    """Reserve collateral for a request straight on the store and return the obligation."""
    request = ProtectionRequest(
        owner=owner,
        protected_value=protected_value,
        protected_amount=protected_amount,
        duration=duration,
        current_price=price,
        policy_type=policy_type,
    )
    store.apply(compute_reservation(store, tiers, request, obligation_id, premium))
    return store.get_obligation(obligation_id)


def make_obligation(
    obligation_id: str = "pol-1",
    allocations: Optional[Mapping[str, int]] = None,
    tier: str = "balanced",
    protected_amount: int = 1000,
    protected_value: Decimal = Decimal("40000"),
    reserved: Optional[int] = None,
    policy_type: PolicyType = PolicyType.PUT,
    expires_at: datetime = T0 + timedelta(days=30),
    **kwargs,
) -> ProtectionObligation:
    allocations = dict(allocations if allocations is not None else {"alice": 800})
    return ProtectionObligation(
        obligation_id=obligation_id,
        owner="buyer",
        policy_type=policy_type,
        asset="BTC",
        protected_value=protected_value,
        protected_amount=protected_amount,
        premium=0,
        tier=tier,
        reserved=reserved if reserved is not None else sum(allocations.values()),
        allocations=allocations,
        counterparty_set=frozenset(allocations),
        created_at=T0,
        expires_at=expires_at,
        **kwargs,
    )


def make_position(provider_id: str = "alice", tier: str = "balanced", deposited: int = 1000, locked: int = 0, **kwargs) -> ProviderPosition:
    return ProviderPosition(
        provider_id=provider_id,
        tier=tier,
        deposited={"BTC": deposited},
        locked={"BTC": locked},
        **kwargs,
    )


# =============================================================================
# TIER FIXTURES
# =============================================================================

@pytest.fixture
def registry():
    return RiskTierRegistry()


@pytest.fixture
def tiers(registry):
    return registry.snapshot()


# =============================================================================
# STORE FIXTURES
# =============================================================================

@pytest.fixture
def store():
    return PoolStore("test", initial_time=T0)


@pytest.fixture
def funded_store(store, tiers):
    """Balanced tier holding 3,000 units from alice."""
    deposit(store, tiers, "alice", "balanced", 3_000)
    return store


@pytest.fixture
def call_store(store, tiers):
    """
    alice: deposited 1000 in balanced, 800 locked against one PUT
    (1000 units struck at 40,000, reserved at a price of 50,000).
    """
    deposit(store, tiers, "alice", "balanced", 1_000)
    reserve(store, tiers, "pol-1", 1_000, Decimal("40000"))
    return store


# =============================================================================
# ENGINE FIXTURES
# =============================================================================

@pytest.fixture
def price_source():
    return StaticPriceSource({"BTC": BTC_PRICE})


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def insurance_fund():
    return InMemoryInsuranceFund()


@pytest.fixture
def policy_registry():
    return InMemoryPolicyRegistry()


@pytest.fixture
def config():
    return EngineConfig(retry_backoff_seconds=0.0)


@pytest.fixture
def engine(price_source, store, registry, policy_registry, insurance_fund, notifier, config):
    engine = ProtectionEngine(
        price_source,
        store=store,
        tiers=registry,
        premium_calculator=FixedRatePremiumCalculator(Decimal("0.01")),
        policy_registry=policy_registry,
        insurance_fund=insurance_fund,
        notifier=notifier,
        config=config,
    )
    yield engine
    engine.close()
