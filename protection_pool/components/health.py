"""
health.py - Collateral Health Monitor

Computes a provider's collateralization ratio from current state plus
current prices and classifies it. Nothing here is persisted: a HealthReport
is re-derivable at any time, and only its classification drives side effects
(margin calls, liquidation, withdrawal refusal).

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASS (explicit output):
   - HealthReport: ratio, thresholds, classification and deficit

2. PURE CALCULATION FUNCTIONS (calculate_*):
   - Take positions, obligations, tiers and prices explicitly
   - No PoolView, no hidden state; trivially stress-testable

3. ADAPTER FUNCTION (assess_provider):
   - Reads the provider's rows from a PoolView once, then calls
     calculate_provider_health()

Key Formulas:
    collateral_value = sum(deposited[asset] * price[asset] over all positions)
    required_value   = sum(allocation / reserved * obligation_value(price))
        obligation_value(PUT)  = protected_amount * protected_value
                               (= required units amount*K/price, valued at price)
        obligation_value(CALL) = protected_amount * price
    ratio            = collateral_value / required_value   (+inf if nothing required)
    min_ratio        = locked-value-weighted min_collateralization_ratio of the
                       provider's tiers
    deficit          = max(0, min_ratio * required_value - collateral_value)
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional

from ..core import (
    PoolView, PolicyType, HealthStatus, ProviderPosition, ProtectionObligation, RiskTier,
    QUANTITY_EPSILON, INFINITE_RATIO, ceil_decimal,
)


@dataclass(frozen=True, slots=True)
class HealthReport:
    """
    Result of a health computation for one provider.

    Attributes:
        provider_id: Provider assessed
        collateral_value: Value of everything the provider deposited
        required_value: Value the provider's obligations require at current prices
        ratio: collateral_value / required_value (Infinity when nothing is required)
        min_ratio: Effective minimum collateralization ratio
        warning_buffer: Width of the warning band above min_ratio
        status: Healthy / Warning / UnderCollateralized
        deficit: Collateral value missing to reach min_ratio (0 if none)
        stale: True when computed from a last-known (stale) price
        as_of: Timestamp of the oldest price used
    """
    provider_id: str
    collateral_value: Decimal
    required_value: Decimal
    ratio: Decimal
    min_ratio: Decimal
    warning_buffer: Decimal
    status: HealthStatus
    deficit: Decimal
    stale: bool = False
    as_of: Optional[datetime] = None

    @property
    def below_minimum(self) -> bool:
        return self.ratio < self.min_ratio

    @property
    def is_healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY


# ============================================================================
# PURE CALCULATION FUNCTIONS - No PoolView, All Inputs Explicit
# ============================================================================

def classify_health(ratio: Decimal, min_ratio: Decimal, warning_buffer: Decimal) -> HealthStatus:
    """
    Classify a ratio against a tier minimum.

    ratio < min_ratio                     -> UNDER_COLLATERALIZED
    min_ratio <= ratio < min + buffer     -> WARNING
    otherwise                             -> HEALTHY
    """
    if ratio < min_ratio:
        return HealthStatus.UNDER_COLLATERALIZED
    if ratio < min_ratio + warning_buffer:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def _price_of(prices: Mapping[str, Decimal], asset: str) -> Decimal:
    if asset not in prices:
        raise ValueError(f"Missing price for asset '{asset}'")
    price = prices[asset]
    if price <= 0:
        raise ValueError(f"Price for '{asset}' must be positive, got {price}")
    return price


def calculate_obligation_value(obligation: ProtectionObligation, prices: Mapping[str, Decimal]) -> Decimal:
    """
    Value of the collateral an obligation requires at current prices.

    PUT: required units are amount * K / price, so their value is amount * K.
    CALL: required units are the protected amount itself, valued at price.
    """
    price = _price_of(prices, obligation.asset)
    if obligation.policy_type is PolicyType.PUT:
        return Decimal(obligation.protected_amount) * obligation.protected_value
    return Decimal(obligation.protected_amount) * price


def calculate_collateral_value(
    positions: Iterable[ProviderPosition],
    prices: Mapping[str, Decimal],
) -> Decimal:
    """Sum of deposited (locked and unlocked) amounts valued at current prices."""
    total = Decimal("0")
    for position in positions:
        for asset, amount in position.deposited.items():
            total += Decimal(amount) * _price_of(prices, asset)
    return total


def calculate_required_value(
    provider_id: str,
    obligations: Iterable[ProtectionObligation],
    prices: Mapping[str, Decimal],
) -> Decimal:
    """Provider's share of each live obligation's required value."""
    total = Decimal("0")
    for obligation in obligations:
        allocation = obligation.allocation_of(provider_id)
        if allocation <= 0 or not obligation.is_live or obligation.reserved <= 0:
            continue
        share = Decimal(allocation) / Decimal(obligation.reserved)
        total += share * calculate_obligation_value(obligation, prices)
    return total


def calculate_thresholds(
    positions: List[ProviderPosition],
    tiers: Mapping[str, RiskTier],
    prices: Mapping[str, Decimal],
) -> tuple:
    """
    Effective (min_ratio, warning_buffer) for a provider spread over tiers.

    Weighted by the value locked in each tier; when nothing is locked the
    strictest tier among the provider's positions applies.

    Raises:
        ValueError: if a position refers to an unknown tier
    """
    weighted_min = Decimal("0")
    weighted_buffer = Decimal("0")
    total_weight = Decimal("0")
    strictest_min = Decimal("1")
    strictest_buffer = Decimal("0")
    for position in positions:
        if position.tier not in tiers:
            raise ValueError(f"Position {position.key} refers to unknown tier '{position.tier}'")
        tier = tiers[position.tier]
        strictest_min = max(strictest_min, tier.min_collateralization_ratio)
        strictest_buffer = max(strictest_buffer, tier.warning_buffer_pct)
        weight = sum(
            (Decimal(amount) * _price_of(prices, asset) for asset, amount in position.locked.items()),
            Decimal("0"),
        )
        weighted_min += weight * tier.min_collateralization_ratio
        weighted_buffer += weight * tier.warning_buffer_pct
        total_weight += weight
    if total_weight > 0:
        return weighted_min / total_weight, weighted_buffer / total_weight
    return strictest_min, strictest_buffer


def calculate_provider_health(
    provider_id: str,
    positions: Iterable[ProviderPosition],
    obligations: Iterable[ProtectionObligation],
    tiers: Mapping[str, RiskTier],
    prices: Mapping[str, Decimal],
    stale: bool = False,
    as_of: Optional[datetime] = None,
) -> HealthReport:
    """
    Compute a provider's health from explicit inputs.

    PURE FUNCTION - All inputs explicit, no PoolView. Calling it twice with
    the same inputs yields an identical report.

    Args:
        provider_id: Provider to assess
        positions: All of the provider's positions
        obligations: Obligations the provider backs (others are ignored)
        tiers: Tier snapshot
        prices: Current price per asset
        stale: Carried into the report when prices are last-known values
        as_of: Carried into the report

    Returns:
        HealthReport

    Example:
        # Stress test: what if BTC drops 20%?
        stressed = {k: v * Decimal("0.8") for k, v in prices.items()}
        report = calculate_provider_health("alice", positions, obligations, tiers, stressed)
    """
    positions = [p for p in positions if p.provider_id == provider_id]
    collateral_value = calculate_collateral_value(positions, prices)
    required_value = calculate_required_value(provider_id, obligations, prices)
    min_ratio, warning_buffer = calculate_thresholds(positions, tiers, prices)

    if required_value < QUANTITY_EPSILON:
        return HealthReport(
            provider_id=provider_id,
            collateral_value=collateral_value,
            required_value=Decimal("0"),
            ratio=INFINITE_RATIO,
            min_ratio=min_ratio,
            warning_buffer=warning_buffer,
            status=HealthStatus.HEALTHY,
            deficit=Decimal("0"),
            stale=stale,
            as_of=as_of,
        )

    ratio = collateral_value / required_value
    deficit = max(Decimal("0"), min_ratio * required_value - collateral_value)
    return HealthReport(
        provider_id=provider_id,
        collateral_value=collateral_value,
        required_value=required_value,
        ratio=ratio,
        min_ratio=min_ratio,
        warning_buffer=warning_buffer,
        status=classify_health(ratio, min_ratio, warning_buffer),
        deficit=deficit,
        stale=stale,
        as_of=as_of,
    )


def collateral_needed(report: HealthReport, price: Decimal) -> int:
    """Smallest whole amount of an asset at `price` that covers the deficit."""
    if report.deficit <= 0:
        return 0
    if price <= 0:
        raise ValueError(f"Price must be positive, got {price}")
    return ceil_decimal(report.deficit / price)


# ============================================================================
# ADAPTER FUNCTION
# ============================================================================

def assess_provider(
    view: PoolView,
    tiers: Mapping[str, RiskTier],
    provider_id: str,
    prices: Mapping[str, Decimal],
    stale: bool = False,
    as_of: Optional[datetime] = None,
) -> HealthReport:
    """Load the provider's rows from the view and compute its HealthReport."""
    return calculate_provider_health(
        provider_id,
        view.positions_for_provider(provider_id),
        view.obligations_for_provider(provider_id),
        tiers,
        prices,
        stale=stale,
        as_of=as_of,
    )
