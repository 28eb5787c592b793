"""
matching.py - Classification & Matching Engine

Maps a protection request onto exactly one risk tier and reserves the
collateral it needs from that tier's providers.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASSES (explicit inputs/outputs):
   - ProtectionRequest: what the buyer asks for
   - ReservationPlan: selected tier, required collateral, per-provider allocation

2. PURE CALCULATION FUNCTIONS (calculate_*, select_tier):
   - No PoolView; all inputs explicit

3. CONVENIENCE FUNCTIONS (plan_reservation, compute_reservation):
   - plan_reservation() reads the tier's positions and checks capacity
   - compute_reservation() re-plans against the view it is given and
     returns a PendingUpdate that locks capital and creates the obligation
     in one step

Key Formulas:
    protected_value_pct = protected_value / current_price
    required_collateral(PUT)  = ceil(protected_amount * protected_value / current_price)
    required_collateral(CALL) = protected_amount
    capacity check: TierAccount.total - TierAccount.locked >= required_collateral
    allocation: pro-rata to each position's available balance, largest remainder
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from ..core import (
    PoolView, PendingUpdate, StateChange, UpdateOrigin, OriginType,
    PolicyType, ProviderPosition, ProtectionObligation, RiskTier,
    ValidationError, NoMatchingTier, InsufficientTierCapital,
    TABLE_POSITIONS, TABLE_OBLIGATIONS, DEFAULT_ASSET,
    allocate_pro_rata, build_update, ceil_decimal, to_decimal, _check_amount,
)


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class ProtectionRequest:
    """
    A buyer's request for protection.

    Attributes:
        owner: Buyer id
        protected_value: Strike price
        protected_amount: Underlying amount to protect, smallest units
        duration: Protection period
        current_price: Price the request was quoted at (None: use the price source)
        policy_type: PUT (downside) or CALL (upside)
        asset: Underlying and collateral asset
    """
    owner: str
    protected_value: Decimal
    protected_amount: int
    duration: timedelta
    current_price: Optional[Decimal] = None
    policy_type: PolicyType = PolicyType.PUT
    asset: str = DEFAULT_ASSET

    def __post_init__(self):
        object.__setattr__(self, 'protected_value', to_decimal(self.protected_value))
        if self.current_price is not None:
            object.__setattr__(self, 'current_price', to_decimal(self.current_price))
            if self.current_price <= 0:
                raise ValidationError(f"current_price must be positive, got {self.current_price}")
        if not self.owner or not self.owner.strip():
            raise ValidationError("ProtectionRequest owner cannot be empty")
        if self.protected_value <= 0:
            raise ValidationError(f"protected_value must be positive, got {self.protected_value}")
        _check_amount('protected_amount', self.protected_amount)
        if self.protected_amount <= 0:
            raise ValidationError(f"protected_amount must be positive, got {self.protected_amount}")
        if self.duration <= timedelta(0):
            raise ValidationError(f"duration must be positive, got {self.duration}")
        if not isinstance(self.policy_type, PolicyType):
            raise ValidationError(f"Unknown policy type {self.policy_type!r}")


@dataclass(frozen=True, slots=True)
class ReservationPlan:
    """Outcome of classification and capacity checking, before anything is locked."""
    tier: str
    asset: str
    price: Decimal
    protected_value_pct: Decimal
    required_collateral: int
    allocations: Mapping[str, int]


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_protected_value_pct(protected_value: Decimal, current_price: Decimal) -> Decimal:
    if current_price <= 0:
        raise ValidationError(f"current_price must be positive, got {current_price}")
    return to_decimal(protected_value) / to_decimal(current_price)


def calculate_required_collateral(
    policy_type: PolicyType,
    protected_amount: int,
    protected_value: Decimal,
    current_price: Decimal,
) -> int:
    """
    Collateral units a new obligation must reserve.

    Example:
        >>> calculate_required_collateral(PolicyType.PUT, 300, Decimal("43000"), Decimal("50000"))
        258
    """
    if policy_type is PolicyType.CALL:
        return protected_amount
    return ceil_decimal(Decimal(protected_amount) * to_decimal(protected_value) / to_decimal(current_price))


def select_tier(
    tiers: Iterable[RiskTier],
    protected_value_pct: Decimal,
    duration: timedelta,
) -> RiskTier:
    """
    Pick the one tier that accepts the request.

    When ranges overlap, the narrowest range wins; ties go to the higher
    min_value_pct, then to the name.

    Raises:
        NoMatchingTier: if no active tier accepts the value pct and duration
    """
    candidates = [t for t in tiers if t.accepts(protected_value_pct, duration)]
    if not candidates:
        raise NoMatchingTier(
            f"No active tier accepts protected value pct {protected_value_pct} "
            f"for duration {duration}"
        )
    return min(candidates, key=lambda t: (t.width, -t.min_value_pct, t.name))


def calculate_allocations(
    positions: Iterable[ProviderPosition],
    asset: str,
    required: int,
    tier: str,
) -> Dict[str, int]:
    """
    Spread `required` over positions in proportion to their available balance.

    No position is asked for more than it has available.

    Raises:
        InsufficientTierCapital: if the positions cannot cover `required`
    """
    weights = {}
    for position in positions:
        available = position.available(asset)
        if available > 0:
            weights[position.provider_id] = available
    total = sum(weights.values())
    if total < required:
        raise InsufficientTierCapital(tier, required, total)
    return allocate_pro_rata(required, weights)


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def plan_reservation(
    view: PoolView,
    tiers: Mapping[str, RiskTier],
    request: ProtectionRequest,
    price: Optional[Decimal] = None,
) -> ReservationPlan:
    """
    Classify a request and check that its tier can back it.

    Args:
        view: Read-only pool state
        tiers: Tier snapshot
        request: The protection request
        price: Current price; defaults to request.current_price

    Raises:
        ValidationError: if no price is known
        NoMatchingTier / InsufficientTierCapital: on capacity failure
    """
    price = to_decimal(price) if price is not None else request.current_price
    if price is None:
        raise ValidationError("A current price is required to classify a request")

    pct = calculate_protected_value_pct(request.protected_value, price)
    tier = select_tier(tiers.values(), pct, request.duration)
    required = calculate_required_collateral(
        request.policy_type, request.protected_amount, request.protected_value, price,
    )

    account = view.get_tier_account(tier.name, request.asset)
    if account.available < required:
        raise InsufficientTierCapital(tier.name, required, account.available)

    eligible = [p for p in view.positions_in_tier(tier.name) if not view.is_halted(provider_id=p.provider_id)]
    allocations = calculate_allocations(eligible, request.asset, required, tier.name)

    return ReservationPlan(
        tier=tier.name,
        asset=request.asset,
        price=price,
        protected_value_pct=pct,
        required_collateral=required,
        allocations=allocations,
    )


def compute_reservation(
    view: PoolView,
    tiers: Mapping[str, RiskTier],
    request: ProtectionRequest,
    obligation_id: str,
    premium: int,
    price: Optional[Decimal] = None,
) -> PendingUpdate:
    """
    Lock collateral and create the obligation in a single update.

    The plan is recomputed against `view`, so the update is always consistent
    with the state it will be checked against.

    Returns:
        PendingUpdate with one position change per backing provider and the
        new Active obligation.
    """
    _check_amount('premium', premium)
    if premium < 0:
        raise ValidationError(f"premium cannot be negative, got {premium}")
    if view.get_obligation(obligation_id) is not None:
        raise ValidationError(f"Obligation {obligation_id} already exists")

    plan = plan_reservation(view, tiers, request, price)
    now = view.current_time

    changes: List[StateChange] = []
    for provider_id, units in sorted(plan.allocations.items()):
        old = view.get_position(provider_id, plan.tier)
        new = old.adjust(plan.asset, now, locked=units)
        changes.append(StateChange(TABLE_POSITIONS, old.key, old, new))

    obligation = ProtectionObligation(
        obligation_id=obligation_id,
        owner=request.owner,
        policy_type=request.policy_type,
        asset=plan.asset,
        protected_value=request.protected_value,
        protected_amount=request.protected_amount,
        premium=premium,
        tier=plan.tier,
        reserved=plan.required_collateral,
        allocations=plan.allocations,
        counterparty_set=frozenset(plan.allocations),
        created_at=now,
        expires_at=now + request.duration,
    )
    changes.append(StateChange(TABLE_OBLIGATIONS, obligation_id, None, obligation))

    return build_update(
        view, changes, UpdateOrigin(OriginType.BUYER, "reserve", obligation_id),
    )
