"""
provider_ledger.py - Provider Ledger

Capital operations on ProviderPositions: deposit, withdrawal, yield claim,
tier migration, and the lock/unlock bookkeeping shared with matching,
settlement and liquidation.

Withdrawals are the one operation whose refusal is a value rather than an
exception: check_withdrawal() returns a WithdrawalResult with a reason.

Key Formulas:
    available = deposited - locked
    withdrawal allowed iff no active margin call
                      and amount <= available
                      and projected health after withdrawal is Healthy
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from ..core import (
    PoolView, PendingUpdate, StateChange, UpdateOrigin, OriginType,
    ProviderPosition, RiskTier, PositionKey,
    ValidationError, TABLE_POSITIONS, DEFAULT_ASSET,
    build_update, empty_update, _check_amount,
)
from ..staging import StagedView
from .health import HealthReport, assess_provider


# Withdrawal refusal reasons
REASON_ACTIVE_MARGIN_CALL = "active_margin_call"
REASON_INSUFFICIENT_AVAILABLE = "insufficient_available"
REASON_UNHEALTHY_AFTER_WITHDRAWAL = "unhealthy_after_withdrawal"


@dataclass(frozen=True, slots=True)
class WithdrawalResult:
    """
    Outcome of a withdrawal request.

    ok is False with a reason for every business refusal; malformed input
    still raises ValidationError.
    """
    ok: bool
    provider_id: str
    amount: int
    tier: Optional[str] = None
    asset: str = DEFAULT_ASSET
    reason: Optional[str] = None
    health: Optional[HealthReport] = None


def _positive_amount(name: str, amount: int) -> None:
    _check_amount(name, amount)
    if amount <= 0:
        raise ValidationError(f"{name} must be positive, got {amount}")


def calculate_available(position: Optional[ProviderPosition], asset: str) -> int:
    if position is None:
        return 0
    return position.available(asset)


def resolve_position_tier(view: PoolView, provider_id: str, tier: Optional[str] = None) -> str:
    """
    Tier of the position an operation targets.

    Raises:
        ValidationError: if tier is omitted and the provider has zero or
            several positions
    """
    if tier is not None:
        return tier
    tiers = sorted({p.tier for p in view.positions_for_provider(provider_id)})
    if not tiers:
        raise ValidationError(f"Provider {provider_id} has no position")
    if len(tiers) > 1:
        raise ValidationError(
            f"Provider {provider_id} has positions in {tiers}; name the tier"
        )
    return tiers[0]


def calculate_unlock(
    positions: Iterable[ProviderPosition],
    asset: str,
    amount: int,
    preferred_tier: Optional[str] = None,
) -> Dict[PositionKey, int]:
    """
    Decide which positions release `amount` locked units.

    An obligation's allocation is recorded per provider, not per position,
    because migration can move locked capital between tiers. Units are taken
    from the preferred tier's position first, then from the others in key
    order.

    Raises:
        ValueError: if the positions hold less than `amount` locked
    """
    ordered = sorted(positions, key=lambda p: (p.tier != preferred_tier, p.key))
    remaining = amount
    taken: Dict[PositionKey, int] = {}
    for position in ordered:
        if remaining <= 0:
            break
        take = min(remaining, position.locked_of(asset))
        if take > 0:
            taken[position.key] = take
            remaining -= take
    if remaining > 0:
        raise ValueError(f"Cannot unlock {amount} {asset}: only {amount - remaining} locked")
    return taken


# ============================================================================
# DEPOSIT
# ============================================================================

def compute_deposit(
    view: PoolView,
    tiers: Mapping[str, RiskTier],
    provider_id: str,
    tier: str,
    amount: int,
    asset: str = DEFAULT_ASSET,
) -> PendingUpdate:
    """
    Add capital to (provider_id, tier), creating the position on first deposit.

    Raises:
        ValidationError: unknown or inactive tier, non-positive amount
    """
    _positive_amount('amount', amount)
    if tier not in tiers:
        raise ValidationError(f"Unknown tier '{tier}'")
    if not tiers[tier].active:
        raise ValidationError(f"Tier '{tier}' is not accepting deposits")

    old = view.get_position(provider_id, tier)
    base = old if old is not None else ProviderPosition(provider_id=provider_id, tier=tier)
    new = base.adjust(asset, view.current_time, deposited=amount)
    return build_update(
        view,
        [StateChange(TABLE_POSITIONS, new.key, old, new)],
        UpdateOrigin(OriginType.PROVIDER, "deposit", provider_id),
    )


# ============================================================================
# WITHDRAWAL
# ============================================================================

def compute_withdrawal(
    view: PoolView,
    provider_id: str,
    tier: str,
    amount: int,
    asset: str = DEFAULT_ASSET,
) -> PendingUpdate:
    """
    Remove unlocked capital from a position. Performs no health check.

    Raises:
        ValidationError: no position, non-positive amount, amount > available
    """
    _positive_amount('amount', amount)
    old = view.get_position(provider_id, tier)
    if old is None:
        raise ValidationError(f"Provider {provider_id} has no position in tier '{tier}'")
    if amount > old.available(asset):
        raise ValidationError(
            f"Withdrawal of {amount} {asset} exceeds available {old.available(asset)}"
        )
    new = old.adjust(asset, view.current_time, deposited=-amount)
    return build_update(
        view,
        [StateChange(TABLE_POSITIONS, old.key, old, new)],
        UpdateOrigin(OriginType.PROVIDER, "withdraw", provider_id),
    )


def check_withdrawal(
    view: PoolView,
    tiers: Mapping[str, RiskTier],
    provider_id: str,
    amount: int,
    prices: Mapping[str, Decimal],
    tier: Optional[str] = None,
    asset: str = DEFAULT_ASSET,
) -> Tuple[WithdrawalResult, PendingUpdate]:
    """
    Decide a withdrawal request and build its update.

    The update is empty whenever the result is a refusal. The projected
    health is computed against the state the withdrawal would leave.

    Returns:
        (WithdrawalResult, PendingUpdate)
    """
    _positive_amount('amount', amount)
    tier = resolve_position_tier(view, provider_id, tier)

    def refuse(reason: str, health: Optional[HealthReport] = None):
        result = WithdrawalResult(
            ok=False, provider_id=provider_id, amount=amount, tier=tier,
            asset=asset, reason=reason, health=health,
        )
        return result, empty_update(view)

    if view.get_active_margin_call(provider_id) is not None:
        return refuse(REASON_ACTIVE_MARGIN_CALL)
    if amount > calculate_available(view.get_position(provider_id, tier), asset):
        return refuse(REASON_INSUFFICIENT_AVAILABLE)

    update = compute_withdrawal(view, provider_id, tier, amount, asset)
    projected = assess_provider(StagedView(view).with_update(update), tiers, provider_id, prices)
    if not projected.is_healthy:
        return refuse(REASON_UNHEALTHY_AFTER_WITHDRAWAL, projected)

    result = WithdrawalResult(
        ok=True, provider_id=provider_id, amount=amount, tier=tier, asset=asset, health=projected,
    )
    return result, update


# ============================================================================
# YIELD
# ============================================================================

def compute_yield_claim(
    view: PoolView,
    provider_id: str,
    tier: str,
    asset: str = DEFAULT_ASSET,
) -> Tuple[PendingUpdate, int]:
    """
    Move all accrued yield of a position to yield_withdrawn.

    Returns:
        (PendingUpdate, claimed amount); the update is empty when nothing accrued.
    """
    old = view.get_position(provider_id, tier)
    if old is None:
        raise ValidationError(f"Provider {provider_id} has no position in tier '{tier}'")
    claimable = old.yield_accrued.get(asset, 0)
    if claimable <= 0:
        return empty_update(view), 0
    new = old.adjust(asset, view.current_time, yield_accrued=-claimable, yield_withdrawn=claimable)
    update = build_update(
        view,
        [StateChange(TABLE_POSITIONS, old.key, old, new)],
        UpdateOrigin(OriginType.PROVIDER, "claim_yield", provider_id),
    )
    return update, claimable


# ============================================================================
# TIER MIGRATION
# ============================================================================

def _merge_amounts(a: Mapping[str, int], b: Mapping[str, int]) -> Dict[str, int]:
    merged = dict(a)
    for asset, amount in b.items():
        merged[asset] = merged.get(asset, 0) + amount
    return merged


def compute_tier_migration(
    view: PoolView,
    tiers: Mapping[str, RiskTier],
    provider_id: str,
    source: str,
    target: str,
) -> PendingUpdate:
    """
    Move a whole position (deposits, locks and yield) into another tier.

    Obligations keep their original tier; only the capital backing them
    moves, so the provider is measured against the target tier's thresholds.

    Raises:
        ValidationError: unknown/inactive target, target not strictly less
            demanding than the source, or no position in the source tier
    """
    if source == target:
        raise ValidationError("Migration source and target tiers are the same")
    if target not in tiers or source not in tiers:
        raise ValidationError(f"Unknown tier in migration {source} -> {target}")
    if not tiers[target].active:
        raise ValidationError(f"Tier '{target}' is not active")
    if tiers[target].min_collateralization_ratio >= tiers[source].min_collateralization_ratio:
        raise ValidationError(
            f"Target tier '{target}' must have a lower minimum ratio than '{source}'"
        )

    old_source = view.get_position(provider_id, source)
    if old_source is None or old_source.is_empty():
        raise ValidationError(f"Provider {provider_id} has no position in tier '{source}'")

    now = view.current_time
    old_target = view.get_position(provider_id, target)
    base = old_target if old_target is not None else ProviderPosition(provider_id=provider_id, tier=target)
    new_target = ProviderPosition(
        provider_id=provider_id,
        tier=target,
        deposited=_merge_amounts(base.deposited, old_source.deposited),
        locked=_merge_amounts(base.locked, old_source.locked),
        yield_accrued=_merge_amounts(base.yield_accrued, old_source.yield_accrued),
        yield_withdrawn=base.yield_withdrawn,
        last_update=now,
    )
    new_source = ProviderPosition(
        provider_id=provider_id,
        tier=source,
        yield_withdrawn=old_source.yield_withdrawn,
        last_update=now,
    )
    changes: List[StateChange] = [
        StateChange(TABLE_POSITIONS, old_source.key, old_source, new_source),
        StateChange(TABLE_POSITIONS, new_target.key, old_target, new_target),
    ]
    return build_update(view, changes, UpdateOrigin(OriginType.PROVIDER, "migrate", provider_id))
