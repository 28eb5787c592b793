"""
liquidation.py - Liquidation Engine

Partial seizure of a provider's locked collateral and handoff of the
matching share of its obligations to the Insurance Fund.

Key Formulas (per asset):
    seized[position] = max(1, floor(locked[position] * fraction))   if locked > 0
    seized           = sum(seized[position])
    share[obligation] = largest-remainder split of `seized` by allocation
    remaining_amount  = locked_before - seized

Effects, all in one update:
    - position.locked and position.deposited both fall by the seized units
    - each obligation receiving a share: allocation -= share,
      fund_share += share, status Active -> Transferred, INSURANCE_FUND joins
      the counterparty set, providers left with no allocation leave it
    - the margin call (forced liquidation only) becomes Liquidated
    - one LiquidationEvent is appended

There is no cascade: a provider still unhealthy afterwards gets a fresh
margin call on the next sweep.
"""

from __future__ import annotations
from dataclasses import replace
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Tuple

from ..core import (
    PoolView, PendingUpdate, StateChange, UpdateOrigin, OriginType, PoolEvent,
    MarginCall, MarginCallStatus, ObligationStatus, LiquidationEvent, ProtectionObligation,
    ValidationError, INSURANCE_FUND,
    TABLE_POSITIONS, TABLE_OBLIGATIONS, TABLE_MARGIN_CALLS,
    EVENT_PROVIDER_LIQUIDATED, EVENT_OBLIGATION_TRANSFERRED,
    MIN_LIQUIDATION_FRACTION, MAX_LIQUIDATION_FRACTION,
    allocate_pro_rata, build_update, derive_id, empty_update, floor_decimal, to_decimal,
)


def validate_liquidation_fraction(
    fraction,
    bounds: Tuple[Decimal, Decimal] = (MIN_LIQUIDATION_FRACTION, MAX_LIQUIDATION_FRACTION),
) -> Decimal:
    """
    Raises:
        ValidationError: if fraction lies outside the inclusive bounds
    """
    fraction = to_decimal(fraction)
    low, high = bounds
    if not (low <= fraction <= high):
        raise ValidationError(f"Liquidation fraction {fraction} outside [{low}, {high}]")
    return fraction


def calculate_seizure(locked: int, fraction: Decimal) -> int:
    """
    Units seized from one position.

    Never zero while something is locked, never more than is locked.

    Example:
        >>> calculate_seizure(800, Decimal("0.5"))
        400
        >>> calculate_seizure(1, Decimal("0.5"))
        1
    """
    if locked <= 0:
        return 0
    return min(locked, max(1, floor_decimal(Decimal(locked) * fraction)))


def transfer_to_fund(
    obligation: ProtectionObligation,
    provider_id: str,
    units: int,
) -> ProtectionObligation:
    """Move `units` of one provider's allocation on an obligation to the Insurance Fund."""
    allocations = dict(obligation.allocations)
    allocations[provider_id] = allocations.get(provider_id, 0) - units
    counterparties = set(obligation.counterparty_set) | {INSURANCE_FUND}
    if allocations[provider_id] <= 0:
        counterparties.discard(provider_id)
    status = obligation.status
    if status is ObligationStatus.ACTIVE:
        status = ObligationStatus.TRANSFERRED
    return replace(
        obligation,
        allocations=allocations,
        fund_share=obligation.fund_share + units,
        counterparty_set=frozenset(counterparties),
        status=status,
    )


def compute_liquidation(
    view: PoolView,
    provider_id: str,
    fraction: Decimal,
    prices: Mapping[str, Decimal],
    call: Optional[MarginCall] = None,
    voluntary: bool = False,
) -> PendingUpdate:
    """
    Seize `fraction` of a provider's locked collateral for the Insurance Fund.

    Args:
        view: Read-only pool state
        provider_id: Provider being liquidated
        fraction: Share of locked collateral to seize (validated by the caller
            against governance bounds; voluntary liquidations accept (0, 1])
        prices: Price per asset, recorded on the LiquidationEvent
        call: Active margin call this liquidation ends (forced only)
        voluntary: Self-liquidation chosen by the provider

    Returns:
        PendingUpdate carrying the position, obligation and call changes plus
        the LiquidationEvent, or an empty update if nothing is locked.
    """
    fraction = to_decimal(fraction)
    if not (Decimal("0") < fraction <= Decimal("1")):
        raise ValidationError(f"Liquidation fraction must be within (0, 1], got {fraction}")

    now = view.current_time
    changes: List[StateChange] = []
    seized_by_asset: Dict[str, int] = {}
    locked_before: Dict[str, int] = {}

    for position in view.positions_for_provider(provider_id):
        new = position
        for asset in sorted(position.locked):
            locked = position.locked_of(asset)
            locked_before[asset] = locked_before.get(asset, 0) + locked
            seized = calculate_seizure(locked, fraction)
            if seized > 0:
                seized_by_asset[asset] = seized_by_asset.get(asset, 0) + seized
                new = new.adjust(asset, now, deposited=-seized, locked=-seized)
        if new is not position:
            changes.append(StateChange(TABLE_POSITIONS, position.key, position, new))

    if not seized_by_asset:
        return empty_update(view)

    transferred: List[str] = []
    notices: List[PoolEvent] = []
    obligations = view.obligations_for_provider(provider_id)
    for asset, seized in sorted(seized_by_asset.items()):
        weights = {o.obligation_id: o.allocation_of(provider_id) for o in obligations if o.asset == asset}
        shares = allocate_pro_rata(seized, weights)
        for obligation in obligations:
            units = shares.get(obligation.obligation_id, 0)
            if units <= 0:
                continue
            new = transfer_to_fund(obligation, provider_id, units)
            changes.append(StateChange(TABLE_OBLIGATIONS, obligation.obligation_id, obligation, new))
            transferred.append(obligation.obligation_id)
            notices.append(PoolEvent(
                kind=EVENT_OBLIGATION_TRANSFERRED,
                provider_id=provider_id,
                timestamp=now,
                details=(("obligation_id", obligation.obligation_id), ("units", units)),
            ))

    call_id = None
    if call is not None:
        call_id = call.call_id
        if not voluntary:
            closed = replace(call, status=MarginCallStatus.LIQUIDATED, resolved_at=now)
            changes.append(StateChange(TABLE_MARGIN_CALLS, call.call_id, call, closed))

    event = LiquidationEvent(
        event_id=derive_id("liq", provider_id, now, call_id, voluntary, locked_before),
        provider_id=provider_id,
        liquidated_amount=dict(seized_by_asset),
        remaining_amount={a: locked_before[a] - s for a, s in seized_by_asset.items()},
        liquidation_price={a: to_decimal(prices[a]) for a in seized_by_asset if a in prices},
        obligations_transferred=tuple(sorted(set(transferred))),
        timestamp=now,
        fraction=fraction,
        call_id=call_id,
        voluntary=voluntary,
    )
    notices.insert(0, PoolEvent(
        kind=EVENT_PROVIDER_LIQUIDATED,
        provider_id=provider_id,
        timestamp=now,
        details=(
            ("event_id", event.event_id),
            ("call_id", call_id),
            ("voluntary", voluntary),
            ("liquidated", dict(seized_by_asset)),
        ),
    ))

    origin = UpdateOrigin(
        OriginType.PROVIDER if voluntary else OriginType.MONITOR,
        "self_liquidate" if voluntary else "liquidate",
        provider_id,
    )
    return build_update(view, changes, origin, liquidations=[event], notices=notices)
