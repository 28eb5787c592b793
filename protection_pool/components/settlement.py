"""
settlement.py - Obligation settlement (expire / exercise / cancel)

Every settlement path releases the obligation's remaining provider
allocations. The status moves Active -> Expired / Exercised / Canceled; an
obligation already Transferred to the Insurance Fund keeps that status and
only has its allocations released.

Exercise payout, in units of the obligation's asset at settlement price S:
    PUT:  floor(protected_amount * max(K - S, 0) / S)
    CALL: floor(protected_amount * max(S - K, 0) / S)

Each provider owes floor(payout * allocation / reserved), paid out of its
deposited balance once its locks are released. The rest of the payout is the
Insurance Fund's. A provider that cannot cover its share leaves a shortfall,
reported on the ExerciseResult.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Dict, List, Mapping, Tuple

from ..core import (
    PoolView, PendingUpdate, StateChange, UpdateOrigin, OriginType,
    PolicyType, ObligationStatus, ProtectionObligation, ProviderPosition, PositionKey,
    ValidationError, TABLE_POSITIONS, TABLE_OBLIGATIONS,
    build_update, empty_update, floor_decimal, to_decimal,
)
from .provider_ledger import calculate_unlock


@dataclass(frozen=True, slots=True)
class ExerciseResult:
    obligation_id: str
    settlement_price: Decimal
    payout: int
    provider_payments: Mapping[str, int] = field(default_factory=dict)
    shortfalls: Mapping[str, int] = field(default_factory=dict)
    fund_payment: int = 0

    @property
    def paid_by_providers(self) -> int:
        return sum(self.provider_payments.values())


def calculate_payout(
    policy_type: PolicyType,
    protected_amount: int,
    strike: Decimal,
    settlement_price: Decimal,
) -> int:
    """
    Example:
        >>> calculate_payout(PolicyType.PUT, 1000, Decimal("40000"), Decimal("32000"))
        250
    """
    strike = to_decimal(strike)
    settlement_price = to_decimal(settlement_price)
    if settlement_price <= 0:
        raise ValidationError(f"settlement price must be positive, got {settlement_price}")
    if policy_type is PolicyType.PUT:
        intrinsic = max(strike - settlement_price, Decimal("0"))
    else:
        intrinsic = max(settlement_price - strike, Decimal("0"))
    return floor_decimal(Decimal(protected_amount) * intrinsic / settlement_price)


def _release_changes(
    view: PoolView,
    obligation: ProtectionObligation,
) -> Dict[PositionKey, Tuple[ProviderPosition, ProviderPosition]]:
    """(old, new) positions after unlocking every allocation of the obligation."""
    now = view.current_time
    staged: Dict[PositionKey, Tuple[ProviderPosition, ProviderPosition]] = {}
    for provider_id, units in sorted(obligation.allocations.items()):
        positions = view.positions_for_provider(provider_id)
        for key, amount in calculate_unlock(positions, obligation.asset, units, obligation.tier).items():
            old, current = staged.get(key, (view.get_position(*key),) * 2)
            staged[key] = (old, current.adjust(obligation.asset, now, locked=-amount))
    return staged


def _released(obligation: ProtectionObligation, status: ObligationStatus) -> ProtectionObligation:
    if obligation.status is ObligationStatus.TRANSFERRED:
        status = ObligationStatus.TRANSFERRED
    return replace(obligation, allocations={}, status=status)


def _load(view: PoolView, obligation_id: str) -> ProtectionObligation:
    obligation = view.get_obligation(obligation_id)
    if obligation is None:
        raise ValidationError(f"Unknown obligation {obligation_id}")
    return obligation


def _settlement_update(
    view: PoolView,
    obligation: ProtectionObligation,
    new_obligation: ProtectionObligation,
    positions: Dict[PositionKey, Tuple[ProviderPosition, ProviderPosition]],
    source_id: str,
) -> PendingUpdate:
    changes: List[StateChange] = [
        StateChange(TABLE_POSITIONS, key, old, new) for key, (old, new) in sorted(positions.items())
    ]
    changes.append(StateChange(TABLE_OBLIGATIONS, obligation.obligation_id, obligation, new_obligation))
    return build_update(
        view, changes, UpdateOrigin(OriginType.LIFECYCLE, source_id, obligation.obligation_id),
    )


def compute_expiry(view: PoolView, obligation_id: str) -> PendingUpdate:
    """
    Expire an obligation at or after its expiry time.

    Returns an empty update for an obligation that is already settled.

    Raises:
        ValidationError: unknown obligation, or expiry time not yet reached
    """
    obligation = _load(view, obligation_id)
    if obligation.status not in (ObligationStatus.ACTIVE, ObligationStatus.TRANSFERRED):
        return empty_update(view)
    if obligation.status is ObligationStatus.TRANSFERRED and not obligation.allocations:
        return empty_update(view)
    if view.current_time < obligation.expires_at:
        raise ValidationError(
            f"Obligation {obligation_id} expires at {obligation.expires_at}, now {view.current_time}"
        )
    positions = _release_changes(view, obligation)
    return _settlement_update(
        view, obligation, _released(obligation, ObligationStatus.EXPIRED), positions, "expire",
    )


def compute_exercise(
    view: PoolView,
    obligation_id: str,
    settlement_price: Decimal,
) -> Tuple[PendingUpdate, ExerciseResult]:
    """
    Exercise an obligation at a settlement price.

    Returns:
        (PendingUpdate, ExerciseResult)

    Raises:
        ValidationError: unknown obligation, already exercised/expired/canceled,
            or a Transferred obligation whose allocations were already released
    """
    obligation = _load(view, obligation_id)
    if obligation.status not in (ObligationStatus.ACTIVE, ObligationStatus.TRANSFERRED):
        raise ValidationError(f"Obligation {obligation_id} is {obligation.status.value}")
    if obligation.status is ObligationStatus.TRANSFERRED and not obligation.allocations:
        raise ValidationError(f"Obligation {obligation_id} was already settled")

    settlement_price = to_decimal(settlement_price)
    payout = calculate_payout(
        obligation.policy_type, obligation.protected_amount,
        obligation.protected_value, settlement_price,
    )
    now = view.current_time
    positions = _release_changes(view, obligation)

    payments: Dict[str, int] = {}
    shortfalls: Dict[str, int] = {}
    owed_total = 0
    for provider_id, units in sorted(obligation.allocations.items()):
        owed = payout * units // obligation.reserved
        owed_total += owed
        if owed <= 0:
            continue
        remaining = owed
        candidates = []
        for key in sorted(k for k in positions if k[0] == provider_id):
            candidates.append(key)
        for position in view.positions_for_provider(provider_id):
            if position.key not in positions:
                candidates.append(position.key)
        for key in candidates:
            if remaining <= 0:
                break
            old, current = positions.get(key, (view.get_position(*key),) * 2)
            take = min(remaining, current.available(obligation.asset))
            if take > 0:
                positions[key] = (old, current.adjust(obligation.asset, now, deposited=-take))
                remaining -= take
        payments[provider_id] = owed - remaining
        if remaining > 0:
            shortfalls[provider_id] = remaining

    result = ExerciseResult(
        obligation_id=obligation_id,
        settlement_price=settlement_price,
        payout=payout,
        provider_payments={p: a for p, a in payments.items() if a > 0},
        shortfalls=shortfalls,
        fund_payment=payout - owed_total,
    )
    update = _settlement_update(
        view, obligation, _released(obligation, ObligationStatus.EXERCISED), positions, "exercise",
    )
    return update, result


def compute_cancellation(view: PoolView, obligation_id: str) -> PendingUpdate:
    """
    Cancel an Active obligation and release its collateral.

    Raises:
        ValidationError: unknown obligation or not Active
    """
    obligation = _load(view, obligation_id)
    if obligation.status is not ObligationStatus.ACTIVE:
        raise ValidationError(
            f"Only Active obligations can be canceled; {obligation_id} is {obligation.status.value}"
        )
    positions = _release_changes(view, obligation)
    return _settlement_update(
        view, obligation, _released(obligation, ObligationStatus.CANCELED), positions, "cancel",
    )
