"""
premium_settlement.py - Premium Settlement

Splits a premium between the platform and a tier's providers.

Key Formulas:
    platform_fee  = floor(premium * platform_fee_pct)
    pool          = premium - platform_fee + remainder_in
    share[p]      = floor(pool * deposited[p] / tier_total)
    remainder_out = pool - sum(share)

Conservation (exact, integers):
    platform_fee + sum(share) + remainder_out == premium + remainder_in

The residual is carried in the tier's remainder pool and joins the next
distribution, so no unit is ever lost to rounding.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Tuple

from ..core import (
    PoolView, PendingUpdate, StateChange, UpdateOrigin, OriginType,
    ValidationError, TABLE_POSITIONS, TABLE_REMAINDER_POOLS, TABLE_PLATFORM_FEES,
    DEFAULT_ASSET, build_update, floor_decimal, to_decimal, _check_amount,
)


@dataclass(frozen=True, slots=True)
class PremiumSplit:
    """Where every unit of a premium went."""
    tier: str
    asset: str
    premium: int
    platform_fee: int
    remainder_in: int
    remainder_out: int
    shares: Mapping[str, int] = field(default_factory=dict)

    @property
    def distributed(self) -> int:
        return sum(self.shares.values())

    def is_conserved(self) -> bool:
        return (
            self.platform_fee + self.distributed + self.remainder_out
            == self.premium + self.remainder_in
        )


def calculate_platform_fee(premium: int, fee_pct: Decimal) -> int:
    fee_pct = to_decimal(fee_pct)
    if not (Decimal("0") <= fee_pct <= Decimal("1")):
        raise ValidationError(f"platform fee pct must be within [0, 1], got {fee_pct}")
    return floor_decimal(Decimal(premium) * fee_pct)


def calculate_premium_split(
    tier: str,
    asset: str,
    premium: int,
    fee_pct: Decimal,
    deposits: Mapping[str, int],
    remainder_in: int = 0,
    withheld: Iterable[str] = (),
) -> PremiumSplit:
    """
    Pure premium split.

    Args:
        tier / asset: Identify the remainder pool
        premium: Premium amount, smallest units
        fee_pct: Platform fee fraction
        deposits: provider_id -> deposited balance in the tier
        remainder_in: Residual carried from earlier distributions
        withheld: Providers paid nothing this time; their share stays in
            the remainder pool

    Example:
        >>> split = calculate_premium_split("balanced", "BTC", 1000, Decimal("0.1"),
        ...                                 {"a": 1, "b": 2})
        >>> split.platform_fee, dict(split.shares), split.remainder_out
        (100, {'a': 300, 'b': 600}, 0)
    """
    _check_amount('premium', premium)
    if premium < 0:
        raise ValidationError(f"premium cannot be negative, got {premium}")
    fee = calculate_platform_fee(premium, fee_pct)
    pool = premium - fee + remainder_in
    total = sum(deposits.values())
    withheld = set(withheld)

    shares: Dict[str, int] = {}
    if total > 0:
        for provider_id in sorted(set(deposits) - withheld):
            share = pool * deposits[provider_id] // total
            if share > 0:
                shares[provider_id] = share

    return PremiumSplit(
        tier=tier,
        asset=asset,
        premium=premium,
        platform_fee=fee,
        remainder_in=remainder_in,
        remainder_out=pool - sum(shares.values()),
        shares=shares,
    )


def compute_premium_distribution(
    view: PoolView,
    tier: str,
    premium: int,
    fee_pct: Decimal,
    asset: str = DEFAULT_ASSET,
) -> Tuple[PendingUpdate, PremiumSplit]:
    """
    Credit a tier's providers with their share of a premium.

    Weights are each position's deposited balance at distribution time.
    Halted providers still count toward the total but are not credited;
    their share is carried in the tier's remainder pool.

    Returns:
        (PendingUpdate, PremiumSplit)
    """
    positions = [p for p in view.positions_in_tier(tier) if p.deposited_of(asset) > 0]
    deposits = {p.provider_id: p.deposited_of(asset) for p in positions}
    remainder_in = view.get_remainder(tier, asset)
    withheld = {p.provider_id for p in positions if view.is_halted(provider_id=p.provider_id)}
    split = calculate_premium_split(
        tier, asset, premium, fee_pct, deposits, remainder_in, withheld=withheld,
    )

    now = view.current_time
    changes: List[StateChange] = []
    for position in positions:
        share = split.shares.get(position.provider_id, 0)
        if share > 0:
            new = position.adjust(asset, now, yield_accrued=share)
            changes.append(StateChange(TABLE_POSITIONS, position.key, position, new))
    if split.remainder_out != remainder_in:
        changes.append(StateChange(
            TABLE_REMAINDER_POOLS, (tier, asset), remainder_in, split.remainder_out,
        ))
    if split.platform_fee > 0:
        fees = view.get_platform_fees(asset)
        changes.append(StateChange(TABLE_PLATFORM_FEES, asset, fees, fees + split.platform_fee))

    update = build_update(view, changes, UpdateOrigin(OriginType.BUYER, "premium", tier))
    return update, split
