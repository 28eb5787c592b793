"""
tier_accounts.py - Tier Capital Accountant

TierAccount is a materialized sum over the ProviderPositions of a tier, per
asset. PoolStore maintains it incrementally (adjust_* below) and reconciles
it against a full recomputation (calculate_tier_accounts) on every apply.

Key Formulas:
    total = sum(position.deposited[asset] for positions in tier)
    locked = sum(position.locked[asset] for positions in tier)
    active_obligation_count = #obligations in (tier, asset) with status Active
    utilization = locked / total
"""

from __future__ import annotations
from dataclasses import replace
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from ..core import (
    ObligationStatus, ProtectionObligation, ProviderPosition, TierAccount,
)


AccountKey = Tuple[str, str]  # (tier, asset)


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_tier_accounts(
    positions: Iterable[ProviderPosition],
    obligations: Iterable[ProtectionObligation],
) -> Dict[AccountKey, TierAccount]:
    """
    Recompute every TierAccount from scratch.

    PURE FUNCTION - All inputs explicit.

    Returns:
        (tier, asset) -> TierAccount, for every pair with any deposit,
        lock or active obligation.
    """
    totals: Dict[AccountKey, List[int]] = {}
    for position in positions:
        for asset in set(position.deposited) | set(position.locked):
            entry = totals.setdefault((position.tier, asset), [0, 0, 0])
            entry[0] += position.deposited_of(asset)
            entry[1] += position.locked_of(asset)
    for obligation in obligations:
        if obligation.status is ObligationStatus.ACTIVE:
            entry = totals.setdefault((obligation.tier, obligation.asset), [0, 0, 0])
            entry[2] += 1
    return {
        key: TierAccount(key[0], key[1], total, locked, count)
        for key, (total, locked, count) in totals.items()
    }


def calculate_tier_account(
    tier: str,
    asset: str,
    positions: Iterable[ProviderPosition],
    obligations: Iterable[ProtectionObligation],
) -> TierAccount:
    """Recompute one TierAccount from the positions and obligations given."""
    accounts = calculate_tier_accounts(
        (p for p in positions if p.tier == tier),
        (o for o in obligations if o.tier == tier and o.asset == asset),
    )
    return accounts.get((tier, asset), TierAccount(tier, asset))


def adjust_for_position(
    accounts: Mapping[AccountKey, TierAccount],
    old: Optional[ProviderPosition],
    new: Optional[ProviderPosition],
) -> Dict[AccountKey, TierAccount]:
    """
    Incremental update for one position change.

    Returns the updated accounts for the (tier, asset) keys touched; the
    caller merges them into its cache.
    """
    updated: Dict[AccountKey, TierAccount] = {}
    record = new if new is not None else old
    if record is None:
        return updated
    assets = set()
    for p in (old, new):
        if p is not None:
            assets |= set(p.deposited) | set(p.locked)
    for asset in sorted(assets):
        key = (record.tier, asset)
        d_total = (new.deposited_of(asset) if new else 0) - (old.deposited_of(asset) if old else 0)
        d_locked = (new.locked_of(asset) if new else 0) - (old.locked_of(asset) if old else 0)
        if d_total == 0 and d_locked == 0:
            continue
        account = updated.get(key) or accounts.get(key) or TierAccount(record.tier, asset)
        updated[key] = replace(
            account, total=account.total + d_total, locked=account.locked + d_locked,
        )
    return updated


def adjust_for_obligation(
    accounts: Mapping[AccountKey, TierAccount],
    old: Optional[ProtectionObligation],
    new: Optional[ProtectionObligation],
) -> Dict[AccountKey, TierAccount]:
    """Incremental update of active_obligation_count for one obligation change."""
    record = new if new is not None else old
    was_active = old is not None and old.status is ObligationStatus.ACTIVE
    is_active = new is not None and new.status is ObligationStatus.ACTIVE
    delta = int(is_active) - int(was_active)
    if delta == 0:
        return {}
    key = (record.tier, record.asset)
    account = accounts.get(key) or TierAccount(record.tier, record.asset)
    return {key: replace(account, active_obligation_count=account.active_obligation_count + delta)}


def reconcile_tier_accounts(
    cached: Mapping[AccountKey, TierAccount],
    positions: Iterable[ProviderPosition],
    obligations: Iterable[ProtectionObligation],
    keys: Optional[Iterable[AccountKey]] = None,
) -> Dict[AccountKey, str]:
    """
    Compare cached accounts against a full recomputation.

    Args:
        cached: Incrementally maintained accounts
        positions / obligations: Source rows
        keys: Restrict the comparison to these (tier, asset) pairs

    Returns:
        (tier, asset) -> mismatch description (empty when reconciled).
    """
    expected = calculate_tier_accounts(positions, obligations)
    if keys is None:
        keys = set(expected) | set(cached)
    mismatches = {}
    for key in sorted(set(keys)):
        want = expected.get(key, TierAccount(*key))
        have = cached.get(key, TierAccount(*key))
        if want != have:
            mismatches[key] = (
                f"TierAccount {key[0]}/{key[1]}: cached total={have.total} locked={have.locked} "
                f"active={have.active_obligation_count}, expected total={want.total} "
                f"locked={want.locked} active={want.active_obligation_count}"
            )
    return mismatches

