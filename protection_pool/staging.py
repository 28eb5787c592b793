"""
staging.py - Read-only overlay of uncommitted changes

StagedView answers PoolView queries as if a sequence of PendingUpdates had
already been applied, without touching the store. Compound operations
(deposit-then-resolve, withdrawal projection, self-liquidation) compute each
step against the StagedView left by the previous step, then merge the steps
into one atomic update with merge_updates().
"""

from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .core import (
    PoolView, PendingUpdate, ProviderPosition, ProtectionObligation, MarginCall, TierAccount,
    TABLE_POSITIONS, TABLE_OBLIGATIONS, TABLE_MARGIN_CALLS,
    TABLE_REMAINDER_POOLS, TABLE_PLATFORM_FEES,
)
from .components.tier_accounts import calculate_tier_account


class StagedView:
    """
    PoolView over a base view plus staged row overrides.

    Example:
        staged = StagedView(store).with_update(deposit_update)
        report = assess_provider(staged, tiers, "alice", prices)
    """

    def __init__(self, base: PoolView, overrides: Optional[Dict[Tuple[str, Any], Any]] = None):
        self._base = base
        self._overrides: Dict[Tuple[str, Any], Any] = dict(overrides or {})

    def with_update(self, update: PendingUpdate) -> StagedView:
        """Return a new StagedView with the update's changes layered on top."""
        overrides = dict(self._overrides)
        for change in update.changes:
            overrides[(change.table, change.key)] = change.new
        return StagedView(self._base, overrides)

    def _staged(self, table: str) -> Dict[Any, Any]:
        return {key: row for (t, key), row in self._overrides.items() if t == table}

    @property
    def current_time(self) -> datetime:
        return self._base.current_time

    # Positions

    def list_positions(self) -> List[ProviderPosition]:
        rows = {p.key: p for p in self._base.list_positions()}
        rows.update(self._staged(TABLE_POSITIONS))
        return [rows[k] for k in sorted(rows)]

    def get_position(self, provider_id: str, tier: str) -> Optional[ProviderPosition]:
        key = (TABLE_POSITIONS, (provider_id, tier))
        if key in self._overrides:
            return self._overrides[key]
        return self._base.get_position(provider_id, tier)

    def positions_for_provider(self, provider_id: str) -> List[ProviderPosition]:
        return [p for p in self.list_positions() if p.provider_id == provider_id]

    def positions_in_tier(self, tier: str) -> List[ProviderPosition]:
        return [p for p in self.list_positions() if p.tier == tier]

    def get_tier_account(self, tier: str, asset: str) -> TierAccount:
        if not self._overrides:
            return self._base.get_tier_account(tier, asset)
        return calculate_tier_account(
            tier, asset, self.positions_in_tier(tier), self.list_obligations(),
        )

    # Obligations

    def list_obligations(self) -> List[ProtectionObligation]:
        rows = {o.obligation_id: o for o in self._base.list_obligations()}
        rows.update(self._staged(TABLE_OBLIGATIONS))
        return [rows[k] for k in sorted(rows)]

    def get_obligation(self, obligation_id: str) -> Optional[ProtectionObligation]:
        key = (TABLE_OBLIGATIONS, obligation_id)
        if key in self._overrides:
            return self._overrides[key]
        return self._base.get_obligation(obligation_id)

    def obligations_for_provider(self, provider_id: str) -> List[ProtectionObligation]:
        return [
            o for o in self.list_obligations()
            if o.is_live and o.allocation_of(provider_id) > 0
        ]

    # Margin calls

    def list_margin_calls(self) -> List[MarginCall]:
        rows = {c.call_id: c for c in self._base.list_margin_calls()}
        rows.update(self._staged(TABLE_MARGIN_CALLS))
        return [rows[k] for k in sorted(rows)]

    def get_active_margin_call(self, provider_id: str) -> Optional[MarginCall]:
        staged = self._staged(TABLE_MARGIN_CALLS)
        if not staged:
            return self._base.get_active_margin_call(provider_id)
        for call in self.list_margin_calls():
            if call.provider_id == provider_id and call.is_active:
                return call
        return None

    # Accumulators

    def get_remainder(self, tier: str, asset: str) -> int:
        key = (TABLE_REMAINDER_POOLS, (tier, asset))
        if key in self._overrides:
            return self._overrides[key]
        return self._base.get_remainder(tier, asset)

    def get_platform_fees(self, asset: str) -> int:
        key = (TABLE_PLATFORM_FEES, asset)
        if key in self._overrides:
            return self._overrides[key]
        return self._base.get_platform_fees(asset)

    def is_halted(self, provider_id: Optional[str] = None, tier: Optional[str] = None) -> bool:
        return self._base.is_halted(provider_id=provider_id, tier=tier)
