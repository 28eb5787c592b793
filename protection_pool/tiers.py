"""
tiers.py - Risk Tier Registry

Holds the named risk tiers and the liquidation fraction. Writes come only
from governance (update_tier, set_active, set_liquidation_fraction); the
engine reads an immutable snapshot and never writes tier definitions.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional
import threading

from .core import (
    RiskTier, ValidationError, to_decimal,
    DEFAULT_LIQUIDATION_FRACTION, MIN_LIQUIDATION_FRACTION, MAX_LIQUIDATION_FRACTION,
)
from .components.liquidation import validate_liquidation_fraction
from .log import get_logger


logger = get_logger(__name__)


def default_tiers() -> Dict[str, RiskTier]:
    """
    Tier set shipped with the pool.

    Ranges are protected_value / current_price. Higher strikes (closer to the
    money) pay more premium and demand more collateral headroom.
    """
    tiers = [
        RiskTier(
            name="conservative",
            min_value_pct=Decimal("0.70"),
            max_value_pct=Decimal("0.80"),
            premium_multiplier=Decimal("0.7"),
            max_duration=timedelta(days=90),
            min_collateralization_ratio=Decimal("1.1"),
            warning_buffer_pct=Decimal("0.1"),
        ),
        RiskTier(
            name="balanced",
            min_value_pct=Decimal("0.80"),
            max_value_pct=Decimal("0.90"),
            premium_multiplier=Decimal("1.0"),
            max_duration=timedelta(days=60),
            min_collateralization_ratio=Decimal("1.2"),
            warning_buffer_pct=Decimal("0.1"),
        ),
        RiskTier(
            name="aggressive",
            min_value_pct=Decimal("0.90"),
            max_value_pct=Decimal("1.00"),
            premium_multiplier=Decimal("1.3"),
            max_duration=timedelta(days=30),
            min_collateralization_ratio=Decimal("1.5"),
            warning_buffer_pct=Decimal("0.15"),
        ),
        RiskTier(
            name="upside",
            min_value_pct=Decimal("1.00"),
            max_value_pct=Decimal("1.50"),
            premium_multiplier=Decimal("1.3"),
            max_duration=timedelta(days=30),
            min_collateralization_ratio=Decimal("1.5"),
            warning_buffer_pct=Decimal("0.15"),
        ),
    ]
    return {t.name: t for t in tiers}


class RiskTierRegistry:
    """
    Governance-owned tier configuration.

    Thread-safe: writes replace whole RiskTier records under a lock and bump
    `version`; snapshot() returns a read-only mapping that later writes do
    not affect.
    """

    def __init__(
        self,
        tiers: Optional[Iterable[RiskTier]] = None,
        liquidation_fraction: Decimal = DEFAULT_LIQUIDATION_FRACTION,
        fraction_bounds: tuple = (MIN_LIQUIDATION_FRACTION, MAX_LIQUIDATION_FRACTION),
    ):
        if tiers is None:
            tiers = default_tiers().values()
        self._lock = threading.Lock()
        self._tiers: Dict[str, RiskTier] = {}
        self._fraction_bounds = (to_decimal(fraction_bounds[0]), to_decimal(fraction_bounds[1]))
        self._liquidation_fraction = self._check_fraction(liquidation_fraction)
        self.version = 0
        for tier in tiers:
            if tier.name in self._tiers:
                raise ValidationError(f"Duplicate tier '{tier.name}'")
            self._tiers[tier.name] = tier

    # ========================================================================
    # READ SIDE
    # ========================================================================

    def snapshot(self) -> Mapping[str, RiskTier]:
        """Return an immutable name -> RiskTier mapping of the current configuration."""
        with self._lock:
            return MappingProxyType(dict(self._tiers))

    def get(self, name: str) -> RiskTier:
        with self._lock:
            if name not in self._tiers:
                raise ValidationError(f"Unknown tier '{name}'")
            return self._tiers[name]

    def names(self):
        with self._lock:
            return sorted(self._tiers)

    @property
    def liquidation_fraction(self) -> Decimal:
        with self._lock:
            return self._liquidation_fraction

    @property
    def fraction_bounds(self) -> tuple:
        return self._fraction_bounds

    # ========================================================================
    # GOVERNANCE WRITE PATH
    # ========================================================================

    def update_tier(self, tier: RiskTier) -> None:
        """Add or replace a tier definition (validated by RiskTier itself)."""
        with self._lock:
            self._tiers[tier.name] = tier
            self.version += 1
        logger.info(
            "risk tier updated",
            extra={"context": {"tier": tier.name, "active": tier.active, "version": self.version}},
        )

    def set_active(self, name: str, active: bool) -> None:
        with self._lock:
            if name not in self._tiers:
                raise ValidationError(f"Unknown tier '{name}'")
            self._tiers[name] = replace(self._tiers[name], active=active)
            self.version += 1
        logger.info("risk tier activation changed", extra={"context": {"tier": name, "active": active}})

    def set_liquidation_fraction(self, fraction) -> None:
        """
        Set the share of locked collateral seized per forced liquidation.

        Raises:
            ValidationError: if outside the configured bounds (default [0.2, 0.8])
        """
        checked = self._check_fraction(fraction)
        with self._lock:
            self._liquidation_fraction = checked
            self.version += 1
        logger.info("liquidation fraction changed", extra={"context": {"fraction": str(checked)}})

    def _check_fraction(self, fraction) -> Decimal:
        return validate_liquidation_fraction(fraction, self._fraction_bounds)
