"""
premium.py - Premium calculators

Both calculators return the premium in smallest units of the protected asset,
rounded up, already scaled by the tier's premium_multiplier.

    FixedRatePremiumCalculator:   ceil(amount * base_rate * multiplier)
    BlackScholesPremiumCalculator: ceil(amount * bs_price * multiplier / S)

bs_price is the Black-Scholes value (USD per unit of underlying) of a put or
call struck at protected_value, over the protection period, at the volatility
estimated by the price source.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from decimal import Decimal

from .core import PolicyType, RiskTier, ValidationError, ceil_decimal, to_decimal
from .pricing_source import PriceSource
from . import black_scholes


class FixedRatePremiumCalculator:
    """Flat rate of the protected amount, independent of market conditions."""

    def __init__(self, base_rate: Decimal = Decimal("0.01")):
        self.base_rate = to_decimal(base_rate)
        if self.base_rate < 0:
            raise ValidationError(f"base_rate cannot be negative, got {self.base_rate}")

    def quote(
        self,
        tier: RiskTier,
        protected_value: Decimal,
        protected_amount: int,
        duration: timedelta,
        policy_type: PolicyType,
        current_price: Decimal,
        asset: str,
        timestamp: datetime,
    ) -> int:
        return ceil_decimal(Decimal(protected_amount) * self.base_rate * tier.premium_multiplier)


class BlackScholesPremiumCalculator:
    """
    Market premium from Black-Scholes.

    Args:
        price_source: Supplies the volatility estimate
        volatility_window: Observations used for the estimate
        risk_free_rate: Continuously compounded annual rate
        fallback_volatility: Used when the source has too little history
    """

    def __init__(
        self,
        price_source: PriceSource,
        volatility_window: int = 30,
        risk_free_rate: Decimal = Decimal("0.02"),
        fallback_volatility: float = 0.6,
    ):
        self.price_source = price_source
        self.volatility_window = volatility_window
        self.risk_free_rate = to_decimal(risk_free_rate)
        self.fallback_volatility = fallback_volatility

    def quote(
        self,
        tier: RiskTier,
        protected_value: Decimal,
        protected_amount: int,
        duration: timedelta,
        policy_type: PolicyType,
        current_price: Decimal,
        asset: str,
        timestamp: datetime,
    ) -> int:
        volatility = self.price_source.get_volatility(asset, self.volatility_window, timestamp)
        if volatility <= 0:
            volatility = self.fallback_volatility
        days = Decimal(str(duration.total_seconds() / 86400))
        price_fn = black_scholes.put if policy_type is PolicyType.PUT else black_scholes.call
        unit_price = price_fn(
            to_decimal(current_price), to_decimal(protected_value), days,
            Decimal(str(volatility)), self.risk_free_rate,
        )
        return ceil_decimal(
            Decimal(protected_amount) * unit_price * tier.premium_multiplier / to_decimal(current_price)
        )
