"""
config.py - Engine configuration

EngineConfig holds every tunable of the engine. Defaults suit tests and
simulations; deployments override them through PROTECTION_POOL_* environment
variables read by EngineConfig.from_env().
"""

import os
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from .core import ValidationError, DEFAULT_ASSET, to_decimal


ENV_PREFIX = "PROTECTION_POOL_"


def _env(name: str, default: str) -> str:
    return os.getenv(ENV_PREFIX + name, default)


@dataclass(frozen=True)
class EngineConfig:
    platform_fee_pct: Decimal = Decimal("0.10")
    warning_grace_period: timedelta = timedelta(hours=24)
    emergency_grace_period: timedelta = timedelta(hours=4)
    price_timeout_seconds: float = 2.0
    max_price_age: timedelta = timedelta(minutes=10)
    lock_timeout_seconds: float = 5.0
    max_conflict_retries: int = 3
    retry_backoff_seconds: float = 0.05
    sweep_workers: int = 4
    collateral_asset: str = DEFAULT_ASSET
    volatility_window: int = 30

    def __post_init__(self):
        object.__setattr__(self, 'platform_fee_pct', to_decimal(self.platform_fee_pct))
        if not (Decimal("0") <= self.platform_fee_pct < Decimal("1")):
            raise ValidationError(f"platform_fee_pct must be within [0, 1), got {self.platform_fee_pct}")
        if self.emergency_grace_period <= timedelta(0):
            raise ValidationError("emergency_grace_period must be positive")
        if self.emergency_grace_period >= self.warning_grace_period:
            raise ValidationError(
                f"emergency_grace_period ({self.emergency_grace_period}) must be shorter than "
                f"warning_grace_period ({self.warning_grace_period})"
            )
        if self.price_timeout_seconds <= 0 or self.lock_timeout_seconds <= 0:
            raise ValidationError("timeouts must be positive")
        if self.max_conflict_retries < 0:
            raise ValidationError("max_conflict_retries cannot be negative")
        if self.sweep_workers < 1:
            raise ValidationError("sweep_workers must be at least 1")
        if self.volatility_window < 2:
            raise ValidationError("volatility_window must be at least 2")

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """
        Build a config from the environment.

        Durations are read in seconds, e.g.
        PROTECTION_POOL_WARNING_GRACE_SECONDS=86400.
        """
        return cls(
            platform_fee_pct=Decimal(_env("PLATFORM_FEE_PCT", "0.10")),
            warning_grace_period=timedelta(seconds=float(_env("WARNING_GRACE_SECONDS", "86400"))),
            emergency_grace_period=timedelta(seconds=float(_env("EMERGENCY_GRACE_SECONDS", "14400"))),
            price_timeout_seconds=float(_env("PRICE_TIMEOUT_SECONDS", "2.0")),
            max_price_age=timedelta(seconds=float(_env("MAX_PRICE_AGE_SECONDS", "600"))),
            lock_timeout_seconds=float(_env("LOCK_TIMEOUT_SECONDS", "5.0")),
            max_conflict_retries=int(_env("MAX_CONFLICT_RETRIES", "3")),
            retry_backoff_seconds=float(_env("RETRY_BACKOFF_SECONDS", "0.05")),
            sweep_workers=int(_env("SWEEP_WORKERS", "4")),
            collateral_asset=_env("COLLATERAL_ASSET", DEFAULT_ASSET),
            volatility_window=int(_env("VOLATILITY_WINDOW", "30")),
        )
