"""
test_config.py - Unit tests for EngineConfig
"""

import os
import pytest
from datetime import timedelta
from decimal import Decimal

from protection_pool import EngineConfig, ValidationError
from protection_pool.config import ENV_PREFIX


class TestDefaults:

    def test_defaults(self):
        config = EngineConfig()
        assert config.platform_fee_pct == Decimal("0.10")
        assert config.warning_grace_period == timedelta(hours=24)
        assert config.emergency_grace_period == timedelta(hours=4)
        assert config.collateral_asset == "BTC"

    def test_fee_coerced_to_decimal(self):
        assert EngineConfig(platform_fee_pct="0.05").platform_fee_pct == Decimal("0.05")


class TestValidation:

    @pytest.mark.parametrize("overrides", [
        {"platform_fee_pct": Decimal("1")},
        {"platform_fee_pct": Decimal("-0.1")},
        {"emergency_grace_period": timedelta(0)},
        {"emergency_grace_period": timedelta(hours=24)},
        {"price_timeout_seconds": 0},
        {"lock_timeout_seconds": -1},
        {"max_conflict_retries": -1},
        {"sweep_workers": 0},
        {"volatility_window": 1},
    ])
    def test_rejects(self, overrides):
        with pytest.raises(ValidationError):
            EngineConfig(**overrides)


class TestFromEnv:

    def test_without_environment_matches_defaults(self, monkeypatch):
        for name in list(os.environ):
            if name.startswith(ENV_PREFIX):
                monkeypatch.delenv(name)
        assert EngineConfig.from_env() == EngineConfig()

    def test_reads_overrides(self, monkeypatch):
        monkeypatch.setenv("PROTECTION_POOL_PLATFORM_FEE_PCT", "0.2")
        monkeypatch.setenv("PROTECTION_POOL_WARNING_GRACE_SECONDS", "7200")
        monkeypatch.setenv("PROTECTION_POOL_EMERGENCY_GRACE_SECONDS", "600")
        monkeypatch.setenv("PROTECTION_POOL_SWEEP_WORKERS", "8")
        monkeypatch.setenv("PROTECTION_POOL_COLLATERAL_ASSET", "WBTC")
        config = EngineConfig.from_env()
        assert config.platform_fee_pct == Decimal("0.2")
        assert config.warning_grace_period == timedelta(hours=2)
        assert config.emergency_grace_period == timedelta(minutes=10)
        assert config.sweep_workers == 8
        assert config.collateral_asset == "WBTC"

    def test_invalid_environment_is_rejected(self, monkeypatch):
        monkeypatch.setenv("PROTECTION_POOL_EMERGENCY_GRACE_SECONDS", "999999")
        with pytest.raises(ValidationError):
            EngineConfig.from_env()
