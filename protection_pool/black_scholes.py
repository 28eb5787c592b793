"""
black_scholes.py - Black-Scholes Option Pricing

Black-Scholes formulas with a continuously compounded risk-free rate and time
in calendar days (365 days/year): Bitcoin trades every day.

Provides:
- Option pricing (call, put)
- Vectorized float kernels for scenario grids

Prices are per unit of underlying, in the quote currency of s and k.
"""

import math
import numpy as np
from typing import Union
from scipy.special import erf as scipy_erf
from decimal import Decimal, ROUND_HALF_EVEN


# Type alias for scalar or array inputs
Numeric = Union[float, np.ndarray]

# Constants
CALENDAR_DAYS_PER_YEAR = 365.0
DEFAULT_RISK_FREE_RATE = 0.02
SQRT_2 = math.sqrt(2.0)


# ============================================================================
# NORMAL DISTRIBUTION
# ============================================================================

def normal_cdf(x: Numeric) -> Numeric:
    """Standard normal cumulative distribution function."""
    return 0.5 * (1.0 + scipy_erf(np.asarray(x) / SQRT_2))


# ============================================================================
# D1 AND D2
# ============================================================================

def _validate_bs_inputs(s: Numeric, k: Numeric, t_in_days: Numeric, v: Numeric) -> None:
    """Validate Black-Scholes inputs to prevent division by zero and NaN/Inf."""
    s_arr = np.asarray(s)
    k_arr = np.asarray(k)
    t_arr = np.asarray(t_in_days)
    v_arr = np.asarray(v)
    if not np.all(np.isfinite(s_arr)) or np.any(s_arr <= 0):
        raise ValueError("spot price must be positive and finite")
    if not np.all(np.isfinite(k_arr)) or np.any(k_arr <= 0):
        raise ValueError("strike must be positive and finite")
    if not np.all(np.isfinite(t_arr)) or np.any(t_arr <= 0):
        raise ValueError("t_in_days must be positive and finite")
    if not np.all(np.isfinite(v_arr)) or np.any(v_arr <= 0):
        raise ValueError("volatility must be positive and finite")


def d1(s: Numeric, k: Numeric, t_in_days: Numeric, v: Numeric, r: float = DEFAULT_RISK_FREE_RATE) -> Numeric:
    """
    d1 = (ln(S/K) + (r + 0.5*σ²)*t) / (σ*√t)

    Raises:
        ValueError: If any input is non-positive or not finite
    """
    _validate_bs_inputs(s, k, t_in_days, v)
    t = t_in_days / CALENDAR_DAYS_PER_YEAR
    return (np.log(s / k) + (r + 0.5 * v * v) * t) / (v * np.sqrt(t))


def d2(s: Numeric, k: Numeric, t_in_days: Numeric, v: Numeric, r: float = DEFAULT_RISK_FREE_RATE) -> Numeric:
    """d2 = d1 - σ*√t"""
    t = t_in_days / CALENDAR_DAYS_PER_YEAR
    return d1(s, k, t_in_days, v, r) - v * np.sqrt(t)


# ============================================================================
# OPTION PRICES
# ============================================================================

def _call_float(s: Numeric, k: Numeric, t_in_days: Numeric, v: Numeric, r: float = DEFAULT_RISK_FREE_RATE) -> Numeric:
    """
    Black-Scholes call price. Internal float implementation.

    C = S*N(d1) - K*e^(-rt)*N(d2)
    """
    t = t_in_days / CALENDAR_DAYS_PER_YEAR
    return s * normal_cdf(d1(s, k, t_in_days, v, r)) - k * np.exp(-r * t) * normal_cdf(d2(s, k, t_in_days, v, r))


def call(s: Decimal, k: Decimal, t_in_days: Decimal, v: Decimal, r: Decimal = Decimal("0.02")) -> Decimal:
    """Black-Scholes call option price with Decimal interface."""
    result = _call_float(float(s), float(k), float(t_in_days), float(v), float(r))
    return Decimal(str(result)).quantize(Decimal("0.00000001"), rounding=ROUND_HALF_EVEN)


def _put_float(s: Numeric, k: Numeric, t_in_days: Numeric, v: Numeric, r: float = DEFAULT_RISK_FREE_RATE) -> Numeric:
    """
    Black-Scholes put price. Internal float implementation.

    P = K*e^(-rt)*N(-d2) - S*N(-d1)
    """
    t = t_in_days / CALENDAR_DAYS_PER_YEAR
    return k * np.exp(-r * t) * normal_cdf(-d2(s, k, t_in_days, v, r)) - s * normal_cdf(-d1(s, k, t_in_days, v, r))


def put(s: Decimal, k: Decimal, t_in_days: Decimal, v: Decimal, r: Decimal = Decimal("0.02")) -> Decimal:
    """Black-Scholes put option price with Decimal interface."""
    result = _put_float(float(s), float(k), float(t_in_days), float(v), float(r))
    return Decimal(str(result)).quantize(Decimal("0.00000001"), rounding=ROUND_HALF_EVEN)
