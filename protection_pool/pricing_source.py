"""
pricing_source.py - Price infrastructure for collateral valuation

Classes:
- PriceQuote: A price with the time it was observed and a staleness flag
- PriceSource: Protocol defining the pricing interface
- StaticPriceSource: Time-independent prices (tests, what-if analysis)
- TimeSeriesPriceSource: Time-varying prices with historical data
- GuardedPriceSource: Wraps any source with a timeout, an age bound and a
  last-known-good fallback

All prices are quoted in the pool's valuation currency (USD).
"""

from __future__ import annotations
from bisect import bisect_right
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable
import math
import threading

import numpy as np

from .core import PriceUnavailable, DAYS_PER_YEAR, to_decimal
from .log import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PriceQuote:
    """
    Attributes:
        asset: Asset quoted
        price: Price in the valuation currency
        as_of: When the price was observed
        stale: True when older than the allowed age, or served from the
            last-known-good cache after a source failure
    """
    asset: str
    price: Decimal
    as_of: datetime
    stale: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'price', to_decimal(self.price))


@runtime_checkable
class PriceSource(Protocol):
    """
    Protocol for price sources.

    get_price() raises PriceUnavailable when it has no price at or before
    the timestamp.
    """

    def get_price(self, asset: str, timestamp: datetime) -> PriceQuote:
        ...

    def get_volatility(self, asset: str, window: int, timestamp: datetime) -> float:
        """Annualized volatility over the last `window` observations."""
        ...


def annualized_volatility(prices: List[float]) -> float:
    """
    Standard deviation of daily log returns, scaled by sqrt(365).

    Returns 0.0 with fewer than two returns.
    """
    if len(prices) < 3:
        return 0.0
    series = np.asarray(prices, dtype=float)
    returns = np.diff(np.log(series))
    return float(np.std(returns, ddof=1) * math.sqrt(DAYS_PER_YEAR))


class StaticPriceSource:
    """
    Price source with static prices (time-independent).

    Quotes carry the requested timestamp as their observation time, so they
    are never stale.
    """

    def __init__(self, prices: Dict[str, Decimal], volatility: float = 0.6):
        self.prices = {k: to_decimal(v) for k, v in prices.items()}
        self.volatility = volatility

    def get_price(self, asset: str, timestamp: datetime) -> PriceQuote:
        if asset not in self.prices:
            raise PriceUnavailable(f"No price for {asset}")
        return PriceQuote(asset, self.prices[asset], timestamp)

    def get_volatility(self, asset: str, window: int, timestamp: datetime) -> float:
        return self.volatility

    def update_price(self, asset: str, price: Decimal) -> None:
        self.prices[asset] = to_decimal(price)

    def __repr__(self):
        return f"StaticPriceSource({len(self.prices)} prices)"


class TimeSeriesPriceSource:
    """
    Price source with time-varying prices.

    Uses the most recent observation at or before the requested time; the
    quote's as_of is that observation's timestamp.

    Example:
        source = TimeSeriesPriceSource({
            'BTC': [(t0, 50000), (t1, 45000), (t2, 40000)],
        })
        source.get_price('BTC', t1).price  # Decimal('45000')
    """

    def __init__(self, price_paths: Optional[Dict[str, List[Tuple[datetime, Decimal]]]] = None):
        self.price_history: Dict[str, List[Tuple[datetime, Decimal]]] = {}
        if price_paths:
            for asset, path in price_paths.items():
                if not path:
                    continue
                self.price_history[asset] = sorted(
                    ((ts, to_decimal(p)) for ts, p in path), key=lambda x: x[0],
                )

    def add_price(self, asset: str, timestamp: datetime, price: Decimal) -> None:
        history = self.price_history.setdefault(asset, [])
        history.append((timestamp, to_decimal(price)))
        history.sort(key=lambda x: x[0])

    def _history_until(self, asset: str, timestamp: datetime) -> List[Tuple[datetime, Decimal]]:
        history = self.price_history.get(asset, [])
        timestamps = [ts for ts, _ in history]
        return history[:bisect_right(timestamps, timestamp)]

    def get_price(self, asset: str, timestamp: datetime) -> PriceQuote:
        history = self._history_until(asset, timestamp)
        if not history:
            raise PriceUnavailable(f"No price for {asset} at or before {timestamp}")
        as_of, price = history[-1]
        return PriceQuote(asset, price, as_of)

    def get_volatility(self, asset: str, window: int, timestamp: datetime) -> float:
        history = self._history_until(asset, timestamp)[-(window + 1):]
        return annualized_volatility([float(p) for _, p in history])

    def __repr__(self):
        return f"TimeSeriesPriceSource({len(self.price_history)} assets)"


class GuardedPriceSource:
    """
    Bounded, fault-tolerant view over another price source.

    - Each call to the wrapped source runs with a timeout.
    - A quote older than max_age is flagged stale.
    - When the wrapped source fails or times out, the last good quote is
      served flagged stale; with no last good quote PriceUnavailable is raised.
    """

    def __init__(
        self,
        source: PriceSource,
        timeout: float = 2.0,
        max_age: timedelta = timedelta(minutes=10),
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.source = source
        self.timeout = timeout
        self.max_age = max_age
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="price")
        self._owns_executor = executor is None
        self._last_good: Dict[str, PriceQuote] = {}
        self._lock = threading.Lock()

    def _call(self, fn: Callable, *args):
        future = self._executor.submit(fn, *args)
        return future.result(timeout=self.timeout)

    def get_price(self, asset: str, timestamp: datetime) -> PriceQuote:
        try:
            quote = self._call(self.source.get_price, asset, timestamp)
        except FutureTimeout:
            logger.warning("price source timeout", extra={"context": {"asset": asset, "timeout": self.timeout}})
            return self._fallback(asset, f"timed out after {self.timeout}s")
        except PriceUnavailable as exc:
            logger.warning("price unavailable", extra={"context": {"asset": asset, "error": str(exc)}})
            return self._fallback(asset, str(exc))

        if timestamp - quote.as_of > self.max_age:
            logger.warning(
                "stale price",
                extra={"context": {"asset": asset, "as_of": quote.as_of, "age_limit": self.max_age}},
            )
            quote = replace(quote, stale=True)
        with self._lock:
            self._last_good[asset] = quote
        return quote

    def _fallback(self, asset: str, reason: str) -> PriceQuote:
        with self._lock:
            last = self._last_good.get(asset)
        if last is None:
            raise PriceUnavailable(f"No price for {asset}: {reason}")
        return replace(last, stale=True)

    def get_volatility(self, asset: str, window: int, timestamp: datetime) -> float:
        try:
            return self._call(self.source.get_volatility, asset, window, timestamp)
        except FutureTimeout:
            raise PriceUnavailable(f"Volatility for {asset} timed out after {self.timeout}s")

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)
