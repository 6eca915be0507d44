"""Cached price feed exposing the synchronous ``price_of`` capability."""
from __future__ import annotations

import logging
import math
import time
from typing import Callable

from ..errors import PriceUnavailable
from ..interfaces.price_oracle import PriceOracle

logger = logging.getLogger(__name__)

MIN_PRICE = 1e-6
MAX_PRICE = 1e6
MAX_STALENESS_SECONDS = 300.0


class PriceFeed:
    """Holds the last good quote per symbol.

    ``refresh`` is the only suspension point; ``price_of`` is synchronous and
    raises PriceUnavailable for a missing, non-finite, out-of-bounds or stale
    quote.
    """

    def __init__(
        self,
        oracle: PriceOracle | None = None,
        symbols: list[str] | None = None,
        max_staleness_seconds: float = MAX_STALENESS_SECONDS,
        min_price: float = MIN_PRICE,
        max_price: float = MAX_PRICE,
        clock: Callable[[], float] = time.time,
        fixed: dict[str, float] | None = None,
    ) -> None:
        self._oracle = oracle
        self._symbols = symbols
        self.max_staleness_seconds = max_staleness_seconds
        self.min_price = min_price
        self.max_price = max_price
        self._clock = clock
        self._quotes: dict[str, tuple[float, float]] = {}
        # Pegged quotes (e.g. USDC) never go stale.
        self._fixed = dict(fixed or {})

    def set_price(self, symbol: str, price: float, timestamp: float | None = None) -> None:
        self._quotes[symbol] = (price, self._clock() if timestamp is None else timestamp)

    async def refresh(self) -> dict[str, float]:
        """Pull fresh quotes from the oracle; keeps old quotes for missing symbols."""
        if self._oracle is None:
            return {}
        prices = await self._oracle.fetch_prices(self._symbols)
        now = self._clock()
        accepted: dict[str, float] = {}
        for symbol, price in prices.items():
            if self._in_bounds(price):
                self._quotes[symbol] = (price, now)
                accepted[symbol] = price
            else:
                logger.warning("Rejected out-of-bounds price for %s: %r", symbol, price)
        return accepted

    def _in_bounds(self, price: float) -> bool:
        return math.isfinite(price) and self.min_price <= price <= self.max_price

    def price_of(self, symbol: str) -> float:
        if symbol in self._fixed:
            return self._fixed[symbol]
        quote = self._quotes.get(symbol)
        if quote is None:
            raise PriceUnavailable(f"No price for {symbol}")
        price, timestamp = quote
        if not self._in_bounds(price):
            raise PriceUnavailable(f"Price for {symbol} out of bounds", price=price)
        age = self._clock() - timestamp
        if age > self.max_staleness_seconds:
            raise PriceUnavailable(
                f"Price for {symbol} is stale",
                age_seconds=round(age, 1),
                max_staleness_seconds=self.max_staleness_seconds,
            )
        return price

    def __call__(self, symbol: str) -> float:
        return self.price_of(symbol)
