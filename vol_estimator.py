"""
Short-lookback volatility estimator used by smart order routing.

Volatility here is the population standard deviation of simple
period-over-period returns over the last ``lookback`` prices per symbol.
It is a routing heuristic, not an annualized risk figure.
"""

import math
from collections import deque
from typing import Deque, Dict, Iterable, List

from loguru import logger


class ReturnsVolatilityEstimator:
    """Per-symbol rolling price buffer with a returns std-dev estimate."""

    def __init__(self, lookback: int = 20, default_vol: float = 0.005):
        self.lookback = max(lookback, 2)
        self.default_vol = default_vol
        self._prices: Dict[str, Deque[float]] = {}

    def _buffer(self, symbol: str) -> Deque[float]:
        buf = self._prices.get(symbol)
        if buf is None:
            buf = deque(maxlen=self.lookback)
            self._prices[symbol] = buf
        return buf

    def add_price(self, symbol: str, price: float) -> None:
        """Add a new price observation for ``symbol``."""
        if price is None or float(price) <= 0:
            return
        self._buffer(symbol).append(float(price))

    def load_history(self, symbol: str, prices: Iterable[float]) -> None:
        """Seed the buffer with historical prices (oldest first)."""
        for p in prices:
            self.add_price(symbol, p)
        logger.debug(f"VolEstimator: {symbol} seeded with {len(self._buffer(symbol))} prices")

    def has_history(self, symbol: str) -> bool:
        return len(self._prices.get(symbol, ())) > 1

    def returns(self, symbol: str) -> List[float]:
        prices = list(self._prices.get(symbol, ()))
        return [(b - a) / a for a, b in zip(prices, prices[1:]) if a > 0]

    def estimate(self, symbol: str) -> float:
        """Std-dev of recent returns, or ``default_vol`` without enough data."""
        rets = self.returns(symbol)
        if not rets:
            return self.default_vol
        mean = sum(rets) / len(rets)
        variance = sum((r - mean) ** 2 for r in rets) / len(rets)
        return math.sqrt(variance)
