"""
Execution Router
Chooses an execution strategy from current market conditions.

Decision tree (first match wins):
  spread > 0.5%                → limit   (resting order inside a wide book)
  volatility > 1%              → market  (take liquidity before price moves)
  size > 10% of quoted volume  → iceberg (split to limit market impact)
  otherwise                    → market
"""
from decimal import Decimal
from typing import Optional

from loguru import logger

from trade_models import ExecutionStrategy, MarketSnapshot, TradeSignal, to_decimal
from vol_estimator import ReturnsVolatilityEstimator


class ExecutionRouter:
    """Deterministic smart-order routing over a volatility estimator."""

    WIDE_SPREAD = 0.005
    HIGH_VOLATILITY = 0.01
    LARGE_ORDER_FRACTION = Decimal("0.1")

    def __init__(self, vol_estimator: Optional[ReturnsVolatilityEstimator] = None):
        self.vol_estimator = vol_estimator or ReturnsVolatilityEstimator()

    def select_strategy(self, signal: TradeSignal, market: MarketSnapshot) -> ExecutionStrategy:
        spread = market.spread_pct
        volatility = self.vol_estimator.estimate(signal.symbol)
        size = to_decimal(signal.params.position_size or 0)

        if spread > self.WIDE_SPREAD:
            strategy = ExecutionStrategy.LIMIT
        elif volatility > self.HIGH_VOLATILITY:
            strategy = ExecutionStrategy.MARKET
        elif size > market.volume * self.LARGE_ORDER_FRACTION:
            strategy = ExecutionStrategy.ICEBERG
        else:
            strategy = ExecutionStrategy.MARKET

        logger.info(
            f"Smart routing {signal.symbol}: spread={spread:.4%} vol={volatility:.4%} "
            f"size={size} volume={market.volume} → {strategy.value}"
        )
        return strategy
