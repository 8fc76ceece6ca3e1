"""
Execution Metrics
Tracks order outcomes, slippage and costs per execution strategy.
"""
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Deque, Dict, Optional

from loguru import logger

from interfaces import IMetricsExporter
from trade_models import ExecutionResult


@dataclass
class StrategyStats:
    """Per-strategy counters."""
    total: int = 0
    successful: int = 0
    failed: int = 0
    avg_slippage: float = 0.0
    total_slippage: float = 0.0
    transaction_costs: Decimal = Decimal("0")
    _slippage_samples: int = field(default=0, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"total": self.total, "successful": self.successful,
                "failed": self.failed, "avg_slippage": self.avg_slippage,
                "total_slippage": self.total_slippage,
                "transaction_costs": self.transaction_costs}


class MetricsRecorder:
    """
    Running execution statistics.

    Features:
    - Totals and success rate
    - Per-strategy breakdown with incremental mean of |slippage|
    - Transaction cost and execution time totals
    - Bounded execution history
    """

    def __init__(self, history_size: int = 1000, recent_n: int = 10,
                 exporter: Optional[IMetricsExporter] = None):
        self.history_size = history_size
        self.recent_n = recent_n
        self.exporter = exporter
        self.reset()
        logger.info(f"Initialized Metrics Recorder (history={history_size})")

    def reset(self) -> None:
        self.total_orders = 0
        self.successful_orders = 0
        self.failed_orders = 0
        self.total_slippage = 0.0
        self.slippage_samples = 0
        self.total_transaction_costs = Decimal("0")
        self.total_execution_time_ms = 0.0
        self.by_strategy: Dict[str, StrategyStats] = {}
        self._history: Deque[Dict[str, Any]] = deque(maxlen=self.history_size)

    def record(self, result: ExecutionResult, strategy: str) -> None:
        """Fold one terminal result into the running totals."""
        self.total_orders += 1
        stats = self.by_strategy.setdefault(strategy, StrategyStats())
        stats.total += 1

        if result.success:
            self.successful_orders += 1
            stats.successful += 1
        else:
            self.failed_orders += 1
            stats.failed += 1

        if result.slippage is not None:
            slip = abs(result.slippage)
            self.total_slippage += slip
            self.slippage_samples += 1
            stats.total_slippage += slip
            stats._slippage_samples += 1
            stats.avg_slippage += (slip - stats.avg_slippage) / stats._slippage_samples

        if result.transaction_cost is not None:
            self.total_transaction_costs += result.transaction_cost
            stats.transaction_costs += result.transaction_cost
        self.total_execution_time_ms += result.execution_time_ms

        self._history.append({**result.to_dict(), "requestedStrategy": strategy})

        if self.exporter is not None:
            try:
                self.exporter.observe_execution(result, strategy)
            except Exception as e:
                logger.error(f"Error exporting execution metrics: {e}")

    @property
    def success_rate(self) -> float:
        return self.successful_orders / self.total_orders if self.total_orders else 0.0

    @property
    def history(self):
        return list(self._history)

    def get_summary(self) -> Dict[str, Any]:
        n = self.total_orders
        return {
            "total_orders": n,
            "successful_orders": self.successful_orders,
            "failed_orders": self.failed_orders,
            "success_rate": self.success_rate,
            "avg_execution_time_ms": self.total_execution_time_ms / n if n else 0.0,
            "total_slippage": self.total_slippage,
            "avg_slippage": self.total_slippage / self.slippage_samples if self.slippage_samples else 0.0,
            "total_transaction_costs": self.total_transaction_costs,
            "by_strategy": {name: s.to_dict() for name, s in self.by_strategy.items()},
            "recent_executions": list(self._history)[-self.recent_n:] if self.recent_n > 0 else [],
        }
