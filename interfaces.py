"""
Protocol interfaces for dependency injection (DIP — Dependency Inversion Principle).

High-level modules (risk, execution, pipeline) depend on these abstractions,
not on concrete implementations.  This allows swapping simulated ↔ live ↔ mock
exchanges and in-memory ↔ Redis storage without touching business logic.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, runtime_checkable

from trade_models import ExchangeOrder, ExecutionResult


# ── Exchange Client ──────────────────────────────────────────────────────────

@runtime_checkable
class IExchangeClient(Protocol):
    """
    Order placement and account access for one venue.

    Payloads are plain dicts with camelCase keys:
        get_market_data    -> {bid, ask, last, volume, timestamp}
        execute_trade      -> {success, orderId, executedPrice, executedQuantity,
                               transactionCost, slippage, timestamp, error?}
        get_account_balance -> {totalBalance, availableBalance, inOrders}
        check_order_status -> {status, filledQuantity, remainingQuantity, avgFillPrice}
    """

    async def get_market_data(self, symbol: str) -> Dict[str, Any]: ...

    async def execute_trade(self, order: ExchangeOrder) -> Dict[str, Any]: ...

    async def get_account_balance(self) -> Dict[str, Any]: ...

    async def check_order_status(self, order_id: str) -> Dict[str, Any]: ...


# ── Knowledge Store ──────────────────────────────────────────────────────────

@runtime_checkable
class IKnowledgeStore(Protocol):
    """Category/key persistence used for best-effort checkpoints."""

    async def store(self, category: str, key: str, data: Any) -> bool: ...

    async def get(self, category: str, key: str) -> Optional[Any]: ...


# ── Metrics Exporter ─────────────────────────────────────────────────────────

@runtime_checkable
class IMetricsExporter(Protocol):
    """Exports execution metrics (e.g. to Prometheus/Grafana)."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def observe_execution(self, result: ExecutionResult, strategy: str) -> None: ...
