"""
Simulated Exchange Client
In-memory IExchangeClient used when no live venue is registered.

Features:
- Quotes from explicit overrides, the knowledge store
  (``market_data/<SYMBOL>.current``) or a fixed fallback book
- Market fills with random slippage bounded by the order's tolerance
- Limit fills at the limit price
- Configurable rejection rate (default 5%)
"""
import asyncio
import random
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

from loguru import logger

from interfaces import IKnowledgeStore
from trade_models import ExchangeOrder, OrderType, to_decimal

_FALLBACK_BOOK = {"bid": 10000, "ask": 10010, "last": 10005, "volume": 100}


class SimulatedExchangeClient:
    """
    Paper-trading venue.

    Usage:
        client = SimulatedExchangeClient("simulated", rng=random.Random(7))
        client.set_quote("BTC-USD", bid=49990, ask=50010, volume=500)
        fill = await client.execute_trade(order)
    """

    def __init__(self, exchange_id: str = "simulated", store: Optional[IKnowledgeStore] = None,
                 rng: Optional[random.Random] = None, success_rate: float = 0.95,
                 fee_rate: float = 0.001, connect_delay: float = 0.1):
        self.exchange_id = exchange_id
        self.store = store
        self.rng = rng or random.Random()
        self.success_rate = success_rate
        self.fee_rate = fee_rate
        self.connect_delay = connect_delay
        self._quotes: Dict[str, Dict[str, Any]] = {}
        self._orders: Dict[str, Dict[str, Any]] = {}
        self._connected = False
        logger.info(f"Created simulated exchange client '{exchange_id}' "
                    f"(success_rate={success_rate:.0%})")

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        await asyncio.sleep(self.connect_delay)
        self._connected = True
        logger.info(f"Connected to {self.exchange_id}")
        return True

    def set_quote(self, symbol: str, bid, ask, last=None, volume=None, spread=None) -> None:
        """Pin the book for ``symbol`` (takes precedence over stored market data)."""
        quote = {"symbol": symbol, "bid": bid, "ask": ask,
                 "last": last if last is not None else (to_decimal(bid) + to_decimal(ask)) / 2}
        if volume is not None:
            quote["volume"] = volume
        if spread is not None:
            quote["spread"] = spread
        self._quotes[symbol] = quote

    # ── IExchangeClient ─────────────────────────────────────────────────

    async def get_market_data(self, symbol: str) -> Dict[str, Any]:
        if symbol in self._quotes:
            return {**self._quotes[symbol], "timestamp": time.time()}
        if self.store is not None:
            stored = await self.store.get("market_data", f"{symbol}.current")
            if stored:
                return stored
        return {"symbol": symbol, **_FALLBACK_BOOK, "timestamp": time.time()}

    async def execute_trade(self, order: ExchangeOrder) -> Dict[str, Any]:
        order_id = f"sim-{uuid.uuid4().hex[:12]}"
        timestamp = time.time()

        if self.rng.random() >= self.success_rate:
            logger.warning(f"[{self.exchange_id}] Rejected {order.action.value} {order.symbol} "
                           f"qty={order.quantity}")
            self._orders[order_id] = {"status": "REJECTED", "filledQuantity": Decimal("0"),
                                      "remainingQuantity": order.quantity, "avgFillPrice": None}
            return {"success": False, "orderId": order_id, "timestamp": timestamp,
                    "error": "Order rejected by exchange"}

        if order.order_type == OrderType.LIMIT and order.limit_price is not None:
            price = order.limit_price
            slippage = 0.0
        else:
            tolerance = order.slippage_tolerance
            slippage = self.rng.uniform(-tolerance, tolerance)
            price = order.reference_price * (1 + to_decimal(round(slippage, 12)))

        cost = price * order.quantity * to_decimal(self.fee_rate)
        self._orders[order_id] = {"status": "FILLED", "filledQuantity": order.quantity,
                                  "remainingQuantity": Decimal("0"), "avgFillPrice": price}
        logger.debug(f"[{self.exchange_id}] Filled {order.action.value} {order.symbol} "
                     f"{order.quantity} @ {price:.4f}")
        return {
            "success": True,
            "orderId": order_id,
            "executedPrice": price,
            "executedQuantity": order.quantity,
            "transactionCost": cost,
            "slippage": slippage,
            "timestamp": timestamp,
        }

    async def get_account_balance(self) -> Dict[str, Any]:
        return {"totalBalance": Decimal("100000"), "availableBalance": Decimal("95000"),
                "inOrders": Decimal("5000"), "timestamp": time.time()}

    async def check_order_status(self, order_id: str) -> Dict[str, Any]:
        record = self._orders.get(order_id)
        if record is None:
            return {"orderId": order_id, "status": "UNKNOWN", "filledQuantity": Decimal("0"),
                    "remainingQuantity": Decimal("0"), "avgFillPrice": None,
                    "timestamp": time.time()}
        return {"orderId": order_id, **record, "timestamp": time.time()}
