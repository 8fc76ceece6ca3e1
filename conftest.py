"""Shared fixtures: zero-delay configs, seeded randomness and a scripted exchange."""
import asyncio
import random
from decimal import Decimal

import pytest

from config import ExecutionConfig
from execution.order_executor import OrderExecutor
from execution.order_router import ExecutionRouter
from execution.portfolio_ledger import PortfolioLedger
from execution.risk_evaluator import RiskEvaluator
from execution.trade_pipeline import TradePipeline
from knowledge_store import InMemoryKnowledgeStore
from monitoring.execution_metrics import MetricsRecorder
from trade_models import RiskParameters, TradeSignal
from vol_estimator import ReturnsVolatilityEstimator


class ScriptedExchange:
    """
    IExchangeClient double.

    ``script`` is consumed one item per execute_trade call: a Decimal fill
    price, an Exception to raise, or "reject" for an outright rejection.
    An empty script fills at the limit price (or the order's reference price).
    """

    def __init__(self, bid="99.9", ask="100.1", volume="1000"):
        self.script = []
        self.orders = []
        self.set_book(bid, ask, volume)

    def set_book(self, bid, ask, volume="1000"):
        bid, ask = Decimal(bid), Decimal(ask)
        self.market = {"bid": bid, "ask": ask, "last": (bid + ask) / 2, "volume": Decimal(volume)}

    async def get_market_data(self, symbol):
        return {"symbol": symbol, **self.market}

    async def execute_trade(self, order):
        await asyncio.sleep(0)
        self.orders.append(order)
        step = self.script.pop(0) if self.script else None
        if isinstance(step, Exception):
            raise step
        if isinstance(step, str) and step == "reject":
            return {"success": False, "error": "Insufficient liquidity"}
        price = step if step is not None else (order.limit_price or order.reference_price)
        return {"success": True, "orderId": f"o{len(self.orders)}",
                "executedPrice": price, "executedQuantity": order.quantity}

    async def get_account_balance(self):
        return {"totalBalance": Decimal("100000"), "availableBalance": Decimal("100000"),
                "inOrders": Decimal("0")}

    async def check_order_status(self, order_id):
        return {"status": "FILLED", "filledQuantity": Decimal("0"),
                "remainingQuantity": Decimal("0"), "avgFillPrice": None}


class FixedRandom(random.Random):
    """Random source whose ``random()`` always returns ``value``."""

    def __init__(self, value: float):
        super().__init__(0)
        self.value = value

    def random(self):
        return self.value


@pytest.fixture
def exec_config():
    return ExecutionConfig(
        execution_strategy="market",
        retry_attempts=3,
        retry_delay_ms=0,
        limit_fill_delay_ms=0,
        iceberg_chunk_delay_ms=0,
        default_exchange="simulated",
        order_size_limit=Decimal("100000"),
        fee_rate=0.001,
    )


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def ledger():
    return PortfolioLedger(Decimal("100000"))


@pytest.fixture
def evaluator(ledger):
    return RiskEvaluator(ledger, RiskParameters())


@pytest.fixture
def exchange():
    return ScriptedExchange()


@pytest.fixture
def vol_estimator():
    return ReturnsVolatilityEstimator()


@pytest.fixture
def executor(exec_config, exchange, vol_estimator, rng):
    ex = OrderExecutor(exec_config, ExecutionRouter(vol_estimator), MetricsRecorder(), rng=rng)
    ex.register_exchange("simulated", exchange)
    return ex


@pytest.fixture
def store():
    return InMemoryKnowledgeStore()


@pytest.fixture
def pipeline(ledger, evaluator, executor, vol_estimator, store):
    return TradePipeline(ledger, evaluator, executor, vol_estimator, store, mailbox_size=10)


@pytest.fixture
def make_signal():
    def _make(action="BUY", symbol="BTC-USD", **params):
        return TradeSignal.model_validate({
            "action": action, "symbol": symbol, "confidence": 0.8,
            "strategyId": "test", "params": params,
        })
    return _make
