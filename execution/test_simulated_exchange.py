import random
from decimal import Decimal

import pytest

from execution.simulated_exchange import SimulatedExchangeClient
from interfaces import IExchangeClient
from knowledge_store import InMemoryKnowledgeStore
from trade_models import ExchangeOrder, OrderType, TradeAction


def _order(order_type=OrderType.MARKET, limit_price=None, tolerance=0.001):
    return ExchangeOrder(
        client_order_id="c1", symbol="BTC-USD", action=TradeAction.BUY,
        quantity=Decimal("0.5"), order_type=order_type, reference_price=Decimal("50000"),
        limit_price=limit_price, slippage_tolerance=tolerance)


def test_satisfies_exchange_interface():
    assert isinstance(SimulatedExchangeClient(), IExchangeClient)


@pytest.mark.asyncio
async def test_fallback_market_data():
    data = await SimulatedExchangeClient().get_market_data("BTC-USD")
    assert (data["bid"], data["ask"], data["last"], data["volume"]) == (10000, 10010, 10005, 100)


@pytest.mark.asyncio
async def test_market_data_from_store_and_overrides():
    store = InMemoryKnowledgeStore()
    await store.store("market_data", "ETH-USD.current", {"bid": 1999, "ask": 2001})
    client = SimulatedExchangeClient(store=store)
    assert (await client.get_market_data("ETH-USD"))["bid"] == 1999
    client.set_quote("ETH-USD", bid=1990, ask=2010, volume=50)
    data = await client.get_market_data("ETH-USD")
    assert data["bid"] == 1990 and data["volume"] == 50


@pytest.mark.asyncio
async def test_market_fill_slippage_is_within_tolerance():
    client = SimulatedExchangeClient(rng=random.Random(1), success_rate=1.0)
    for _ in range(20):
        fill = await client.execute_trade(_order(tolerance=0.002))
        assert fill["success"]
        assert abs(fill["executedPrice"] - Decimal("50000")) <= Decimal("100.0001")
        assert fill["executedQuantity"] == Decimal("0.5")


@pytest.mark.asyncio
async def test_limit_fills_at_limit_price():
    client = SimulatedExchangeClient(rng=random.Random(1), success_rate=1.0)
    fill = await client.execute_trade(_order(OrderType.LIMIT, limit_price=Decimal("49950")))
    assert fill["executedPrice"] == Decimal("49950")
    status = await client.check_order_status(fill["orderId"])
    assert status["status"] == "FILLED"
    assert status["avgFillPrice"] == Decimal("49950")


@pytest.mark.asyncio
async def test_rejections_are_reported():
    client = SimulatedExchangeClient(rng=random.Random(1), success_rate=0.0)
    fill = await client.execute_trade(_order())
    assert not fill["success"]
    assert fill["error"] == "Order rejected by exchange"
    assert (await client.check_order_status(fill["orderId"]))["status"] == "REJECTED"


@pytest.mark.asyncio
async def test_connect_and_balance():
    client = SimulatedExchangeClient(connect_delay=0)
    assert await client.connect()
    assert client.is_connected
    balance = await client.get_account_balance()
    assert set(balance) >= {"totalBalance", "availableBalance", "inOrders"}
    assert (await client.check_order_status("nope"))["status"] == "UNKNOWN"
