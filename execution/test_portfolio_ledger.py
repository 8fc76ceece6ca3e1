import asyncio
from decimal import Decimal

import pytest

from execution.portfolio_ledger import PortfolioLedger
from trade_models import PortfolioState, Position, TradeAction, TradeFill


def _fill(action, price, qty, symbol="BTC-USD", direction=None):
    return TradeFill(symbol, action, Decimal(price), Decimal(qty), direction)


def _assert_ratios_consistent(state):
    value = sum((p.value for p in state.positions.values()), Decimal("0"))
    assert state.current_exposure == pytest.approx(float(value / state.total_value))
    expected_dd = max(0.0, float(1 - state.total_value / state.high_water_mark))
    assert state.current_drawdown == pytest.approx(expected_dd)


def test_buy_opens_long_position(ledger):
    state = ledger.update_portfolio(_fill(TradeAction.BUY, "50000", "0.5"))
    pos = state.positions["BTC-USD"]
    assert pos.direction == "long"
    assert pos.quantity == Decimal("0.5")
    assert pos.average_price == Decimal("50000")
    assert state.current_exposure == pytest.approx(0.25)


def test_sell_opens_short_position(ledger):
    ledger.update_portfolio(_fill(TradeAction.SELL, "3000", "2", symbol="ETH-USD"))
    assert ledger.get_position("ETH-USD").direction == "short"


def test_adding_to_position_uses_weighted_average_price(ledger):
    ledger.update_portfolio(_fill(TradeAction.BUY, "100", "1", symbol="SOL-USD"))
    state = ledger.update_portfolio(_fill(TradeAction.BUY, "130", "2", symbol="SOL-USD"))
    pos = state.positions["SOL-USD"]
    assert pos.quantity == Decimal("3")
    assert pos.average_price == Decimal("120")


def test_close_long_realizes_profit_and_raises_high_water_mark(ledger):
    ledger.update_portfolio(_fill(TradeAction.BUY, "45000", "2"))
    state = ledger.update_portfolio(_fill(TradeAction.CLOSE, "50000", "2"))
    assert state.total_value == Decimal("110000")
    assert state.high_water_mark == Decimal("110000")
    assert state.current_drawdown == 0
    assert state.current_exposure == 0
    assert "BTC-USD" not in state.positions


def test_close_with_loss_creates_drawdown(ledger):
    ledger.update_portfolio(_fill(TradeAction.BUY, "50000", "2"))
    state = ledger.update_portfolio(_fill(TradeAction.CLOSE, "45000", "2"))
    assert state.total_value == Decimal("90000")
    assert state.high_water_mark == Decimal("100000")
    assert state.current_drawdown == pytest.approx(0.10)


def test_close_short_profits_when_price_falls(ledger):
    ledger.update_portfolio(_fill(TradeAction.SELL, "3000", "10", symbol="ETH-USD"))
    state = ledger.update_portfolio(_fill(TradeAction.CLOSE, "2800", "10", symbol="ETH-USD"))
    assert state.total_value == Decimal("102000")


def test_partial_close_realizes_only_the_filled_quantity(ledger):
    ledger.update_portfolio(_fill(TradeAction.BUY, "100", "10"))
    state = ledger.update_portfolio(_fill(TradeAction.CLOSE, "110", "7"))
    assert state.total_value == Decimal("100070")
    pos = state.positions["BTC-USD"]
    assert pos.quantity == Decimal("3")
    assert pos.average_price == Decimal("100")
    _assert_ratios_consistent(state)


def test_close_for_more_than_held_closes_the_position(ledger):
    ledger.update_portfolio(_fill(TradeAction.BUY, "100", "10"))
    state = ledger.update_portfolio(_fill(TradeAction.CLOSE, "110", "12"))
    assert state.total_value == Decimal("100100")
    assert state.positions == {}


def test_close_without_position_is_a_noop(ledger):
    before = ledger.state
    after = ledger.update_portfolio(_fill(TradeAction.CLOSE, "50000", "1"))
    assert after.total_value == before.total_value
    assert after.positions == {}


def test_ratios_hold_after_every_transition(ledger):
    fills = [
        _fill(TradeAction.BUY, "50000", "0.4"),
        _fill(TradeAction.SELL, "3000", "5", symbol="ETH-USD"),
        _fill(TradeAction.BUY, "52000", "0.1"),
        _fill(TradeAction.CLOSE, "48000", "0.5"),
        _fill(TradeAction.CLOSE, "3100", "5", symbol="ETH-USD"),
        _fill(TradeAction.BUY, "100", "10", symbol="SOL-USD"),
    ]
    for f in fills:
        _assert_ratios_consistent(ledger.update_portfolio(f))


def test_returned_state_is_a_copy(ledger):
    state = ledger.update_portfolio(_fill(TradeAction.BUY, "50000", "0.1"))
    state.positions["BTC-USD"].quantity = Decimal("99")
    state.total_value = Decimal("1")
    assert ledger.get_position("BTC-USD").quantity == Decimal("0.1")
    assert ledger.total_value == Decimal("100000")


def test_restore_recomputes_ratios():
    ledger = PortfolioLedger()
    ledger.restore(PortfolioState(
        total_value=Decimal("80000"), high_water_mark=Decimal("100000"),
        positions={"BTC-USD": Position("BTC-USD", "long", Decimal("0.8"), Decimal("50000"))}))
    assert ledger.current_drawdown == pytest.approx(0.2)
    assert ledger.current_exposure == pytest.approx(0.5)


def test_state_round_trips_through_dict(ledger):
    ledger.update_portfolio(_fill(TradeAction.BUY, "50000", "0.25"))
    restored = PortfolioState.from_dict(ledger.to_dict())
    assert restored.positions["BTC-USD"].quantity == Decimal("0.25")
    assert restored.total_value == ledger.total_value




@pytest.mark.asyncio
async def test_symbol_lock_serializes_one_symbol(ledger):
    order = []

    async def hold(symbol, tag):
        async with ledger.symbol_lock(symbol):
            order.append(f"{tag}-in")
            await asyncio.sleep(0)
            order.append(f"{tag}-out")

    await asyncio.gather(hold("BTC-USD", "a"), hold("BTC-USD", "b"))
    assert order == ["a-in", "a-out", "b-in", "b-out"]


@pytest.mark.asyncio
async def test_symbol_locks_are_dropped_when_idle(ledger):
    async with ledger.symbol_lock("BTC-USD"):
        async with ledger.symbol_lock("ETH-USD"):
            assert set(ledger._locks) == {"BTC-USD", "ETH-USD"}
    assert ledger._locks == {}
    assert ledger._lock_users == {}
