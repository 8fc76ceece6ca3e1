from decimal import Decimal

import pytest

from execution.portfolio_ledger import PortfolioLedger
from execution.risk_evaluator import RiskEvaluator
from knowledge_store import InMemoryKnowledgeStore
from trade_models import PortfolioState, Position, RiskParameters, TradeAction, TradeFill


def test_insufficient_risk_reward_is_rejected(evaluator, make_signal):
    signal = make_signal(entry_price="50000", stop_loss="49000", take_profit="50500")
    decision = evaluator.evaluate_trade(signal)
    assert not decision.approved
    assert "risk/reward" in decision.reason
    assert decision.risk_reward_ratio == pytest.approx(0.5)


def test_risk_based_size_is_risk_amount_over_stop_distance(ledger, make_signal):
    evaluator = RiskEvaluator(ledger, RiskParameters(max_position_size=1.0))
    decision = evaluator.evaluate_trade(make_signal(entry_price="50000", stop_loss="48500"))
    assert decision.approved
    size = decision.modified_signal.params.position_size
    assert float(size) == pytest.approx(1000 / (50000 * 0.03), rel=1e-6)


def test_risk_based_size_is_capped_by_max_position_size(evaluator, make_signal):
    decision = evaluator.evaluate_trade(make_signal(entry_price="50000", stop_loss="48500"))
    assert decision.approved
    assert decision.modified_signal.params.position_size == Decimal("0.1")


def test_fixed_size_uses_max_position_size(ledger, make_signal):
    evaluator = RiskEvaluator(ledger, RiskParameters(position_sizing="fixed-size"))
    decision = evaluator.evaluate_trade(make_signal(entry_price="50000", stop_loss="48500"))
    assert decision.modified_signal.params.position_size == Decimal("0.1")


def test_duplicate_direction_is_rejected(ledger, evaluator, make_signal):
    ledger.update_portfolio(TradeFill("BTC-USD", TradeAction.BUY, Decimal("50000"), Decimal("0.1")))
    decision = evaluator.evaluate_trade(make_signal(entry_price="50000"))
    assert not decision.approved
    assert "Already have a long position" in decision.reason


def test_close_is_always_approved(ledger, make_signal):
    ledger.restore(PortfolioState(total_value=Decimal("70000"), high_water_mark=Decimal("100000")))
    evaluator = RiskEvaluator(ledger)
    decision = evaluator.evaluate_trade(make_signal("CLOSE"))
    assert decision.approved
    assert decision.reason == "Close signals are always approved"


def test_exposure_limit_blocks_new_trades(make_signal):
    ledger = PortfolioLedger(state=PortfolioState(
        total_value=Decimal("100000"), high_water_mark=Decimal("100000"),
        positions={"ETH-USD": Position("ETH-USD", "long", Decimal("20"), Decimal("3000"))}))
    decision = RiskEvaluator(ledger).evaluate_trade(make_signal(entry_price="50000"))
    assert not decision.approved
    assert decision.reason == "Maximum portfolio exposure reached"


def test_drawdown_limit_blocks_new_trades(make_signal):
    ledger = PortfolioLedger(state=PortfolioState(
        total_value=Decimal("80000"), high_water_mark=Decimal("100000")))
    decision = RiskEvaluator(ledger).evaluate_trade(make_signal(entry_price="50000"))
    assert not decision.approved
    assert decision.reason == "Maximum drawdown threshold reached"


def test_missing_price_is_rejected(evaluator, make_signal):
    decision = evaluator.evaluate_trade(make_signal())
    assert not decision.approved
    assert "price information" in decision.reason


def test_market_price_used_when_signal_has_no_entry(evaluator, make_signal):
    decision = evaluator.evaluate_trade(make_signal(), market_price=Decimal("2000"))
    assert decision.approved
    assert decision.modified_signal.params.entry_price == Decimal("2000")


def test_stop_equal_to_entry_is_rejected_not_raised(evaluator, make_signal):
    decision = evaluator.evaluate_trade(make_signal(entry_price="100", stop_loss="100"))
    assert not decision.approved
    assert decision.reason.startswith("Error evaluating trade")


def test_missing_levels_are_derived_for_buy(evaluator, make_signal):
    decision = evaluator.evaluate_trade(make_signal(entry_price="50000"))
    params = decision.modified_signal.params
    assert params.stop_loss == Decimal("48500")
    assert params.take_profit == Decimal("53000")
    assert decision.risk_reward_ratio == pytest.approx(2.0)


def test_missing_levels_are_derived_for_sell(evaluator, make_signal):
    decision = evaluator.evaluate_trade(make_signal("SELL", entry_price="50000"))
    params = decision.modified_signal.params
    assert params.stop_loss == Decimal("51500")
    assert params.take_profit == Decimal("47000")


def test_risk_metrics_are_attached(evaluator, make_signal):
    decision = evaluator.evaluate_trade(make_signal(entry_price="50000", stop_loss="48500"))
    metrics = decision.risk_metrics
    assert metrics.max_loss == Decimal("150")
    assert metrics.var95 == metrics.max_loss
    assert metrics.position_risk == pytest.approx(0.0015)
    assert decision.modified_signal.risk_metrics == metrics


def test_original_signal_is_not_modified(evaluator, make_signal):
    signal = make_signal(entry_price="50000")
    evaluator.evaluate_trade(signal)
    assert signal.params.position_size is None
    assert signal.params.stop_loss is None


@pytest.mark.parametrize("entry,stop,target", [
    ("50000", "48500", None),
    ("50000", "49500", "52000"),
    ("2000", "1900", "2300"),
    ("1.25", "1.2", "1.4"),
    ("100", "99", None),
])
def test_approved_trades_respect_size_cap_and_ratio(evaluator, make_signal, entry, stop, target):
    params = {"entry_price": entry, "stop_loss": stop}
    if target:
        params["take_profit"] = target
    decision = evaluator.evaluate_trade(make_signal(**params))
    assert decision.approved
    p = decision.modified_signal.params
    cap = evaluator.ledger.total_value * Decimal("0.05")
    assert p.position_size * p.entry_price <= cap * Decimal("1.000000001")
    assert decision.risk_reward_ratio >= 1.5


def test_evaluation_is_idempotent(evaluator, make_signal):
    signal = make_signal(entry_price="50000", stop_loss="49000")
    first = evaluator.evaluate_trade(signal)
    second = evaluator.evaluate_trade(signal)
    assert first.approved == second.approved
    assert first.modified_signal.params.position_size == second.modified_signal.params.position_size


def test_wire_dict_signals_are_accepted(evaluator):
    decision = evaluator.evaluate_trade({
        "action": "BUY", "symbol": "BTC-USD", "confidence": 0.7, "strategyId": "trend",
        "params": {"entryPrice": "50000", "stopLoss": "48500"}})
    assert decision.approved


def test_malformed_signal_is_rejected(evaluator):
    decision = evaluator.evaluate_trade({"action": "HOLD", "symbol": "", "confidence": 3})
    assert not decision.approved
    assert "Invalid trade signal" in decision.reason


def test_update_risk_parameters_validates(evaluator):
    evaluator.update_risk_parameters(max_drawdown=0.2)
    assert evaluator.get_risk_parameters().max_drawdown == 0.2
    with pytest.raises(ValueError):
        evaluator.update_risk_parameters(max_drawdown=1.5)
    with pytest.raises(ValueError):
        evaluator.update_risk_parameters(leverage=3)
    assert evaluator.get_risk_parameters().max_drawdown == 0.2


@pytest.mark.asyncio
async def test_initialize_loads_stored_state_and_checkpoints(ledger):
    store = InMemoryKnowledgeStore()
    await store.store("risk", "parameters", RiskParameters(max_drawdown=0.25).to_dict())
    await store.store("risk", "portfolio-state", PortfolioState(
        total_value=Decimal("120000"), high_water_mark=Decimal("125000")).to_dict())

    evaluator = RiskEvaluator(ledger)
    await evaluator.initialize(store)

    assert evaluator.get_risk_parameters().max_drawdown == 0.25
    assert evaluator.get_portfolio_state().total_value == Decimal("120000")
    assert len(store.get_version_history("risk", "parameters")) == 1


@pytest.mark.asyncio
async def test_initialize_without_stored_values_writes_defaults(ledger):
    store = InMemoryKnowledgeStore()
    await RiskEvaluator(ledger).initialize(store)
    assert (await store.get("risk", "parameters"))["max_position_size"] == 0.05
    assert (await store.get("risk", "portfolio-state"))["total_value"] == "100000"


class _ReadOnlyStore(InMemoryKnowledgeStore):
    async def store(self, category, key, data, metadata=None):
        raise ConnectionError("store offline")


@pytest.mark.asyncio
async def test_initialize_survives_a_failing_store(ledger):
    store = _ReadOnlyStore()
    evaluator = RiskEvaluator(ledger)
    await evaluator.initialize(store, params={"max_drawdown": 0.3})
    assert evaluator.get_risk_parameters().max_drawdown == 0.3
