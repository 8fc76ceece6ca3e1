"""
Trade Pipeline
Signal → risk evaluation → execution → ledger update, one symbol at a time.

Inbound messages arrive on a bounded inbox queue and are processed by a
single worker task; responses are put on a bounded outbox queue (dropped
with an error log when nobody is reading it):

  {"type": "trade_execution", "signal": {...}, "params": {...}}
      → {"type": "execution_response", "success", "originalSignal",
         "executionResult", "riskDecision", "timestamp", "error"?}
  {"type": "execution_params_update", "params": {...}}
      → {"type": "execution_params_updated", "success", "params", "error"?}
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Set, Union

from loguru import logger
from pydantic import ValidationError
from pydantic.alias_generators import to_snake

from errors import SignalValidationError
from execution.order_executor import OrderExecutor
from execution.portfolio_ledger import PortfolioLedger
from execution.risk_evaluator import PORTFOLIO_KEY, RISK_CATEGORY, RiskEvaluator
from interfaces import IKnowledgeStore
from trade_models import (
    LONG, ExecutionResult, MarketSnapshot, RiskDecision, TradeAction, TradeFill,
    TradeSignal, utc_now,
)
from vol_estimator import ReturnsVolatilityEstimator

EXECUTIONS_CATEGORY = "executions"
MARKET_DATA_CATEGORY = "market_data"


@dataclass
class PipelineOutcome:
    """What happened to one signal."""
    signal: Any
    reason: str
    decision: Optional[RiskDecision] = None
    result: Optional[ExecutionResult] = None

    @property
    def approved(self) -> bool:
        return self.decision is not None and self.decision.approved

    @property
    def executed(self) -> bool:
        return self.result is not None and self.result.success

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approved": self.approved,
            "executed": self.executed,
            "reason": self.reason,
            "riskDecision": self.decision.to_dict() if self.decision else None,
            "executionResult": self.result.to_dict() if self.result else None,
        }


class TradePipeline:
    """
    Serializes evaluate → execute → update per symbol.

    Usage:
        pipeline = TradePipeline(ledger, evaluator, executor, vol_estimator, store)
        outcome = await pipeline.process_signal(signal)

        await pipeline.start()
        await pipeline.submit({"type": "trade_execution", "signal": {...}})
        response = await pipeline.outbox.get()
        await pipeline.stop()
    """

    def __init__(
            self,
            ledger: PortfolioLedger,
            evaluator: RiskEvaluator,
            executor: OrderExecutor,
            vol_estimator: Optional[ReturnsVolatilityEstimator] = None,
            store: Optional[IKnowledgeStore] = None,
            mailbox_size: int = 100,
    ):
        self.ledger = ledger
        self.evaluator = evaluator
        self.executor = executor
        self.vol_estimator = vol_estimator or executor.router.vol_estimator
        self.store = store
        self.mailbox_size = mailbox_size
        self.inbox: Optional[asyncio.Queue] = None
        self.outbox: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._seeded: Set[str] = set()
        self.dropped_responses = 0

    # ── Signal processing ────────────────────────────────────────────────

    async def process_signal(self, signal: Union[TradeSignal, Mapping[str, Any]],
                             options: Optional[Mapping[str, Any]] = None) -> PipelineOutcome:
        """Run one signal through risk and execution. Never raises."""
        try:
            parsed = signal if isinstance(signal, TradeSignal) else TradeSignal.model_validate(signal)
        except (ValidationError, TypeError) as e:
            logger.warning(f"Invalid trade signal: {e}")
            return PipelineOutcome(signal, f"Invalid trade signal: {e}")

        async with self.ledger.symbol_lock(parsed.symbol):
            market = await self._market_snapshot(parsed.symbol, options)
            if parsed.action == TradeAction.CLOSE:
                outcome = await self._process_close(parsed, market, options)
            else:
                outcome = await self._process_open(parsed, market, options)
            await self._checkpoint(parsed.symbol, outcome.result)
        return outcome

    async def _process_open(self, signal: TradeSignal, market: Optional[MarketSnapshot],
                            options) -> PipelineOutcome:
        decision = self.evaluator.evaluate_trade(signal, market.last if market else None)
        if not decision.approved:
            return PipelineOutcome(signal, decision.reason, decision)

        result = await self.executor.execute_trade(decision.modified_signal, options)
        if result.filled:
            self.ledger.update_portfolio(TradeFill(
                symbol=signal.symbol, action=signal.action,
                price=result.executed_price, quantity=result.executed_quantity))
        reason = "Executed" if result.success else (result.error or "Execution failed")
        return PipelineOutcome(signal, reason, decision, result)

    async def _process_close(self, signal: TradeSignal, market: Optional[MarketSnapshot],
                             options) -> PipelineOutcome:
        position = self.ledger.get_position(signal.symbol)
        if position is None:
            logger.warning(f"Close rejected: no open position for {signal.symbol}")
            return PipelineOutcome(signal, f"No open position for {signal.symbol}")

        decision = self.evaluator.evaluate_trade(signal)
        side = TradeAction.SELL if position.direction == LONG else TradeAction.BUY
        exit_price = signal.params.entry_price or (market.quote_for(side) if market else position.average_price)
        order_signal = signal.model_copy(update={
            "action": side,
            "params": signal.params.model_copy(update={
                "entry_price": exit_price, "position_size": position.quantity}),
        })

        result = await self.executor.execute_trade(order_signal, options)
        if result.filled:
            self.ledger.update_portfolio(TradeFill(
                symbol=signal.symbol, action=TradeAction.CLOSE,
                price=result.executed_price, quantity=result.executed_quantity,
                direction=position.direction))
        reason = "Position closed" if result.success else (result.error or "Execution failed")
        return PipelineOutcome(signal, reason, decision, result)

    async def _market_snapshot(self, symbol: str, options) -> Optional[MarketSnapshot]:
        await self._seed_history(symbol)
        exchange_id = (options or {}).get("exchange") or self.executor.config.default_exchange
        try:
            data = await self.executor.get_exchange(exchange_id).get_market_data(symbol)
            market = MarketSnapshot.from_mapping(symbol, data)
        except Exception as e:
            logger.warning(f"Market data unavailable for {symbol}: {e}")
            return None
        self.vol_estimator.add_price(symbol, float(market.last))
        return market

    async def _seed_history(self, symbol: str) -> None:
        if symbol in self._seeded or self.store is None:
            return
        self._seeded.add(symbol)
        try:
            recent = await self.store.get(MARKET_DATA_CATEGORY, f"{symbol}.recent")
        except Exception as e:
            logger.warning(f"Could not load price history for {symbol}: {e}")
            return
        if recent and recent.get("prices"):
            self.vol_estimator.load_history(symbol, recent["prices"])

    async def _checkpoint(self, symbol: str, result: Optional[ExecutionResult]) -> None:
        if self.store is None:
            return
        try:
            await self.store.store(RISK_CATEGORY, PORTFOLIO_KEY, self.ledger.to_dict())
            if result is not None:
                key = f"{symbol.upper()}.{int(time.time() * 1000)}"
                await self.store.store(EXECUTIONS_CATEGORY, key, result.to_dict())
        except Exception as e:
            logger.error(f"Checkpoint failed for {symbol}: {e}")

    # ── Messages ─────────────────────────────────────────────────────────

    async def handle_message(self, message: Mapping[str, Any]) -> Dict[str, Any]:
        msg_type = message.get("type")
        if msg_type == "trade_execution":
            return await self._handle_trade_execution(message)
        if msg_type == "execution_params_update":
            return self._handle_params_update(message)
        logger.warning(f"Unknown message type: {msg_type}")
        return {"type": "error", "success": False, "error": f"Unknown message type: {msg_type}",
                "timestamp": utc_now().isoformat()}

    async def _handle_trade_execution(self, message: Mapping[str, Any]) -> Dict[str, Any]:
        signal = message.get("signal")
        options = {to_snake(k): v for k, v in (message.get("params") or {}).items()}
        if not isinstance(signal, Mapping) and not isinstance(signal, TradeSignal):
            outcome = PipelineOutcome(signal, "Invalid trade signal: missing signal")
        else:
            outcome = await self.process_signal(signal, options)

        response = {
            "type": "execution_response",
            "success": outcome.executed,
            "originalSignal": signal.to_wire() if isinstance(signal, TradeSignal) else signal,
            "executionResult": outcome.result.to_dict() if outcome.result else None,
            "riskDecision": outcome.decision.to_dict() if outcome.decision else None,
            "timestamp": utc_now().isoformat(),
        }
        if not outcome.executed:
            response["error"] = outcome.reason
        return response

    def _handle_params_update(self, message: Mapping[str, Any]) -> Dict[str, Any]:
        changes = {to_snake(k): v for k, v in (message.get("params") or {}).items()}
        response: Dict[str, Any] = {"type": "execution_params_updated", "success": True}
        try:
            self.executor.update_params(**changes)
        except (ValueError, TypeError, SignalValidationError) as e:
            logger.warning(f"Rejected execution params update: {e}")
            response.update(success=False, error=str(e))
        response["params"] = self.executor.get_execution_metrics()["params"]
        response["timestamp"] = utc_now().isoformat()
        return response

    # ── Mailbox ──────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._worker is not None:
            logger.warning("Trade pipeline already running")
            return
        self.inbox = asyncio.Queue(maxsize=self.mailbox_size)
        self.outbox = asyncio.Queue(maxsize=self.mailbox_size)
        self._worker = asyncio.create_task(self._run())
        logger.info(f"Trade pipeline started (mailbox={self.mailbox_size})")

    async def submit(self, message: Mapping[str, Any]) -> None:
        """Queue a message; waits while the inbox is full."""
        if self.inbox is None:
            raise RuntimeError("Trade pipeline is not running")
        await self.inbox.put(message)

    async def stop(self) -> None:
        """Drain queued messages, then stop the worker."""
        if self._worker is None:
            return
        await self.inbox.put(None)
        await self._worker
        self._worker = None
        logger.info("Trade pipeline stopped")

    async def _run(self) -> None:
        while True:
            message = await self.inbox.get()
            try:
                if message is None:
                    return
                try:
                    response = await self.handle_message(message)
                except Exception as e:
                    logger.exception(f"Error handling message: {e}")
                    response = {"type": "error", "success": False, "error": str(e),
                                "timestamp": utc_now().isoformat()}
                self._publish(response)
            finally:
                self.inbox.task_done()

    def _publish(self, response: Dict[str, Any]) -> None:
        # Outbox never blocks the worker; unread responses are dropped.
        try:
            self.outbox.put_nowait(response)
        except asyncio.QueueFull:
            self.dropped_responses += 1
            logger.error(f"Outbox full, dropped {response.get('type')} response "
                         f"(dropped={self.dropped_responses})")
