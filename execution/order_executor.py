"""
Order Executor
Turns approved, sized signals into exchange orders.

Workflow:
1. Validate the signal (BUY/SELL, entry price, size, notional limit)
2. Resolve the exchange client (auto-provisioning a simulated one)
3. Fetch market data and dispatch to the selected strategy
4. Retry failed attempts with a fixed delay
5. Record the terminal result with the metrics recorder

``execute_trade`` never raises; every outcome is an ExecutionResult.
"""
import asyncio
import dataclasses
import random
import time
import uuid
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from loguru import logger
from pydantic import ValidationError

from config import ExecutionConfig
from errors import ExecutionError, SignalValidationError
from execution.order_router import ExecutionRouter
from execution.simulated_exchange import SimulatedExchangeClient
from interfaces import IExchangeClient, IKnowledgeStore
from trade_models import (
    ExchangeOrder, ExecutionResult, ExecutionStrategy, MarketSnapshot, OrderType,
    TimeInForce, TradeAction, TradeSignal, to_decimal,
)

StrategyFn = Callable[[TradeSignal, MarketSnapshot, IExchangeClient, Mapping[str, Any]],
                      Awaitable[ExecutionResult]]


def _slippage(action: TradeAction, executed: Decimal, reference: Decimal) -> float:
    """Signed slippage; positive is adverse for both sides."""
    if not reference:
        return 0.0
    slip = float((executed - reference) / reference)
    return -slip if action == TradeAction.SELL else slip


class OrderExecutor:
    """
    Strategy-dispatching order executor.

    Usage:
        executor = OrderExecutor(cfg.execution, router, metrics)
        result = await executor.execute_trade(sized_signal, {"strategy": "limit"})
    """

    def __init__(
            self,
            config: Optional[ExecutionConfig] = None,
            router: Optional[ExecutionRouter] = None,
            metrics=None,
            store: Optional[IKnowledgeStore] = None,
            rng: Optional[random.Random] = None,
    ):
        """
        Initialize order executor.

        Args:
            config: Execution parameters (defaults from env when omitted)
            router: Smart-order router used by the ``smart`` strategy
            metrics: MetricsRecorder receiving every terminal result
            store: Knowledge store handed to auto-provisioned simulated exchanges
            rng: Random source for limit-fill simulation and simulated exchanges
        """
        self.config = config or ExecutionConfig()
        self.router = router or ExecutionRouter()
        self.metrics = metrics
        self.store = store
        self.rng = rng or random.Random()
        self._exchanges: Dict[str, IExchangeClient] = {}
        self._strategies: Dict[ExecutionStrategy, StrategyFn] = {
            ExecutionStrategy.MARKET: self._execute_market,
            ExecutionStrategy.LIMIT: self._execute_limit,
            ExecutionStrategy.SMART: self._execute_smart,
            ExecutionStrategy.ICEBERG: self._execute_iceberg,
        }
        logger.info(
            f"Initialized Order Executor: strategy={self.config.execution_strategy}, "
            f"retries={self.config.retry_attempts}, exchange={self.config.default_exchange}"
        )

    # ── Exchange registry ────────────────────────────────────────────────

    def register_exchange(self, exchange_id: str, client: IExchangeClient) -> None:
        if not isinstance(client, IExchangeClient):
            raise TypeError(f"Exchange client for '{exchange_id}' does not implement IExchangeClient")
        self._exchanges[exchange_id] = client
        logger.info(f"Registered exchange: {exchange_id}")

    def get_exchange(self, exchange_id: str) -> IExchangeClient:
        client = self._exchanges.get(exchange_id)
        if client is None:
            logger.warning(f"Exchange {exchange_id} not registered, provisioning simulated client")
            client = SimulatedExchangeClient(exchange_id, store=self.store, rng=self.rng,
                                             fee_rate=self.config.fee_rate)
            self._exchanges[exchange_id] = client
        return client

    async def connect_exchange(self, exchange_id: str) -> bool:
        client = self.get_exchange(exchange_id)
        connect = getattr(client, "connect", None)
        if connect is None:
            return True
        try:
            return bool(await connect())
        except Exception as e:
            logger.error(f"Failed to connect to exchange {exchange_id}: {e}")
            return False

    @property
    def exchanges(self) -> List[str]:
        return list(self._exchanges)

    # ── Parameters ───────────────────────────────────────────────────────

    def update_params(self, **changes: Any) -> ExecutionConfig:
        """Validated partial update of execution parameters."""
        known = {f.name for f in dataclasses.fields(ExecutionConfig)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValueError(f"Unknown execution parameters: {', '.join(unknown)}")
        if "execution_strategy" in changes:
            self._resolve_strategy(changes["execution_strategy"])
        if "retry_attempts" in changes and int(changes["retry_attempts"]) < 1:
            raise ValueError("retry_attempts must be at least 1")
        if "order_size_limit" in changes:
            changes["order_size_limit"] = to_decimal(changes["order_size_limit"])
        self.config = dataclasses.replace(self.config, **changes)
        logger.info(f"Updated execution parameters: {changes}")
        return self.config

    # ── Validation ───────────────────────────────────────────────────────

    def validate_signal(self, signal: Union[TradeSignal, Mapping[str, Any]]) -> TradeSignal:
        """Schema check before any exchange call. Raises SignalValidationError."""
        if isinstance(signal, Mapping):
            try:
                signal = TradeSignal.model_validate(signal)
            except ValidationError as e:
                raise SignalValidationError(
                    f"Invalid trade signal: {e.error_count()} validation error(s)") from e
        elif not isinstance(signal, TradeSignal):
            raise SignalValidationError("Invalid trade signal")

        if signal.action not in (TradeAction.BUY, TradeAction.SELL):
            raise SignalValidationError(f"Cannot execute {signal.action.value} signal directly")
        if signal.params.entry_price is None:
            raise SignalValidationError("Signal is missing entry price")
        if signal.params.position_size is None:
            raise SignalValidationError("Signal is missing position size")
        notional = signal.params.entry_price * signal.params.position_size
        if notional > self.config.order_size_limit:
            raise SignalValidationError(
                f"Order notional ${notional:,.2f} exceeds limit ${self.config.order_size_limit:,.2f}")
        return signal

    @staticmethod
    def _resolve_strategy(name: Any) -> ExecutionStrategy:
        try:
            return ExecutionStrategy(str(name).lower())
        except ValueError:
            raise SignalValidationError(f"Unknown execution strategy: {name}") from None

    # ── Entry point ──────────────────────────────────────────────────────

    async def execute_trade(self, signal: Union[TradeSignal, Mapping[str, Any]],
                            options: Optional[Mapping[str, Any]] = None) -> ExecutionResult:
        """
        Execute a signal with retries.

        Options (all optional): strategy, exchange, slippage_tolerance,
        time_in_force, expire_after.
        """
        options = dict(options or {})
        started = time.perf_counter()
        strategy_name = options.get("strategy") or self.config.execution_strategy

        try:
            parsed = self.validate_signal(signal)
            strategy = self._resolve_strategy(strategy_name)
        except SignalValidationError as e:
            logger.warning(f"Execution rejected: {e}")
            result = ExecutionResult(success=False, strategy=str(strategy_name), error=str(e))
            return self._finish(result, str(strategy_name), started)

        logger.info(f"Executing {parsed.action.value} {parsed.symbol} size={parsed.params.position_size} "
                    f"via {strategy.value}")
        exchange_id = options.get("exchange") or self.config.default_exchange
        attempts = max(1, self.config.retry_attempts)
        last_error: Optional[Exception] = None
        result: Optional[ExecutionResult] = None

        for attempt in range(1, attempts + 1):
            try:
                client = self.get_exchange(exchange_id)
                market = MarketSnapshot.from_mapping(parsed.symbol, await client.get_market_data(parsed.symbol))
                result = await self._strategies[strategy](parsed, market, client, options)
                result.attempts = attempt
                break
            except Exception as e:
                last_error = e
                logger.warning(f"Execution attempt {attempt}/{attempts} failed for {parsed.symbol}: {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.config.retry_delay_ms / 1000)

        if result is None:
            logger.error(f"Execution failed after {attempts} attempts: {last_error}")
            result = ExecutionResult(success=False, strategy=strategy.value,
                                     error=str(last_error), attempts=attempts)
        return self._finish(result, strategy.value, started)

    def _finish(self, result: ExecutionResult, strategy: str, started: float) -> ExecutionResult:
        result.execution_time_ms = (time.perf_counter() - started) * 1000
        if self.metrics is not None:
            self.metrics.record(result, strategy)
        if result.success:
            logger.info(f"Executed {result.executed_quantity} @ {result.executed_price} "
                        f"slippage={result.slippage:+.4%} in {result.execution_time_ms:.0f}ms")
        return result

    # ── Order plumbing ───────────────────────────────────────────────────

    def _build_order(self, signal: TradeSignal, order_type: OrderType, quantity: Decimal,
                     options: Mapping[str, Any], limit_price: Optional[Decimal] = None) -> ExchangeOrder:
        tif = options.get("time_in_force") or signal.params.time_in_force or TimeInForce.GTC
        return ExchangeOrder(
            client_order_id=f"order_{uuid.uuid4().hex[:12]}",
            symbol=signal.symbol,
            action=signal.action,
            quantity=quantity,
            order_type=order_type,
            reference_price=signal.params.entry_price,
            limit_price=limit_price,
            slippage_tolerance=float(options.get("slippage_tolerance")
                                     or signal.params.slippage_tolerance
                                     or self.config.slippage_tolerance),
            time_in_force=TimeInForce(tif),
            expire_after=(options.get("expire_after") or signal.params.expire_after
                          or self.config.expire_after_seconds) if order_type == OrderType.LIMIT else None,
        )

    @staticmethod
    async def _submit(client: IExchangeClient, order: ExchangeOrder) -> Dict[str, Any]:
        """Send one order. An outright rejection raises ExecutionError."""
        response = await client.execute_trade(order)
        if not response.get("success") or response.get("executedPrice") is None:
            raise ExecutionError(response.get("error") or "Order rejected by exchange")
        return response

    def _fill(self, signal: TradeSignal, response: Mapping[str, Any], order: ExchangeOrder,
              strategy: ExecutionStrategy, reference: Decimal) -> ExecutionResult:
        price = to_decimal(response["executedPrice"])
        quantity = to_decimal(response.get("executedQuantity") or order.quantity)
        return ExecutionResult(
            success=True,
            strategy=strategy.value,
            order_id=response.get("orderId"),
            executed_price=price,
            executed_quantity=quantity,
            slippage=_slippage(signal.action, price, reference),
            transaction_cost=price * quantity * to_decimal(self.config.fee_rate),
            order_type=order.order_type,
            limit_price=order.limit_price,
        )

    # ── Strategies ───────────────────────────────────────────────────────

    async def _execute_market(self, signal: TradeSignal, market: MarketSnapshot,
                              client: IExchangeClient, options: Mapping[str, Any]) -> ExecutionResult:
        logger.info(f"Market order: {signal.action.value} {signal.symbol}")
        order = self._build_order(signal, OrderType.MARKET, signal.params.position_size, options)
        response = await self._submit(client, order)
        return self._fill(signal, response, order, ExecutionStrategy.MARKET, signal.params.entry_price)

    async def _execute_limit(self, signal: TradeSignal, market: MarketSnapshot,
                             client: IExchangeClient, options: Mapping[str, Any]) -> ExecutionResult:
        entry = signal.params.entry_price
        offset = to_decimal(self.config.limit_offset)
        if signal.action == TradeAction.BUY:
            limit_price = entry * (1 - offset)
            marketable = limit_price >= market.quote_for(signal.action)
        else:
            limit_price = entry * (1 + offset)
            marketable = limit_price <= market.quote_for(signal.action)
        logger.info(f"Limit order: {signal.action.value} {signal.symbol} @ {limit_price:.4f} "
                    f"(marketable={marketable})")

        if not marketable:
            if self.rng.random() >= self.config.limit_fill_probability:
                logger.warning(f"Limit order for {signal.symbol} expired without filling")
                return ExecutionResult(success=False, strategy=ExecutionStrategy.LIMIT.value,
                                       error="Limit order expired without filling",
                                       order_type=OrderType.LIMIT, limit_price=limit_price)
            await asyncio.sleep(self.rng.uniform(0, self.config.limit_fill_delay_ms) / 1000)

        order = self._build_order(signal, OrderType.LIMIT, signal.params.position_size, options,
                                  limit_price=limit_price)
        response = await self._submit(client, order)
        return self._fill(signal, response, order, ExecutionStrategy.LIMIT, limit_price)

    async def _execute_smart(self, signal: TradeSignal, market: MarketSnapshot,
                             client: IExchangeClient, options: Mapping[str, Any]) -> ExecutionResult:
        selected = self.router.select_strategy(signal, market)
        return await self._strategies[selected](signal, market, client, options)

    async def _execute_iceberg(self, signal: TradeSignal, market: MarketSnapshot,
                               client: IExchangeClient, options: Mapping[str, Any]) -> ExecutionResult:
        total = signal.params.position_size
        n_chunks = max(1, self.config.iceberg_chunks)
        chunk_qty = total / n_chunks
        logger.info(f"Iceberg order: {signal.action.value} {signal.symbol} {total} in {n_chunks} chunks")

        chunk_results: List[Dict[str, Any]] = []
        filled_qty = Decimal("0")
        filled_notional = Decimal("0")
        order_ids = []

        for i in range(n_chunks):
            if i > 0:
                await asyncio.sleep(self.config.iceberg_chunk_delay_ms / 1000)
            # Last chunk absorbs rounding so requested quantities sum to the total.
            qty = total - chunk_qty * (n_chunks - 1) if i == n_chunks - 1 else chunk_qty
            order = self._build_order(signal, OrderType.MARKET, qty, options)
            try:
                response = await self._submit(client, order)
            except Exception as e:
                logger.warning(f"Iceberg chunk {i + 1}/{n_chunks} failed: {e}")
                chunk_results.append({"chunk": i + 1, "requestedQuantity": str(qty),
                                      "success": False, "error": str(e)})
                continue
            price = to_decimal(response["executedPrice"])
            executed = to_decimal(response.get("executedQuantity") or qty)
            filled_qty += executed
            filled_notional += price * executed
            order_ids.append(response.get("orderId"))
            chunk_results.append({"chunk": i + 1, "requestedQuantity": str(qty), "success": True,
                                  "orderId": response.get("orderId"),
                                  "executedPrice": str(price), "executedQuantity": str(executed)})

        failed = sum(1 for c in chunk_results if not c["success"])
        if filled_qty > 0:
            vwap = filled_notional / filled_qty
            slippage = _slippage(signal.action, vwap, signal.params.entry_price)
            cost = vwap * filled_qty * to_decimal(self.config.fee_rate)
        else:
            vwap, slippage, cost = None, None, None

        error = None
        if failed == n_chunks:
            error = "All iceberg chunks failed"
        elif failed:
            error = f"{failed} of {n_chunks} iceberg chunks failed"

        return ExecutionResult(
            success=failed == 0,
            strategy=ExecutionStrategy.ICEBERG.value,
            order_id=order_ids[0] if order_ids else None,
            executed_price=vwap,
            executed_quantity=filled_qty,
            slippage=slippage,
            transaction_cost=cost,
            error=error,
            order_type=OrderType.ICEBERG,
            chunk_results=chunk_results,
        )

    # ── Reporting ────────────────────────────────────────────────────────

    def get_execution_metrics(self) -> Dict[str, Any]:
        summary = self.metrics.get_summary() if self.metrics is not None else {}
        return {
            **summary,
            "exchanges": self.exchanges,
            "params": {
                "execution_strategy": self.config.execution_strategy,
                "slippage_tolerance": self.config.slippage_tolerance,
                "retry_attempts": self.config.retry_attempts,
                "retry_delay_ms": self.config.retry_delay_ms,
                "circuit_breaker_threshold": self.config.circuit_breaker_threshold,
                "emergency_stop_loss": self.config.emergency_stop_loss,
                "expire_after_seconds": self.config.expire_after_seconds,
                "order_size_limit": str(self.config.order_size_limit),
            },
        }
