"""
Risk Evaluator
Gates and sizes trade signals against portfolio constraints.

Enforces:
- Portfolio exposure and drawdown limits
- One position per symbol (no duplicate direction)
- Risk-based or fixed-size position sizing, capped per position
- Minimum reward/risk ratio

Evaluation is read-only on the ledger; callers apply fills separately with
PortfolioLedger.update_portfolio once an order actually executes.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Optional, Union

from loguru import logger
from pydantic import ValidationError

from errors import RiskRejection, SignalValidationError, StateError
from execution.portfolio_ledger import PortfolioLedger
from interfaces import IKnowledgeStore
from trade_models import (
    PortfolioState, RiskDecision, RiskMetrics, RiskParameters, TradeAction,
    TradeSignal, to_decimal,
)

RISK_CATEGORY = "risk"
PARAMETERS_KEY = "parameters"
PORTFOLIO_KEY = "portfolio-state"


class RiskEvaluator:
    """
    Risk management gate in front of execution.

    Usage:
        evaluator = RiskEvaluator(ledger, RiskParameters())
        decision = evaluator.evaluate_trade(signal, market_price=Decimal("50000"))
        if decision.approved:
            sized = decision.modified_signal
    """

    def __init__(
            self,
            ledger: PortfolioLedger,
            params: Optional[RiskParameters] = None,
            min_risk_reward: float = 1.5,
            take_profit_ratio: float = 2.0,
    ):
        """
        Initialize risk evaluator.

        Args:
            ledger: Portfolio ledger consulted for exposure, drawdown and positions
            params: Risk parameters (defaults when omitted)
            min_risk_reward: Reward/risk floor below which trades are rejected
            take_profit_ratio: Reward/risk multiple used to derive a missing take-profit
        """
        self.ledger = ledger
        self._params = params or RiskParameters()
        self.min_risk_reward = min_risk_reward
        self.take_profit_ratio = take_profit_ratio

        logger.info(
            f"Initialized Risk Evaluator: sizing={self._params.position_sizing}, "
            f"max_position={self._params.max_position_size:.1%}, "
            f"max_exposure={self._params.max_total_exposure:.1%}, "
            f"max_drawdown={self._params.max_drawdown:.1%}"
        )

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def initialize(self, store: Optional[IKnowledgeStore] = None,
                         params: Optional[Mapping[str, Any]] = None,
                         portfolio_state: Optional[PortfolioState] = None) -> None:
        """
        Load parameters and portfolio state, then checkpoint the effective values.

        Explicit arguments win over stored values; stored values win over defaults.
        """
        if params:
            self._params = self._params.updated(**params)
        elif store is not None:
            stored = await self._load(store, PARAMETERS_KEY)
            if stored:
                try:
                    self._params = RiskParameters.from_dict(stored)
                except (TypeError, ValueError) as e:
                    logger.warning(f"Ignoring stored risk parameters: {e}")

        if portfolio_state is not None:
            self.ledger.restore(portfolio_state)
        elif store is not None:
            stored_state = await self._load(store, PORTFOLIO_KEY)
            if stored_state:
                try:
                    self.ledger.restore(PortfolioState.from_dict(stored_state))
                except (KeyError, TypeError, ValueError, ArithmeticError) as e:
                    logger.warning(f"Ignoring stored portfolio state: {e}")

        if store is not None:
            try:
                await store.store(RISK_CATEGORY, PARAMETERS_KEY, self._params.to_dict())
                await store.store(RISK_CATEGORY, PORTFOLIO_KEY, self.ledger.to_dict())
            except Exception as e:
                logger.error(f"Risk checkpoint failed: {e}")
        logger.info("Risk Evaluator initialized")

    @staticmethod
    async def _load(store: IKnowledgeStore, key: str):
        try:
            return await store.get(RISK_CATEGORY, key)
        except Exception as e:
            logger.warning(f"No stored {key} found, using defaults ({e})")
            return None

    # ── Parameters ───────────────────────────────────────────────────────

    @property
    def params(self) -> RiskParameters:
        return self._params

    def get_risk_parameters(self) -> RiskParameters:
        return self._params

    def get_portfolio_state(self) -> PortfolioState:
        return self.ledger.state

    def update_risk_parameters(self, **changes: Any) -> RiskParameters:
        """Apply a validated partial update. Raises ValueError on bad values."""
        self._params = self._params.updated(**changes)
        logger.info(f"Updated risk parameters: {changes}")
        return self._params

    # ── Evaluation ───────────────────────────────────────────────────────

    def evaluate_trade(self, signal: Union[TradeSignal, Mapping[str, Any]],
                       market_price: Optional[Any] = None) -> RiskDecision:
        """
        Evaluate a trade for compliance with risk parameters.

        Args:
            signal: TradeSignal (or its wire dict)
            market_price: Current market price, used when the signal has no entry price

        Returns:
            RiskDecision — never raises
        """
        try:
            parsed = self._coerce_signal(signal)
            logger.info(f"Evaluating {parsed.action.value} {parsed.symbol} ({parsed.strategy_id})")

            if parsed.action == TradeAction.CLOSE:
                return RiskDecision(True, "Close signals are always approved", signal)

            self._check_portfolio_limits()
            self._check_existing_position(parsed)

            entry = self._resolve_entry_price(parsed, market_price)
            stop_loss = parsed.params.stop_loss or self._calculate_stop_loss(parsed.action, entry)
            take_profit = parsed.params.take_profit or self._calculate_take_profit(
                parsed.action, entry, stop_loss)
            position_size = self._calculate_position_size(entry, stop_loss)

            rr = self._calculate_risk_reward_ratio(entry, stop_loss, take_profit)
            if rr < self.min_risk_reward:
                raise RiskRejection(f"Insufficient risk/reward ratio ({rr:.2f}:1)", rr)

            metrics = self._calculate_trade_risk_metrics(entry, stop_loss, position_size)
            modified = parsed.model_copy(update={
                "params": parsed.params.model_copy(update={
                    "entry_price": entry,
                    "stop_loss": stop_loss,
                    "take_profit": take_profit,
                    "position_size": position_size,
                    "risk_reward_ratio": rr,
                }),
                "risk_metrics": metrics,
            })
            logger.info(
                f"Approved {parsed.action.value} {parsed.symbol}: size={position_size:.6f} "
                f"SL={stop_loss:.2f} TP={take_profit:.2f} R/R={rr:.2f}"
            )
            return RiskDecision(True, "Trade complies with risk parameters", signal,
                                modified_signal=modified, risk_metrics=metrics,
                                risk_reward_ratio=rr)

        except RiskRejection as e:
            logger.warning(f"Trade rejected: {e.reason}")
            return RiskDecision(False, e.reason, signal, risk_reward_ratio=e.risk_reward_ratio)
        except (SignalValidationError, StateError) as e:
            logger.warning(f"Trade rejected: {e}")
            return RiskDecision(False, f"Error evaluating trade: {e}", signal)
        except Exception as e:
            logger.exception(f"Error evaluating trade: {e}")
            return RiskDecision(False, f"Error evaluating trade: {e}", signal)

    @staticmethod
    def _coerce_signal(signal) -> TradeSignal:
        if isinstance(signal, TradeSignal):
            return signal
        if not isinstance(signal, Mapping):
            raise SignalValidationError("Invalid trade signal")
        try:
            return TradeSignal.model_validate(signal)
        except ValidationError as e:
            raise SignalValidationError(
                f"Invalid trade signal: {e.error_count()} validation error(s)") from e

    def _check_portfolio_limits(self) -> None:
        if self.ledger.current_exposure >= self._params.max_total_exposure:
            raise RiskRejection("Maximum portfolio exposure reached")
        if self.ledger.current_drawdown >= self._params.max_drawdown:
            raise RiskRejection("Maximum drawdown threshold reached")

    def _check_existing_position(self, signal: TradeSignal) -> None:
        existing = self.ledger.get_position(signal.symbol)
        if existing and existing.direction == signal.direction:
            raise RiskRejection(f"Already have a {existing.direction} position for {signal.symbol}")

    @staticmethod
    def _resolve_entry_price(signal: TradeSignal, market_price) -> Decimal:
        if signal.params.entry_price:
            return signal.params.entry_price
        if market_price is not None and to_decimal(market_price) > 0:
            return to_decimal(market_price)
        raise SignalValidationError("Cannot calculate position size without price information")

    # ── Sizing & levels ──────────────────────────────────────────────────

    def _calculate_position_size(self, entry: Decimal, stop_loss: Decimal) -> Decimal:
        """Position size in units of the traded asset."""
        p = self._params
        portfolio_value = self.ledger.total_value
        max_size = portfolio_value * to_decimal(p.max_position_size) / entry

        if p.position_sizing == "risk-based":
            risk_distance = abs(entry - stop_loss) / entry
            if risk_distance == 0:
                raise StateError(
                    "Stop loss is identical to entry price, cannot calculate risk-based position size")
            risk_amount = portfolio_value * to_decimal(p.risk_per_trade)
            size = risk_amount / (entry * risk_distance)
        else:
            size = max_size

        return min(size, max_size)

    def _calculate_stop_loss(self, action: TradeAction, entry: Decimal) -> Decimal:
        pct = to_decimal(self._params.stop_loss_default)
        if action == TradeAction.BUY:
            return entry * (1 - pct)
        return entry * (1 + pct)

    def _calculate_take_profit(self, action: TradeAction, entry: Decimal, stop_loss: Decimal) -> Decimal:
        reward = abs(entry - stop_loss) * to_decimal(self.take_profit_ratio)
        if action == TradeAction.BUY:
            return entry + reward
        return entry - reward

    @staticmethod
    def _calculate_risk_reward_ratio(entry: Decimal, stop_loss: Decimal, take_profit: Decimal) -> float:
        risk_distance = abs(entry - stop_loss)
        if risk_distance == 0:
            raise StateError("Risk distance is zero, cannot calculate risk/reward ratio")
        return float(abs(entry - take_profit) / risk_distance)

    def _calculate_trade_risk_metrics(self, entry: Decimal, stop_loss: Decimal,
                                      position_size: Decimal) -> RiskMetrics:
        max_loss = abs(entry - stop_loss) * position_size
        # Simplified: equals max loss rather than a statistical VaR.
        var95 = max_loss
        return RiskMetrics(
            var95=var95,
            max_loss=max_loss,
            position_risk=float(max_loss / self.ledger.total_value),
            position_size=position_size,
        )
