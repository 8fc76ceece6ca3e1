"""
Portfolio Ledger — owns PortfolioState and its two transitions.

SRP: Position bookkeeping only (open/add, close). It knows nothing about
     sizing rules or order placement.

Transitions:
  BUY / SELL  → create or merge (weighted-average price) a position
  CLOSE       → realize P&L on the filled quantity, reduce or drop the position,
                raise the high-water mark, recompute drawdown

Same-symbol work is serialized through ``symbol_lock`` so two signals for one
symbol cannot both pass the "no existing position" check.
"""
from __future__ import annotations

import asyncio
import dataclasses
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Dict, Optional

from loguru import logger

from trade_models import (
    LONG, PortfolioState, Position, TradeAction, TradeFill,
    direction_for, to_decimal, utc_now,
)


class PortfolioLedger:
    """Holds positions, total value, exposure, high-water mark and drawdown."""

    def __init__(self, initial_value: Decimal = Decimal("100000"),
                 state: Optional[PortfolioState] = None):
        self._state = state.copy() if state else PortfolioState(
            total_value=to_decimal(initial_value),
            high_water_mark=to_decimal(initial_value))
        self._normalize(self._state)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        logger.info(
            f"Initialized Portfolio Ledger: value=${self._state.total_value:,.2f}, "
            f"positions={len(self._state.positions)}")

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def state(self) -> PortfolioState:
        """Snapshot copy of the current state."""
        return self._state.copy()

    @property
    def total_value(self) -> Decimal:
        return self._state.total_value

    @property
    def current_exposure(self) -> float:
        return self._state.current_exposure

    @property
    def current_drawdown(self) -> float:
        return self._state.current_drawdown

    def get_position(self, symbol: str) -> Optional[Position]:
        pos = self._state.positions.get(symbol)
        return dataclasses.replace(pos) if pos else None

    @asynccontextmanager
    async def symbol_lock(self, symbol: str) -> AsyncIterator[None]:
        """Hold the lock serializing evaluate → execute → update for one symbol."""
        lock = self._locks.get(symbol)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[symbol] = lock
        self._lock_users[symbol] = self._lock_users.get(symbol, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[symbol] -= 1
            if not self._lock_users[symbol]:
                del self._lock_users[symbol]
                del self._locks[symbol]

    # ── Transitions ──────────────────────────────────────────────────────

    def update_portfolio(self, trade: TradeFill) -> PortfolioState:
        """Apply a fill and return the new state (as a copy)."""
        logger.info(f"Updating portfolio with {trade.action.value} {trade.symbol} "
                    f"{trade.quantity} @ {trade.price}")
        new_state = self._state.copy()
        if trade.action in (TradeAction.BUY, TradeAction.SELL):
            self._open_or_add(new_state, trade)
        elif trade.action == TradeAction.CLOSE:
            self._close(new_state, trade)
        self._state = new_state
        return self.state

    def restore(self, state: PortfolioState) -> None:
        """Replace the ledger state (e.g. from a checkpoint)."""
        self._state = state.copy()
        self._normalize(self._state)
        logger.info(f"Portfolio restored: value=${self._state.total_value:,.2f}, "
                    f"positions={len(self._state.positions)}")

    def _open_or_add(self, state: PortfolioState, trade: TradeFill) -> None:
        price, qty = to_decimal(trade.price), to_decimal(trade.quantity)
        existing = state.positions.get(trade.symbol)
        if existing:
            total_qty = existing.quantity + qty
            existing.average_price = (existing.average_price * existing.quantity + price * qty) / total_qty
            existing.quantity = total_qty
            logger.info(f"Position increased: {trade.symbol} {existing.direction.upper()} "
                        f"qty={existing.quantity} avg=${existing.average_price:,.2f}")
        else:
            direction = direction_for(trade.action)
            state.positions[trade.symbol] = Position(
                symbol=trade.symbol, direction=direction, quantity=qty,
                average_price=price, open_time=utc_now())
            logger.info(f"Position opened: {trade.symbol} {direction.upper()} {qty} @ ${price:,.2f}")
        state.current_exposure = self._calculate_exposure(state)

    def _close(self, state: PortfolioState, trade: TradeFill) -> None:
        existing = state.positions.get(trade.symbol)
        if not existing:
            logger.warning(f"Close ignored: no open position for {trade.symbol}")
            return
        exit_price = to_decimal(trade.price)
        qty = to_decimal(trade.quantity)
        if qty <= 0 or qty > existing.quantity:
            qty = existing.quantity
        direction = trade.direction or existing.direction
        if direction == LONG:
            pnl = (exit_price - existing.average_price) * qty
        else:
            pnl = (existing.average_price - exit_price) * qty

        state.total_value += pnl
        if qty < existing.quantity:
            existing.quantity -= qty
            logger.info(f"Position reduced: {trade.symbol} {existing.direction.upper()} "
                        f"qty={existing.quantity} avg=${existing.average_price:,.2f}")
        else:
            del state.positions[trade.symbol]
        if state.total_value > state.high_water_mark:
            state.high_water_mark = state.total_value
        state.current_drawdown = self._calculate_drawdown(state)
        state.current_exposure = self._calculate_exposure(state)
        logger.info(f"Position closed: {trade.symbol} P&L=${pnl:+,.2f} "
                    f"value=${state.total_value:,.2f} drawdown={state.current_drawdown:.2%}")

    # ── Derived ratios ───────────────────────────────────────────────────

    @staticmethod
    def _calculate_exposure(state: PortfolioState) -> float:
        if state.total_value <= 0:
            return 0.0
        return float(sum((p.value for p in state.positions.values()), Decimal("0")) / state.total_value)

    @staticmethod
    def _calculate_drawdown(state: PortfolioState) -> float:
        if state.high_water_mark <= 0:
            return 0.0
        return max(0.0, float(1 - state.total_value / state.high_water_mark))

    def _normalize(self, state: PortfolioState) -> None:
        if state.high_water_mark < state.total_value:
            state.high_water_mark = state.total_value
        state.current_exposure = self._calculate_exposure(state)
        state.current_drawdown = self._calculate_drawdown(state)

    def to_dict(self):
        return self._state.to_dict()


