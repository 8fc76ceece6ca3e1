"""
Trade data models shared by the risk, execution and monitoring layers.

SRP: Shared types and small pure helpers. No I/O, no logging.

Money, prices and quantities are Decimal; ratios (exposure, drawdown,
slippage, confidence, rates) are float.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def to_decimal(value: Any) -> Decimal:
    """Convert floats/ints/strings to Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ─────────────────────────────────────────────────────────────

class TradeAction(str, Enum):
    """Signal action."""
    BUY = "BUY"
    SELL = "SELL"
    CLOSE = "CLOSE"


class OrderType(str, Enum):
    """Order type requested on a signal or reported on a result."""
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    SMART = "SMART"
    ICEBERG = "ICEBERG"


class TimeInForce(str, Enum):
    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"


class ExecutionStrategy(str, Enum):
    """Closed set of built-in execution strategies."""
    MARKET = "market"
    LIMIT = "limit"
    SMART = "smart"
    ICEBERG = "iceberg"


LONG = "long"
SHORT = "short"

POSITION_SIZING_MODES = ("risk-based", "fixed-size")


def direction_for(action: TradeAction) -> Optional[str]:
    """Position direction implied by an opening action (None for CLOSE)."""
    if action == TradeAction.BUY:
        return LONG
    if action == TradeAction.SELL:
        return SHORT
    return None


# ── Signals (wire models) ────────────────────────────────────────────────────

class _WireModel(BaseModel):
    """Immutable model that accepts camelCase keys from the messaging layer."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


class RiskMetrics(_WireModel):
    """Per-trade risk figures attached to an approved signal."""
    var95: Decimal
    max_loss: Decimal
    position_risk: float
    position_size: Decimal


class SignalParams(_WireModel):
    """Pricing and order parameters carried by a signal."""
    entry_price: Optional[Decimal] = Field(default=None, gt=0)
    stop_loss: Optional[Decimal] = Field(default=None, gt=0)
    take_profit: Optional[Decimal] = Field(default=None, gt=0)
    position_size: Optional[Decimal] = Field(default=None, gt=0)
    order_type: Optional[OrderType] = None
    time_in_force: Optional[TimeInForce] = None
    expire_after: Optional[float] = Field(default=None, ge=0)
    slippage_tolerance: Optional[float] = Field(default=None, ge=0)
    risk_reward_ratio: Optional[float] = None


class TradeSignal(_WireModel):
    """
    A proposed trade. Immutable once produced: enrichment returns a copy.

    Example:
        TradeSignal.model_validate({
            "action": "BUY", "symbol": "BTC-USD", "confidence": 0.8,
            "strategyId": "trend", "params": {"entryPrice": 50000}})
    """
    action: TradeAction
    symbol: str = Field(min_length=1)
    confidence: float = Field(ge=0, le=1)
    strategy_id: str = Field(min_length=1)
    params: SignalParams
    risk_metrics: Optional[RiskMetrics] = None

    @property
    def direction(self) -> Optional[str]:
        return direction_for(self.action)

    def with_params(self, **changes: Any) -> "TradeSignal":
        """Return a copy with some params replaced."""
        return self.model_copy(update={"params": self.params.model_copy(update=changes)})

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── Risk parameters ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RiskParameters:
    """Risk configuration. Replaced as a whole through ``updated``."""
    max_position_size: float = 0.05
    max_total_exposure: float = 0.50
    max_drawdown: float = 0.15
    stop_loss_default: float = 0.03
    position_sizing: str = "risk-based"
    risk_per_trade: float = 0.01
    correlation_threshold: float = 0.7

    _FRACTIONS = ("max_position_size", "max_total_exposure", "max_drawdown",
                  "stop_loss_default", "risk_per_trade", "correlation_threshold")

    def __post_init__(self):
        for name in self._FRACTIONS:
            value = getattr(self, name)
            if not 0 < float(value) <= 1:
                raise ValueError(f"{name} must be in (0, 1], got {value}")
        if self.position_sizing not in POSITION_SIZING_MODES:
            raise ValueError(
                f"position_sizing must be one of {POSITION_SIZING_MODES}, got {self.position_sizing!r}")

    @classmethod
    def from_config(cls, cfg) -> "RiskParameters":
        return cls(
            max_position_size=cfg.max_position_size,
            max_total_exposure=cfg.max_total_exposure,
            max_drawdown=cfg.max_drawdown,
            stop_loss_default=cfg.stop_loss_default,
            position_sizing=cfg.position_sizing,
            risk_per_trade=cfg.risk_per_trade,
            correlation_threshold=cfg.correlation_threshold,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RiskParameters":
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def updated(self, **changes: Any) -> "RiskParameters":
        """Validated copy with ``changes`` applied. Unknown names raise ValueError."""
        known = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValueError(f"Unknown risk parameters: {', '.join(unknown)}")
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


# ── Portfolio ────────────────────────────────────────────────────────────────

@dataclass
class Position:
    """An open position. One per symbol."""
    symbol: str
    direction: str  # "long" or "short"
    quantity: Decimal
    average_price: Decimal
    open_time: datetime = field(default_factory=utc_now)

    @property
    def value(self) -> Decimal:
        return self.quantity * self.average_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "direction": self.direction,
            "quantity": str(self.quantity),
            "average_price": str(self.average_price),
            "value": str(self.value),
            "open_time": self.open_time.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Position":
        open_time = data.get("open_time")
        return cls(
            symbol=data["symbol"],
            direction=data["direction"],
            quantity=to_decimal(data["quantity"]),
            average_price=to_decimal(data["average_price"]),
            open_time=datetime.fromisoformat(open_time) if open_time else utc_now(),
        )


@dataclass
class PortfolioState:
    """Portfolio value, open positions and the derived exposure/drawdown ratios."""
    total_value: Decimal
    positions: Dict[str, Position] = field(default_factory=dict)
    current_exposure: float = 0.0
    high_water_mark: Decimal = Decimal("0")
    current_drawdown: float = 0.0

    def copy(self) -> "PortfolioState":
        return PortfolioState(
            total_value=self.total_value,
            positions={s: dataclasses.replace(p) for s, p in self.positions.items()},
            current_exposure=self.current_exposure,
            high_water_mark=self.high_water_mark,
            current_drawdown=self.current_drawdown,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_value": str(self.total_value),
            "positions": {s: p.to_dict() for s, p in self.positions.items()},
            "current_exposure": self.current_exposure,
            "high_water_mark": str(self.high_water_mark),
            "current_drawdown": self.current_drawdown,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PortfolioState":
        return cls(
            total_value=to_decimal(data["total_value"]),
            positions={s: Position.from_dict(p) for s, p in (data.get("positions") or {}).items()},
            current_exposure=float(data.get("current_exposure", 0.0)),
            high_water_mark=to_decimal(data.get("high_water_mark", data["total_value"])),
            current_drawdown=float(data.get("current_drawdown", 0.0)),
        )


@dataclass(frozen=True)
class TradeFill:
    """A fill applied to the ledger."""
    symbol: str
    action: TradeAction
    price: Decimal
    quantity: Decimal
    direction: Optional[str] = None


# ── Risk decision ────────────────────────────────────────────────────────────

@dataclass
class RiskDecision:
    """Outcome of a risk evaluation."""
    approved: bool
    reason: str
    original_signal: Any
    modified_signal: Optional[TradeSignal] = None
    risk_metrics: Optional[RiskMetrics] = None
    risk_reward_ratio: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        original = self.original_signal
        if isinstance(original, TradeSignal):
            original = original.to_wire()
        return {
            "approved": self.approved,
            "reason": self.reason,
            "originalSignal": original,
            "modifiedSignal": self.modified_signal.to_wire() if self.modified_signal else None,
            "riskRewardRatio": self.risk_reward_ratio,
        }


# ── Market data & exchange orders ────────────────────────────────────────────

@dataclass
class MarketSnapshot:
    """Top-of-book quote and traded volume for one symbol."""
    symbol: str
    bid: Decimal
    ask: Decimal
    last: Decimal
    volume: Decimal = Decimal("1000")
    timestamp: Optional[float] = None
    spread: Optional[float] = None

    @classmethod
    def from_mapping(cls, symbol: str, data: Mapping[str, Any]) -> "MarketSnapshot":
        bid = to_decimal(data["bid"])
        ask = to_decimal(data["ask"])
        last = to_decimal(data.get("last") or (bid + ask) / 2)
        volume = data.get("volume")
        spread = data.get("spread")
        return cls(
            symbol=data.get("symbol", symbol),
            bid=bid,
            ask=ask,
            last=last,
            volume=to_decimal(volume) if volume else Decimal("1000"),
            timestamp=data.get("timestamp"),
            spread=float(spread) if spread is not None else None,
        )

    @property
    def spread_pct(self) -> float:
        if self.spread is not None:
            return self.spread
        if self.bid <= 0:
            return 0.0
        return float((self.ask - self.bid) / self.bid)

    def quote_for(self, action: TradeAction) -> Decimal:
        """Price a taker would pay: ask when buying, bid when selling."""
        return self.ask if action == TradeAction.BUY else self.bid


@dataclass
class ExchangeOrder:
    """Order handed to an exchange client."""
    client_order_id: str
    symbol: str
    action: TradeAction
    quantity: Decimal
    order_type: OrderType
    reference_price: Decimal
    limit_price: Optional[Decimal] = None
    slippage_tolerance: float = 0.001
    time_in_force: TimeInForce = TimeInForce.GTC
    expire_after: Optional[float] = None

    @property
    def notional(self) -> Decimal:
        return self.quantity * self.reference_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clientOrderId": self.client_order_id,
            "symbol": self.symbol,
            "action": self.action.value,
            "quantity": str(self.quantity),
            "orderType": self.order_type.value,
            "entryPrice": str(self.reference_price),
            "limitPrice": str(self.limit_price) if self.limit_price is not None else None,
            "slippageTolerance": self.slippage_tolerance,
            "timeInForce": self.time_in_force.value,
            "expireAfter": self.expire_after,
        }


# ── Execution result ─────────────────────────────────────────────────────────

@dataclass
class ExecutionResult:
    """Terminal outcome of one logical trade."""
    success: bool
    strategy: str
    timestamp: datetime = field(default_factory=utc_now)
    order_id: Optional[str] = None
    executed_price: Optional[Decimal] = None
    executed_quantity: Optional[Decimal] = None
    slippage: Optional[float] = None
    transaction_cost: Optional[Decimal] = None
    error: Optional[str] = None
    order_type: Optional[OrderType] = None
    limit_price: Optional[Decimal] = None
    attempts: int = 0
    execution_time_ms: float = 0.0
    chunk_results: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def filled(self) -> bool:
        """True when any quantity was executed (iceberg partials included)."""
        return bool(self.executed_quantity) and self.executed_price is not None

    def to_dict(self) -> Dict[str, Any]:
        def _s(v):
            return str(v) if v is not None else None
        return {
            "success": self.success,
            "strategy": self.strategy,
            "timestamp": self.timestamp.isoformat(),
            "orderId": self.order_id,
            "executedPrice": _s(self.executed_price),
            "executedQuantity": _s(self.executed_quantity),
            "slippage": self.slippage,
            "transactionCost": _s(self.transaction_cost),
            "error": self.error,
            "orderType": self.order_type.value if self.order_type else None,
            "limitPrice": _s(self.limit_price),
            "attempts": self.attempts,
            "executionTime": self.execution_time_ms,
            "chunkResults": self.chunk_results,
        }
