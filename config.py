"""
Typed configuration — single source of truth for all pipeline settings.

SRP: This module's sole responsibility is loading and validating configuration.
All env-var reads are consolidated here; no other module should call os.getenv().
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()


def _env(key: str, default: str) -> str:
    return os.getenv(key, default)


def _env_bool(key: str, default: str = "true") -> bool:
    return _env(key, default).lower() == "true"


def _env_int(key: str, default: str) -> int:
    return int(_env(key, default))


def _env_float(key: str, default: str) -> float:
    return float(_env(key, default))


def _env_decimal(key: str, default: str) -> Decimal:
    return Decimal(_env(key, default))


# ── Risk Parameters ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RiskConfig:
    """Default risk parameters (fractions of portfolio value)."""
    max_position_size: float = _env_float("MAX_POSITION_SIZE", "0.05")
    max_total_exposure: float = _env_float("MAX_TOTAL_EXPOSURE", "0.50")
    max_drawdown: float = _env_float("MAX_DRAWDOWN", "0.15")
    stop_loss_default: float = _env_float("STOP_LOSS_DEFAULT", "0.03")
    position_sizing: str = _env("POSITION_SIZING", "risk-based")
    risk_per_trade: float = _env_float("RISK_PER_TRADE", "0.01")
    correlation_threshold: float = _env_float("CORRELATION_THRESHOLD", "0.7")
    min_risk_reward: float = 1.5
    take_profit_ratio: float = 2.0


# ── Portfolio ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PortfolioConfig:
    """Starting ledger values."""
    initial_value: Decimal = _env_decimal("INITIAL_PORTFOLIO_VALUE", "100000")


# ── Execution ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExecutionConfig:
    """Order placement, retry and cost model parameters."""
    slippage_tolerance: float = _env_float("SLIPPAGE_TOLERANCE", "0.001")
    execution_strategy: str = _env("EXECUTION_STRATEGY", "smart")
    retry_attempts: int = _env_int("RETRY_ATTEMPTS", "3")
    retry_delay_ms: int = _env_int("RETRY_DELAY_MS", "1000")
    # Accepted and reported, not enforced by any transition.
    circuit_breaker_threshold: float = _env_float("CIRCUIT_BREAKER_THRESHOLD", "0.05")
    emergency_stop_loss: float = _env_float("EMERGENCY_STOP_LOSS", "0.10")
    expire_after_seconds: int = _env_int("EXPIRE_AFTER_SECONDS", "60")
    order_size_limit: Decimal = _env_decimal("ORDER_SIZE_LIMIT", "100000")
    fee_rate: float = _env_float("FEE_RATE", "0.001")
    limit_offset: float = 0.001
    limit_fill_probability: float = 0.7
    limit_fill_delay_ms: int = _env_int("LIMIT_FILL_DELAY_MS", "1500")
    iceberg_chunks: int = 10
    iceberg_chunk_delay_ms: int = _env_int("ICEBERG_CHUNK_DELAY_MS", "500")
    default_exchange: str = _env("DEFAULT_EXCHANGE", "simulated")
    history_size: int = _env_int("EXECUTION_HISTORY_SIZE", "1000")
    recent_executions: int = 10


# ── Redis Config ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RedisConfig:
    """Redis connection settings for the knowledge store."""
    enabled: bool = _env_bool("USE_REDIS_STORE", "false")
    host: str = _env("REDIS_HOST", "localhost")
    port: int = _env_int("REDIS_PORT", "6379")
    db: int = _env_int("REDIS_DB", "2")
    key_prefix: str = _env("REDIS_KEY_PREFIX", "trade_pipeline")


# ── Metrics Config ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MetricsConfig:
    """Prometheus exporter settings."""
    prometheus_enabled: bool = _env_bool("PROMETHEUS_ENABLED", "false")
    prometheus_port: int = _env_int("PROMETHEUS_PORT", "8000")


# ── Top-level aggregate ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class PipelineConfig:
    """
    Root configuration object — compose all sub-configs.

    Usage:
        cfg = PipelineConfig()              # loads from env
        print(cfg.execution.retry_attempts)
        print(cfg.risk.max_drawdown)
    """
    risk: RiskConfig = field(default_factory=RiskConfig)
    portfolio: PortfolioConfig = field(default_factory=PortfolioConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    log_level: str = _env("LOG_LEVEL", "INFO")
    mailbox_size: int = _env_int("MAILBOX_SIZE", "100")


# Module-level instance (immutable, safe to share)
_cfg: PipelineConfig | None = None


def get_config() -> PipelineConfig:
    """Get the global immutable config. Created once, never mutated."""
    global _cfg
    if _cfg is None:
        _cfg = PipelineConfig()
    return _cfg
