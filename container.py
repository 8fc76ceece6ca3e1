"""
Service Container — wires and owns all shared service instances.

SRP:  This module's only job is construction + lifecycle of shared services.
DIP:  Consumers receive collaborators through constructors, never globals.
OCP:  Adding a new service = one new property; existing code untouched.

Usage:
    container = ServiceContainer(cfg)       # build once at startup
    await container.start()
    outcome = await container.pipeline.process_signal(signal)
    await container.shutdown()
"""
from __future__ import annotations

import random
from typing import Optional

from loguru import logger

from config import PipelineConfig, get_config
from interfaces import IKnowledgeStore, IMetricsExporter


class ServiceContainer:
    """
    Owns and lazily constructs all pipeline services.

    Services are built on first access so tests can ``override`` any of
    them beforehand.
    """

    def __init__(self, cfg: Optional[PipelineConfig] = None, rng: Optional[random.Random] = None):
        self.cfg = cfg or get_config()
        self.rng = rng
        self._store: Optional[IKnowledgeStore] = None
        self._ledger = None
        self._risk_evaluator = None
        self._vol_estimator = None
        self._router = None
        self._exporter: Optional[IMetricsExporter] = None
        self._metrics = None
        self._executor = None
        self._pipeline = None
        self._started = False
        logger.info("ServiceContainer initialised")

    # ── Lazy constructors ────────────────────────────────────────────────

    @property
    def store(self) -> IKnowledgeStore:
        if self._store is None:
            if self.cfg.redis.enabled:
                from knowledge_store import RedisKnowledgeStore
                r = self.cfg.redis
                self._store = RedisKnowledgeStore(host=r.host, port=r.port, db=r.db,
                                                  key_prefix=r.key_prefix)
            else:
                from knowledge_store import InMemoryKnowledgeStore
                self._store = InMemoryKnowledgeStore()
        return self._store

    @property
    def ledger(self):
        if self._ledger is None:
            from execution.portfolio_ledger import PortfolioLedger
            self._ledger = PortfolioLedger(self.cfg.portfolio.initial_value)
        return self._ledger

    @property
    def risk_evaluator(self):
        if self._risk_evaluator is None:
            from execution.risk_evaluator import RiskEvaluator
            from trade_models import RiskParameters
            r = self.cfg.risk
            self._risk_evaluator = RiskEvaluator(
                self.ledger, RiskParameters.from_config(r),
                min_risk_reward=r.min_risk_reward, take_profit_ratio=r.take_profit_ratio)
        return self._risk_evaluator

    @property
    def vol_estimator(self):
        if self._vol_estimator is None:
            from vol_estimator import ReturnsVolatilityEstimator
            self._vol_estimator = ReturnsVolatilityEstimator()
        return self._vol_estimator

    @property
    def router(self):
        if self._router is None:
            from execution.order_router import ExecutionRouter
            self._router = ExecutionRouter(self.vol_estimator)
        return self._router

    @property
    def exporter(self) -> Optional[IMetricsExporter]:
        if self._exporter is None and self.cfg.metrics.prometheus_enabled:
            from monitoring.prometheus_exporter import PrometheusMetricsExporter
            self._exporter = PrometheusMetricsExporter(self.cfg.metrics.prometheus_port)
        return self._exporter

    @property
    def metrics(self):
        if self._metrics is None:
            from monitoring.execution_metrics import MetricsRecorder
            e = self.cfg.execution
            self._metrics = MetricsRecorder(e.history_size, e.recent_executions, self.exporter)
        return self._metrics

    @property
    def executor(self):
        if self._executor is None:
            from execution.order_executor import OrderExecutor
            self._executor = OrderExecutor(self.cfg.execution, self.router, self.metrics,
                                           store=self.store, rng=self.rng)
        return self._executor

    @property
    def pipeline(self):
        if self._pipeline is None:
            from execution.trade_pipeline import TradePipeline
            self._pipeline = TradePipeline(self.ledger, self.risk_evaluator, self.executor,
                                           self.vol_estimator, self.store, self.cfg.mailbox_size)
        return self._pipeline

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Connect storage, load checkpoints, connect the default exchange."""
        if self._started:
            return
        connect = getattr(self.store, "connect", None)
        if connect is not None:
            await connect()
        await self.risk_evaluator.initialize(self.store)
        await self.executor.connect_exchange(self.cfg.execution.default_exchange)
        if self.exporter is not None:
            await self.exporter.start()
        await self.pipeline.start()
        self._started = True
        logger.info("ServiceContainer started")

    async def shutdown(self) -> None:
        if not self._started:
            return
        await self.pipeline.stop()
        if self._exporter is not None:
            await self._exporter.stop()
        close = getattr(self._store, "close", None)
        if close is not None:
            await close()
        self._started = False
        logger.info("ServiceContainer shut down")

    # ── Inject overrides (for testing) ───────────────────────────────────

    def override(self, **kwargs):
        """
        Override any service with a mock/stub.

        Example:
            container.override(store=InMemoryKnowledgeStore())
        """
        for key, value in kwargs.items():
            attr = f"_{key}"
            if hasattr(self, attr):
                setattr(self, attr, value)
                logger.debug(f"ServiceContainer: overrode {key}")
            else:
                raise KeyError(f"Unknown service: {key}")
