"""
Prometheus Metrics Exporter
Exposes execution metrics for Grafana to scrape.
"""
from typing import Optional

from loguru import logger
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from trade_models import ExecutionResult


class PrometheusMetricsExporter:
    """
    Mirrors MetricsRecorder updates into Prometheus collectors.

    Uses its own CollectorRegistry so several pipelines (or tests) in one
    process never collide on metric names.
    """

    def __init__(self, port: int = 8000, registry: Optional[CollectorRegistry] = None):
        self.port = port
        self.registry = registry or CollectorRegistry()
        self._setup_metrics()
        self._server = None
        self._thread = None
        logger.info(f"Prometheus Metrics Exporter (port {port})")

    def _setup_metrics(self) -> None:
        counter_defs = [
            ("orders_total", "execution_orders_total", "Orders executed"),
            ("orders_failed", "execution_orders_failed_total", "Orders that failed"),
        ]
        for attr, name, desc in counter_defs:
            setattr(self, attr, Counter(name, desc, ["strategy"], registry=self.registry))
        self.transaction_costs = Counter(
            "execution_transaction_costs_total", "Transaction costs in quote currency",
            registry=self.registry)
        self.slippage = Histogram(
            "execution_slippage_ratio", "Absolute slippage as a fraction of reference price",
            ["strategy"], buckets=[0.0001, 0.0005, 0.001, 0.002, 0.005, 0.01, 0.02],
            registry=self.registry)
        self.execution_time = Histogram(
            "execution_time_seconds", "End-to-end execution time including retries",
            buckets=[0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10], registry=self.registry)
        self.last_success = Gauge(
            "execution_last_success", "1 if the most recent execution succeeded",
            registry=self.registry)

    def observe_execution(self, result: ExecutionResult, strategy: str) -> None:
        self.orders_total.labels(strategy=strategy).inc()
        if not result.success:
            self.orders_failed.labels(strategy=strategy).inc()
        if result.slippage is not None:
            self.slippage.labels(strategy=strategy).observe(abs(result.slippage))
        if result.transaction_cost is not None:
            self.transaction_costs.inc(float(result.transaction_cost))
        self.execution_time.observe(result.execution_time_ms / 1000)
        self.last_success.set(1 if result.success else 0)

    async def start(self) -> None:
        if self._server is not None:
            logger.warning("Metrics exporter already running")
            return
        try:
            self._server, self._thread = start_http_server(self.port, registry=self.registry)
            logger.info(f"✓ Metrics server started on http://localhost:{self.port}/metrics")
        except Exception as e:
            logger.error(f"Failed to start metrics server: {e}")

    async def stop(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        logger.info("Metrics exporter stopped")
