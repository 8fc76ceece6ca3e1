from decimal import Decimal

import pytest
from prometheus_client import CollectorRegistry

from monitoring.execution_metrics import MetricsRecorder
from monitoring.prometheus_exporter import PrometheusMetricsExporter
from trade_models import ExecutionResult


def _result(success=True, slippage=0.001, cost="1.5", ms=10.0):
    return ExecutionResult(
        success=success, strategy="market",
        executed_price=Decimal("100") if success else None,
        executed_quantity=Decimal("1") if success else None,
        slippage=slippage if success else None,
        transaction_cost=Decimal(cost) if success else None,
        error=None if success else "venue down",
        execution_time_ms=ms,
    )


def test_empty_summary_has_zero_success_rate():
    summary = MetricsRecorder().get_summary()
    assert summary["total_orders"] == 0
    assert summary["success_rate"] == 0.0
    assert summary["recent_executions"] == []


def test_totals_and_success_rate():
    rec = MetricsRecorder()
    rec.record(_result(), "market")
    rec.record(_result(), "market")
    rec.record(_result(success=False), "limit")
    summary = rec.get_summary()
    assert summary["total_orders"] == 3
    assert summary["successful_orders"] == 2
    assert summary["failed_orders"] == 1
    assert summary["success_rate"] == pytest.approx(2 / 3)
    assert summary["total_transaction_costs"] == Decimal("3.0")
    assert summary["avg_execution_time_ms"] == pytest.approx(10.0)


def test_per_strategy_average_slippage_uses_absolute_values():
    rec = MetricsRecorder()
    rec.record(_result(slippage=0.002), "iceberg")
    rec.record(_result(slippage=-0.004), "iceberg")
    rec.record(_result(success=False), "iceberg")
    stats = rec.get_summary()["by_strategy"]["iceberg"]
    assert stats == {"total": 3, "successful": 2, "failed": 1,
                     "avg_slippage": pytest.approx(0.003),
                     "total_slippage": pytest.approx(0.006),
                     "transaction_costs": Decimal("3.0")}


def test_history_is_bounded_and_recent_is_last_n():
    rec = MetricsRecorder(history_size=3, recent_n=2)
    for ms in range(5):
        rec.record(_result(ms=float(ms)), "market")
    assert len(rec.history) == 3
    recent = rec.get_summary()["recent_executions"]
    assert [r["executionTime"] for r in recent] == [3.0, 4.0]
    assert recent[0]["requestedStrategy"] == "market"


def test_summary_reports_overall_slippage():
    rec = MetricsRecorder()
    rec.record(_result(slippage=0.001), "market")
    rec.record(_result(slippage=-0.003), "limit")
    rec.record(_result(success=False), "limit")
    summary = rec.get_summary()
    assert summary["total_slippage"] == pytest.approx(0.004)
    assert summary["avg_slippage"] == pytest.approx(0.002)
    assert summary["by_strategy"]["limit"]["transaction_costs"] == Decimal("1.5")


def test_recent_executions_can_be_disabled():
    rec = MetricsRecorder(recent_n=0)
    rec.record(_result(), "market")
    assert rec.get_summary()["recent_executions"] == []
    assert len(rec.history) == 1


def test_reset_clears_everything():
    rec = MetricsRecorder()
    rec.record(_result(), "market")
    rec.reset()
    assert rec.get_summary()["total_orders"] == 0
    assert rec.by_strategy == {}
    assert rec.history == []


class _BrokenExporter:
    async def start(self):
        pass

    async def stop(self):
        pass

    def observe_execution(self, result, strategy):
        raise RuntimeError("exporter down")


def test_exporter_errors_do_not_break_recording():
    rec = MetricsRecorder(exporter=_BrokenExporter())
    rec.record(_result(), "market")
    assert rec.total_orders == 1


def test_prometheus_exporter_mirrors_results():
    registry = CollectorRegistry()
    rec = MetricsRecorder(exporter=PrometheusMetricsExporter(registry=registry))
    rec.record(_result(slippage=0.002), "market")
    rec.record(_result(success=False), "market")

    assert registry.get_sample_value("execution_orders_total", {"strategy": "market"}) == 2.0
    assert registry.get_sample_value("execution_orders_failed_total", {"strategy": "market"}) == 1.0
    assert registry.get_sample_value("execution_transaction_costs_total") == pytest.approx(1.5)
    assert registry.get_sample_value("execution_slippage_ratio_count", {"strategy": "market"}) == 1.0
    assert registry.get_sample_value("execution_last_success") == 0.0


def test_exporters_with_private_registries_do_not_collide():
    PrometheusMetricsExporter()
    PrometheusMetricsExporter()
