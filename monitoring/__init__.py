"""
Monitoring — execution statistics and Prometheus export.

  execution_metrics.py    — MetricsRecorder (totals, per-strategy, history)
  prometheus_exporter.py  — PrometheusMetricsExporter (IMetricsExporter)
"""
