"""
telemetry/ — Run Metrics

Gauge emission for completed runs (statsd over UDP, or in-memory).
"""

from compliance_scheduler.telemetry.statsd import (
    DEFAULT_PREFIX,
    InMemoryMetricSink,
    Metric,
    MetricSink,
    StatsdMetricSink,
    metric_name_for,
)

__all__ = [
    "DEFAULT_PREFIX",
    "InMemoryMetricSink",
    "Metric",
    "MetricSink",
    "StatsdMetricSink",
    "metric_name_for",
]
