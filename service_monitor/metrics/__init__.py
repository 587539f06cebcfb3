"""
Metrics - Aggregation, collection and Prometheus exposition.
"""

from .aggregator import (
    DEFAULT_BUCKETS,
    MetricDefinition,
    SeriesSnapshot,
    MetricsAggregator,
    MetricHandle,
    BoundMetric,
)
from .collectors import BaseCollector, SystemMetricsCollector, ApplicationMetricsCollector
from .exporter import CONTENT_TYPE_LATEST, render_exposition

__all__ = [
    "DEFAULT_BUCKETS",
    "MetricDefinition",
    "SeriesSnapshot",
    "MetricsAggregator",
    "MetricHandle",
    "BoundMetric",
    "BaseCollector",
    "SystemMetricsCollector",
    "ApplicationMetricsCollector",
    "CONTENT_TYPE_LATEST",
    "render_exposition",
]
