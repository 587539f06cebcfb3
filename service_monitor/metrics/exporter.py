"""
Metrics - Prometheus Exporter.

Renders aggregator state in the Prometheus text exposition
format through prometheus_client, using a custom collector
over a private CollectorRegistry.
"""

import math
from typing import Iterable, Iterator, List, Sequence, Tuple

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import Metric
from prometheus_client.utils import floatToGoString

from ..models import MetricKind


_PROMETHEUS_TYPES = {
    MetricKind.COUNTER: "counter",
    MetricKind.GAUGE: "gauge",
    MetricKind.HISTOGRAM: "histogram",
    MetricKind.SUMMARY: "summary",
}


class AggregatorCollector:
    """
    Collector yielding one metric family per aggregator definition.

    families is a sequence of (MetricDefinition, [SeriesSnapshot]).
    """

    def __init__(self, families: Sequence[Tuple[object, List[object]]]):
        self._families = families

    def collect(self) -> Iterator[Metric]:
        for definition, series_list in self._families:
            yield _to_metric(definition, series_list)


def _to_metric(definition, series_list: Iterable) -> Metric:
    kind = definition.kind
    name = definition.name
    help_text = definition.help or name

    if kind == MetricKind.COUNTER:
        base = name[:-6] if name.endswith("_total") else name
        metric = Metric(base, help_text, "counter")
        for series in series_list:
            metric.add_sample(f"{base}_total", dict(series.labels), series.value)
        return metric

    metric = Metric(name, help_text, _PROMETHEUS_TYPES[kind])

    for series in series_list:
        labels = dict(series.labels)
        if kind == MetricKind.GAUGE:
            metric.add_sample(name, labels, series.value)
        elif kind == MetricKind.HISTOGRAM:
            for bound, cumulative in series.buckets:
                le = "+Inf" if math.isinf(bound) else floatToGoString(bound)
                metric.add_sample(f"{name}_bucket", {**labels, "le": le}, cumulative)
            metric.add_sample(f"{name}_count", labels, series.count)
            metric.add_sample(f"{name}_sum", labels, series.sum)
        else:
            for quantile, value in series.quantiles:
                metric.add_sample(name, {**labels, "quantile": floatToGoString(quantile)}, value)
            metric.add_sample(f"{name}_count", labels, series.count)
            metric.add_sample(f"{name}_sum", labels, series.sum)

    return metric


def render_exposition(families: Sequence[Tuple[object, List[object]]]) -> str:
    """Render families as Prometheus text."""
    registry = CollectorRegistry(auto_describe=False)
    registry.register(AggregatorCollector(families))
    return generate_latest(registry).decode("utf-8")


__all__ = [
    "CONTENT_TYPE_LATEST",
    "AggregatorCollector",
    "render_exposition",
]
