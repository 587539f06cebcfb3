"""
Metrics - Aggregator.

============================================================
PURPOSE
============================================================
In-memory store of named, labelled time series.

- Counters: non-negative increments only
- Gauges: last write wins
- Histograms: observations counted into fixed buckets
- Summaries: bounded window of raw observations

============================================================
SERIES IDENTITY
============================================================
A series is (metric name, sorted label pairs). The first
write to a metric name fixes its kind and label names; later
writes that disagree are rejected with ValidationError.

============================================================
PERCENTILES
============================================================
Histograms answer by bucket counting: the upper bound of the
first bucket whose cumulative count reaches the rank. No
interpolation. Summaries answer by nearest rank over the
retained window.

============================================================
"""

import logging
import math
import re
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence, Tuple

from core.clock import ClockProtocol, SystemClock, to_iso8601
from core.exceptions import InvalidOperation, ValidationError
from ..models import (
    MetricCategory,
    MetricKind,
    MetricSample,
    label_key,
    normalize_labels,
    parse_enum,
    to_number,
)
from .exporter import render_exposition


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

DEFAULT_BUCKETS: Tuple[float, ...] = (0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0)
DEFAULT_SUMMARY_WINDOW = 1000
SUMMARY_QUANTILES: Tuple[float, ...] = (0.5, 0.9, 0.95, 0.99)


# ============================================================
# DEFINITIONS & SERIES
# ============================================================

@dataclass
class MetricDefinition:
    """Kind, help text and label names of a metric."""

    name: str
    kind: MetricKind
    category: MetricCategory
    help: str = ""
    label_names: Tuple[str, ...] = ()
    buckets: Tuple[float, ...] = DEFAULT_BUCKETS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "category": self.category.value,
            "help": self.help,
            "label_names": list(self.label_names),
        }


@dataclass
class _Series:
    """Mutable state of one series. Guarded by the aggregator lock."""

    labels: Dict[str, str]
    value: float = 0.0
    count: int = 0
    total: float = 0.0
    min: Optional[float] = None
    max: Optional[float] = None
    bucket_counts: List[int] = field(default_factory=list)
    window: Optional[Deque[float]] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class SeriesSnapshot:
    """Read-only copy of one series."""

    name: str
    kind: MetricKind
    labels: Dict[str, str]
    value: float
    count: int = 0
    sum: float = 0.0
    buckets: Tuple[Tuple[float, int], ...] = ()  # (upper bound, cumulative count)
    quantiles: Tuple[Tuple[float, float], ...] = ()
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "labels": dict(self.labels),
            "value": self.value,
            "updated_at": to_iso8601(self.updated_at),
        }
        if self.kind in (MetricKind.HISTOGRAM, MetricKind.SUMMARY):
            data["count"] = self.count
            data["sum"] = self.sum
        if self.quantiles:
            data["quantiles"] = {str(q): v for q, v in self.quantiles}
        return data


# ============================================================
# METRICS AGGREGATOR
# ============================================================

class MetricsAggregator:
    """
    Thread-safe metric store.

    Updates are visible to readers as soon as record() returns.
    """

    def __init__(
        self,
        clock: Optional[ClockProtocol] = None,
        summary_window: int = DEFAULT_SUMMARY_WINDOW,
    ):
        """
        Initialize aggregator.

        Args:
            clock: Clock for sample timestamps
            summary_window: Observations retained per summary series
        """
        self._clock = clock or SystemClock()
        self._summary_window = summary_window
        self._definitions: Dict[str, MetricDefinition] = {}
        self._series: Dict[str, Dict[Tuple[Tuple[str, str], ...], _Series]] = {}
        self._lock = threading.Lock()

    # =========================================================
    # DEFINITIONS
    # =========================================================

    def define(
        self,
        kind: MetricKind,
        name: str,
        help: str = "",
        label_names: Sequence[str] = (),
        category: MetricCategory = MetricCategory.APPLICATION,
        buckets: Optional[Sequence[float]] = None,
    ) -> MetricDefinition:
        """
        Declare a metric up front.

        Re-declaring a compatible metric returns the existing
        definition; an incompatible one raises ValidationError.
        """
        kind = parse_enum(MetricKind, kind, "kind")
        category = parse_enum(MetricCategory, category, "category")
        self._validate_name(name)
        names = tuple(sorted(label_names))
        for label in names:
            self._validate_label_name(label)

        bucket_bounds = DEFAULT_BUCKETS
        if buckets:
            bucket_bounds = tuple(sorted(float(b) for b in buckets))

        with self._lock:
            existing = self._definitions.get(name)
            if existing is not None:
                self._check_compatible(existing, kind, names)
                if help and not existing.help:
                    existing.help = help
                return existing

            definition = MetricDefinition(
                name=name,
                kind=kind,
                category=category,
                help=help,
                label_names=names,
                buckets=bucket_bounds,
            )
            self._definitions[name] = definition
            self._series[name] = {}
            logger.debug(f"Defined metric {name} ({kind.value}, labels={list(names)})")
            return definition

    def get_definition(self, name: str) -> Optional[MetricDefinition]:
        with self._lock:
            return self._definitions.get(name)

    def list_definitions(self) -> List[MetricDefinition]:
        with self._lock:
            return list(self._definitions.values())

    def register_custom(
        self,
        kind: MetricKind,
        name: str,
        help: str = "",
        label_names: Sequence[str] = (),
        category: MetricCategory = MetricCategory.BUSINESS,
        buckets: Optional[Sequence[float]] = None,
    ) -> "MetricHandle":
        """Register a custom metric and return a handle for writing to it."""
        definition = self.define(kind, name, help, label_names, category, buckets)
        logger.info(f"Registered custom metric: {name} ({definition.kind.value})")
        return MetricHandle(self, definition)

    # =========================================================
    # WRITES
    # =========================================================

    def record(self, sample: MetricSample) -> MetricSample:
        """
        Apply one sample.

        Counter samples are increments, gauge samples overwrite,
        histogram and summary samples are observations.

        Returns the applied sample, stamped with the write time when
        it carries none. The caller's sample is left untouched.

        Raises:
            ValidationError: invalid name/labels, non-numeric value,
                or a kind/label mismatch with the existing definition
            InvalidOperation: negative counter increment
        """
        kind = parse_enum(MetricKind, sample.kind, "kind")
        value = to_number(sample.value, "value")
        labels = normalize_labels(sample.labels)

        if kind == MetricKind.COUNTER and value < 0:
            raise InvalidOperation(
                f"Counter {sample.name} cannot be decremented",
                field="value",
                value=value,
            )
        if math.isinf(value) and kind != MetricKind.GAUGE:
            raise ValidationError(f"{sample.name} value must be finite", field="value", value=value)

        definition = self.define(kind, sample.name, label_names=labels.keys(), category=sample.category)
        now = self._clock.now()

        with self._lock:
            series = self._series_for(definition, labels)
            if kind == MetricKind.COUNTER:
                series.value += value
            elif kind == MetricKind.GAUGE:
                series.value = value
            else:
                self._observe(definition, series, value)
            series.updated_at = now

        return replace(sample, kind=kind, value=value, labels=labels, timestamp=sample.timestamp or now)

    def adjust_gauge(
        self,
        name: str,
        delta: float,
        labels: Optional[Mapping[str, Any]] = None,
        category: MetricCategory = MetricCategory.APPLICATION,
    ) -> float:
        """
        Add delta to a gauge as one step under the series lock.

        Returns the new gauge value.
        """
        delta = to_number(delta, "amount")
        if math.isinf(delta):
            raise ValidationError(f"{name} adjustment must be finite", field="amount", value=delta)
        labels = normalize_labels(labels)

        definition = self.define(MetricKind.GAUGE, name, label_names=labels.keys(), category=category)
        now = self._clock.now()

        with self._lock:
            series = self._series_for(definition, labels)
            series.value += delta
            series.updated_at = now
            return series.value

    def increment(
        self,
        name: str,
        amount: float = 1.0,
        labels: Optional[Mapping[str, Any]] = None,
        category: MetricCategory = MetricCategory.APPLICATION,
    ) -> None:
        """Increment a counter."""
        self.record(MetricSample(name, amount, MetricKind.COUNTER, category, normalize_labels(labels)))

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: Optional[Mapping[str, Any]] = None,
        category: MetricCategory = MetricCategory.APPLICATION,
    ) -> None:
        """Set a gauge."""
        self.record(MetricSample(name, value, MetricKind.GAUGE, category, normalize_labels(labels)))

    def observe(
        self,
        name: str,
        value: float,
        labels: Optional[Mapping[str, Any]] = None,
        category: MetricCategory = MetricCategory.APPLICATION,
        kind: MetricKind = MetricKind.HISTOGRAM,
    ) -> None:
        """Record a histogram (or summary) observation."""
        self.record(MetricSample(name, value, kind, category, normalize_labels(labels)))

    def remove_series(self, name: str, labels: Optional[Mapping[str, Any]] = None) -> bool:
        """Drop one series, e.g. when its service is removed."""
        with self._lock:
            series_map = self._series.get(name)
            if not series_map:
                return False
            return series_map.pop(label_key(labels), None) is not None

    def remove_matching(self, name: str, label_filter: Optional[Mapping[str, Any]] = None) -> int:
        """Drop every series of a metric whose labels contain the filter."""
        wanted = normalize_labels(label_filter)
        with self._lock:
            series_map = self._series.get(name)
            if not series_map:
                return 0
            doomed = [key for key, s in series_map.items() if _contains(s.labels, wanted)]
            for key in doomed:
                del series_map[key]
            return len(doomed)

    def _series_for(self, definition: MetricDefinition, labels: Dict[str, str]) -> _Series:
        """Existing or new series; caller holds the lock."""
        series_map = self._series[definition.name]
        key = label_key(labels)
        series = series_map.get(key)
        if series is None:
            series = self._new_series(definition, labels)
            series_map[key] = series
        return series

    def _new_series(self, definition: MetricDefinition, labels: Dict[str, str]) -> _Series:
        series = _Series(labels=dict(labels))
        if definition.kind == MetricKind.HISTOGRAM:
            series.bucket_counts = [0] * (len(definition.buckets) + 1)
        elif definition.kind == MetricKind.SUMMARY:
            series.window = deque(maxlen=self._summary_window)
        return series

    def _observe(self, definition: MetricDefinition, series: _Series, value: float) -> None:
        series.count += 1
        series.total += value
        series.min = value if series.min is None else min(series.min, value)
        series.max = value if series.max is None else max(series.max, value)

        if definition.kind == MetricKind.HISTOGRAM:
            index = len(definition.buckets)
            for i, bound in enumerate(definition.buckets):
                if value <= bound:
                    index = i
                    break
            series.bucket_counts[index] += 1
        else:
            series.window.append(value)

    # =========================================================
    # READS
    # =========================================================

    def get_value(self, name: str, labels: Optional[Mapping[str, Any]] = None) -> Optional[float]:
        """
        Current value of a series.

        Histograms and summaries report their mean observation.
        When no series matches the labels exactly, series whose
        labels contain them are pooled: counters are summed, gauges
        averaged, histogram/summary means weighted by count.
        None when nothing matches.
        """
        wanted = normalize_labels(labels)
        with self._lock:
            definition = self._definitions.get(name)
            if definition is None:
                return None
            series_map = self._series[name]

            exact = series_map.get(label_key(wanted))
            if exact is not None:
                return self._current_value(definition, exact)

            matching = [s for s in series_map.values() if _contains(s.labels, wanted)]
            if not matching:
                return None

            if definition.kind == MetricKind.COUNTER:
                return sum(s.value for s in matching)
            if definition.kind == MetricKind.GAUGE:
                return sum(s.value for s in matching) / len(matching)

            count = sum(s.count for s in matching)
            if count == 0:
                return None
            return sum(s.total for s in matching) / count

    def get_series(
        self,
        name: str,
        label_filter: Optional[Mapping[str, Any]] = None,
    ) -> List[SeriesSnapshot]:
        """All series of a metric whose labels contain the filter."""
        wanted = normalize_labels(label_filter)
        with self._lock:
            definition = self._definitions.get(name)
            if definition is None:
                return []
            return [
                self._snapshot(definition, s)
                for s in self._series[name].values()
                if _contains(s.labels, wanted)
            ]

    def percentile(
        self,
        name: str,
        percentile: float,
        labels: Optional[Mapping[str, Any]] = None,
    ) -> Optional[float]:
        """
        Percentile (0-100) of a histogram or summary series.

        Returns None if the series is absent or empty.
        """
        percentile = to_number(percentile, "percentile")
        if not 0 <= percentile <= 100:
            raise ValidationError("percentile must be within 0-100", field="percentile", value=percentile)

        with self._lock:
            definition = self._definitions.get(name)
            if definition is None:
                return None
            if definition.kind not in (MetricKind.HISTOGRAM, MetricKind.SUMMARY):
                raise InvalidOperation(
                    f"Percentiles need a histogram or summary, {name} is a {definition.kind.value}"
                )
            series = self._series[name].get(label_key(labels))
            if series is None or series.count == 0:
                return None
            if definition.kind == MetricKind.HISTOGRAM:
                return _bucket_percentile(definition.buckets, series, percentile)
            return _nearest_rank(list(series.window), percentile)

    def get_summary(self, category: MetricCategory) -> Dict[str, Any]:
        """All metrics of one category with their series."""
        category = parse_enum(MetricCategory, category, "category")
        summary = {}
        with self._lock:
            for name, definition in self._definitions.items():
                if definition.category != category:
                    continue
                summary[name] = {
                    "kind": definition.kind.value,
                    "help": definition.help,
                    "series": [self._snapshot(definition, s).to_dict() for s in self._series[name].values()],
                }
        return summary

    def get_complete_summary(self) -> Dict[str, Any]:
        """Summaries of every category."""
        return {
            "system": self.get_summary(MetricCategory.SYSTEM),
            "application": self.get_summary(MetricCategory.APPLICATION),
            "business": self.get_summary(MetricCategory.BUSINESS),
            "timestamp": to_iso8601(self._clock.now()),
        }

    def families(self) -> List[Tuple[MetricDefinition, List[SeriesSnapshot]]]:
        """Every definition with a snapshot of its series."""
        with self._lock:
            return [
                (definition, [self._snapshot(definition, s) for s in self._series[name].values()])
                for name, definition in self._definitions.items()
            ]

    def export(self) -> str:
        """Prometheus text exposition of every metric."""
        return render_exposition(self.families())

    def _current_value(self, definition: MetricDefinition, series: _Series) -> Optional[float]:
        if definition.kind in (MetricKind.COUNTER, MetricKind.GAUGE):
            return series.value
        if series.count == 0:
            return None
        return series.total / series.count

    def _snapshot(self, definition: MetricDefinition, series: _Series) -> SeriesSnapshot:
        buckets: Tuple[Tuple[float, int], ...] = ()
        quantiles: Tuple[Tuple[float, float], ...] = ()

        if definition.kind == MetricKind.HISTOGRAM:
            cumulative = 0
            pairs = []
            for bound, count in zip(definition.buckets + (math.inf,), series.bucket_counts):
                cumulative += count
                pairs.append((bound, cumulative))
            buckets = tuple(pairs)
        elif definition.kind == MetricKind.SUMMARY and series.window:
            values = list(series.window)
            quantiles = tuple((q, _nearest_rank(values, q * 100)) for q in SUMMARY_QUANTILES)

        value = self._current_value(definition, series)
        return SeriesSnapshot(
            name=definition.name,
            kind=definition.kind,
            labels=dict(series.labels),
            value=value if value is not None else 0.0,
            count=series.count,
            sum=series.total,
            buckets=buckets,
            quantiles=quantiles,
            updated_at=series.updated_at,
        )

    # =========================================================
    # VALIDATION
    # =========================================================

    @staticmethod
    def _validate_name(name: str) -> None:
        if not isinstance(name, str) or not METRIC_NAME_RE.match(name):
            raise ValidationError(f"Invalid metric name: {name!r}", field="name", value=name)

    @staticmethod
    def _validate_label_name(label: str) -> None:
        if not isinstance(label, str) or not LABEL_NAME_RE.match(label) or label.startswith("__"):
            raise ValidationError(f"Invalid label name: {label!r}", field="labels", value=label)

    @staticmethod
    def _check_compatible(
        existing: MetricDefinition,
        kind: MetricKind,
        label_names: Tuple[str, ...],
    ) -> None:
        if existing.kind != kind:
            raise ValidationError(
                f"Metric {existing.name} is a {existing.kind.value}, not a {kind.value}",
                field="kind",
                value=kind.value,
            )
        if existing.label_names != label_names:
            raise ValidationError(
                f"Metric {existing.name} has labels {list(existing.label_names)}, got {list(label_names)}",
                field="labels",
            )


# ============================================================
# HANDLES
# ============================================================

class MetricHandle:
    """Writer for a registered custom metric."""

    def __init__(self, aggregator: MetricsAggregator, definition: MetricDefinition):
        self._aggregator = aggregator
        self.definition = definition

    @property
    def name(self) -> str:
        return self.definition.name

    def labels(self, **labels) -> "BoundMetric":
        """Bind label values."""
        names = tuple(sorted(labels))
        if names != self.definition.label_names:
            raise ValidationError(
                f"Metric {self.name} expects labels {list(self.definition.label_names)}, got {list(names)}",
                field="labels",
            )
        return BoundMetric(self._aggregator, self.definition, normalize_labels(labels))

    def inc(self, amount: float = 1.0) -> None:
        self.labels().inc(amount)

    def set(self, value: float) -> None:
        self.labels().set(value)

    def observe(self, value: float) -> None:
        self.labels().observe(value)


class BoundMetric:
    """A custom metric with its label values bound."""

    def __init__(self, aggregator: MetricsAggregator, definition: MetricDefinition, labels: Dict[str, str]):
        self._aggregator = aggregator
        self._definition = definition
        self._labels = labels

    def inc(self, amount: float = 1.0) -> None:
        if self._definition.kind not in (MetricKind.COUNTER, MetricKind.GAUGE):
            raise InvalidOperation(f"inc() is not supported on {self._definition.kind.value} {self._definition.name}")
        if self._definition.kind == MetricKind.GAUGE:
            self._aggregator.adjust_gauge(
                self._definition.name, amount, self._labels, self._definition.category
            )
        else:
            self._write(amount)

    def set(self, value: float) -> None:
        if self._definition.kind != MetricKind.GAUGE:
            raise InvalidOperation(f"set() is only supported on gauges, {self._definition.name} is a {self._definition.kind.value}")
        self._write(value)

    def observe(self, value: float) -> None:
        if self._definition.kind not in (MetricKind.HISTOGRAM, MetricKind.SUMMARY):
            raise InvalidOperation(f"observe() is not supported on {self._definition.kind.value} {self._definition.name}")
        self._write(value)

    def _write(self, value: float) -> None:
        self._aggregator.record(MetricSample(
            name=self._definition.name,
            value=value,
            kind=self._definition.kind,
            category=self._definition.category,
            labels=dict(self._labels),
        ))


# ============================================================
# HELPERS
# ============================================================

def _contains(labels: Mapping[str, str], wanted: Mapping[str, str]) -> bool:
    return all(labels.get(k) == v for k, v in wanted.items())


def _rank(count: int, percentile: float) -> int:
    return max(1, math.ceil(percentile / 100.0 * count))


def _bucket_percentile(buckets: Tuple[float, ...], series: _Series, percentile: float) -> float:
    rank = _rank(series.count, percentile)
    cumulative = 0
    for bound, count in zip(buckets, series.bucket_counts):
        cumulative += count
        if cumulative >= rank:
            return bound
    # Rank falls in the overflow bucket
    return series.max


def _nearest_rank(values: List[float], percentile: float) -> Optional[float]:
    if not values:
        return None
    ordered = sorted(values)
    return ordered[min(_rank(len(ordered), percentile), len(ordered)) - 1]


__all__ = [
    "DEFAULT_BUCKETS",
    "MetricDefinition",
    "SeriesSnapshot",
    "MetricsAggregator",
    "MetricHandle",
    "BoundMetric",
]
