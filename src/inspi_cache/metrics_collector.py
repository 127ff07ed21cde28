"""
Metrics collection for the cache subsystem.

Counters, gauges and histograms backed by a bounded time series per
metric. Collectors are plain objects handed to whoever records into them.
"""

import statistics
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .logging_config import get_logger


class MetricType(str, Enum):
    """Types of metrics."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


class MetricUnit(str, Enum):
    """Metric units."""
    COUNT = "count"
    SECONDS = "seconds"
    MILLISECONDS = "milliseconds"
    PERCENT = "percent"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MetricValue:
    """A single metric value with metadata."""
    name: str
    value: Union[int, float]
    metric_type: MetricType
    unit: MetricUnit
    timestamp: datetime
    labels: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'value': self.value,
            'type': self.metric_type.value,
            'unit': self.unit.value,
            'timestamp': self.timestamp.isoformat(),
            'labels': self.labels,
        }


@dataclass
class MetricSeries:
    """A bounded time series of metric values."""
    name: str
    metric_type: MetricType
    unit: MetricUnit
    values: deque = field(default_factory=lambda: deque(maxlen=1000))
    last_updated: datetime = field(default_factory=_utcnow)

    def add_value(self, value: Union[int, float], timestamp: Optional[datetime] = None, **labels):
        timestamp = timestamp or _utcnow()
        self.values.append(MetricValue(
            name=self.name,
            value=value,
            metric_type=self.metric_type,
            unit=self.unit,
            timestamp=timestamp,
            labels=labels,
        ))
        self.last_updated = timestamp

    def get_latest_value(self) -> Optional[MetricValue]:
        return self.values[-1] if self.values else None

    def calculate_statistics(self, window_minutes: int = 5) -> Dict[str, float]:
        """Summary statistics over the recent window."""
        cutoff_time = _utcnow() - timedelta(minutes=window_minutes)
        recent_values = [v.value for v in self.values if v.timestamp >= cutoff_time]

        if not recent_values:
            return {}

        return {
            'count': len(recent_values),
            'min': min(recent_values),
            'max': max(recent_values),
            'mean': statistics.mean(recent_values),
            'median': statistics.median(recent_values),
        }


class Counter:
    """Counter metric that only increases."""

    def __init__(self, name: str, description: str = "", collector: Optional['MetricsCollector'] = None):
        self.name = name
        self.description = description
        self.collector = collector
        self._value = 0
        self._lock = threading.Lock()

    def increment(self, amount: Union[int, float] = 1, **labels):
        with self._lock:
            self._value += amount
            value = self._value

        if self.collector:
            self.collector.record_metric(self.name, value, MetricType.COUNTER, MetricUnit.COUNT, **labels)

    def get_value(self) -> Union[int, float]:
        with self._lock:
            return self._value

    def reset(self):
        with self._lock:
            self._value = 0


class Gauge:
    """Gauge metric that can increase or decrease."""

    def __init__(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT,
                 collector: Optional['MetricsCollector'] = None):
        self.name = name
        self.description = description
        self.unit = unit
        self.collector = collector
        self._value = 0
        self._lock = threading.Lock()

    def set(self, value: Union[int, float], **labels):
        with self._lock:
            self._value = value

        if self.collector:
            self.collector.record_metric(self.name, value, MetricType.GAUGE, self.unit, **labels)

    def get_value(self) -> Union[int, float]:
        with self._lock:
            return self._value


class Histogram:
    """Histogram metric for tracking distributions."""

    def __init__(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.MILLISECONDS,
                 buckets: Optional[List[float]] = None, collector: Optional['MetricsCollector'] = None):
        self.name = name
        self.description = description
        self.unit = unit
        self.collector = collector
        self.buckets = buckets or [1, 5, 10, 50, 100, 500, 1000, float('inf')]
        self._bucket_counts = {bucket: 0 for bucket in self.buckets}
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: Union[int, float], **labels):
        with self._lock:
            self._sum += value
            self._count += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1

        if self.collector:
            self.collector.record_metric(self.name, value, MetricType.HISTOGRAM, self.unit, **labels)

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'count': self._count,
                'sum': self._sum,
                'mean': self._sum / self._count if self._count > 0 else 0,
                'buckets': self._bucket_counts.copy(),
            }


class MetricsCollector:
    """Central registry of named metrics and their recent history."""

    def __init__(self, history_size: int = 1000):
        self.logger = get_logger(__name__, 'metrics_collector')
        self.history_size = history_size
        self.metrics: Dict[str, MetricSeries] = {}
        self.counters: Dict[str, Counter] = {}
        self.gauges: Dict[str, Gauge] = {}
        self.histograms: Dict[str, Histogram] = {}
        self.metrics_recorded = 0

    def record_metric(self, name: str, value: Union[int, float], metric_type: MetricType,
                      unit: MetricUnit, **labels) -> None:
        """Append a value to the metric's series."""
        series = self.metrics.get(name)
        if series is None:
            series = MetricSeries(
                name=name,
                metric_type=metric_type,
                unit=unit,
                values=deque(maxlen=self.history_size),
            )
            self.metrics[name] = series

        series.add_value(value, **labels)
        self.metrics_recorded += 1

    def get_counter(self, name: str, description: str = "") -> Counter:
        if name not in self.counters:
            self.counters[name] = Counter(name, description, collector=self)
        return self.counters[name]

    def get_gauge(self, name: str, description: str = "", unit: MetricUnit = MetricUnit.COUNT) -> Gauge:
        if name not in self.gauges:
            self.gauges[name] = Gauge(name, description, unit, collector=self)
        return self.gauges[name]

    def get_histogram(self, name: str, description: str = "",
                      unit: MetricUnit = MetricUnit.MILLISECONDS,
                      buckets: Optional[List[float]] = None) -> Histogram:
        if name not in self.histograms:
            self.histograms[name] = Histogram(name, description, unit, buckets=buckets, collector=self)
        return self.histograms[name]

    def get_metric_summary(self, name: str, window_minutes: int = 5) -> Optional[Dict[str, Any]]:
        series = self.metrics.get(name)
        if series is None:
            return None

        latest = series.get_latest_value()
        return {
            'name': name,
            'type': series.metric_type.value,
            'unit': series.unit.value,
            'latest': latest.to_dict() if latest else None,
            'statistics': series.calculate_statistics(window_minutes),
        }

    def get_all_metrics(self) -> Dict[str, Any]:
        return {
            'counters': {name: c.get_value() for name, c in self.counters.items()},
            'gauges': {name: g.get_value() for name, g in self.gauges.items()},
            'histograms': {name: h.get_statistics() for name, h in self.histograms.items()},
            'metrics_recorded': self.metrics_recorded,
        }

    def reset(self) -> None:
        self.metrics.clear()
        self.counters.clear()
        self.gauges.clear()
        self.histograms.clear()
        self.metrics_recorded = 0
        self.logger.debug("Metrics collector reset", operation="reset")
