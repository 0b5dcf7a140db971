"""Prometheus metrics for netsniffer.

Metrics are kept in-process and exposed at ``/metrics`` in the Prometheus
text exposition format.

Metrics collected:
    - netsniffer_events_ingested_total: events stored, by phase
    - netsniffer_ingest_failures_total: rejected or failed ingestions, by reason
    - netsniffer_events_truncated_total: events stored with a truncated body
    - netsniffer_broadcast_drops_total: observer channels dropped on write failure
    - netsniffer_active_observers: live stream connections
    - netsniffer_request_duration_seconds: HTTP handling latency, by endpoint
"""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock

LabelValues = tuple[str, ...]


def _label_str(labels: tuple[str, ...], values: LabelValues) -> str:
    return ",".join(f'{k}="{v}"' for k, v in zip(labels, values, strict=False))


@dataclass
class _ValueMetric:
    """Shared storage for counters and gauges."""

    name: str
    description: str
    labels: tuple[str, ...] = ()
    _values: dict[LabelValues, float] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    metric_type = "untyped"

    def inc(self, *label_values: str, amount: float = 1.0) -> None:
        with self._lock:
            self._values[label_values] = self._values.get(label_values, 0.0) + amount

    def get(self, *label_values: str) -> float:
        with self._lock:
            return self._values.get(label_values, 0.0)

    def collect(self) -> str:
        """Collect metric in Prometheus format."""
        lines = [
            f"# HELP {self.name} {self.description}",
            f"# TYPE {self.name} {self.metric_type}",
        ]
        with self._lock:
            if not self._values:
                lines.append(f"{self.name} 0")
            for label_values, value in sorted(self._values.items()):
                if self.labels and label_values:
                    lines.append(
                        f"{self.name}{{{_label_str(self.labels, label_values)}}} {value}"
                    )
                else:
                    lines.append(f"{self.name} {value}")
        return "\n".join(lines)


@dataclass
class Counter(_ValueMetric):
    """Thread-safe monotonically increasing counter."""

    metric_type = "counter"


@dataclass
class Gauge(_ValueMetric):
    """Thread-safe gauge metric."""

    metric_type = "gauge"

    def set(self, value: float, *label_values: str) -> None:
        """Set the gauge value."""
        with self._lock:
            self._values[label_values] = value

    def dec(self, *label_values: str, amount: float = 1.0) -> None:
        self.inc(*label_values, amount=-amount)


@dataclass
class Histogram:
    """Thread-safe histogram metric with configurable buckets."""

    name: str
    description: str
    buckets: tuple[float, ...] = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)
    labels: tuple[str, ...] = ()
    _bucket_counts: dict[LabelValues, dict[float, int]] = field(default_factory=dict)
    _sums: dict[LabelValues, float] = field(default_factory=dict)
    _counts: dict[LabelValues, int] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    def observe(self, value: float, *label_values: str) -> None:
        """Record an observation."""
        with self._lock:
            counts = self._bucket_counts.setdefault(
                label_values, dict.fromkeys(self.buckets, 0)
            )
            for bucket in self.buckets:
                if value <= bucket:
                    counts[bucket] += 1
            self._sums[label_values] = self._sums.get(label_values, 0.0) + value
            self._counts[label_values] = self._counts.get(label_values, 0) + 1

    def collect(self) -> str:
        """Collect metric in Prometheus format."""
        lines = [
            f"# HELP {self.name} {self.description}",
            f"# TYPE {self.name} histogram",
        ]
        with self._lock:
            for label_values in sorted(self._bucket_counts):
                labels = _label_str(self.labels, label_values) if self.labels else ""
                prefix = f"{labels}," if labels else ""
                for bucket in sorted(self.buckets):
                    cumulative = self._bucket_counts[label_values][bucket]
                    lines.append(f'{self.name}_bucket{{{prefix}le="{bucket}"}} {cumulative}')
                count = self._counts.get(label_values, 0)
                lines.append(f'{self.name}_bucket{{{prefix}le="+Inf"}} {count}')
                lines.append(f"{self.name}_sum{{{labels}}} {self._sums.get(label_values, 0.0)}")
                lines.append(f"{self.name}_count{{{labels}}} {count}")
        return "\n".join(lines)


class MetricsRegistry:
    """Registry for all netsniffer metrics."""

    def __init__(self) -> None:
        self.events_ingested_total = Counter(
            name="netsniffer_events_ingested_total",
            description="Total number of events stored",
            labels=("phase",),
        )
        self.ingest_failures_total = Counter(
            name="netsniffer_ingest_failures_total",
            description="Total number of ingestion failures",
            labels=("reason",),  # validation, storage
        )
        self.events_truncated_total = Counter(
            name="netsniffer_events_truncated_total",
            description="Total number of events stored with a truncated body",
        )
        self.broadcast_drops_total = Counter(
            name="netsniffer_broadcast_drops_total",
            description="Observer channels dropped after a failed write",
        )
        self.active_observers = Gauge(
            name="netsniffer_active_observers",
            description="Number of connected live observers",
        )
        self.request_duration_seconds = Histogram(
            name="netsniffer_request_duration_seconds",
            description="Request processing duration in seconds",
            labels=("endpoint",),
        )

    def collect_all(self) -> str:
        """Collect all metrics in Prometheus format."""
        metrics = [
            self.events_ingested_total.collect(),
            self.ingest_failures_total.collect(),
            self.events_truncated_total.collect(),
            self.broadcast_drops_total.collect(),
            self.active_observers.collect(),
            self.request_duration_seconds.collect(),
        ]
        return "\n\n".join(metrics) + "\n"
