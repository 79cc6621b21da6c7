"""Lightweight in-memory metrics (Prometheus text format)."""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Tuple


def _sanitize_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"")


def _format_labels(label_names: List[str], values: Tuple[str, ...]) -> str:
    if not label_names:
        return ""
    parts = [f'{name}="{_sanitize_label_value(val)}"' for name, val in zip(label_names, values)]
    return "{" + ",".join(parts) + "}"


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.label_names = list(label_names or [])
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _label_tuple(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(self._label_tuple(labels), 0.0)

    def export(self) -> List[str]:
        lines = [f"# TYPE {self.name} {self.kind}"]
        with self._lock:
            for label_values, value in self._values.items():
                labels = _format_labels(self.label_names, label_values)
                lines.append(f"{self.name}{labels} {value}")
        return lines

    def reset(self):
        with self._lock:
            self._values.clear()


class Counter(_Metric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        key = self._label_tuple(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)


class Gauge(_Metric):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, str]] = None):
        key = self._label_tuple(labels)
        with self._lock:
            self._values[key] = float(value)

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        key = self._label_tuple(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def dec(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        key = self._label_tuple(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) - float(amount)


class MetricsRegistry:
    def __init__(self):
        self.counters: Dict[str, Counter] = {}
        self.gauges: Dict[str, Gauge] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None) -> Counter:
        with self._lock:
            if name not in self.counters:
                self.counters[name] = Counter(name, label_names)
            return self.counters[name]

    def gauge(self, name: str, label_names: Optional[Iterable[str]] = None) -> Gauge:
        with self._lock:
            if name not in self.gauges:
                self.gauges[name] = Gauge(name, label_names)
            return self.gauges[name]

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in list(self.counters.values()) + list(self.gauges.values()):
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self):
        for metric in self.counters.values():
            metric.reset()
        for metric in self.gauges.values():
            metric.reset()


METRICS = MetricsRegistry()

subscription_transitions_total = METRICS.counter("subscription_transitions_total", ["kind"])
grace_periods_started_total = METRICS.counter("grace_periods_started_total")
rooms_force_deleted_total = METRICS.counter("rooms_force_deleted_total")
room_deletion_failures_total = METRICS.counter("room_deletion_failures_total")
persistence_failures_total = METRICS.counter("persistence_failures_total", ["operation"])
billing_query_failures_total = METRICS.counter("billing_query_failures_total")
events_published_total = METRICS.counter("events_published_total", ["event_type"])

grace_timers_live = METRICS.gauge("grace_timers_live")
event_subscribers = METRICS.gauge("event_subscribers")
