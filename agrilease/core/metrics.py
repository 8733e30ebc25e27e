"""
In-process metrics for the marketplace, exposed in Prometheus text format.

Every metric lives in the module-level ``METRICS`` registry. Label values are
stringified on the way in; missing labels are recorded as an empty string so a
call site can never crash the request it is measuring.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple

LabelKey = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names or ())
        self._series: Dict[LabelKey, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, object]]) -> LabelKey:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def _add(self, labels: Optional[Dict[str, object]], amount: float) -> None:
        key = self._key(labels)
        with self._lock:
            self._series[key] = self._series.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, object]] = None) -> float:
        with self._lock:
            return self._series.get(self._key(labels), 0.0)

    def total(self) -> float:
        """Sum across every label combination."""
        with self._lock:
            return sum(self._series.values())

    def _series_name(self, key: LabelKey) -> str:
        if not self.label_names:
            return self.name
        pairs = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, key))
        return f"{self.name}{{{pairs}}}"

    def render(self) -> List[str]:
        lines = []
        if self.help_text:
            lines.append(f"# HELP {self.name} {self.help_text}")
        lines.append(f"# TYPE {self.name} {self.kind}")
        with self._lock:
            series = sorted(self._series.items())
        lines.extend(f"{self._series_name(key)} {val}" for key, val in series)
        return lines

    def clear(self) -> None:
        with self._lock:
            self._series.clear()


class Counter(_Metric):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, object]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError(f"{self.name}: counters cannot decrease")
        self._add(labels, amount)


class Gauge(_Metric):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Dict[str, object]] = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._series[key] = float(value)

    def inc(self, labels: Optional[Dict[str, object]] = None, amount: float = 1.0) -> None:
        self._add(labels, amount)

    def dec(self, labels: Optional[Dict[str, object]] = None, amount: float = 1.0) -> None:
        self._add(labels, -amount)


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, cls, name, help_text, label_names):
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = self._metrics[name] = cls(name, help_text, label_names)
            elif type(metric) is not cls:
                raise ValueError(f"metric {name} already registered as a {metric.kind}")
            return metric

    def counter(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None) -> Counter:
        return self._get_or_create(Counter, name, help_text, label_names)

    def gauge(self, name: str, help_text: str = "", label_names: Optional[Iterable[str]] = None) -> Gauge:
        return self._get_or_create(Gauge, name, help_text, label_names)

    def export_prometheus(self) -> str:
        with self._lock:
            metrics = list(self._metrics.values())
        lines: List[str] = []
        for metric in metrics:
            lines.extend(metric.render())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        """Clear recorded series; registrations survive so module globals stay valid."""
        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            metric.clear()


METRICS = MetricsRegistry()

# HTTP
http_requests_total = METRICS.counter(
    "http_requests_total", "HTTP requests by route template and status", ["method", "route", "status"]
)
http_request_latency_total = METRICS.counter(
    "http_request_latency_total", "HTTP requests by latency bucket", ["method", "route", "bucket"]
)

# Marketplace
rental_transitions_total = METRICS.counter(
    "rental_transitions_total", "Rental request state transitions", ["from_status", "to_status", "trigger"]
)
escrow_operations_total = METRICS.counter(
    "escrow_operations_total", "Escrow hold, release and refund attempts", ["operation", "outcome"]
)

# Payments provider
provider_errors_total = METRICS.counter(
    "provider_errors_total", "Payment provider failures by operation", ["operation", "code"]
)
webhook_events_total = METRICS.counter(
    "webhook_events_total", "Provider webhook deliveries by outcome", ["kind", "outcome"]
)
subscriptions_created_total = METRICS.counter(
    "subscriptions_created_total", "Subscriptions started", ["tier", "trial"]
)

catalog_plans_loaded = METRICS.gauge("catalog_plans_loaded", "Subscription plans provisioned at startup")


# Entity ids are uuid4 strings; provider objects carry a short type prefix.
_UUID_SEGMENT = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
_PROVIDER_SEGMENT = re.compile(r"^(pi|sub|cus|evt|in|price|prod)_[A-Za-z0-9]+$")


def normalize_path(path: str) -> str:
    """Collapse id-like path segments to ``:id`` for unmatched routes."""
    segments = []
    for segment in filter(None, path.split("/")):
        if segment.isdigit() or _UUID_SEGMENT.match(segment) or _PROVIDER_SEGMENT.match(segment):
            segments.append(":id")
        else:
            segments.append(segment)
    return "/" + "/".join(segments)
