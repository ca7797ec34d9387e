"""
Prometheus Metrics

Provides application metrics in Prometheus text format:
- HTTP request metrics (count, duration, status codes)
- Allocation outcomes and conflicts
- Identifier issuance and contention retries
- Sweeper transitions and batch failures
"""

from typing import Dict, List
import time
from collections import defaultdict
from threading import Lock


class Counter:
    """Simple counter metric."""

    metric_type = "counter"

    def __init__(self, name: str, description: str, labels: tuple = ()):
        self.name = name
        self.description = description
        self.labels = labels
        self._values: Dict[tuple, float] = defaultdict(float)
        self._lock = Lock()

    def inc(self, value: float = 1, **label_values):
        """Increment counter."""
        key = tuple(label_values.get(l, '') for l in self.labels)
        with self._lock:
            self._values[key] += value

    def get(self, **label_values) -> float:
        key = tuple(label_values.get(l, '') for l in self.labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def get_all(self) -> Dict[tuple, float]:
        """Get all values."""
        with self._lock:
            return dict(self._values)


class Gauge(Counter):
    """Simple gauge metric (can go up and down)."""

    metric_type = "gauge"

    def set(self, value: float, **label_values):
        """Set gauge value."""
        key = tuple(label_values.get(l, '') for l in self.labels)
        with self._lock:
            self._values[key] = value


class Histogram:
    """Simple histogram metric."""

    metric_type = "histogram"
    DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float('inf'))

    def __init__(self, name: str, description: str, labels: tuple = (), buckets: tuple = None):
        self.name = name
        self.description = description
        self.labels = labels
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._counts: Dict[tuple, Dict[float, int]] = defaultdict(lambda: defaultdict(int))
        self._sums: Dict[tuple, float] = defaultdict(float)
        self._totals: Dict[tuple, int] = defaultdict(int)
        self._lock = Lock()

    def observe(self, value: float, **label_values):
        """Record an observation."""
        key = tuple(label_values.get(l, '') for l in self.labels)
        with self._lock:
            self._sums[key] += value
            self._totals[key] += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._counts[key][bucket] += 1

    def time(self, **label_values):
        """Context manager to time a block of code."""
        return _HistogramTimer(self, label_values)

    def get_all(self) -> Dict:
        """Get all values."""
        with self._lock:
            return {
                'counts': {k: dict(v) for k, v in self._counts.items()},
                'sums': dict(self._sums),
                'totals': dict(self._totals)
            }


class _HistogramTimer:
    """Context manager for timing code blocks."""

    def __init__(self, histogram: Histogram, label_values: dict):
        self.histogram = histogram
        self.label_values = label_values
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.perf_counter() - self.start_time
        self.histogram.observe(duration, **self.label_values)


# ================================
# APPLICATION METRICS
# ================================

# HTTP Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labels=("method", "path", "status_code")
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    labels=("method", "path")
)

# Allocation Metrics
reservations_total = Counter(
    "reservations_total",
    "Reservations created",
    labels=("resource_type", "payment_status")
)

allocation_conflicts_total = Counter(
    "allocation_conflicts_total",
    "Allocation requests refused with a conflict",
    labels=("kind",)
)

allocation_duration_seconds = Histogram(
    "allocation_duration_seconds",
    "Time spent in one allocation unit of work",
    labels=("resource_type",)
)

# Identifier Metrics
membership_ids_issued_total = Counter(
    "membership_ids_issued_total",
    "Membership identifiers issued"
)

sequence_retries_total = Counter(
    "sequence_retries_total",
    "Identifier issuance attempts retried after storage contention",
    labels=("reason",)
)

# Sweeper Metrics
sweeper_transitions_total = Counter(
    "sweeper_transitions_total",
    "Records transitioned by the lifecycle sweeper",
    labels=("transition",)
)

sweeper_batch_errors_total = Counter(
    "sweeper_batch_errors_total",
    "Sweeper batches rolled back after an error",
    labels=("transition",)
)

sweeper_last_run_timestamp = Gauge(
    "sweeper_last_run_timestamp",
    "Unix time of the last completed sweep pass"
)

ALL_METRICS: List = [
    http_requests_total,
    http_request_duration_seconds,
    reservations_total,
    allocation_conflicts_total,
    allocation_duration_seconds,
    membership_ids_issued_total,
    sequence_retries_total,
    sweeper_transitions_total,
    sweeper_batch_errors_total,
    sweeper_last_run_timestamp,
]


def _label_str(metric, key: tuple) -> str:
    labels = dict(zip(metric.labels, key))
    return ",".join(f'{k}="{v}"' for k, v in labels.items())


def format_prometheus_metrics() -> str:
    """Format all metrics in Prometheus text format."""
    lines = []

    for metric in ALL_METRICS:
        lines.append(f"# HELP {metric.name} {metric.description}")
        lines.append(f"# TYPE {metric.name} {metric.metric_type}")

        if isinstance(metric, Histogram):
            hist_data = metric.get_all()
            for key in hist_data['sums'].keys():
                label_str = _label_str(metric, key)
                lines.append(f'{metric.name}_sum{{{label_str}}} {hist_data["sums"][key]}')
                lines.append(f'{metric.name}_count{{{label_str}}} {hist_data["totals"][key]}')
            continue

        for key, value in metric.get_all().items():
            label_str = _label_str(metric, key)
            if label_str:
                lines.append(f'{metric.name}{{{label_str}}} {value}')
            else:
                lines.append(f'{metric.name} {value}')

    return "\n".join(lines) + "\n"


# ================================
# CONVENIENCE FUNCTIONS
# ================================

def record_http_request(method: str, path: str, status_code: int, duration: float):
    """Record an HTTP request."""
    http_requests_total.inc(method=method, path=path, status_code=str(status_code))
    http_request_duration_seconds.observe(duration, method=method, path=path)


def record_reservation_created(resource_type: str, payment_status: str):
    reservations_total.inc(resource_type=resource_type, payment_status=payment_status)


def record_allocation_conflict(kind: str):
    allocation_conflicts_total.inc(kind=kind)


def record_sweeper_transitions(transition: str, count: int):
    if count:
        sweeper_transitions_total.inc(count, transition=transition)
