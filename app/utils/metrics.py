"""
Prometheus Metrics

Provides application metrics in Prometheus format:
- HTTP request metrics (count, duration, status codes)
- Hold / confirmation outcomes
- Sweeper and notification activity
"""

from typing import Dict
import time
from collections import defaultdict
from threading import Lock


class Counter:
    """Simple counter metric."""

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

    def get_all(self) -> Dict[tuple, float]:
        """Get all values."""
        with self._lock:
            return dict(self._values)

    def reset(self):
        with self._lock:
            self._values.clear()


class Histogram:
    """Simple histogram metric."""

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

    def get_all(self) -> Dict:
        """Get all values."""
        with self._lock:
            return {
                'counts': dict(self._counts),
                'sums': dict(self._sums),
                'totals': dict(self._totals)
            }


# ================================
# APPLICATION METRICS
# ================================

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

holds_total = Counter(
    "holds_total",
    "Hold requests by outcome",
    labels=("outcome",)
)

confirmations_total = Counter(
    "confirmations_total",
    "Confirmation requests by outcome",
    labels=("outcome",)
)

holds_expired_total = Counter(
    "holds_expired_total",
    "Holds expired by the sweeper or lazily on access",
    labels=("path",)
)

booking_transitions_total = Counter(
    "booking_transitions_total",
    "Booking status transitions",
    labels=("from_status", "to_status")
)

notifications_total = Counter(
    "notifications_total",
    "Notification dispatch attempts",
    labels=("event_type", "status")
)

COUNTERS = (
    http_requests_total,
    holds_total,
    confirmations_total,
    holds_expired_total,
    booking_transitions_total,
    notifications_total,
)


def _label_str(labels: tuple, key: tuple) -> str:
    return ",".join(f'{k}="{v}"' for k, v in zip(labels, key))


def format_prometheus_metrics() -> str:
    """Format all metrics in Prometheus text format."""
    lines = []

    for counter in COUNTERS:
        lines.append(f"# HELP {counter.name} {counter.description}")
        lines.append(f"# TYPE {counter.name} counter")
        for key, value in counter.get_all().items():
            lines.append(f'{counter.name}{{{_label_str(counter.labels, key)}}} {value}')

    hist = http_request_duration_seconds
    hist_data = hist.get_all()
    lines.append(f"# HELP {hist.name} {hist.description}")
    lines.append(f"# TYPE {hist.name} histogram")
    for key in hist_data['sums'].keys():
        label_str = _label_str(hist.labels, key)
        lines.append(f'{hist.name}_sum{{{label_str}}} {hist_data["sums"][key]}')
        lines.append(f'{hist.name}_count{{{label_str}}} {hist_data["totals"][key]}')

    return "\n".join(lines) + "\n"


# ================================
# CONVENIENCE FUNCTIONS
# ================================

def record_http_request(method: str, path: str, status_code: int, duration: float):
    """Record an HTTP request."""
    http_requests_total.inc(method=method, path=path, status_code=str(status_code))
    http_request_duration_seconds.observe(duration, method=method, path=path)


def record_hold(outcome: str):
    holds_total.inc(outcome=outcome)


def record_confirmation(outcome: str):
    confirmations_total.inc(outcome=outcome)


def record_holds_expired(count: int, path: str):
    if count:
        holds_expired_total.inc(count, path=path)


def record_transition(from_status: str, to_status: str):
    booking_transitions_total.inc(from_status=from_status, to_status=to_status)


def record_notification(event_type: str, status: str):
    notifications_total.inc(event_type=event_type, status=status)


class RequestTimer:
    """Context manager timing a request for record_http_request"""

    def __init__(self, method: str, path: str):
        self.method = method
        self.path = path
        self.status_code = 500
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        record_http_request(self.method, self.path, self.status_code, time.perf_counter() - self.start_time)
