"""In-process metrics for the messaging core.

Served as JSON by ``/stats``; the Prometheus side lives in
``helpdesk.metrics.prometheus``. Call settlement can happen off the event
loop thread, so every update takes the collector lock.
"""
import threading
import time
from collections import defaultdict, deque
from typing import Deque, Dict
import structlog

log = structlog.get_logger()

# Latency samples kept per series
WINDOW_SIZE = 1000


def _percentile(ordered: list[float], fraction: float) -> float:
    index = min(int(round(fraction * (len(ordered) - 1))), len(ordered) - 1)
    return ordered[index]


class MetricsCollector:
    """
    Counters, gauges and latency windows keyed by name and labels.

    Tracks:
    - Request/reply calls, timeouts and late replies
    - Call latency
    - Fan-out deliveries and per-subscriber failures
    - Notifications created and email failures
    """

    def __init__(self, window_size: int = WINDOW_SIZE):
        self._window_size = window_size
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, Deque[float]] = {}
        self._observed: Dict[str, int] = defaultdict(int)
        self._started = time.monotonic()

    def increment(self, metric: str, value: int = 1, labels: Dict[str, str] | None = None):
        """
        Increment a counter metric.

        Args:
            metric: Metric name
            value: Amount to increment by
            labels: Optional labels for the metric
        """
        key = self._make_key(metric, labels)
        with self._lock:
            self._counters[key] += value

    def gauge(self, metric: str, value: float, labels: Dict[str, str] | None = None):
        key = self._make_key(metric, labels)
        with self._lock:
            self._gauges[key] = value

    def histogram(self, metric: str, value: float, labels: Dict[str, str] | None = None):
        """Record one sample; only the newest ``window_size`` are kept."""
        key = self._make_key(metric, labels)
        with self._lock:
            window = self._histograms.get(key)
            if window is None:
                window = self._histograms[key] = deque(maxlen=self._window_size)
            window.append(value)
            self._observed[key] += 1

    def record_latency(self, metric: str, start_time: float, labels: Dict[str, str] | None = None):
        """
        Record latency in milliseconds.

        Args:
            metric: Metric name
            start_time: Start timestamp from time.monotonic()
            labels: Optional labels for the metric
        """
        self.histogram(metric, (time.monotonic() - start_time) * 1000, labels)

    def count(self, metric: str, labels: Dict[str, str] | None = None) -> int:
        """Current value of one counter (0 if never incremented)."""
        return self._counters.get(self._make_key(metric, labels), 0)

    def total(self, metric: str) -> int:
        """Sum of a counter across all label combinations."""
        with self._lock:
            return sum(
                value for key, value in self._counters.items()
                if key == metric or key.startswith(metric + "{")
            )

    def get_metrics(self) -> Dict:
        """
        Snapshot of every series.

        Histogram stats cover the current window, except ``count`` which
        is the number of samples ever observed.
        """
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            windows = {key: sorted(values) for key, values in self._histograms.items() if values}
            observed = dict(self._observed)

        histograms = {}
        for key, ordered in windows.items():
            total = sum(ordered)
            histograms[key] = {
                "count": observed[key],
                "sum": total,
                "avg": total / len(ordered),
                "min": ordered[0],
                "max": ordered[-1],
                "p50": _percentile(ordered, 0.5),
                "p95": _percentile(ordered, 0.95),
            }

        return {
            "uptime_seconds": time.monotonic() - self._started,
            "counters": counters,
            "gauges": gauges,
            "histograms": histograms,
        }

    def reset(self):
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._observed.clear()
            self._started = time.monotonic()
        log.info("metrics.reset")

    @staticmethod
    def _make_key(metric: str, labels: Dict[str, str] | None) -> str:
        if not labels:
            return metric
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{metric}{{{label_str}}}"


# Global metrics collector instance
collector = MetricsCollector()


# Common metric names
RPC_CALLS_TOTAL = "rpc_calls_total"
RPC_FAILURES_TOTAL = "rpc_failures_total"
RPC_TIMEOUTS_TOTAL = "rpc_timeouts_total"
RPC_LATENCY_MS = "rpc_latency_ms"
RPC_PENDING = "rpc_pending"
LATE_REPLIES_TOTAL = "late_replies_total"
REQUESTS_HANDLED_TOTAL = "requests_handled_total"
REPLIES_REPLAYED_TOTAL = "replies_replayed_total"
EVENTS_PUBLISHED_TOTAL = "events_published_total"
EVENTS_CONSUMED_TOTAL = "events_consumed_total"
FANOUT_FAILURES_TOTAL = "fanout_failures_total"
TRANSITIONS_TOTAL = "transitions_total"
DUPLICATES_SUPPRESSED_TOTAL = "duplicates_suppressed_total"
NOTIFICATIONS_CREATED_TOTAL = "notifications_created_total"
EMAILS_SENT_TOTAL = "emails_sent_total"
EMAILS_FAILED_TOTAL = "emails_failed_total"
