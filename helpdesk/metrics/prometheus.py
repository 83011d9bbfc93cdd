"""
Prometheus metrics for helpdesk services.

Each service process owns one ``Metrics`` with its own registry, served at
``/metrics``. Every series carries the service it belongs to, either as a
``service`` label or through ``app_info``.
"""
from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
import psutil
import os

# Request/reply calls are expected to settle within the default 5s deadline
RPC_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class Metrics:
    """
    Prometheus series for one helpdesk service process.

    - HTTP shell: request count, duration and in-flight requests
    - Messaging: request/reply calls, fan-out deliveries, broker connections
    - Process: CPU, resident memory and open file descriptors via psutil
    """

    def __init__(self, service_name: str = "helpdesk", version: str = "0.1.0", registry=None):
        self.service_name = service_name
        self.version = version
        self.registry = registry or CollectorRegistry()

        self.app_info = Info("app", "Application information", registry=self.registry)
        self.app_info.info({"service": service_name, "version": version})
        self.app_up = Gauge(
            "app_up",
            "Application up status (1=up, 0=down)",
            ["service", "version"],
            registry=self.registry,
        )
        self.app_up.labels(service=service_name, version=version).set(1)

        self._setup_http_metrics()
        self._setup_messaging_metrics()
        self._setup_process_metrics()

    def _setup_http_metrics(self):
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["service", "method", "path", "status"],
            registry=self.registry,
        )
        self.http_request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["service", "method", "path"],
            registry=self.registry,
        )
        self.http_requests_active = Gauge(
            "http_requests_active",
            "Number of active HTTP requests",
            ["service"],
            registry=self.registry,
        )
        self.http_requests_active.labels(service=self.service_name).set(0)

    def _setup_messaging_metrics(self):
        self.rpc_calls_total = Counter(
            "helpdesk_rpc_calls_total",
            "Request/reply calls by target service, topic and outcome",
            ["target", "topic", "outcome"],
            registry=self.registry,
        )
        self.rpc_duration = Histogram(
            "helpdesk_rpc_duration_seconds",
            "Request/reply call duration in seconds",
            ["target", "topic"],
            buckets=RPC_BUCKETS,
            registry=self.registry,
        )
        self.events_published_total = Counter(
            "helpdesk_events_published_total",
            "Domain events published per subscriber and outcome",
            ["event_type", "subscriber", "outcome"],
            registry=self.registry,
        )
        self.broker_connected = Gauge(
            "helpdesk_broker_connected",
            "Broker client connection state (1=connected)",
            ["target"],
            registry=self.registry,
        )

    def _setup_process_metrics(self):
        """Set up process-level metrics using psutil."""
        self._process = psutil.Process(os.getpid())
        self._last_cpu_total = 0.0
        self.process_cpu_seconds = Counter(
            "process_cpu_seconds_total",
            "Total CPU time consumed by process",
            ["service"],
            registry=self.registry,
        )
        self.process_memory_bytes = Gauge(
            "process_resident_memory_bytes",
            "Resident memory size in bytes",
            ["service"],
            registry=self.registry,
        )
        self.process_open_fds = Gauge(
            "process_open_fds",
            "Number of open file descriptors",
            ["service"],
            registry=self.registry,
        )
        self.update_system_metrics()

    def update_system_metrics(self):
        """Refresh the process series from psutil."""
        try:
            with self._process.oneshot():
                cpu_times = self._process.cpu_times()
                rss = self._process.memory_info().rss
                # num_fds() only exists on POSIX
                fds = self._process.num_fds() if hasattr(self._process, "num_fds") else None
        except psutil.Error:
            return

        cpu_total = cpu_times.user + cpu_times.system
        if cpu_total > self._last_cpu_total:
            self.process_cpu_seconds.labels(service=self.service_name).inc(cpu_total - self._last_cpu_total)
        self._last_cpu_total = cpu_total
        self.process_memory_bytes.labels(service=self.service_name).set(rss)
        if fds is not None:
            self.process_open_fds.labels(service=self.service_name).set(fds)

    def record_call(self, target: str, topic: str, outcome: str, duration: float):
        """Record one request/reply call."""
        self.rpc_calls_total.labels(target=target, topic=topic, outcome=outcome).inc()
        self.rpc_duration.labels(target=target, topic=topic).observe(duration)

    def record_event_published(self, event_type: str, subscriber: str, ok: bool):
        """Record one fan-out delivery attempt."""
        outcome = "ok" if ok else "failed"
        self.events_published_total.labels(
            event_type=event_type, subscriber=subscriber, outcome=outcome
        ).inc()

    def set_broker_connected(self, target: str, connected: bool):
        self.broker_connected.labels(target=target).set(1 if connected else 0)
