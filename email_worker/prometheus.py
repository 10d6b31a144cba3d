"""Prometheus metrics exposed by the email worker."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest, start_http_server

class WorkerMetrics:
    """Wrapper around the Prometheus registry used by the worker."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("ew_sent_total", "Total emails delivered", registry=self.registry)
        self.failed = Counter("ew_failed_total", "Total jobs dead-lettered after exhausting retries", registry=self.registry)
        self.retried = Counter("ew_retried_total", "Total retries scheduled", registry=self.registry)
        self.send_errors = Counter("ew_send_errors_total", "Total failed delivery attempts", registry=self.registry)
        self.queue_length = Gauge("ew_queue_length", "Current length of a worker queue", ["queue"], registry=self.registry)

    def inc_sent(self):
        self.sent.inc()

    def inc_failed(self):
        self.failed.inc()

    def inc_retried(self):
        self.retried.inc()

    def inc_send_error(self):
        self.send_errors.inc()

    def set_queue_lengths(self, main: int, processing: int, retry: int):
        """Update the queue length gauges."""
        self.queue_length.labels(queue="main").set(main)
        self.queue_length.labels(queue="processing").set(processing)
        self.queue_length.labels(queue="retry").set(retry)

    def serve(self, port: int, addr: str = "0.0.0.0"):
        """Expose the registry over HTTP on ``port``."""
        return start_http_server(port, addr=addr, registry=self.registry)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
