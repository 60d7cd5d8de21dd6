"""
Prometheus metrics for ingestion and the API.

Counters live in process memory and are exposed at /api/metrics for
scraping; the worker exposes the same registry through its own process.
"""

import structlog
from prometheus_client import Counter, Histogram, Info

logger = structlog.get_logger(__name__)


class MetricsCollector:
    """Centralized metrics collection for Anchorpipe."""

    def __init__(self) -> None:
        self.service_info = Info("anchorpipe_service", "Anchorpipe service information")
        self.service_info.info({"version": "0.1.0", "service": "anchorpipe"})

        self.requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
        )
        self.request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
        )

        self.ingestion_requests_total = Counter(
            "ingestion_requests_total",
            "Ingestion submissions by outcome",
            ["outcome"],
        )
        self.messages_ingested_total = Counter(
            "ingestion_messages_ingested_total",
            "Queue messages persisted by the ingestion worker",
        )
        self.messages_failed_total = Counter(
            "ingestion_messages_failed_total",
            "Queue messages that exhausted their retries",
        )
        self.messages_dead_lettered_total = Counter(
            "ingestion_messages_dead_lettered_total",
            "Queue messages produced to the dead-letter topic",
            ["reason"],
        )

        self.siem_entries_forwarded_total = Counter(
            "siem_entries_forwarded_total",
            "Audit log entries forwarded to the SIEM",
            ["outcome"],
        )

    def record_request(
        self, method: str, endpoint: str, status_code: int, duration_seconds: float
    ) -> None:
        """Record HTTP request metrics."""
        self.requests_total.labels(
            method=method, endpoint=endpoint, status_code=str(status_code)
        ).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(
            duration_seconds
        )

    def record_ingestion_request(self, outcome: str) -> None:
        """Record the outcome of a POST /api/ingestion call."""
        self.ingestion_requests_total.labels(outcome=outcome).inc()

    def record_message_ingested(self) -> None:
        self.messages_ingested_total.inc()

    def record_message_failed(self) -> None:
        self.messages_failed_total.inc()

    def record_message_dead_lettered(self, reason: str) -> None:
        self.messages_dead_lettered_total.labels(reason=reason).inc()

    def record_siem_forward(self, success: int, failed: int) -> None:
        """Record a SIEM forwarding run."""
        if success:
            self.siem_entries_forwarded_total.labels(outcome="success").inc(success)
        if failed:
            self.siem_entries_forwarded_total.labels(outcome="failed").inc(failed)


# Global metrics instance; prometheus_client registers collectors once per process
metrics = MetricsCollector()
