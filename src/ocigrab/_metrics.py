"""
Prometheus metrics for the launch loop.

Exposes two series on a dedicated registry:

- oci_requests_total{code, message}: launch attempts by status code and by
  reason extracted from the error message. Unused labels are empty strings.
- oci_requests_delay: current delay between attempts, read from BackoffState
  when the endpoint is scraped.

Example:
    >>> metrics = LaunchMetrics(state)
    >>> metrics.serve(port=2223)
    >>> # curl http://localhost:2223/metrics
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

if TYPE_CHECKING:
    from ocigrab._backoff import BackoffState
    from ocigrab._models import AttemptOutcome

logger = logging.getLogger(__name__)


class MetricsExporterError(RuntimeError):
    """Raised when the metrics HTTP endpoint cannot be started."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class LaunchMetrics:
    """
    Request counter and delay gauge of the launch loop.

    Args:
        state: Backoff state sampled by the delay gauge on every scrape.
        registry: Registry to register the metrics in. A fresh one is
            created when omitted, so several instances never collide.
    """

    def __init__(self, state: BackoffState, registry: CollectorRegistry | None = None):
        assert state is not None, "state cannot be None"

        self.registry = registry or CollectorRegistry()
        self.requests = Counter(
            "oci_requests",
            "Total number of HTTP requests by type.",
            labelnames=("code", "message"),
            registry=self.registry,
        )
        self.delay = Gauge(
            "oci_requests_delay",
            "Delay between HTTP requests.",
            registry=self.registry,
        )
        self.delay.set_function(lambda: state.delay)

    def record_outcome(self, outcome: AttemptOutcome) -> None:
        """
        Count one launch attempt.

        Without an HTTP response the attempt is counted once, labelled with
        the raw error text. With a response it is counted once by status code,
        plus once more for every reason extracted from the error message.
        """
        if not outcome.has_http_response:
            self.requests.labels(code="", message=outcome.error_message).inc()
            return

        code = str(outcome.status_code)
        self.requests.labels(code=code, message="").inc()
        for message in outcome.extracted_messages:
            self.requests.labels(code=code, message=message).inc()

    def serve(self, port: int, addr: str = "0.0.0.0") -> Any:
        """
        Start the /metrics endpoint in a daemon thread.

        Raises:
            MetricsExporterError: If the endpoint cannot bind.
        """
        try:
            server = start_http_server(port, addr=addr, registry=self.registry)
        except OSError as e:
            raise MetricsExporterError(f"Unable to serve metrics at {addr}:{port}: {e}", cause=e) from e

        logger.info(f"Metrics | 📈 Serving metrics at {addr}:{port}/metrics")
        return server
