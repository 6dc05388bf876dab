"""Tests for the Prometheus metrics."""

import unittest
from unittest.mock import patch

from prometheus_client import CollectorRegistry

from ocigrab._backoff import BackoffState
from ocigrab._metrics import LaunchMetrics, MetricsExporterError
from ocigrab._models import AttemptOutcome


class TestLaunchMetrics(unittest.TestCase):
    """Tests for LaunchMetrics."""

    def setUp(self):
        self.state = BackoffState(initial_delay=31)
        self.registry = CollectorRegistry()
        self.metrics = LaunchMetrics(self.state, registry=self.registry)

    def _count(self, code: str, message: str):
        return self.registry.get_sample_value("oci_requests_total", {"code": code, "message": message})

    def test_transport_failure_counted_with_raw_error(self):
        """Should label transport failures with an empty code and the raw error."""
        self.metrics.record_outcome(AttemptOutcome(has_http_response=False, error_message="dial tcp: i/o timeout"))
        self.assertEqual(self._count("", "dial tcp: i/o timeout"), 1.0)

    def test_http_failure_counted_by_status_and_message(self):
        """Should count once by status and once per extracted reason."""
        outcome = AttemptOutcome(
            has_http_response=True,
            status_code=500,
            error_message="Message: Out of host capacity.",
            extracted_messages=("Out of host capacity",),
        )
        self.metrics.record_outcome(outcome)
        self.metrics.record_outcome(outcome)

        self.assertEqual(self._count("500", ""), 2.0)
        self.assertEqual(self._count("500", "Out of host capacity"), 2.0)

    def test_http_failure_without_reason(self):
        """Should only count the status when no reason was extracted."""
        self.metrics.record_outcome(AttemptOutcome(has_http_response=True, status_code=502, error_message="bad gateway"))
        self.assertEqual(self._count("502", ""), 1.0)
        self.assertIsNone(self._count("502", "bad gateway"))

    def test_success_counted_by_status(self):
        self.metrics.record_outcome(AttemptOutcome.success())
        self.assertEqual(self._count("200", ""), 1.0)

    def test_delay_gauge_follows_state(self):
        """Should read the delay from the state on every collection."""
        self.assertEqual(self.registry.get_sample_value("oci_requests_delay"), 31.0)
        self.state.increase(1)
        self.assertEqual(self.registry.get_sample_value("oci_requests_delay"), 32.0)

    def test_instances_do_not_collide(self):
        """Should allow several instances, each with its own registry."""
        other = LaunchMetrics(self.state)
        self.assertIsNot(other.registry, self.registry)

    @patch("ocigrab._metrics.start_http_server")
    def test_serve_starts_exporter(self, mock_start):
        """Should start the exporter on the configured address."""
        self.metrics.serve(port=2223, addr="127.0.0.1")
        mock_start.assert_called_once_with(2223, addr="127.0.0.1", registry=self.registry)

    @patch("ocigrab._metrics.start_http_server", side_effect=OSError(98, "Address already in use"))
    def test_serve_reports_bind_failure(self, mock_start):
        """Should raise MetricsExporterError when the port is taken."""
        with self.assertRaises(MetricsExporterError) as ctx:
            self.metrics.serve(port=2223)
        self.assertIsInstance(ctx.exception.cause, OSError)
        self.assertIn("2223", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
