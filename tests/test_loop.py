"""Tests for the launch loop."""

import signal
import threading
import unittest
from unittest.mock import MagicMock, patch

import oci
from prometheus_client import CollectorRegistry

from ocigrab._backoff import BackoffController, BackoffState
from ocigrab._config import InstanceConfig, LaunchConfig
from ocigrab._loop import RetryLoop, RunContext
from ocigrab._metrics import LaunchMetrics
from ocigrab._models import build_launch_details
from ocigrab._retry import RetryDecision


def _service_error(status: int, message: str | None = None) -> oci.exceptions.ServiceError:
    return oci.exceptions.ServiceError(status, "InternalError", {"opc-request-id": "req-1"}, message)


def _ok() -> oci.response.Response:
    return oci.response.Response(200, {}, None, None)


class InstantContext(RunContext):
    """RunContext whose waits return immediately and are recorded."""

    def __init__(self):
        super().__init__()
        self.waits: list[float] = []

    def wait(self, seconds: float) -> bool:
        self.waits.append(seconds)
        return self.is_stopped()


class ScriptedClient:
    """
    Compute client replaying a script of results (responses or exceptions),
    cycling through it, and stopping the context after `stop_after` calls.
    """

    def __init__(self, script, context: RunContext, stop_after: int):
        self.script = list(script)
        self.context = context
        self.stop_after = stop_after
        self.calls: list[str | None] = []

    def launch_instance(self, details, retry_token=None):
        self.calls.append(retry_token)
        if len(self.calls) >= self.stop_after:
            self.context.stop()
        result = self.script[(len(self.calls) - 1) % len(self.script)]
        if isinstance(result, BaseException):
            raise result
        return result


class LoopTestCase(unittest.TestCase):
    def setUp(self):
        self.context = InstantContext()
        self.state = BackoffState(initial_delay=31)
        self.registry = CollectorRegistry()
        self.metrics = LaunchMetrics(self.state, registry=self.registry)
        self.controller = BackoffController(self.state, self.metrics, wait=self.context.wait)
        self.details = build_launch_details(InstanceConfig(display_name="grabbed"), LaunchConfig())

    def make_loop(self, client, max_attempts: int = 1) -> RetryLoop:
        return RetryLoop(
            client=client,
            details=self.details,
            controller=self.controller,
            launch_config=LaunchConfig(max_attempts=max_attempts),
            context=self.context,
        )

    def count(self, code: str, message: str = ""):
        return self.registry.get_sample_value("oci_requests_total", {"code": code, "message": message})


class TestRunContext(unittest.TestCase):
    """Tests for RunContext."""

    def test_wait_returns_early_on_stop(self):
        """Should wake up a pending wait as soon as stop() is called."""
        context = RunContext()
        threading.Timer(0.05, context.stop).start()
        self.assertTrue(context.wait(30))
        self.assertTrue(context.is_stopped())

    def test_wait_times_out(self):
        self.assertFalse(RunContext().wait(0))

    @patch("ocigrab._loop.signal.signal")
    def test_signal_handlers_stop_context(self, mock_signal):
        """Should stop the context on SIGTERM and SIGINT."""
        context = RunContext()
        context.install_signal_handlers()

        handlers = {c.args[0]: c.args[1] for c in mock_signal.call_args_list}
        self.assertEqual(set(handlers), {signal.SIGTERM, signal.SIGINT})

        handlers[signal.SIGTERM](signal.SIGTERM, None)
        self.assertTrue(context.is_stopped())


class TestRetryLoop(LoopTestCase):
    """Tests for RetryLoop.run()."""

    def test_consecutive_rate_limits_grow_the_delay(self):
        """Should sleep 32, 33, ... 41 seconds over ten 429 answers."""
        client = ScriptedClient([_service_error(429, "Too many requests.")], self.context, stop_after=10)

        self.make_loop(client).run()

        self.assertEqual(self.state.delay, 41)
        controller_waits = self.context.waits[0::2]
        self.assertEqual(controller_waits, list(range(32, 42)))
        self.assertEqual(self.count("429"), 10.0)
        self.assertEqual(self.count("429", "Too many requests"), 10.0)
        self.assertEqual(self.registry.get_sample_value("oci_requests_delay"), 41.0)

    def test_transport_failures_keep_the_delay(self):
        """Should retry transport failures at the current delay."""
        client = ScriptedClient([oci.exceptions.RequestException("dial tcp: i/o timeout")], self.context, stop_after=5)

        loop = self.make_loop(client)
        loop.run()

        self.assertEqual(self.state.delay, 31)
        self.assertEqual(loop.iterations, 5)
        self.assertTrue(all(w == 31 for w in self.context.waits))
        self.assertEqual(self.count("", "dial tcp: i/o timeout"), 5.0)

    def test_never_stops_on_its_own(self):
        """Should keep going through success and every kind of failure."""
        script = [
            _ok(),
            _service_error(500, "Out of host capacity."),
            oci.exceptions.ConnectTimeout("read timed out"),
            _service_error(429),
            _service_error(400, "Invalid shape."),
        ]
        client = ScriptedClient(script, self.context, stop_after=50)

        loop = self.make_loop(client)
        loop.run()

        self.assertEqual(len(client.calls), 50)
        self.assertEqual(loop.iterations, 50)
        self.assertEqual(self.count("200"), 10.0)
        self.assertEqual(self.count("500", "Out of host capacity"), 10.0)
        self.assertEqual(self.state.delay, 41)

    def test_attempts_of_one_call_share_a_token(self):
        """Should reuse one idempotency token across the attempts of a call."""
        client = ScriptedClient([_service_error(500)], self.context, stop_after=6)

        self.make_loop(client, max_attempts=3).run()

        self.assertEqual(len(client.calls), 6)
        self.assertEqual(len(set(client.calls[0:3])), 1)
        self.assertEqual(len(set(client.calls[3:6])), 1)
        self.assertNotEqual(client.calls[0], client.calls[3])

    def test_attempts_are_followed_by_controller_waits(self):
        """Should wait the delay after every attempt, and again after every call."""
        client = ScriptedClient([_service_error(500)], self.context, stop_after=3)

        self.make_loop(client, max_attempts=3).run()

        # Three controller waits of 31s, two exponential backoffs, one loop wait
        self.assertEqual(self.context.waits.count(31), 4)
        self.assertEqual(len(self.context.waits), 6)

    def test_stop_ends_call_early(self):
        """Should abandon the remaining attempts of a call once stopped."""
        client = ScriptedClient([_service_error(500)], self.context, stop_after=2)

        loop = self.make_loop(client, max_attempts=8)
        loop.run()

        self.assertEqual(len(client.calls), 2)
        self.assertEqual(loop.iterations, 1)

    def test_stop_during_backoff_sends_no_more_requests(self):
        """Should not send another request when the stop arrives during the backoff between attempts."""

        class StopOnSecondWait(InstantContext):
            def wait(self, seconds: float) -> bool:
                if len(self.waits) == 1:
                    self.stop()
                return super().wait(seconds)

        self.context = StopOnSecondWait()
        self.controller = BackoffController(self.state, self.metrics, wait=self.context.wait)
        stopped_at_call: list[bool] = []

        def launch_instance(details, retry_token=None):
            stopped_at_call.append(self.context.is_stopped())
            raise _service_error(500, "Out of host capacity.")

        client = MagicMock()
        client.launch_instance.side_effect = launch_instance

        loop = self.make_loop(client, max_attempts=8)
        loop.run()

        # Controller wait, then the backoff wait on which the stop arrives
        self.assertNotIn(True, stopped_at_call)
        self.assertEqual(stopped_at_call, [False])
        self.assertEqual(loop.iterations, 1)

    def test_unexpected_errors_do_not_end_loop(self):
        """Should log and continue when the controller itself fails."""
        client = ScriptedClient([_ok()], self.context, stop_after=3)
        controller = MagicMock(wraps=self.controller)
        controller.state = self.state
        controller.classify_and_wait.side_effect = [RuntimeError("boom"), RetryDecision.RETRY, RetryDecision.RETRY]

        loop = RetryLoop(client, self.details, controller, LaunchConfig(max_attempts=1), self.context)
        with self.assertLogs("ocigrab._loop", level="ERROR"):
            loop.run()

        self.assertEqual(loop.iterations, 3)

    def test_runs_in_background_thread_until_stopped(self):
        """Should run until stop() is called from another thread."""
        context = RunContext()
        client = MagicMock()
        client.launch_instance.side_effect = oci.exceptions.RequestException("reset")
        controller = BackoffController(
            BackoffState(initial_delay=0), LaunchMetrics(BackoffState()), wait=context.wait
        )
        loop = RetryLoop(client, self.details, controller, LaunchConfig(max_attempts=1, backoff_factor=0), context)

        thread = threading.Thread(target=loop.run, daemon=True)
        thread.start()
        threading.Event().wait(0.1)
        self.assertTrue(thread.is_alive())

        context.stop()
        thread.join(timeout=5)
        self.assertFalse(thread.is_alive())
        self.assertGreater(client.launch_instance.call_count, 0)


if __name__ == "__main__":
    unittest.main()
