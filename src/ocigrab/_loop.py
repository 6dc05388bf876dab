"""
The launch loop.

`RetryLoop.run()` sends LaunchInstance calls forever. Each call runs up to
`max_attempts` attempts through `Retrying`, every attempt being handed to the
BackoffController, which records it and sleeps for the current delay. After a
call ends, the loop sleeps once more for the delay and starts over.

Success is not detected: the loop only ends when its RunContext is stopped
(SIGTERM/SIGINT, or a test) or when the process is killed. A stop also cuts
short the attempts of the current call: no request is sent once stopped.

Each call carries its own idempotency token, so repeated attempts within a
call never launch more than one instance.

Example:
    >>> context = RunContext()
    >>> context.install_signal_handlers()
    >>> RetryLoop(client, details, controller, context=context).run()
"""

from __future__ import annotations

import logging
import signal
import threading
import uuid
from typing import TYPE_CHECKING, Any

from ocigrab._config import LaunchConfig
from ocigrab._retry import MaxRetriesExceededError, RetryDecision, Retrying

if TYPE_CHECKING:
    from oci.core.models import LaunchInstanceDetails

    from ocigrab._backoff import BackoffController
    from ocigrab._compute import ComputeClient
    from ocigrab._models import AttemptOutcome

logger = logging.getLogger(__name__)


class RunContext:
    """
    Cooperative cancellation for the launch loop.

    All waits of the loop go through `wait()`, which returns early once
    `stop()` is called.
    """

    def __init__(self) -> None:
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    def wait(self, seconds: float) -> bool:
        """
        Sleep up to `seconds`, waking up early on stop.

        Returns:
            True if the context was stopped.
        """
        return self._stop_event.wait(timeout=max(0.0, seconds))

    def install_signal_handlers(self) -> None:
        """Stop the context on SIGTERM and SIGINT. Main thread only."""

        def _handle_signal(signum: int, frame: Any) -> None:
            logger.info(f"LaunchLoop | Received signal {signum}, stopping")
            self.stop()

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)


class RetryLoop:
    """
    Sends LaunchInstance calls until the run context is stopped.

    Args:
        client: Compute API client.
        details: The instance to launch.
        controller: Backoff controller, consulted after every attempt.
        launch_config: Attempts per call and backoff between attempts.
        context: Run context; a fresh one when omitted.
    """

    def __init__(
        self,
        client: ComputeClient,
        details: LaunchInstanceDetails,
        controller: BackoffController,
        launch_config: LaunchConfig | None = None,
        context: RunContext | None = None,
    ):
        assert client is not None, "client cannot be None"
        assert details is not None, "details cannot be None"
        assert controller is not None, "controller cannot be None"

        self.client = client
        self.details = details
        self.controller = controller
        self.launch_config = launch_config or LaunchConfig()
        self.context = context or RunContext()
        self.iterations = 0

    def run(self) -> None:
        """Loop until the run context is stopped."""
        logger.info(
            f"LaunchLoop | 🚀 Launching '{self.details.display_name}' ({self.details.shape}) "
            f"in {self.details.availability_domain}, delay={self.controller.state.delay}s"
        )
        while not self.context.is_stopped():
            try:
                self.run_once()
            except Exception:
                logger.exception("LaunchLoop | Unexpected error, continuing")
            self.iterations += 1
            self.context.wait(self.controller.state.delay)

        logger.info(f"LaunchLoop | Stopped after {self.iterations} launch calls")

    def run_once(self) -> AttemptOutcome | None:
        """
        Send one LaunchInstance call with all its attempts.

        Returns:
            The outcome on which the policy stopped, or None when attempts ran
            out (the usual case with the always-retry policy).
        """
        retry_token = uuid.uuid4().hex
        retrying = Retrying(
            policy=self._decide,
            max_attempts=self.launch_config.max_attempts,
            backoff_factor=self.launch_config.backoff_factor,
            max_backoff=self.launch_config.max_backoff,
            sleep=self.context.wait,
            should_stop=self.context.is_stopped,
            logger_prefix="LaunchLoop",
        )
        try:
            return retrying(lambda: self.client.launch_instance(self.details, retry_token=retry_token))
        except MaxRetriesExceededError as e:
            logger.debug(f"LaunchLoop | {e}")
            return None

    def _decide(self, outcome: AttemptOutcome) -> RetryDecision:
        decision = self.controller.classify_and_wait(outcome)
        if self.context.is_stopped():
            return RetryDecision.STOP
        return decision
