"""
Attempt loop for a single launch call.

Inspired by Tenacity's Retrying class. Every attempt, successful or not, is
turned into an AttemptOutcome and handed to a policy callback which answers
RETRY or STOP. Between two attempts the loop waits with exponential backoff,
on top of whatever the policy callback itself waits.

Example:
    >>> retrying = Retrying(max_attempts=8, policy=controller.classify_and_wait)
    >>> outcome = retrying(lambda: client.launch_instance(details))
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable, Generator
from dataclasses import dataclass
from typing import Any

from ocigrab._models import AttemptOutcome
from ocigrab._utils import sleep_with_jitter

logger = logging.getLogger(__name__)


class RetryDecision(enum.StrEnum):
    """Answer of a retry policy after an attempt."""
    RETRY = "RETRY"
    STOP = "STOP"

    def __str__(self) -> str:
        return self.value


class MaxRetriesExceededError(Exception):
    """
    Raised when all attempts of a launch call are exhausted.

    Attributes:
        message: Human-readable error message.
        last_outcome: The outcome of the last attempt.

    Example:
        >>> try:
        ...     retrying(operation)
        ... except MaxRetriesExceededError as e:
        ...     print(e.last_outcome.status_code)
    """

    def __init__(self, message: str, last_outcome: AttemptOutcome | None = None):
        super().__init__(message)
        self.last_outcome = last_outcome


@dataclass(frozen=True)
class RetryAttempt:
    """
    Metadata about the current attempt.

    Attributes:
        attempt_number: One-based index of the attempt.
        max_attempts: Maximum number of attempts configured.
    """

    attempt_number: int
    max_attempts: int

    @property
    def is_last_attempt(self) -> bool:
        """Return True if this is the last attempt."""
        return self.attempt_number >= self.max_attempts


RetryPolicy = Callable[[AttemptOutcome], RetryDecision]


class Retrying:
    """
    Runs an operation until the policy says STOP or attempts run out.

    Any Exception raised by the operation is captured as an outcome. Only
    BaseExceptions that are not Exceptions (KeyboardInterrupt, SystemExit)
    propagate.

    Args:
        policy: Callback consulted after every attempt, success included.
        max_attempts: Maximum number of attempts (default: 8).
        backoff_factor: Base multiplier for exponential backoff (default: 1.0).
            Sleep time = backoff_factor * (2 ** (attempt_number - 1)).
        max_backoff: Upper bound of a single backoff sleep (default: 30.0).
        sleep: Function performing the waits. Defaults to time.sleep.
        should_stop: Predicate checked after every backoff wait. When it
            answers True, no further attempt is made and the last outcome is
            returned.
        logger_prefix: Prefix for log messages.

    Raises:
        MaxRetriesExceededError: When the policy still says RETRY after the
            last attempt. Contains the last outcome in `last_outcome`.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        max_attempts: int = 8,
        backoff_factor: float = 1.0,
        max_backoff: float = 30.0,
        sleep: Callable[[float], Any] = time.sleep,
        should_stop: Callable[[], bool] | None = None,
        logger_prefix: str = "",
    ):
        assert policy is not None, "policy cannot be None"
        assert max_attempts >= 1, f"max_attempts must be >= 1, got {max_attempts}"
        assert backoff_factor >= 0, f"backoff_factor must be >= 0, got {backoff_factor}"
        assert max_backoff >= 0, f"max_backoff must be >= 0, got {max_backoff}"

        self.policy = policy
        self.max_attempts = max_attempts
        self.backoff_factor = backoff_factor
        self.max_backoff = max_backoff
        self.logger_prefix = logger_prefix
        self._sleep = sleep
        self._should_stop = should_stop or (lambda: False)

    def __call__(self, operation: Callable[[], Any]) -> AttemptOutcome:
        """
        Run the operation.

        Args:
            operation: Zero-argument callable performing one attempt. Returning
                normally means the attempt succeeded; raising means it failed.

        Returns:
            The outcome of the attempt on which the policy answered STOP, or
            the last outcome when should_stop interrupted the attempts.

        Raises:
            MaxRetriesExceededError: When attempts are exhausted.
        """
        outcome: AttemptOutcome | None = None
        for attempt in self.attempts():
            outcome = self._run_attempt(operation, attempt)
            decision = self.policy(outcome)
            logger.debug(
                f"{self._prefix}Attempt {attempt.attempt_number}/{attempt.max_attempts} "
                f"-> status={outcome.status_code} decision={decision}"
            )
            if decision is RetryDecision.STOP:
                return outcome
            if not attempt.is_last_attempt:
                sleep_with_jitter(self.calculate_wait_time(attempt.attempt_number), sleep=self._sleep)
                if self._should_stop():
                    logger.debug(f"{self._prefix}Stop requested, skipping remaining attempts")
                    return outcome

        raise MaxRetriesExceededError(
            message=f"Max attempts ({self.max_attempts}) exceeded. Last status: {outcome.status_code if outcome else None}",
            last_outcome=outcome,
        )

    def attempts(self) -> Generator[RetryAttempt, None, None]:
        """Yield attempt metadata for each attempt."""
        for attempt_number in range(1, self.max_attempts + 1):
            yield RetryAttempt(attempt_number=attempt_number, max_attempts=self.max_attempts)

    def calculate_wait_time(self, attempt_number: int) -> float:
        """Exponential backoff after the given one-based attempt, capped at max_backoff."""
        return float(min(self.backoff_factor * (2 ** (attempt_number - 1)), self.max_backoff))

    @staticmethod
    def _run_attempt(operation: Callable[[], Any], attempt: RetryAttempt) -> AttemptOutcome:
        try:
            result = operation()
        except Exception as e:
            return AttemptOutcome.from_exception(e, attempt_number=attempt.attempt_number)

        status_code = getattr(result, "status", 200)
        return AttemptOutcome.success(status_code=int(status_code), attempt_number=attempt.attempt_number)

    @property
    def _prefix(self) -> str:
        return f"{self.logger_prefix} | " if self.logger_prefix else ""
