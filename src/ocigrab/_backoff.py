"""
Adaptive backoff for the launch loop.

The delay between launch attempts starts at a floor (31 seconds) and grows by
one second every time the Compute API answers HTTP 429. Other outcomes are
cadence-neutral: after a quiet interval they make the delay *eligible* for a
decrease, which is only applied when BackoffConfig.decrease_enabled is set.

The pieces are kept apart so each one can be tested on its own:

- classify_outcome: Pure function, AttemptOutcome -> OutcomeCategory.
- CadencePolicy: Data table, OutcomeCategory -> (CadenceAction, RetryDecision).
- BackoffState: Lock-guarded delay shared with the metrics exporter.
- BackoffController: Records metrics, applies the policy, sleeps.

Example:
    >>> state = BackoffState(initial_delay=31)
    >>> controller = BackoffController(state=state, metrics=LaunchMetrics(state))
    >>> controller.classify_and_wait(AttemptOutcome(has_http_response=True, status_code=429))
    <RetryDecision.RETRY: 'RETRY'>
    >>> state.delay
    32
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from ocigrab._config import BackoffConfig
from ocigrab._models import AttemptOutcome, OutcomeCategory
from ocigrab._retry import RetryDecision

if TYPE_CHECKING:
    from ocigrab._metrics import LaunchMetrics

logger = logging.getLogger(__name__)


# =============================================================================
# Classification
# =============================================================================


def classify_outcome(outcome: AttemptOutcome) -> OutcomeCategory:
    """
    Classify a launch attempt outcome.

    Example:
        >>> classify_outcome(AttemptOutcome(has_http_response=False, error_message="timeout"))
        <OutcomeCategory.TRANSPORT_FAILURE: 'TRANSPORT_FAILURE'>
    """
    if not outcome.has_http_response:
        return OutcomeCategory.TRANSPORT_FAILURE
    if outcome.is_rate_limited:
        return OutcomeCategory.RATE_LIMITED
    if outcome.is_success:
        return OutcomeCategory.SUCCESS
    return OutcomeCategory.HTTP_FAILURE


# =============================================================================
# Cadence Policy
# =============================================================================


class CadenceAction(enum.StrEnum):
    """
    Effect of an outcome on the delay.

    Attributes:
        INCREASE: Add BackoffConfig.increase_step to the delay.
        HOLD: Leave the delay untouched.
        DECAY: Consider a decrease; see BackoffState.consider_decrease().
    """
    INCREASE = "INCREASE"
    HOLD = "HOLD"
    DECAY = "DECAY"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class CadenceRule:
    action: CadenceAction
    decision: RetryDecision = RetryDecision.RETRY


_ALWAYS_RETRY_RULES: Mapping[OutcomeCategory, CadenceRule] = MappingProxyType({
    OutcomeCategory.TRANSPORT_FAILURE: CadenceRule(CadenceAction.HOLD),
    OutcomeCategory.RATE_LIMITED: CadenceRule(CadenceAction.INCREASE),
    OutcomeCategory.HTTP_FAILURE: CadenceRule(CadenceAction.DECAY),
    OutcomeCategory.SUCCESS: CadenceRule(CadenceAction.DECAY),
})


@dataclass(frozen=True)
class CadencePolicy:
    """
    Table mapping each outcome category to a cadence rule.

    The default table answers RETRY for every category, success included:
    the launch loop never stops on its own.

    Example:
        >>> policy = CadencePolicy()
        >>> policy.rule_for(OutcomeCategory.RATE_LIMITED)
        CadenceRule(action=<CadenceAction.INCREASE: 'INCREASE'>, decision=<RetryDecision.RETRY: 'RETRY'>)
    """

    rules: Mapping[OutcomeCategory, CadenceRule] = field(default_factory=lambda: _ALWAYS_RETRY_RULES)

    def __post_init__(self) -> None:
        missing = set(OutcomeCategory) - set(self.rules)
        assert not missing, f"CadencePolicy has no rule for: {sorted(missing)}"

    def rule_for(self, category: OutcomeCategory) -> CadenceRule:
        return self.rules[category]

    def with_rule(self, category: OutcomeCategory, rule: CadenceRule) -> CadencePolicy:
        """Return a new policy with one rule replaced."""
        return CadencePolicy(rules=MappingProxyType({**self.rules, category: rule}))


# =============================================================================
# State
# =============================================================================


class BackoffState:
    """
    Delay between launch attempts, shared between the launch loop (writer)
    and the metrics exporter (reader).

    Every access goes through a lock. `delay` is a non-negative integer number
    of seconds; `last_adjustment_time` is a value of the injected clock.
    """

    def __init__(self, initial_delay: int = 31, clock: Callable[[], float] = time.monotonic):
        assert initial_delay >= 0, f"initial_delay must be >= 0, got {initial_delay}"

        self._clock = clock
        self._delay = int(initial_delay)
        self._last_adjustment_time = clock()
        self._lock = threading.Lock()

    @property
    def delay(self) -> int:
        with self._lock:
            return self._delay

    @property
    def last_adjustment_time(self) -> float:
        with self._lock:
            return self._last_adjustment_time

    def increase(self, step: int) -> int:
        """Add `step` seconds to the delay and return the new delay."""
        assert step >= 0, f"step must be >= 0, got {step}"
        with self._lock:
            self._delay += step
            return self._delay

    def consider_decrease(
        self,
        *,
        floor: int,
        interval: float,
        step: int,
        enabled: bool,
    ) -> bool:
        """
        Consider lowering the delay.

        Nothing happens unless the delay is above `floor` and at least
        `interval` seconds went by since the last consideration. When both
        hold, the consideration time is moved to now and, only if `enabled`,
        the delay drops by `step` (never below `floor`).

        Returns:
            True if the consideration time was moved.
        """
        now = self._clock()
        with self._lock:
            if self._delay <= floor or now - self._last_adjustment_time < interval:
                return False
            self._last_adjustment_time = now
            if enabled:
                self._delay = max(floor, self._delay - step, 0)
            return True

    def __repr__(self) -> str:
        return f"BackoffState(delay={self.delay})"


# =============================================================================
# Controller
# =============================================================================


class BackoffController:
    """
    Turns attempt outcomes into metrics, delay updates and waits.

    This is the only writer of BackoffState.

    Args:
        state: The shared delay state.
        metrics: Recorder of request counters.
        config: Backoff settings (floor, steps, decrease interval and flag).
        policy: Cadence table. Defaults to always-retry.
        classifier: Outcome classifier. Defaults to classify_outcome.
        wait: Function performing the wait. Defaults to time.sleep; the
            launch loop passes its cancellable wait.
    """

    def __init__(
        self,
        state: BackoffState,
        metrics: LaunchMetrics,
        config: BackoffConfig | None = None,
        policy: CadencePolicy | None = None,
        classifier: Callable[[AttemptOutcome], OutcomeCategory] = classify_outcome,
        wait: Callable[[float], Any] = time.sleep,
    ):
        assert state is not None, "state cannot be None"
        assert metrics is not None, "metrics cannot be None"

        self.state = state
        self.metrics = metrics
        self.config = config or BackoffConfig()
        self.policy = policy or CadencePolicy()
        self.classifier = classifier
        self._wait = wait

    def classify_and_wait(self, outcome: AttemptOutcome) -> RetryDecision:
        """
        Record the outcome, adjust the delay, then sleep for the delay.

        Returns:
            The decision of the cadence policy for the outcome's category.
        """
        category = self.classifier(outcome)
        self.metrics.record_outcome(outcome)

        rule = self.policy.rule_for(category)
        self._apply(rule.action)

        delay = self.state.delay
        logger.debug(
            f"Backoff | {category} (status={outcome.status_code}) -> {rule.action}, "
            f"sleeping {delay}s then {rule.decision}"
        )
        self._wait(delay)
        return rule.decision

    def _apply(self, action: CadenceAction) -> None:
        if action is CadenceAction.INCREASE:
            new_delay = self.state.increase(self.config.increase_step)
            logger.info(f"Backoff | ⏳ Rate limited, delay raised to {new_delay}s")
        elif action is CadenceAction.DECAY:
            before = self.state.delay
            moved = self.state.consider_decrease(
                floor=self.config.floor,
                interval=self.config.decrease_interval,
                step=self.config.decrease_step,
                enabled=self.config.decrease_enabled,
            )
            if moved and self.state.delay != before:
                logger.info(f"Backoff | Delay lowered from {before}s to {self.state.delay}s")
