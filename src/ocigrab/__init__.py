"""
ocigrab: keep asking OCI for a compute instance until capacity shows up.

The launch loop retries LaunchInstance forever, adapting the delay between
attempts to the rate limiting it observes, and exposes Prometheus metrics.

Quick Start:
    $ export INSTANCE_SHAPE=VM.Standard.A1.Flex INSTANCE_NAME=my-box ...
    $ ocigrab
    $ curl localhost:2223/metrics

Programmatic use:
    >>> from ocigrab import GRAB, BackoffState, BackoffController, LaunchMetrics
    >>> state = BackoffState(initial_delay=GRAB.config.backoff.initial_delay)
    >>> controller = BackoffController(state, LaunchMetrics(state), GRAB.config.backoff)

Main Classes:
    - RetryLoop: Sends LaunchInstance calls until stopped.
    - RunContext: Cooperative cancellation of the loop.
    - BackoffController: Records outcomes, adjusts the delay, sleeps.
    - BackoffState: Lock-guarded delay shared with the metrics exporter.
    - CadencePolicy: Table of outcome category -> delay action and decision.
    - ComputeClient: LaunchInstance through the OCI SDK Compute client.
    - LaunchMetrics: Prometheus counter and gauge.

Configuration:
    - GRAB: Global configuration singleton.
    - GrabConfig and its sections (InstanceConfig, CredentialsConfig,
      BackoffConfig, LaunchConfig, MetricsConfig).
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("ocigrab")

from ocigrab._auth import AuthenticationError, create_signer
from ocigrab._backoff import (
    BackoffController,
    BackoffState,
    CadenceAction,
    CadencePolicy,
    CadenceRule,
    classify_outcome,
)
from ocigrab._compute import ComputeClient, to_sdk_config
from ocigrab._config import (
    GRAB,
    BackoffConfig,
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    CredentialsConfig,
    GrabConfig,
    InstanceConfig,
    LaunchConfig,
    MetricsConfig,
)
from ocigrab._loop import RetryLoop, RunContext
from ocigrab._metrics import LaunchMetrics, MetricsExporterError
from ocigrab._models import (
    AttemptOutcome,
    OutcomeCategory,
    build_launch_details,
    describe_service_error,
    extract_messages,
)
from ocigrab._retry import MaxRetriesExceededError, RetryAttempt, RetryDecision, Retrying

__all__ = [
    "__version__",
    # Configuration
    "GRAB",
    "GrabConfig",
    "ConfigEntry",
    "ConfigEnvVarError",
    "ConfigValidationError",
    "InstanceConfig",
    "CredentialsConfig",
    "BackoffConfig",
    "LaunchConfig",
    "MetricsConfig",
    # Authentication
    "AuthenticationError",
    "create_signer",
    # Compute API
    "ComputeClient",
    "to_sdk_config",
    # Models
    "AttemptOutcome",
    "OutcomeCategory",
    "build_launch_details",
    "describe_service_error",
    "extract_messages",
    # Backoff
    "BackoffController",
    "BackoffState",
    "CadenceAction",
    "CadencePolicy",
    "CadenceRule",
    "classify_outcome",
    # Retry
    "Retrying",
    "RetryAttempt",
    "RetryDecision",
    "MaxRetriesExceededError",
    # Loop
    "RetryLoop",
    "RunContext",
    # Metrics
    "LaunchMetrics",
    "MetricsExporterError",
]
