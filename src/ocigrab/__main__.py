"""
Process entry point: `ocigrab` or `python -m ocigrab`.

Startup order: logging, configuration, metrics exporter, API client, loop.
Any failure before the loop starts exits with status 1.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

from ocigrab._auth import AuthenticationError, create_signer
from ocigrab._backoff import BackoffController, BackoffState
from ocigrab._compute import ComputeClient
from ocigrab._config import GRAB, ConfigEnvVarError, ConfigValidationError
from ocigrab._loop import RetryLoop, RunContext
from ocigrab._metrics import LaunchMetrics, MetricsExporterError
from ocigrab._models import build_launch_details

logger = logging.getLogger("ocigrab")


def _setup_logging() -> None:
    logging.basicConfig(
        level=os.environ.get("OCIGRAB_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="ocigrab",
        description="Retry OCI LaunchInstance until capacity is available.",
    )
    parser.add_argument(
        "--explain",
        action="store_true",
        help="print the effective configuration and exit",
    )
    args = parser.parse_args(argv)

    _setup_logging()

    try:
        config = GRAB.reset()
    except (ConfigEnvVarError, ConfigValidationError) as e:
        logger.error(f"❌ Invalid configuration: {e}")
        return 1

    if args.explain:
        GRAB.explain()
        return 0
    GRAB.explain(logger.info)

    state = BackoffState(initial_delay=config.backoff.initial_delay)
    metrics = LaunchMetrics(state)
    try:
        metrics.serve(port=config.metrics.port, addr=config.metrics.addr)
    except MetricsExporterError as e:
        logger.error(f"❌ {e}")
        return 1

    try:
        signer = create_signer(config.credentials)
        client = ComputeClient(
            credentials=config.credentials,
            signer=signer,
            request_timeout=config.launch.request_timeout,
        )
    except AuthenticationError as e:
        logger.error(f"❌ {e}")
        return 1

    context = RunContext()
    context.install_signal_handlers()
    controller = BackoffController(
        state=state,
        metrics=metrics,
        config=config.backoff,
        wait=context.wait,
    )
    loop = RetryLoop(
        client=client,
        details=build_launch_details(config.instance, config.launch),
        controller=controller,
        launch_config=config.launch,
        context=context,
    )

    loop.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
