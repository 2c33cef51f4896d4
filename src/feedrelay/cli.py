"""
Command line entry point.

Usage:
    feedrelay                 # poll until SIGINT/SIGTERM
    feedrelay --once          # single cycle, then exit
    feedrelay --test          # validate, probe webhooks, fetch once, post nothing

Settings come from ET_* environment variables (see feedrelay.config).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import TYPE_CHECKING

from feedrelay.config import load_config
from feedrelay.errors import ConfigurationError
from feedrelay.logging_config import setup_logging
from feedrelay.metrics import MetricsExporter, RelayMetrics
from feedrelay.metrics_server import start_metrics_server, stop_metrics_server
from feedrelay.service import RelayService, run_test_mode

if TYPE_CHECKING:
    from collections.abc import Sequence

    from feedrelay.config import RelayConfig

logger = logging.getLogger(__name__)


def setup_signal_handlers(service: RelayService, main_task: asyncio.Task[int]) -> None:
    """
    Route SIGINT/SIGTERM to the service.

    The first signal only requests shutdown; the polling loop exits and the
    caller's finally block runs stop(). A second signal cancels the main task.
    """
    loop = asyncio.get_running_loop()

    def handle(sig: signal.Signals) -> None:
        if service.shutdown_requested:
            logger.warning("Second signal received, forcing exit", extra={"signal": sig.name})
            main_task.cancel()
            return
        logger.info("Received signal, initiating shutdown", extra={"signal": sig.name})
        service.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle, sig)
        except NotImplementedError:
            # Event loops without signal support (Windows)
            signal.signal(
                sig, lambda s, _frame: loop.call_soon_threadsafe(handle, signal.Signals(s))
            )


async def run_service(config: RelayConfig, *, once: bool = False) -> int:
    """
    Run the relay until shutdown.

    Returns:
        Exit code (0 = success).
    """
    metrics = RelayMetrics()
    exporter: MetricsExporter | None = None
    if config.metrics_port > 0:
        exporter = MetricsExporter()

    service = RelayService(config, metrics=metrics, exporter=exporter)

    metrics_runner = None
    if exporter is not None:
        metrics_runner = await start_metrics_server(
            exporter.registry,
            port=config.metrics_port,
            health_fn=service.get_health_info,
        )

    main_task = asyncio.current_task()
    if main_task is not None:
        setup_signal_handlers(service, main_task)

    try:
        await service.start(once=once)
        return 0
    except asyncio.CancelledError:
        logger.warning("Relay cancelled")
        return 1
    except Exception as e:
        logger.exception("Relay failed", extra={"error": str(e)})
        return 1
    finally:
        await service.stop()
        if metrics_runner is not None:
            await stop_metrics_server(metrics_runner)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feedrelay",
        description="Relay new YouTube videos to Discord webhooks.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--test",
        action="store_true",
        help="Validate config, test webhooks and fetch feeds once without posting",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single polling cycle and exit",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARN", "ERROR"],
        default=None,
        help="Override ET_LOG_LEVEL",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        default=None,
        help="Override ET_LOG_FORMAT",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    # Flags override the environment before validation
    env = dict(os.environ)
    if args.test:
        env["ET_TEST_MODE"] = "true"
    if args.log_level:
        env["ET_LOG_LEVEL"] = args.log_level
    if args.log_format:
        env["ET_LOG_FORMAT"] = args.log_format

    try:
        config = load_config(env)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(level=config.python_log_level, json_format=config.log_format == "json")
    logger.info("Starting feedrelay", extra=config.summary())
    for warning in config.warnings():
        logger.warning(warning)

    if config.test_mode:
        return 0 if asyncio.run(run_test_mode(config)) else 1
    return asyncio.run(run_service(config, once=args.once))


if __name__ == "__main__":
    sys.exit(main())
