"""
ip-potato
Main Entry Point

Parses the command line, wires process signals to the lifecycle
controller and maps its outcome to the process exit status.
"""

import argparse
import asyncio
import signal
import sys

import structlog

from ippotato import __version__
from ippotato.core.lifecycle import LifecycleController
from ippotato.exceptions import ListenError, ServeError, ShutdownTimeoutError
from ippotato.utils.config import get_settings
from ippotato.utils.logging import setup_logging
from ippotato.web.api import create_app

logger = structlog.get_logger()

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def positive_float(value: str) -> float:
    """argparse type for durations that must be greater than zero."""
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not a number") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"{value!r} must be greater than zero")
    return number


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser; defaults come from settings."""
    settings = get_settings()
    parser = argparse.ArgumentParser(
        prog="ippotato",
        description="ip-potato - tells callers their public IP address",
    )
    parser.add_argument(
        "--listen",
        default=settings.server.listen,
        metavar="HOST:PORT",
        help="Listen address for the http server (default: %(default)s)",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=positive_float,
        default=settings.server.shutdown_timeout,
        metavar="SECONDS",
        help="Grace period for in-flight requests on shutdown (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=settings.logging.level.upper(),
        help="Log level (default: %(default)s)",
    )
    parser.add_argument(
        "--log-format",
        choices=("json", "text"),
        default=settings.logging.format,
        help="Log output format (default: %(default)s)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


async def main(args: argparse.Namespace) -> int:
    """Run the server until SIGINT/SIGTERM. Returns the process exit status."""
    settings = get_settings()

    controller = LifecycleController(
        create_app(),
        args.listen,
        shutdown_timeout=args.shutdown_timeout,
        log_level=args.log_level.lower(),
        access_log=settings.server.access_log,
    )

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        logger.info("Shutdown requested")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await controller.run(shutdown_event)
    except (ListenError, ServeError) as e:
        logger.error("HTTP server failed", error=str(e), exc_info=True)
        return 1
    except ShutdownTimeoutError as e:
        logger.error("HTTP server did not shut down gracefully", error=str(e))
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    logger.info("ip-potato stopped")
    return 0


def run() -> None:
    """Synchronous entry point with CLI argument parsing."""
    args = build_parser().parse_args()
    setup_logging(level=args.log_level, format_type=args.log_format)
    sys.exit(asyncio.run(main(args)))


if __name__ == "__main__":
    run()
