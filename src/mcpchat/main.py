"""
mcpchat entry point.

This file handles startup concerns (arg-parsing, env setup, logging) and launches the appropriate
interface (API server or interactive CLI client).
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from mcpchat.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stdout,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the mcpchat tool-calling chat service")
    parser.add_argument(
        "--mode",
        choices=["api", "cli"],
        type=str.lower,
        default="api",
        help="Launch the REST API or the interactive CLI client (default: api)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    parser.add_argument(
        "--async",
        dest="run_async",
        action="store_true",
        help="CLI mode only: queue each message and follow its progress events",
    )
    return parser


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> None:
    """
    Main entry point for the mcpchat application.

    This function sets up the command-line interface, initializes logging, and starts either the
    API server or the CLI client talking to a running server.
    """
    if argv is None:
        argv = sys.argv[1:]

    args = build_parser().parse_args(argv)

    # Override log level setting with command-line argument
    settings.LOG_LEVEL = args.log_level
    _init_logging(settings.LOG_LEVEL)

    logger.info("Starting mcpchat [%s mode]", args.mode)

    if args.mode == "cli":
        # Lazy import to avoid server dependencies if not needed
        from mcpchat.client.cli import (  # pylint: disable=import-outside-toplevel
            run_cli,
        )

        run_cli(run_async=args.run_async)
        return

    # Ensure the data directory exists and is writable
    data_dir = Path(settings.DATA_DIR)
    data_dir.mkdir(parents=True, exist_ok=True)
    if not data_dir.is_dir() or not os.access(data_dir, os.W_OK):
        logger.error("Data directory is not writable: %s", data_dir)
        sys.exit(1)

    from mcpchat.api.app import run_api  # pylint: disable=import-outside-toplevel

    run_api(host="0.0.0.0", port=settings.API_PORT, reload=settings.DEBUG)


if __name__ == "__main__":
    main()
