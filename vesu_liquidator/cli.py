"""Command-line interface for the liquidation engine."""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys

from .chains.starknet import build_signer
from .config import load_config
from .errors import FatalError, ValidationError
from .logging_setup import configure_logging
from .services import Engine

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="vesu-liquidator",
        description="Vesu position monitor and flash-loan liquidation engine",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    run_parser = sub.add_parser("run", help="Run the monitoring and liquidation engine")
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Evaluate and plan, but never submit transactions",
    )

    return parser


async def _run(args: argparse.Namespace) -> None:
    """Execute the selected command."""
    configure_logging(args.log_level)
    config = load_config(args.config)
    if args.dry_run:
        config = dataclasses.replace(
            config, liquidation=dataclasses.replace(config.liquidation, dry_run=True)
        )

    try:
        signer = build_signer(config)
    except ValidationError as e:
        raise FatalError(f"Cannot load signer: {e}") from e

    engine = Engine(config, signer=signer)
    await engine.run()


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command != "run":
        parser.print_help()
        sys.exit(1)

    try:
        asyncio.run(_run(args))
    except FatalError as e:
        logger.critical("Engine halted: %s", e)
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
