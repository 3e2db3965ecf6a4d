"""Command-line interface for actuator-relay."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .adapters import LedgerError, MQTTConnectionError
from .app import RelayApp, poll_once
from .config import ConfigurationError, load_config
from .logging import configure_logging

LOGGER = logging.getLogger(__name__)

SECRET_OPTIONS = {
    ("ledger", "password"),
    ("ledger", "anon_key"),
    ("mqtt", "password"),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="actuator-relay",
        description="Relay ledger commands to actuators over MQTT",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Start the relay service")
    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )
    subparsers.add_parser(
        "poll-once", help="Fetch and relay pending commands once, then exit"
    )

    return parser


def mask(value: str) -> str:
    if not value:
        return value
    return "****" if len(value) <= 8 else f"{value[:4]}****"


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1

    if args.command == "start":
        return RelayApp.start(config)

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if (section, key) in SECRET_OPTIONS:
                    value = mask(value)
                print(f"{key} = {value}")
            print()
        return 0

    if args.command == "poll-once":
        configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
        try:
            count = asyncio.run(poll_once(config))
        except (ConfigurationError, LedgerError, MQTTConnectionError) as exc:
            LOGGER.error("Poll failed: %s", exc)
            return 1
        LOGGER.info("Poll finished, %d command(s) pending at start", count)
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
