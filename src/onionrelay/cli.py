"""Command-line interface for onionrelay.

``onionrelay run`` launches a registry, onion routers and users on localhost;
``onionrelay send`` asks a running user service to send a message.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Optional

from .__about__ import __version__
from .config import Config
from .network import HttpTransport
from .robustness import OnionRelayError, setup_logging
from .server import launch_network

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="onionrelay", description="Onion routing relay network")
    p.add_argument("--config", default=None, help="Path to config YAML")
    p.add_argument(
        "--loglevel",
        default=None,
        help="Logging level (DEBUG/INFO/WARNING/ERROR/CRITICAL)",
    )
    p.add_argument("--logfile", default=None, help="Optional log file path")

    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Launch a local network")
    run.add_argument("--routers", type=int, default=10, help="Number of onion routers")
    run.add_argument("--users", type=int, default=2, help="Number of users")

    send = sub.add_parser("send", help="Send a message through a running network")
    send.add_argument("--from", dest="sender", type=int, required=True, help="Sending user id")
    send.add_argument("--to", dest="destination", type=int, required=True, help="Destination user id")
    send.add_argument("message", help="Message text")

    sub.add_parser("version", help="Print the version")
    return p


async def _run(config: Config, routers: int, users: int) -> None:
    network = await launch_network(config.settings, routers, users)
    try:
        await asyncio.Event().wait()
    finally:
        await network.stop()


async def _send(config: Config, sender: int, destination: int, message: str) -> dict:
    addressing = config.addressing()
    async with HttpTransport(addressing, config.settings.network.request_timeout) as transport:
        return await transport.post_json(
            addressing.user_address(sender),
            "/sendMessage",
            {"message": message, "destinationUserId": destination},
        )


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "version":
        print(__version__)
        return 0

    try:
        config = Config(args.config)
    except OnionRelayError as e:
        print(f"error: {e}")
        return 2
    setup_logging(args.loglevel or config.settings.logging.level, args.logfile or config.settings.logging.file)

    try:
        if args.command == "run":
            asyncio.run(_run(config, args.routers, args.users))
        elif args.command == "send":
            result = asyncio.run(_send(config, args.sender, args.destination, args.message))
            print(json.dumps(result))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except OnionRelayError as e:
        logger.error(f"{e}", extra={"context": e.context})
        return 1
    except OSError as e:
        logger.error(f"{e}", extra={"context": {"errno": e.errno}})
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
