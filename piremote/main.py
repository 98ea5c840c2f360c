from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from piremote.adapters.web.server import WebControlPlane
from piremote.config import ClientConfig
from piremote.core.commands import Commands
from piremote.core.events import EventBus

logger = logging.getLogger("piremote")


def _setup_logging(log_file: str, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file),
        ],
    )


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pi-remote",
        description="Drive a running pi coding agent over its RPC port.",
    )
    parser.add_argument("port", nargs="?", type=int, help="agent RPC port")
    parser.add_argument("--host", help="agent host")
    parser.add_argument("--web-port", type=int, help="web control plane port")
    parser.add_argument(
        "--no-connect", action="store_true",
        help="start without connecting; connect later via POST /api/connect",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser.parse_args(argv)


async def main(args: argparse.Namespace) -> None:
    config = ClientConfig.from_env()
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.web_port is not None:
        config.web_port = args.web_port

    _setup_logging(config.log_file, args.verbose)
    logger.info("pi-remote starting...")

    # -- Initialize core infrastructure --
    event_bus = EventBus()
    commands = Commands(config, event_bus)
    web_cp = WebControlPlane(commands, event_bus, config.log_file, port=config.web_port)

    # Handle shutdown signals
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_signal() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    await web_cp.start()

    if not args.no_connect:
        ok, message = await commands.cmd_connect(config.port)
        if ok:
            logger.info(message)
        else:
            logger.warning("Initial connect failed: %s", message)

    logger.info("pi-remote is running. Press Ctrl+C to stop.")

    # Wait for shutdown
    await stop_event.wait()

    logger.info("Shutting down...")
    commands.cmd_close()
    await web_cp.stop()
    logger.info("pi-remote stopped.")


def run() -> None:
    args = _parse_args()
    try:
        asyncio.run(main(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
