from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

import zmq
from pydantic import ValidationError

from .config import Settings
from .handlers import ConsoleHandler, EventHandler, MultiHandler
from .logging_config import setup_logging
from .monitor import Monitor, MonitorError
from .publisher import ZmqPublisher

log = logging.getLogger("nodewatch.main")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="nodewatch",
        description="Print new block headers and pending transactions from a local node's WebSocket RPC.",
    )
    parser.add_argument("--url", help="node WebSocket RPC URL (env NODEWATCH_WS_URL)")
    parser.add_argument("--timeout", type=float, help="connection timeout in seconds (env NODEWATCH_CONNECTION_TIMEOUT_S)")
    parser.add_argument("--log-level", help="logging level (env NODEWATCH_LOG_LEVEL)")
    parser.add_argument("--zmq-pub", help="also republish hashes on this ZMQ endpoint, e.g. tcp://127.0.0.1:28332")
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> Settings:
    overrides = {
        "ws_url": args.url,
        "connection_timeout_s": args.timeout,
        "log_level": args.log_level,
        "zmq_pub_bind": args.zmq_pub,
    }
    return Settings(**{k: v for k, v in overrides.items() if v is not None})


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, monitor: Monitor) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, monitor.request_stop)
        except (NotImplementedError, RuntimeError, ValueError):
            # no loop signal support (Windows); SIGTERM may not exist either
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(monitor.request_stop))


async def run(settings: Settings, handler: EventHandler) -> None:
    monitor = Monitor(settings, handler)
    _install_signal_handlers(asyncio.get_running_loop(), monitor)
    await monitor.run()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings(args)
    except ValidationError as e:
        print(f"invalid configuration:\n{e}", file=sys.stderr)
        return 2
    setup_logging(settings)

    publisher: Optional[ZmqPublisher] = None
    handler: EventHandler = ConsoleHandler()
    if settings.zmq_pub_bind:
        publisher = ZmqPublisher(settings)
        try:
            publisher.start()
        except zmq.ZMQError as e:
            log.error("Cannot bind ZMQ publisher to %s: %s", settings.zmq_pub_bind, e)
            return 1
        handler = MultiHandler([handler, publisher])

    try:
        asyncio.run(run(settings, handler))
    except MonitorError:
        # already logged where it was detected
        return 1
    finally:
        if publisher is not None:
            publisher.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
