from __future__ import annotations

import argparse
import asyncio
import signal
from typing import Any, Sequence

import structlog

from pglifecycle.infra.lifecycle import install_signal_handlers
from pglifecycle.infra.logging.config import configure_logging
from pglifecycle.infra.runtime import Runtime, create_runtime

LOGGER = structlog.get_logger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pglifecycle",
        description="Listen to or publish PostgreSQL notifications.",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    parser.add_argument("--pretty", action="store_true", help="Human-readable log output")
    sub = parser.add_subparsers(dest="command", required=True)

    listen = sub.add_parser("listen", help="Log every notification on a channel until SIGTERM")
    listen.add_argument("channel")
    listen.add_argument(
        "--shared",
        action="store_true",
        help="Do not take the per-channel advisory lock",
    )
    listen.add_argument("--raw", action="store_true", help="Do not decode payloads as JSON")

    notify = sub.add_parser("notify", help="Publish one notification")
    notify.add_argument("channel")
    notify.add_argument("payload")
    return parser


async def _run_listen(runtime: Runtime, args: argparse.Namespace) -> None:
    stop_requested = asyncio.Event()
    install_signal_handlers(
        runtime.registry,
        signals=(signal.SIGTERM, signal.SIGINT),
        on_signal=lambda _sig: stop_requested.set(),
    )

    def _log_message(message: Any) -> None:
        LOGGER.info("listener.message", channel=args.channel, payload=message)

    await runtime.listen(
        args.channel,
        _log_message,
        exclusive=not args.shared,
        parse_json=not args.raw,
    )
    await stop_requested.wait()


async def _run_notify(runtime: Runtime, args: argparse.Namespace) -> None:
    await runtime.query("SELECT pg_notify($1, $2)", args.channel, args.payload)
    LOGGER.info("notify.sent", channel=args.channel)


async def _main(args: argparse.Namespace) -> None:
    runtime = await create_runtime()
    try:
        if args.command == "listen":
            await _run_listen(runtime, args)
        else:
            await _run_notify(runtime, args)
    finally:
        await runtime.close()


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked via `python -m pglifecycle.main`."""
    args = _build_parser().parse_args(argv)
    configure_logging(args.log_level, pretty=args.pretty or None)
    try:
        asyncio.run(_main(args))
    except KeyboardInterrupt:
        LOGGER.warning("main.interrupted")


if __name__ == "__main__":
    main()
