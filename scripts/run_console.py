"""Logs into the console backend and tails realtime events from the command line."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import os
import sys
from pathlib import Path


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--identifier", default=os.getenv("CONSOLE_IDENTIFIER"), help="Login identifier (email).")
    parser.add_argument("--device", action="append", default=[], help="Device id to join as device:<id>.")
    parser.add_argument(
        "--topic",
        action="append",
        default=[],
        help="Realtime topic to print (repeatable). Defaults to device_status.",
    )
    parser.add_argument("--logout", action="store_true", help="Log out before exiting.")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
    from console_runtime import build_runtime  # type: ignore
    from console_runtime.config import get_settings  # type: ignore
    from console_runtime.errors import ConnectionExhaustedError  # type: ignore

    runtime = build_runtime(get_settings())
    try:
        if not await runtime.start():
            identifier = args.identifier or input("Identifier: ")
            secret = os.getenv("CONSOLE_SECRET") or getpass.getpass("Secret: ")
            result = await runtime.session.login(identifier, secret)
            if not result.success:
                print(f"Login failed: {result.error}", file=sys.stderr)
                return 1

        runtime.realtime.on_state_change(
            lambda status: logging.getLogger("console").info(
                "realtime %s (attempt %s)%s",
                status.state.value,
                status.attempt,
                f": {status.error}" if status.error else "",
            )
        )
        for device_id in args.device:
            runtime.realtime.join_channel(f"device:{device_id}")
        for topic in args.topic or ["device_status"]:
            runtime.realtime.subscribe(topic, lambda payload, topic=topic: print(topic, json.dumps(payload)))

        await runtime.realtime.connect()
        await asyncio.Future()  # block until cancelled
    except ConnectionExhaustedError as exc:
        print(f"Realtime unavailable: {exc}", file=sys.stderr)
        return 1
    except asyncio.CancelledError:
        logging.getLogger("console").info("Shutdown requested")
    finally:
        if args.logout:
            await runtime.session.logout()
        await runtime.shutdown()
    return 0


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(repo_root))

    from console_runtime.config import get_settings  # type: ignore

    args = _parse_args()
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        sys.exit(asyncio.run(_run(args)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
