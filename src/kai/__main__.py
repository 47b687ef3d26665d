"""Entry point: python -m kai"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys

from kai.errors import KaiError
from kai.infrastructure.logger import logger


async def serve(start_all: bool, allow_image_pull: bool) -> None:
    from kai.app import AppContext
    from kai.services.permission import AutoApprove

    context = AppContext(permission=AutoApprove() if allow_image_pull else None)

    # Handle graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await context.start()
        if start_all:
            await context.services.start_all()

        # Wait for shutdown signal
        await shutdown_event.wait()
    except KeyboardInterrupt:
        pass
    finally:
        await context.shutdown()


async def detect() -> None:
    from kai.runtime.selector import RuntimeSelector

    print(json.dumps(await RuntimeSelector().detect_available(), indent=2))


async def setup() -> int:
    from kai.runtime.selector import RuntimeSelector

    result = await RuntimeSelector().setup_bundled(print)
    print(json.dumps(result, indent=2))
    return 0 if result["success"] else 1


async def status() -> None:
    from kai.app import AppContext

    context = AppContext()
    await context.start(monitor=False)
    for item in await context.services.list_statuses():
        health = f" ({item.health})" if item.health else ""
        print(f"{item.display_name:<12} {item.status}{health}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kai", description="Kai container runtime and service manager")
    sub = parser.add_subparsers(dest="command")

    serve_parser = sub.add_parser("serve", help="Select a runtime and keep services healthy (default)")
    serve_parser.add_argument("--start-all", action="store_true", help="Start every service on launch")
    serve_parser.add_argument(
        "--allow-image-pull", action="store_true", help="Approve image downloads without asking"
    )

    sub.add_parser("detect", help="Print which container runtimes are available")
    sub.add_parser("setup", help="Install the bundled runtime for this platform")
    sub.add_parser("status", help="Print service statuses")
    return parser


def run() -> None:
    args = build_parser().parse_args()
    command = args.command or "serve"

    try:
        if command == "serve":
            asyncio.run(serve(getattr(args, "start_all", False), getattr(args, "allow_image_pull", False)))
        elif command == "detect":
            asyncio.run(detect())
        elif command == "setup":
            sys.exit(asyncio.run(setup()))
        elif command == "status":
            asyncio.run(status())
    except KeyboardInterrupt:
        pass
    except KaiError as err:
        logger.error("Command failed", command=command, error=err.message)
        sys.exit(1)


if __name__ == "__main__":
    run()
