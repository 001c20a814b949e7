"""Command line entry point running the order worker as a long-lived process."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from libs.observability.logging import configure_logging

from .config import get_settings
from .dependencies import build_runtime
from .worker import OrderWorkerLoop

LOGGER = logging.getLogger("order_execution.runner")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Execute pending simulated orders")
    parser.add_argument(
        "--once", action="store_true", help="Process a single batch and exit"
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.batch_limit,
        help="Maximum number of orders claimed per batch (1-200)",
    )
    parser.add_argument(
        "--interval-ms",
        type=int,
        default=settings.interval_ms,
        help="Sleep between batches in milliseconds",
    )
    parser.add_argument(
        "--max-age-ms",
        type=int,
        default=settings.max_age_ms,
        help="Only process orders created at least this long ago",
    )
    return parser.parse_args(argv)


async def _serve(loop_runner: OrderWorkerLoop) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(loop_runner.stop()))
        except NotImplementedError:  # pragma: no cover - platforms without signal support
            pass
    await loop_runner.run_forever()


def run(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    configure_logging("order-execution-worker", settings.log_level)

    runtime = build_runtime(settings)
    loop_runner = OrderWorkerLoop(
        runtime.worker,
        limit=args.limit,
        interval_ms=args.interval_ms,
        max_age_ms=args.max_age_ms,
    )
    try:
        if args.once:
            result = asyncio.run(loop_runner.run_once())
            LOGGER.info("Single batch finished", extra={"result": result.model_dump()})
            return 1 if result.errors else 0
        asyncio.run(_serve(loop_runner))
        return 0
    finally:
        runtime.close()


if __name__ == "__main__":  # pragma: no cover - manual execution helper
    raise SystemExit(run())
