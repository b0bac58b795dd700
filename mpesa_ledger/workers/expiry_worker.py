"""
Expiry background worker.

Expires unanswered STK pushes on a fixed interval so no request stays SENT
forever when its callback never arrives.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from mpesa_ledger.config import get_settings
from mpesa_ledger.core.expiry import ExpirySweeper
from mpesa_ledger.database.connection import close_db, init_db
from mpesa_ledger.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_expiry_sweep(sweeper: ExpirySweeper) -> int:
    """Run one sweep and log its result."""
    expired = await sweeper.sweep()
    logger.info("expiry_sweep_completed", expired=expired)
    return expired


async def start_expiry_worker(
    interval_seconds: Optional[float] = None,
    sweeper: Optional[ExpirySweeper] = None,
) -> None:
    """
    Start the expiry worker.

    Args:
        interval_seconds: Seconds between sweeps (defaults to settings)
        sweeper: Optional sweeper instance
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.expiry_sweep_interval_seconds
    sweeper = sweeper or ExpirySweeper()

    logger.info(
        "expiry_worker_starting",
        interval_seconds=interval,
        timeout_seconds=settings.stk_push_expiry_seconds,
    )

    stop = asyncio.Event()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("expiry_worker_shutdown_signal_received", signal=sig)
        stop.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    await init_db()
    try:
        while not stop.is_set():
            try:
                await run_expiry_sweep(sweeper)
            except Exception as e:
                # a failed sweep is retried on the next tick
                logger.error("expiry_sweep_failed", error=str(e))

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    finally:
        await close_db()
        logger.info("expiry_worker_stopped")


def main() -> None:
    """Console entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="STK push expiry worker")
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between sweeps (default: EXPIRY_SWEEP_INTERVAL_SECONDS)",
    )
    parser.add_argument(
        "--once", action="store_true", help="Run a single sweep and exit"
    )
    args = parser.parse_args()

    if args.once:
        asyncio.run(_sweep_once())
    else:
        asyncio.run(start_expiry_worker(interval_seconds=args.interval))


async def _sweep_once() -> None:
    setup_logging()
    await init_db()
    try:
        await run_expiry_sweep(ExpirySweeper())
    finally:
        await close_db()


if __name__ == "__main__":
    main()
