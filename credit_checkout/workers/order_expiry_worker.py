"""
Order expiry background worker.

Periodically moves orders that were never paid from ``created`` to
``expired`` so they can no longer be verified.
"""
import argparse
import asyncio
import signal
from typing import Any, Optional

import structlog

from credit_checkout.config import Settings, get_settings
from credit_checkout.core.currency import StaticRateConverter
from credit_checkout.core.order_service import OrderService
from credit_checkout.database.connection import Database
from credit_checkout.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_expiry_pass(database: Database, order_service: OrderService) -> int:
    """
    Expire stale orders once.

    Returns:
        int: Number of orders expired
    """
    logger.info("order_expiry_pass_started")
    async with database.session() as session:
        expired = await order_service.expire_stale_orders(session)
    logger.info("order_expiry_pass_completed", expired=expired)
    return expired


async def start_order_expiry_worker(
    interval_seconds: int = 60,
    settings: Optional[Settings] = None,
    once: bool = False,
) -> None:
    """
    Start the order expiry worker.

    Args:
        interval_seconds: Seconds between passes
        settings: Settings to use (environment settings when omitted)
        once: Run a single pass and exit
    """
    settings = settings or get_settings()
    setup_logging(settings)

    database = Database(settings)
    order_service = OrderService(
        StaticRateConverter.from_settings(settings),
        settings.packages,
        order_ttl_minutes=settings.order_ttl_minutes,
    )

    logger.info(
        "order_expiry_worker_starting",
        interval_seconds=interval_seconds,
        order_ttl_minutes=settings.order_ttl_minutes,
    )

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("order_expiry_worker_shutdown_signal_received", signal=sig)
        running = False

    previous_handlers = {
        sig: signal.signal(sig, signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)
    }

    try:
        await database.init_db()
        while running:
            try:
                await run_expiry_pass(database, order_service)
            except Exception as e:
                logger.error("order_expiry_pass_failed", error=str(e))
                # Keep running; the next pass retries the same orders

            if once:
                break

            # Sleep in short steps so a shutdown signal is noticed promptly
            remaining = interval_seconds
            while remaining > 0 and running:
                step = min(remaining, 1)
                await asyncio.sleep(step)
                remaining -= step
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)
        await database.close()
        logger.info("order_expiry_worker_stopped")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Order expiry worker")
    parser.add_argument(
        "--interval", type=int, default=60, help="Seconds between expiry passes"
    )
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args(argv)

    asyncio.run(start_order_expiry_worker(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
