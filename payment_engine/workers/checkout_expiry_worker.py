"""
Abandoned checkout worker.

Every few minutes cancels PENDING payments whose gateway intent expired
before the customer paid, so they stop counting as open checkouts.
"""
import argparse
import asyncio
import signal
from typing import Optional

import structlog

from payment_engine.api.container import ServiceContainer
from payment_engine.config import Settings, get_settings
from payment_engine.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def close_expired_checkouts(container: ServiceContainer) -> int:
    """Cancel one batch of expired intents. Returns how many were closed."""
    settings = container.settings
    closed = await container.orchestrator.expire_abandoned_intents(
        limit=settings.checkout_expiry_batch_size
    )
    if closed:
        logger.info(
            "expired_checkouts_closed",
            closed_count=len(closed),
            payment_ids=[p.id for p in closed[:50]],
        )
    return len(closed)


async def start_checkout_expiry_worker(
    settings: Optional[Settings] = None,
    run_now: bool = False,
) -> None:
    """
    Start the abandoned checkout worker.

    Args:
        settings: Settings to use, defaults to the environment
        run_now: Close one batch immediately and exit
    """
    settings = settings or get_settings()
    setup_logging(settings)
    interval = settings.checkout_expiry_interval_minutes * 60

    container = ServiceContainer.from_settings(settings)
    await container.startup()
    logger.info("checkout_expiry_worker_starting", interval_seconds=interval, run_now=run_now)

    stopping = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stopping.set)

    try:
        if run_now:
            await close_expired_checkouts(container)
            return

        while not stopping.is_set():
            try:
                await close_expired_checkouts(container)
            except Exception as e:
                logger.error("checkout_expiry_execution_error", error=str(e))

            try:
                await asyncio.wait_for(stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
    finally:
        await container.shutdown()
        logger.info("checkout_expiry_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Abandoned checkout worker")
    parser.add_argument(
        "--now", action="store_true", help="Close one batch of expired checkouts and exit"
    )
    args = parser.parse_args()

    asyncio.run(start_checkout_expiry_worker(run_now=args.now))


if __name__ == "__main__":
    main()
