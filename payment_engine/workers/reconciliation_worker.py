"""
Reconciliation background worker.

Runs daily reconciliation of the previous UTC day at a scheduled hour, then
purges webhook deliveries past their retention window.
"""
import argparse
import asyncio
import signal
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from payment_engine.api.container import ServiceContainer
from payment_engine.config import Settings, get_settings
from payment_engine.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_daily_reconciliation(container: ServiceContainer) -> None:
    """Reconcile yesterday's payments and flag the clean ones."""
    logger.info("daily_reconciliation_started")

    report = await container.reconciliation.reconcile_yesterday(mark_reconciled=True)

    logger.info(
        "daily_reconciliation_completed",
        total_processed=report.total_processed,
        reconciled_count=report.reconciled_count,
        discrepancy_count=len(report.discrepancies),
    )
    if report.discrepancies:
        logger.warning(
            "reconciliation_discrepancies_detected",
            discrepancy_count=len(report.discrepancies),
            payment_ids=[d.payment_id for d in report.discrepancies[:50]],
        )

    await container.webhooks.purge_processed(container.settings.webhook_event_retention_days)


def calculate_next_run_time(target_hour: int = 2, now: Optional[datetime] = None) -> float:
    """
    Calculate seconds until next scheduled run.

    Args:
        target_hour: Hour of day to run (24-hour format, UTC)
        now: Current time, defaults to the clock

    Returns:
        float: Seconds until next run
    """
    now = now or datetime.now(timezone.utc)
    next_run = now.replace(hour=target_hour, minute=0, second=0, microsecond=0)

    # If we've passed today's run time, schedule for tomorrow
    if now >= next_run:
        next_run += timedelta(days=1)

    seconds_until = (next_run - now).total_seconds()

    logger.info(
        "reconciliation_next_run_scheduled",
        next_run=next_run.isoformat(),
        seconds_until=seconds_until,
    )
    return seconds_until


async def start_reconciliation_worker(
    target_hour: Optional[int] = None,
    settings: Optional[Settings] = None,
    run_now: bool = False,
) -> None:
    """
    Start the reconciliation worker.

    Args:
        target_hour: Hour of day to run, defaults to ``reconciliation_hour_utc``
        settings: Settings to use, defaults to the environment
        run_now: Reconcile once immediately and exit
    """
    settings = settings or get_settings()
    setup_logging(settings)
    target_hour = settings.reconciliation_hour_utc if target_hour is None else target_hour

    container = ServiceContainer.from_settings(settings)
    await container.startup()
    logger.info("reconciliation_worker_starting", target_hour=target_hour, run_now=run_now)

    stopping = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stopping.set)

    try:
        if run_now:
            await run_daily_reconciliation(container)
            return

        while not stopping.is_set():
            seconds_until = calculate_next_run_time(target_hour)
            try:
                await asyncio.wait_for(stopping.wait(), timeout=seconds_until)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await run_daily_reconciliation(container)
            except Exception as e:
                # Keep the schedule alive; the failed run is recorded
                logger.error("reconciliation_execution_error", error=str(e))
    finally:
        await container.shutdown()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument(
        "--hour", type=int, default=None, help="Hour of day (UTC) to run reconciliation (0-23)"
    )
    parser.add_argument(
        "--now", action="store_true", help="Reconcile yesterday once and exit"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(target_hour=args.hour, run_now=args.now))


if __name__ == "__main__":
    main()
