"""
Outbox publisher background worker.

Continuously polls the outbox table and appends events to the Redis stream.
"""
import asyncio
import signal
from typing import Optional

import structlog
from redis.asyncio import Redis

from payment_engine.config import Settings, get_settings
from payment_engine.core.outbox import OutboxPublisher, RedisStreamEventProducer
from payment_engine.database.connection import close_db, get_session_factory
from payment_engine.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def build_publisher(redis: Redis, settings: Settings) -> OutboxPublisher:
    return OutboxPublisher(
        session_factory=get_session_factory(settings),
        producer=RedisStreamEventProducer(redis, settings.event_stream_name),
        batch_size=100,
        poll_interval_seconds=1.0,
    )


async def start_outbox_publisher(settings: Optional[Settings] = None) -> None:
    """
    Start the outbox publisher worker.

    Runs until SIGINT or SIGTERM.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    logger.info("outbox_publisher_worker_starting", stream=settings.event_stream_name)

    redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    publisher = build_publisher(redis, settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, publisher.stop)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await redis.aclose()
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
