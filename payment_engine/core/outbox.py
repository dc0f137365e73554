"""
Transactional outbox relay and event producers.

Ledger writes put events into ``outbox_events`` in the same transaction as
the change they announce. ``OutboxPublisher`` relays them at-least-once to
an ``EventProducer`` and marks them published.
"""
import asyncio
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

import structlog
from redis.asyncio import Redis
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_engine.database.models import OutboxEvent, utcnow
from payment_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class EventTopic:
    """Topics published by the engine."""

    INTENT_CREATED = "payment.intent.created"
    PAYMENT_SUCCESS = "payment.success"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_CANCELLED = "payment.cancelled"
    PAYMENT_RETRY = "payment.retry"
    PAYMENT_REFUNDED = "payment.refunded"
    REFUND_FAILED = "payment.refund_failed"
    ORDER_PAYMENT_UPDATED = "order.payment.updated"


def json_safe(value: Any) -> Any:
    """Convert Decimals, datetimes and enums into JSON-serialisable values."""
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class EventProducer(Protocol):
    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingEventProducer:
    """Producer that only logs events. Used when no broker is configured."""

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        logger.info(
            "event_published_to_log",
            topic=topic,
            payment_id=payload.get("payment_id"),
        )


class RedisStreamEventProducer:
    """Appends events to a Redis stream with XADD."""

    def __init__(self, redis: Redis, stream: str, maxlen: int = 100_000):
        self.redis = redis
        self.stream = stream
        self.maxlen = maxlen

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        await self.redis.xadd(
            self.stream,
            {"topic": topic, "payload": json.dumps(json_safe(payload))},
            maxlen=self.maxlen,
            approximate=True,
        )


class OutboxPublisher:
    """
    Publishes events from the outbox table to the event producer.

    At-least-once delivery:
    1. Read unpublished events from outbox
    2. Publish to the producer
    3. Mark as published in database
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        producer: Optional[EventProducer] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
    ):
        """
        Initialize outbox publisher.

        Args:
            session_factory: Session factory of the ledger database
            producer: Event producer (logs events when omitted)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval
        """
        self.session_factory = session_factory
        self.producer = producer or LoggingEventProducer()
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published == False)  # noqa: E712
            .order_by(OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Publish a single event.

        Returns:
            bool: True if published successfully, False otherwise
        """
        try:
            payload = dict(event.payload)
            payload.setdefault("event_id", event.id)
            await self.producer.publish(event.topic, payload)
        except Exception as e:
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                topic=event.topic,
                error=str(e),
            )
            return False

        metrics.record_outbox_event_published(event.topic)
        logger.debug(
            "outbox_event_published",
            event_id=event.id,
            topic=event.topic,
            aggregate_id=event.aggregate_id,
        )
        return True

    async def _mark_as_published(self, db: AsyncSession, event_ids: List[int]) -> None:
        if not event_ids:
            return

        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(published=True, published_at=utcnow())
        )
        await db.execute(stmt)
        await db.commit()

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Publishing stops at the first failure so that per-payment ordering is
        preserved; the failed event and everything after it are retried on the
        next batch.

        Returns:
            int: Number of events published
        """
        async with self.session_factory() as db:
            events = await self._fetch_unpublished_events(db)
            if not events:
                return 0

            published_ids = []
            for event in events:
                if not await self._publish_event(event):
                    break
                published_ids.append(event.id)

            await self._mark_as_published(db, published_ids)

            logger.info(
                "outbox_batch_processed",
                total=len(events),
                published=len(published_ids),
            )
            return len(published_ids)

    async def start(self) -> None:
        """
        Start the outbox publisher loop.

        Continuously polls for unpublished events and publishes them.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    published_count = 0

                if published_count == 0:
                    await asyncio.sleep(self.poll_interval_seconds)
                else:
                    # More events may be waiting
                    await asyncio.sleep(0)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        async with self.session_factory() as db:
            stmt = select(func.count(OutboxEvent.id)).where(
                OutboxEvent.published == False  # noqa: E712
            )
            return int((await db.execute(stmt)).scalar_one())
