"""
Tests for the background workers: reconciliation scheduling, outbox publishing
and closing abandoned checkouts.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Tuple

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_engine.api.container import ServiceContainer
from payment_engine.core.ledger import HistoryWrite
from payment_engine.core.orchestrator import CHECKOUT_EXPIRED_REASON
from payment_engine.core.outbox import OutboxPublisher
from payment_engine.core.types import HistoryAction, PaymentStatus, ReconciliationReport
from payment_engine.database.models import OutboxEvent, Payment, ReconciliationRun, utcnow
from payment_engine.workers.checkout_expiry_worker import close_expired_checkouts
from payment_engine.workers.reconciliation_worker import (
    calculate_next_run_time,
    run_daily_reconciliation,
)


class RecordingProducer:
    def __init__(self, fail_on: int = 0):
        self.published: List[Tuple[str, Dict[str, Any]]] = []
        self.fail_on = fail_on

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        if self.fail_on and len(self.published) + 1 == self.fail_on:
            raise ConnectionError("stream unavailable")
        self.published.append((topic, payload))


class TestSchedule:
    @pytest.mark.unit
    def test_later_today(self) -> None:
        now = datetime(2024, 5, 1, 0, 30, tzinfo=timezone.utc)
        assert calculate_next_run_time(2, now=now) == 90 * 60

    @pytest.mark.unit
    def test_rolls_to_tomorrow(self) -> None:
        now = datetime(2024, 5, 1, 2, 0, tzinfo=timezone.utc)
        assert calculate_next_run_time(2, now=now) == 24 * 3600


class TestDailyReconciliation:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_runs_and_purges(self, container: ServiceContainer, mocker: Any) -> None:
        purge = mocker.patch.object(container.webhooks, "purge_processed", return_value=0)

        await run_daily_reconciliation(container)

        purge.assert_awaited_once_with(container.settings.webhook_event_retention_days)
        async with container.session_factory() as db:
            runs = (await db.execute(select(ReconciliationRun))).scalars().all()
        assert len(runs) == 1
        assert runs[0].status == "completed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_flags_clean_payments(self, container: ServiceContainer, mocker: Any) -> None:
        reconcile = mocker.patch.object(
            container.reconciliation,
            "reconcile_yesterday",
            return_value=ReconciliationReport(total_processed=3, reconciled_count=3),
        )
        mocker.patch.object(container.webhooks, "purge_processed", return_value=0)

        await run_daily_reconciliation(container)

        reconcile.assert_awaited_once_with(mark_reconciled=True)


class TestOutboxPublisher:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_publishes_in_order(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        create_paid_payment: Any,
    ) -> None:
        payment = await create_paid_payment()
        producer = RecordingProducer()
        publisher = OutboxPublisher(session_factory, producer)

        published = await publisher.process_batch()

        assert published == len(producer.published) > 0
        assert all(p["payment_id"] == payment.id for _, p in producer.published)
        assert await publisher.get_pending_count() == 0
        assert await publisher.process_batch() == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stops_at_first_failure(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        create_payment: Any,
    ) -> None:
        first = await create_payment()
        second = await create_payment()
        producer = RecordingProducer(fail_on=2)
        publisher = OutboxPublisher(session_factory, producer)

        assert await publisher.process_batch() == 1
        assert [p["payment_id"] for _, p in producer.published] == [first.id]

        async with session_factory() as db:
            pending = (
                await db.execute(
                    select(OutboxEvent)
                    .where(OutboxEvent.published == False)  # noqa: E712
                    .order_by(OutboxEvent.id)
                )
            ).scalars().all()
        assert [e.aggregate_id for e in pending] == [second.id]

        producer.fail_on = 0
        assert await publisher.process_batch() == 1
        assert [p["payment_id"] for _, p in producer.published] == [first.id, second.id]
        assert await publisher.get_pending_count() == 0


async def set_intent_expiry(container: ServiceContainer, payment_id: str, expires_at: datetime) -> None:
    async with container.session_factory() as db:
        await db.execute(
            update(Payment).where(Payment.id == payment_id).values(intent_expires_at=expires_at)
        )
        await db.commit()


class TestCheckoutExpiry:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_closes_only_expired_pending_intents(
        self,
        container: ServiceContainer,
        razorpay_gateway: Any,
        create_payment: Any,
        create_paid_payment: Any,
    ) -> None:
        now = utcnow()
        expired = await create_payment()
        live = await create_payment()
        paid = await create_paid_payment()
        await set_intent_expiry(container, expired.id, now - timedelta(minutes=5))
        await set_intent_expiry(container, live.id, now + timedelta(hours=1))
        await set_intent_expiry(container, paid.id, now - timedelta(minutes=5))

        assert await close_expired_checkouts(container) == 1

        closed = await container.ledger.get(expired.id)
        assert closed.status == PaymentStatus.CANCELLED
        assert closed.metadata["cancellation_reason"] == CHECKOUT_EXPIRED_REASON
        assert (await container.ledger.get(live.id)).status == PaymentStatus.PENDING
        assert (await container.ledger.get(paid.id)).status == PaymentStatus.PAID
        assert razorpay_gateway.cancelled == [expired.provider_intent_id]
        assert await close_expired_checkouts(container) == 0

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_claimed_payment_is_skipped(
        self,
        container: ServiceContainer,
        razorpay_gateway: Any,
        create_payment: Any,
        mocker: Any,
    ) -> None:
        """A confirmation that claims the payment after the sweep read it wins."""
        payment = await create_payment()
        await set_intent_expiry(container, payment.id, utcnow() - timedelta(minutes=5))
        [stale] = await container.ledger.find_expired_intents()
        await container.ledger.transition(
            payment.id,
            [PaymentStatus.PENDING],
            PaymentStatus.PROCESSING,
            history=HistoryWrite(action=HistoryAction.PROCESSING),
        )
        mocker.patch.object(container.ledger, "find_expired_intents", return_value=[stale])

        assert await container.orchestrator.expire_abandoned_intents() == []
        assert (await container.ledger.get(payment.id)).status == PaymentStatus.PROCESSING
        assert razorpay_gateway.cancelled == []
