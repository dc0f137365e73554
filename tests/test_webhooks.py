"""
Tests for webhook verification, deduplication and dispatch.
"""
import json
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Tuple

import pytest
from sqlalchemy import select

from payment_engine.api.container import ServiceContainer
from payment_engine.core.errors import PaymentValidationError, WebhookVerificationError
from payment_engine.core.outbox import EventTopic
from payment_engine.core.types import PaymentProvider, PaymentStatus, RefundStatus
from payment_engine.database.models import OutboxEvent, WebhookEvent, utcnow
from payment_engine.integrations.mapper import to_minor_units

from tests.doubles import razorpay_webhook_signature, stripe_signature_header


def stripe_delivery(event_id: str, event_type: str, obj: Dict[str, Any]) -> Tuple[bytes, Dict[str, str]]:
    payload = json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()
    return payload, {"Stripe-Signature": stripe_signature_header(payload)}


def stripe_intent_object(payment: Any, status: str = "succeeded", **extra: Any) -> Dict[str, Any]:
    obj = {
        "id": payment.provider_intent_id,
        "object": "payment_intent",
        "amount": to_minor_units(payment.amount),
        "currency": payment.currency.lower(),
        "status": status,
        "latest_charge": "ch_webhook",
        "payment_method_types": ["card"],
    }
    obj.update(extra)
    return obj


def razorpay_delivery(
    event_id: str, event_type: str, payload: Dict[str, Any]
) -> Tuple[bytes, Dict[str, str]]:
    body = json.dumps({"entity": "event", "event": event_type, "payload": payload}).encode()
    return body, {
        "X-Razorpay-Signature": razorpay_webhook_signature(body),
        "X-Razorpay-Event-Id": event_id,
    }


def razorpay_payment_entity(payment: Any, status: str = "captured", **extra: Any) -> Dict[str, Any]:
    entity = {
        "id": "pay_webhook",
        "entity": "payment",
        "amount": to_minor_units(payment.amount),
        "currency": payment.currency,
        "status": status,
        "order_id": payment.provider_intent_id,
        "method": "upi",
        "captured": status == "captured",
        "notes": [],
    }
    entity.update(extra)
    return entity


async def outbox_topics(container: ServiceContainer, payment_id: str) -> List[str]:
    async with container.session_factory() as db:
        result = await db.execute(
            select(OutboxEvent.topic).where(OutboxEvent.aggregate_id == payment_id)
        )
        return list(result.scalars().all())


async def webhook_rows(container: ServiceContainer) -> List[WebhookEvent]:
    async with container.session_factory() as db:
        result = await db.execute(select(WebhookEvent).order_by(WebhookEvent.id))
        return list(result.scalars().all())


class TestWebhookVerification:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_signature_is_rejected_without_mutation(
        self, container: ServiceContainer, create_payment: Any
    ) -> None:
        payment = await create_payment(provider=PaymentProvider.STRIPE, currency="USD")
        payload, _ = stripe_delivery(
            "evt_forged", "payment_intent.succeeded", stripe_intent_object(payment)
        )

        with pytest.raises(WebhookVerificationError, match="Invalid webhook signature"):
            await container.webhooks.handle(
                "stripe", payload, {"Stripe-Signature": "t=1,v1=deadbeef"}
            )

        assert (await container.ledger.get(payment.id)).status == PaymentStatus.PENDING
        assert await outbox_topics(container, payment.id) == [EventTopic.INTENT_CREATED]
        assert await webhook_rows(container) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_signature(
        self, container: ServiceContainer, create_payment: Any
    ) -> None:
        payment = await create_payment()
        payload, _ = razorpay_delivery(
            "evt_1",
            "payment.captured",
            {"payment": {"entity": razorpay_payment_entity(payment)}},
        )

        with pytest.raises(WebhookVerificationError):
            await container.webhooks.handle("razorpay", payload, {})

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_tampered_body(self, container: ServiceContainer, create_payment: Any) -> None:
        payment = await create_payment()
        payload, headers = razorpay_delivery(
            "evt_1",
            "payment.captured",
            {"payment": {"entity": razorpay_payment_entity(payment)}},
        )

        with pytest.raises(WebhookVerificationError):
            await container.webhooks.handle("razorpay", payload + b" ", headers)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_provider(self, container: ServiceContainer) -> None:
        with pytest.raises(PaymentValidationError):
            await container.webhooks.handle("paypal", b"{}", {})


class TestWebhookDispatch:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stripe_payment_succeeded(
        self, container: ServiceContainer, create_payment: Any
    ) -> None:
        payment = await create_payment(provider=PaymentProvider.STRIPE, currency="USD")
        payload, headers = stripe_delivery(
            "evt_ok", "payment_intent.succeeded", stripe_intent_object(payment)
        )

        result = await container.webhooks.handle("stripe", payload, headers)

        assert result == {"status": "processed", "event_id": "evt_ok"}
        record = await container.ledger.get(payment.id)
        assert record.status == PaymentStatus.PAID
        assert record.provider_transaction_id == "ch_webhook"
        rows = await webhook_rows(container)
        assert [(r.event_id, r.status) for r in rows] == [("evt_ok", "processed")]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redelivery_is_a_duplicate(
        self, container: ServiceContainer, create_payment: Any
    ) -> None:
        payment = await create_payment()
        payload, headers = razorpay_delivery(
            "evt_dup",
            "payment.captured",
            {"payment": {"entity": razorpay_payment_entity(payment)}},
        )

        first = await container.webhooks.handle("razorpay", payload, headers)
        second = await container.webhooks.handle("razorpay", payload, headers)

        assert first["status"] == "processed"
        assert second["status"] == "duplicate"
        topics = await outbox_topics(container, payment.id)
        assert topics.count(EventTopic.PAYMENT_SUCCESS) == 1
        assert topics.count(EventTopic.ORDER_PAYMENT_UPDATED) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_distinct_event_for_settled_payment_changes_nothing(
        self, container: ServiceContainer, create_payment: Any
    ) -> None:
        payment = await create_payment()
        entity = {"payment": {"entity": razorpay_payment_entity(payment)}}

        await container.webhooks.handle("razorpay", *razorpay_delivery("evt_a", "payment.captured", entity))
        result = await container.webhooks.handle("razorpay", *razorpay_delivery("evt_b", "order.paid", entity))

        assert result["status"] == "processed"
        topics = await outbox_topics(container, payment.id)
        assert topics.count(EventTopic.PAYMENT_SUCCESS) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_razorpay_payment_failed(
        self, container: ServiceContainer, create_payment: Any
    ) -> None:
        payment = await create_payment()
        payload, headers = razorpay_delivery(
            "evt_fail",
            "payment.failed",
            {
                "payment": {
                    "entity": razorpay_payment_entity(
                        payment, status="failed", error_description="Payment declined by bank"
                    )
                }
            },
        )

        await container.webhooks.handle("razorpay", payload, headers)

        record = await container.ledger.get(payment.id)
        assert record.status == PaymentStatus.FAILED
        assert record.failure_reason == "Payment declined by bank"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_attempt_is_not_recorded_as_collected(
        self, container: ServiceContainer, create_payment: Any
    ) -> None:
        payment = await create_payment()
        payload, headers = razorpay_delivery(
            "evt_fail_retry",
            "payment.failed",
            {"payment": {"entity": razorpay_payment_entity(payment, status="failed")}},
        )

        await container.webhooks.handle("razorpay", payload, headers)

        record = await container.ledger.get(payment.id)
        assert record.status == PaymentStatus.FAILED
        assert record.provider_transaction_id is None
        assert record.metadata["failed_attempt_id"] == "pay_webhook"
        history = await container.ledger.get_history(payment.id)
        assert history[-1].transaction_id == "pay_webhook"

        retried = await container.orchestrator.retry_failed_payment(payment.id)
        assert retried.status == PaymentStatus.PENDING
        assert retried.provider_transaction_id is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stripe_payment_cancelled(
        self, container: ServiceContainer, create_payment: Any
    ) -> None:
        payment = await create_payment(provider=PaymentProvider.STRIPE, currency="USD")
        payload, headers = stripe_delivery(
            "evt_cancel",
            "payment_intent.canceled",
            stripe_intent_object(payment, status="canceled", latest_charge=None),
        )

        await container.webhooks.handle("stripe", payload, headers)

        assert (await container.ledger.get(payment.id)).status == PaymentStatus.CANCELLED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_razorpay_refund_processed(
        self, container: ServiceContainer, create_paid_payment: Any
    ) -> None:
        payment = await create_paid_payment(amount="1000.00", transaction_id="pay_webhook")
        payload, headers = razorpay_delivery(
            "evt_refund",
            "refund.processed",
            {
                "refund": {
                    "entity": {
                        "id": "rfnd_dash_1",
                        "amount": 30000,
                        "currency": "INR",
                        "payment_id": "pay_webhook",
                        "status": "processed",
                        "notes": {"reason": "Goodwill"},
                    }
                },
                "payment": {
                    "entity": razorpay_payment_entity(payment, amount_refunded=30000)
                },
            },
        )

        await container.webhooks.handle("razorpay", payload, headers)

        record = await container.ledger.get(payment.id)
        assert record.status == PaymentStatus.PARTIALLY_REFUNDED
        assert record.refunded_amount == Decimal("300.00")
        refunds = await container.refunds.list_refunds(payment.id)
        assert [r.provider_refund_id for r in refunds] == ["rfnd_dash_1"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stripe_refund_failure_marks_refund_failed(
        self, container: ServiceContainer, stripe_gateway: Any, create_paid_payment: Any
    ) -> None:
        """The refund row fails; the payment keeps its refunded total for reconciliation."""
        payment = await create_paid_payment(
            amount="80.00", provider=PaymentProvider.STRIPE, transaction_id="ch_webhook"
        )
        stripe_gateway.refund_status = RefundStatus.PENDING
        _, refund = await container.refunds.refund_payment(
            payment.id, amount="20.00", reason="Damaged"
        )
        assert refund.status == RefundStatus.PENDING

        payload, headers = stripe_delivery(
            "evt_refund_failed",
            "refund.updated",
            {
                "id": refund.provider_refund_id,
                "object": "refund",
                "amount": 2000,
                "currency": payment.currency.lower(),
                "charge": "ch_webhook",
                "payment_intent": payment.provider_intent_id,
                "status": "failed",
            },
        )

        result = await container.webhooks.handle("stripe", payload, headers)

        assert result["status"] == "processed"
        failed = await container.ledger.find_refund_by_provider_id(refund.provider_refund_id)
        assert failed.status == RefundStatus.FAILED
        record = await container.ledger.get(payment.id)
        assert record.refunded_amount == Decimal("20.00")
        assert EventTopic.REFUND_FAILED in await outbox_topics(container, payment.id)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_ignored(self, container: ServiceContainer) -> None:
        payload, headers = stripe_delivery("evt_cust", "customer.created", {"id": "cus_1"})

        result = await container.webhooks.handle("stripe", payload, headers)

        assert result == {"status": "ignored", "event_id": "evt_cust"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_delivery_can_be_redelivered(
        self, container: ServiceContainer, create_payment: Any, mocker: Any
    ) -> None:
        payment = await create_payment()
        payload, headers = razorpay_delivery(
            "evt_retry",
            "payment.captured",
            {"payment": {"entity": razorpay_payment_entity(payment)}},
        )
        original = container.orchestrator.apply_gateway_success
        calls = []

        async def flaky(*args: Any, **kwargs: Any) -> Any:
            calls.append(args)
            if len(calls) == 1:
                raise RuntimeError("database unavailable")
            return await original(*args, **kwargs)

        mocker.patch.object(container.orchestrator, "apply_gateway_success", side_effect=flaky)

        with pytest.raises(RuntimeError):
            await container.webhooks.handle("razorpay", payload, headers)
        assert [r.status for r in await webhook_rows(container)] == ["failed"]

        result = await container.webhooks.handle("razorpay", payload, headers)

        assert result["status"] == "processed"
        assert (await container.ledger.get(payment.id)).status == PaymentStatus.PAID

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_abandoned_claim_is_taken_over_after_lease(
        self, container: ServiceContainer, create_payment: Any
    ) -> None:
        payment = await create_payment()
        async with container.session_factory() as db:
            db.add(
                WebhookEvent(
                    provider="razorpay",
                    event_id="evt_crash",
                    event_type="payment.captured",
                    status="processing",
                    received_at=utcnow() - timedelta(minutes=10),
                )
            )
            await db.commit()
        payload, headers = razorpay_delivery(
            "evt_crash",
            "payment.captured",
            {"payment": {"entity": razorpay_payment_entity(payment)}},
        )

        result = await container.webhooks.handle("razorpay", payload, headers)

        assert result["status"] == "processed"
        assert (await container.ledger.get(payment.id)).status == PaymentStatus.PAID
        assert [r.status for r in await webhook_rows(container)] == ["processed"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_claim_within_lease_is_a_duplicate(
        self, container: ServiceContainer, create_payment: Any
    ) -> None:
        payment = await create_payment()
        async with container.session_factory() as db:
            db.add(
                WebhookEvent(
                    provider="razorpay",
                    event_id="evt_inflight",
                    event_type="payment.captured",
                    status="processing",
                )
            )
            await db.commit()
        payload, headers = razorpay_delivery(
            "evt_inflight",
            "payment.captured",
            {"payment": {"entity": razorpay_payment_entity(payment)}},
        )

        result = await container.webhooks.handle("razorpay", payload, headers)

        assert result["status"] == "duplicate"
        assert (await container.ledger.get(payment.id)).status == PaymentStatus.PENDING

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_purge_processed_events(
        self, container: ServiceContainer, create_payment: Any
    ) -> None:
        payment = await create_payment()
        await container.webhooks.handle(
            "razorpay",
            *razorpay_delivery(
                "evt_old", "payment.captured", {"payment": {"entity": razorpay_payment_entity(payment)}}
            ),
        )

        assert await container.webhooks.purge_processed(retention_days=1) == 0
        assert await container.webhooks.purge_processed(retention_days=0) == 1
        assert await webhook_rows(container) == []
