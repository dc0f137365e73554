"""
Tests for the canonical mapper.

Gateway payloads here mirror the shapes the Stripe and Razorpay APIs return.
"""
from decimal import Decimal

import pytest

from payment_engine.core.types import PaymentProvider, PaymentStatus, RefundStatus
from payment_engine.integrations.mapper import (
    WebhookKind,
    from_razorpay_order,
    from_razorpay_payment,
    from_stripe_charge,
    from_stripe_payment_intent,
    razorpay_event_to_webhook,
    razorpay_payment_status_to_internal,
    stripe_event_to_webhook,
    stripe_intent_status_to_internal,
    to_major_units,
    to_minor_units,
)


def stripe_intent(**overrides):
    intent = {
        "id": "pi_123",
        "object": "payment_intent",
        "amount": 299900,
        "currency": "inr",
        "status": "succeeded",
        "latest_charge": "ch_123",
        "payment_method_types": ["card"],
        "metadata": {"order_id": "ord_1001"},
        "created": 1700000000,
    }
    intent.update(overrides)
    return intent


def razorpay_payment(**overrides):
    payment = {
        "id": "pay_123",
        "entity": "payment",
        "amount": 299900,
        "currency": "INR",
        "status": "captured",
        "order_id": "order_123",
        "method": "upi",
        "captured": True,
        "amount_refunded": 0,
        "notes": [],
        "created_at": 1700000000,
    }
    payment.update(overrides)
    return payment


class TestAmountConversion:
    """Minor/major unit conversion."""

    @pytest.mark.unit
    @pytest.mark.parametrize("minor", [0, 1, 99, 100, 299900, 123456789])
    def test_minor_units_round_trip(self, minor: int) -> None:
        assert to_minor_units(to_major_units(minor)) == minor

    @pytest.mark.unit
    def test_major_units_have_two_places(self) -> None:
        assert to_major_units(299900) == Decimal("2999.00")
        assert str(to_major_units(5)) == "0.05"

    @pytest.mark.unit
    def test_minor_units_round_half_up(self) -> None:
        assert to_minor_units(Decimal("10.005")) == 1001
        assert to_minor_units("49.99") == 4999


class TestStatusTables:
    """Explicit provider status tables with a logged default."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("succeeded", PaymentStatus.PAID),
            ("processing", PaymentStatus.PROCESSING),
            ("requires_capture", PaymentStatus.PROCESSING),
            ("requires_payment_method", PaymentStatus.PENDING),
            ("canceled", PaymentStatus.CANCELLED),
        ],
    )
    def test_stripe_intent_statuses(self, raw: str, expected: PaymentStatus) -> None:
        assert stripe_intent_status_to_internal(raw) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("captured", PaymentStatus.PAID),
            ("authorized", PaymentStatus.PROCESSING),
            ("created", PaymentStatus.PENDING),
            ("failed", PaymentStatus.FAILED),
            ("refunded", PaymentStatus.REFUNDED),
        ],
    )
    def test_razorpay_payment_statuses(self, raw: str, expected: PaymentStatus) -> None:
        assert razorpay_payment_status_to_internal(raw) == expected

    @pytest.mark.unit
    def test_unknown_status_defaults_to_pending(self) -> None:
        assert stripe_intent_status_to_internal("brand_new_state") == PaymentStatus.PENDING
        assert razorpay_payment_status_to_internal(None) == PaymentStatus.PENDING


class TestStripeMapping:
    @pytest.mark.unit
    def test_payment_intent_uses_latest_charge_as_transaction(self) -> None:
        payment = from_stripe_payment_intent(stripe_intent())

        assert payment.provider == PaymentProvider.STRIPE
        assert payment.provider_payment_id == "ch_123"
        assert payment.provider_intent_id == "pi_123"
        assert payment.amount == Decimal("2999.00")
        assert payment.currency == "INR"
        assert payment.status == PaymentStatus.PAID
        assert payment.captured is True

    @pytest.mark.unit
    def test_payment_intent_without_charge_falls_back_to_intent_id(self) -> None:
        payment = from_stripe_payment_intent(
            stripe_intent(status="requires_payment_method", latest_charge=None)
        )

        assert payment.provider_payment_id == "pi_123"
        assert payment.status == PaymentStatus.PENDING

    @pytest.mark.unit
    def test_expanded_charge_object(self) -> None:
        payment = from_stripe_payment_intent(stripe_intent(latest_charge={"id": "ch_999"}))
        assert payment.provider_payment_id == "ch_999"

    @pytest.mark.unit
    def test_expanded_refunded_charge_sets_refunded_total(self) -> None:
        payment = from_stripe_payment_intent(
            stripe_intent(
                latest_charge={"id": "ch_999", "amount_refunded": 99900, "refunded": False}
            )
        )

        assert payment.amount_refunded == Decimal("999.00")
        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "status,kind",
        [
            ("succeeded", WebhookKind.REFUND_PROCESSED),
            ("failed", WebhookKind.REFUND_FAILED),
            ("canceled", WebhookKind.REFUND_FAILED),
            ("pending", WebhookKind.IGNORED),
        ],
    )
    def test_refund_update_kind_follows_refund_status(self, status: str, kind: WebhookKind) -> None:
        webhook = stripe_event_to_webhook(
            {
                "id": "evt_re",
                "type": "refund.updated",
                "data": {
                    "object": {
                        "id": "re_1",
                        "amount": 40000,
                        "currency": "usd",
                        "status": status,
                        "charge": "ch_123",
                        "payment_intent": "pi_123",
                    }
                },
            }
        )

        assert webhook.kind == kind
        assert webhook.refund.provider_refund_id == "re_1"

    @pytest.mark.unit
    def test_partially_refunded_charge(self) -> None:
        charge = {
            "id": "ch_123",
            "amount": 100000,
            "amount_refunded": 50000,
            "currency": "usd",
            "status": "succeeded",
            "captured": True,
            "payment_intent": "pi_123",
        }

        payment = from_stripe_charge(charge)

        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
        assert payment.amount_refunded == Decimal("500.00")

    @pytest.mark.unit
    def test_charge_refunded_event_uses_newest_refund(self) -> None:
        event = {
            "id": "evt_1",
            "type": "charge.refunded",
            "data": {
                "object": {
                    "id": "ch_123",
                    "amount": 100000,
                    "amount_refunded": 100000,
                    "currency": "usd",
                    "status": "succeeded",
                    "payment_intent": "pi_123",
                    "refunds": {
                        "data": [
                            {
                                "id": "re_2",
                                "amount": 40000,
                                "currency": "usd",
                                "status": "succeeded",
                                "charge": "ch_123",
                                "payment_intent": "pi_123",
                            },
                            {
                                "id": "re_1",
                                "amount": 60000,
                                "currency": "usd",
                                "status": "succeeded",
                                "charge": "ch_123",
                                "payment_intent": "pi_123",
                            },
                        ]
                    },
                }
            },
        }

        webhook = stripe_event_to_webhook(event)

        assert webhook.kind == WebhookKind.REFUND_PROCESSED
        assert webhook.refund.provider_refund_id == "re_2"
        assert webhook.refund.amount == Decimal("400.00")
        assert webhook.refund.status == RefundStatus.PROCESSED
        assert webhook.payment.status == PaymentStatus.REFUNDED

    @pytest.mark.unit
    def test_unhandled_event_is_ignored(self) -> None:
        webhook = stripe_event_to_webhook(
            {"id": "evt_2", "type": "customer.created", "data": {"object": {}}}
        )
        assert webhook.kind == WebhookKind.IGNORED
        assert webhook.payment is None


class TestRazorpayMapping:
    @pytest.mark.unit
    def test_payment_maps_order_as_intent(self) -> None:
        payment = from_razorpay_payment(razorpay_payment())

        assert payment.provider == PaymentProvider.RAZORPAY
        assert payment.provider_payment_id == "pay_123"
        assert payment.provider_intent_id == "order_123"
        assert payment.payment_method == "UPI"
        assert payment.metadata == {}
        assert payment.status == PaymentStatus.PAID

    @pytest.mark.unit
    def test_failed_payment_keeps_error_description(self) -> None:
        payment = from_razorpay_payment(
            razorpay_payment(status="failed", captured=False, error_description="Bank declined")
        )
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "Bank declined"

    @pytest.mark.unit
    def test_order_amounts(self) -> None:
        order = from_razorpay_order(
            {
                "id": "order_123",
                "amount": 299900,
                "amount_paid": 0,
                "amount_due": 299900,
                "currency": "INR",
                "status": "attempted",
                "attempts": 2,
            }
        )
        assert order.amount_due == Decimal("2999.00")
        assert order.status == PaymentStatus.PENDING
        assert order.attempts == 2

    @pytest.mark.unit
    def test_payment_captured_event(self) -> None:
        webhook = razorpay_event_to_webhook(
            {"event": "payment.captured", "payload": {"payment": {"entity": razorpay_payment()}}},
            "evt_rzp_1",
        )
        assert webhook.kind == WebhookKind.PAYMENT_SUCCEEDED
        assert webhook.event_id == "evt_rzp_1"
        assert webhook.payment.provider_payment_id == "pay_123"

    @pytest.mark.unit
    def test_refund_processed_event_carries_order(self) -> None:
        webhook = razorpay_event_to_webhook(
            {
                "event": "refund.processed",
                "payload": {
                    "refund": {
                        "entity": {
                            "id": "rfnd_1",
                            "amount": 50000,
                            "currency": "INR",
                            "payment_id": "pay_123",
                            "status": "processed",
                            "notes": {"reason": "Item returned"},
                        }
                    },
                    "payment": {"entity": razorpay_payment(amount_refunded=50000)},
                },
            },
            "evt_rzp_2",
        )
        assert webhook.kind == WebhookKind.REFUND_PROCESSED
        assert webhook.refund.provider_intent_id == "order_123"
        assert webhook.refund.reason == "Item returned"
        assert webhook.payment.status == PaymentStatus.PARTIALLY_REFUNDED

    @pytest.mark.unit
    def test_refund_failed_event(self) -> None:
        webhook = razorpay_event_to_webhook(
            {
                "event": "refund.failed",
                "payload": {
                    "refund": {
                        "entity": {
                            "id": "rfnd_2",
                            "amount": 50000,
                            "currency": "INR",
                            "payment_id": "pay_123",
                            "status": "failed",
                        }
                    }
                },
            },
            "evt_rzp_4",
        )
        assert webhook.kind == WebhookKind.REFUND_FAILED
        assert webhook.refund.status == RefundStatus.FAILED
        assert webhook.payment is None

    @pytest.mark.unit
    def test_refund_event_without_refund_entity_is_malformed(self) -> None:
        with pytest.raises(KeyError):
            razorpay_event_to_webhook({"event": "refund.processed", "payload": {}}, "evt_rzp_3")
