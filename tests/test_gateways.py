"""
Tests for the gateway adapters.

SDK calls are mocked; retry, circuit breaking, error classification and
signature checks run for real.
"""
import json
import time
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import pytest
import stripe
from razorpay.errors import BadRequestError, ServerError

from payment_engine.core.errors import GatewayError, GatewayErrorKind, WebhookVerificationError
from payment_engine.core.types import PaymentStatus, RefundStatus
from payment_engine.integrations.base import CircuitBreaker, header_value
from payment_engine.integrations.mapper import WebhookKind
from payment_engine.integrations.razorpay_client import RazorpayGateway
from payment_engine.integrations.stripe_client import StripeGateway

from tests.doubles import (
    RAZORPAY_KEY_ID,
    RAZORPAY_KEY_SECRET,
    RAZORPAY_WEBHOOK_SECRET,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    razorpay_checkout_signature,
    razorpay_webhook_signature,
    stripe_signature_header,
)


@pytest.fixture
def razorpay_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def razorpay(razorpay_client: MagicMock) -> RazorpayGateway:
    return RazorpayGateway(
        key_id=RAZORPAY_KEY_ID,
        key_secret=RAZORPAY_KEY_SECRET,
        webhook_secret=RAZORPAY_WEBHOOK_SECRET,
        client=razorpay_client,
        retry_attempts=3,
        retry_backoff=0,
    )


@pytest.fixture
def stripe_gateway() -> StripeGateway:
    return StripeGateway(
        secret_key=STRIPE_SECRET_KEY,
        webhook_secret=STRIPE_WEBHOOK_SECRET,
        api_version="2024-06-20",
        retry_attempts=2,
        retry_backoff=0,
    )


def razorpay_payment(**overrides: Any) -> dict:
    payment = {
        "id": "pay_1",
        "amount": 100000,
        "currency": "INR",
        "status": "captured",
        "order_id": "order_1",
        "method": "card",
        "captured": True,
        "created_at": 1700000000,
    }
    payment.update(overrides)
    return payment


class TestCircuitBreaker:
    @pytest.mark.unit
    def test_opens_after_threshold(self) -> None:
        breaker = CircuitBreaker("test", failure_threshold=2, timeout=60)

        breaker.on_failure()
        assert breaker.allow()
        breaker.on_failure()

        assert breaker.state == "open"
        assert not breaker.allow()

    @pytest.mark.unit
    def test_half_open_after_timeout_then_closes(self) -> None:
        breaker = CircuitBreaker("test", failure_threshold=1, timeout=60, success_threshold=2)
        breaker.on_failure()
        breaker.last_failure_time = time.monotonic() - 61

        assert breaker.allow()
        assert breaker.state == "half_open"
        breaker.on_success()
        breaker.on_success()
        assert breaker.state == "closed"

    @pytest.mark.unit
    def test_failure_while_half_open_reopens(self) -> None:
        breaker = CircuitBreaker("test", failure_threshold=5, timeout=0)
        breaker.state = "half_open"
        breaker.on_failure()
        assert breaker.state == "open"


class TestRazorpayGateway:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_order_in_minor_units(
        self, razorpay: RazorpayGateway, razorpay_client: MagicMock
    ) -> None:
        razorpay_client.order.create.return_value = {"id": "order_1", "status": "created"}

        intent = await razorpay.create_intent(
            Decimal("2999.00"), "inr", metadata={"order_id": "ord_1001"}, idempotency_key="k1"
        )

        assert intent.provider_intent_id == "order_1"
        data = razorpay_client.order.create.call_args.kwargs["data"]
        assert data["amount"] == 299900
        assert data["currency"] == "INR"
        assert data["receipt"] == "order_ord_1001"
        assert data["notes"]["idempotency_key"] == "k1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retrieve_prefers_captured_attempt(
        self, razorpay: RazorpayGateway, razorpay_client: MagicMock
    ) -> None:
        razorpay_client.order.payments.return_value = {
            "items": [
                razorpay_payment(id="pay_failed", status="failed", created_at=1700000100),
                razorpay_payment(id="pay_ok"),
            ]
        }

        payment = await razorpay.retrieve_payment("order_1")

        assert payment.provider_payment_id == "pay_ok"
        assert payment.status == PaymentStatus.PAID

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retrieve_rejects_payment_of_other_order(
        self, razorpay: RazorpayGateway, razorpay_client: MagicMock
    ) -> None:
        razorpay_client.payment.fetch.return_value = razorpay_payment(order_id="order_other")

        with pytest.raises(GatewayError) as exc_info:
            await razorpay.retrieve_payment("order_1", "pay_1")
        assert exc_info.value.kind == GatewayErrorKind.INVALID_REQUEST

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retrieve_unpaid_order(
        self, razorpay: RazorpayGateway, razorpay_client: MagicMock
    ) -> None:
        razorpay_client.order.payments.return_value = {"items": []}
        razorpay_client.order.fetch.return_value = {
            "id": "order_1",
            "amount": 100000,
            "currency": "INR",
            "status": "created",
        }

        payment = await razorpay.retrieve_payment("order_1")

        assert payment.status == PaymentStatus.PENDING
        assert payment.provider_payment_id == "order_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund(self, razorpay: RazorpayGateway, razorpay_client: MagicMock) -> None:
        razorpay_client.payment.refund.return_value = {
            "id": "rfnd_1",
            "amount": 50000,
            "currency": "INR",
            "payment_id": "pay_1",
            "status": "processed",
        }

        refund = await razorpay.create_refund(
            "order_1", "pay_1", Decimal("500.00"), "INR", reason="Item returned"
        )

        assert refund.status == RefundStatus.PROCESSED
        assert refund.provider_intent_id == "order_1"
        args = razorpay_client.payment.refund.call_args.args
        assert args[0] == "pay_1"
        assert args[1]["amount"] == 50000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_server_errors(
        self, razorpay: RazorpayGateway, razorpay_client: MagicMock
    ) -> None:
        razorpay_client.payment.fetch.side_effect = [
            ServerError("upstream timeout"),
            razorpay_payment(),
        ]

        payment = await razorpay.retrieve_payment("order_1", "pay_1")

        assert payment.status == PaymentStatus.PAID
        assert razorpay_client.payment.fetch.call_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_does_not_retry_bad_requests(
        self, razorpay: RazorpayGateway, razorpay_client: MagicMock
    ) -> None:
        razorpay_client.payment.fetch.side_effect = BadRequestError("The id provided does not exist")

        with pytest.raises(GatewayError) as exc_info:
            await razorpay.retrieve_payment("order_1", "pay_1")

        assert exc_info.value.kind == GatewayErrorKind.INVALID_REQUEST
        assert razorpay_client.payment.fetch.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits(
        self, razorpay: RazorpayGateway, razorpay_client: MagicMock
    ) -> None:
        razorpay.circuit_breaker = CircuitBreaker("razorpay", failure_threshold=1, timeout=60)
        razorpay_client.payment.fetch.side_effect = ServerError("down")

        with pytest.raises(GatewayError):
            await razorpay.retrieve_payment("order_1", "pay_1")

        assert razorpay.circuit_breaker.state == "open"
        assert razorpay_client.payment.fetch.call_count == 1

    @pytest.mark.unit
    def test_checkout_signature(self, razorpay: RazorpayGateway) -> None:
        signature = razorpay_checkout_signature("order_1", "pay_1")

        assert razorpay.verify_payment_signature("order_1", "pay_1", signature)
        assert not razorpay.verify_payment_signature("order_1", "pay_2", signature)

    @pytest.mark.unit
    def test_webhook_signature_and_event_id(self, razorpay: RazorpayGateway) -> None:
        body = json.dumps(
            {"event": "payment.captured", "payload": {"payment": {"entity": razorpay_payment()}}}
        ).encode()

        assert razorpay.verify_signature(body, razorpay_webhook_signature(body))
        assert not razorpay.verify_signature(body, "0" * 64)

        event = razorpay.parse_webhook(body, {"x-razorpay-event-id": "evt_9"})
        assert event.event_id == "evt_9"
        assert event.kind == WebhookKind.PAYMENT_SUCCEEDED

    @pytest.mark.unit
    def test_malformed_webhook(self, razorpay: RazorpayGateway) -> None:
        with pytest.raises(WebhookVerificationError):
            razorpay.parse_webhook(b"not json", {})


class TestStripeGateway:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_intent(self, stripe_gateway: StripeGateway, mocker: Any) -> None:
        create = mocker.patch(
            "stripe.PaymentIntent.create",
            return_value={"id": "pi_1", "status": "requires_payment_method", "client_secret": "cs"},
        )

        intent = await stripe_gateway.create_intent(
            Decimal("49.99"), "USD", metadata={"order_id": "ord_1003"}, idempotency_key="k1"
        )

        assert intent.provider_intent_id == "pi_1"
        assert intent.client_secret == "cs"
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 4999
        assert kwargs["currency"] == "usd"
        assert kwargs["idempotency_key"] == "k1"
        assert kwargs["api_key"] == STRIPE_SECRET_KEY

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_error_is_not_retried(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        retrieve = mocker.patch(
            "stripe.PaymentIntent.retrieve",
            side_effect=stripe.CardError("Your card was declined.", None, "card_declined"),
        )

        with pytest.raises(GatewayError) as exc_info:
            await stripe_gateway.retrieve_payment("pi_1")

        assert exc_info.value.kind == GatewayErrorKind.CARD_DECLINED
        assert exc_info.value.status_code == 402
        assert retrieve.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, stripe_gateway: StripeGateway, mocker: Any) -> None:
        retrieve = mocker.patch(
            "stripe.PaymentIntent.retrieve",
            side_effect=stripe.RateLimitError("Too many requests"),
        )

        with pytest.raises(GatewayError) as exc_info:
            await stripe_gateway.retrieve_payment("pi_1")

        assert exc_info.value.kind == GatewayErrorKind.RATE_LIMITED
        assert retrieve.call_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_payment_methods_flags_default(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        page = MagicMock()
        page.auto_paging_iter.return_value = iter(
            [
                {"id": "pm_1", "type": "card", "card": {"brand": "visa", "last4": "4242"}},
                {"id": "pm_2", "type": "card", "card": {"brand": "amex", "last4": "0005"}},
            ]
        )
        listing = mocker.patch("stripe.PaymentMethod.list", return_value=page)
        mocker.patch(
            "stripe.Customer.retrieve",
            return_value={"id": "cus_1", "invoice_settings": {"default_payment_method": "pm_2"}},
        )

        methods = await stripe_gateway.list_payment_methods("cus_1")

        assert [(m.id, m.last4, m.is_default) for m in methods] == [
            ("pm_1", "4242", False),
            ("pm_2", "0005", True),
        ]
        assert listing.call_args.kwargs["customer"] == "cus_1"
        assert listing.call_args.kwargs["type"] == "card"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_attach_as_default_updates_customer(
        self, stripe_gateway: StripeGateway, mocker: Any
    ) -> None:
        mocker.patch(
            "stripe.PaymentMethod.attach",
            return_value={
                "id": "pm_9",
                "type": "card",
                "card": {"brand": "visa", "last4": "1881", "exp_month": 4, "exp_year": 2031},
                "created": 1700000000,
            },
        )
        modify = mocker.patch("stripe.Customer.modify", return_value={"id": "cus_1"})

        method = await stripe_gateway.attach_payment_method("cus_1", "pm_9", set_as_default=True)

        assert method.is_default
        assert (method.exp_month, method.exp_year) == (4, 2031)
        assert modify.call_args.args == ("cus_1",)
        assert modify.call_args.kwargs["invoice_settings"] == {"default_payment_method": "pm_9"}

    @pytest.mark.unit
    def test_webhook_signature(self, stripe_gateway: StripeGateway) -> None:
        body = b'{"id": "evt_1", "type": "customer.created", "data": {"object": {}}}'

        assert stripe_gateway.verify_signature(body, stripe_signature_header(body))
        assert not stripe_gateway.verify_signature(body, "t=1,v1=bad")
        assert not stripe_gateway.verify_signature(body + b" ", stripe_signature_header(body))

    @pytest.mark.unit
    def test_expired_webhook_signature(self, stripe_gateway: StripeGateway) -> None:
        body = b'{"id": "evt_1", "type": "customer.created", "data": {"object": {}}}'
        stale = stripe_signature_header(body, timestamp=int(time.time()) - 3600)

        assert not stripe_gateway.verify_signature(body, stale)


class TestHeaders:
    @pytest.mark.unit
    def test_header_lookup_is_case_insensitive(self) -> None:
        headers = {"stripe-signature": "t=1,v1=x"}
        assert header_value(headers, "Stripe-Signature") == "t=1,v1=x"
        assert header_value(headers, "X-Razorpay-Signature") is None
