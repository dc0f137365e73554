"""
Tests for the HTTP surface: routing, schemas and the error envelope.
"""
import json
from decimal import Decimal
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from payment_engine.api.container import ServiceContainer
from payment_engine.api.main import create_app

from tests.doubles import FakeRazorpayGateway, razorpay_checkout_signature


@pytest_asyncio.fixture
async def client(container: ServiceContainer) -> AsyncGenerator[AsyncClient, Any]:
    app = create_app(container)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


def intent_body(**overrides: Any) -> dict:
    body = {
        "order_id": "ord_1001",
        "customer_id": "cust_42",
        "amount": "2999.00",
        "currency": "INR",
        "provider": "razorpay",
        "payment_method": "UPI",
    }
    body.update(overrides)
    return body


class TestPaymentEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_intent(self, client: AsyncClient) -> None:
        response = await client.post(
            "/payments/intent", json=intent_body(), headers={"Idempotency-Key": "idem-1"}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "PENDING"
        assert body["provider"] == "razorpay"
        assert body["provider_intent_id"].startswith("order_")
        assert Decimal(str(body["amount"])) == Decimal("2999.00")

        replay = await client.post(
            "/payments/intent", json=intent_body(), headers={"Idempotency-Key": "idem-1"}
        )
        assert replay.json()["payment_id"] == body["payment_id"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_mismatch_is_validation_error(self, client: AsyncClient) -> None:
        response = await client.post("/payments/intent", json=intent_body(amount="10.00"))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_body_uses_error_envelope(self, client: AsyncClient) -> None:
        response = await client.post("/payments/intent", json=intent_body(amount="-5"))

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert "amount" in error["message"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payment(self, client: AsyncClient) -> None:
        response = await client.get("/payments/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "PAYMENT_NOT_FOUND"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_then_refunds(
        self, client: AsyncClient, razorpay_gateway: FakeRazorpayGateway
    ) -> None:
        created = (await client.post("/payments/intent", json=intent_body())).json()
        razorpay_gateway.settle(created["provider_intent_id"], "pay_api")

        processed = await client.post(
            "/payments/process",
            json={
                "payment_id": created["payment_id"],
                "provider_transaction_id": "pay_api",
                "signature": razorpay_checkout_signature(created["provider_intent_id"], "pay_api"),
            },
        )
        assert processed.status_code == 200
        assert processed.json()["status"] == "PAID"

        refund_url = f"/payments/{created['payment_id']}/refund"
        partial = await client.post(refund_url, json={"amount": "2000.00", "reason": "Item returned"})
        assert partial.status_code == 200
        assert partial.json()["payment"]["status"] == "PARTIALLY_REFUNDED"

        over = await client.post(refund_url, json={"amount": "1500.00", "reason": "Item returned"})
        assert over.status_code == 422
        assert over.json()["error"]["code"] == "REFUND_NOT_ALLOWED"

        history = await client.get(f"/payments/{created['payment_id']}/history")
        actions = [entry["action"] for entry in history.json()]
        assert actions == ["CREATED", "PROCESSING", "PAID", "REFUNDED"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_lookup(
        self, client: AsyncClient, container: ServiceContainer, create_paid_payment: Any
    ) -> None:
        payment = await create_paid_payment(amount="1000.00")
        _, refund = await container.refunds.refund_payment(
            payment.id, amount="100.00", reason="Goodwill"
        )

        found = await client.get(f"/payments/refunds/{refund.id}")
        assert found.status_code == 200
        body = found.json()
        assert body["payment_id"] == payment.id
        assert body["status"] == "processed"
        assert Decimal(str(body["amount"])) == Decimal("100.00")

        missing = await client.get("/payments/refunds/missing")
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "REFUND_NOT_FOUND"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_paid_payment_is_conflict(
        self, client: AsyncClient, create_paid_payment: Any
    ) -> None:
        payment = await create_paid_payment()

        response = await client.post(f"/payments/{payment.id}/cancel", json={"reason": "late"})

        assert response.status_code == 409

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_payments_by_status(
        self, client: AsyncClient, create_payment: Any, create_paid_payment: Any
    ) -> None:
        await create_payment()
        paid = await create_paid_payment()

        response = await client.get("/payments", params={"status": "PAID"})

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["id"] == paid.id
        assert "client_secret" not in body["items"][0]


class TestPaymentMethodEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_save_list_delete(self, client: AsyncClient) -> None:
        url = "/payments/customers/cus_42/methods"

        saved = await client.post(url, json={"payment_method_id": "pm_1", "set_as_default": True})
        assert saved.status_code == 201
        assert saved.json()["is_default"] is True
        await client.post(url, json={"payment_method_id": "pm_2"})

        listed = (await client.get(url)).json()["payment_methods"]
        assert [(m["id"], m["is_default"]) for m in listed] == [("pm_1", True), ("pm_2", False)]

        deleted = await client.delete(f"{url}/pm_2")
        assert deleted.status_code == 204
        assert [m["id"] for m in (await client.get(url)).json()["payment_methods"]] == ["pm_1"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cannot_delete_another_customers_method(self, client: AsyncClient) -> None:
        await client.post("/payments/customers/cus_42/methods", json={"payment_method_id": "pm_1"})

        response = await client.delete("/payments/customers/cus_7/methods/pm_1")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        listed = (await client.get("/payments/customers/cus_42/methods")).json()
        assert [m["id"] for m in listed["payment_methods"]] == ["pm_1"]


class TestWebhookEndpoint:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(self, client: AsyncClient) -> None:
        body = json.dumps({"event": "payment.captured", "payload": {}}).encode()

        response = await client.post(
            "/payments/webhooks/razorpay",
            content=body,
            headers={"X-Razorpay-Signature": "0" * 64, "X-Razorpay-Event-Id": "evt_1"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "WEBHOOK_VERIFICATION_FAILED"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_provider(self, client: AsyncClient) -> None:
        response = await client.post("/payments/webhooks/paypal", content=b"{}")

        assert response.status_code == 400


class TestMonitoringEndpoints:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert set(body["checks"]) == {"database", "redis", "stripe", "razorpay"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: AsyncClient) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "payment_intents_created_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client: AsyncClient) -> None:
        response = await client.get("/health/live", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
