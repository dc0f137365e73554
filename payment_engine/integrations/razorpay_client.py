"""
Razorpay gateway adapter.

The intent-equivalent on Razorpay is an order. Checkout returns a payment id
and a signature over ``order_id|payment_id`` which must be verified before
the payment is trusted.
"""
import hashlib
import hmac
import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import razorpay
import requests
import structlog
from razorpay.errors import BadRequestError
from razorpay.errors import GatewayError as RazorpayGatewayError
from razorpay.errors import ServerError

from payment_engine.core.errors import GatewayError, GatewayErrorKind, WebhookVerificationError
from payment_engine.core.types import PaymentProvider
from payment_engine.integrations.base import (
    CircuitBreaker,
    CreatedIntent,
    PaymentGateway,
    header_value,
)
from payment_engine.integrations.mapper import (
    GatewayWebhookEvent,
    NormalisedPayment,
    NormalisedRefund,
    from_razorpay_order,
    from_razorpay_payment,
    from_razorpay_refund,
    razorpay_event_to_webhook,
    to_minor_units,
)

logger = structlog.get_logger(__name__)

EVENT_ID_HEADER = "X-Razorpay-Event-Id"
RECEIPT_MAX_LENGTH = 40
PAGE_SIZE = 100


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayGateway(PaymentGateway):
    """Adapter over the Razorpay SDK."""

    provider = PaymentProvider.RAZORPAY
    supports_capture = True
    requires_payment_signature = True
    webhook_signature_header = "X-Razorpay-Signature"
    capturable_statuses = frozenset({"authorized"})

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        client: Optional[razorpay.Client] = None,
        timeout_seconds: float = 30.0,
        retry_attempts: int = 3,
        retry_backoff: float = 1.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        super().__init__(
            timeout_seconds=timeout_seconds,
            retry_attempts=retry_attempts,
            retry_backoff=retry_backoff,
            circuit_breaker=circuit_breaker,
        )
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.client = client or razorpay.Client(auth=(key_id, key_secret))

        logger.info("razorpay_gateway_initialized", test_mode=key_id.startswith("rzp_test_"))

    def classify_error(self, error: Exception) -> GatewayError:
        if isinstance(error, BadRequestError):
            text = str(error).lower()
            if "authentication" in text:
                kind = GatewayErrorKind.AUTHENTICATION
            elif "too many requests" in text or "rate limit" in text:
                kind = GatewayErrorKind.RATE_LIMITED
            else:
                kind = GatewayErrorKind.INVALID_REQUEST
        elif isinstance(error, RazorpayGatewayError):
            kind = GatewayErrorKind.CARD_DECLINED
        elif isinstance(
            error,
            (ServerError, requests.ConnectionError, requests.Timeout),
        ):
            kind = GatewayErrorKind.CONNECTION
        else:
            logger.warning(
                "razorpay_unclassified_error",
                error_class=type(error).__name__,
                error_message=str(error),
            )
            kind = GatewayErrorKind.UNKNOWN
        return GatewayError(str(error), kind, provider=self.provider.value, original_error=error)

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> CreatedIntent:
        """
        Create a Razorpay order.

        The receipt is derived from the order id in ``metadata``; Razorpay
        keeps the idempotency key only as a note.
        """
        notes = {k: str(v) for k, v in (metadata or {}).items()}
        if idempotency_key:
            notes["idempotency_key"] = idempotency_key
        data = {
            "amount": to_minor_units(amount),
            "currency": currency.upper(),
            "receipt": f"order_{notes.get('order_id', '')}"[:RECEIPT_MAX_LENGTH],
            "notes": notes,
        }
        order = await self._call("create_order", self.client.order.create, data=data)
        logger.info("razorpay_order_created", razorpay_order_id=order["id"], status=order.get("status"))
        return CreatedIntent(provider_intent_id=order["id"], raw_status=order.get("status", "created"))

    async def retrieve_payment(
        self, intent_id: str, transaction_id: Optional[str] = None
    ) -> NormalisedPayment:
        """
        Gateway view of an order's payment.

        With ``transaction_id`` that payment is fetched and must belong to the
        order. Otherwise the order's payments are listed and a captured one is
        preferred over the latest attempt.
        """
        if transaction_id:
            payment = await self._call("fetch_payment", self.client.payment.fetch, transaction_id)
            if payment.get("order_id") != intent_id:
                raise GatewayError(
                    f"Payment {transaction_id} does not belong to order {intent_id}",
                    GatewayErrorKind.INVALID_REQUEST,
                    provider=self.provider.value,
                )
            return from_razorpay_payment(payment)

        result = await self._call("order_payments", self.client.order.payments, intent_id)
        items = result.get("items") or []
        if items:
            captured = [p for p in items if p.get("status") in ("captured", "refunded")]
            chosen = captured[0] if captured else max(items, key=lambda p: p.get("created_at") or 0)
            return from_razorpay_payment(chosen)

        order = from_razorpay_order(await self._call("fetch_order", self.client.order.fetch, intent_id))
        return NormalisedPayment(
            provider=self.provider,
            provider_payment_id=order.provider_order_id,
            provider_intent_id=order.provider_order_id,
            amount=order.amount,
            currency=order.currency,
            status=order.status,
            raw_status=order.raw_status,
            metadata=order.notes,
            created_at=order.created_at,
        )

    async def capture(
        self,
        intent_id: str,
        transaction_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ) -> NormalisedPayment:
        if not transaction_id:
            raise GatewayError(
                "Razorpay capture needs the authorised payment id",
                GatewayErrorKind.INVALID_REQUEST,
                provider=self.provider.value,
            )
        current = await self.retrieve_payment(intent_id, transaction_id)
        payment = await self._call(
            "capture_payment",
            self.client.payment.capture,
            transaction_id,
            to_minor_units(amount if amount is not None else current.amount),
            data={"currency": (currency or current.currency).upper()},
        )
        return from_razorpay_payment(payment)

    async def cancel(self, intent_id: str, reason: Optional[str] = None) -> None:
        # Orders cannot be cancelled on Razorpay; unpaid orders simply expire
        logger.info("razorpay_cancel_not_supported", razorpay_order_id=intent_id, reason=reason)

    async def create_refund(
        self,
        intent_id: str,
        transaction_id: Optional[str],
        amount: Optional[Decimal],
        currency: str,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> NormalisedRefund:
        if not transaction_id:
            raise GatewayError(
                "Razorpay refund needs the captured payment id",
                GatewayErrorKind.INVALID_REQUEST,
                provider=self.provider.value,
            )
        data: Dict[str, Any] = {"notes": {"reason": reason or ""}}
        if amount is not None:
            data["amount"] = to_minor_units(amount)
        if idempotency_key:
            data["receipt"] = idempotency_key[:RECEIPT_MAX_LENGTH]
        refund = await self._call("create_refund", self.client.payment.refund, transaction_id, data)
        return from_razorpay_refund(refund, order_id=intent_id)

    async def list_payments(self, created_from: datetime, created_to: datetime) -> List[NormalisedPayment]:
        def _list_all() -> List[Dict[str, Any]]:
            items: List[Dict[str, Any]] = []
            skip = 0
            while True:
                page = self.client.payment.all(
                    {
                        "from": int(created_from.timestamp()),
                        "to": int(created_to.timestamp()),
                        "count": PAGE_SIZE,
                        "skip": skip,
                    }
                )
                batch = page.get("items") or []
                items.extend(batch)
                if len(batch) < PAGE_SIZE:
                    return items
                skip += PAGE_SIZE

        payments = await self._call("list_payments", _list_all)
        return [from_razorpay_payment(p) for p in payments]

    def verify_signature(self, payload: bytes, signature: str, secret: Optional[str] = None) -> bool:
        """HMAC-SHA256 hex digest of the raw body, compared in constant time."""
        expected = hmac_sha256_hex(secret or self.webhook_secret, payload)
        return hmac.compare_digest(expected, signature or "")

    def verify_payment_signature(self, intent_id: str, transaction_id: str, signature: str) -> bool:
        expected = hmac_sha256_hex(self.key_secret, f"{intent_id}|{transaction_id}".encode("utf-8"))
        return hmac.compare_digest(expected, signature or "")

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> GatewayWebhookEvent:
        try:
            event = json.loads(payload)
            event_id = (
                header_value(headers, EVENT_ID_HEADER)
                or event.get("id")
                or hashlib.sha256(payload).hexdigest()
            )
            return razorpay_event_to_webhook(event, event_id)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise WebhookVerificationError("Malformed Razorpay webhook payload") from e

    async def health_check(self) -> bool:
        await self._call("health_check", self.client.order.all, {"count": 1})
        return True
