"""
Stripe gateway adapter.

Card and wallet payments through PaymentIntents. Every SDK call passes the
API key explicitly so the module-level ``stripe.api_key`` is never touched.
"""
import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import stripe
import structlog

from payment_engine.core.errors import GatewayError, GatewayErrorKind, WebhookVerificationError
from payment_engine.core.types import PaymentProvider
from payment_engine.integrations.base import CircuitBreaker, CreatedIntent, PaymentGateway
from payment_engine.integrations.mapper import (
    GatewayWebhookEvent,
    NormalisedPayment,
    NormalisedRefund,
    SavedPaymentMethod,
    from_stripe_payment_intent,
    from_stripe_payment_method,
    from_stripe_refund,
    stripe_default_payment_method,
    stripe_event_to_webhook,
    to_minor_units,
)

logger = structlog.get_logger(__name__)

STRIPE_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


class StripeGateway(PaymentGateway):
    """Adapter over the Stripe SDK."""

    provider = PaymentProvider.STRIPE
    supports_capture = True
    requires_payment_signature = False
    webhook_signature_header = "Stripe-Signature"
    capturable_statuses = frozenset({"requires_capture"})

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        api_version: Optional[str] = None,
        webhook_tolerance: int = 300,
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
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_version = api_version
        self.webhook_tolerance = webhook_tolerance

        logger.info(
            "stripe_gateway_initialized",
            api_version=api_version,
            test_mode=secret_key.startswith("sk_test_"),
        )

    def _request_options(self, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        options: Dict[str, Any] = {"api_key": self.secret_key}
        if self.api_version:
            options["stripe_version"] = self.api_version
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    def classify_error(self, error: Exception) -> GatewayError:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Exception raised by the SDK

        Returns:
            GatewayError: Classified error
        """
        if isinstance(error, stripe.CardError):
            kind = GatewayErrorKind.CARD_DECLINED
        elif isinstance(error, stripe.RateLimitError):
            kind = GatewayErrorKind.RATE_LIMITED
        elif isinstance(error, (stripe.AuthenticationError, stripe.PermissionError)):
            kind = GatewayErrorKind.AUTHENTICATION
        elif isinstance(error, (stripe.InvalidRequestError, stripe.IdempotencyError)):
            kind = GatewayErrorKind.INVALID_REQUEST
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            kind = GatewayErrorKind.CONNECTION
        else:
            logger.warning(
                "stripe_unclassified_error",
                error_class=type(error).__name__,
                error_message=str(error),
            )
            kind = GatewayErrorKind.UNKNOWN

        message = getattr(error, "user_message", None) or str(error)
        return GatewayError(message, kind, provider=self.provider.value, original_error=error)

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> CreatedIntent:
        """
        Create a Stripe PaymentIntent with idempotency.

        Args:
            amount: Amount in major units
            currency: ISO currency code
            metadata: Attached to the intent, values stringified
            idempotency_key: Forwarded as Stripe's Idempotency-Key

        Returns:
            CreatedIntent: Intent id and client secret
        """
        intent = await self._call(
            "create_intent",
            stripe.PaymentIntent.create,
            amount=to_minor_units(amount),
            currency=currency.lower(),
            metadata={k: str(v) for k, v in (metadata or {}).items()},
            automatic_payment_methods={"enabled": True},
            **self._request_options(idempotency_key),
        )
        logger.info("stripe_intent_created", payment_intent_id=intent["id"], status=intent["status"])
        return CreatedIntent(
            provider_intent_id=intent["id"],
            client_secret=intent.get("client_secret"),
            raw_status=intent["status"],
        )

    async def retrieve_payment(
        self, intent_id: str, transaction_id: Optional[str] = None
    ) -> NormalisedPayment:
        intent = await self._call(
            "retrieve_intent",
            stripe.PaymentIntent.retrieve,
            intent_id,
            **self._request_options(),
        )
        return from_stripe_payment_intent(intent)

    async def capture(
        self,
        intent_id: str,
        transaction_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ) -> NormalisedPayment:
        params: Dict[str, Any] = {}
        if amount is not None:
            params["amount_to_capture"] = to_minor_units(amount)
        intent = await self._call(
            "capture_intent",
            stripe.PaymentIntent.capture,
            intent_id,
            **params,
            **self._request_options(),
        )
        return from_stripe_payment_intent(intent)

    async def cancel(self, intent_id: str, reason: Optional[str] = None) -> None:
        params: Dict[str, Any] = {}
        if reason in ("duplicate", "fraudulent", "requested_by_customer", "abandoned"):
            params["cancellation_reason"] = reason
        await self._call(
            "cancel_intent",
            stripe.PaymentIntent.cancel,
            intent_id,
            **params,
            **self._request_options(),
        )

    async def create_refund(
        self,
        intent_id: str,
        transaction_id: Optional[str],
        amount: Optional[Decimal],
        currency: str,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> NormalisedRefund:
        params: Dict[str, Any] = {"payment_intent": intent_id, "metadata": {}}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        if reason in STRIPE_REFUND_REASONS:
            params["reason"] = reason
        elif reason:
            params["metadata"]["reason"] = reason
        refund = await self._call(
            "create_refund",
            stripe.Refund.create,
            **params,
            **self._request_options(idempotency_key),
        )
        return from_stripe_refund(refund)

    async def list_payments(self, created_from: datetime, created_to: datetime) -> List[NormalisedPayment]:
        def _list_all() -> List[Any]:
            page = stripe.PaymentIntent.list(
                created={
                    "gte": int(created_from.timestamp()),
                    "lte": int(created_to.timestamp()),
                },
                limit=100,
                expand=["data.latest_charge"],
                **self._request_options(),
            )
            return list(page.auto_paging_iter())

        intents = await self._call("list_intents", _list_all)
        return [from_stripe_payment_intent(intent) for intent in intents]

    async def list_payment_methods(self, customer_id: str) -> List[SavedPaymentMethod]:
        """Cards saved on a Stripe customer, the invoice default flagged."""

        def _list_all() -> List[Any]:
            page = stripe.PaymentMethod.list(
                customer=customer_id, type="card", limit=100, **self._request_options()
            )
            return list(page.auto_paging_iter())

        methods = await self._call("list_payment_methods", _list_all)
        customer = await self._call(
            "retrieve_customer", stripe.Customer.retrieve, customer_id, **self._request_options()
        )
        default_id = stripe_default_payment_method(customer)
        return [from_stripe_payment_method(m, default_id) for m in methods]

    async def attach_payment_method(
        self, customer_id: str, payment_method_id: str, set_as_default: bool = False
    ) -> SavedPaymentMethod:
        method = await self._call(
            "attach_payment_method",
            stripe.PaymentMethod.attach,
            payment_method_id,
            customer=customer_id,
            **self._request_options(),
        )
        if set_as_default:
            await self._call(
                "update_customer",
                stripe.Customer.modify,
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
                **self._request_options(),
            )
        logger.info(
            "stripe_payment_method_attached",
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            default=set_as_default,
        )
        return from_stripe_payment_method(
            method, payment_method_id if set_as_default else None
        )

    async def detach_payment_method(self, payment_method_id: str) -> None:
        await self._call(
            "detach_payment_method",
            stripe.PaymentMethod.detach,
            payment_method_id,
            **self._request_options(),
        )
        logger.info("stripe_payment_method_detached", payment_method_id=payment_method_id)

    def verify_signature(self, payload: bytes, signature: str, secret: Optional[str] = None) -> bool:
        """
        Verify a ``Stripe-Signature`` header (``t=<ts>,v1=<hmac>``).

        The SDK recomputes HMAC-SHA256 over ``"<ts>.<payload>"`` and compares in
        constant time, rejecting timestamps older than the tolerance.
        """
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                secret or self.webhook_secret,
                tolerance=self.webhook_tolerance,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning("stripe_signature_invalid", error=str(e))
            return False
        return True

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> GatewayWebhookEvent:
        try:
            return stripe_event_to_webhook(json.loads(payload))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise WebhookVerificationError("Malformed Stripe webhook payload") from e

    async def health_check(self) -> bool:
        await self._call("health_check", stripe.Balance.retrieve, **self._request_options())
        return True
