"""
Canonical mapper.

Pure functions turning gateway-specific payloads into the engine's
normalised models. Amounts arrive in the provider's minor unit and leave in
major units. Status tables are explicit; an unknown provider status is
logged and mapped to PENDING.
"""
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from payment_engine.core.types import PaymentProvider, PaymentStatus, RefundStatus

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
UNIT = Decimal("1")


class NormalisedPayment(BaseModel):
    """A gateway payment (Stripe PaymentIntent/Charge, Razorpay payment)."""

    model_config = ConfigDict(frozen=True)

    provider: PaymentProvider
    provider_payment_id: str
    provider_intent_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: PaymentStatus
    raw_status: str
    payment_method: Optional[str] = None
    captured: bool = False
    refunded: bool = False
    amount_refunded: Decimal = Decimal("0")
    failure_reason: Optional[str] = None
    description: Optional[str] = None
    email: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class NormalisedRefund(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: PaymentProvider
    provider_refund_id: str
    provider_payment_id: Optional[str] = None
    provider_intent_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: RefundStatus
    reason: Optional[str] = None
    created_at: Optional[datetime] = None


class NormalisedOrder(BaseModel):
    """A Razorpay order, the intent-equivalent on that gateway."""

    model_config = ConfigDict(frozen=True)

    provider: PaymentProvider
    provider_order_id: str
    amount: Decimal
    amount_paid: Decimal
    amount_due: Decimal
    currency: str
    status: PaymentStatus
    raw_status: str
    receipt: Optional[str] = None
    attempts: int = 0
    notes: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class SavedPaymentMethod(BaseModel):
    """A card vaulted on a Stripe customer."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    is_default: bool = False
    created_at: Optional[datetime] = None


class WebhookKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELLED = "payment_cancelled"
    REFUND_PROCESSED = "refund_processed"
    REFUND_FAILED = "refund_failed"
    IGNORED = "ignored"


class GatewayWebhookEvent(BaseModel):
    """A verified webhook delivery reduced to what the dispatcher acts on."""

    model_config = ConfigDict(frozen=True)

    provider: PaymentProvider
    event_id: str
    raw_type: str
    kind: WebhookKind
    payment: Optional[NormalisedPayment] = None
    refund: Optional[NormalisedRefund] = None


# ----------------------------------------------------------------------
# Amounts
# ----------------------------------------------------------------------


def to_major_units(minor: Any) -> Decimal:
    """Minor units (cents, paise) to a major-unit Decimal with two places."""
    whole = Decimal(str(minor)).quantize(UNIT, rounding=ROUND_HALF_UP)
    return (whole / 100).quantize(CENT)


def to_minor_units(major: Any) -> int:
    """Major units to integer minor units, rounding half up."""
    return int((Decimal(str(major)) * 100).quantize(UNIT, rounding=ROUND_HALF_UP))


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _dict(value: Any) -> Dict[str, Any]:
    # Razorpay sends an empty list for empty notes
    return dict(value) if isinstance(value, Mapping) else {}


# ----------------------------------------------------------------------
# Status tables
# ----------------------------------------------------------------------

STRIPE_INTENT_STATUS = {
    "succeeded": PaymentStatus.PAID,
    "processing": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.PROCESSING,
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "canceled": PaymentStatus.CANCELLED,
}

STRIPE_CHARGE_STATUS = {
    "succeeded": PaymentStatus.PAID,
    "pending": PaymentStatus.PROCESSING,
    "failed": PaymentStatus.FAILED,
}

STRIPE_REFUND_STATUS = {
    "succeeded": RefundStatus.PROCESSED,
    "pending": RefundStatus.PENDING,
    "requires_action": RefundStatus.PENDING,
    "failed": RefundStatus.FAILED,
    "canceled": RefundStatus.FAILED,
}

RAZORPAY_PAYMENT_STATUS = {
    "captured": PaymentStatus.PAID,
    "authorized": PaymentStatus.PROCESSING,
    "created": PaymentStatus.PENDING,
    "failed": PaymentStatus.FAILED,
    "refunded": PaymentStatus.REFUNDED,
}

RAZORPAY_ORDER_STATUS = {
    "created": PaymentStatus.PENDING,
    "attempted": PaymentStatus.PENDING,
    "paid": PaymentStatus.PAID,
}

RAZORPAY_REFUND_STATUS = {
    "processed": RefundStatus.PROCESSED,
    "pending": RefundStatus.PENDING,
    "failed": RefundStatus.FAILED,
}


def _lookup(table: Dict[str, PaymentStatus], raw: Optional[str], mapping: str) -> PaymentStatus:
    status = table.get(raw or "")
    if status is None:
        logger.warning("unmapped_gateway_status", mapping=mapping, raw_status=raw)
        return PaymentStatus.PENDING
    return status


def stripe_intent_status_to_internal(raw: Optional[str]) -> PaymentStatus:
    return _lookup(STRIPE_INTENT_STATUS, raw, "stripe_intent")


def stripe_charge_status_to_internal(raw: Optional[str]) -> PaymentStatus:
    return _lookup(STRIPE_CHARGE_STATUS, raw, "stripe_charge")


def razorpay_payment_status_to_internal(raw: Optional[str]) -> PaymentStatus:
    return _lookup(RAZORPAY_PAYMENT_STATUS, raw, "razorpay_payment")


def razorpay_order_status_to_internal(raw: Optional[str]) -> PaymentStatus:
    return _lookup(RAZORPAY_ORDER_STATUS, raw, "razorpay_order")


def _refund_status(table: Dict[str, RefundStatus], raw: Optional[str], mapping: str) -> RefundStatus:
    status = table.get(raw or "")
    if status is None:
        logger.warning("unmapped_gateway_status", mapping=mapping, raw_status=raw)
        return RefundStatus.PENDING
    return status


def _refund_kind(status: RefundStatus) -> WebhookKind:
    if status == RefundStatus.PROCESSED:
        return WebhookKind.REFUND_PROCESSED
    if status == RefundStatus.FAILED:
        return WebhookKind.REFUND_FAILED
    return WebhookKind.IGNORED


def _with_refunds(status: PaymentStatus, amount: Decimal, refunded: Decimal) -> PaymentStatus:
    """Fold the refunded total into a collected status."""
    if refunded <= 0 or status not in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
        return status
    return PaymentStatus.REFUNDED if refunded >= amount else PaymentStatus.PARTIALLY_REFUNDED


# ----------------------------------------------------------------------
# Stripe
# ----------------------------------------------------------------------


def _stripe_id(value: Any) -> Optional[str]:
    """An expandable field is either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def from_stripe_payment_intent(intent: Mapping[str, Any]) -> NormalisedPayment:
    """
    Normalise a Stripe PaymentIntent.

    The transaction id is the latest charge when there is one, otherwise the
    intent id itself. The refunded total is read from the latest charge when
    it was expanded.
    """
    error = intent.get("last_payment_error") or {}
    methods = intent.get("payment_method_types") or []
    charge = intent.get("latest_charge")
    charge_id = _stripe_id(charge)
    expanded = charge if charge is not None and not isinstance(charge, str) else {}
    amount = to_major_units(intent["amount"])
    refunded = to_major_units(expanded.get("amount_refunded") or 0)
    return NormalisedPayment(
        provider=PaymentProvider.STRIPE,
        provider_payment_id=charge_id or intent["id"],
        provider_intent_id=intent["id"],
        amount=amount,
        currency=str(intent["currency"]).upper(),
        status=_with_refunds(
            stripe_intent_status_to_internal(intent.get("status")), amount, refunded
        ),
        raw_status=intent.get("status") or "",
        payment_method=methods[0] if methods else None,
        captured=intent.get("status") == "succeeded",
        refunded=bool(expanded.get("refunded")),
        amount_refunded=refunded,
        failure_reason=error.get("message"),
        description=intent.get("description"),
        email=intent.get("receipt_email"),
        metadata=_dict(intent.get("metadata")),
        created_at=_timestamp(intent.get("created")),
    )


def from_stripe_charge(charge: Mapping[str, Any]) -> NormalisedPayment:
    amount = to_major_units(charge["amount"])
    refunded = to_major_units(charge.get("amount_refunded") or 0)
    details = charge.get("payment_method_details") or {}
    billing = charge.get("billing_details") or {}
    return NormalisedPayment(
        provider=PaymentProvider.STRIPE,
        provider_payment_id=charge["id"],
        provider_intent_id=_stripe_id(charge.get("payment_intent")),
        amount=amount,
        currency=str(charge["currency"]).upper(),
        status=_with_refunds(
            stripe_charge_status_to_internal(charge.get("status")), amount, refunded
        ),
        raw_status=charge.get("status") or "",
        payment_method=details.get("type"),
        captured=bool(charge.get("captured")),
        refunded=bool(charge.get("refunded")),
        amount_refunded=refunded,
        failure_reason=charge.get("failure_message"),
        description=charge.get("description"),
        email=charge.get("receipt_email") or billing.get("email"),
        metadata=_dict(charge.get("metadata")),
        created_at=_timestamp(charge.get("created")),
    )


def from_stripe_refund(refund: Mapping[str, Any]) -> NormalisedRefund:
    return NormalisedRefund(
        provider=PaymentProvider.STRIPE,
        provider_refund_id=refund["id"],
        provider_payment_id=_stripe_id(refund.get("charge")),
        provider_intent_id=_stripe_id(refund.get("payment_intent")),
        amount=to_major_units(refund["amount"]),
        currency=str(refund["currency"]).upper(),
        status=_refund_status(STRIPE_REFUND_STATUS, refund.get("status"), "stripe_refund"),
        reason=refund.get("reason"),
        created_at=_timestamp(refund.get("created")),
    )


def from_stripe_payment_method(
    method: Mapping[str, Any], default_method_id: Optional[str] = None
) -> SavedPaymentMethod:
    card = method.get("card") or {}
    return SavedPaymentMethod(
        id=method["id"],
        type=method.get("type") or "card",
        brand=card.get("brand"),
        last4=card.get("last4"),
        exp_month=card.get("exp_month"),
        exp_year=card.get("exp_year"),
        is_default=method["id"] == default_method_id,
        created_at=_timestamp(method.get("created")),
    )


def stripe_default_payment_method(customer: Mapping[str, Any]) -> Optional[str]:
    invoice_settings = customer.get("invoice_settings") or {}
    return _stripe_id(invoice_settings.get("default_payment_method"))


def stripe_event_to_webhook(event: Mapping[str, Any]) -> GatewayWebhookEvent:
    """
    Reduce a Stripe event envelope ``{id, type, data: {object}}``.

    Raises:
        KeyError: If the envelope is missing required fields
    """
    event_type = event["type"]
    obj = event["data"]["object"]
    base = {"provider": PaymentProvider.STRIPE, "event_id": event["id"], "raw_type": event_type}

    if event_type == "payment_intent.succeeded":
        return GatewayWebhookEvent(
            kind=WebhookKind.PAYMENT_SUCCEEDED, payment=from_stripe_payment_intent(obj), **base
        )
    if event_type == "payment_intent.payment_failed":
        return GatewayWebhookEvent(
            kind=WebhookKind.PAYMENT_FAILED, payment=from_stripe_payment_intent(obj), **base
        )
    if event_type == "payment_intent.canceled":
        return GatewayWebhookEvent(
            kind=WebhookKind.PAYMENT_CANCELLED, payment=from_stripe_payment_intent(obj), **base
        )
    if event_type == "charge.refunded":
        refunds = (obj.get("refunds") or {}).get("data") or []
        if not refunds:
            logger.info("stripe_charge_refunded_without_refunds", event_id=event["id"])
            return GatewayWebhookEvent(kind=WebhookKind.IGNORED, **base)
        # Newest refund first
        refund = from_stripe_refund(refunds[0])
        return GatewayWebhookEvent(
            kind=WebhookKind.REFUND_PROCESSED,
            payment=from_stripe_charge(obj),
            refund=refund,
            **base,
        )
    if event_type in (
        "refund.created", "refund.updated", "refund.failed", "charge.refund.updated"
    ):
        refund = from_stripe_refund(obj)
        return GatewayWebhookEvent(kind=_refund_kind(refund.status), refund=refund, **base)

    return GatewayWebhookEvent(kind=WebhookKind.IGNORED, **base)


# ----------------------------------------------------------------------
# Razorpay
# ----------------------------------------------------------------------

RAZORPAY_METHODS = {
    "card": "CARD",
    "upi": "UPI",
    "netbanking": "NET_BANKING",
    "wallet": "WALLET",
    "emi": "EMI",
    "cardless_emi": "EMI",
}


def from_razorpay_payment(payment: Mapping[str, Any]) -> NormalisedPayment:
    amount = to_major_units(payment["amount"])
    refunded = to_major_units(payment.get("amount_refunded") or 0)
    return NormalisedPayment(
        provider=PaymentProvider.RAZORPAY,
        provider_payment_id=payment["id"],
        provider_intent_id=payment.get("order_id"),
        amount=amount,
        currency=str(payment["currency"]).upper(),
        status=_with_refunds(
            razorpay_payment_status_to_internal(payment.get("status")), amount, refunded
        ),
        raw_status=payment.get("status") or "",
        payment_method=RAZORPAY_METHODS.get(payment.get("method") or "", payment.get("method")),
        captured=bool(payment.get("captured")),
        refunded=payment.get("refund_status") == "full",
        amount_refunded=refunded,
        failure_reason=payment.get("error_description"),
        description=payment.get("description"),
        email=payment.get("email"),
        metadata=_dict(payment.get("notes")),
        created_at=_timestamp(payment.get("created_at")),
    )


def from_razorpay_refund(
    refund: Mapping[str, Any], order_id: Optional[str] = None
) -> NormalisedRefund:
    notes = _dict(refund.get("notes"))
    return NormalisedRefund(
        provider=PaymentProvider.RAZORPAY,
        provider_refund_id=refund["id"],
        provider_payment_id=refund.get("payment_id"),
        provider_intent_id=order_id,
        amount=to_major_units(refund["amount"]),
        currency=str(refund.get("currency") or "INR").upper(),
        status=_refund_status(RAZORPAY_REFUND_STATUS, refund.get("status"), "razorpay_refund"),
        reason=notes.get("reason"),
        created_at=_timestamp(refund.get("created_at")),
    )


def from_razorpay_order(order: Mapping[str, Any]) -> NormalisedOrder:
    return NormalisedOrder(
        provider=PaymentProvider.RAZORPAY,
        provider_order_id=order["id"],
        amount=to_major_units(order["amount"]),
        amount_paid=to_major_units(order.get("amount_paid") or 0),
        amount_due=to_major_units(order.get("amount_due") or 0),
        currency=str(order["currency"]).upper(),
        status=razorpay_order_status_to_internal(order.get("status")),
        raw_status=order.get("status") or "",
        receipt=order.get("receipt"),
        attempts=int(order.get("attempts") or 0),
        notes=_dict(order.get("notes")),
        created_at=_timestamp(order.get("created_at")),
    )


def _entity(payload: Mapping[str, Any], name: str) -> Optional[Mapping[str, Any]]:
    wrapper = payload.get(name) or {}
    return wrapper.get("entity")


def razorpay_event_to_webhook(event: Mapping[str, Any], event_id: str) -> GatewayWebhookEvent:
    """
    Reduce a Razorpay event ``{event, payload: {payment|refund|order: {entity}}}``.

    Raises:
        KeyError: If the envelope is missing required fields
    """
    event_type = event["event"]
    payload = event["payload"]
    payment_entity = _entity(payload, "payment")
    base = {"provider": PaymentProvider.RAZORPAY, "event_id": event_id, "raw_type": event_type}

    if event_type in ("payment.captured", "order.paid") and payment_entity:
        return GatewayWebhookEvent(
            kind=WebhookKind.PAYMENT_SUCCEEDED,
            payment=from_razorpay_payment(payment_entity),
            **base,
        )
    if event_type == "payment.failed" and payment_entity:
        return GatewayWebhookEvent(
            kind=WebhookKind.PAYMENT_FAILED,
            payment=from_razorpay_payment(payment_entity),
            **base,
        )
    if event_type.startswith("refund."):
        refund_entity = _entity(payload, "refund")
        if refund_entity is None:
            raise KeyError("refund")
        order_id = payment_entity.get("order_id") if payment_entity else None
        refund = from_razorpay_refund(refund_entity, order_id=order_id)
        if event_type in ("refund.processed", "refund.failed"):
            kind = _refund_kind(refund.status)
        else:
            kind = WebhookKind.IGNORED
        return GatewayWebhookEvent(
            kind=kind,
            refund=refund,
            payment=from_razorpay_payment(payment_entity) if payment_entity else None,
            **base,
        )

    return GatewayWebhookEvent(kind=WebhookKind.IGNORED, **base)
