"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from payment_engine.core.types import (
    PaymentMethod,
    PaymentPage,
    PaymentProvider,
    PaymentRecord,
    PaymentStatus,
    RefundRecord,
)
from payment_engine.integrations.mapper import SavedPaymentMethod


class CreateIntentRequest(BaseModel):
    """Request schema for creating a payment intent."""

    order_id: str = Field(..., min_length=1, description="Order being paid")
    customer_id: str = Field(..., min_length=1, description="Paying customer")
    amount: Decimal = Field(..., gt=0, description="Amount in major units, must equal the order total")
    currency: Optional[str] = Field(
        default=None, min_length=3, max_length=3, description="ISO currency code"
    )
    provider: PaymentProvider = Field(..., description="Gateway to use")
    payment_method: PaymentMethod = Field(default=PaymentMethod.CARD, description="Payment method")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Optional payment metadata")
    idempotency_key: Optional[str] = Field(
        default=None,
        max_length=255,
        description="Client key; the Idempotency-Key header takes precedence",
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Validate currency format."""
        return v.upper() if v else v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "order_id": "ord_1001",
                    "customer_id": "cust_42",
                    "amount": "2999.00",
                    "currency": "INR",
                    "provider": "razorpay",
                    "payment_method": "UPI",
                }
            ]
        }
    }


class IntentResponse(BaseModel):
    payment_id: str
    provider: PaymentProvider
    provider_intent_id: str
    client_secret: Optional[str] = None
    amount: Decimal
    currency: str
    status: PaymentStatus


class ProcessPaymentRequest(BaseModel):
    """Checkout result posted back by the client."""

    payment_id: str = Field(..., description="Payment ID")
    provider_transaction_id: Optional[str] = Field(
        default=None, description="Gateway payment id returned by checkout"
    )
    signature: Optional[str] = Field(
        default=None, description="Checkout signature (Razorpay)"
    )


class VerifyPaymentRequest(ProcessPaymentRequest):
    pass


class VerifyPaymentResponse(BaseModel):
    is_valid: bool
    status: PaymentStatus
    payment_id: str
    transaction_id: Optional[str] = None
    corrected: bool = False


class PaymentResponse(BaseModel):
    """Payment as exposed over the API; secrets are left out."""

    id: str
    order_id: str
    customer_id: str
    amount: Decimal
    currency: str
    refunded_amount: Decimal
    method: PaymentMethod
    provider: PaymentProvider
    provider_intent_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    status: PaymentStatus
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    reconciled_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: PaymentRecord) -> "PaymentResponse":
        return cls.model_validate(
            record.model_dump(exclude={"client_secret", "idempotency_key", "intent_expires_at"})
        )


class PaymentListResponse(BaseModel):
    items: List[PaymentResponse]
    total: int
    page: int
    limit: int
    total_pages: int

    @classmethod
    def from_page(cls, page: PaymentPage) -> "PaymentListResponse":
        return cls(
            items=[PaymentResponse.from_record(p) for p in page.items],
            total=page.total,
            page=page.page,
            limit=page.limit,
            total_pages=page.total_pages,
        )


class RefundRequest(BaseModel):
    """Request schema for refunding a payment."""

    amount: Optional[Decimal] = Field(
        default=None, gt=0, description="Partial refund amount (full refundable balance if not specified)"
    )
    reason: str = Field(..., min_length=1, description="Refund reason")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"amount": "500.00", "reason": "Item returned"},
                {"reason": "Order cancelled"},
            ]
        }
    }


class RefundResponse(BaseModel):
    payment: PaymentResponse
    refund: RefundRecord


class CaptureRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0, description="Amount to capture")


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, description="Cancellation reason")


class RetryRequest(BaseModel):
    payment_method: Optional[PaymentMethod] = Field(
        default=None, description="Switch to another method for the retry"
    )


class ValidateAmountRequest(BaseModel):
    order_id: str
    amount: Decimal


class ReconcileRequest(BaseModel):
    start_date: datetime = Field(..., description="Range start, inclusive")
    end_date: datetime = Field(..., description="Range end, inclusive")
    mark_reconciled: bool = Field(
        default=False, description="Flag payments without discrepancies as reconciled"
    )


class SavePaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(..., min_length=1, description="Stripe payment method id (pm_...)")
    set_as_default: bool = Field(default=False, description="Make it the customer's default card")


class PaymentMethodListResponse(BaseModel):
    payment_methods: List[SavedPaymentMethod]


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="processed, duplicate or ignored")
    event_id: str = Field(..., description="Provider event ID")
