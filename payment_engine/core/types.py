"""Domain enums and read models shared by the ledger and the services."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentStatus(str, Enum):
    """Lifecycle status of a payment."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    CANCELLED = "CANCELLED"


# Statuses in which money has been collected from the customer
SETTLED_STATUSES = (
    PaymentStatus.PAID,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED,
)

REFUNDABLE_STATUSES = (PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED)


class PaymentMethod(str, Enum):
    CARD = "CARD"
    UPI = "UPI"
    NET_BANKING = "NET_BANKING"
    WALLET = "WALLET"
    EMI = "EMI"
    COD = "COD"


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    RAZORPAY = "razorpay"


class HistoryAction(str, Enum):
    CREATED = "CREATED"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"
    RETRIED = "RETRIED"
    VERIFIED = "VERIFIED"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class PaymentRecord(BaseModel):
    """Immutable snapshot of a ledger row."""

    model_config = ConfigDict(frozen=True)

    id: str
    order_id: str
    customer_id: str
    amount: Decimal
    currency: str
    refunded_amount: Decimal = Decimal("0")
    method: PaymentMethod
    provider: PaymentProvider
    provider_intent_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    status: PaymentStatus
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    client_secret: Optional[str] = None
    intent_expires_at: Optional[datetime] = None
    reconciled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def refundable_amount(self) -> Decimal:
        return self.amount - self.refunded_amount

    @property
    def is_reconciled(self) -> bool:
        return self.reconciled_at is not None


class HistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    action: HistoryAction
    status: PaymentStatus
    amount: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    reason: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class RefundRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    payment_id: str
    amount: Decimal
    currency: str
    reason: Optional[str] = None
    provider_refund_id: str
    status: RefundStatus
    processed_at: Optional[datetime] = None
    created_at: datetime


class PaymentFilters(BaseModel):
    """Composable listing filters; every field is optional."""

    statuses: Optional[List[PaymentStatus]] = None
    methods: Optional[List[PaymentMethod]] = None
    provider: Optional[PaymentProvider] = None
    customer_id: Optional[str] = None
    order_id: Optional[str] = None
    transaction_id: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None


class PaymentPage(BaseModel):
    items: List[PaymentRecord]
    total: int
    page: int
    limit: int
    total_pages: int


class IntentResult(BaseModel):
    """What a caller needs to complete checkout on the client side."""

    model_config = ConfigDict(frozen=True)

    payment_id: str
    provider: PaymentProvider
    provider_intent_id: str
    client_secret: Optional[str] = None
    amount: Decimal
    currency: str
    status: PaymentStatus


class VerificationResult(BaseModel):
    is_valid: bool
    status: PaymentStatus
    payment_id: str
    transaction_id: Optional[str] = None
    corrected: bool = False


class StatusCheck(BaseModel):
    payment_id: str
    status: PaymentStatus
    amount: Decimal
    currency: str
    refunded_amount: Decimal
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    last_updated: datetime


class AmountValidation(BaseModel):
    order_id: str
    amount: Decimal
    order_total: Decimal
    is_valid: bool


class MethodBreakdown(BaseModel):
    count: int = 0
    amount: Decimal = Decimal("0")


class PaymentStatistics(BaseModel):
    total_payments: int = 0
    successful_payments: int = 0
    failed_payments: int = 0
    pending_payments: int = 0
    refunded_payments: int = 0
    cancelled_payments: int = 0
    total_amount: Decimal = Decimal("0")
    refunded_amount: Decimal = Decimal("0")
    net_amount: Decimal = Decimal("0")
    average_payment_value: Decimal = Decimal("0")
    success_rate: float = 0.0
    method_breakdown: Dict[str, MethodBreakdown] = Field(default_factory=dict)


class TimeSeriesBucket(BaseModel):
    bucket: str
    count: int = 0
    amount: Decimal = Decimal("0")
    success_count: int = 0
    failure_count: int = 0


class PaymentAnalytics(BaseModel):
    period: str
    group_by: str
    start: datetime
    end: datetime
    total_payments: int = 0
    total_amount: Decimal = Decimal("0")
    success_rate: float = 0.0
    time_series: List[TimeSeriesBucket] = Field(default_factory=list)


class Discrepancy(BaseModel):
    payment_id: str
    reason: str


class ReconciliationReport(BaseModel):
    total_processed: int = 0
    reconciled_count: int = 0
    discrepancies: List[Discrepancy] = Field(default_factory=list)
