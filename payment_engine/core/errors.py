"""
Error taxonomy for the payment engine.

Each error carries a stable machine-readable ``code`` and the HTTP status
the API layer renders it with.
"""
from enum import Enum
from typing import Any, Optional


class PaymentError(Exception):
    """Base exception for payment errors."""

    code = "PAYMENT_ERROR"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details


class PaymentValidationError(PaymentError):
    """Raised when a request fails validation."""

    code = "VALIDATION_ERROR"
    status_code = 400


class PaymentNotFoundError(PaymentError):
    code = "PAYMENT_NOT_FOUND"
    status_code = 404

    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} not found", payment_id=payment_id)
        self.payment_id = payment_id


class PaymentProcessingError(PaymentError):
    """Raised when an operation is not allowed in the payment's current status."""

    code = "INVALID_PAYMENT_STATUS"
    status_code = 409

    def __init__(
        self,
        message: str,
        current_status: Any = None,
        attempted_status: Any = None,
        **details: Any,
    ):
        super().__init__(message, **details)
        self.current_status = current_status
        self.attempted_status = attempted_status


class StaleTransitionError(PaymentError):
    """
    A conditional status update matched no row.

    The payment was moved by a concurrent writer (or redelivered webhook)
    and callers treat this as "already handled".
    """

    code = "STALE_TRANSITION"
    status_code = 409

    def __init__(self, payment_id: str, target_status: Any):
        super().__init__(
            f"Payment {payment_id} already left the expected status",
            payment_id=payment_id,
        )
        self.payment_id = payment_id
        self.target_status = target_status


class RefundError(PaymentError):
    code = "REFUND_NOT_ALLOWED"
    status_code = 422


class DuplicateRefundError(RefundError):
    """The gateway refund id has already been recorded against a payment."""

    def __init__(self, provider_refund_id: str):
        super().__init__(
            f"Refund {provider_refund_id} already recorded",
            provider_refund_id=provider_refund_id,
        )
        self.provider_refund_id = provider_refund_id


class RefundNotFoundError(PaymentError):
    code = "REFUND_NOT_FOUND"
    status_code = 404

    def __init__(self, refund_id: str):
        super().__init__(f"Refund {refund_id} not found", refund_id=refund_id)
        self.refund_id = refund_id


class WebhookVerificationError(PaymentError):
    """Raised when a webhook cannot be authenticated or parsed."""

    code = "WEBHOOK_VERIFICATION_FAILED"
    status_code = 400


class OrderServiceError(PaymentError):
    """The order service could not be reached or answered unexpectedly."""

    code = "ORDER_SERVICE_UNAVAILABLE"
    status_code = 503


class GatewayErrorKind(Enum):
    """Classification of gateway errors for retry logic and HTTP mapping."""

    CARD_DECLINED = "card_declined"
    RATE_LIMITED = "rate_limited"  # Retry with backoff
    INVALID_REQUEST = "invalid_request"
    CONNECTION = "connection"  # Retry with backoff
    AUTHENTICATION = "authentication"
    UNKNOWN = "unknown"


RETRYABLE_GATEWAY_ERRORS = frozenset(
    {GatewayErrorKind.CONNECTION, GatewayErrorKind.RATE_LIMITED}
)


class GatewayError(PaymentError):
    """A classified failure reported by (or while reaching) a gateway."""

    code = "PAYMENT_GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        kind: GatewayErrorKind,
        provider: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message, kind=kind.value, provider=provider)
        self.kind = kind
        self.provider = provider
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_GATEWAY_ERRORS

    @property
    def status_code(self) -> int:  # type: ignore[override]
        if self.kind is GatewayErrorKind.CARD_DECLINED:
            return 402
        if self.kind is GatewayErrorKind.RATE_LIMITED:
            return 429
        return 502
