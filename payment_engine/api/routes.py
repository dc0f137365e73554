"""
API routes for payment orchestration.

Domain errors propagate to the ``PaymentError`` handler in ``main``; routes
only translate between schemas and services.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payment_engine.api.container import ServiceContainer
from payment_engine.core.types import (
    AmountValidation,
    HistoryEntry,
    PaymentAnalytics,
    PaymentFilters,
    PaymentMethod,
    PaymentProvider,
    PaymentStatistics,
    PaymentStatus,
    ReconciliationReport,
    RefundRecord,
    StatusCheck,
)
from payment_engine.integrations.mapper import SavedPaymentMethod

from .schemas import (
    CancelRequest,
    CaptureRequest,
    CreateIntentRequest,
    HealthCheckResponse,
    IntentResponse,
    PaymentListResponse,
    PaymentMethodListResponse,
    PaymentResponse,
    ProcessPaymentRequest,
    ReconcileRequest,
    RefundRequest,
    RefundResponse,
    RetryRequest,
    SavePaymentMethodRequest,
    ValidateAmountRequest,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

payment_router = APIRouter(prefix="/payments", tags=["payments"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


@payment_router.post(
    "/intent",
    response_model=IntentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment intent",
    description="Create a gateway intent and a PENDING payment, idempotent per key",
)
async def create_intent(
    request: CreateIntentRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    container: ServiceContainer = Depends(get_container),
) -> Any:
    logger.info(
        "api_create_intent_request",
        order_id=request.order_id,
        provider=request.provider.value,
        amount=str(request.amount),
    )
    return await container.orchestrator.create_payment_intent(
        order_id=request.order_id,
        customer_id=request.customer_id,
        amount=request.amount,
        provider=request.provider,
        method=request.payment_method,
        currency=request.currency,
        metadata=request.metadata,
        idempotency_key=idempotency_key or request.idempotency_key,
    )


@payment_router.post("/process", response_model=PaymentResponse, summary="Process a payment")
async def process_payment(
    request: ProcessPaymentRequest,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    payment = await container.orchestrator.process_payment(
        request.payment_id, request.provider_transaction_id, request.signature
    )
    return PaymentResponse.from_record(payment)


@payment_router.post(
    "/verify",
    response_model=VerifyPaymentResponse,
    summary="Verify a payment against its gateway",
)
async def verify_payment(
    request: VerifyPaymentRequest,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    return await container.orchestrator.verify_payment(
        request.payment_id, request.provider_transaction_id, request.signature
    )


@payment_router.get("", response_model=PaymentListResponse, summary="List payments")
async def list_payments(
    status_filter: Optional[List[PaymentStatus]] = Query(default=None, alias="status"),
    method: Optional[List[PaymentMethod]] = Query(default=None),
    provider: Optional[PaymentProvider] = None,
    customer_id: Optional[str] = None,
    order_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    min_amount: Optional[Decimal] = None,
    max_amount: Optional[Decimal] = None,
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    sort_by: str = "created_at",
    sort_order: str = "desc",
    container: ServiceContainer = Depends(get_container),
) -> Any:
    filters = PaymentFilters(
        statuses=status_filter,
        methods=method,
        provider=provider,
        customer_id=customer_id,
        order_id=order_id,
        transaction_id=transaction_id,
        created_from=start_date,
        created_to=end_date,
        min_amount=min_amount,
        max_amount=max_amount,
    )
    result = await container.orchestrator.list_payments(
        filters, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order
    )
    return PaymentListResponse.from_page(result)


@payment_router.get("/statistics", response_model=PaymentStatistics, summary="Payment statistics")
async def get_statistics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    return await container.orchestrator.get_statistics(start_date, end_date)


@payment_router.get("/analytics", response_model=PaymentAnalytics, summary="Payment analytics")
async def get_analytics(
    period: str = "month",
    group_by: str = "day",
    container: ServiceContainer = Depends(get_container),
) -> Any:
    return await container.orchestrator.get_analytics(period, group_by)


@payment_router.post(
    "/reconcile",
    response_model=ReconciliationReport,
    summary="Run reconciliation",
    description="Compare ledger payments in a date range with gateway records",
)
async def run_reconciliation(
    request: ReconcileRequest,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    logger.info(
        "api_reconciliation_started",
        start_date=request.start_date.isoformat(),
        end_date=request.end_date.isoformat(),
    )
    return await container.reconciliation.reconcile(
        request.start_date, request.end_date, mark_reconciled=request.mark_reconciled
    )


@payment_router.post(
    "/validate-amount",
    response_model=AmountValidation,
    summary="Check an amount against the order total",
)
async def validate_amount(
    request: ValidateAmountRequest,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    return await container.orchestrator.validate_amount(request.order_id, request.amount)


@payment_router.get("/order/{order_id}", response_model=List[PaymentResponse])
async def get_payments_by_order(
    order_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    payments = await container.orchestrator.get_payments_by_order(order_id)
    return [PaymentResponse.from_record(p) for p in payments]


@payment_router.get("/transaction/{transaction_id}", response_model=PaymentResponse)
async def get_payment_by_transaction(
    transaction_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    payment = await container.orchestrator.get_payment_by_transaction(transaction_id)
    return PaymentResponse.from_record(payment)


@payment_router.post(
    "/webhooks/{provider}",
    response_model=WebhookResponse,
    summary="Gateway webhook endpoint",
    description="Verify, deduplicate and apply a gateway webhook",
)
async def gateway_webhook(
    provider: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    # Signatures cover the raw bytes; never re-serialise the body
    body = await request.body()
    return await container.webhooks.handle(provider, body, dict(request.headers))


@payment_router.get(
    "/customers/{customer_id}/methods",
    response_model=PaymentMethodListResponse,
    summary="List saved payment methods",
)
async def get_payment_methods(
    customer_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    methods = await container.payment_methods.get_payment_methods(customer_id)
    return {"payment_methods": methods}


@payment_router.post(
    "/customers/{customer_id}/methods",
    response_model=SavedPaymentMethod,
    status_code=status.HTTP_201_CREATED,
    summary="Save a payment method",
)
async def save_payment_method(
    customer_id: str,
    request: SavePaymentMethodRequest,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    return await container.payment_methods.save_payment_method(
        customer_id, request.payment_method_id, set_as_default=request.set_as_default
    )


@payment_router.delete(
    "/customers/{customer_id}/methods/{payment_method_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a saved payment method",
)
async def delete_payment_method(
    customer_id: str,
    payment_method_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Response:
    await container.payment_methods.delete_payment_method(customer_id, payment_method_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@payment_router.get("/refunds/{refund_id}", response_model=RefundRecord, summary="Get a refund")
async def get_refund(
    refund_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    return await container.refunds.get_refund(refund_id)


@payment_router.get("/{payment_id}", response_model=PaymentResponse, summary="Get a payment")
async def get_payment(
    payment_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    payment = await container.orchestrator.get_payment(payment_id)
    return PaymentResponse.from_record(payment)


@payment_router.get("/{payment_id}/status", response_model=StatusCheck)
async def get_payment_status(
    payment_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    return await container.orchestrator.get_payment_status(payment_id)


@payment_router.get("/{payment_id}/history", response_model=List[HistoryEntry])
async def get_payment_history(
    payment_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    return await container.orchestrator.get_history(payment_id)


@payment_router.get("/{payment_id}/refunds", response_model=List[RefundRecord])
async def list_refunds(
    payment_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    return await container.refunds.list_refunds(payment_id)


@payment_router.post(
    "/{payment_id}/refund",
    response_model=RefundResponse,
    summary="Refund a payment",
    description="Create a full or partial refund for a payment",
)
async def refund_payment(
    payment_id: str,
    request: RefundRequest,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    logger.info(
        "api_refund_payment_request",
        payment_id=payment_id,
        amount=str(request.amount) if request.amount is not None else None,
    )
    payment, refund = await container.refunds.refund_payment(
        payment_id, amount=request.amount, reason=request.reason
    )
    return RefundResponse(payment=PaymentResponse.from_record(payment), refund=refund)


@payment_router.post("/{payment_id}/capture", response_model=PaymentResponse)
async def capture_payment(
    payment_id: str,
    request: Optional[CaptureRequest] = None,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    amount = request.amount if request else None
    payment = await container.orchestrator.capture_payment(payment_id, amount)
    return PaymentResponse.from_record(payment)


@payment_router.post("/{payment_id}/cancel", response_model=PaymentResponse)
async def cancel_payment(
    payment_id: str,
    request: Optional[CancelRequest] = None,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    reason = request.reason if request else None
    payment = await container.orchestrator.cancel_payment(payment_id, reason)
    return PaymentResponse.from_record(payment)


@payment_router.post("/{payment_id}/retry", response_model=PaymentResponse)
async def retry_payment(
    payment_id: str,
    request: Optional[RetryRequest] = None,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    method = request.payment_method if request else None
    payment = await container.orchestrator.retry_failed_payment(payment_id, method)
    return PaymentResponse.from_record(payment)


@payment_router.post("/{payment_id}/reconciled", response_model=PaymentResponse)
async def mark_reconciled(
    payment_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Any:
    payment = await container.reconciliation.mark_reconciled(payment_id)
    await container.orchestrator.invalidate(payment_id)
    return PaymentResponse.from_record(payment)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await container.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    return await container.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    result = await container.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
