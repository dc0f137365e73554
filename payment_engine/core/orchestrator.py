"""
Payment orchestrator.

Owns the payment state machine. Every status change goes through the
ledger's conditional transition, so concurrent callers (a client poll racing
a webhook, two pods processing the same payment) resolve to exactly one
winner; the loser sees ``StaleTransitionError`` and treats the work as
already done.

Create flow:
1. Validate amount and currency
2. Replay a live result for the idempotency key, under a cache lock
3. Check the amount against the order service
4. Create the gateway intent
5. Persist the PENDING payment (history and outbox in the same transaction)
"""
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog
from redis.exceptions import LockError
from sqlalchemy.exc import IntegrityError

from payment_engine.config import Settings
from payment_engine.core.cache import Cache, payment_cache_key
from payment_engine.core.errors import (
    GatewayError,
    PaymentError,
    PaymentNotFoundError,
    PaymentProcessingError,
    PaymentValidationError,
    StaleTransitionError,
)
from payment_engine.core.idempotency import IdempotencyManager, intent_result
from payment_engine.core.ledger import HistoryWrite, PaymentLedger
from payment_engine.core.outbox import EventTopic
from payment_engine.core.status import can_transition
from payment_engine.core.types import (
    SETTLED_STATUSES,
    AmountValidation,
    HistoryAction,
    HistoryEntry,
    IntentResult,
    PaymentAnalytics,
    PaymentFilters,
    PaymentMethod,
    PaymentPage,
    PaymentProvider,
    PaymentRecord,
    PaymentStatistics,
    PaymentStatus,
    StatusCheck,
    VerificationResult,
)
from payment_engine.database.models import utcnow
from payment_engine.integrations.base import PaymentGateway
from payment_engine.integrations.mapper import NormalisedPayment
from payment_engine.integrations.orders import OrderService
from payment_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
IN_FLIGHT = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)
CHECKOUT_EXPIRED_REASON = "Checkout expired before payment"

# Gateway-reported states verify_payment may move a payment to
CORRECTABLE_STATUSES = (
    PaymentStatus.PROCESSING,
    PaymentStatus.PAID,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
)


def normalise_amount(value: Any) -> Decimal:
    """
    Parse a major-unit amount with at most two decimal places.

    Raises:
        PaymentValidationError: If the value is not a number or has sub-cent precision
    """
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise PaymentValidationError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise PaymentValidationError(f"Invalid amount: {value!r}")
    if amount != amount.quantize(CENT, rounding=ROUND_HALF_UP):
        raise PaymentValidationError("Amount cannot have more than two decimal places")
    return amount.quantize(CENT)


def gateway_snapshot(payment: NormalisedPayment) -> Dict[str, Any]:
    return payment.model_dump(
        mode="json",
        include={"provider_payment_id", "raw_status", "status", "payment_method", "captured"},
    )


def failure_reason(error: BaseException) -> str:
    if isinstance(error, GatewayError):
        return f"{error.kind.value}: {error.message}"
    if isinstance(error, PaymentError):
        return error.message
    return f"Unexpected error during processing ({type(error).__name__})"


class PaymentOrchestrator:
    """
    Drives payments through their lifecycle.

    Gateways are injected as a provider -> adapter mapping built once at
    startup.
    """

    def __init__(
        self,
        ledger: PaymentLedger,
        gateways: Mapping[PaymentProvider, PaymentGateway],
        order_service: OrderService,
        cache: Cache,
        settings: Settings,
        idempotency: Optional[IdempotencyManager] = None,
    ):
        self.ledger = ledger
        self.gateways = dict(gateways)
        self.order_service = order_service
        self.cache = cache
        self.settings = settings
        self.idempotency = idempotency or IdempotencyManager(
            cache, ledger, settings.idempotency_cache_ttl
        )

    def gateway_for(self, provider: PaymentProvider) -> PaymentGateway:
        try:
            return self.gateways[PaymentProvider(provider)]
        except (KeyError, ValueError) as e:
            raise PaymentValidationError(f"Payment provider '{provider}' is not configured") from e

    async def invalidate(self, payment_id: str) -> None:
        await self.cache.delete(payment_cache_key(payment_id))

    # ------------------------------------------------------------------
    # Intent creation
    # ------------------------------------------------------------------

    def validate_amount_bounds(self, amount: Decimal, currency: str) -> None:
        if amount < self.settings.min_payment_amount:
            raise PaymentValidationError(
                f"Amount must be at least {self.settings.min_payment_amount}"
            )
        if amount > self.settings.max_payment_amount:
            raise PaymentValidationError(
                f"Amount cannot exceed {self.settings.max_payment_amount}"
            )
        if currency not in self.settings.get_supported_currencies():
            raise PaymentValidationError(
                f"Currency {currency} is not supported",
                supported=self.settings.get_supported_currencies(),
            )

    async def create_payment_intent(
        self,
        order_id: str,
        customer_id: str,
        amount: Any,
        provider: PaymentProvider,
        method: PaymentMethod = PaymentMethod.CARD,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> IntentResult:
        """
        Create a gateway intent and the PENDING payment behind it.

        Args:
            order_id: Order being paid
            customer_id: Paying customer
            amount: Major-unit amount, must equal the order total
            provider: Gateway to use
            method: Payment method
            currency: ISO code, defaults to the configured currency
            metadata: Free-form data kept on the payment
            idempotency_key: Replays the prior result while its intent is live

        Returns:
            IntentResult: Payment id and what checkout needs

        Raises:
            PaymentValidationError: On bounds, currency or order total mismatch
            GatewayError: If the gateway rejects the intent
        """
        amount = normalise_amount(amount)
        currency = (currency or self.settings.default_currency).upper()
        self.validate_amount_bounds(amount, currency)
        gateway = self.gateway_for(provider)
        method = PaymentMethod(method)

        log = logger.bind(order_id=order_id, provider=gateway.provider.value)
        log.info("creating_payment_intent", amount=str(amount), currency=currency)

        if not idempotency_key:
            return await self._create_intent(
                gateway, order_id, customer_id, amount, currency, method, metadata, None
            )

        prior = await self.idempotency.check(idempotency_key)
        if prior:
            return prior

        try:
            async with self.cache.lock(f"intent:{idempotency_key}", self.settings.redis_lock_timeout):
                prior = await self.idempotency.check(idempotency_key)
                if prior:
                    return prior
                if await self.ledger.find_by_idempotency_key(idempotency_key):
                    raise PaymentValidationError(
                        "Idempotency key belongs to an expired intent; use a new key"
                    )
                return await self._create_intent(
                    gateway, order_id, customer_id, amount, currency, method, metadata, idempotency_key
                )
        except LockError as e:
            raise PaymentProcessingError(
                "A request with this idempotency key is already in progress"
            ) from e

    async def _create_intent(
        self,
        gateway: PaymentGateway,
        order_id: str,
        customer_id: str,
        amount: Decimal,
        currency: str,
        method: PaymentMethod,
        metadata: Optional[Dict[str, Any]],
        idempotency_key: Optional[str],
    ) -> IntentResult:
        order_total = normalise_amount(await self.order_service.get_order_total(order_id))
        if order_total != amount:
            raise PaymentValidationError(
                f"Payment amount {amount} does not match order total {order_total}",
                order_id=order_id,
            )

        intent = await gateway.create_intent(
            amount,
            currency,
            metadata={
                "order_id": order_id,
                "customer_id": customer_id,
                "payment_method": method.value,
            },
            idempotency_key=idempotency_key,
        )

        try:
            payment = await self.ledger.create(
                order_id=order_id,
                customer_id=customer_id,
                amount=amount,
                currency=currency,
                method=method,
                provider=gateway.provider,
                provider_intent_id=intent.provider_intent_id,
                client_secret=intent.client_secret,
                metadata=metadata,
                idempotency_key=idempotency_key,
                intent_expires_at=utcnow() + timedelta(hours=self.settings.intent_expiry_hours),
            )
        except IntegrityError:
            existing = (
                await self.ledger.find_by_idempotency_key(idempotency_key)
                if idempotency_key
                else None
            )
            if existing is None:
                raise
            logger.info("idempotency_race_resolved", payment_id=existing.id)
            return intent_result(existing)

        if idempotency_key:
            await self.idempotency.store(idempotency_key, payment)

        metrics.record_intent_created(gateway.provider.value, currency)
        logger.info(
            "payment_intent_created",
            payment_id=payment.id,
            order_id=order_id,
            provider_intent_id=intent.provider_intent_id,
        )
        return intent_result(payment)

    # ------------------------------------------------------------------
    # Transitions shared with the webhook dispatcher
    # ------------------------------------------------------------------

    async def _mark_paid(
        self,
        payment: PaymentRecord,
        gateway_payment: NormalisedPayment,
        expected: Sequence[PaymentStatus],
        action: HistoryAction = HistoryAction.PAID,
        extra_topics: Sequence[str] = (),
        details: Optional[Dict[str, Any]] = None,
    ) -> PaymentRecord:
        record = await self.ledger.transition(
            payment.id,
            expected,
            PaymentStatus.PAID,
            history=HistoryWrite(
                action=action,
                amount=payment.amount,
                transaction_id=gateway_payment.provider_payment_id,
                details=details or {},
            ),
            fields={
                "provider_transaction_id": gateway_payment.provider_payment_id,
                "paid_at": utcnow(),
            },
            clear_failure_reason=True,
            metadata_patch={"gateway_payment": gateway_snapshot(gateway_payment)},
            topics=[EventTopic.PAYMENT_SUCCESS, EventTopic.ORDER_PAYMENT_UPDATED, *extra_topics],
        )
        await self.invalidate(payment.id)
        return record

    async def _mark_failed(
        self,
        payment_id: str,
        reason: str,
        expected: Sequence[PaymentStatus],
        action: HistoryAction = HistoryAction.FAILED,
        transaction_id: Optional[str] = None,
    ) -> PaymentRecord:
        # provider_transaction_id is reserved for attempts that were collected
        record = await self.ledger.transition(
            payment_id,
            expected,
            PaymentStatus.FAILED,
            history=HistoryWrite(action=action, reason=reason, transaction_id=transaction_id),
            fields={"failure_reason": reason},
            metadata_patch={"failed_attempt_id": transaction_id} if transaction_id else None,
            topics=[EventTopic.PAYMENT_FAILED, EventTopic.ORDER_PAYMENT_UPDATED],
        )
        await self.invalidate(payment_id)
        return record

    async def _fail_best_effort(self, payment_id: str, reason: str) -> None:
        """Mark an in-flight payment FAILED after an error; never raises."""
        try:
            await self._mark_failed(payment_id, reason, IN_FLIGHT)
        except StaleTransitionError:
            logger.info("payment_already_settled", payment_id=payment_id)
        except Exception as e:
            logger.error(
                "payment_fail_marking_error",
                payment_id=payment_id,
                reason=reason,
                error=str(e),
            )

    async def apply_gateway_success(
        self, payment: PaymentRecord, gateway_payment: NormalisedPayment, source: str
    ) -> Optional[PaymentRecord]:
        """
        Settle an in-flight payment the gateway reports as collected.

        Returns None when another writer already moved the payment.
        """
        try:
            return await self._mark_paid(
                payment, gateway_payment, IN_FLIGHT, details={"source": source}
            )
        except StaleTransitionError:
            return None

    async def apply_gateway_failure(
        self, payment: PaymentRecord, reason: str, transaction_id: Optional[str] = None
    ) -> Optional[PaymentRecord]:
        try:
            return await self._mark_failed(
                payment.id, reason, IN_FLIGHT, transaction_id=transaction_id
            )
        except StaleTransitionError:
            return None

    async def apply_gateway_cancellation(
        self, payment: PaymentRecord, reason: str
    ) -> Optional[PaymentRecord]:
        try:
            return await self._mark_cancelled(payment.id, reason)
        except StaleTransitionError:
            return None

    async def expire_abandoned_intents(
        self, now: Optional[datetime] = None, limit: int = 100
    ) -> List[PaymentRecord]:
        """
        Cancel PENDING payments whose intent expired unpaid.

        Only PENDING payments are touched; one that a confirmation claimed in
        the meantime is skipped. The gateway intent is cancelled afterwards,
        best effort, so it can no longer be confirmed.

        Returns:
            List[PaymentRecord]: The payments that were cancelled
        """
        cancelled = []
        for payment in await self.ledger.find_expired_intents(now=now, limit=limit):
            try:
                record = await self._mark_cancelled(
                    payment.id, CHECKOUT_EXPIRED_REASON, expected=[PaymentStatus.PENDING]
                )
            except StaleTransitionError:
                logger.info("expired_intent_already_moved", payment_id=payment.id)
                continue
            try:
                await self.gateway_for(payment.provider).cancel(
                    payment.provider_intent_id, "abandoned"
                )
            except GatewayError as e:
                logger.warning(
                    "gateway_cancel_failed",
                    payment_id=payment.id,
                    kind=e.kind.value,
                    error=e.message,
                )
            cancelled.append(record)
        return cancelled

    async def _mark_cancelled(
        self,
        payment_id: str,
        reason: Optional[str],
        expected: Sequence[PaymentStatus] = IN_FLIGHT,
    ) -> PaymentRecord:
        record = await self.ledger.transition(
            payment_id,
            expected,
            PaymentStatus.CANCELLED,
            history=HistoryWrite(action=HistoryAction.CANCELLED, reason=reason),
            metadata_patch={"cancellation_reason": reason},
            topics=[EventTopic.PAYMENT_CANCELLED, EventTopic.ORDER_PAYMENT_UPDATED],
        )
        await self.invalidate(payment_id)
        return record

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def process_payment(
        self,
        payment_id: str,
        provider_transaction_id: Optional[str] = None,
        signature: Optional[str] = None,
    ) -> PaymentRecord:
        """
        Confirm a PENDING payment with its gateway.

        The payment is first claimed (PENDING -> PROCESSING). A caller that
        loses the claim gets the current state back without side effects.
        Any error after the claim marks the payment FAILED before it
        propagates.

        Raises:
            PaymentProcessingError: If the payment is not PENDING
            PaymentValidationError: If the checkout signature is missing or invalid
            GatewayError: If the gateway call fails
        """
        payment = await self.ledger.get(payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise PaymentProcessingError(
                f"Payment {payment_id} is {payment.status.value}; only PENDING payments "
                f"can be processed",
                current_status=payment.status,
                attempted_status=PaymentStatus.PROCESSING,
            )
        gateway = self.gateway_for(payment.provider)
        log = logger.bind(payment_id=payment_id, provider=gateway.provider.value)

        try:
            await self.ledger.transition(
                payment_id,
                [PaymentStatus.PENDING],
                PaymentStatus.PROCESSING,
                history=HistoryWrite(
                    action=HistoryAction.PROCESSING, transaction_id=provider_transaction_id
                ),
            )
        except StaleTransitionError:
            log.info("payment_claimed_elsewhere")
            return await self.ledger.get(payment_id)

        try:
            if gateway.requires_payment_signature and not (
                provider_transaction_id
                and signature
                and gateway.verify_payment_signature(
                    payment.provider_intent_id, provider_transaction_id, signature
                )
            ):
                raise PaymentValidationError("Invalid payment signature")

            result = await gateway.retrieve_payment(
                payment.provider_intent_id, provider_transaction_id
            )
            if result.status == PaymentStatus.PAID:
                record = await self._mark_paid(payment, result, [PaymentStatus.PROCESSING])
                log.info("payment_succeeded", transaction_id=result.provider_payment_id)
            elif result.status == PaymentStatus.PROCESSING:
                # Authorised or still settling; capture or a webhook finishes it
                record = await self.ledger.get(payment_id)
                log.info("payment_awaiting_gateway", gateway_status=result.raw_status)
            else:
                reason = result.failure_reason or f"Gateway reported status '{result.raw_status}'"
                record = await self._mark_failed(
                    payment_id,
                    reason,
                    [PaymentStatus.PROCESSING],
                    transaction_id=provider_transaction_id,
                )
                log.warning("payment_failed", reason=reason)
        except StaleTransitionError:
            log.info("payment_settled_concurrently")
            return await self.ledger.get(payment_id)
        except Exception as e:
            log.error("payment_processing_error", error=str(e), error_class=type(e).__name__)
            await self._fail_best_effort(payment_id, failure_reason(e))
            raise

        await self.invalidate(payment_id)
        return record

    async def verify_payment(
        self,
        payment_id: str,
        provider_transaction_id: Optional[str] = None,
        signature: Optional[str] = None,
    ) -> VerificationResult:
        """
        Compare the ledger with the gateway and correct drift.

        Only forward moves that are edges of the flow table are applied;
        anything else is logged and left for reconciliation.
        """
        payment = await self.ledger.get(payment_id)
        gateway = self.gateway_for(payment.provider)
        transaction_id = provider_transaction_id or payment.provider_transaction_id

        if signature is not None and gateway.requires_payment_signature:
            if not provider_transaction_id or not gateway.verify_payment_signature(
                payment.provider_intent_id, provider_transaction_id, signature
            ):
                logger.warning("payment_verification_signature_invalid", payment_id=payment_id)
                return VerificationResult(
                    is_valid=False,
                    status=payment.status,
                    payment_id=payment_id,
                    transaction_id=payment.provider_transaction_id,
                )

        result = await gateway.retrieve_payment(payment.provider_intent_id, transaction_id)
        target = result.status
        corrected = False
        record = payment

        if target != payment.status and target in CORRECTABLE_STATUSES:
            if can_transition(payment.status, target):
                try:
                    record = await self._correct(payment, result)
                    corrected = True
                except StaleTransitionError:
                    record = await self.ledger.get(payment_id)
            else:
                logger.warning(
                    "payment_status_drift",
                    payment_id=payment_id,
                    local_status=payment.status.value,
                    gateway_status=result.raw_status,
                )

        return VerificationResult(
            is_valid=result.status in SETTLED_STATUSES,
            status=record.status,
            payment_id=payment_id,
            transaction_id=record.provider_transaction_id,
            corrected=corrected,
        )

    async def _correct(self, payment: PaymentRecord, result: NormalisedPayment) -> PaymentRecord:
        expected = [payment.status]
        if result.status == PaymentStatus.PAID:
            return await self._mark_paid(
                payment, result, expected, action=HistoryAction.VERIFIED
            )
        if result.status == PaymentStatus.FAILED:
            return await self._mark_failed(
                payment.id,
                result.failure_reason or f"Gateway reported status '{result.raw_status}'",
                expected,
                action=HistoryAction.VERIFIED,
            )
        record = await self.ledger.transition(
            payment.id,
            expected,
            result.status,
            history=HistoryWrite(
                action=HistoryAction.VERIFIED,
                reason=f"Gateway reported status '{result.raw_status}'",
            ),
            metadata_patch={"gateway_payment": gateway_snapshot(result)},
            topics=[EventTopic.ORDER_PAYMENT_UPDATED],
        )
        await self.invalidate(payment.id)
        return record

    async def capture_payment(self, payment_id: str, amount: Any = None) -> PaymentRecord:
        """
        Capture an authorised payment.

        Raises:
            PaymentProcessingError: If the payment is not in flight, the gateway
                has no delayed capture, or the intent is not capturable
        """
        payment = await self.ledger.get(payment_id)
        if payment.status not in IN_FLIGHT:
            raise PaymentProcessingError(
                f"Payment {payment_id} is {payment.status.value} and cannot be captured",
                current_status=payment.status,
                attempted_status=PaymentStatus.PAID,
            )
        gateway = self.gateway_for(payment.provider)
        if not gateway.supports_capture:
            raise PaymentProcessingError(
                f"{gateway.provider.value} does not support delayed capture"
            )

        capture_amount = normalise_amount(amount) if amount is not None else None
        if capture_amount is not None and not (0 < capture_amount <= payment.amount):
            raise PaymentValidationError(
                f"Capture amount must be between 0 and {payment.amount}"
            )

        current = await gateway.retrieve_payment(
            payment.provider_intent_id, payment.provider_transaction_id
        )
        if current.raw_status not in gateway.capturable_statuses:
            raise PaymentProcessingError(
                f"Payment {payment_id} is not capturable (gateway status "
                f"'{current.raw_status}')",
                current_status=payment.status,
            )

        captured = await gateway.capture(
            payment.provider_intent_id,
            current.provider_payment_id,
            capture_amount,
            payment.currency,
        )
        if captured.status != PaymentStatus.PAID:
            raise PaymentProcessingError(
                f"Capture did not settle payment {payment_id} (gateway status "
                f"'{captured.raw_status}')"
            )

        try:
            record = await self._mark_paid(
                payment,
                captured,
                IN_FLIGHT,
                extra_topics=[EventTopic.PAYMENT_CAPTURED],
                details={"captured_amount": str(capture_amount or payment.amount)},
            )
        except StaleTransitionError:
            return await self.ledger.get(payment_id)

        logger.info("payment_captured", payment_id=payment_id)
        return record

    async def cancel_payment(self, payment_id: str, reason: Optional[str] = None) -> PaymentRecord:
        """
        Cancel a payment that has not been collected.

        Gateway cancellation is best effort; the local transition always happens.
        """
        payment = await self.ledger.get(payment_id)
        if payment.status not in IN_FLIGHT:
            raise PaymentProcessingError(
                f"Payment {payment_id} is {payment.status.value} and cannot be cancelled",
                current_status=payment.status,
                attempted_status=PaymentStatus.CANCELLED,
            )

        gateway = self.gateway_for(payment.provider)
        try:
            await gateway.cancel(payment.provider_intent_id, reason)
        except GatewayError as e:
            logger.warning(
                "gateway_cancel_failed",
                payment_id=payment_id,
                kind=e.kind.value,
                error=e.message,
            )

        try:
            record = await self._mark_cancelled(payment_id, reason)
        except StaleTransitionError as e:
            current = await self.ledger.get(payment_id)
            raise PaymentProcessingError(
                f"Payment {payment_id} became {current.status.value} and cannot be cancelled",
                current_status=current.status,
                attempted_status=PaymentStatus.CANCELLED,
            ) from e

        logger.info("payment_cancelled", payment_id=payment_id, reason=reason)
        return record

    async def retry_failed_payment(
        self, payment_id: str, new_method: Optional[PaymentMethod] = None
    ) -> PaymentRecord:
        """Return a FAILED payment to PENDING for a fresh processing attempt."""
        payment = await self.ledger.get(payment_id)
        if payment.status != PaymentStatus.FAILED:
            raise PaymentProcessingError(
                f"Payment {payment_id} is {payment.status.value}; only FAILED payments "
                f"can be retried",
                current_status=payment.status,
                attempted_status=PaymentStatus.PENDING,
            )

        fields = {"method": PaymentMethod(new_method)} if new_method else None
        try:
            record = await self.ledger.transition(
                payment_id,
                [PaymentStatus.FAILED],
                PaymentStatus.PENDING,
                history=HistoryWrite(
                    action=HistoryAction.RETRIED,
                    reason=payment.failure_reason,
                    details={"new_method": new_method} if new_method else {},
                ),
                fields=fields,
                clear_failure_reason=True,
                topics=[EventTopic.PAYMENT_RETRY],
            )
        except StaleTransitionError as e:
            raise PaymentProcessingError(
                f"Payment {payment_id} was retried concurrently",
                attempted_status=PaymentStatus.PENDING,
            ) from e

        await self.invalidate(payment_id)
        logger.info("payment_retry_prepared", payment_id=payment_id)
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_payment(self, payment_id: str) -> PaymentRecord:
        """Read-through cached payment details."""
        key = payment_cache_key(payment_id)
        cached = await self.cache.get(key)
        if cached:
            return PaymentRecord.model_validate_json(cached)

        payment = await self.ledger.get(payment_id)
        await self.cache.set(key, payment.model_dump_json(), self.settings.cache_ttl_payment_seconds)
        return payment

    async def get_payment_status(self, payment_id: str) -> StatusCheck:
        payment = await self.ledger.get(payment_id)
        return StatusCheck(
            payment_id=payment.id,
            status=payment.status,
            amount=payment.amount,
            currency=payment.currency,
            refunded_amount=payment.refunded_amount,
            transaction_id=payment.provider_transaction_id,
            paid_at=payment.paid_at,
            last_updated=payment.updated_at,
        )

    async def list_payments(
        self,
        filters: Optional[PaymentFilters] = None,
        page: int = 1,
        limit: Optional[int] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> PaymentPage:
        return await self.ledger.find_all(
            filters,
            page=page,
            limit=limit or self.settings.default_page_size,
            sort_by=sort_by,
            sort_order=sort_order,
            max_limit=self.settings.max_page_size,
        )

    async def get_payments_by_order(self, order_id: str) -> List[PaymentRecord]:
        return await self.ledger.find_by_order_id(order_id)

    async def get_payment_by_transaction(self, transaction_id: str) -> PaymentRecord:
        payment = await self.ledger.find_by_provider_transaction_id(transaction_id)
        if payment is None:
            raise PaymentNotFoundError(transaction_id)
        return payment

    async def get_history(self, payment_id: str) -> List[HistoryEntry]:
        return await self.ledger.get_history(payment_id)

    async def get_statistics(
        self, created_from: Optional[datetime] = None, created_to: Optional[datetime] = None
    ) -> PaymentStatistics:
        return await self.ledger.get_statistics(created_from, created_to)

    async def get_analytics(self, period: str = "month", group_by: str = "day") -> PaymentAnalytics:
        return await self.ledger.get_analytics(period, group_by)

    async def validate_amount(self, order_id: str, amount: Any) -> AmountValidation:
        """Check a prospective payment amount against the order total."""
        amount = normalise_amount(amount)
        order_total = normalise_amount(await self.order_service.get_order_total(order_id))
        return AmountValidation(
            order_id=order_id,
            amount=amount,
            order_total=order_total,
            is_valid=amount == order_total,
        )
