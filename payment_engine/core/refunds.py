"""
Refund manager.

Refunds on a payment are serialised by a cache lock; the ledger's guarded
increment is the final authority on the refundable balance. Gateway refunds
that arrive only by webhook (issued from a dashboard) are applied once, keyed
by the provider refund id.
"""
import uuid
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Tuple

import structlog
from redis.exceptions import LockError

from payment_engine.core.cache import Cache, payment_cache_key
from payment_engine.core.errors import (
    DuplicateRefundError,
    PaymentValidationError,
    RefundError,
    RefundNotFoundError,
)
from payment_engine.core.ledger import PaymentLedger
from payment_engine.core.orchestrator import normalise_amount
from payment_engine.core.types import (
    REFUNDABLE_STATUSES,
    PaymentProvider,
    PaymentRecord,
    RefundRecord,
    RefundStatus,
)
from payment_engine.integrations.base import PaymentGateway
from payment_engine.integrations.mapper import NormalisedRefund
from payment_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DASHBOARD_REFUND_REASON = "Refund issued at gateway"


def ensure_refundable(payment: PaymentRecord, amount: Decimal) -> None:
    """
    Raises:
        RefundError: If the payment is not refundable or ``amount`` is out of range
    """
    if payment.status not in REFUNDABLE_STATUSES:
        raise RefundError(
            f"Payment in status {payment.status.value} cannot be refunded",
            payment_id=payment.id,
        )
    if amount <= 0:
        raise RefundError("Refund amount must be greater than zero", payment_id=payment.id)
    if amount > payment.refundable_amount:
        raise RefundError(
            f"Refund amount {amount} exceeds refundable balance {payment.refundable_amount}",
            payment_id=payment.id,
        )


class RefundManager:
    """Issues refunds through the gateway and records them in the ledger."""

    def __init__(
        self,
        ledger: PaymentLedger,
        gateways: Mapping[PaymentProvider, PaymentGateway],
        cache: Cache,
        lock_timeout: int = 30,
    ):
        self.ledger = ledger
        self.gateways = dict(gateways)
        self.cache = cache
        self.lock_timeout = lock_timeout

    def _gateway(self, provider: PaymentProvider) -> PaymentGateway:
        try:
            return self.gateways[provider]
        except KeyError as e:
            raise RefundError(f"Payment provider '{provider.value}' is not configured") from e

    async def refund_payment(
        self,
        payment_id: str,
        amount: Any = None,
        reason: Optional[str] = None,
    ) -> Tuple[PaymentRecord, RefundRecord]:
        """
        Refund part or all of a collected payment.

        Args:
            payment_id: Payment to refund
            amount: Major-unit amount, the full refundable balance when omitted
            reason: Why the refund was issued, required

        Returns:
            Tuple[PaymentRecord, RefundRecord]: Payment after the refund and the refund row

        Raises:
            PaymentValidationError: If the reason is missing
            RefundError: If the payment is not refundable or the amount is out of range
            GatewayError: If the gateway rejects the refund; local state is unchanged
        """
        if not reason or not reason.strip():
            raise PaymentValidationError("Refund reason is required")

        payment = await self.ledger.get(payment_id)
        refund_amount = (
            payment.refundable_amount if amount is None else normalise_amount(amount)
        )
        ensure_refundable(payment, refund_amount)
        gateway = self._gateway(payment.provider)

        try:
            async with self.cache.lock(f"refund:{payment_id}", self.lock_timeout):
                # Balance may have moved while waiting for the lock
                payment = await self.ledger.get(payment_id)
                ensure_refundable(payment, refund_amount)

                gateway_refund = await gateway.create_refund(
                    payment.provider_intent_id,
                    payment.provider_transaction_id,
                    refund_amount,
                    payment.currency,
                    reason=reason,
                    idempotency_key=f"refund_{payment_id}_{uuid.uuid4().hex[:12]}",
                )
                if gateway_refund.status == RefundStatus.FAILED:
                    raise RefundError(
                        f"Gateway rejected refund for payment {payment_id}",
                        provider_refund_id=gateway_refund.provider_refund_id,
                    )

                try:
                    payment, refund = await self.ledger.apply_refund(
                        payment_id,
                        refund_amount,
                        provider_refund_id=gateway_refund.provider_refund_id,
                        reason=reason,
                        refund_status=gateway_refund.status,
                        details={"source": "api"},
                    )
                except DuplicateRefundError:
                    # The gateway's webhook recorded it first
                    refund = await self.ledger.find_refund_by_provider_id(
                        gateway_refund.provider_refund_id
                    )
                    payment = await self.ledger.get(payment_id)
        except LockError as e:
            raise RefundError(
                f"Another refund for payment {payment_id} is in progress"
            ) from e

        await self.cache.delete(payment_cache_key(payment_id))
        metrics.record_refund(payment.provider.value, "api")
        logger.info(
            "refund_processed",
            payment_id=payment_id,
            amount=str(refund_amount),
            refunded_amount=str(payment.refunded_amount),
            status=payment.status.value,
        )
        return payment, refund

    async def confirm_refund(self, refund: NormalisedRefund) -> Optional[PaymentRecord]:
        """
        Record a refund reported by a gateway webhook.

        A known refund is marked processed. An unknown one is applied to its
        payment once. Returns None when the payment is not in the ledger.
        """
        known = await self.ledger.find_refund_by_provider_id(refund.provider_refund_id)
        if known:
            if await self.ledger.mark_refund_processed(refund.provider_refund_id):
                logger.info("refund_confirmed", provider_refund_id=refund.provider_refund_id)
            return await self.ledger.get(known.payment_id)

        payment = None
        if refund.provider_intent_id:
            payment = await self.ledger.find_by_provider_intent_id(refund.provider_intent_id)
        if payment is None and refund.provider_payment_id:
            payment = await self.ledger.find_by_provider_transaction_id(refund.provider_payment_id)
        if payment is None:
            logger.warning(
                "refund_for_unknown_payment",
                provider=refund.provider.value,
                provider_refund_id=refund.provider_refund_id,
                provider_payment_id=refund.provider_payment_id,
            )
            return None

        async with self.cache.lock(f"refund:{payment.id}", self.lock_timeout):
            try:
                payment, _ = await self.ledger.apply_refund(
                    payment.id,
                    refund.amount,
                    provider_refund_id=refund.provider_refund_id,
                    reason=refund.reason or DASHBOARD_REFUND_REASON,
                    refund_status=RefundStatus.PROCESSED,
                    details={"source": "webhook"},
                )
            except DuplicateRefundError:
                await self.ledger.mark_refund_processed(refund.provider_refund_id)
                return await self.ledger.get(payment.id)
            except RefundError as e:
                # Left for reconciliation to report as an amount mismatch
                logger.error(
                    "gateway_refund_not_applicable",
                    payment_id=payment.id,
                    provider_refund_id=refund.provider_refund_id,
                    error=e.message,
                )
                return await self.ledger.get(payment.id)

        await self.cache.delete(payment_cache_key(payment.id))
        metrics.record_refund(payment.provider.value, "webhook")
        logger.info(
            "gateway_refund_applied",
            payment_id=payment.id,
            provider_refund_id=refund.provider_refund_id,
            amount=str(refund.amount),
        )
        return payment

    async def list_refunds(self, payment_id: str) -> List[RefundRecord]:
        await self.ledger.get(payment_id)
        return await self.ledger.list_refunds(payment_id)

    async def get_refund(self, refund_id: str) -> RefundRecord:
        """
        Raises:
            RefundNotFoundError: If no refund has this id
        """
        refund = await self.ledger.find_refund(refund_id)
        if refund is None:
            raise RefundNotFoundError(refund_id)
        return refund

    async def fail_refund(self, refund: NormalisedRefund) -> Optional[RefundRecord]:
        """
        Record that the gateway failed or cancelled a pending refund.

        The payment's refunded total is not rolled back; reconciliation
        reports the difference against the gateway. Returns None when the
        refund is unknown or already settled.
        """
        failed = await self.ledger.mark_refund_failed(refund.provider_refund_id)
        if failed is None:
            logger.info(
                "refund_failure_ignored",
                provider=refund.provider.value,
                provider_refund_id=refund.provider_refund_id,
            )
            return None

        await self.cache.delete(payment_cache_key(failed.payment_id))
        logger.error(
            "gateway_refund_failed",
            payment_id=failed.payment_id,
            provider_refund_id=refund.provider_refund_id,
            amount=str(failed.amount),
        )
        return failed
