"""
Webhook verifier and dispatcher for every configured gateway.

Implements:
- Signature verification over the raw body, before anything is parsed
- Event deduplication on (provider, event_id) in the ``webhook_events`` table
- Routing of normalised event kinds to ledger transitions and refund bookkeeping
"""
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import structlog
from sqlalchemy import and_, delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_engine.core.errors import PaymentValidationError, WebhookVerificationError
from payment_engine.core.orchestrator import PaymentOrchestrator
from payment_engine.core.refunds import RefundManager
from payment_engine.core.types import PaymentProvider, PaymentRecord, RefundRecord
from payment_engine.database.models import WebhookEvent, utcnow
from payment_engine.integrations.base import PaymentGateway, header_value
from payment_engine.integrations.mapper import GatewayWebhookEvent, WebhookKind
from payment_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

INVALID_SIGNATURE = "Invalid webhook signature"

EventHandler = Callable[[GatewayWebhookEvent], Awaitable[Optional[Any]]]


class WebhookDispatcher:
    """
    Handles gateway webhooks with verification and deduplication.

    A delivery is claimed in ``webhook_events`` before it is dispatched. A
    redelivery of a processed or in-flight event is acknowledged as a
    duplicate. A failed one, or one left processing past the lease, may be
    claimed again.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateways: Mapping[PaymentProvider, PaymentGateway],
        orchestrator: PaymentOrchestrator,
        refunds: RefundManager,
        processing_lease_seconds: int = 300,
    ):
        self.session_factory = session_factory
        self.processing_lease = timedelta(seconds=processing_lease_seconds)
        self.gateways = dict(gateways)
        self.orchestrator = orchestrator
        self.refunds = refunds
        self.event_handlers: Dict[WebhookKind, EventHandler] = {
            WebhookKind.PAYMENT_SUCCEEDED: self.handle_payment_succeeded,
            WebhookKind.PAYMENT_FAILED: self.handle_payment_failed,
            WebhookKind.PAYMENT_CANCELLED: self.handle_payment_cancelled,
            WebhookKind.REFUND_PROCESSED: self.handle_refund_processed,
            WebhookKind.REFUND_FAILED: self.handle_refund_failed,
        }

    def _gateway(self, provider: str) -> PaymentGateway:
        try:
            return self.gateways[PaymentProvider(provider)]
        except (KeyError, ValueError) as e:
            raise PaymentValidationError(f"Unknown webhook provider '{provider}'") from e

    def verify(
        self, gateway: PaymentGateway, payload: bytes, headers: Mapping[str, str]
    ) -> GatewayWebhookEvent:
        """
        Authenticate and parse a delivery.

        Raises:
            WebhookVerificationError: If the signature is missing or wrong, or
                the body is malformed
        """
        signature = header_value(headers, gateway.webhook_signature_header)
        if not signature or not gateway.verify_signature(payload, signature):
            metrics.record_webhook_event(gateway.provider.value, "unknown", "invalid_signature")
            logger.warning(
                "webhook_signature_verification_failed",
                provider=gateway.provider.value,
                signature_present=bool(signature),
            )
            raise WebhookVerificationError(INVALID_SIGNATURE)
        return gateway.parse_webhook(payload, headers)

    async def _claim(self, event: GatewayWebhookEvent) -> bool:
        """
        Record the delivery as processing. False if another delivery owns it.

        Failed deliveries and claims left unfinished past the lease (a worker
        that died mid-dispatch) are taken over.
        """
        async with self.session_factory() as db:
            db.add(
                WebhookEvent(
                    provider=event.provider.value,
                    event_id=event.event_id,
                    event_type=event.raw_type,
                    status="processing",
                )
            )
            try:
                await db.commit()
                return True
            except IntegrityError:
                await db.rollback()

        async with self.session_factory() as db:
            result = await db.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.provider == event.provider.value,
                    WebhookEvent.event_id == event.event_id,
                    or_(
                        WebhookEvent.status == "failed",
                        and_(
                            WebhookEvent.status == "processing",
                            WebhookEvent.received_at < utcnow() - self.processing_lease,
                        ),
                    ),
                )
                .values(status="processing", error=None, received_at=utcnow())
            )
            await db.commit()
            return result.rowcount > 0

    async def _finish(
        self, event: GatewayWebhookEvent, status: str, error: Optional[str] = None
    ) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.provider == event.provider.value,
                    WebhookEvent.event_id == event.event_id,
                )
                .values(status=status, error=error, processed_at=utcnow())
            )
            await db.commit()

    async def handle(
        self, provider: str, payload: bytes, headers: Mapping[str, str]
    ) -> Dict[str, Any]:
        """
        Verify, deduplicate and dispatch one webhook delivery.

        Args:
            provider: Provider name from the URL
            payload: Raw request body, exactly as received
            headers: Request headers

        Returns:
            Dict[str, Any]: ``status`` (processed, duplicate or ignored) and ``event_id``

        Raises:
            WebhookVerificationError: If the delivery cannot be authenticated
        """
        start = time.perf_counter()
        gateway = self._gateway(provider)
        event = self.verify(gateway, payload, headers)
        provider_name = gateway.provider.value
        log = logger.bind(
            provider=provider_name, event_id=event.event_id, event_type=event.raw_type
        )

        if not await self._claim(event):
            log.info("webhook_event_already_processed")
            metrics.record_webhook_event(provider_name, event.kind.value, "duplicate")
            return {"status": "duplicate", "event_id": event.event_id}

        handler = self.event_handlers.get(event.kind)
        if handler is None:
            log.info("webhook_event_ignored")
            await self._finish(event, "processed")
            metrics.record_webhook_event(provider_name, event.kind.value, "ignored")
            return {"status": "ignored", "event_id": event.event_id}

        try:
            await handler(event)
        except Exception as e:
            log.error("webhook_event_processing_failed", error=str(e))
            await self._finish(event, "failed", error=str(e))
            metrics.record_webhook_event(provider_name, event.kind.value, "failed")
            raise

        await self._finish(event, "processed")
        metrics.record_webhook_event(
            provider_name, event.kind.value, "processed", time.perf_counter() - start
        )
        log.info("webhook_event_processed")
        return {"status": "processed", "event_id": event.event_id}

    async def _payment_for(self, event: GatewayWebhookEvent) -> Optional[PaymentRecord]:
        gateway_payment = event.payment
        ledger = self.orchestrator.ledger
        payment = None
        if gateway_payment.provider_intent_id:
            payment = await ledger.find_by_provider_intent_id(gateway_payment.provider_intent_id)
        if payment is None:
            payment = await ledger.find_by_provider_transaction_id(
                gateway_payment.provider_payment_id
            )
        if payment is None:
            logger.warning(
                "webhook_payment_not_found",
                provider=event.provider.value,
                event_id=event.event_id,
                provider_intent_id=gateway_payment.provider_intent_id,
            )
        return payment

    async def handle_payment_succeeded(self, event: GatewayWebhookEvent) -> Optional[PaymentRecord]:
        payment = await self._payment_for(event)
        if payment is None:
            return None
        record = await self.orchestrator.apply_gateway_success(
            payment, event.payment, source=f"webhook:{event.raw_type}"
        )
        if record is None:
            logger.info("webhook_transition_already_applied", payment_id=payment.id)
        return record

    async def handle_payment_failed(self, event: GatewayWebhookEvent) -> Optional[PaymentRecord]:
        payment = await self._payment_for(event)
        if payment is None:
            return None
        reason = event.payment.failure_reason or f"Gateway reported {event.raw_type}"
        return await self.orchestrator.apply_gateway_failure(
            payment, reason, transaction_id=event.payment.provider_payment_id
        )

    async def handle_payment_cancelled(self, event: GatewayWebhookEvent) -> Optional[PaymentRecord]:
        payment = await self._payment_for(event)
        if payment is None:
            return None
        return await self.orchestrator.apply_gateway_cancellation(
            payment, event.payment.failure_reason or "Cancelled at gateway"
        )

    async def handle_refund_processed(self, event: GatewayWebhookEvent) -> Optional[PaymentRecord]:
        return await self.refunds.confirm_refund(event.refund)

    async def handle_refund_failed(self, event: GatewayWebhookEvent) -> Optional[RefundRecord]:
        return await self.refunds.fail_refund(event.refund)

    async def purge_processed(self, retention_days: int) -> int:
        """Delete processed deliveries older than the retention window."""
        cutoff = utcnow() - timedelta(days=retention_days)
        async with self.session_factory() as db:
            result = await db.execute(
                delete(WebhookEvent).where(
                    WebhookEvent.status == "processed",
                    WebhookEvent.received_at < cutoff,
                )
            )
            await db.commit()
        logger.info("webhook_events_purged", count=result.rowcount, retention_days=retention_days)
        return result.rowcount
