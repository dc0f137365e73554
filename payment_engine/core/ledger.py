"""
Payment ledger store.

The single durable record of every payment. All status writes go through
``transition`` or ``apply_refund``, each a single conditional UPDATE whose
WHERE clause carries the expected prior state. The audit row and outbox
events of a change are inserted in the same transaction, after the UPDATE.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_engine.core.errors import (
    DuplicateRefundError,
    PaymentNotFoundError,
    PaymentValidationError,
    RefundError,
    StaleTransitionError,
)
from payment_engine.core.outbox import EventTopic, json_safe
from payment_engine.core.status import ensure_transitions
from payment_engine.core.types import (
    REFUNDABLE_STATUSES,
    SETTLED_STATUSES,
    HistoryAction,
    HistoryEntry,
    MethodBreakdown,
    PaymentAnalytics,
    PaymentFilters,
    PaymentMethod,
    PaymentPage,
    PaymentProvider,
    PaymentRecord,
    PaymentStatistics,
    PaymentStatus,
    RefundRecord,
    RefundStatus,
    TimeSeriesBucket,
)
from payment_engine.database.models import (
    OutboxEvent,
    Payment,
    PaymentHistory,
    PaymentRefund,
    new_id,
    utcnow,
)
from payment_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")

SORT_FIELDS = {
    "created_at": Payment.created_at,
    "updated_at": Payment.updated_at,
    "amount": Payment.amount,
    "status": Payment.status,
    "paid_at": Payment.paid_at,
}

ANALYTICS_PERIODS = {"day": 1, "week": 7, "month": 30, "year": 365}
DEFAULT_ANALYTICS_DAYS = 30

# Columns a plain update may touch. Status, money and identity are excluded.
UPDATABLE_FIELDS = {"metadata": "payment_metadata", "client_secret": "client_secret"}

# Columns a transition may set alongside the status
TRANSITION_FIELDS = {
    "provider_transaction_id",
    "failure_reason",
    "paid_at",
    "method",
}


@dataclass(frozen=True)
class HistoryWrite:
    """Audit entry recorded with a transition."""

    action: HistoryAction
    reason: Optional[str] = None
    amount: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT)


def to_record(row: Payment) -> PaymentRecord:
    return PaymentRecord(
        id=row.id,
        order_id=row.order_id,
        customer_id=row.customer_id,
        amount=to_decimal(row.amount),
        currency=row.currency,
        refunded_amount=to_decimal(row.refunded_amount),
        method=PaymentMethod(row.method),
        provider=PaymentProvider(row.provider),
        provider_intent_id=row.provider_intent_id,
        provider_transaction_id=row.provider_transaction_id,
        status=PaymentStatus(row.status),
        failure_reason=row.failure_reason,
        paid_at=row.paid_at,
        refunded_at=row.refunded_at,
        metadata=dict(row.payment_metadata or {}),
        idempotency_key=row.idempotency_key,
        client_secret=row.client_secret,
        intent_expires_at=row.intent_expires_at,
        reconciled_at=row.reconciled_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def to_refund_record(row: PaymentRefund) -> RefundRecord:
    return RefundRecord(
        id=row.id,
        payment_id=row.payment_id,
        amount=to_decimal(row.amount),
        currency=row.currency,
        reason=row.reason,
        provider_refund_id=row.provider_refund_id,
        status=RefundStatus(row.status),
        processed_at=row.processed_at,
        created_at=row.created_at,
    )


def event_payload(payment: PaymentRecord, **extra: Any) -> Dict[str, Any]:
    """Standard event body describing a payment after a change."""
    payload = {
        "payment_id": payment.id,
        "order_id": payment.order_id,
        "customer_id": payment.customer_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "refunded_amount": payment.refunded_amount,
        "status": payment.status,
        "method": payment.method,
        "provider": payment.provider,
        "transaction_id": payment.provider_transaction_id,
        "failure_reason": payment.failure_reason,
        "occurred_at": utcnow(),
    }
    payload.update(extra)
    return json_safe(payload)


def bucket_key(timestamp: datetime, group_by: str) -> str:
    """Time-series bucket label for a timestamp."""
    if group_by == "hour":
        return timestamp.strftime("%Y-%m-%d %H:00")
    if group_by == "day":
        return timestamp.strftime("%Y-%m-%d")
    if group_by == "week":
        # Weeks start on Sunday
        start = timestamp.date() - timedelta(days=(timestamp.weekday() + 1) % 7)
        return start.isoformat()
    if group_by == "month":
        return timestamp.strftime("%Y-%m")
    raise PaymentValidationError(
        f"Unsupported group_by '{group_by}'. Use hour, day, week or month"
    )


class PaymentLedger:
    """Repository over the payments table and its append-only satellites."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        order_id: str,
        customer_id: str,
        amount: Decimal,
        currency: str,
        method: PaymentMethod,
        provider: PaymentProvider,
        provider_intent_id: str,
        client_secret: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        intent_expires_at: Optional[datetime] = None,
    ) -> PaymentRecord:
        """
        Persist a new PENDING payment.

        The CREATED history row and the ``payment.intent.created`` event are
        written in the same transaction.

        Raises:
            IntegrityError: If the idempotency key or intent id already exists
        """
        payment = Payment(
            id=new_id(),
            order_id=order_id,
            customer_id=customer_id,
            amount=amount,
            currency=currency,
            refunded_amount=Decimal("0"),
            method=PaymentMethod(method).value,
            provider=PaymentProvider(provider).value,
            provider_intent_id=provider_intent_id,
            status=PaymentStatus.PENDING.value,
            payment_metadata=json_safe(metadata or {}),
            idempotency_key=idempotency_key,
            client_secret=client_secret,
            intent_expires_at=intent_expires_at,
        )

        async with self.session_factory() as db:
            db.add(payment)
            await db.flush()
            record = to_record(payment)
            db.add(
                PaymentHistory(
                    payment_id=payment.id,
                    action=HistoryAction.CREATED.value,
                    status=PaymentStatus.PENDING.value,
                    amount=amount,
                    details=json_safe({"provider_intent_id": provider_intent_id}),
                )
            )
            db.add(
                OutboxEvent(
                    aggregate_id=payment.id,
                    topic=EventTopic.INTENT_CREATED,
                    payload=event_payload(record, provider_intent_id=provider_intent_id),
                )
            )
            await db.commit()

        logger.info(
            "payment_persisted",
            payment_id=record.id,
            order_id=order_id,
            provider=record.provider.value,
        )
        return record

    async def update(self, payment_id: str, **fields: Any) -> PaymentRecord:
        """
        Edit plain fields (metadata, client secret).

        Raises:
            ValueError: If a status, money or identity field is passed
            PaymentNotFoundError: If the payment does not exist
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Fields cannot be updated directly: {sorted(unknown)}")

        values = {
            UPDATABLE_FIELDS[name]: json_safe(value) if name == "metadata" else value
            for name, value in fields.items()
        }
        async with self.session_factory() as db:
            result = await db.execute(
                update(Payment).where(Payment.id == payment_id).values(**values)
            )
            if result.rowcount == 0:
                raise PaymentNotFoundError(payment_id)
            await db.commit()
        return await self.get(payment_id)

    async def transition(
        self,
        payment_id: str,
        expected: Iterable[PaymentStatus],
        target: PaymentStatus,
        *,
        history: HistoryWrite,
        fields: Optional[Dict[str, Any]] = None,
        metadata_patch: Optional[Dict[str, Any]] = None,
        clear_failure_reason: bool = False,
        topics: Sequence[str] = (),
        event_extra: Optional[Dict[str, Any]] = None,
    ) -> PaymentRecord:
        """
        Move a payment to ``target`` if it is currently in one of ``expected``.

        Args:
            payment_id: Payment to move
            expected: Statuses the payment may currently be in
            target: New status
            history: Audit entry to append
            fields: Extra columns to set with the status
            metadata_patch: Keys merged into the metadata bag
            clear_failure_reason: Reset failure_reason to NULL
            topics: Outbox topics to emit with the standard payload
            event_extra: Extra keys merged into every event payload

        Returns:
            PaymentRecord: The payment after the transition

        Raises:
            PaymentProcessingError: If an expected -> target edge is illegal
            StaleTransitionError: If the payment was no longer in ``expected``
            PaymentNotFoundError: If the payment does not exist
        """
        expected = tuple(PaymentStatus(s) for s in expected)
        target = PaymentStatus(target)
        ensure_transitions(expected, target)

        values: Dict[str, Any] = {"status": target.value}
        for name, value in (fields or {}).items():
            if name not in TRANSITION_FIELDS:
                raise ValueError(f"Field cannot be set by a transition: {name}")
            values[name] = value.value if name == "method" and value is not None else value
        if clear_failure_reason:
            values["failure_reason"] = None

        async with self.session_factory() as db:
            # The conditional UPDATE must be the first statement of the transaction
            result = await db.execute(
                update(Payment)
                .where(
                    Payment.id == payment_id,
                    Payment.status.in_([s.value for s in expected]),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await db.rollback()
                await self.get(payment_id)
                metrics.record_stale_transition(target.value)
                raise StaleTransitionError(payment_id, target)

            payment = await db.get(Payment, payment_id)
            if metadata_patch:
                payment.payment_metadata = {
                    **(payment.payment_metadata or {}),
                    **json_safe(metadata_patch),
                }
                await db.flush()
            record = to_record(payment)

            db.add(
                PaymentHistory(
                    payment_id=payment_id,
                    action=history.action.value,
                    status=target.value,
                    amount=history.amount,
                    transaction_id=history.transaction_id or record.provider_transaction_id,
                    reason=history.reason,
                    details=json_safe(history.details),
                )
            )
            payload = event_payload(record, **(event_extra or {}))
            for topic in topics:
                db.add(OutboxEvent(aggregate_id=payment_id, topic=topic, payload=payload))
            await db.commit()

        metrics.record_transition(target.value)
        logger.info(
            "payment_status_changed",
            payment_id=payment_id,
            status=target.value,
            action=history.action.value,
        )
        return record

    async def apply_refund(
        self,
        payment_id: str,
        amount: Decimal,
        *,
        provider_refund_id: str,
        reason: Optional[str] = None,
        refund_status: RefundStatus = RefundStatus.PENDING,
        details: Optional[Dict[str, Any]] = None,
    ) -> Tuple[PaymentRecord, RefundRecord]:
        """
        Atomically add ``amount`` to the refunded total and record the refund.

        The increment is guarded by the refundable statuses and the remaining
        balance in the same UPDATE. The refund row's unique
        ``provider_refund_id`` makes a repeated gateway refund a no-op.

        Raises:
            RefundError: If the payment is not refundable or the amount exceeds
                the refundable balance
            DuplicateRefundError: If the provider refund id is already recorded
            PaymentNotFoundError: If the payment does not exist
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise RefundError("Refund amount must be greater than zero")

        now = utcnow()
        new_total = Payment.refunded_amount + amount
        # Compared in whole minor units; SQLite keeps NUMERIC as binary floats
        new_cents = func.round(new_total * 100)
        amount_cents = func.round(Payment.amount * 100)
        stmt = (
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status.in_([s.value for s in REFUNDABLE_STATUSES]),
                new_cents <= amount_cents,
            )
            .values(
                refunded_amount=new_total,
                status=case(
                    (new_cents >= amount_cents, PaymentStatus.REFUNDED.value),
                    else_=PaymentStatus.PARTIALLY_REFUNDED.value,
                ),
                refunded_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            if result.rowcount == 0:
                await db.rollback()
                current = await self.get(payment_id)
                if current.status not in REFUNDABLE_STATUSES:
                    raise RefundError(
                        f"Payment in status {current.status.value} cannot be refunded",
                        payment_id=payment_id,
                    )
                raise RefundError(
                    f"Refund amount {amount} exceeds refundable balance "
                    f"{current.refundable_amount}",
                    payment_id=payment_id,
                )

            payment = await db.get(Payment, payment_id)
            record = to_record(payment)
            refund = PaymentRefund(
                id=new_id(),
                payment_id=payment_id,
                amount=amount,
                currency=record.currency,
                reason=reason,
                provider_refund_id=provider_refund_id,
                status=RefundStatus(refund_status).value,
                processed_at=now if refund_status == RefundStatus.PROCESSED else None,
            )
            db.add(refund)
            db.add(
                PaymentHistory(
                    payment_id=payment_id,
                    action=HistoryAction.REFUNDED.value,
                    status=record.status.value,
                    amount=amount,
                    transaction_id=record.provider_transaction_id,
                    reason=reason,
                    details=json_safe(
                        {"provider_refund_id": provider_refund_id, **(details or {})}
                    ),
                )
            )
            db.add(
                OutboxEvent(
                    aggregate_id=payment_id,
                    topic=EventTopic.PAYMENT_REFUNDED,
                    payload=event_payload(
                        record,
                        refund_amount=amount,
                        provider_refund_id=provider_refund_id,
                        reason=reason,
                    ),
                )
            )
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise DuplicateRefundError(provider_refund_id) from e

        logger.info(
            "refund_applied",
            payment_id=payment_id,
            amount=str(amount),
            refunded_amount=str(record.refunded_amount),
            status=record.status.value,
            provider_refund_id=provider_refund_id,
        )
        return record, to_refund_record(refund)

    async def mark_refund_processed(self, provider_refund_id: str) -> bool:
        """Mark a known refund as processed. Returns False if nothing changed."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(PaymentRefund)
                .where(
                    PaymentRefund.provider_refund_id == provider_refund_id,
                    PaymentRefund.status != RefundStatus.PROCESSED.value,
                )
                .values(status=RefundStatus.PROCESSED.value, processed_at=utcnow())
            )
            await db.commit()
            return result.rowcount > 0

    async def mark_refund_failed(self, provider_refund_id: str) -> Optional[RefundRecord]:
        """
        Mark a pending refund failed at the gateway.

        ``refunded_amount`` is left as it is; the gap against the gateway's
        refunded total is reported by reconciliation. Returns None if the
        refund is unknown or already settled.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                update(PaymentRefund)
                .where(
                    PaymentRefund.provider_refund_id == provider_refund_id,
                    PaymentRefund.status == RefundStatus.PENDING.value,
                )
                .values(status=RefundStatus.FAILED.value, processed_at=utcnow())
            )
            if result.rowcount == 0:
                await db.rollback()
                return None
            row = (
                await db.execute(
                    select(PaymentRefund).where(
                        PaymentRefund.provider_refund_id == provider_refund_id
                    )
                )
            ).scalar_one()
            refund = to_refund_record(row)
            db.add(
                OutboxEvent(
                    aggregate_id=refund.payment_id,
                    topic=EventTopic.REFUND_FAILED,
                    payload=json_safe(
                        {
                            "payment_id": refund.payment_id,
                            "provider_refund_id": provider_refund_id,
                            "amount": refund.amount,
                            "currency": refund.currency,
                            "occurred_at": utcnow(),
                        }
                    ),
                )
            )
            await db.commit()
        return refund

    async def mark_reconciled(self, payment_id: str) -> PaymentRecord:
        """Set the reconciled flag. The only write reconciliation performs."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(Payment)
                .where(Payment.id == payment_id)
                .values(reconciled_at=utcnow())
            )
            if result.rowcount == 0:
                raise PaymentNotFoundError(payment_id)
            await db.commit()
        return await self.get(payment_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_by_id(self, payment_id: str) -> Optional[PaymentRecord]:
        async with self.session_factory() as db:
            payment = await db.get(Payment, payment_id)
            return to_record(payment) if payment else None

    async def get(self, payment_id: str) -> PaymentRecord:
        """
        Fetch a payment or raise.

        Raises:
            PaymentNotFoundError: If the payment does not exist
        """
        record = await self.find_by_id(payment_id)
        if record is None:
            raise PaymentNotFoundError(payment_id)
        return record

    async def _find_one(self, *conditions: Any) -> Optional[PaymentRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Payment).where(*conditions).order_by(Payment.created_at.desc()).limit(1)
            )
            payment = result.scalar_one_or_none()
            return to_record(payment) if payment else None

    async def find_by_order_id(self, order_id: str) -> List[PaymentRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Payment)
                .where(Payment.order_id == order_id)
                .order_by(Payment.created_at.desc())
            )
            return [to_record(p) for p in result.scalars().all()]

    async def find_by_provider_transaction_id(
        self, transaction_id: str
    ) -> Optional[PaymentRecord]:
        return await self._find_one(Payment.provider_transaction_id == transaction_id)

    async def find_by_provider_intent_id(self, intent_id: str) -> Optional[PaymentRecord]:
        return await self._find_one(Payment.provider_intent_id == intent_id)

    async def find_by_idempotency_key(
        self, idempotency_key: str, valid_at: Optional[datetime] = None
    ) -> Optional[PaymentRecord]:
        """
        Look up a payment by idempotency key.

        With ``valid_at``, only payments whose intent has not expired by then
        are returned.
        """
        conditions = [Payment.idempotency_key == idempotency_key]
        if valid_at is not None:
            conditions.append(Payment.intent_expires_at > valid_at)
        return await self._find_one(*conditions)

    @staticmethod
    def _build_conditions(filters: Optional[PaymentFilters]) -> List[Any]:
        if filters is None:
            return []

        conditions: List[Any] = []
        if filters.statuses:
            conditions.append(Payment.status.in_([s.value for s in filters.statuses]))
        if filters.methods:
            conditions.append(Payment.method.in_([m.value for m in filters.methods]))
        if filters.provider:
            conditions.append(Payment.provider == filters.provider.value)
        if filters.customer_id:
            conditions.append(Payment.customer_id == filters.customer_id)
        if filters.order_id:
            conditions.append(Payment.order_id == filters.order_id)
        if filters.transaction_id:
            conditions.append(Payment.provider_transaction_id == filters.transaction_id)
        if filters.created_from:
            conditions.append(Payment.created_at >= filters.created_from)
        if filters.created_to:
            conditions.append(Payment.created_at <= filters.created_to)
        if filters.min_amount is not None:
            conditions.append(Payment.amount >= filters.min_amount)
        if filters.max_amount is not None:
            conditions.append(Payment.amount <= filters.max_amount)
        return conditions

    async def find_all(
        self,
        filters: Optional[PaymentFilters] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        max_limit: int = 100,
    ) -> PaymentPage:
        """
        List payments matching ``filters``, paginated.

        Raises:
            PaymentValidationError: On an unknown sort field or order
        """
        if sort_by not in SORT_FIELDS:
            raise PaymentValidationError(
                f"Unsupported sort field '{sort_by}'. Use one of {sorted(SORT_FIELDS)}"
            )
        if sort_order not in ("asc", "desc"):
            raise PaymentValidationError("sort_order must be 'asc' or 'desc'")

        page = max(page, 1)
        limit = min(max(limit, 1), max_limit)
        conditions = self._build_conditions(filters)
        column = SORT_FIELDS[sort_by]
        order = column.asc() if sort_order == "asc" else column.desc()

        async with self.session_factory() as db:
            total = (
                await db.execute(select(func.count(Payment.id)).where(*conditions))
            ).scalar_one()
            result = await db.execute(
                select(Payment)
                .where(*conditions)
                .order_by(order, Payment.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            items = [to_record(p) for p in result.scalars().all()]

        return PaymentPage(
            items=items,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    async def count(self, filters: Optional[PaymentFilters] = None) -> int:
        async with self.session_factory() as db:
            stmt = select(func.count(Payment.id)).where(*self._build_conditions(filters))
            return int((await db.execute(stmt)).scalar_one())

    async def find_in_range(self, created_from: datetime, created_to: datetime) -> List[PaymentRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Payment)
                .where(Payment.created_at >= created_from, Payment.created_at <= created_to)
                .order_by(Payment.created_at)
            )
            return [to_record(p) for p in result.scalars().all()]

    async def list_refunds(self, payment_id: str) -> List[RefundRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentRefund)
                .where(PaymentRefund.payment_id == payment_id)
                .order_by(PaymentRefund.created_at)
            )
            return [to_refund_record(r) for r in result.scalars().all()]

    async def find_refund(self, refund_id: str) -> Optional[RefundRecord]:
        async with self.session_factory() as db:
            refund = await db.get(PaymentRefund, refund_id)
            return to_refund_record(refund) if refund else None

    async def find_expired_intents(
        self, now: Optional[datetime] = None, limit: int = 100
    ) -> List[PaymentRecord]:
        """Pending payments whose gateway intent expired before ``now``."""
        now = now or utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(Payment)
                .where(
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.intent_expires_at.is_not(None),
                    Payment.intent_expires_at < now,
                )
                .order_by(Payment.intent_expires_at)
                .limit(limit)
            )
            return [to_record(p) for p in result.scalars().all()]

    async def find_refund_by_provider_id(self, provider_refund_id: str) -> Optional[RefundRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentRefund).where(
                    PaymentRefund.provider_refund_id == provider_refund_id
                )
            )
            refund = result.scalar_one_or_none()
            return to_refund_record(refund) if refund else None

    async def get_history(self, payment_id: str) -> List[HistoryEntry]:
        """
        Audit trail of a payment, oldest first.

        Payments without log rows get a trail derived from their timestamps.
        """
        payment = await self.get(payment_id)
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentHistory)
                .where(PaymentHistory.payment_id == payment_id)
                .order_by(PaymentHistory.created_at, PaymentHistory.id)
            )
            rows = result.scalars().all()

        if rows:
            return [
                HistoryEntry(
                    timestamp=row.created_at,
                    action=HistoryAction(row.action),
                    status=PaymentStatus(row.status),
                    amount=to_decimal(row.amount) if row.amount is not None else None,
                    transaction_id=row.transaction_id,
                    reason=row.reason,
                    details=row.details or {},
                )
                for row in rows
            ]
        return self._derive_history(payment)

    @staticmethod
    def _derive_history(payment: PaymentRecord) -> List[HistoryEntry]:
        entries = [
            HistoryEntry(
                timestamp=payment.created_at,
                action=HistoryAction.CREATED,
                status=PaymentStatus.PENDING,
                amount=payment.amount,
            )
        ]
        if payment.paid_at:
            entries.append(
                HistoryEntry(
                    timestamp=payment.paid_at,
                    action=HistoryAction.PAID,
                    status=PaymentStatus.PAID,
                    amount=payment.amount,
                    transaction_id=payment.provider_transaction_id,
                )
            )
        if payment.refunded_at:
            entries.append(
                HistoryEntry(
                    timestamp=payment.refunded_at,
                    action=HistoryAction.REFUNDED,
                    status=payment.status,
                    amount=payment.refunded_amount,
                    transaction_id=payment.provider_transaction_id,
                )
            )
        if payment.status == PaymentStatus.FAILED:
            entries.append(
                HistoryEntry(
                    timestamp=payment.updated_at,
                    action=HistoryAction.FAILED,
                    status=PaymentStatus.FAILED,
                    reason=payment.failure_reason,
                )
            )
        return sorted(entries, key=lambda e: e.timestamp)

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def get_statistics(
        self,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> PaymentStatistics:
        """Counts by status, collected and refunded totals, per-method breakdown."""
        conditions = self._build_conditions(
            PaymentFilters(created_from=created_from, created_to=created_to)
        )
        settled = [s.value for s in SETTLED_STATUSES]

        async with self.session_factory() as db:
            by_status = (
                await db.execute(
                    select(
                        Payment.status,
                        func.count(Payment.id),
                        func.sum(Payment.amount),
                        func.sum(Payment.refunded_amount),
                    )
                    .where(*conditions)
                    .group_by(Payment.status)
                )
            ).all()
            by_method = (
                await db.execute(
                    select(
                        Payment.method,
                        func.count(Payment.id),
                        func.sum(case((Payment.status.in_(settled), Payment.amount), else_=0)),
                    )
                    .where(*conditions)
                    .group_by(Payment.method)
                )
            ).all()

        counts = {status: 0 for status in PaymentStatus}
        total_amount = Decimal("0")
        refunded_amount = Decimal("0")
        for status, count, amount_sum, refunded_sum in by_status:
            counts[PaymentStatus(status)] = count
            if status in settled:
                total_amount += to_decimal(amount_sum)
            refunded_amount += to_decimal(refunded_sum)

        total = sum(counts.values())
        successful = sum(counts[s] for s in SETTLED_STATUSES)
        return PaymentStatistics(
            total_payments=total,
            successful_payments=successful,
            failed_payments=counts[PaymentStatus.FAILED],
            pending_payments=counts[PaymentStatus.PENDING] + counts[PaymentStatus.PROCESSING],
            refunded_payments=counts[PaymentStatus.REFUNDED]
            + counts[PaymentStatus.PARTIALLY_REFUNDED],
            cancelled_payments=counts[PaymentStatus.CANCELLED],
            total_amount=total_amount,
            refunded_amount=refunded_amount,
            net_amount=total_amount - refunded_amount,
            average_payment_value=(total_amount / successful).quantize(CENT)
            if successful
            else Decimal("0.00"),
            success_rate=round(successful / total * 100, 2) if total else 0.0,
            method_breakdown={
                method: MethodBreakdown(count=count, amount=to_decimal(amount_sum))
                for method, count, amount_sum in by_method
            },
        )

    async def get_analytics(self, period: str = "month", group_by: str = "day") -> PaymentAnalytics:
        """
        Time-bucketed volume over a lookback period.

        ``period`` is day, week, month or year; anything else falls back to
        30 days. Bucket amounts only count settled payments.
        """
        end = utcnow()
        start = end - timedelta(days=ANALYTICS_PERIODS.get(period, DEFAULT_ANALYTICS_DAYS))
        bucket_key(end, group_by)  # validate before querying

        async with self.session_factory() as db:
            rows = (
                await db.execute(
                    select(Payment.created_at, Payment.status, Payment.amount)
                    .where(Payment.created_at >= start)
                    .order_by(Payment.created_at)
                )
            ).all()

        buckets: Dict[str, TimeSeriesBucket] = {}
        total_amount = Decimal("0")
        successes = 0
        for created_at, status, amount in rows:
            key = bucket_key(created_at, group_by)
            bucket = buckets.setdefault(key, TimeSeriesBucket(bucket=key))
            bucket.count += 1
            if status in [s.value for s in SETTLED_STATUSES]:
                bucket.amount += to_decimal(amount)
                bucket.success_count += 1
                total_amount += to_decimal(amount)
                successes += 1
            elif status == PaymentStatus.FAILED.value:
                bucket.failure_count += 1

        return PaymentAnalytics(
            period=period,
            group_by=group_by,
            start=start,
            end=end,
            total_payments=len(rows),
            total_amount=total_amount,
            success_rate=round(successes / len(rows) * 100, 2) if rows else 0.0,
            time_series=[buckets[key] for key in sorted(buckets)],
        )

