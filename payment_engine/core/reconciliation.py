"""
Reconciliation engine.

Compares the ledger with each gateway's own listing for a time range and
reports discrepancies. It never corrects payments; the only ledger write is
the reconciled flag on clean payments, and only when asked for.
"""
import time
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_engine.core.ledger import PaymentLedger
from payment_engine.core.outbox import json_safe
from payment_engine.core.types import (
    SETTLED_STATUSES,
    Discrepancy,
    PaymentProvider,
    PaymentRecord,
    PaymentStatus,
    ReconciliationReport,
)
from payment_engine.database.models import ReconciliationRun, utcnow
from payment_engine.integrations.base import PaymentGateway
from payment_engine.integrations.mapper import NormalisedPayment
from payment_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MISSING_TRANSACTION_ID = "Missing transaction ID for paid payment"


def statuses_agree(local: PaymentStatus, remote: PaymentStatus) -> bool:
    # Gateways do not all distinguish partial from full refunds
    if local in SETTLED_STATUSES and remote in SETTLED_STATUSES:
        return True
    return local == remote


def index_by_intent(payments: List[NormalisedPayment]) -> Dict[str, NormalisedPayment]:
    """Key gateway payments by intent id, preferring a settled attempt."""
    index: Dict[str, NormalisedPayment] = {}
    for payment in payments:
        key = payment.provider_intent_id or payment.provider_payment_id
        current = index.get(key)
        if current is None or (
            payment.status in SETTLED_STATUSES and current.status not in SETTLED_STATUSES
        ):
            index[key] = payment
    return index


def find_discrepancy(
    payment: PaymentRecord, remote: Optional[NormalisedPayment]
) -> Optional[str]:
    """First reason ``payment`` does not agree with its gateway record, if any."""
    if payment.status == PaymentStatus.PAID and not payment.provider_transaction_id:
        return MISSING_TRANSACTION_ID

    if remote is None:
        if payment.status in SETTLED_STATUSES or payment.provider_transaction_id:
            return "Payment not found at gateway"
        return None

    if not statuses_agree(payment.status, remote.status):
        return (
            f"Status mismatch: ledger {payment.status.value}, "
            f"gateway {remote.status.value} ({remote.raw_status})"
        )
    if remote.amount != payment.amount:
        return f"Amount mismatch: ledger {payment.amount}, gateway {remote.amount}"
    if payment.status in SETTLED_STATUSES and remote.amount_refunded != payment.refunded_amount:
        return (
            f"Refunded amount mismatch: ledger {payment.refunded_amount}, "
            f"gateway {remote.amount_refunded}"
        )
    return None


class ReconciliationEngine:
    """Reports drift between the ledger and gateway truth."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: PaymentLedger,
        gateways: Mapping[PaymentProvider, PaymentGateway],
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.gateways = dict(gateways)

    async def _start_run(self, created_from: datetime, created_to: datetime) -> int:
        async with self.session_factory() as db:
            run = ReconciliationRun(
                range_start=created_from,
                range_end=created_to,
                status="in_progress",
            )
            db.add(run)
            await db.commit()
            return run.id

    async def _finish_run(
        self,
        run_id: int,
        status: str,
        report: Optional[ReconciliationReport] = None,
        error: Optional[str] = None,
    ) -> None:
        async with self.session_factory() as db:
            run = await db.get(ReconciliationRun, run_id)
            run.status = status
            run.completed_at = utcnow()
            if report is not None:
                run.total_processed = report.total_processed
                run.reconciled_count = report.reconciled_count
                run.discrepancy_count = len(report.discrepancies)
                run.details = json_safe(
                    {"discrepancies": [d.model_dump() for d in report.discrepancies]}
                )
            if error:
                run.details = {"error": error}
            await db.commit()

    async def reconcile(
        self,
        created_from: datetime,
        created_to: datetime,
        mark_reconciled: bool = False,
    ) -> ReconciliationReport:
        """
        Reconcile payments created within the range.

        Args:
            created_from: Range start, inclusive
            created_to: Range end, inclusive
            mark_reconciled: Flag payments without discrepancies as reconciled

        Returns:
            ReconciliationReport: Counts and one discrepancy per failing payment,
                plus gateway-settled payments the ledger does not know
        """
        start = time.perf_counter()
        run_id = await self._start_run(created_from, created_to)
        log = logger.bind(run_id=run_id)
        log.info(
            "reconciliation_started",
            created_from=created_from.isoformat(),
            created_to=created_to.isoformat(),
        )

        try:
            payments = await self.ledger.find_in_range(created_from, created_to)
            remote: Dict[PaymentProvider, Dict[str, NormalisedPayment]] = {}
            for provider, gateway in self.gateways.items():
                remote[provider] = index_by_intent(
                    await gateway.list_payments(created_from, created_to)
                )

            discrepancies: List[Discrepancy] = []
            clean: List[PaymentRecord] = []
            known_intents = set()
            for payment in payments:
                known_intents.add((payment.provider, payment.provider_intent_id))
                gateway_view = remote.get(payment.provider, {}).get(payment.provider_intent_id or "")
                reason = find_discrepancy(payment, gateway_view)
                if reason:
                    discrepancies.append(Discrepancy(payment_id=payment.id, reason=reason))
                else:
                    clean.append(payment)

            for provider, index in remote.items():
                for intent_id, gateway_payment in index.items():
                    if gateway_payment.status not in SETTLED_STATUSES:
                        continue
                    if (provider, intent_id) in known_intents:
                        continue
                    if await self.ledger.find_by_provider_intent_id(intent_id):
                        continue
                    discrepancies.append(
                        Discrepancy(
                            payment_id=gateway_payment.provider_payment_id,
                            reason=f"Gateway payment not found in ledger ({provider.value})",
                        )
                    )

            if mark_reconciled:
                for payment in clean:
                    if not payment.is_reconciled:
                        await self.ledger.mark_reconciled(payment.id)

            report = ReconciliationReport(
                total_processed=len(payments),
                reconciled_count=len(clean),
                discrepancies=discrepancies,
            )
        except Exception as e:
            log.error("reconciliation_failed", error=str(e), error_class=type(e).__name__)
            await self._finish_run(run_id, "failed", error=str(e))
            raise

        await self._finish_run(run_id, "completed", report)
        duration = time.perf_counter() - start
        metrics.set_reconciliation_metrics(len(discrepancies), duration)
        log.info(
            "reconciliation_completed",
            total_processed=report.total_processed,
            reconciled_count=report.reconciled_count,
            discrepancy_count=len(discrepancies),
            duration_seconds=round(duration, 3),
        )
        return report

    async def mark_reconciled(self, payment_id: str) -> PaymentRecord:
        return await self.ledger.mark_reconciled(payment_id)

    async def reconcile_yesterday(self, mark_reconciled: bool = True) -> ReconciliationReport:
        """Reconcile the previous UTC day."""
        today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        return await self.reconcile(
            today - timedelta(days=1),
            today - timedelta(microseconds=1),
            mark_reconciled=mark_reconciled,
        )
