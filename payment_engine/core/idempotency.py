"""
Idempotent intent creation.

Two tiers:
1. Cache for fast lookups of the stored intent result
2. Ledger fallback, keyed by the unique ``idempotency_key`` column

A key only replays while the intent it created has not expired.
"""
from datetime import timedelta
from typing import Optional

import structlog

from payment_engine.core.cache import Cache, idempotency_cache_key
from payment_engine.core.ledger import PaymentLedger
from payment_engine.core.types import IntentResult, PaymentRecord
from payment_engine.database.models import ensure_aware, utcnow
from payment_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def intent_result(payment: PaymentRecord) -> IntentResult:
    return IntentResult(
        payment_id=payment.id,
        provider=payment.provider,
        provider_intent_id=payment.provider_intent_id or "",
        client_secret=payment.client_secret,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
    )


class IdempotencyManager:
    """Looks up and stores intent results by client idempotency key."""

    def __init__(self, cache: Cache, ledger: PaymentLedger, cache_ttl_seconds: int = 86400):
        self.cache = cache
        self.ledger = ledger
        self.cache_ttl_seconds = cache_ttl_seconds

    async def check(self, idempotency_key: str) -> Optional[IntentResult]:
        """
        Return the stored result for ``idempotency_key`` if its intent is live.

        Args:
            idempotency_key: Client supplied key

        Returns:
            Optional[IntentResult]: Prior result, or None on a miss
        """
        cached = await self.cache.get(idempotency_cache_key(idempotency_key))
        if cached:
            metrics.record_idempotency_hit("cache")
            logger.info("idempotency_hit", idempotency_key=idempotency_key, source="cache")
            return IntentResult.model_validate_json(cached)

        payment = await self.ledger.find_by_idempotency_key(idempotency_key, valid_at=utcnow())
        if payment is None:
            return None

        metrics.record_idempotency_hit("database")
        logger.info("idempotency_hit", idempotency_key=idempotency_key, source="database")
        result = intent_result(payment)
        await self.store(idempotency_key, payment)
        return result

    async def store(self, idempotency_key: str, payment: PaymentRecord) -> None:
        """Cache the result, never beyond the intent's expiry."""
        ttl = self.cache_ttl_seconds
        if payment.intent_expires_at is not None:
            remaining = ensure_aware(payment.intent_expires_at) - utcnow()
            ttl = min(ttl, int(remaining / timedelta(seconds=1)))
        if ttl <= 0:
            return
        await self.cache.set(
            idempotency_cache_key(idempotency_key),
            intent_result(payment).model_dump_json(),
            ttl,
        )

    async def invalidate(self, idempotency_key: str) -> None:
        await self.cache.delete(idempotency_cache_key(idempotency_key))
