"""
Service wiring.

Everything the routes and workers need is built once from ``Settings`` and
injected; tests build a container from in-memory doubles instead.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from payment_engine.config import Settings
from payment_engine.core.cache import Cache, RedisCache
from payment_engine.core.ledger import PaymentLedger
from payment_engine.core.orchestrator import PaymentOrchestrator
from payment_engine.core.payment_methods import PaymentMethodManager
from payment_engine.core.reconciliation import ReconciliationEngine
from payment_engine.core.refunds import RefundManager
from payment_engine.core.types import PaymentProvider
from payment_engine.database.connection import build_engine, build_session_factory, init_db
from payment_engine.integrations.base import PaymentGateway
from payment_engine.integrations.orders import HttpOrderService, OrderService
from payment_engine.integrations.razorpay_client import RazorpayGateway
from payment_engine.integrations.stripe_client import StripeGateway
from payment_engine.integrations.webhook_handler import WebhookDispatcher
from payment_engine.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


def build_gateways(settings: Settings) -> Dict[PaymentProvider, PaymentGateway]:
    """One adapter per provider, keyed for dispatch."""
    return {
        PaymentProvider.STRIPE: StripeGateway(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_version=settings.stripe_api_version,
            webhook_tolerance=settings.stripe_webhook_tolerance,
            timeout_seconds=settings.gateway_timeout_seconds,
            retry_attempts=settings.gateway_retry_attempts,
        ),
        PaymentProvider.RAZORPAY: RazorpayGateway(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
            timeout_seconds=settings.gateway_timeout_seconds,
            retry_attempts=settings.gateway_retry_attempts,
        ),
    }


@dataclass
class ServiceContainer:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    cache: Cache
    gateways: Dict[PaymentProvider, PaymentGateway]
    order_service: OrderService
    engine: Optional[AsyncEngine] = None
    ledger: PaymentLedger = field(init=False)
    orchestrator: PaymentOrchestrator = field(init=False)
    refunds: RefundManager = field(init=False)
    payment_methods: PaymentMethodManager = field(init=False)
    webhooks: WebhookDispatcher = field(init=False)
    reconciliation: ReconciliationEngine = field(init=False)
    health: HealthCheck = field(init=False)

    def __post_init__(self) -> None:
        self.ledger = PaymentLedger(self.session_factory)
        self.orchestrator = PaymentOrchestrator(
            self.ledger, self.gateways, self.order_service, self.cache, self.settings
        )
        self.refunds = RefundManager(
            self.ledger, self.gateways, self.cache, self.settings.redis_lock_timeout
        )
        self.payment_methods = PaymentMethodManager(self.gateways)
        self.webhooks = WebhookDispatcher(
            self.session_factory,
            self.gateways,
            self.orchestrator,
            self.refunds,
            processing_lease_seconds=self.settings.webhook_processing_lease_seconds,
        )
        self.reconciliation = ReconciliationEngine(
            self.session_factory, self.ledger, self.gateways
        )
        self.health = HealthCheck(self.session_factory, self.cache, self.gateways)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServiceContainer":
        engine = build_engine(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
        return cls(
            settings=settings,
            session_factory=build_session_factory(engine),
            cache=RedisCache.from_url(settings.redis_url),
            gateways=build_gateways(settings),
            order_service=HttpOrderService(
                settings.order_service_url, timeout=settings.order_service_timeout
            ),
            engine=engine,
        )

    async def startup(self) -> None:
        if self.engine is not None:
            await init_db(self.engine)
            logger.info("database_initialized")

    async def shutdown(self) -> None:
        for resource in (self.order_service, self.cache):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("database_connections_closed")
