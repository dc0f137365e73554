"""
Pytest configuration and fixtures.
"""
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from payment_engine.api.container import ServiceContainer
from payment_engine.config import Settings
from payment_engine.core.ledger import HistoryWrite, PaymentLedger
from payment_engine.core.types import (
    HistoryAction,
    PaymentMethod,
    PaymentProvider,
    PaymentRecord,
    PaymentStatus,
)
from payment_engine.database.connection import build_engine, build_session_factory, init_db
from payment_engine.database.models import utcnow

from tests.doubles import (
    RAZORPAY_KEY_ID,
    RAZORPAY_KEY_SECRET,
    RAZORPAY_WEBHOOK_SECRET,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    FakeOrderService,
    FakeRazorpayGateway,
    FakeStripeGateway,
    InMemoryCache,
)

ORDER_TOTALS = {
    "ord_1001": Decimal("2999.00"),
    "ord_1002": Decimal("1000.00"),
    "ord_1003": Decimal("49.99"),
}


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key=STRIPE_SECRET_KEY,
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        razorpay_key_id=RAZORPAY_KEY_ID,
        razorpay_key_secret=RAZORPAY_KEY_SECRET,
        razorpay_webhook_secret=RAZORPAY_WEBHOOK_SECRET,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        redis_url="redis://localhost:6379/1",
        app_name="payment-engine-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite so every session sees the same database."""
    engine = build_engine(test_settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> PaymentLedger:
    return PaymentLedger(session_factory)


@pytest.fixture
def cache() -> InMemoryCache:
    return InMemoryCache()


@pytest.fixture
def stripe_gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
def razorpay_gateway() -> FakeRazorpayGateway:
    return FakeRazorpayGateway()


@pytest.fixture
def gateways(
    stripe_gateway: FakeStripeGateway, razorpay_gateway: FakeRazorpayGateway
) -> Dict[PaymentProvider, Any]:
    return {
        PaymentProvider.STRIPE: stripe_gateway,
        PaymentProvider.RAZORPAY: razorpay_gateway,
    }


@pytest.fixture
def order_service() -> FakeOrderService:
    return FakeOrderService(ORDER_TOTALS)


@pytest.fixture
def container(
    test_settings: Settings,
    engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
    cache: InMemoryCache,
    gateways: Dict[PaymentProvider, Any],
    order_service: FakeOrderService,
) -> ServiceContainer:
    return ServiceContainer(
        settings=test_settings,
        session_factory=session_factory,
        cache=cache,
        gateways=gateways,
        order_service=order_service,
        engine=engine,
    )


@pytest.fixture
def create_payment(
    ledger: PaymentLedger, gateways: Dict[PaymentProvider, Any]
) -> Callable[..., Awaitable[PaymentRecord]]:
    """Factory for PENDING payments backed by a gateway intent."""

    async def _create(
        amount: str = "1000.00",
        provider: PaymentProvider = PaymentProvider.RAZORPAY,
        order_id: str = "ord_1002",
        currency: str = "INR",
    ) -> PaymentRecord:
        gateway = gateways[provider]
        intent = await gateway.create_intent(Decimal(amount), currency)
        return await ledger.create(
            order_id=order_id,
            customer_id="cust_42",
            amount=Decimal(amount),
            currency=currency,
            method=PaymentMethod.CARD,
            provider=provider,
            provider_intent_id=intent.provider_intent_id,
        )

    return _create


@pytest.fixture
def create_paid_payment(
    ledger: PaymentLedger,
    gateways: Dict[PaymentProvider, Any],
    create_payment: Callable[..., Awaitable[PaymentRecord]],
) -> Callable[..., Awaitable[PaymentRecord]]:
    """Factory for PAID payments whose gateway truth agrees with the ledger."""

    async def _create(
        amount: str = "1000.00",
        provider: PaymentProvider = PaymentProvider.RAZORPAY,
        transaction_id: str = "pay_test_1",
    ) -> PaymentRecord:
        payment = await create_payment(amount=amount, provider=provider)
        gateways[provider].settle(payment.provider_intent_id, transaction_id)
        await ledger.transition(
            payment.id,
            [PaymentStatus.PENDING],
            PaymentStatus.PROCESSING,
            history=HistoryWrite(action=HistoryAction.PROCESSING),
        )
        return await ledger.transition(
            payment.id,
            [PaymentStatus.PROCESSING],
            PaymentStatus.PAID,
            history=HistoryWrite(action=HistoryAction.PAID, transaction_id=transaction_id),
            fields={"provider_transaction_id": transaction_id, "paid_at": utcnow()},
        )

    return _create
