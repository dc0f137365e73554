"""Database package: ORM models and async engine/session management."""
from .connection import build_engine, build_session_factory, close_db, get_session_factory, init_db
from .models import Base, OutboxEvent, Payment, PaymentHistory, PaymentRefund, WebhookEvent

__all__ = [
    "Base",
    "OutboxEvent",
    "Payment",
    "PaymentHistory",
    "PaymentRefund",
    "WebhookEvent",
    "build_engine",
    "build_session_factory",
    "close_db",
    "get_session_factory",
    "init_db",
]
