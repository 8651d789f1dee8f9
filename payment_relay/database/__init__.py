"""Database package for the payment relay."""
from .connection import close_db, get_engine, get_session_factory, init_db
from .models import (
    Base,
    EventType,
    OutboxEvent,
    Payment,
    PaymentProvider,
    PaymentStatus,
)
from .repository import OutboxRepository, PaymentRepository

__all__ = [
    "Base",
    "EventType",
    "OutboxEvent",
    "OutboxRepository",
    "Payment",
    "PaymentProvider",
    "PaymentRepository",
    "PaymentStatus",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
