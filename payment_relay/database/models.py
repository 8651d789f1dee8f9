"""SQLAlchemy database models for payments and the transactional outbox."""
import enum
import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONDocument = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntegerPK = BigInteger().with_variant(Integer(), "sqlite")


class PaymentStatus(str, enum.Enum):
    """Payment lifecycle. Non-PENDING states are terminal."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PaymentProvider(str, enum.Enum):
    """Supported payment providers."""

    ZALOPAY = "ZALOPAY"
    PAYOS = "PAYOS"
    VNPAY = "VNPAY"


class EventType(str, enum.Enum):
    """Event types the intake writes to the outbox."""

    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"


PAYMENT_AGGREGATE_TYPE = "Payment"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Payment(Base):
    """
    Payment records table.

    One row per payment attempt for an order. Rows are created in PENDING by
    the order flow and move exactly once to COMPLETED or FAILED.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="VND")
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
    provider_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('PENDING', 'COMPLETED', 'FAILED')",
            name="valid_payment_status",
        ),
        CheckConstraint(
            "provider IN ('ZALOPAY', 'PAYOS', 'VNPAY')",
            name="valid_payment_provider",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        CheckConstraint(
            "(status = 'PENDING' AND completed_at IS NULL AND failed_at IS NULL)"
            " OR (status = 'COMPLETED' AND completed_at IS NOT NULL AND failed_at IS NULL)"
            " OR (status = 'FAILED' AND failed_at IS NOT NULL AND completed_at IS NULL)",
            name="terminal_timestamp_matches_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, order_code={self.order_code}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Rows are written in the same transaction as the payment status change and
    published asynchronously by the relay. The payload is a snapshot, so
    publishing never reads the payment row again.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("retry_count >= 0", name="non_negative_retry_count"),
        CheckConstraint(
            "NOT published OR published_at IS NOT NULL",
            name="published_requires_timestamp",
        ),
        Index(
            "idx_outbox_unpublished",
            "created_at",
            "id",
            postgresql_where=text("NOT published"),
        ),
        Index(
            "idx_outbox_published_at",
            "published_at",
            postgresql_where=text("published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published}, retries={self.retry_count})>"
        )
