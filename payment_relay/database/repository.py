"""
Data access for payments and outbox entries.

Every state change on an outbox row is a conditional update, so a relay pass
racing with another one can publish twice but never corrupt a row.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from payment_relay.database.models import (
    PAYMENT_AGGREGATE_TYPE,
    EventType,
    OutboxEvent,
    Payment,
    PaymentStatus,
)


class PaymentRepository:
    """Reads and terminal transitions of payment rows."""

    @staticmethod
    async def get_by_order_code(db: AsyncSession, order_code: str) -> Optional[Payment]:
        """Fetch a payment by its natural key."""
        result = await db.execute(select(Payment).where(Payment.order_code == order_code))
        return result.scalar_one_or_none()

    @staticmethod
    async def transition_to_terminal(
        db: AsyncSession,
        order_code: str,
        status: PaymentStatus,
        at: datetime,
    ) -> bool:
        """
        Move a PENDING payment to COMPLETED or FAILED.

        Args:
            db: Session with an open transaction
            order_code: Payment natural key
            status: Target terminal status
            at: Terminal timestamp

        Returns:
            bool: False when no PENDING row matched (missing or already terminal)
        """
        if status == PaymentStatus.PENDING:
            raise ValueError("PENDING is not a terminal status")

        values: Dict[str, Any] = {"status": status.value}
        if status == PaymentStatus.COMPLETED:
            values["completed_at"] = at
        else:
            values["failed_at"] = at

        stmt = (
            update(Payment)
            .where(
                Payment.order_code == order_code,
                Payment.status == PaymentStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1


class OutboxRepository:
    """Writes and reads of the outbox table."""

    @staticmethod
    async def add_event(
        db: AsyncSession,
        aggregate_id: uuid.UUID,
        event_type: EventType,
        payload: Dict[str, Any],
        aggregate_type: str = PAYMENT_AGGREGATE_TYPE,
    ) -> OutboxEvent:
        """
        Stage a new unpublished outbox entry in the caller's transaction.

        The caller commits; passing the same session as the business change
        is what makes the two writes atomic.
        """
        event = OutboxEvent(
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            event_type=event_type.value,
            payload=payload,
            published=False,
            retry_count=0,
        )
        db.add(event)
        await db.flush()
        return event

    @staticmethod
    async def fetch_relayable(
        db: AsyncSession, batch_size: int, max_retries: int
    ) -> List[OutboxEvent]:
        """Oldest unpublished entries that still have retry budget."""
        stmt = (
            select(OutboxEvent)
            .where(
                OutboxEvent.published == False,  # noqa: E712
                OutboxEvent.retry_count < max_retries,
            )
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def mark_published(db: AsyncSession, event_id: int, at: datetime) -> bool:
        """
        Mark one entry published.

        Returns:
            bool: False if another relay already marked it
        """
        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id, OutboxEvent.published == False)  # noqa: E712
            .values(published=True, published_at=at)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    @staticmethod
    async def record_failure(db: AsyncSession, event_id: int, error: str) -> bool:
        """Increment retry_count and store the (already truncated) error."""
        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id, OutboxEvent.published == False)  # noqa: E712
            .values(retry_count=OutboxEvent.retry_count + 1, last_error=error)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    @staticmethod
    async def count_relayable(db: AsyncSession, max_retries: int) -> int:
        """Number of entries a relay pass could still pick up."""
        stmt = select(func.count(OutboxEvent.id)).where(
            OutboxEvent.published == False,  # noqa: E712
            OutboxEvent.retry_count < max_retries,
        )
        result = await db.execute(stmt)
        return int(result.scalar_one())

    @staticmethod
    async def delete_published_before(db: AsyncSession, cutoff: datetime) -> int:
        """Delete published entries whose published_at is older than cutoff."""
        stmt = (
            delete(OutboxEvent)
            .where(
                OutboxEvent.published == True,  # noqa: E712
                OutboxEvent.published_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return int(result.rowcount or 0)

    @staticmethod
    async def fetch_stuck(db: AsyncSession, max_retries: int) -> List[OutboxEvent]:
        """Unpublished entries that exhausted their retry budget, newest first."""
        stmt = (
            select(OutboxEvent)
            .where(
                OutboxEvent.published == False,  # noqa: E712
                OutboxEvent.retry_count >= max_retries,
            )
            .order_by(OutboxEvent.created_at.desc(), OutboxEvent.id.desc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())
