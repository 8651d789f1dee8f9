"""
Outbox retention sweep.

Deletes published events once they are older than the retention window and
reports events the relay has given up on. Stuck events are never deleted;
they stay in the table for an operator to inspect.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_relay.config import Settings, get_settings
from payment_relay.database.connection import get_session_factory
from payment_relay.database.models import OutboxEvent
from payment_relay.database.repository import OutboxRepository
from payment_relay.exceptions import StorageError
from payment_relay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SweepResult:
    """Outcome of one retention sweep."""

    deleted: int
    stuck: int
    sample: List[Dict[str, Any]] = field(default_factory=list)


def describe_stuck_event(event: OutboxEvent) -> Dict[str, Any]:
    """Fields an operator needs to diagnose a stuck event."""
    return {
        "id": event.id,
        "event_type": event.event_type,
        "aggregate_type": event.aggregate_type,
        "aggregate_id": str(event.aggregate_id),
        "retry_count": event.retry_count,
        "last_error": event.last_error,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


class RetentionSweeper:
    """Deletes expired published events and reports stuck ones."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    def retention_cutoff(self, now: Optional[datetime] = None) -> datetime:
        """Published events with published_at before this instant are deleted."""
        now = now or datetime.now(timezone.utc)
        return now - timedelta(days=self.settings.retention_days)

    async def delete_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete published events older than the retention window.

        Returns:
            int: Number of rows deleted

        Raises:
            StorageError: If the delete fails
        """
        cutoff = self.retention_cutoff(now)
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    deleted = await OutboxRepository.delete_published_before(db, cutoff)
        except SQLAlchemyError as e:
            logger.error("outbox_retention_delete_failed", error=str(e))
            raise StorageError(f"Failed to delete expired outbox events: {e}") from e

        logger.info(
            "outbox_retention_deleted",
            deleted=deleted,
            retention_days=self.settings.retention_days,
            cutoff=cutoff.isoformat(),
        )
        return deleted

    async def find_stuck(self) -> List[OutboxEvent]:
        """
        Unpublished events whose retry_count reached max_retries, newest first.

        Raises:
            StorageError: If the query fails
        """
        try:
            async with self.session_factory() as db:
                return await OutboxRepository.fetch_stuck(db, self.settings.max_retries)
        except SQLAlchemyError as e:
            logger.error("outbox_stuck_query_failed", error=str(e))
            raise StorageError(f"Failed to query stuck outbox events: {e}") from e

    def _report_stuck(self, stuck: List[OutboxEvent]) -> List[Dict[str, Any]]:
        sample = [describe_stuck_event(e) for e in stuck[: self.settings.stuck_sample_size]]
        if not stuck:
            return sample

        logger.warning(
            "outbox_events_stuck",
            count=len(stuck),
            max_retries=self.settings.max_retries,
        )
        for details in sample:
            logger.warning("outbox_event_stuck", **details)
        return sample

    def _publish_metrics(self, deleted: int, failed: int) -> None:
        try:
            metrics.publish_sweep_metrics(
                deleted_count=deleted,
                failed_count=failed,
                service=self.settings.service_name,
                pushgateway_url=self.settings.metrics_pushgateway_url,
            )
        except Exception as e:
            # Metrics are best effort; the sweep result stands
            logger.error("outbox_sweep_metrics_failed", error=str(e))

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Run one sweep: delete, report stuck events, emit metrics.

        Returns:
            SweepResult: deleted count, stuck count and logged sample

        Raises:
            StorageError: If the database is unavailable
        """
        deleted = await self.delete_expired(now)
        stuck = await self.find_stuck()
        sample = self._report_stuck(stuck)

        self._publish_metrics(deleted, len(stuck))

        result = SweepResult(deleted=deleted, stuck=len(stuck), sample=sample)
        logger.info("outbox_sweep_completed", deleted=result.deleted, stuck=result.stuck)
        return result

    async def run_once(self) -> SweepResult:
        """
        Run one sweep bounded by the sweeper deadline.

        Raises:
            asyncio.TimeoutError: Sweep exceeded sweeper_timeout_seconds
        """
        return await asyncio.wait_for(
            self.sweep(), timeout=self.settings.sweeper_timeout_seconds
        )
