"""
Transactional outbox relay.

Events are written to the outbox in the same transaction as the payment
change (see webhook_intake). This module drains them to Kafka:
1. Select a batch of unpublished events that still have retry budget
2. Publish them concurrently, waiting for each broker acknowledgement
3. Mark each one published, or record the failure, in its own transaction

Delivery is at-least-once: if marking fails after a successful publish the
event is sent again on a later pass.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_relay.config import Settings, get_settings
from payment_relay.database.connection import get_session_factory
from payment_relay.database.models import EventType, OutboxEvent
from payment_relay.database.repository import OutboxRepository
from payment_relay.exceptions import SchemaError, StorageError, TransientPublishError
from payment_relay.integrations.kafka_producer import KafkaEventPublisher, get_event_publisher
from payment_relay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EVENT_VERSION = "1.0"


@dataclass(frozen=True)
class RelayResult:
    """Counts for one relay pass."""

    selected: int
    published: int
    failed: int


class OutboxRelay:
    """
    Publishes events from the outbox table to Kafka.

    Example:
        >>> relay = OutboxRelay()
        >>> result = await relay.run_once()
        >>> result.published
        42
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        publisher: Optional[KafkaEventPublisher] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize outbox relay.

        Args:
            session_factory: Session factory (defaults to the shared engine)
            publisher: Broker publisher (defaults to the process-wide producer)
            settings: Application settings
        """
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._publisher = publisher
        self.topics: Dict[str, str] = {
            EventType.PAYMENT_COMPLETED.value: self.settings.kafka_topic_payment_completed,
            EventType.PAYMENT_FAILED.value: self.settings.kafka_topic_payment_failed,
        }
        self._stop_event = asyncio.Event()

        logger.info(
            "outbox_relay_initialized",
            batch_size=self.settings.batch_size,
            max_retries=self.settings.max_retries,
            concurrency=self.settings.relay_concurrency,
        )

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    @property
    def publisher(self) -> KafkaEventPublisher:
        if self._publisher is None:
            self._publisher = get_event_publisher()
        return self._publisher

    def topic_for(self, event_type: str) -> str:
        """
        Resolve the destination topic.

        Raises:
            SchemaError: If the event type has no topic
        """
        try:
            return self.topics[event_type]
        except KeyError:
            raise SchemaError(event_type) from None

    def build_headers(self, event: OutboxEvent) -> Dict[str, str]:
        """Message headers; messageId is fresh for every attempt."""
        return {
            "eventType": event.event_type,
            "eventVersion": EVENT_VERSION,
            "source": self.settings.event_source,
            "correlationId": str(event.aggregate_id),
            "messageId": str(uuid.uuid4()),
        }

    def _truncate_error(self, error: Exception) -> str:
        message = str(error) or type(error).__name__
        return message[: self.settings.last_error_max_length]

    async def _fetch_batch(self) -> List[OutboxEvent]:
        try:
            async with self.session_factory() as db:
                return await OutboxRepository.fetch_relayable(
                    db, self.settings.batch_size, self.settings.max_retries
                )
        except SQLAlchemyError as e:
            logger.error("outbox_batch_fetch_failed", error=str(e))
            raise StorageError(f"Failed to fetch outbox batch: {e}") from e

    async def _mark_as_published(self, event: OutboxEvent) -> bool:
        """
        Mark one event published in its own transaction.

        Returns:
            bool: False if the database write failed
        """
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    updated = await OutboxRepository.mark_published(
                        db, event.id, datetime.now(timezone.utc)
                    )
        except SQLAlchemyError as e:
            logger.error(
                "outbox_event_mark_failed",
                event_id=event.id,
                error=str(e),
            )
            return False

        if not updated:
            logger.info("outbox_event_already_published", event_id=event.id)
        return True

    async def _record_failure(self, event: OutboxEvent, error: Exception) -> None:
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    await OutboxRepository.record_failure(
                        db, event.id, self._truncate_error(error)
                    )
        except SQLAlchemyError as e:
            logger.error(
                "outbox_event_failure_not_recorded",
                event_id=event.id,
                error=str(e),
            )

    async def _relay_event(self, event: OutboxEvent, semaphore: asyncio.Semaphore) -> bool:
        """
        Publish a single event and persist the outcome.

        Returns:
            bool: True if published and marked
        """
        async with semaphore:
            try:
                topic = self.topic_for(event.event_type)
                await self.publisher.publish(
                    topic=topic,
                    key=str(event.aggregate_id),
                    value=event.payload,
                    headers=self.build_headers(event),
                )

            except SchemaError as e:
                logger.warning(
                    "outbox_event_unknown_type",
                    event_id=event.id,
                    event_type=event.event_type,
                )
                metrics.record_outbox_publish_failure(event.event_type, "schema")
                await self._record_failure(event, e)
                return False

            except Exception as e:
                reason = "transient" if isinstance(e, TransientPublishError) else "unexpected"
                logger.error(
                    "outbox_event_publish_failed",
                    event_id=event.id,
                    event_type=event.event_type,
                    attempt=event.retry_count + 1,
                    error=str(e),
                )
                metrics.record_outbox_publish_failure(event.event_type, reason)
                await self._record_failure(event, e)
                return False

            if not await self._mark_as_published(event):
                metrics.record_outbox_publish_failure(event.event_type, "storage")
                return False

            metrics.record_outbox_event_published(event.event_type)
            logger.info(
                "outbox_event_published",
                event_id=event.id,
                event_type=event.event_type,
                aggregate_id=str(event.aggregate_id),
                topic=topic,
            )
            return True

    async def process_batch(self) -> RelayResult:
        """
        Run one relay pass.

        Returns:
            RelayResult: selected, published and failed counts

        Raises:
            StorageError: If the batch could not be selected
        """
        start_time = time.time()
        events = await self._fetch_batch()

        if not events:
            await self._refresh_queue_depth()
            return RelayResult(selected=0, published=0, failed=0)

        logger.info("outbox_batch_processing_started", batch_size=len(events))

        semaphore = asyncio.Semaphore(self.settings.relay_concurrency)
        outcomes = await asyncio.gather(
            *(self._relay_event(event, semaphore) for event in events)
        )

        published = sum(1 for ok in outcomes if ok)
        result = RelayResult(
            selected=len(events),
            published=published,
            failed=len(events) - published,
        )

        metrics.record_relay_duration(time.time() - start_time)
        await self._refresh_queue_depth()

        logger.info(
            "outbox_batch_processed",
            total=result.selected,
            published=result.published,
            failed=result.failed,
        )
        return result

    async def run_once(self) -> RelayResult:
        """
        Run one pass bounded by the relay deadline.

        Raises:
            asyncio.TimeoutError: Pass exceeded relay_timeout_seconds
        """
        return await asyncio.wait_for(
            self.process_batch(), timeout=self.settings.relay_timeout_seconds
        )

    async def start(self) -> None:
        """
        Run relay passes until stop() is called.

        A failed pass is logged and retried on the next tick.
        """
        self._stop_event.clear()
        logger.info(
            "outbox_relay_started",
            interval_seconds=self.settings.relay_interval_seconds,
        )

        try:
            while not self._stop_event.is_set():
                try:
                    await self.run_once()
                except asyncio.TimeoutError:
                    logger.error(
                        "outbox_relay_pass_timeout",
                        timeout_seconds=self.settings.relay_timeout_seconds,
                    )
                except StorageError as e:
                    logger.error("outbox_relay_pass_failed", error=str(e))

                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self.settings.relay_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("outbox_relay_stopped")

    def stop(self) -> None:
        """Stop the relay loop after the current pass."""
        self._stop_event.set()
        logger.info("outbox_relay_stop_requested")

    async def get_pending_count(self) -> int:
        """
        Count unpublished events that a pass could still pick up.

        Also updates the queue depth gauge.
        """
        try:
            async with self.session_factory() as db:
                count = await OutboxRepository.count_relayable(db, self.settings.max_retries)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to count pending outbox events: {e}") from e

        metrics.set_outbox_queue_depth(count)
        return count

    async def _refresh_queue_depth(self) -> None:
        try:
            await self.get_pending_count()
        except StorageError as e:
            logger.warning("outbox_pending_count_failed", error=str(e))
