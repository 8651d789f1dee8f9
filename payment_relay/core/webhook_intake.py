"""
Webhook intake: the only entry point that changes payment state.

A verified callback moves the payment to its terminal status and stages the
matching outbox event in one database transaction. Nothing is sent to the
broker here; the relay picks the event up later.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_relay.config import Settings, get_settings
from payment_relay.database.connection import get_session_factory
from payment_relay.database.models import EventType, Payment, PaymentProvider, PaymentStatus
from payment_relay.database.repository import OutboxRepository, PaymentRepository
from payment_relay.exceptions import PaymentNotFoundError, StorageError, UnknownProviderError
from payment_relay.integrations.signature import SignatureVerifier

logger = structlog.get_logger(__name__)

# Route substrings, checked in order
_PROVIDER_ROUTES = (
    ("zalopay", PaymentProvider.ZALOPAY),
    ("payos", PaymentProvider.PAYOS),
)

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_REJECTED = "rejected"
OUTCOME_UNAUTHENTICATED = "unauthenticated"
OUTCOME_IGNORED = "ignored"


@dataclass(frozen=True)
class IntakeResult:
    """What the webhook should answer and what happened."""

    response: Dict[str, Any]
    outcome: str
    order_code: Optional[str] = None


def resolve_provider(path: str) -> PaymentProvider:
    """
    Pick the provider from the webhook route.

    Raises:
        UnknownProviderError: If the path names no supported provider
    """
    lowered = path.lower()
    for fragment, provider in _PROVIDER_ROUTES:
        if fragment in lowered:
            return provider
    raise UnknownProviderError(f"Unknown payment provider for path {path!r}")


def build_event_payload(
    payment: Payment, event_type: EventType, occurred_at: datetime
) -> Dict[str, Any]:
    """Snapshot of the payment fields downstream consumers need."""
    timestamp_field = (
        "completed_at" if event_type == EventType.PAYMENT_COMPLETED else "failed_at"
    )
    return {
        "payment_id": str(payment.id),
        "order_code": payment.order_code,
        "amount_cents": payment.amount_cents,
        "currency": payment.currency,
        "provider": payment.provider,
        "transaction_id": payment.provider_transaction_id,
        timestamp_field: occurred_at.isoformat(),
    }


class WebhookIntake:
    """
    Verifies provider callbacks and records their effect atomically.

    Replayed callbacks are detected by the conditional status update matching
    no PENDING row; they produce no second outbox entry.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        verifier: Optional[SignatureVerifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.verifier = verifier or SignatureVerifier(self.settings)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def handle_callback(self, provider: PaymentProvider, body: Any) -> IntakeResult:
        """
        Verify one callback and apply it, within the intake deadline.

        Args:
            provider: Provider resolved from the route
            body: Decoded callback body

        Returns:
            IntakeResult: Provider acknowledgement body and outcome tag

        Raises:
            PaymentNotFoundError: Authentic callback for an unknown order
            StorageError: Database unavailable
            asyncio.TimeoutError: Deadline exceeded (transaction rolled back)
        """
        return await asyncio.wait_for(
            self._handle(provider, body), timeout=self.settings.intake_timeout_seconds
        )

    async def _handle(self, provider: PaymentProvider, body: Any) -> IntakeResult:
        result = self.verifier.verify(provider, body)

        if not result.authenticated:
            logger.warning("webhook_callback_ignored", provider=provider.value)
            outcome = OUTCOME_IGNORED if result.success else OUTCOME_UNAUTHENTICATED
            return IntakeResult(response=result.response, outcome=outcome)

        status = PaymentStatus.COMPLETED if result.success else PaymentStatus.FAILED
        outcome = await self._apply_terminal_status(result.order_code, status)

        return IntakeResult(
            response=result.response, outcome=outcome, order_code=result.order_code
        )

    async def _apply_terminal_status(self, order_code: str, status: PaymentStatus) -> str:
        """
        Update the payment and stage the outbox event in one transaction.

        Returns:
            str: completed / failed when applied, duplicate or rejected when skipped
        """
        event_type = (
            EventType.PAYMENT_COMPLETED
            if status == PaymentStatus.COMPLETED
            else EventType.PAYMENT_FAILED
        )
        now = datetime.now(timezone.utc)

        try:
            async with self.session_factory() as db:
                async with db.begin():
                    transitioned = await PaymentRepository.transition_to_terminal(
                        db, order_code, status, now
                    )
                    payment = await PaymentRepository.get_by_order_code(db, order_code)

                    if payment is None:
                        raise PaymentNotFoundError(order_code)

                    if not transitioned:
                        if payment.status == status.value:
                            logger.info(
                                "webhook_callback_duplicate",
                                order_code=order_code,
                                status=payment.status,
                            )
                            return OUTCOME_DUPLICATE
                        logger.warning(
                            "payment_transition_rejected",
                            order_code=order_code,
                            current_status=payment.status,
                            requested_status=status.value,
                        )
                        return OUTCOME_REJECTED

                    event = await OutboxRepository.add_event(
                        db,
                        aggregate_id=payment.id,
                        event_type=event_type,
                        payload=build_event_payload(payment, event_type, now),
                    )
        except SQLAlchemyError as e:
            logger.error("webhook_storage_error", order_code=order_code, error=str(e))
            raise StorageError(f"Failed to record callback for {order_code}: {e}") from e

        logger.info(
            "payment_status_recorded",
            order_code=order_code,
            payment_id=str(payment.id),
            status=status.value,
            outbox_event_id=event.id,
        )
        return OUTCOME_COMPLETED if status == PaymentStatus.COMPLETED else OUTCOME_FAILED
