"""
Pytest configuration and fixtures.

Tests run against an in-memory SQLite database (aiosqlite) and a fake Kafka
publisher, so no external services are required.
"""
import json
import os
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Callable, Dict, Optional

# Settings are read at import time by the API module
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from payment_relay.config import Settings
from payment_relay.core.outbox import OutboxRelay
from payment_relay.core.retention import RetentionSweeper
from payment_relay.core.webhook_intake import WebhookIntake
from payment_relay.database.models import Base, Payment, PaymentProvider, PaymentStatus
from payment_relay.integrations.signature import (
    SignatureVerifier,
    compute_hmac_sha256,
    payos_canonical_string,
)

from fakes import FakePublisher

ZALOPAY_KEY2 = "zalopay-test-key2"
PAYOS_CHECKSUM_KEY = "payos-test-checksum-key"


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        kafka_brokers="localhost:9092",
        zalopay_key2=ZALOPAY_KEY2,
        payos_checksum_key=PAYOS_CHECKSUM_KEY,
        relay_concurrency=1,
        app_name="payment-relay-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, Any]:
    """In-memory database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
def create_payment(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Factory inserting a PENDING payment."""

    async def _create(
        order_code: str = "ORD-1001",
        amount_cents: int = 150000,
        provider: PaymentProvider = PaymentProvider.ZALOPAY,
        provider_transaction_id: Optional[str] = "zp-240101-0001",
    ) -> Payment:
        payment = Payment(
            order_code=order_code,
            amount_cents=amount_cents,
            currency="VND",
            provider=provider.value,
            status=PaymentStatus.PENDING.value,
            provider_transaction_id=provider_transaction_id,
            created_at=datetime.now(timezone.utc),
            updated_at=datetime.now(timezone.utc),
        )
        async with session_factory() as db:
            async with db.begin():
                db.add(payment)
        return payment

    return _create


@pytest.fixture
def zalopay_callback() -> Callable[..., Dict[str, Any]]:
    """Build a ZaloPay callback body signed with the test key2."""

    def _build(app_trans_id: str = "240101_ORD-1001", key: str = ZALOPAY_KEY2) -> Dict[str, Any]:
        data = json.dumps(
            {
                "app_id": 2553,
                "app_trans_id": app_trans_id,
                "amount": 150000,
                "zp_trans_id": 240101000001,
            }
        )
        return {"data": data, "mac": compute_hmac_sha256(key, data), "type": 1}

    return _build


@pytest.fixture
def payos_callback() -> Callable[..., Dict[str, Any]]:
    """Build a PayOS callback body signed with the test checksum key."""

    def _build(
        order_code: Any = 1001, code: str = "00", key: str = PAYOS_CHECKSUM_KEY
    ) -> Dict[str, Any]:
        data = {
            "orderCode": order_code,
            "amount": 150000,
            "description": "Thanh toan don hang",
            "reference": "FT24010100001",
            "code": code,
            "desc": "success" if code == "00" else "failed",
        }
        return {
            "code": code,
            "data": data,
            "signature": compute_hmac_sha256(key, payos_canonical_string(data)),
        }

    return _build


@pytest.fixture
def fake_publisher() -> FakePublisher:
    """Publisher that records messages instead of sending them."""
    return FakePublisher()


@pytest.fixture
def webhook_intake(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings
) -> WebhookIntake:
    """Webhook intake wired to the test database."""
    return WebhookIntake(
        session_factory=session_factory,
        verifier=SignatureVerifier(test_settings),
        settings=test_settings,
    )


@pytest.fixture
def outbox_relay(
    session_factory: async_sessionmaker[AsyncSession],
    fake_publisher: FakePublisher,
    test_settings: Settings,
) -> OutboxRelay:
    """Outbox relay wired to the test database and fake publisher."""
    return OutboxRelay(
        session_factory=session_factory, publisher=fake_publisher, settings=test_settings
    )


@pytest.fixture
def retention_sweeper(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings
) -> RetentionSweeper:
    """Retention sweeper wired to the test database."""
    return RetentionSweeper(session_factory=session_factory, settings=test_settings)


@pytest_asyncio.fixture
async def client(
    webhook_intake: WebhookIntake,
    outbox_relay: OutboxRelay,
    retention_sweeper: RetentionSweeper,
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client with services bound to the test database."""
    from payment_relay.api import routes
    from payment_relay.api.main import app

    app.dependency_overrides[routes.get_webhook_intake] = lambda: webhook_intake
    app.dependency_overrides[routes.get_outbox_relay] = lambda: outbox_relay
    app.dependency_overrides[routes.get_retention_sweeper] = lambda: retention_sweeper

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
