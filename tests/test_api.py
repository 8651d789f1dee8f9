"""
API tests for the webhook, admin and monitoring endpoints.
"""
import asyncio
from typing import Any, Callable, Dict

import pytest
from httpx import AsyncClient
from prometheus_client import REGISTRY
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_relay.config import Settings
from payment_relay.core.webhook_intake import WebhookIntake
from payment_relay.database.models import OutboxEvent, Payment, PaymentProvider, PaymentStatus
from payment_relay.database.repository import OutboxRepository
from payment_relay.exceptions import StorageError
from payment_relay.monitoring.health import HealthCheck

from fakes import FakePublisher


async def _outbox_count(session_factory: async_sessionmaker[AsyncSession]) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count(OutboxEvent.id)))).scalar_one()


def _callback_count(provider: str, outcome: str) -> float:
    value = REGISTRY.get_sample_value(
        "webhook_callbacks_total", {"provider": provider, "outcome": outcome}
    )
    return value or 0.0


class TestWebhookEndpoint:
    """Tests for POST /webhooks/{provider}."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_zalopay_callback(
        self,
        client: AsyncClient,
        create_payment: Callable[..., Any],
        zalopay_callback: Callable[..., Dict[str, Any]],
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await create_payment(order_code="ORD-1001")

        response = await client.post("/webhooks/zalopay", json=zalopay_callback())

        assert response.status_code == 200
        assert response.json() == {"return_code": 1, "return_message": "success"}
        assert "X-Request-ID" in response.headers
        assert await _outbox_count(session_factory) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payos_replay_returns_same_ack(
        self,
        client: AsyncClient,
        create_payment: Callable[..., Any],
        payos_callback: Callable[..., Dict[str, Any]],
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await create_payment(order_code="1001", provider=PaymentProvider.PAYOS)
        body = payos_callback()

        first = await client.post("/webhooks/payos", json=body)
        second = await client.post("/webhooks/payos", json=body)

        assert first.status_code == second.status_code == 200
        assert first.json() == second.json() == {"success": True}
        assert await _outbox_count(session_factory) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_forged_callback_is_acknowledged_without_writes(
        self,
        client: AsyncClient,
        create_payment: Callable[..., Any],
        zalopay_callback: Callable[..., Dict[str, Any]],
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await create_payment(order_code="ORD-1001")

        response = await client.post("/webhooks/zalopay", json=zalopay_callback(key="forged"))

        assert response.status_code == 200
        assert response.json() == {"return_code": -1}
        assert await _outbox_count(session_factory) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_json_body(self, client: AsyncClient) -> None:
        response = await client.post(
            "/webhooks/payos",
            content=b"not json",
            headers={"content-type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"error": "Invalid payload"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_provider(self, client: AsyncClient) -> None:
        before = _callback_count("unknown", "unknown_provider")

        response = await client.post("/webhooks/stripe", json={"id": "evt_1"})

        assert response.status_code == 400
        assert response.json() == {"error": "Unknown payment provider"}
        assert _callback_count("unknown", "unknown_provider") == before + 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order_is_internal_error(
        self,
        client: AsyncClient,
        zalopay_callback: Callable[..., Dict[str, Any]],
    ) -> None:
        response = await client.post(
            "/webhooks/zalopay", json=zalopay_callback("240101_ORD-404")
        )

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_storage_failure_is_internal_error(
        self,
        client: AsyncClient,
        webhook_intake: WebhookIntake,
        zalopay_callback: Callable[..., Dict[str, Any]],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def broken(*args: Any, **kwargs: Any) -> str:
            raise StorageError("database unavailable")

        monkeypatch.setattr(webhook_intake, "_apply_terminal_status", broken)
        before = _callback_count("zalopay", "error")

        response = await client.post("/webhooks/zalopay", json=zalopay_callback())

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}
        assert _callback_count("zalopay", "error") == before + 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_deadline_rolls_back_and_is_internal_error(
        self,
        client: AsyncClient,
        webhook_intake: WebhookIntake,
        test_settings: Settings,
        create_payment: Callable[..., Any],
        zalopay_callback: Callable[..., Dict[str, Any]],
        session_factory: async_sessionmaker[AsyncSession],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await create_payment(order_code="ORD-1001")

        async def slow_add_event(*args: Any, **kwargs: Any) -> OutboxEvent:
            await asyncio.sleep(1)
            raise AssertionError("deadline should have cancelled the write")

        monkeypatch.setattr(
            webhook_intake,
            "settings",
            test_settings.model_copy(update={"intake_timeout_seconds": 0.05}),
        )
        monkeypatch.setattr(OutboxRepository, "add_event", staticmethod(slow_add_event))
        before = _callback_count("zalopay", "timeout")

        response = await client.post("/webhooks/zalopay", json=zalopay_callback())

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}
        assert _callback_count("zalopay", "timeout") == before + 1

        async with session_factory() as db:
            payment = (
                await db.execute(select(Payment).where(Payment.order_code == "ORD-1001"))
            ).scalar_one()
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.completed_at is None
        assert await _outbox_count(session_factory) == 0


class TestAdminEndpoint:
    """Tests for GET /admin/outbox/pending."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reports_pending_and_stuck(
        self,
        client: AsyncClient,
        create_payment: Callable[..., Any],
        zalopay_callback: Callable[..., Dict[str, Any]],
    ) -> None:
        await create_payment(order_code="ORD-1001")
        await client.post("/webhooks/zalopay", json=zalopay_callback())

        response = await client.get("/admin/outbox/pending")

        assert response.status_code == 200
        data = response.json()
        assert data["pending"] == 1
        assert data["stuck"] == 0
        assert data["max_retries"] == 5
        assert data["sample"] == []


class TestMonitoringEndpoints:
    """Tests for health and metrics endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_readiness_with_healthy_dependencies(
        self,
        client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        from payment_relay.api import routes
        from payment_relay.monitoring import health as health_module

        monkeypatch.setattr(health_module, "get_session_factory", lambda: session_factory)
        monkeypatch.setattr(routes, "health_check", HealthCheck(publisher=FakePublisher()))

        response = await client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["kafka"]["brokers"] == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_readiness_with_broker_down(
        self,
        client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        from payment_relay.api import routes
        from payment_relay.monitoring import health as health_module

        class UnreachableBroker(FakePublisher):
            def check_connection(self, timeout: float = 5.0) -> int:
                raise ConnectionError("no brokers available")

        monkeypatch.setattr(health_module, "get_session_factory", lambda: session_factory)
        monkeypatch.setattr(routes, "health_check", HealthCheck(publisher=UnreachableBroker()))

        response = await client.get("/health/ready")

        assert response.status_code == 503

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client: AsyncClient) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "outbox_queue_depth" in response.text


class TestRequestContext:
    """Tests for request ID propagation."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_caller_request_id_is_echoed(self, client: AsyncClient) -> None:
        response = await client.get("/health/live", headers={"X-Request-ID": "req-1001"})

        assert response.headers["X-Request-ID"] == "req-1001"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_is_generated(self, client: AsyncClient) -> None:
        first = await client.get("/health/live")
        second = await client.get("/health/live")

        assert first.headers["X-Request-ID"] != second.headers["X-Request-ID"]
