"""
API routes for provider webhooks, outbox administration and monitoring.
"""
import asyncio
import time
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payment_relay.config import get_settings
from payment_relay.core.outbox import OutboxRelay
from payment_relay.core.retention import RetentionSweeper, describe_stuck_event
from payment_relay.core.webhook_intake import WebhookIntake, resolve_provider
from payment_relay.exceptions import OutboxError, UnknownProviderError
from payment_relay.monitoring.health import HealthCheck
from payment_relay.monitoring.metrics import metrics

from .schemas import ErrorResponse, HealthCheckResponse, OutboxStatusResponse

logger = structlog.get_logger(__name__)

# Create routers
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

# Initialize services
webhook_intake = WebhookIntake()
outbox_relay = OutboxRelay()
retention_sweeper = RetentionSweeper()
health_check = HealthCheck()

INTERNAL_ERROR_BODY = {"error": "Internal server error"}


def get_webhook_intake() -> WebhookIntake:
    return webhook_intake


def get_outbox_relay() -> OutboxRelay:
    return outbox_relay


def get_retention_sweeper() -> RetentionSweeper:
    return retention_sweeper


@webhook_router.post(
    "/{provider_path:path}",
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Payment provider callback",
    description="Verify a ZaloPay or PayOS callback and record the payment outcome",
)
async def provider_webhook(
    provider_path: str,
    request: Request,
    intake: WebhookIntake = Depends(get_webhook_intake),
) -> JSONResponse:
    """
    Handle a provider callback.

    Always answers 200 with the provider's acknowledgement body once the
    provider is known, including for forged or replayed callbacks.
    """
    start_time = time.time()

    try:
        provider = resolve_provider(provider_path)
    except UnknownProviderError as e:
        logger.warning("api_webhook_unknown_provider", path=provider_path, error=str(e))
        metrics.record_webhook_callback("unknown", "unknown_provider", time.time() - start_time)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Unknown payment provider"},
        )

    try:
        body = await request.json()
    except ValueError:
        # Verifier rejects it as an invalid payload
        body = None

    try:
        result = await intake.handle_callback(provider, body)

    except asyncio.TimeoutError:
        logger.error("api_webhook_timeout", provider=provider.value)
        metrics.record_webhook_callback(provider.value, "timeout", time.time() - start_time)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=INTERNAL_ERROR_BODY
        )

    except OutboxError as e:
        logger.error(
            "api_webhook_error",
            provider=provider.value,
            error=str(e),
            error_type=type(e).__name__,
        )
        metrics.record_webhook_callback(provider.value, "error", time.time() - start_time)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=INTERNAL_ERROR_BODY
        )

    metrics.record_webhook_callback(provider.value, result.outcome, time.time() - start_time)

    logger.info(
        "api_webhook_processed",
        provider=provider.value,
        order_code=result.order_code,
        outcome=result.outcome,
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content=result.response)


@admin_router.get(
    "/outbox/pending",
    response_model=OutboxStatusResponse,
    summary="Outbox status",
    description="Pending event count and stuck event report (read only)",
)
async def outbox_status(
    relay: OutboxRelay = Depends(get_outbox_relay),
    sweeper: RetentionSweeper = Depends(get_retention_sweeper),
) -> Dict[str, Any]:
    """Report the relay backlog and events that exhausted their retries."""
    settings = get_settings()

    try:
        pending = await relay.get_pending_count()
        stuck = await sweeper.find_stuck()
    except OutboxError as e:
        logger.error("api_outbox_status_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Outbox status unavailable",
        )

    return {
        "pending": pending,
        "stuck": len(stuck),
        "max_retries": settings.max_retries,
        "sample": [describe_stuck_event(e) for e in stuck[: settings.stuck_sample_size]],
    }


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        result = await health_check.check_all()
        return result
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness() -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness() -> Dict[str, Any]:
    """Readiness probe endpoint."""
    try:
        result = await health_check.readiness()
        if result["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
        return result
    except HTTPException:
        raise
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
