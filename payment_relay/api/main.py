"""
Webhook intake service.

Providers POST callbacks to /webhooks/{provider}. Every response carries an
X-Request-ID (the caller's, when it sent one) that is also bound to every log
event emitted while handling the request.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from payment_relay import __version__
from payment_relay.config import get_settings
from payment_relay.database.connection import close_db, init_db
from payment_relay.integrations.kafka_producer import close_event_publisher
from payment_relay.monitoring.logging import setup_logging

from .routes import INTERNAL_ERROR_BODY, admin_router, monitoring_router, webhook_router

setup_logging(component="webhook")
logger = structlog.get_logger(__name__)

settings = get_settings()

REQUEST_ID_HEADER = "X-Request-ID"


async def _shutdown() -> None:
    # The producer flush and the pool dispose fail independently
    try:
        close_event_publisher()
    except Exception as e:
        logger.error("event_publisher_close_failed", error=str(e))
    try:
        await close_db()
    except Exception as e:
        logger.error("database_close_failed", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create tables on startup; flush Kafka and dispose the pool on shutdown."""
    logger.info("webhook_service_starting", version=__version__, env=settings.app_env)

    try:
        await init_db()
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    await _shutdown()
    logger.info("webhook_service_stopped")


app = FastAPI(
    title="Payment Relay",
    description=(
        "Payment provider webhook intake with a transactional outbox. "
        "Verified callbacks update the payment and stage a Kafka event atomically."
    ),
    version=__version__,
    lifespan=lifespan,
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """Bind a request ID to the log context and echo it in the response."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    started = time.perf_counter()

    with structlog.contextvars.bound_contextvars(
        request_id=request_id, path=request.url.path
    ):
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_failed", duration_seconds=round(time.perf_counter() - started, 4)
            )
            raise

        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "request_handled",
            method=request.method,
            status_code=response.status_code,
            duration_seconds=round(time.perf_counter() - started, 4),
        )
        return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Providers only ever see the generic 500 body."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=INTERNAL_ERROR_BODY
    )


app.include_router(webhook_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    return {
        "service": settings.app_name,
        "version": __version__,
        "environment": settings.app_env,
        "webhooks": ["/webhooks/zalopay", "/webhooks/payos"],
    }


def main() -> None:
    import uvicorn

    uvicorn.run(
        "payment_relay.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
