"""
Structured logging shared by the webhook API and the relay/sweeper jobs.

Every event is a JSON line carrying the app name, environment and, for the
background jobs, the job name, so one log stream can hold all three.
"""
import logging
import sys
from typing import Any, Callable, List

import structlog
from pythonjsonlogger import jsonlogger

from payment_relay.config import Settings, get_settings

Processor = Callable[[Any, str, dict[str, Any]], dict[str, Any]]

# Libraries that log per statement or per request at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncio", "uvicorn.access")


def app_context(settings: Settings) -> Processor:
    """Processor stamping app name and environment on every event."""
    app_name = settings.app_name
    app_env = settings.app_env

    def _add(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("app_name", app_name)
        event_dict.setdefault("app_env", app_env)
        return event_dict

    return _add


def build_processors(settings: Settings) -> List[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        app_context(settings),
        structlog.processors.JSONRenderer(),
    ]


def _route_stdlib_to_stdout(level: str) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    # structlog events arrive pre-rendered; this shapes third-party records
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging(component: str | None = None) -> None:
    """
    Configure structlog and stdlib logging for one process.

    Args:
        component: Job name (webhook, relay, sweeper) bound to every event
    """
    settings = get_settings()

    structlog.configure(
        processors=build_processors(settings),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _route_stdlib_to_stdout(settings.log_level)

    if component:
        structlog.contextvars.bind_contextvars(component=component)

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, component=component
    )
