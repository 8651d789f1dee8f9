"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Kafka broker reachability
"""
import asyncio
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text

from payment_relay.config import get_settings
from payment_relay.database.connection import get_session_factory
from payment_relay.integrations.kafka_producer import KafkaEventPublisher, get_event_publisher

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Kafka connectivity check
    - Overall system health status
    """

    def __init__(self, publisher: Optional[KafkaEventPublisher] = None) -> None:
        """Initialize health check service."""
        self.settings = get_settings()
        self._publisher = publisher

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_kafka(self) -> Dict[str, Any]:
        """
        Check Kafka reachability by fetching cluster metadata.

        Raises:
            HealthCheckError: If the brokers cannot be reached
        """
        try:
            publisher = self._publisher or get_event_publisher()
            broker_count = await asyncio.get_running_loop().run_in_executor(
                None, publisher.check_connection
            )

            return {
                "status": "healthy",
                "service": "kafka",
                "message": "Kafka connection successful",
                "brokers": broker_count,
            }

        except Exception as e:
            logger.error("kafka_health_check_failed", error=str(e))
            raise HealthCheckError(f"Kafka health check failed: {str(e)}")

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("kafka", self.check_kafka)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy",
                    "service": name,
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies must be reachable."""
        return await self.check_all()
