"""
Pydantic schemas for API responses.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    """Body returned to providers when a callback cannot be processed."""

    error: str = Field(..., description="Error summary")


class StuckEventResponse(BaseModel):
    """An outbox event that exhausted its retries."""

    id: int = Field(..., description="Outbox event ID")
    event_type: str = Field(..., description="Event type")
    aggregate_type: str = Field(..., description="Aggregate type")
    aggregate_id: UUID = Field(..., description="Aggregate (payment) ID")
    retry_count: int = Field(..., description="Failed publish attempts")
    last_error: Optional[str] = Field(default=None, description="Last publish error")
    created_at: Optional[datetime] = Field(default=None, description="Event creation time")


class OutboxStatusResponse(BaseModel):
    """Response schema for the outbox status report."""

    pending: int = Field(..., description="Unpublished events with retry budget left")
    stuck: int = Field(..., description="Unpublished events that exhausted their retries")
    max_retries: int = Field(..., description="Configured retry budget")
    sample: List[StuckEventResponse] = Field(
        default_factory=list, description="Newest stuck events"
    )
