"""Core intake, relay and retention logic."""
from .outbox import OutboxRelay, RelayResult
from .retention import RetentionSweeper, SweepResult
from .webhook_intake import IntakeResult, WebhookIntake, resolve_provider

__all__ = [
    "IntakeResult",
    "OutboxRelay",
    "RelayResult",
    "RetentionSweeper",
    "SweepResult",
    "WebhookIntake",
    "resolve_provider",
]
