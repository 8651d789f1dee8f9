"""Background workers for the outbox relay and retention sweep."""
from .outbox_relay import start_outbox_relay
from .retention_sweeper import start_retention_sweeper

__all__ = ["start_outbox_relay", "start_retention_sweeper"]
