"""
Error taxonomy for the intake, relay and sweeper.

Entry-local errors (TransientPublishError, SchemaError) are recorded on the
outbox row. StorageError fails the whole invocation.
"""


class OutboxError(Exception):
    """Base class for payment relay errors."""

    pass


class WebhookAuthenticationError(OutboxError):
    """Raised when a callback's MAC or signature does not verify."""

    pass


class CallbackValidationError(OutboxError):
    """Raised when a callback body is missing fields or cannot be parsed."""

    pass


class UnknownProviderError(OutboxError):
    """Raised when the webhook route does not name a known provider."""

    pass


class PaymentNotFoundError(OutboxError):
    """Raised when an authentic callback references an unknown order code."""

    def __init__(self, order_code: str):
        super().__init__(f"No payment found for order code {order_code!r}")
        self.order_code = order_code


class TransientPublishError(OutboxError):
    """Raised when the broker is unreachable or a delivery times out."""

    pass


class SchemaError(OutboxError):
    """Raised when an outbox entry's event type has no topic mapping."""

    def __init__(self, event_type: str):
        super().__init__(f"Unknown event type: {event_type}")
        self.event_type = event_type


class StorageError(OutboxError):
    """Raised when the database cannot be read or written."""

    pass
