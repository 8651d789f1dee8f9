"""External integrations: provider callbacks and the Kafka broker."""
from .kafka_producer import KafkaEventPublisher, close_event_publisher, get_event_publisher
from .signature import CallbackResult, SignatureVerifier

__all__ = [
    "CallbackResult",
    "KafkaEventPublisher",
    "SignatureVerifier",
    "close_event_publisher",
    "get_event_publisher",
]
