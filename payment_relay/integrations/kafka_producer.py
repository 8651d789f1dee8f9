"""
Kafka publisher for outbox events.

Wraps a confluent-kafka Producer and bridges its delivery reports to asyncio
so the relay can await each message individually. One producer is shared per
process; it is created on first use and closed idempotently.
"""
import asyncio
import json
from typing import Any, Dict, Optional

import structlog
from confluent_kafka import KafkaError, KafkaException, Producer

from payment_relay.config import Settings, get_settings
from payment_relay.exceptions import TransientPublishError

logger = structlog.get_logger(__name__)

# Poll interval while waiting for a delivery report
_POLL_INTERVAL_SECONDS = 0.01


def build_producer_config(settings: Settings) -> Dict[str, Any]:
    """
    Convert settings to a confluent-kafka configuration dict.

    Returns:
        Configuration dictionary for Producer
    """
    config: Dict[str, Any] = {
        "bootstrap.servers": settings.kafka_brokers,
        "client.id": settings.kafka_client_id,
        "compression.type": "gzip",
        "acks": "all",
        "enable.idempotence": True,
        "message.timeout.ms": int(settings.kafka_delivery_timeout_seconds * 1000),
    }

    if settings.kafka_sasl_enabled:
        config.update(
            {
                "security.protocol": "SASL_SSL" if settings.kafka_ssl else "SASL_PLAINTEXT",
                "sasl.mechanism": settings.kafka_sasl_mechanism,
                "sasl.username": settings.kafka_sasl_username,
                "sasl.password": settings.kafka_sasl_password,
            }
        )
    elif settings.kafka_ssl:
        config["security.protocol"] = "SSL"

    return config


class KafkaEventPublisher:
    """
    Publishes JSON messages and waits for the broker acknowledgement.

    Example:
        >>> publisher = KafkaEventPublisher()
        >>> await publisher.publish("payment.completed", key=agg_id, value={...}, headers={...})
        >>> publisher.close()
    """

    def __init__(self, settings: Optional[Settings] = None, producer: Optional[Any] = None):
        """
        Initialize publisher.

        Args:
            settings: Application settings (defaults to cached settings)
            producer: Pre-built producer, mainly for tests
        """
        self.settings = settings or get_settings()
        self._producer = producer
        self._closed = False

    def _get_producer(self) -> Any:
        if self._closed:
            raise TransientPublishError("Kafka publisher is closed")
        if self._producer is None:
            self._producer = Producer(build_producer_config(self.settings))
            logger.info(
                "kafka_producer_created",
                brokers=self.settings.get_kafka_brokers_list(),
                client_id=self.settings.kafka_client_id,
                ssl=self.settings.kafka_ssl,
                sasl=self.settings.kafka_sasl_enabled,
            )
        return self._producer

    async def publish(
        self,
        topic: str,
        key: str,
        value: Dict[str, Any],
        headers: Dict[str, str],
    ) -> None:
        """
        Send one message and wait for its delivery report.

        Args:
            topic: Destination topic
            key: Partitioning key
            value: JSON-serializable message body
            headers: String headers

        Raises:
            TransientPublishError: Broker rejected, unreachable, or timed out
        """
        producer = self._get_producer()
        loop = asyncio.get_running_loop()
        delivered: asyncio.Future = loop.create_future()

        def on_delivery(err: Optional[KafkaError], msg: Any) -> None:
            if delivered.done():
                return
            if err is not None:
                delivered.set_exception(TransientPublishError(f"Delivery failed: {err}"))
            else:
                delivered.set_result(msg)

        try:
            producer.produce(
                topic=topic,
                key=key.encode("utf-8"),
                value=json.dumps(value, default=str).encode("utf-8"),
                headers=[(k, v.encode("utf-8")) for k, v in headers.items()],
                on_delivery=on_delivery,
            )
        except BufferError as e:
            raise TransientPublishError(f"Producer queue full: {e}") from e
        except KafkaException as e:
            raise TransientPublishError(f"Produce failed: {e}") from e

        deadline = loop.time() + self.settings.kafka_delivery_timeout_seconds
        while not delivered.done():
            producer.poll(0)
            if delivered.done():
                break
            if loop.time() >= deadline:
                delivered.cancel()
                raise TransientPublishError(
                    f"Delivery to {topic} timed out after "
                    f"{self.settings.kafka_delivery_timeout_seconds}s"
                )
            await asyncio.sleep(_POLL_INTERVAL_SECONDS)

        await delivered

    def check_connection(self, timeout: float = 5.0) -> int:
        """
        Fetch cluster metadata.

        Returns:
            int: Number of brokers reported by the cluster
        """
        metadata = self._get_producer().list_topics(timeout=timeout)
        return len(metadata.brokers)

    def close(self, timeout: float = 10.0) -> None:
        """Flush outstanding messages and release the producer. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        if self._producer is not None:
            remaining = self._producer.flush(timeout)
            if remaining:
                logger.warning("kafka_producer_flush_incomplete", remaining=remaining)
            self._producer = None
        logger.info("kafka_producer_closed")


_publisher: Optional[KafkaEventPublisher] = None


def get_event_publisher() -> KafkaEventPublisher:
    """Get or create the process-wide publisher."""
    global _publisher
    if _publisher is None:
        _publisher = KafkaEventPublisher()
    return _publisher


def close_event_publisher() -> None:
    """Close the process-wide publisher if one was created."""
    global _publisher
    if _publisher is not None:
        _publisher.close()
        _publisher = None
