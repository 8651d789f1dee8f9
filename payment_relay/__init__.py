"""Payment relay: provider webhooks, transactional outbox and Kafka relay."""

__version__ = "1.0.0"
