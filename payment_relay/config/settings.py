"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (postgresql+asyncpg://...)")
    database_pool_size: int = Field(default=5, description="Database connection pool size")
    database_max_overflow: int = Field(default=10, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Kafka Configuration
    kafka_brokers: str = Field(
        default="localhost:9092", description="Kafka broker addresses (comma-separated)"
    )
    kafka_ssl: bool = Field(default=False, description="Use TLS for broker connections")
    kafka_sasl_username: Optional[str] = Field(default=None, description="SASL username")
    kafka_sasl_password: Optional[str] = Field(default=None, description="SASL password")
    kafka_sasl_mechanism: str = Field(default="SCRAM-SHA-256", description="SASL mechanism")
    kafka_client_id: str = Field(default="outbox-processor", description="Kafka client id")
    kafka_delivery_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Max wait for a single delivery report"
    )
    kafka_topic_payment_completed: str = Field(
        default="payment.completed", description="Topic for PAYMENT_COMPLETED events"
    )
    kafka_topic_payment_failed: str = Field(
        default="payment.failed", description="Topic for PAYMENT_FAILED events"
    )
    event_source: str = Field(default="payment-service", description="Message 'source' header")

    # Outbox Relay
    batch_size: int = Field(default=100, gt=0, description="Outbox entries per relay pass")
    max_retries: int = Field(default=5, gt=0, description="Publish attempts before an entry is stuck")
    relay_concurrency: int = Field(default=100, gt=0, description="Concurrent publishes per pass")
    relay_interval_seconds: float = Field(default=60.0, gt=0, description="Relay pass cadence")
    last_error_max_length: int = Field(default=500, gt=0, description="Stored error truncation")

    # Retention Sweeper
    retention_days: int = Field(default=7, ge=0, description="Days to keep published entries")
    sweeper_hour_utc: int = Field(default=2, ge=0, le=23, description="Daily sweep hour (UTC)")
    stuck_sample_size: int = Field(default=10, ge=0, description="Stuck entries logged per sweep")

    # Invocation deadlines
    intake_timeout_seconds: float = Field(default=30.0, gt=0, description="Webhook deadline")
    relay_timeout_seconds: float = Field(default=60.0, gt=0, description="Relay pass deadline")
    sweeper_timeout_seconds: float = Field(default=120.0, gt=0, description="Sweep deadline")

    # Payment Providers
    zalopay_key2: str = Field(default="", description="ZaloPay callback verification key")
    payos_checksum_key: str = Field(default="", description="PayOS checksum key")

    # Metrics
    service_name: str = Field(default="outbox-cleanup", description="Metric service dimension")
    metrics_pushgateway_url: Optional[str] = Field(
        default=None, description="Prometheus Pushgateway for short-lived jobs"
    )

    # Application Configuration
    app_name: str = Field(default="payment-relay", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("kafka_brokers")
    @classmethod
    def validate_kafka_brokers(cls, v: str) -> str:
        """Require at least one broker address."""
        brokers = [b.strip() for b in v.split(",") if b.strip()]
        if not brokers:
            raise ValueError("At least one Kafka broker address is required")
        return ",".join(brokers)

    def get_kafka_brokers_list(self) -> List[str]:
        """Parse broker addresses from comma-separated string."""
        return self.kafka_brokers.split(",")

    @property
    def kafka_sasl_enabled(self) -> bool:
        """SASL is used only when both credentials are present."""
        return bool(self.kafka_sasl_username and self.kafka_sasl_password)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
