"""
Configuration management for the resource client.

All configuration is done via environment variables. Each section is a
pydantic-settings class with its own prefix; ClientConfig aggregates them.

Invariants:
    - All settings have sensible defaults for local development
    - Credentials in the Mongo URL are never logged
    - Timeouts are stored in milliseconds and exposed in seconds

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep env var names stable, deployments depend on them
"""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_READ_CONCERNS = {"local", "available", "majority", "linearizable", "snapshot"}
_READ_PREFERENCES = {"primary", "primaryPreferred", "secondary", "secondaryPreferred", "nearest"}


class MongoSettings(BaseSettings):
    """MongoDB connection settings."""

    url: str = Field(default="mongodb://127.0.0.1:27017")
    database: str = Field(default="default")
    connect_timeout_ms: int = Field(default=10_000)
    app_name: str = Field(default="resource-client")
    # Standalone servers reject transactions; tests and local runs may disable them
    transactions_enabled: bool = Field(default=True)

    model_config = {"env_prefix": "RESOURCE_CLIENT_MONGO_"}

    @property
    def redacted_url(self) -> str:
        return re.sub(r"//[^@/]+@", "//***@", self.url)


class TransactionSettings(BaseSettings):
    """Defaults applied to every multi-document transaction."""

    read_concern: str = Field(default="local")
    write_concern: str = Field(default="majority")
    read_preference: str = Field(default="primary")

    model_config = {"env_prefix": "RESOURCE_CLIENT_TXN_"}


class LockSettings(BaseSettings):
    """Distributed lock settings."""

    collection_name: str = Field(default="_locks")
    ttl_seconds: int = Field(default=1, description="TTL index expireAfterSeconds on locked_at")
    lock_timeout_ms: int = Field(default=5_000)
    wait_timeout_ms: int = Field(default=5_000)
    retry_interval_ms: int = Field(default=125)

    model_config = {"env_prefix": "RESOURCE_CLIENT_LOCK_"}

    @property
    def lock_timeout(self) -> float:
        return self.lock_timeout_ms / 1000

    @property
    def wait_timeout(self) -> float:
        return self.wait_timeout_ms / 1000

    @property
    def retry_interval(self) -> float:
        return self.retry_interval_ms / 1000


class ObservabilitySettings(BaseSettings):
    """Logging settings."""

    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or text")

    model_config = {"env_prefix": "RESOURCE_CLIENT_"}


class ClientConfig(BaseModel):
    """Complete client configuration.

    Example:
        >>> config = ClientConfig.from_env()
        >>> config.log_config()
    """

    mongo: MongoSettings = Field(default_factory=MongoSettings)
    transaction: TransactionSettings = Field(default_factory=TransactionSettings)
    lock: LockSettings = Field(default_factory=LockSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Load every section from environment variables and validate."""
        config = cls(
            mongo=MongoSettings(),
            transaction=TransactionSettings(),
            lock=LockSettings(),
            observability=ObservabilitySettings(),
        )
        config.validate_settings()
        return config

    def validate_settings(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if not self.mongo.database:
            raise ConfigurationError("Mongo database name must not be empty", "database")
        if self.transaction.read_concern not in _READ_CONCERNS:
            raise ConfigurationError(
                f"Unknown read concern: {self.transaction.read_concern}", "read_concern"
            )
        if self.transaction.read_preference not in _READ_PREFERENCES:
            raise ConfigurationError(
                f"Unknown read preference: {self.transaction.read_preference}",
                "read_preference",
            )
        if self.lock.lock_timeout_ms <= 0:
            raise ConfigurationError("Lock timeout must be positive", "lock_timeout_ms")
        if self.lock.wait_timeout_ms < 0:
            raise ConfigurationError("Wait timeout must not be negative", "wait_timeout_ms")
        if self.lock.retry_interval_ms <= 0:
            raise ConfigurationError("Retry interval must be positive", "retry_interval_ms")
        if self.observability.log_format not in ("json", "text"):
            raise ConfigurationError(
                f"Unknown log format: {self.observability.log_format}", "log_format"
            )

    def log_config(self) -> None:
        """Log configuration (redacting credentials)."""
        logger.info(
            "Resource client configuration loaded",
            extra={
                "mongo_url": self.mongo.redacted_url,
                "database": self.mongo.database,
                "transactions_enabled": self.mongo.transactions_enabled,
                "read_concern": self.transaction.read_concern,
                "write_concern": self.transaction.write_concern,
                "lock_collection": self.lock.collection_name,
                "lock_timeout_ms": self.lock.lock_timeout_ms,
                "wait_timeout_ms": self.lock.wait_timeout_ms,
                "log_level": self.observability.log_level,
            },
        )
