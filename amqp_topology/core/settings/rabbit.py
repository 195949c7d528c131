"""RabbitMQ broker and management endpoint settings.

Connection details for each broker instance come from the config provider's
operator descriptors; these settings hold the defaults and the provisioning,
publishing and consuming policy shared by every instance.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .yaml_sources import create_rabbit_yaml_source


class RabbitSettings(BaseSettings):
    """RabbitMQ provisioning and gateway settings.

    Environment variables use RABBIT_ prefix.
    Example: RABBIT_VHOST_RETRY_ATTEMPTS=10, RABBIT_PREFETCH_COUNT=50
    """

    # ─────────────────────────────────────────────────────
    # Port defaults (used when an operator omits a port)
    # ─────────────────────────────────────────────────────
    amqp_port: int = Field(
        default=5672,
        ge=1,
        le=65535,
        description="AMQP port used when the instance operator does not declare one.",
    )
    management_port: int = Field(
        default=15672,
        ge=1,
        le=65535,
        description="Management API port used when the instance operator does not declare one.",
    )
    management_scheme: Literal["http", "https"] = Field(
        default="http",
        description="Scheme of the management API.",
    )
    management_timeout: float = Field(
        default=10.0,
        gt=0,
        le=300.0,
        description="Timeout in seconds for a single management API request.",
    )

    # ─────────────────────────────────────────────────────
    # VHost provisioning retry
    # ─────────────────────────────────────────────────────
    vhost_retry_attempts: int = Field(
        default=30,
        ge=1,
        le=1000,
        description="Maximum attempts to probe/create a vhost before failing.",
    )
    vhost_retry_delay: float = Field(
        default=3.0,
        ge=0.0,
        le=300.0,
        description="Fixed delay in seconds between vhost provisioning attempts.",
    )

    # ─────────────────────────────────────────────────────
    # Connection management
    # ─────────────────────────────────────────────────────
    connection_name: str = Field(
        default="amqp-topology",
        min_length=1,
        max_length=100,
        description="Connection name shown in RabbitMQ management UI.",
    )
    connection_timeout: float = Field(
        default=10.0,
        ge=1.0,
        le=300.0,
        description="Connection timeout in seconds for initial RabbitMQ connection.",
    )
    heartbeat: int = Field(
        default=60,
        ge=0,
        le=3600,
        description="Heartbeat interval in seconds (0 disables heartbeats).",
    )

    # ─────────────────────────────────────────────────────
    # Reliability
    # ─────────────────────────────────────────────────────
    publisher_confirms: bool = Field(
        default=True,
        description="Enable publisher confirms for reliable delivery.",
    )

    # ─────────────────────────────────────────────────────
    # Consumer defaults
    # ─────────────────────────────────────────────────────
    prefetch_count: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        description="Default QoS prefetch count for consumers (None leaves the broker default).",
    )
    consumer_concurrency: int = Field(
        default=1,
        ge=1,
        le=1000,
        description="Default number of messages handled in parallel per consumer.",
    )
    requeue_on_nack: bool = Field(
        default=True,
        description="Default requeue flag applied when a message is requeued.",
    )

    model_config = SettingsConfigDict(
        env_prefix="RABBIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        populate_by_name=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Customize settings source precedence: init > yaml > env > dotenv > secrets."""
        return (
            init_settings,
            create_rabbit_yaml_source(settings_cls),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    def management_url(self, hostname: str, port: int | None = None) -> str:
        """Build the management API base URL for a broker host.

        Args:
            hostname: Broker hostname.
            port: Management port from the operator, or None for the default.

        Returns:
            Base URL without trailing slash.
        """
        return f"{self.management_scheme}://{hostname}:{port or self.management_port}"
