"""Process-level messaging gateway.

:class:`MessagingGateway` owns the per-instance connection registry and
every publisher/consumer it hands out. Closing it closes those gateways
first, then the shared connections.

Example:
        async with MessagingGateway(FileConfigProvider.from_settings()) as gateway:
            publisher = await gateway.create_publisher("events")
            await publisher.publish(PublishMessage({"id": 1}, routing_key="invoice.created"))
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import TYPE_CHECKING, Self

from amqp_topology.core.settings import RabbitSettings, get_rabbit_settings
from amqp_topology.infra.messaging.connections import ConnectionRegistry
from amqp_topology.infra.messaging.consumer import (
    Consumer,
    ConsumerOptions,
    MessageHandler,
    create_consumer,
)
from amqp_topology.infra.messaging.publisher import Publisher, create_publisher

if TYPE_CHECKING:
    from amqp_topology.infra.messaging.provider import ConfigProvider

logger = logging.getLogger(__name__)


class MessagingGateway:
    """Factory for publishers and consumers sharing one connection per instance."""

    def __init__(
        self,
        config: ConfigProvider,
        settings: RabbitSettings | None = None,
        registry: ConnectionRegistry | None = None,
    ) -> None:
        self.config = config
        self.settings = settings or get_rabbit_settings()
        self.registry = registry if registry is not None else ConnectionRegistry(config, self.settings)
        self._publishers: list[Publisher] = []
        self._consumers: list[Consumer] = []

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def create_publisher(self, resource_name: str) -> Publisher:
        publisher = await create_publisher(self.config, self.registry, resource_name, self.settings)
        self._publishers.append(publisher)
        return publisher

    async def create_consumer(
        self,
        resource_name: str,
        handler: MessageHandler,
        options: ConsumerOptions | None = None,
    ) -> Consumer:
        consumer = await create_consumer(
            self.config,
            self.registry,
            resource_name,
            handler,
            self.settings,
            options,
        )
        self._consumers.append(consumer)
        return consumer

    async def close(self) -> None:
        """Close consumers, then publishers, then every connection."""
        consumers, self._consumers = self._consumers, []
        publishers, self._publishers = self._publishers, []
        for consumer in consumers:
            await consumer.close()
        for publisher in publishers:
            await publisher.close()
        await self.registry.close()
        logger.info("Messaging gateway closed")
