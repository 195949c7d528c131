"""Publisher gateway.

A publisher fans one logical message out to every exchange its provider
resource resolves to, across every broker instance that resource is wired
to. Sends are issued concurrently and ``publish`` completes only when all
of them are confirmed; the first failure fails the whole call.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import TYPE_CHECKING, Any

from aio_pika import DeliveryMode, Message
from pydantic_core import to_json

from amqp_topology.core.exceptions import ConfigResolutionError, DeliveryFault
from amqp_topology.infra.messaging.declarator import apply_provider_topology, attach_provider_topology
from amqp_topology.infra.messaging.resolver import plan_provider
from amqp_topology.infra.metrics.tracking import track_publish, track_publish_failure

if TYPE_CHECKING:
    from aio_pika.abc import AbstractChannel, AbstractExchange

    from amqp_topology.core.settings import RabbitSettings
    from amqp_topology.infra.messaging.connections import ConnectionRegistry
    from amqp_topology.infra.messaging.provider import BrokerInstance, ConfigProvider
    from amqp_topology.infra.messaging.resolver import ProviderTopology

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/json"
CONTENT_ENCODING = "utf-8"


@dataclass(frozen=True)
class PublishMessage:
    """A logical message: JSON-serializable ``data`` plus routing information."""

    data: Any
    routing_key: str | None = None
    headers: dict[str, Any] | None = None


@dataclass(frozen=True)
class PublishOptions:
    """Per-publish AMQP properties.

    Content type, encoding and app id are owned by the gateway and cannot be
    set here.
    """

    persistent: bool = False
    priority: int | None = None
    expiration: int | float | None = None
    correlation_id: str | None = None
    message_id: str | None = None
    reply_to: str | None = None
    type: str | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class TargetExchange:
    """An exchange to publish to, bound to its instance's channel."""

    instance_id: str
    name: str
    exchange: AbstractExchange = field(repr=False)


class Publisher:
    """Publishes to a fixed set of target exchanges."""

    def __init__(
        self,
        resource_name: str,
        app_id: str,
        targets: list[TargetExchange],
        channels: dict[str, AbstractChannel],
    ) -> None:
        self.resource_name = resource_name
        self.app_id = app_id
        self.targets = targets
        self._channels = channels

    def _build_message(self, message: PublishMessage, options: PublishOptions) -> Message:
        return Message(
            to_json(message.data),
            headers=message.headers,
            content_type=CONTENT_TYPE,
            content_encoding=CONTENT_ENCODING,
            app_id=self.app_id,
            delivery_mode=DeliveryMode.PERSISTENT if options.persistent else DeliveryMode.NOT_PERSISTENT,
            priority=options.priority,
            expiration=options.expiration,
            correlation_id=options.correlation_id,
            message_id=options.message_id,
            reply_to=options.reply_to,
            type=options.type,
            timestamp=options.timestamp,
        )

    async def _send(self, target: TargetExchange, message: Message, routing_key: str) -> None:
        try:
            await target.exchange.publish(message, routing_key=routing_key)
        except Exception as e:
            track_publish_failure(target.name)
            raise DeliveryFault(
                f"Failed to publish to exchange {target.name} on instance {target.instance_id}: {e}",
                extra={"exchange": target.name, "instance_id": target.instance_id},
            ) from e
        track_publish(target.name)

    async def publish(self, message: PublishMessage, options: PublishOptions | None = None) -> None:
        """Publish ``message`` to every target exchange.

        Raises:
            DeliveryFault: If any target send failed. Sends to other targets may
                already have been confirmed.
        """
        amqp_message = self._build_message(message, options or PublishOptions())
        routing_key = (message.routing_key or "").lower()
        await asyncio.gather(
            *(self._send(target, amqp_message, routing_key) for target in self.targets)
        )

    async def close(self) -> None:
        """Close every per-instance publishing channel (best effort)."""
        channels, self._channels = self._channels, {}
        for instance_id, channel in channels.items():
            try:
                await channel.close()
            except Exception as e:
                logger.exception(
                    "Failed to close channel",
                    extra={"instance_id": instance_id, "resource_name": self.resource_name, "error": str(e)},
                )


async def _prepare_instance(
    registry: ConnectionRegistry,
    instance: BrokerInstance,
    plan: ProviderTopology,
    publisher_confirms: bool,
) -> tuple[AbstractChannel, list[TargetExchange]]:
    connection = await registry.get(instance.instance_id)
    await apply_provider_topology(connection, plan)
    channel = await connection.channel(publisher_confirms=publisher_confirms)
    try:
        exchanges = await attach_provider_topology(channel, plan)
    except BaseException:
        await channel.close()
        raise
    targets = [
        TargetExchange(
            instance_id=instance.instance_id,
            name=declaration.name,
            exchange=exchanges[declaration.name],
        )
        for declaration in plan.targets
    ]
    return channel, targets


async def create_publisher(
    config: ConfigProvider,
    registry: ConnectionRegistry,
    resource_name: str,
    settings: RabbitSettings,
) -> Publisher:
    """Resolve, provision and return a publisher for ``resource_name``.

    Every instance's topology is resolved before any connection is opened.
    Instances are then provisioned concurrently; if any fails, channels
    already opened are closed and the first error is raised.

    Raises:
        ConfigResolutionError: If no instance provides the resource or a
            document does not resolve.
    """
    instances = await config.get_instances_for_provider(resource_name)
    if not instances:
        raise ConfigResolutionError(
            f"No instances found for provider {resource_name}",
            extra={"resource_name": resource_name},
        )

    # One channel per instance; the first entry for an instance id wins
    unique: dict[str, BrokerInstance] = {}
    for instance in instances:
        unique.setdefault(instance.instance_id, instance)
    plans = [
        (instance, plan_provider(instance.block.spec, instance.connections, resource_name))
        for instance in unique.values()
    ]

    results = await asyncio.gather(
        *(
            _prepare_instance(registry, instance, plan, settings.publisher_confirms)
            for instance, plan in plans
        ),
        return_exceptions=True,
    )

    channels: dict[str, AbstractChannel] = {}
    targets: list[TargetExchange] = []
    errors: list[BaseException] = []
    for (instance, _), result in zip(plans, results, strict=True):
        if isinstance(result, BaseException):
            errors.append(result)
            continue
        channel, instance_targets = result
        channels[instance.instance_id] = channel
        targets.extend(instance_targets)

    publisher = Publisher(
        resource_name=resource_name,
        app_id=f"{config.get_instance_id()}_{resource_name}",
        targets=targets,
        channels=channels,
    )

    if errors:
        await publisher.close()
        raise errors[0]

    logger.info(
        f"Publisher {resource_name} ready",
        extra={"resource_name": resource_name, "targets": [t.name for t in targets]},
    )
    return publisher
