"""Idempotent exchange/queue declaration.

Declares are attempted optimistically. When the broker answers
PRECONDITION_FAILED (the resource exists with different arguments), the
existing resource is deleted and declared again so the live topology always
matches the document. Queues are only deleted when empty. Any other declare
failure propagates unchanged.

A PRECONDITION_FAILED closes the AMQP channel, so every declare runs on its
own short-lived channel and the recreate opens a fresh one.

Binds are not wrapped: re-binding with identical arguments is a no-op in
AMQP 0-9-1.

A robust channel only replays what was declared or bound through it after a
reconnect. Once the topology is settled, :func:`attach_consumer_topology` and
:func:`attach_provider_topology` declare it again on the long-lived
consuming/publishing channel so it is restored with that channel.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aio_pika import ExchangeType
from aio_pika.exceptions import AMQPError, ChannelPreconditionFailed

from amqp_topology.core.exceptions import ProvisioningConflict
from amqp_topology.infra.metrics.tracking import track_topology_recreated

if TYPE_CHECKING:
    from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractExchange, AbstractQueue

    from amqp_topology.infra.messaging.resolver import ConsumerTopology, ProviderTopology
    from amqp_topology.infra.messaging.topology import (
        ExchangeBinding,
        ExchangeDeclaration,
        QueueBinding,
        QueueDeclaration,
    )

logger = logging.getLogger(__name__)


async def _declare_exchange(channel: AbstractChannel, exchange: ExchangeDeclaration) -> AbstractExchange:
    return await channel.declare_exchange(
        exchange.name,
        type=ExchangeType(exchange.type),
        durable=exchange.durable,
        auto_delete=exchange.auto_delete,
        internal=exchange.internal,
        passive=exchange.passive,
        arguments=exchange.arguments or None,
    )


async def _declare_queue(
    channel: AbstractChannel,
    queue: QueueDeclaration,
    name: str | None = None,
) -> AbstractQueue:
    return await channel.declare_queue(
        name or queue.request_name or None,
        durable=queue.durable,
        exclusive=queue.exclusive,
        passive=queue.passive,
        auto_delete=queue.auto_delete,
        arguments=queue.arguments or None,
    )


async def ensure_exchange(connection: AbstractConnection, exchange: ExchangeDeclaration) -> None:
    """Declare an exchange, recreating it when it exists with other arguments.

    Raises:
        ProvisioningConflict: If the delete+redeclare after a conflict failed.
    """
    try:
        async with connection.channel() as channel:
            await _declare_exchange(channel, exchange)
        logger.debug(f"Declared exchange {exchange.name}", extra={"exchange": exchange.name})
        return
    except ChannelPreconditionFailed as e:
        logger.warning(
            f"Exchange {exchange.name} already exists with different parameters: {e}",
            extra={"exchange": exchange.name},
        )

    logger.warning(f"Recreating exchange {exchange.name}", extra={"exchange": exchange.name})
    try:
        async with connection.channel() as channel:
            await channel.exchange_delete(exchange.name)
            await _declare_exchange(channel, exchange)
    except AMQPError as e:
        raise ProvisioningConflict(
            f"Failed to recreate exchange {exchange.name}: {e}",
            extra={"exchange": exchange.name},
        ) from e
    track_topology_recreated("exchange")


async def ensure_queue(connection: AbstractConnection, queue: QueueDeclaration) -> str:
    """Declare a queue, recreating it (only if empty) on an argument conflict.

    Returns:
        The live queue name. For exclusive queues this is the server-generated
        name, which replaces the logical name for every later bind/consume.

    Raises:
        ProvisioningConflict: If the queue could not be deleted or redeclared.
    """
    try:
        async with connection.channel() as channel:
            live_name = (await _declare_queue(channel, queue)).name
        logger.debug(f"Declared queue {live_name}", extra={"queue": live_name})
        return live_name
    except ChannelPreconditionFailed as e:
        logger.warning(
            f"Queue {queue.name} already exists with different parameters: {e}",
            extra={"queue": queue.name},
        )

    logger.warning(f"Recreating queue {queue.name}", extra={"queue": queue.name})
    try:
        async with connection.channel() as channel:
            await channel.queue_delete(queue.name, if_empty=True)
            live_name = (await _declare_queue(channel, queue)).name
    except AMQPError as e:
        raise ProvisioningConflict(
            f"Failed to recreate queue {queue.name}: {e}",
            extra={"queue": queue.name},
        ) from e
    track_topology_recreated("queue")
    return live_name


async def ensure_queue_binding(
    connection: AbstractConnection,
    binding: QueueBinding,
    queue_name: str | None = None,
) -> None:
    """Bind a queue to an exchange.

    Args:
        connection: Broker connection.
        binding: Compiled binding.
        queue_name: Live queue name, when it differs from the logical one.
    """
    target = queue_name or binding.queue
    async with connection.channel() as channel:
        queue = await channel.get_queue(target, ensure=False)
        await queue.bind(
            binding.exchange,
            routing_key=binding.routing_key,
            arguments=binding.arguments or None,
        )
    logger.debug(
        f"Bound queue {target} to exchange {binding.exchange}",
        extra={"queue": target, "exchange": binding.exchange, "routing_key": binding.routing_key},
    )


async def ensure_exchange_binding(connection: AbstractConnection, binding: ExchangeBinding) -> None:
    """Bind ``binding.destination`` to receive from ``binding.source``."""
    async with connection.channel() as channel:
        destination = await channel.get_exchange(binding.destination, ensure=False)
        await destination.bind(
            binding.source,
            routing_key=binding.routing_key,
            arguments=binding.arguments or None,
        )
    logger.info(
        f"Binding exchange {binding.source} to exchange {binding.destination}",
        extra={
            "source": binding.source,
            "destination": binding.destination,
            "routing_key": binding.routing_key,
        },
    )


async def apply_consumer_topology(connection: AbstractConnection, plan: ConsumerTopology) -> str:
    """Declare exchanges, then the queue, then the binds. Returns the live queue name."""
    for exchange in plan.exchanges:
        await ensure_exchange(connection, exchange)
    live_name = await ensure_queue(connection, plan.queue)
    for binding in plan.bindings:
        await ensure_queue_binding(connection, binding, queue_name=live_name)
    return live_name


async def apply_provider_topology(connection: AbstractConnection, plan: ProviderTopology) -> None:
    """Declare every exchange of the plan, then the exchange → exchange binds."""
    for exchange in plan.exchanges:
        logger.info(f"Asserting defined exchange {exchange.name}", extra={"exchange": exchange.name})
        await ensure_exchange(connection, exchange)
    for binding in plan.bindings:
        await ensure_exchange_binding(connection, binding)


async def attach_consumer_topology(
    channel: AbstractChannel,
    plan: ConsumerTopology,
    queue_name: str,
) -> AbstractQueue:
    """Declare a settled consumer topology again on the consuming channel.

    Returns:
        The queue object to consume from, registered with ``channel``.
    """
    for exchange in plan.exchanges:
        await _declare_exchange(channel, exchange)
    queue = await _declare_queue(channel, plan.queue, name=queue_name)
    for binding in plan.bindings:
        await queue.bind(
            binding.exchange,
            routing_key=binding.routing_key,
            arguments=binding.arguments or None,
        )
    return queue


async def attach_provider_topology(
    channel: AbstractChannel,
    plan: ProviderTopology,
) -> dict[str, AbstractExchange]:
    """Declare a settled provider topology again on the publishing channel.

    Returns:
        Exchange name → exchange object registered with ``channel``.
    """
    exchanges = {exchange.name: await _declare_exchange(channel, exchange) for exchange in plan.exchanges}
    for binding in plan.bindings:
        await exchanges[binding.destination].bind(
            exchanges[binding.source],
            routing_key=binding.routing_key,
            arguments=binding.arguments or None,
        )
    return exchanges
