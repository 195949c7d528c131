"""Consumer gateway.

A consumer reads from exactly one queue, resolved from its resource name.
Acknowledgement is always explicit: the handler's outcome decides whether a
message is acked, requeued or dropped.

Handlers receive ``(data, message)`` where ``data`` is the decoded body and
``message`` the original incoming message, and may return a
:class:`ConsumerStatus`. Returning nothing (or anything else) acks the
message. Raising :class:`DropMessage` drops it. Any other exception is
logged, reported to ``on_error`` and the message is requeued.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
import inspect
import json
import logging
from typing import TYPE_CHECKING, Any

from amqp_topology.core.exceptions import ConfigResolutionError, HandlerFault
from amqp_topology.infra.messaging.declarator import apply_consumer_topology, attach_consumer_topology
from amqp_topology.infra.messaging.resolver import plan_consumer
from amqp_topology.infra.metrics.tracking import track_message_consumed

if TYPE_CHECKING:
    from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue

    from amqp_topology.core.settings import RabbitSettings
    from amqp_topology.infra.messaging.connections import ConnectionRegistry
    from amqp_topology.infra.messaging.provider import ConfigProvider

logger = logging.getLogger(__name__)


class ConsumerStatus(str, Enum):
    """Disposition applied to a consumed message."""

    ACK = "ack"
    REQUEUE = "requeue"
    DROP = "drop"


class DropMessage(Exception):  # noqa: N818
    """Raise from a handler to discard the current message without redelivery."""


MessageHandler = Callable[[Any, "AbstractIncomingMessage"], Awaitable[ConsumerStatus | None] | ConsumerStatus | None]
ErrorHook = Callable[[HandlerFault, "AbstractIncomingMessage"], Awaitable[None] | None]


@dataclass(frozen=True)
class ConsumerOptions:
    """Per-consumer options. ``None`` falls back to :class:`RabbitSettings`.

    Attributes:
        prefetch_count: QoS prefetch. Defaults to the settings value, then to
            the concurrency.
        requeue: Whether a handler error requeues (True) or drops (False).
        concurrency: Messages handled in parallel by this consumer.
        on_error: Called with the :class:`HandlerFault` of a failed handler.
    """

    prefetch_count: int | None = None
    requeue: bool | None = None
    concurrency: int | None = None
    on_error: ErrorHook | None = None


def decode_body(body: bytes, content_type: str | None, content_encoding: str | None = None) -> Any:
    """Decode a message body according to its content type.

    ``application/json`` is parsed, ``text/plain`` is returned as text and
    anything else is returned as raw bytes.
    """
    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    encoding = content_encoding or "utf-8"
    if media_type == "application/json":
        return json.loads(body.decode(encoding))
    if media_type == "text/plain":
        return body.decode(encoding)
    return body


class Consumer:
    """A running subscription on one queue."""

    def __init__(
        self,
        resource_name: str,
        queue: AbstractQueue,
        channel: AbstractChannel,
        handler: MessageHandler,
        *,
        consumer_tag: str,
        requeue: bool = True,
        concurrency: int = 1,
        on_error: ErrorHook | None = None,
    ) -> None:
        self.resource_name = resource_name
        self.queue_name = queue.name
        self.consumer_tag = consumer_tag
        self._queue = queue
        self._channel = channel
        self._handler = handler
        self._requeue = requeue
        self._on_error = on_error
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: set[asyncio.Task[None]] = set()
        self._started = False

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def start(self) -> None:
        await self._queue.consume(self._on_message, no_ack=False, consumer_tag=self.consumer_tag)
        self._started = True
        logger.info(
            f"Consuming from queue {self.queue_name}",
            extra={"queue": self.queue_name, "consumer_tag": self.consumer_tag},
        )

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        task = asyncio.create_task(self._process(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, message: AbstractIncomingMessage) -> None:
        async with self._semaphore:
            status = await self.handle(message)
            try:
                await self._settle(message, status)
            except Exception as e:
                logger.exception(
                    f"Failed to settle message from queue {self.queue_name}",
                    extra={"queue": self.queue_name, "disposition": status.value, "error": str(e)},
                )
                return
            track_message_consumed(self.queue_name, status.value)

    async def handle(self, message: AbstractIncomingMessage) -> ConsumerStatus:
        """Run the handler for ``message`` and return the disposition to apply."""
        try:
            data = decode_body(message.body, message.content_type, message.content_encoding)
            result = self._handler(data, message)
            if inspect.isawaitable(result):
                result = await result
        except DropMessage:
            logger.info(
                f"Dropping message from queue {self.queue_name}",
                extra={"queue": self.queue_name, "message_id": message.message_id},
            )
            return ConsumerStatus.DROP
        except Exception as e:
            fault = HandlerFault(
                f"Handler for {self.resource_name} failed: {e}",
                extra={"queue": self.queue_name, "message_id": message.message_id},
            )
            fault.__cause__ = e
            logger.exception(
                f"Failed to process message from queue {self.queue_name}",
                extra={"queue": self.queue_name, "message_id": message.message_id},
            )
            await self._report(fault, message)
            return ConsumerStatus.REQUEUE if self._requeue else ConsumerStatus.DROP

        if isinstance(result, ConsumerStatus):
            return result
        return ConsumerStatus.ACK

    async def _report(self, fault: HandlerFault, message: AbstractIncomingMessage) -> None:
        if self._on_error is None:
            return
        try:
            outcome = self._on_error(fault, message)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Consumer error hook failed", extra={"queue": self.queue_name})

    @staticmethod
    async def _settle(message: AbstractIncomingMessage, status: ConsumerStatus) -> None:
        if status is ConsumerStatus.ACK:
            await message.ack()
        elif status is ConsumerStatus.REQUEUE:
            await message.nack(requeue=True)
        else:
            await message.reject(requeue=False)

    async def close(self) -> None:
        """Stop consuming, let in-flight handlers finish, then close the channel."""
        if self._started:
            self._started = False
            try:
                await self._queue.cancel(self.consumer_tag)
            except Exception as e:
                logger.exception(
                    "Failed to cancel consumer",
                    extra={"consumer_tag": self.consumer_tag, "error": str(e)},
                )

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        try:
            await self._channel.close()
        except Exception as e:
            logger.exception(
                "Failed to close channel",
                extra={"queue": self.queue_name, "error": str(e)},
            )


async def create_consumer(
    config: ConfigProvider,
    registry: ConnectionRegistry,
    resource_name: str,
    handler: MessageHandler,
    settings: RabbitSettings,
    options: ConsumerOptions | None = None,
) -> Consumer:
    """Resolve, provision and start a consumer for ``resource_name``.

    Raises:
        ConfigResolutionError: If no instance serves the resource or its
            document does not resolve to exactly one queue.
    """
    options = options or ConsumerOptions()
    instance = await config.get_instance_for_consumer(resource_name)
    if instance is None:
        raise ConfigResolutionError(
            f"Could not find instance for consumer {resource_name}",
            extra={"resource_name": resource_name},
        )

    plan = plan_consumer(instance.block.spec, instance.connections, resource_name)
    connection = await registry.get(instance.instance_id)
    queue_name = await apply_consumer_topology(connection, plan)

    concurrency = options.concurrency or settings.consumer_concurrency
    prefetch = options.prefetch_count or settings.prefetch_count or concurrency
    requeue = settings.requeue_on_nack if options.requeue is None else options.requeue

    channel = await connection.channel()
    try:
        await channel.set_qos(prefetch_count=prefetch)
        queue = await attach_consumer_topology(channel, plan, queue_name)
        consumer = Consumer(
            resource_name,
            queue,
            channel,
            handler,
            consumer_tag=f"{config.get_instance_id()}_{resource_name}",
            requeue=requeue,
            concurrency=concurrency,
            on_error=options.on_error,
        )
        await consumer.start()
    except BaseException:
        await channel.close()
        raise
    return consumer
