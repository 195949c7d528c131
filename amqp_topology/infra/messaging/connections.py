"""Per-instance broker connection registry.

One robust AMQP connection per broker instance identifier, created lazily on
first use and shared by every publisher and consumer addressing that
instance. The registry is owned by the gateway factory and passed explicitly
to whoever needs a connection.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import aio_pika

from amqp_topology.core.exceptions import ConfigResolutionError
from amqp_topology.infra.messaging.vhost import ManagementClient, ensure_vhost

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from aio_pika.abc import AbstractRobustConnection
    import httpx

    from amqp_topology.core.settings import RabbitSettings
    from amqp_topology.infra.messaging.provider import ConfigProvider, InstanceOperator

    Connector = Callable[..., Awaitable[AbstractRobustConnection]]

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Map of broker instance identifier → live connection.

    Args:
        config: Source of instance operators.
        settings: Port defaults, provisioning retry and connection tuning.
        connect: Connection factory, ``aio_pika.connect_robust`` by default.
        management_transport: Optional httpx transport for the management API.
    """

    def __init__(
        self,
        config: ConfigProvider,
        settings: RabbitSettings,
        *,
        connect: Connector | None = None,
        management_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._settings = settings
        self._connect = connect or aio_pika.connect_robust
        self._management_transport = management_transport
        self._connections: dict[str, AbstractRobustConnection] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    async def get(self, instance_id: str) -> AbstractRobustConnection:
        """Return the connection for ``instance_id``, connecting on first use.

        Concurrent callers for the same instance share one connection attempt.

        Raises:
            ConfigResolutionError: If the instance has no operator.
        """
        connection = self._connections.get(instance_id)
        if connection is not None:
            return connection

        lock = self._locks.setdefault(instance_id, asyncio.Lock())
        async with lock:
            connection = self._connections.get(instance_id)
            if connection is None:
                connection = await self._open(instance_id)
                self._connections[instance_id] = connection
        return connection

    async def _open(self, instance_id: str) -> AbstractRobustConnection:
        operator = await self._config.get_instance_operator(instance_id)
        if operator is None:
            raise ConfigResolutionError(
                f"No operator found for instance {instance_id}",
                extra={"instance_id": instance_id},
            )

        vhost = await self._ensure_vhost(instance_id, operator)
        port = operator.port("amqp") or self._settings.amqp_port

        logger.info(
            f"Connecting to RabbitMQ on {operator.hostname}:{port} as {operator.username}@{vhost}",
            extra={"instance_id": instance_id, "host": operator.hostname, "port": port, "vhost": vhost},
        )

        connection = await self._connect(
            host=operator.hostname,
            port=port,
            login=operator.username,
            password=operator.password,
            virtualhost=vhost,
            timeout=self._settings.connection_timeout,
            client_properties={"connection_name": self._settings.connection_name},
            heartbeat=self._settings.heartbeat,
        )
        connection.close_callbacks.add(_log_connection_closed)
        connection.reconnect_callbacks.add(_log_connection_reconnected)

        # Surface auth/vhost permission problems now rather than on first declare
        try:
            channel = await connection.channel()
            await channel.close()
        except BaseException:
            logger.error(
                f"Test channel failed on {operator.hostname}:{port}/{vhost}",
                extra={"instance_id": instance_id, "vhost": vhost},
            )
            await connection.close()
            raise

        return connection

    async def _ensure_vhost(self, instance_id: str, operator: InstanceOperator) -> str:
        vhost = operator.options.vhost or instance_id
        base_url = self._settings.management_url(operator.hostname, operator.port("management"))
        async with ManagementClient(
            base_url,
            operator.username,
            operator.password,
            timeout=self._settings.management_timeout,
            transport=self._management_transport,
        ) as admin:
            return await ensure_vhost(
                admin,
                vhost,
                attempts=self._settings.vhost_retry_attempts,
                delay=self._settings.vhost_retry_delay,
            )

    async def close(self) -> None:
        """Close every connection, logging individual failures."""
        connections, self._connections = self._connections, {}
        for instance_id, connection in connections.items():
            try:
                await connection.close()
            except Exception as e:
                logger.exception(
                    "Failed to close RabbitMQ connection",
                    extra={"instance_id": instance_id, "error": str(e)},
                )


def _log_connection_closed(sender: Any, exc: BaseException | None = None) -> None:
    if exc is not None:
        logger.warning("RabbitMQ connection error", extra={"error": str(exc)})


def _log_connection_reconnected(sender: Any, *args: Any) -> None:
    logger.info("Connection successfully (re)established")
