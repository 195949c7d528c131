"""Virtual host provisioning through the RabbitMQ management API.

Existence is probed by listing the vhost's queues: the endpoint answers 404
for an unknown vhost and only needs permissions on that vhost, unlike
``GET /api/vhosts``. A missing vhost is created with ``PUT /api/vhosts/{name}``.

The probe+create pair is retried with a fixed delay so provisioning tolerates
a management plugin that comes up after the AMQP port is already reachable.
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Self
from urllib.parse import quote

import httpx

from amqp_topology.core.exceptions import TransientInfrastructureFault
from amqp_topology.utils.retry import RetryStrategy, retry

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 30
DEFAULT_DELAY = 3.0


class ManagementClient:
    """Minimal async client for the management HTTP API (basic auth)."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=httpx.BasicAuth(username, password),
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def list_queues(self, vhost: str) -> httpx.Response:
        return await self._client.get(f"/api/queues/{quote(vhost, safe='')}")

    async def create_vhost(self, vhost: str) -> httpx.Response:
        return await self._client.put(f"/api/vhosts/{quote(vhost, safe='')}")


async def ensure_vhost(
    admin: ManagementClient,
    vhost_name: str,
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    delay: float = DEFAULT_DELAY,
) -> str:
    """Ensure ``vhost_name`` exists on the broker behind ``admin``.

    Network errors and any response other than 2xx/404 are retried up to
    ``attempts`` times with a fixed ``delay`` in seconds; once exhausted the
    last error is raised unchanged.

    Args:
        admin: Management API client for the broker instance.
        vhost_name: Virtual host to ensure.
        attempts: Maximum number of probe/create attempts.
        delay: Seconds to wait between attempts.

    Returns:
        The vhost name, for chaining into the AMQP connection.

    Raises:
        TransientInfrastructureFault: If the endpoint kept failing.
        httpx.TransportError: If the endpoint stayed unreachable.
    """
    logger.info(
        f"Ensuring RabbitMQ vhost: {vhost_name} @ {admin.base_url}",
        extra={"vhost": vhost_name, "management_url": admin.base_url},
    )

    strategy = RetryStrategy.fixed(
        max_attempts=attempts,
        delay=delay,
        exceptions=(httpx.TransportError, TransientInfrastructureFault),
    )

    @retry(strategy=strategy, reraise=True)
    async def ensure_vhost_attempt() -> None:
        probe = await admin.list_queues(vhost_name)
        if probe.is_success:
            return
        if probe.status_code != httpx.codes.NOT_FOUND:
            raise TransientInfrastructureFault(
                f"Failed to check vhost {vhost_name}: {probe.status_code} : {probe.reason_phrase}",
                status_code=probe.status_code,
                extra={"vhost": vhost_name},
            )

        logger.info(f"Creating RabbitMQ vhost: {vhost_name}", extra={"vhost": vhost_name})
        created = await admin.create_vhost(vhost_name)
        if not created.is_success:
            raise TransientInfrastructureFault(
                f"Failed to create vhost {vhost_name}: {created.status_code} : {created.reason_phrase}",
                status_code=created.status_code,
                extra={"vhost": vhost_name},
            )

    await ensure_vhost_attempt()
    return vhost_name
