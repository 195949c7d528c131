"""Pytest configuration and shared fixtures.

Organization:
    - Topology Fixtures: topology documents and config provider data
    - Broker Fixtures: an in-memory broker standing in for RabbitMQ
    - Management Fixtures: httpx transports for the management API
    - Settings Fixtures: RabbitSettings with fast, deterministic values

The in-memory broker implements the subset of the aio-pika surface the
gateways use (declare/delete/bind, publish, consume, ack/nack/reject) and
routes direct, fanout, topic and headers exchanges.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
import os
import re
from typing import Any
from unittest.mock import AsyncMock

from aio_pika.exceptions import ChannelClosed, ChannelPreconditionFailed
import httpx
import pytest

from amqp_topology.core.settings import RabbitSettings, clear_all_caches
from amqp_topology.infra.messaging.provider import FileConfigProvider

# Keep local conf/ and .env files out of the tests
os.environ.setdefault("RABBIT_CONFIG_DIR", "/nonexistent")
os.environ.setdefault("TOPOLOGY_CONFIG_DIR", "/nonexistent")
os.environ.setdefault("LOGGING_CONFIG_DIR", "/nonexistent")


# ============================================================================
# Topology Fixtures
# ============================================================================

ORDERS_BLOCK: dict[str, Any] = {
    "kind": "rabbitmq-broker",
    "metadata": {"name": "rabbitmq"},
    "spec": {
        "consumers": [
            {
                "kind": "exchange",
                "metadata": {"name": "orders"},
                "spec": {"exchangeType": "topic", "durable": True},
            },
        ],
        "providers": [
            {
                "kind": "queue",
                "metadata": {"name": "billing"},
                "spec": {"durable": True},
            },
        ],
        "bindings": {
            "exchanges": [
                {
                    "exchange": "orders",
                    "bindings": [
                        {"name": "billing", "type": "queue", "routing": "invoice.created"},
                    ],
                },
            ],
        },
    },
}


def make_provider_data(block: dict[str, Any] | None = None) -> dict[str, Any]:
    """Provider file wiring ``events`` → ``orders`` and ``billing`` → ``invoices``."""
    return {
        "instanceId": "billing-service",
        "instances": [
            {
                "instanceId": "rabbitmq",
                "block": copy.deepcopy(block or ORDERS_BLOCK),
                "connections": [
                    {
                        "provider": {"blockId": "billing-service", "resourceName": "events"},
                        "consumer": {"blockId": "rabbitmq", "resourceName": "orders"},
                    },
                    {
                        "provider": {"blockId": "rabbitmq", "resourceName": "billing"},
                        "consumer": {"blockId": "billing-service", "resourceName": "invoices"},
                    },
                ],
            },
        ],
        "operators": {
            "rabbitmq": {
                "hostname": "rabbit.local",
                "ports": {"amqp": {"port": 5673, "protocol": "amqp"}, "management": 15673},
                "credentials": {"username": "admin", "password": "secret"},
            },
        },
    }


@pytest.fixture
def provider_data() -> dict[str, Any]:
    return make_provider_data()


@pytest.fixture
def config_provider(provider_data: dict[str, Any]) -> FileConfigProvider:
    return FileConfigProvider(provider_data)


# ============================================================================
# Broker Fixtures
# ============================================================================


def topic_matches(pattern: str, routing_key: str) -> bool:
    regex = re.escape(pattern).replace(r"\*", r"[^.]+").replace(r"\#", r".*")
    return re.fullmatch(regex, routing_key) is not None


def headers_match(arguments: dict[str, Any], headers: dict[str, Any]) -> bool:
    expected = {k: v for k, v in arguments.items() if not k.startswith("x-")}
    matches = [headers.get(k) == v for k, v in expected.items()]
    if arguments.get("x-match", "all") == "all":
        return all(matches)
    return any(matches)


@dataclass
class FakeIncomingMessage:
    body: bytes
    content_type: str | None = None
    content_encoding: str | None = None
    headers: dict[str, Any] = field(default_factory=dict)
    message_id: str | None = None
    app_id: str | None = None
    routing_key: str = ""
    ack: AsyncMock = field(default_factory=AsyncMock)
    nack: AsyncMock = field(default_factory=AsyncMock)
    reject: AsyncMock = field(default_factory=AsyncMock)


class FakeBroker:
    """In-memory broker state shared by every fake connection."""

    def __init__(self) -> None:
        self.exchanges: dict[str, dict[str, Any]] = {}
        self.queues: dict[str, dict[str, Any]] = {}
        self.messages: dict[str, list[FakeIncomingMessage]] = {}
        self.bindings: list[tuple[str, str, str, str, dict[str, Any]]] = []
        self.consumers: dict[str, tuple[str, Any]] = {}
        self.deleted: list[tuple[str, str]] = []
        self.published: list[tuple[str, str, Any]] = []
        self.fail_publish_on: set[str] = set()
        self._generated = 0

    def generate_queue_name(self) -> str:
        self._generated += 1
        return f"amq.gen-{self._generated}"

    def bind(self, source: str, kind: str, destination: str, routing_key: str, arguments: dict[str, Any]) -> None:
        entry = (source, kind, destination, routing_key, arguments)
        if entry not in self.bindings:
            self.bindings.append(entry)

    def _matches(self, exchange: str, routing_key: str, arguments: dict[str, Any], key: str, headers: dict[str, Any]) -> bool:
        exchange_type = self.exchanges[exchange]["type"]
        if exchange_type == "fanout":
            return True
        if exchange_type == "topic":
            return topic_matches(routing_key, key)
        if exchange_type == "headers":
            return headers_match(arguments, headers)
        return routing_key == key

    async def route(self, exchange: str, message: Any, routing_key: str, seen: set[str] | None = None) -> None:
        seen = seen or set()
        if exchange in seen:
            return
        seen.add(exchange)
        headers = dict(message.headers or {})
        for source, kind, destination, key, arguments in list(self.bindings):
            if source != exchange or not self._matches(source, key, arguments, routing_key, headers):
                continue
            if kind == "exchange":
                await self.route(destination, message, routing_key, seen)
            else:
                await self.deliver(destination, message, routing_key)

    async def deliver(self, queue: str, message: Any, routing_key: str) -> None:
        incoming = FakeIncomingMessage(
            body=message.body,
            content_type=message.content_type,
            content_encoding=message.content_encoding,
            headers=dict(message.headers or {}),
            message_id=message.message_id,
            app_id=message.app_id,
            routing_key=routing_key,
        )
        consumer = self.consumers.get(queue)
        if consumer is None:
            self.messages.setdefault(queue, []).append(incoming)
            return
        await consumer[1](incoming)


class FakeExchange:
    def __init__(self, broker: FakeBroker, name: str) -> None:
        self.broker = broker
        self.name = name

    async def publish(self, message: Any, routing_key: str = "", **kwargs: Any) -> None:
        if self.name in self.broker.fail_publish_on:
            raise ChannelClosed(f"publish to {self.name} was not confirmed")
        self.broker.published.append((self.name, routing_key, message))
        await self.broker.route(self.name, message, routing_key)

    async def bind(self, source: Any, routing_key: str = "", *, arguments: dict[str, Any] | None = None) -> None:
        source_name = getattr(source, "name", source)
        self.broker.bind(source_name, "exchange", self.name, routing_key, arguments or {})


class FakeQueue:
    def __init__(self, broker: FakeBroker, name: str) -> None:
        self.broker = broker
        self.name = name

    async def bind(self, exchange: Any, routing_key: str = "", *, arguments: dict[str, Any] | None = None) -> None:
        exchange_name = getattr(exchange, "name", exchange)
        self.broker.bind(exchange_name, "queue", self.name, routing_key, arguments or {})

    async def consume(self, callback: Any, no_ack: bool = False, consumer_tag: str | None = None, **kwargs: Any) -> str:
        assert not no_ack
        tag = consumer_tag or f"ctag-{self.name}"
        self.broker.consumers[self.name] = (tag, callback)
        for message in self.broker.messages.pop(self.name, []):
            await callback(message)
        return tag

    async def cancel(self, consumer_tag: str, **kwargs: Any) -> None:
        registered = self.broker.consumers.get(self.name)
        if registered and registered[0] == consumer_tag:
            del self.broker.consumers[self.name]


class FakeChannel:
    def __init__(self, connection: FakeConnection, publisher_confirms: bool = True) -> None:
        self.connection = connection
        self.broker = connection.broker
        self.publisher_confirms = publisher_confirms
        self.is_closed = False
        self.prefetch_count: int | None = None
        # Mirrors what a robust channel replays after a reconnect
        self.declared_exchanges: dict[str, FakeExchange] = {}
        self.declared_queues: dict[str, FakeQueue] = {}

    def __await__(self):
        yield from []
        return self

    async def __aenter__(self) -> FakeChannel:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        self.is_closed = True

    def _check_open(self) -> None:
        if self.is_closed:
            raise ChannelClosed("channel is closed")

    def _fail(self, kind: str, name: str) -> None:
        self.is_closed = True
        raise ChannelPreconditionFailed(f"PRECONDITION_FAILED - inequivalent arg for {kind} '{name}'")

    async def declare_exchange(self, name: str, type: Any = "direct", **params: Any) -> FakeExchange:
        self._check_open()
        exchange_type = getattr(type, "value", type)
        definition = {"type": exchange_type, **{k: v for k, v in params.items() if k != "passive"}}
        definition["arguments"] = definition.get("arguments") or {}
        existing = self.broker.exchanges.get(name)
        if existing is not None and existing != definition:
            self._fail("exchange", name)
        self.broker.exchanges[name] = definition
        exchange = FakeExchange(self.broker, name)
        self.declared_exchanges[name] = exchange
        return exchange

    async def declare_queue(self, name: str | None = None, **params: Any) -> FakeQueue:
        self._check_open()
        name = name or self.broker.generate_queue_name()
        definition = {k: v for k, v in params.items() if k != "passive"}
        definition["arguments"] = definition.get("arguments") or {}
        existing = self.broker.queues.get(name)
        if existing is not None and existing != definition:
            self._fail("queue", name)
        self.broker.queues[name] = definition
        queue = FakeQueue(self.broker, name)
        self.declared_queues[name] = queue
        return queue

    async def exchange_delete(self, name: str, **kwargs: Any) -> None:
        self._check_open()
        self.broker.exchanges.pop(name, None)
        self.broker.bindings = [b for b in self.broker.bindings if name not in (b[0], b[2])]
        self.broker.deleted.append(("exchange", name))

    async def queue_delete(self, name: str, if_empty: bool = False, **kwargs: Any) -> None:
        self._check_open()
        if if_empty and self.broker.messages.get(name):
            self._fail("queue", name)
        self.broker.queues.pop(name, None)
        self.broker.bindings = [b for b in self.broker.bindings if b[2] != name]
        self.broker.deleted.append(("queue", name))

    async def get_exchange(self, name: str, ensure: bool = True) -> FakeExchange:
        self._check_open()
        return FakeExchange(self.broker, name)

    async def get_queue(self, name: str, ensure: bool = True) -> FakeQueue:
        self._check_open()
        return FakeQueue(self.broker, name)

    async def set_qos(self, prefetch_count: int = 0, **kwargs: Any) -> None:
        self.prefetch_count = prefetch_count


class FakeConnection:
    def __init__(self, broker: FakeBroker, **connect_kwargs: Any) -> None:
        self.broker = broker
        self.connect_kwargs = connect_kwargs
        self.close_callbacks: set[Any] = set()
        self.reconnect_callbacks: set[Any] = set()
        self.channels: list[FakeChannel] = []
        self.is_closed = False

    def channel(self, publisher_confirms: bool = True, **kwargs: Any) -> FakeChannel:
        channel = FakeChannel(self, publisher_confirms=publisher_confirms)
        self.channels.append(channel)
        return channel

    async def close(self) -> None:
        self.is_closed = True


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def fake_connection(broker: FakeBroker) -> FakeConnection:
    return FakeConnection(broker)


@pytest.fixture
def connect(broker: FakeBroker) -> AsyncMock:
    """Drop-in for ``aio_pika.connect_robust`` returning fake connections."""

    async def _connect(**kwargs: Any) -> FakeConnection:
        return FakeConnection(broker, **kwargs)

    return AsyncMock(side_effect=_connect)


# ============================================================================
# Management Fixtures
# ============================================================================


@pytest.fixture
def management_requests() -> list[httpx.Request]:
    return []


@pytest.fixture
def management_transport(management_requests: list[httpx.Request]) -> httpx.MockTransport:
    """Management API where every vhost already exists."""

    def handler(request: httpx.Request) -> httpx.Response:
        management_requests.append(request)
        return httpx.Response(200, json=[])

    return httpx.MockTransport(handler)


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture
def rabbit_settings() -> RabbitSettings:
    return RabbitSettings(vhost_retry_attempts=3, vhost_retry_delay=0.0)


@pytest.fixture(autouse=True)
def _clear_settings_caches():
    clear_all_caches()
    yield
    clear_all_caches()
