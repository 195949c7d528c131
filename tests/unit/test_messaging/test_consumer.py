"""Unit tests for the consumer gateway."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from amqp_topology.core.exceptions import ConfigResolutionError, HandlerFault
from amqp_topology.infra.messaging.connections import ConnectionRegistry
from amqp_topology.infra.messaging.consumer import (
    Consumer,
    ConsumerOptions,
    ConsumerStatus,
    DropMessage,
    create_consumer,
    decode_body,
)
from amqp_topology.infra.metrics import REGISTRY
from tests.conftest import FakeIncomingMessage


def consumed(queue: str, disposition: str) -> float:
    return REGISTRY.get_sample_value(
        "amqp_messages_consumed_total", {"queue": queue, "disposition": disposition}
    ) or 0.0


def json_message(body: bytes = b'{"id": 1}') -> FakeIncomingMessage:
    return FakeIncomingMessage(body=body, content_type="application/json", message_id="m-1")


def make_consumer(handler, **kwargs) -> Consumer:
    queue = MagicMock()
    queue.name = "billing"
    queue.consume = AsyncMock(return_value="tag")
    queue.cancel = AsyncMock()
    channel = MagicMock(close=AsyncMock())
    return Consumer("invoices", queue, channel, handler, consumer_tag="billing-service_invoices", **kwargs)


@pytest.fixture
def registry(config_provider, rabbit_settings, connect, management_transport) -> ConnectionRegistry:
    return ConnectionRegistry(config_provider, rabbit_settings, connect=connect, management_transport=management_transport)


@pytest.mark.unit
class TestDecodeBody:
    """Test content-type driven decoding."""

    def test_json(self):
        assert decode_body(b'{"id": 1}', "application/json") == {"id": 1}

    def test_json_with_charset_parameter(self):
        assert decode_body(b"[1, 2]", "application/json; charset=utf-8") == [1, 2]

    def test_text(self):
        assert decode_body(b"hello", "text/plain") == "hello"

    def test_content_encoding(self):
        assert decode_body("héllo".encode("latin-1"), "text/plain", "latin-1") == "héllo"

    def test_other_types_stay_bytes(self):
        assert decode_body(b"\x00\x01", "application/octet-stream") == b"\x00\x01"
        assert decode_body(b"raw", None) == b"raw"


@pytest.mark.unit
class TestDispositions:
    """Test mapping of handler outcomes to dispositions."""

    @pytest.mark.asyncio
    async def test_normal_return_acks(self):
        consumer = make_consumer(AsyncMock(return_value=None))

        assert await consumer.handle(json_message()) is ConsumerStatus.ACK

    @pytest.mark.asyncio
    async def test_unrecognized_return_acks(self):
        consumer = make_consumer(AsyncMock(return_value="done"))

        assert await consumer.handle(json_message()) is ConsumerStatus.ACK

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", list(ConsumerStatus))
    async def test_explicit_status_is_kept(self, status):
        consumer = make_consumer(AsyncMock(return_value=status))

        assert await consumer.handle(json_message()) is status

    @pytest.mark.asyncio
    async def test_drop_signal_drops(self):
        consumer = make_consumer(AsyncMock(side_effect=DropMessage()))

        assert await consumer.handle(json_message()) is ConsumerStatus.DROP

    @pytest.mark.asyncio
    async def test_handler_error_requeues(self):
        consumer = make_consumer(AsyncMock(side_effect=ValueError("boom")))

        assert await consumer.handle(json_message()) is ConsumerStatus.REQUEUE

    @pytest.mark.asyncio
    async def test_handler_error_drops_when_requeue_disabled(self):
        consumer = make_consumer(AsyncMock(side_effect=ValueError("boom")), requeue=False)

        assert await consumer.handle(json_message()) is ConsumerStatus.DROP

    @pytest.mark.asyncio
    async def test_undecodable_body_requeues(self):
        consumer = make_consumer(AsyncMock())

        assert await consumer.handle(json_message(b"not json")) is ConsumerStatus.REQUEUE

    @pytest.mark.asyncio
    async def test_sync_handler_is_supported(self):
        seen = []
        consumer = make_consumer(lambda data, message: seen.append(data))

        assert await consumer.handle(json_message()) is ConsumerStatus.ACK
        assert seen == [{"id": 1}]

    @pytest.mark.asyncio
    async def test_handler_receives_decoded_data_and_message(self):
        handler = AsyncMock(return_value=None)
        message = json_message()

        await make_consumer(handler).handle(message)

        handler.assert_awaited_once_with({"id": 1}, message)

    @pytest.mark.asyncio
    async def test_error_hook_receives_handler_fault(self):
        on_error = AsyncMock()
        error = ValueError("boom")
        consumer = make_consumer(AsyncMock(side_effect=error), on_error=on_error)
        message = json_message()

        await consumer.handle(message)

        fault, hooked_message = on_error.await_args.args
        assert isinstance(fault, HandlerFault)
        assert fault.__cause__ is error
        assert hooked_message is message

    @pytest.mark.asyncio
    async def test_failing_error_hook_does_not_escape(self):
        on_error = MagicMock(side_effect=RuntimeError("hook"))
        consumer = make_consumer(AsyncMock(side_effect=ValueError("boom")), on_error=on_error)

        assert await consumer.handle(json_message()) is ConsumerStatus.REQUEUE


@pytest.mark.unit
class TestSettlement:
    """Test ack/nack/reject on the incoming message."""

    @pytest.mark.asyncio
    async def test_ack(self):
        consumer = make_consumer(AsyncMock(return_value=None))
        message = json_message()
        before = consumed("billing", "ack")

        await consumer._on_message(message)
        await consumer.close()

        message.ack.assert_awaited_once()
        message.nack.assert_not_awaited()
        assert consumed("billing", "ack") == before + 1

    @pytest.mark.asyncio
    async def test_requeue(self):
        consumer = make_consumer(AsyncMock(return_value=ConsumerStatus.REQUEUE))
        message = json_message()

        await consumer._on_message(message)
        await consumer.close()

        message.nack.assert_awaited_once_with(requeue=True)

    @pytest.mark.asyncio
    async def test_drop(self):
        consumer = make_consumer(AsyncMock(side_effect=DropMessage()))
        message = json_message()

        await consumer._on_message(message)
        await consumer.close()

        message.reject.assert_awaited_once_with(requeue=False)

    @pytest.mark.asyncio
    async def test_settle_failure_is_contained(self):
        consumer = make_consumer(AsyncMock(return_value=None))
        message = json_message()
        message.ack.side_effect = RuntimeError("channel closed")

        await consumer._on_message(message)
        await consumer.close()

        message.ack.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrency_limit(self):
        active = 0
        peak = 0
        release = asyncio.Event()

        async def handler(data, message):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await release.wait()
            active -= 1

        consumer = make_consumer(handler, concurrency=2)
        messages = [json_message() for _ in range(5)]
        for message in messages:
            await consumer._on_message(message)

        for _ in range(5):
            await asyncio.sleep(0)
        assert peak == 2
        assert consumer.in_flight == 5

        release.set()
        await consumer.close()

        assert peak == 2
        assert all(m.ack.await_count == 1 for m in messages)
        assert consumer.in_flight == 0


@pytest.mark.unit
class TestCreateConsumer:
    """Test consumer construction against the in-memory broker."""

    @pytest.mark.asyncio
    async def test_declares_and_subscribes(self, config_provider, registry, rabbit_settings, broker):
        consumer = await create_consumer(config_provider, registry, "invoices", AsyncMock(), rabbit_settings)

        assert "orders" in broker.exchanges
        assert "billing" in broker.queues
        assert broker.bindings == [("orders", "queue", "billing", "invoice.created", {})]
        assert broker.consumers["billing"][0] == "billing-service_invoices"
        assert consumer.queue_name == "billing"

        await consumer.close()
        assert "billing" not in broker.consumers

    @pytest.mark.asyncio
    async def test_consuming_channel_declares_its_topology(self, config_provider, registry, rabbit_settings):
        consumer = await create_consumer(config_provider, registry, "invoices", AsyncMock(), rabbit_settings)

        connection = await registry.get("rabbitmq")
        channel = connection.channels[-1]
        assert not channel.is_closed
        assert set(channel.declared_exchanges) == {"orders"}
        assert consumer._queue is channel.declared_queues["billing"]

        await consumer.close()

    @pytest.mark.asyncio
    async def test_prefetch_defaults_to_concurrency(self, config_provider, registry, rabbit_settings):
        await create_consumer(
            config_provider, registry, "invoices", AsyncMock(), rabbit_settings, ConsumerOptions(concurrency=4)
        )

        connection = await registry.get("rabbitmq")
        assert connection.channels[-1].prefetch_count == 4

    @pytest.mark.asyncio
    async def test_explicit_prefetch(self, config_provider, registry, rabbit_settings):
        await create_consumer(
            config_provider, registry, "invoices", AsyncMock(), rabbit_settings, ConsumerOptions(prefetch_count=50)
        )

        connection = await registry.get("rabbitmq")
        assert connection.channels[-1].prefetch_count == 50

    @pytest.mark.asyncio
    async def test_unknown_consumer_fails(self, config_provider, registry, rabbit_settings, connect):
        with pytest.raises(ConfigResolutionError, match="Could not find instance for consumer unknown"):
            await create_consumer(config_provider, registry, "unknown", AsyncMock(), rabbit_settings)

        connect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pending_messages_are_delivered_on_subscribe(self, config_provider, registry, rabbit_settings, broker):
        broker.messages["billing"] = [json_message()]
        received = asyncio.Event()

        async def handler(data, message):
            received.set()

        consumer = await create_consumer(config_provider, registry, "invoices", handler, rabbit_settings)
        await asyncio.wait_for(received.wait(), timeout=1)
        await consumer.close()
