"""RabbitMQ topology provisioning and message gateways.

- Topology: document models for exchanges, queues and bindings
- Provider: config provider contract and a YAML/JSON file implementation
- Resolver: turns a document into the declarations one gateway needs
- VHost: vhost probe/create through the management API, with retry
- Declarator: idempotent declares with delete+recreate on conflict
- Connections: one shared robust connection per broker instance
- Publisher/Consumer: the gateways, created through MessagingGateway

Example:
        from amqp_topology.infra.messaging import (
            ConsumerStatus,
            FileConfigProvider,
            MessagingGateway,
        )

        async def on_invoice(data, message):
            if not data.get("id"):
                return ConsumerStatus.DROP
            ...

        gateway = MessagingGateway(FileConfigProvider.from_settings())
        await gateway.create_consumer("invoices", on_invoice)
"""

from __future__ import annotations

from amqp_topology.infra.messaging.connections import ConnectionRegistry
from amqp_topology.infra.messaging.consumer import (
    Consumer,
    ConsumerOptions,
    ConsumerStatus,
    DropMessage,
    decode_body,
)
from amqp_topology.infra.messaging.gateway import MessagingGateway
from amqp_topology.infra.messaging.provider import (
    BrokerInstance,
    ConfigProvider,
    FileConfigProvider,
    InstanceConnection,
    InstanceOperator,
)
from amqp_topology.infra.messaging.publisher import (
    Publisher,
    PublishMessage,
    PublishOptions,
)
from amqp_topology.infra.messaging.resolver import (
    compile_routing,
    plan_consumer,
    plan_provider,
    resolve_consumer_queue,
    resolve_provider_exchanges,
)
from amqp_topology.infra.messaging.topology import BlockDefinition, TopologyDocument
from amqp_topology.infra.messaging.vhost import ManagementClient, ensure_vhost

__all__ = [
    "BlockDefinition",
    "BrokerInstance",
    "ConfigProvider",
    "ConnectionRegistry",
    "Consumer",
    "ConsumerOptions",
    "ConsumerStatus",
    "DropMessage",
    "FileConfigProvider",
    "InstanceConnection",
    "InstanceOperator",
    "ManagementClient",
    "MessagingGateway",
    "PublishMessage",
    "PublishOptions",
    "Publisher",
    "TopologyDocument",
    "compile_routing",
    "decode_body",
    "ensure_vhost",
    "plan_consumer",
    "plan_provider",
    "resolve_consumer_queue",
    "resolve_provider_exchanges",
]
