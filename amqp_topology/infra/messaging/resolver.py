"""Topology resolution.

Turns a topology document plus the instance connection graph into the exact
set of declarations one gateway needs:

- a consumer resolves to exactly one queue, every exchange named in the
  binding section, and the exchange → queue binds targeting that queue;
- a provider resolves to one or more target exchanges plus any exchanges
  reachable from them through exchange → exchange binds.

Resolution is pure: nothing here talks to the broker. Errors are raised as
:class:`~amqp_topology.core.exceptions.TopologyError` before any connection
is opened.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING, Any

from amqp_topology.core.exceptions import TopologyError
from amqp_topology.infra.messaging.topology import (
    Binding,
    ExchangeBinding,
    ExchangeDeclaration,
    ExchangeResource,
    HeaderRouting,
    QueueBinding,
    QueueDeclaration,
    QueueResource,
    TopologyDocument,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from amqp_topology.infra.messaging.provider import InstanceConnection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsumerTopology:
    """Everything a consumer declares, in declare order."""

    queue: QueueDeclaration
    exchanges: list[ExchangeDeclaration] = field(default_factory=list)
    bindings: list[QueueBinding] = field(default_factory=list)


@dataclass(frozen=True)
class ProviderTopology:
    """Everything a publisher declares, plus the exchanges it publishes to."""

    targets: list[ExchangeDeclaration] = field(default_factory=list)
    exchanges: list[ExchangeDeclaration] = field(default_factory=list)
    bindings: list[ExchangeBinding] = field(default_factory=list)


# ──────────────────────────────────────────────────────────────────────────────
# Resource resolution
# ──────────────────────────────────────────────────────────────────────────────


def resolve_consumer_queue(
    document: TopologyDocument,
    connections: Sequence[InstanceConnection],
    resource_name: str,
) -> QueueResource:
    """Resolve the single queue wired to a consumer resource.

    Args:
        document: Topology document of the broker instance.
        connections: Connections touching the broker instance.
        resource_name: Consumer-side resource name to resolve.

    Returns:
        The queue resource the consumer reads from.

    Raises:
        TopologyError: If zero or more than one queue is wired to the resource.
    """
    queues: list[QueueResource] = []
    for connection in connections:
        if connection.consumer.resource_name != resource_name:
            continue
        queue = document.find_queue(connection.provider.resource_name)
        if queue is not None and queue not in queues:
            queues.append(queue)

    if not queues:
        raise TopologyError(
            f"No defined queues found for consumer {resource_name}",
            extra={"resource_name": resource_name},
        )
    if len(queues) > 1:
        raise TopologyError(
            f"Multiple defined queues found for consumer {resource_name}. Only 1 expected",
            extra={"resource_name": resource_name, "queues": [q.name for q in queues]},
        )
    return queues[0]


def resolve_provider_exchanges(
    document: TopologyDocument,
    connections: Sequence[InstanceConnection],
    resource_name: str,
) -> list[ExchangeResource]:
    """Resolve every exchange a provider resource publishes to.

    Exchanges are returned in connection order, each at most once.

    Raises:
        TopologyError: If no exchange is wired to the resource.
    """
    exchanges: list[ExchangeResource] = []
    for connection in connections:
        if connection.provider.resource_name != resource_name:
            continue
        exchange = document.find_exchange(connection.consumer.resource_name)
        if exchange is not None and exchange not in exchanges:
            exchanges.append(exchange)

    if not exchanges:
        raise TopologyError(
            f"No defined exchanges found for provider {resource_name}",
            extra={"resource_name": resource_name},
        )
    return exchanges


# ──────────────────────────────────────────────────────────────────────────────
# Binding compilation
# ──────────────────────────────────────────────────────────────────────────────


def compile_routing(routing: str | HeaderRouting | None) -> tuple[str, dict[str, Any]]:
    """Translate a binding's routing value into (routing key, bind arguments).

    A string is a literal routing key. Header routing binds with an empty
    routing key and an ``x-match`` argument. A missing routing value binds
    with an empty routing key and no arguments.
    """
    if routing is None:
        return "", {}
    if isinstance(routing, str):
        return routing, {}
    arguments: dict[str, Any] = dict(routing.headers)
    arguments["x-match"] = "all" if routing.match_all else "any"
    return "", arguments


def _binding_index(document: TopologyDocument) -> dict[str, list[Binding]]:
    """Map exchange name → bindings, validating every referenced exchange exists."""
    index: dict[str, list[Binding]] = {}
    for entry in document.bindings.exchanges:
        if document.find_exchange(entry.exchange) is None:
            raise TopologyError(
                f"Could not find exchange {entry.exchange}",
                extra={"exchange": entry.exchange},
            )
        if not entry.bindings:
            logger.warning(
                f"Not binding exchange {entry.exchange} because there are no bindings",
                extra={"exchange": entry.exchange},
            )
        index.setdefault(entry.exchange, []).extend(entry.bindings)
    return index


def collect_queue_bindings(
    document: TopologyDocument,
    queue_name: str,
    index: dict[str, list[Binding]] | None = None,
) -> list[QueueBinding]:
    """Collect every exchange → queue bind targeting ``queue_name``."""
    if index is None:
        index = _binding_index(document)
    bindings: list[QueueBinding] = []
    for exchange_name, entries in index.items():
        for binding in entries:
            if binding.type != "queue" or binding.name != queue_name:
                continue
            routing_key, arguments = compile_routing(binding.routing)
            bindings.append(
                QueueBinding(
                    exchange=exchange_name,
                    queue=queue_name,
                    routing_key=routing_key,
                    arguments=arguments,
                )
            )
    return bindings


def collect_exchange_chain(
    document: TopologyDocument,
    roots: Sequence[ExchangeResource],
) -> tuple[list[ExchangeResource], list[ExchangeBinding]]:
    """Walk exchange → exchange binds starting from ``roots``.

    Returns:
        Every exchange to declare (roots first, then in discovery order) and
        the exchange binds between them.

    Raises:
        TopologyError: If a bind targets an exchange missing from the document.
    """
    index = _binding_index(document)
    exchanges: list[ExchangeResource] = list(roots)
    bindings: list[ExchangeBinding] = []
    pending = list(roots)
    seen = {exchange.name for exchange in roots}

    while pending:
        source = pending.pop(0)
        for binding in index.get(source.name, []):
            if binding.type != "exchange":
                continue
            destination = document.find_exchange(binding.name)
            if destination is None:
                raise TopologyError(
                    f"Could not find exchange {binding.name} bound from {source.name}",
                    extra={"source": source.name, "destination": binding.name},
                )
            routing_key, arguments = compile_routing(binding.routing)
            bindings.append(
                ExchangeBinding(
                    source=source.name,
                    destination=destination.name,
                    routing_key=routing_key,
                    arguments=arguments,
                )
            )
            if destination.name not in seen:
                seen.add(destination.name)
                exchanges.append(destination)
                pending.append(destination)

    return exchanges, bindings


# ──────────────────────────────────────────────────────────────────────────────
# Gateway plans
# ──────────────────────────────────────────────────────────────────────────────


def plan_consumer(
    document: TopologyDocument,
    connections: Sequence[InstanceConnection],
    resource_name: str,
) -> ConsumerTopology:
    """Build the consumer declaration plan for one broker instance."""
    document.require_complete(f"consumer {resource_name}")
    queue = resolve_consumer_queue(document, connections, resource_name)

    index = _binding_index(document)
    exchanges = [
        exchange.to_declaration()
        for exchange in document.consumers
        if exchange.name in index
    ]

    bindings = collect_queue_bindings(document, queue.name, index)
    for binding in bindings:
        logger.info(
            f"Binding exchange {binding.exchange} to queue "
            f"{binding.queue if not queue.spec.exclusive else '<exclusive>'}",
            extra={
                "exchange": binding.exchange,
                "queue": binding.queue,
                "routing_key": binding.routing_key,
                "arguments": binding.arguments,
            },
        )

    return ConsumerTopology(queue=queue.to_declaration(), exchanges=exchanges, bindings=bindings)


def plan_provider(
    document: TopologyDocument,
    connections: Sequence[InstanceConnection],
    resource_name: str,
) -> ProviderTopology:
    """Build the publisher declaration plan for one broker instance."""
    document.require_complete(f"provider {resource_name}")
    roots = resolve_provider_exchanges(document, connections, resource_name)
    exchanges, bindings = collect_exchange_chain(document, roots)
    return ProviderTopology(
        targets=[exchange.to_declaration() for exchange in roots],
        exchanges=[exchange.to_declaration() for exchange in exchanges],
        bindings=bindings,
    )
