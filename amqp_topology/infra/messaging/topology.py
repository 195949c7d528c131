"""Topology document models.

A topology document describes one broker block: the exchanges it accepts
messages on (``consumers``), the queues it hands messages out of
(``providers``) and the ``bindings`` section routing one into the other.

Documents are validated once at load time. Recognized fields are typed;
unknown keys (``port``, ``payloadType``, ...) are preserved, and broker
specific extensions go in each resource's ``arguments`` map.

The declaration dataclasses at the bottom are the compiled, broker-facing
form produced by :mod:`amqp_topology.infra.messaging.resolver` and consumed
by :mod:`amqp_topology.infra.messaging.declarator`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from amqp_topology.core.exceptions import TopologyError

ExchangeKind = Literal["direct", "fanout", "topic", "headers"]
BindingTargetType = Literal["queue", "exchange"]


class _DocumentModel(BaseModel):
    """Base for document models: camelCase on the wire, immutable once loaded."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="allow",
    )


class ResourceMetadata(_DocumentModel):
    name: str = Field(min_length=1)


# ──────────────────────────────────────────────────────────────────────────────
# Resources
# ──────────────────────────────────────────────────────────────────────────────


class ExchangeSpec(_DocumentModel):
    exchange_type: ExchangeKind
    durable: bool = False
    auto_delete: bool = False
    internal: bool = False
    passive: bool = False
    alternate_exchange: str | None = None
    arguments: dict[str, Any] = Field(default_factory=dict)


class QueueSpec(_DocumentModel):
    durable: bool = False
    auto_delete: bool = False
    exclusive: bool = False
    passive: bool = False
    dead_letter_exchange: str | None = None
    dead_letter_routing_key: str | None = None
    max_priority: int | None = Field(default=None, ge=0, le=255)
    max_length: int | None = Field(default=None, ge=0)
    message_ttl: int | None = Field(default=None, ge=0)
    expires: int | None = Field(default=None, ge=1)
    arguments: dict[str, Any] = Field(default_factory=dict)


class ExchangeResource(_DocumentModel):
    """An exchange declared by the block (a "consumer" resource)."""

    kind: str | None = None
    metadata: ResourceMetadata
    spec: ExchangeSpec

    @property
    def name(self) -> str:
        return self.metadata.name

    def to_declaration(self) -> ExchangeDeclaration:
        arguments: dict[str, Any] = {}
        if self.spec.alternate_exchange:
            arguments["alternate-exchange"] = self.spec.alternate_exchange
        arguments.update(self.spec.arguments)
        return ExchangeDeclaration(
            name=self.name,
            type=self.spec.exchange_type,
            durable=self.spec.durable,
            auto_delete=self.spec.auto_delete,
            internal=self.spec.internal,
            passive=self.spec.passive,
            arguments=arguments,
        )


class QueueResource(_DocumentModel):
    """A queue declared by the block (a "provider" resource)."""

    kind: str | None = None
    metadata: ResourceMetadata
    spec: QueueSpec = Field(default_factory=QueueSpec)

    @property
    def name(self) -> str:
        return self.metadata.name

    def to_declaration(self) -> QueueDeclaration:
        optional = {
            "x-dead-letter-exchange": self.spec.dead_letter_exchange,
            "x-dead-letter-routing-key": self.spec.dead_letter_routing_key,
            "x-max-priority": self.spec.max_priority,
            "x-max-length": self.spec.max_length,
            "x-message-ttl": self.spec.message_ttl,
            "x-expires": self.spec.expires,
        }
        arguments = {key: value for key, value in optional.items() if value is not None}
        arguments.update(self.spec.arguments)
        return QueueDeclaration(
            name=self.name,
            durable=self.spec.durable,
            auto_delete=self.spec.auto_delete,
            exclusive=self.spec.exclusive,
            passive=self.spec.passive,
            arguments=arguments,
        )


# ──────────────────────────────────────────────────────────────────────────────
# Bindings
# ──────────────────────────────────────────────────────────────────────────────


class HeaderRouting(_DocumentModel):
    """Header-match routing; ``match_all`` compiles to ``x-match=all``."""

    match_all: bool = False
    headers: dict[str, str] = Field(default_factory=dict)


class Binding(_DocumentModel):
    """One routing rule from the owning exchange to a queue or exchange."""

    name: str = Field(min_length=1)
    type: BindingTargetType
    routing: str | HeaderRouting | None = None


class ExchangeBindings(_DocumentModel):
    exchange: str = Field(min_length=1)
    bindings: list[Binding] = Field(default_factory=list)


class BindingSet(_DocumentModel):
    exchanges: list[ExchangeBindings] = Field(default_factory=list)


# ──────────────────────────────────────────────────────────────────────────────
# Document
# ──────────────────────────────────────────────────────────────────────────────


class TopologyDocument(_DocumentModel):
    """Declarative description of one broker block."""

    consumers: list[ExchangeResource] = Field(default_factory=list)
    providers: list[QueueResource] = Field(default_factory=list)
    bindings: BindingSet = Field(default_factory=BindingSet)

    def find_exchange(self, name: str) -> ExchangeResource | None:
        return next((exchange for exchange in self.consumers if exchange.name == name), None)

    def find_queue(self, name: str) -> QueueResource | None:
        return next((queue for queue in self.providers if queue.name == name), None)

    def require_complete(self, context: str) -> None:
        """Raise TopologyError unless consumers, providers and bindings are all present.

        Args:
            context: Description of the caller, included in the error message.
        """
        missing = [
            section
            for section, present in (
                ("consumers", bool(self.consumers)),
                ("providers", bool(self.providers)),
                ("bindings", bool(self.bindings.exchanges)),
            )
            if not present
        ]
        if missing:
            raise TopologyError(
                f"Invalid rabbitmq block definition. Missing {', '.join(missing)} for {context}",
                extra={"missing": missing},
            )


class BlockDefinition(_DocumentModel):
    """Block envelope as delivered by the config provider."""

    kind: str | None = None
    metadata: ResourceMetadata | None = None
    spec: TopologyDocument = Field(default_factory=TopologyDocument)


# ──────────────────────────────────────────────────────────────────────────────
# Compiled declarations
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ExchangeDeclaration:
    name: str
    type: ExchangeKind
    durable: bool = False
    auto_delete: bool = False
    internal: bool = False
    passive: bool = False
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class QueueDeclaration:
    name: str
    durable: bool = False
    auto_delete: bool = False
    exclusive: bool = False
    passive: bool = False
    arguments: dict[str, Any] = field(default_factory=dict)

    @property
    def request_name(self) -> str:
        """Name sent on declare; exclusive queues get a server-generated name."""
        return "" if self.exclusive else self.name


@dataclass(frozen=True)
class QueueBinding:
    """Exchange → queue bind. ``queue`` is the logical name from the document."""

    exchange: str
    queue: str
    routing_key: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExchangeBinding:
    """Exchange → exchange bind."""

    source: str
    destination: str
    routing_key: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)
