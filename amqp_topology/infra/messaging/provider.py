"""Config provider contract and a file-backed implementation.

The gateways never discover brokers on their own: a :class:`ConfigProvider`
tells them which broker instance(s) a logical resource is wired to, what
topology document each instance runs, and how to reach its operator
(AMQP + management endpoints). Anything implementing the protocol can be
plugged in; :class:`FileConfigProvider` reads the same information from a
local YAML/JSON file for development and tests.

Example file:

    instanceId: billing-service
    instances:
      - instanceId: rabbitmq
        block:
          kind: rabbitmq-broker
          spec:
            consumers: [...]
            providers: [...]
            bindings: {exchanges: [...]}
        connections:
          - provider: {blockId: billing-service, resourceName: events}
            consumer: {blockId: rabbitmq, resourceName: orders}
    operators:
      rabbitmq:
        hostname: localhost
        ports: {amqp: 5672, management: 15672}
        credentials: {username: guest, password: guest}
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator
from pydantic.alias_generators import to_camel
import yaml

from amqp_topology.core.exceptions import ConfigResolutionError
from amqp_topology.infra.messaging.topology import BlockDefinition

logger = logging.getLogger(__name__)


class _ProviderModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="allow",
    )


class ResourceRef(_ProviderModel):
    """One end of an instance connection."""

    block_id: str | None = None
    resource_name: str


class InstanceConnection(_ProviderModel):
    """Edge from a provider resource on one instance to a consumer resource on another."""

    provider: ResourceRef
    consumer: ResourceRef


class BrokerInstance(_ProviderModel):
    """A deployed broker block plus every connection touching it."""

    instance_id: str = Field(min_length=1)
    block: BlockDefinition
    connections: list[InstanceConnection] = Field(default_factory=list)


class PortInfo(_ProviderModel):
    port: int = Field(ge=1, le=65535)
    protocol: str | None = None


class Credentials(_ProviderModel):
    username: str
    password: SecretStr = SecretStr("")


class OperatorOptions(_ProviderModel):
    vhost: str | None = None


class InstanceOperator(_ProviderModel):
    """How to reach a broker instance."""

    hostname: str = Field(min_length=1)
    ports: dict[str, PortInfo] = Field(default_factory=dict)
    credentials: Credentials | None = None
    options: OperatorOptions = Field(default_factory=OperatorOptions)

    @field_validator("ports", mode="before")
    @classmethod
    def _accept_bare_ports(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {name: {"port": port} if isinstance(port, int) else port for name, port in value.items()}
        return value

    def port(self, name: str) -> int | None:
        info = self.ports.get(name)
        return info.port if info else None

    @property
    def username(self) -> str:
        return self.credentials.username if self.credentials else "guest"

    @property
    def password(self) -> str:
        return self.credentials.password.get_secret_value() if self.credentials else "guest"


@runtime_checkable
class ConfigProvider(Protocol):
    """Authoritative source of instances, connections and operators."""

    async def get_instance_for_consumer(self, resource_name: str) -> BrokerInstance | None:
        """Return the broker instance the named consumer resource reads from."""
        ...

    async def get_instances_for_provider(self, resource_name: str) -> list[BrokerInstance]:
        """Return every broker instance the named provider resource publishes to."""
        ...

    async def get_instance_operator(self, instance_id: str) -> InstanceOperator | None:
        """Return connection details for a broker instance."""
        ...

    def get_instance_id(self) -> str:
        """Return the identifier of the running instance."""
        ...


class _ProviderFile(_ProviderModel):
    instance_id: str | None = None
    instances: list[BrokerInstance] = Field(default_factory=list)
    operators: dict[str, InstanceOperator] = Field(default_factory=dict)


class FileConfigProvider:
    """ConfigProvider backed by a YAML or JSON document.

    The document is parsed and validated in the constructor; lookups are
    served from memory afterwards.
    """

    def __init__(self, data: dict[str, Any], instance_id: str | None = None) -> None:
        try:
            parsed = _ProviderFile.model_validate(data)
        except ValidationError as e:
            raise ConfigResolutionError(
                f"Invalid topology configuration: {e}",
                extra={"errors": e.errors(include_url=False)},
            ) from e

        resolved_id = instance_id or parsed.instance_id
        if not resolved_id:
            raise ConfigResolutionError("No instance id configured for this process")

        self._instance_id = resolved_id
        self._instances = parsed.instances
        self._operators = parsed.operators

    @classmethod
    def from_file(cls, path: str | Path, instance_id: str | None = None) -> FileConfigProvider:
        """Load a provider from a ``.yaml``/``.yml`` or ``.json`` file."""
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigResolutionError(
                f"Unable to read topology configuration {path}: {e}",
                extra={"path": str(path)},
            ) from e

        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
        logger.info("Loaded topology configuration", extra={"path": str(path)})
        return cls(data or {}, instance_id=instance_id)

    @classmethod
    def from_settings(cls) -> FileConfigProvider:
        """Build a provider from TopologySettings (TOPOLOGY_* env / conf/topology.yaml)."""
        from amqp_topology.core.settings import get_topology_settings

        settings = get_topology_settings()
        return cls.from_file(settings.config_file, instance_id=settings.instance_id)

    async def get_instance_for_consumer(self, resource_name: str) -> BrokerInstance | None:
        for instance in self._instances:
            if any(c.consumer.resource_name == resource_name for c in instance.connections):
                return instance
        return None

    async def get_instances_for_provider(self, resource_name: str) -> list[BrokerInstance]:
        return [
            instance
            for instance in self._instances
            if any(c.provider.resource_name == resource_name for c in instance.connections)
        ]

    async def get_instance_operator(self, instance_id: str) -> InstanceOperator | None:
        return self._operators.get(instance_id)

    def get_instance_id(self) -> str:
        return self._instance_id
