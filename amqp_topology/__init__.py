"""Declarative AMQP topology provisioning with publish/consume gateways."""

__version__ = "0.1.0"
