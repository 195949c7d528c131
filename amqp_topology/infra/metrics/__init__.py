"""Prometheus metrics for broker provisioning and message flow."""

from __future__ import annotations

from amqp_topology.infra.metrics.prometheus import REGISTRY
from amqp_topology.infra.metrics.tracking import (
    track_message_consumed,
    track_publish,
    track_publish_failure,
    track_retry_attempt,
    track_retry_exhausted,
    track_retry_success,
    track_topology_recreated,
)

__all__ = [
    "REGISTRY",
    "track_message_consumed",
    "track_publish",
    "track_publish_failure",
    "track_retry_attempt",
    "track_retry_exhausted",
    "track_retry_success",
    "track_topology_recreated",
]
