"""Messaging and resilience metrics."""

from __future__ import annotations

from prometheus_client import Counter

from amqp_topology.infra.metrics.prometheus import REGISTRY

# ============================================================================
# Message Flow Metrics
# ============================================================================

messages_published_total = Counter(
    "amqp_messages_published_total",
    "Total number of messages confirmed by a target exchange",
    ["exchange"],
    registry=REGISTRY,
)

publish_failures_total = Counter(
    "amqp_publish_failures_total",
    "Total number of failed sends to a target exchange",
    ["exchange"],
    registry=REGISTRY,
)

messages_consumed_total = Counter(
    "amqp_messages_consumed_total",
    "Total number of consumed messages by final disposition",
    ["queue", "disposition"],  # disposition: ack, requeue, drop
    registry=REGISTRY,
)

# ============================================================================
# Provisioning Metrics
# ============================================================================

topology_recreated_total = Counter(
    "amqp_topology_recreated_total",
    "Total number of exchanges/queues deleted and redeclared after a conflict",
    ["kind"],  # kind: exchange, queue
    registry=REGISTRY,
)

# ============================================================================
# Retry Metrics
# ============================================================================

retry_attempts_total = Counter(
    "retry_attempts_total",
    "Total number of retry attempts",
    ["operation", "attempt_number"],
    registry=REGISTRY,
)

retry_exhausted_total = Counter(
    "retry_exhausted_total",
    "Total number of operations that exhausted all retries",
    ["operation"],
    registry=REGISTRY,
)

retry_success_after_failure_total = Counter(
    "retry_success_after_failure_total",
    "Total number of operations that succeeded after retry",
    ["operation", "attempts_needed"],
    registry=REGISTRY,
)
