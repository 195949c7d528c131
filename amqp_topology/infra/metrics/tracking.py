"""Helper functions for tracking messaging and operational metrics."""

from __future__ import annotations

import logging

from amqp_topology.infra.metrics import messaging

logger = logging.getLogger(__name__)


# ============================================================================
# Message Flow Tracking
# ============================================================================


def track_publish(exchange: str) -> None:
    """Track a send confirmed by a target exchange.

    Args:
        exchange: Name of the target exchange

    Example:
            track_publish("orders")
    """
    messaging.messages_published_total.labels(exchange=exchange).inc()


def track_publish_failure(exchange: str) -> None:
    """Track a failed send to a target exchange."""
    messaging.publish_failures_total.labels(exchange=exchange).inc()


def track_message_consumed(queue: str, disposition: str) -> None:
    """Track the disposition applied to a consumed message.

    Args:
        queue: Live queue name the message was consumed from
        disposition: One of ack, requeue, drop

    Example:
            track_message_consumed("billing", "ack")
    """
    messaging.messages_consumed_total.labels(queue=queue, disposition=disposition).inc()


def track_topology_recreated(kind: str) -> None:
    """Track a delete+redeclare cycle for an exchange or queue."""
    messaging.topology_recreated_total.labels(kind=kind).inc()
    logger.debug(f"Tracked topology recreate: {kind}")


# ============================================================================
# Retry Tracking
# ============================================================================


def track_retry_attempt(operation: str, attempt_number: int) -> None:
    """Track a retry attempt.

    Args:
        operation: Name of the operation being retried
        attempt_number: Current attempt number (1-indexed)

    Example:
            track_retry_attempt("ensure_vhost", 2)
    """
    messaging.retry_attempts_total.labels(
        operation=operation,
        attempt_number=str(attempt_number),
    ).inc()


def track_retry_exhausted(operation: str) -> None:
    """Track when all retry attempts are exhausted.

    Args:
        operation: Name of the operation that failed
    """
    messaging.retry_exhausted_total.labels(operation=operation).inc()


def track_retry_success(operation: str, attempts_needed: int) -> None:
    """Track successful operation after retries.

    Args:
        operation: Name of the operation
        attempts_needed: Number of attempts needed to succeed
    """
    messaging.retry_success_after_failure_total.labels(
        operation=operation,
        attempts_needed=str(attempts_needed),
    ).inc()
