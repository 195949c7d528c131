from __future__ import annotations

from amqp_topology.utils.retry.decorator import retry
from amqp_topology.utils.retry.exceptions import RetryError, RetryStatistics
from amqp_topology.utils.retry.strategies import RetryStrategy

__all__ = ["retry", "RetryError", "RetryStatistics", "RetryStrategy"]
