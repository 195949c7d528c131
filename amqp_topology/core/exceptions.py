"""Custom exception classes for topology provisioning and messaging."""

from __future__ import annotations

from typing import Any


class MessagingError(Exception):
    """Base messaging exception.

    All custom exceptions should inherit from this class.

    Attributes:
        detail: Human-readable error message.
        extra: Additional context-specific information about the error.

    Example:
            raise MessagingError(
            detail="Queue billing could not be declared",
            extra={"queue": "billing", "instance_id": "rabbit-1"}
        )
    """

    def __init__(self, detail: str, extra: dict[str, Any] | None = None) -> None:
        """Initialize messaging exception.

        Args:
            detail: Human-readable error message.
            extra: Additional context about the error.
        """
        self.detail = detail
        self.extra = extra or {}
        super().__init__(detail)


class ConfigResolutionError(MessagingError):
    """Raised when configuration cannot be resolved into a usable topology.

    Covers missing instances or operators. Fatal and never retried: no
    partial gateway is returned to the caller.
    """


class TopologyError(ConfigResolutionError):
    """Raised when a topology document is malformed or resolves ambiguously.

    Example:
            raise TopologyError(
            detail="No defined queues found for consumer billing",
            extra={"resource_name": "billing"}
        )
    """


class ProvisioningConflict(MessagingError):
    """Raised when a conflicting declaration could not be recreated."""


class TransientInfrastructureFault(MessagingError):
    """Raised for management endpoint failures that are worth retrying.

    Attributes:
        status_code: HTTP status returned by the endpoint, if any.
    """

    def __init__(
        self,
        detail: str,
        status_code: int | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(detail, extra)


class DeliveryFault(MessagingError):
    """Raised when a publish to a target exchange was not confirmed."""


class HandlerFault(MessagingError):
    """Wraps an exception raised by a consumer handler.

    The offending message is requeued; the fault itself never reaches the
    subscription loop.
    """
