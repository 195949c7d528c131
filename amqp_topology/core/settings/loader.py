"""LRU-cached settings loaders.

Settings are loaded and validated once, then cached for the lifetime of the process.

Testing:
    In tests, clear the cache to force reload:
    get_rabbit_settings.cache_clear()

    Or override with custom values:
    settings = RabbitSettings(vhost_retry_attempts=2, ...)
"""

from __future__ import annotations

from functools import lru_cache

from .logs import LoggingSettings
from .rabbit import RabbitSettings
from .topology import TopologySettings


@lru_cache(maxsize=1)
def get_rabbit_settings() -> RabbitSettings:
    """Get cached RabbitMQ settings.

    Returns:
        Validated and frozen RabbitSettings instance.
    """
    return RabbitSettings()


@lru_cache(maxsize=1)
def get_topology_settings() -> TopologySettings:
    """Get cached topology provider settings."""
    return TopologySettings()


@lru_cache(maxsize=1)
def get_logging_settings() -> LoggingSettings:
    """Get cached logging settings."""
    return LoggingSettings()


def clear_all_caches() -> None:
    """Clear every cached settings instance (used by tests)."""
    get_rabbit_settings.cache_clear()
    get_topology_settings.cache_clear()
    get_logging_settings.cache_clear()
