"""Prometheus registry shared by all messaging metrics."""

from __future__ import annotations

from prometheus_client import CollectorRegistry

# Custom registry so embedding applications control exposition
REGISTRY = CollectorRegistry()
