"""Observability helpers for turn metrics."""

from relay_agent.observability.metrics import MetricsStore

__all__ = ["MetricsStore"]
