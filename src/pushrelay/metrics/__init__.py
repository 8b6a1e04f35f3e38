"""Metrics subsystem."""

from pushrelay.metrics.collector import MetricsCollector

__all__ = ["MetricsCollector"]
