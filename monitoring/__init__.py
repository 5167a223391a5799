"""Monitoring package.

Prometheus metrics for frame latency, counts, analysis mode and errors.
"""

from .metrics import MetricsExporter

__all__ = ["MetricsExporter"]
