"""
Monitoring Module

Prometheus metrics for the sync layer.
"""

from .metrics import SyncMetrics

__all__ = ["SyncMetrics"]
