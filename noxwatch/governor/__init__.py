"""
Noxwatch Resource Governor

Host-wide memory, CPU, disk, load, temperature and connection monitoring
with edge-triggered threshold alerts.
"""

from .governor import ResourceGovernor, ResourceThresholds, ThresholdEvent
from .metrics import MetricsProvider, PsutilMetricsProvider, ResourceSample, format_bytes

__all__ = [
    'ResourceGovernor',
    'ResourceThresholds',
    'ThresholdEvent',
    'MetricsProvider',
    'PsutilMetricsProvider',
    'ResourceSample',
    'format_bytes',
]
