"""
Connection health monitoring.

Classifies network quality from periodic probes, independently of the
event stream.
"""

from .monitor import ConnectionHealthMonitor, ConnectionStatus, is_connectivity_error

__all__ = [
    "ConnectionHealthMonitor",
    "ConnectionStatus",
    "is_connectivity_error",
]
