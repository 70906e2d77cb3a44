"""
Connectors Module

Contract between the sync engine and the pluggable connectors that read from
Sources and write to Destinations:
1. Capability-based base classes
2. Explicit registry, frozen after startup
"""

from .base import (
    ConnectionDirection,
    ConnectionOption,
    Connection,
    ConnectorApp,
    has_method,
    missing_required_options,
)
from .registry import ConnectorRegistry, get_default_registry, set_default_registry

__all__ = [
    'ConnectionDirection',
    'ConnectionOption',
    'Connection',
    'ConnectorApp',
    'has_method',
    'missing_required_options',
    'ConnectorRegistry',
    'get_default_registry',
    'set_default_registry',
]
