"""
Connector Registry

Explicit registry of connector apps and connections, keyed by type name.
One registry is built per process at startup (from CONNECTOR_MODULES), frozen,
and handed to the services that need connectors.
"""

from importlib import import_module
from typing import Dict, Iterable, List, Optional
import logging

from core.exceptions import ConflictError, NotFoundError
from .base import Connection, ConnectionDirection, ConnectorApp

logger = logging.getLogger(__name__)


class ConnectorRegistry:
    """
    Registry for connector apps and connections.

    Usage:
        registry = ConnectorRegistry()
        registry.register_app(PostgresApp())
        registry.register_connection(PostgresTableImport())
        registry.freeze()

        connection = registry.get_connection("postgres-table-import")
    """

    def __init__(self):
        self._apps: Dict[str, ConnectorApp] = {}
        self._connections: Dict[str, Connection] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _ensure_mutable(self):
        if self._frozen:
            raise RuntimeError("connector registry is frozen; register connectors at startup")

    def register_app(self, app: ConnectorApp) -> ConnectorApp:
        self._ensure_mutable()
        if app.name in self._apps:
            raise ConflictError(f"app type {app.name} is already registered")
        self._apps[app.name] = app
        logger.info(f"Registered connector app: {app.name}")
        return app

    def register_connection(self, connection: Connection) -> Connection:
        self._ensure_mutable()
        if connection.name in self._connections:
            raise ConflictError(f"connection {connection.name} is already registered")
        if connection.app not in self._apps:
            raise NotFoundError("app type", connection.app)
        self._connections[connection.name] = connection
        logger.info(
            f"Registered connection: {connection.name} ({connection.direction.value}, app={connection.app})"
        )
        return connection

    def freeze(self) -> "ConnectorRegistry":
        self._frozen = True
        return self

    def get_app(self, name: str) -> ConnectorApp:
        app = self._apps.get(name)
        if app is None:
            raise NotFoundError("app type", name)
        return app

    def get_connection(self, name: str) -> Connection:
        connection = self._connections.get(name)
        if connection is None:
            raise NotFoundError("connection", name)
        return connection

    def connections_for_app(
        self, app_name: str, direction: Optional[ConnectionDirection] = None
    ) -> List[Connection]:
        return [
            c for c in self._connections.values()
            if c.app == app_name and (direction is None or c.direction == direction)
        ]

    def list_connections(self) -> List[Dict[str, str]]:
        return [
            {"name": c.name, "app": c.app, "direction": c.direction.value}
            for c in self._connections.values()
        ]

    @classmethod
    def from_modules(cls, module_paths: Iterable[str]) -> "ConnectorRegistry":
        """Import each module and call its `register(registry)`, then freeze."""
        registry = cls()
        for path in module_paths:
            module = import_module(path)
            module.register(registry)
        logger.info(
            f"Connector registry initialized with {len(registry._apps)} apps and "
            f"{len(registry._connections)} connections"
        )
        return registry.freeze()


_default_registry: Optional[ConnectorRegistry] = None


def get_default_registry() -> ConnectorRegistry:
    """The process-wide registry built from settings (workers)."""
    global _default_registry
    if _default_registry is None:
        from core.config import settings

        _default_registry = ConnectorRegistry.from_modules(settings.connector_modules)
    return _default_registry


def set_default_registry(registry: Optional[ConnectorRegistry]) -> None:
    global _default_registry
    _default_registry = registry
