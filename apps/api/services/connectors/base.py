"""
Base classes for connectors.

An external system is described by a `ConnectorApp` (credentials, parallelism)
and one or more `Connection`s bound to it, each either importing (Sources) or
exporting (Destinations).

Connections are capability sets: a connection implements only the methods its
system supports, and the engine checks for them with `has_method` rather than
by type. Recognised methods (all keyword-only):

Import side
    source_preview(app_options, source_options) -> [ {column: value} ]
    source_connection_options(app_options, source_options)
        -> {option_key: {"type": "list" | "typeahead", "options": [...]}}
    profiles(app_options, source_options, schedule_options, high_water_mark, limit) -> ProfilesPage
    profile_property(app_options, source_options, source_mapping, property_key,
                     property_options, property_filters, profile_id, profile_properties)
        -> value | [values] | None
    profile_properties(app_options, source_options, source_mapping, property_key,
                       property_options, property_filters, profile_ids, profiles_properties)
        -> {profile_id: [values]}

Export side
    export_profile(app_options, destination_options, export) -> ExportProfileResponse
    export_profiles(app_options, destination_options, exports) -> ExportProfilesResponse
    process_exported_profiles(app_options, destination_options, remote_key, exports)
        -> ExportProfilesResponse

Either side
    validate_options(app_options, options) -> None (raise to reject)

Apps may additionally implement `test(app_options)` and `parallelism(app_options) -> int`.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List


class ConnectionDirection(str, Enum):
    IMPORT = "import"
    EXPORT = "export"


@dataclass(frozen=True)
class ConnectionOption:
    key: str
    required: bool = False
    description: str = ""


def has_method(connector: Any, method: str) -> bool:
    return callable(getattr(connector, method, None))


def missing_required_options(declared: List[ConnectionOption], options: Dict[str, Any]) -> List[str]:
    return [
        o.key for o in declared
        if o.required and (options.get(o.key) is None or options.get(o.key) == "")
    ]


class ConnectorApp(ABC):
    """An external system type (a database, a CRM, ...)."""

    options: List[ConnectionOption] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique app type name, e.g. 'postgres'."""
        pass


class Connection(ABC):
    """A Source or Destination type bound to an app type."""

    options: List[ConnectionOption] = []
    # Sources whose rows already carry profile identity need no column mapping
    skip_source_mapping: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique connection name, e.g. 'postgres-table-import'."""
        pass

    @property
    @abstractmethod
    def app(self) -> str:
        """Name of the ConnectorApp this connection belongs to."""
        pass

    @property
    @abstractmethod
    def direction(self) -> ConnectionDirection:
        pass
