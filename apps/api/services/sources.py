"""
Apps, Sources and Schedules.

A Source binds an import Connection to a configured App. Its `mapping`
(`{source column: property key}`) names the column that identifies a profile;
the Property with that key is "directly mapped" and lives and dies with the
Source.
"""

from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from core.exceptions import (
    ConflictError,
    ConnectorCapabilityError,
    NotFoundError,
    ValidationError,
)
from core.state_machine import Transition, ensure_unlocked, transition
from models import App, Import, ProfileProperty, Property, Run, Schedule, Source
from services.connectors import (
    Connection,
    ConnectionDirection,
    ConnectorRegistry,
    has_method,
    missing_required_options,
)
from services.properties import create_property, ensure_property_not_in_use, make_property_ready

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Apps
# ---------------------------------------------------------------------------

def app_transitions(registry: ConnectorRegistry) -> List[Transition]:
    def options_valid(app: App) -> None:
        validate_app_options(registry, app)

    return [Transition("draft", "ready", [options_valid])]


def get_app(db: Session, app_id: str) -> App:
    app = db.get(App, app_id)
    if app is None:
        raise NotFoundError("app", app_id)
    return app


def validate_app_options(registry: ConnectorRegistry, app: App, options: Optional[Dict[str, Any]] = None) -> None:
    connector = registry.get_app(app.type)
    options = app.options if options is None else options
    missing = missing_required_options(connector.options, options)
    if missing:
        raise ValidationError(f"app {app.id} is missing required options: {', '.join(missing)}", field="options")


def create_app(db: Session, registry: ConnectorRegistry, type: str, name: str = "", options: Optional[Dict[str, Any]] = None) -> App:
    registry.get_app(type)
    app = App(type=type, name=name, options=options or {})
    transition(app, app_transitions(registry), "draft")
    db.add(app)
    db.flush()
    return app


def make_app_ready(db: Session, registry: ConnectorRegistry, app: App) -> App:
    transition(app, app_transitions(registry), "ready")
    db.flush()
    return app


def test_app(registry: ConnectorRegistry, app: App) -> Dict[str, Any]:
    """Run the connector's connection test, if it has one."""
    connector = registry.get_app(app.type)
    if not has_method(connector, "test"):
        return {"success": True, "message": None}
    try:
        result = connector.test(app_options=app.options)
    except Exception as e:
        logger.warning(f"App {app.id} test failed: {e}")
        return {"success": False, "message": str(e)}
    return {"success": bool(result), "message": None}


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

def source_connection(registry: ConnectorRegistry, source: Source) -> Connection:
    return registry.get_connection(source.type)


def validate_source_options(registry: ConnectorRegistry, source: Source, options: Optional[Dict[str, Any]] = None) -> None:
    connection = source_connection(registry, source)
    options = source.options if options is None else options
    missing = missing_required_options(connection.options, options)
    if missing:
        raise ValidationError(
            f"source {source.id} is missing required options: {', '.join(missing)}", field="options"
        )
    if has_method(connection, "validate_options"):
        connection.validate_options(app_options=source.app.options, options=options)


def source_preview_available(registry: ConnectorRegistry, source: Source) -> bool:
    return has_method(source_connection(registry, source), "source_preview")


def validate_source_mapping(registry: ConnectorRegistry, source: Source) -> None:
    """A previewable Source must map exactly one column, unless its connection skips mapping."""
    if not source_preview_available(registry, source):
        return
    if source_connection(registry, source).skip_source_mapping:
        return
    if len(source.mapping or {}) != 1:
        raise ValidationError("mapping not set", field="mapping")


def source_transitions(registry: ConnectorRegistry) -> List[Transition]:
    def options_valid(source: Source) -> None:
        validate_source_options(registry, source)

    def mapping_valid(source: Source) -> None:
        validate_source_mapping(registry, source)

    return [
        Transition("draft", "ready", [options_valid, mapping_valid]),
        Transition("draft", "deleted"),
        Transition("ready", "deleted"),
        Transition("deleted", "ready", [options_valid, mapping_valid]),
    ]


def get_source(db: Session, source_id: str) -> Source:
    source = db.get(Source, source_id)
    if source is None:
        raise NotFoundError("source", source_id)
    return source


def _ensure_unique_source_name(db: Session, source: Source) -> None:
    if not source.name:
        return
    clash = (
        db.query(Source.id)
        .filter(Source.name == source.name, Source.state != "draft", Source.id != source.id)
        .first()
    )
    if clash:
        raise ConflictError(f'name "{source.name}" is already in use')


def determine_directly_mapped(source: Source) -> None:
    mapped_keys = set((source.mapping or {}).values())
    for prop in source.properties:
        prop.directly_mapped = prop.key in mapped_keys


def create_source(
    db: Session,
    registry: ConnectorRegistry,
    app_id: str,
    type: str,
    name: str = "",
    options: Optional[Dict[str, Any]] = None,
    mapping: Optional[Dict[str, str]] = None,
) -> Source:
    app = get_app(db, app_id)
    if app.state != "ready":
        raise ValidationError(f"app {app.id} is not ready")
    connection = registry.get_connection(type)
    if connection.direction != ConnectionDirection.IMPORT:
        raise ValidationError(f"connection {type} cannot be used as a source", field="type")
    if connection.app != app.type:
        raise ValidationError(f"connection {type} does not belong to app type {app.type}", field="type")

    source = Source(app_id=app.id, type=type, name=name, options=options or {}, mapping=mapping or {})
    source.app = app
    transition(source, source_transitions(registry), "draft")
    db.add(source)
    db.flush()
    logger.info(f"Created source {source.id} ({type}) on app {app.id}")
    return source


def update_source(
    db: Session,
    registry: ConnectorRegistry,
    source: Source,
    name: Optional[str] = None,
    options: Optional[Dict[str, Any]] = None,
    mapping: Optional[Dict[str, str]] = None,
    state: Optional[str] = None,
) -> Source:
    ensure_unlocked(source)
    if name is not None:
        source.name = name
    if options is not None:
        if source.state != "draft":
            validate_source_options(registry, source, options)
        source.options = options
    if mapping is not None:
        source.mapping = mapping
        determine_directly_mapped(source)
    if state is not None:
        transition(source, source_transitions(registry), state)
    if source.state != "draft":
        _ensure_unique_source_name(db, source)
    db.flush()
    return source


def source_preview(registry: ConnectorRegistry, source: Source, options: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    connection = source_connection(registry, source)
    if not has_method(connection, "source_preview"):
        raise ConnectorCapabilityError(connection.name, "source_preview")
    return connection.source_preview(
        app_options=source.app.options,
        source_options=source.options if options is None else options,
    )


def source_connection_options(
    registry: ConnectorRegistry, source: Source, options: Optional[Dict[str, Any]] = None
) -> Dict[str, Dict[str, Any]]:
    """
    Choices the connection offers for each of its options, given the options so far.

    e.g. {"table": {"type": "list", "options": ["users", "orders"]}}; a connection
    without `source_connection_options` offers none.
    """
    connection = source_connection(registry, source)
    if not has_method(connection, "source_connection_options"):
        return {}
    return connection.source_connection_options(
        app_options=source.app.options,
        source_options=source.options if options is None else options,
    ) or {}


def bootstrap_unique_property(
    db: Session, registry: ConnectorRegistry, source: Source, key: str, type: str, mapped_column: str
) -> Property:
    """Create the unique, directly mapped identity Property before the mapping is set."""
    ensure_unlocked(source)
    prop = create_property(db, source, key=key, type=type, unique=True, options={"column": mapped_column})
    source.mapping = {mapped_column: key}
    determine_directly_mapped(source)
    make_property_ready(db, prop)
    return prop


def ensure_source_not_in_use(db: Session, source: Source) -> None:
    if db.query(Schedule.id).filter(Schedule.source_id == source.id).first():
        raise ConflictError("cannot delete a source that has a schedule")
    in_use = (
        db.query(Property.id)
        .filter(Property.source_id == source.id, Property.directly_mapped.is_(False))
        .first()
    )
    if in_use:
        raise ConflictError("cannot delete a source that has a property")


def destroy_source(db: Session, source: Source) -> None:
    """Delete a Source and its directly mapped Property."""
    ensure_unlocked(source)
    ensure_source_not_in_use(db, source)
    for prop in db.query(Property).filter(Property.source_id == source.id).all():
        ensure_property_not_in_use(db, prop, exclude_source_ids=[source.id])
        db.query(ProfileProperty).filter(ProfileProperty.property_id == prop.id).delete(synchronize_session=False)
        db.delete(prop)
    db.delete(source)
    db.flush()
    logger.info(f"Destroyed source {source.id}")


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------

SCHEDULE_TRANSITIONS = [
    Transition("draft", "ready"),
    Transition("ready", "draft"),
]


def get_schedule(db: Session, schedule_id: str) -> Schedule:
    schedule = db.get(Schedule, schedule_id)
    if schedule is None:
        raise NotFoundError("schedule", schedule_id)
    return schedule


def create_schedule(
    db: Session,
    registry: ConnectorRegistry,
    source: Source,
    name: str = "",
    options: Optional[Dict[str, Any]] = None,
    recurring: bool = False,
    recurring_frequency_s: Optional[int] = None,
) -> Schedule:
    connection = source_connection(registry, source)
    if not has_method(connection, "profiles"):
        raise ConnectorCapabilityError(connection.name, "profiles")
    if db.query(Schedule.id).filter(Schedule.source_id == source.id).first():
        raise ConflictError(f"source {source.id} already has a schedule")
    if recurring and not recurring_frequency_s:
        raise ValidationError("recurring schedules need a recurring frequency", field="recurring_frequency_s")

    schedule = Schedule(
        source_id=source.id,
        name=name,
        options=options or {},
        recurring=recurring,
        recurring_frequency_s=recurring_frequency_s,
    )
    transition(schedule, SCHEDULE_TRANSITIONS, "ready")
    db.add(schedule)
    db.flush()
    return schedule


def destroy_schedule(db: Session, schedule: Schedule) -> None:
    ensure_unlocked(schedule)
    run_ids = [rid for (rid,) in db.query(Run.id).filter(Run.schedule_id == schedule.id)]
    if run_ids:
        db.query(Import).filter(Import.run_id.in_(run_ids)).update({"run_id": None}, synchronize_session=False)
    db.query(Run).filter(Run.schedule_id == schedule.id).delete(synchronize_session=False)
    db.delete(schedule)
    db.flush()
