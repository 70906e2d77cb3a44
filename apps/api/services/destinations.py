"""
Destinations: an export Connection bound to an App, receiving the members of
one tracked Group.
"""

from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session, object_session

from core.exceptions import NotFoundError, ValidationError
from core.state_machine import Transition, ensure_unlocked, transition
from models import Destination, Export, Group, GroupMember, Property, utcnow
from services.connectors import ConnectionDirection, ConnectorRegistry, has_method, missing_required_options
from services.sources import get_app

logger = logging.getLogger(__name__)


def validate_destination_options(registry: ConnectorRegistry, destination: Destination, options: Optional[Dict[str, Any]] = None) -> None:
    connection = registry.get_connection(destination.type)
    options = destination.options if options is None else options
    missing = missing_required_options(connection.options, options)
    if missing:
        raise ValidationError(
            f"destination {destination.id} is missing required options: {', '.join(missing)}", field="options"
        )
    if has_method(connection, "validate_options"):
        connection.validate_options(app_options=destination.app.options, options=options)


def validate_destination_mapping(destination: Destination) -> None:
    db = object_session(destination)
    keys = set((destination.mapping or {}).values())
    if not keys:
        return
    known = {k for (k,) in db.query(Property.key).filter(Property.key.in_(list(keys)), Property.state == "ready")}
    missing = keys - known
    if missing:
        raise ValidationError(
            f"destination {destination.id} maps unknown properties: {', '.join(sorted(missing))}", field="mapping"
        )


def destination_transitions(registry: ConnectorRegistry) -> List[Transition]:
    def options_valid(destination: Destination) -> None:
        validate_destination_options(registry, destination)

    return [
        Transition("draft", "ready", [options_valid, validate_destination_mapping]),
        Transition("draft", "deleted"),
        Transition("ready", "deleted"),
        Transition("deleted", "ready", [options_valid, validate_destination_mapping]),
    ]


def get_destination(db: Session, destination_id: str) -> Destination:
    destination = db.get(Destination, destination_id)
    if destination is None:
        raise NotFoundError("destination", destination_id)
    return destination


def _ensure_groups_exist(db: Session, group_id: Optional[str], group_mappings: Dict[str, str]) -> None:
    ids = set(group_mappings or {})
    if group_id:
        ids.add(group_id)
    for gid in ids:
        if db.get(Group, gid) is None:
            raise NotFoundError("group", gid)


def create_destination(
    db: Session,
    registry: ConnectorRegistry,
    app_id: str,
    type: str,
    name: str = "",
    options: Optional[Dict[str, Any]] = None,
    mapping: Optional[Dict[str, str]] = None,
    group_id: Optional[str] = None,
    group_mappings: Optional[Dict[str, str]] = None,
    sync_mode: str = "sync",
) -> Destination:
    app = get_app(db, app_id)
    if app.state != "ready":
        raise ValidationError(f"app {app.id} is not ready")
    connection = registry.get_connection(type)
    if connection.direction != ConnectionDirection.EXPORT:
        raise ValidationError(f"connection {type} cannot be used as a destination", field="type")
    if connection.app != app.type:
        raise ValidationError(f"connection {type} does not belong to app type {app.type}", field="type")
    _ensure_groups_exist(db, group_id, group_mappings or {})

    destination = Destination(
        app_id=app.id,
        type=type,
        name=name,
        options=options or {},
        mapping=mapping or {},
        group_id=group_id,
        group_mappings=group_mappings or {},
        sync_mode=sync_mode,
    )
    destination.app = app
    transition(destination, destination_transitions(registry), "draft")
    db.add(destination)
    db.flush()
    return destination


def update_destination(
    db: Session,
    registry: ConnectorRegistry,
    destination: Destination,
    options: Optional[Dict[str, Any]] = None,
    mapping: Optional[Dict[str, str]] = None,
    group_mappings: Optional[Dict[str, str]] = None,
    state: Optional[str] = None,
) -> Destination:
    ensure_unlocked(destination)
    if options is not None:
        destination.options = options
    if mapping is not None:
        destination.mapping = mapping
    if group_mappings is not None:
        _ensure_groups_exist(db, None, group_mappings)
        destination.group_mappings = group_mappings
    if state is not None:
        transition(destination, destination_transitions(registry), state)
    elif destination.state == "ready":
        validate_destination_options(registry, destination)
        validate_destination_mapping(destination)
    db.flush()
    return destination


def track_group(db: Session, destination: Destination, group_id: Optional[str]) -> List[str]:
    """
    Change the tracked group. Returns the profile ids whose exports need
    rebuilding (members of the old and new groups).
    """
    ensure_unlocked(destination)
    if group_id:
        _ensure_groups_exist(db, group_id, {})
    affected = set()
    for gid in {destination.group_id, group_id} - {None}:
        affected.update(pid for (pid,) in db.query(GroupMember.profile_id).filter(GroupMember.group_id == gid))
    destination.group_id = group_id
    db.flush()
    return sorted(affected)


def destroy_destination(db: Session, registry: ConnectorRegistry, destination: Destination) -> int:
    """Soft delete; exports not yet sent are dropped. Returns how many."""
    ensure_unlocked(destination)
    transition(destination, destination_transitions(registry), "deleted")
    dropped = (
        db.query(Export)
        .filter(Export.destination_id == destination.id, Export.state == "pending")
        .update({"state": "failed", "error_message": "destination deleted", "completed_at": utcnow()}, synchronize_session=False)
    )
    db.flush()
    logger.info(f"Destination {destination.id} deleted; {dropped} pending exports dropped")
    return dropped
