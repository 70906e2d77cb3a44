"""
Property definitions: create, ready, update, destroy.

Readiness of a definition is independent of any profile's value state. When a
Property becomes ready every live profile gets a pending row for it.
"""

from typing import Any, Dict, Iterable, List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, object_session

from core.exceptions import ConflictError, NotFoundError, ValidationError
from core.state_machine import Transition, ensure_unlocked, transition
from models import (
    PROPERTY_TYPES,
    Destination,
    Group,
    Profile,
    ProfileProperty,
    Property,
    Source,
    utcnow,
)
from services import profiles as profile_service
from services.option_templates import collect_template_keys
from services.property_resolver import ensure_no_dependency_cycle, property_dependencies

logger = logging.getLogger(__name__)


def validate_property_options(prop: Property) -> None:
    if prop.type not in PROPERTY_TYPES:
        raise ValidationError(f"{prop.type} is not a valid property type", field="type")
    if prop.unique and prop.is_array:
        raise ValidationError(f"unique property {prop.key} cannot be an array", field="unique")
    property_dependencies(object_session(prop), prop)


PROPERTY_TRANSITIONS = [
    Transition("draft", "ready", [validate_property_options, ensure_no_dependency_cycle]),
    Transition("draft", "deleted"),
    Transition("ready", "deleted"),
    Transition("deleted", "ready", [validate_property_options, ensure_no_dependency_cycle]),
]


def get_property(db: Session, property_id: str) -> Property:
    prop = db.get(Property, property_id)
    if prop is None:
        raise NotFoundError("property", property_id)
    return prop


def create_property(
    db: Session,
    source: Source,
    key: str,
    type: str = "string",
    is_array: bool = False,
    unique: bool = False,
    options: Optional[Dict[str, Any]] = None,
    filters: Optional[List[Any]] = None,
) -> Property:
    if not key or key.startswith("_"):
        raise ValidationError(f"{key!r} is not a valid property key", field="key")
    if type not in PROPERTY_TYPES:
        raise ValidationError(f"{type} is not a valid property type", field="type")
    if unique and is_array:
        raise ValidationError(f"unique property {key} cannot be an array", field="unique")
    ensure_unlocked(source)
    if source.state == "deleted":
        raise ValidationError(f"source {source.id} is deleted")
    if db.query(Property.id).filter(Property.key == key).first():
        raise ConflictError(f"a property with key {key} already exists")

    prop = Property(
        source_id=source.id,
        key=key,
        type=type,
        is_array=is_array,
        unique=unique,
        options=options or {},
        filters=filters or [],
        directly_mapped=key in set((source.mapping or {}).values()),
    )
    prop.source = source
    transition(prop, PROPERTY_TRANSITIONS, "draft")
    db.add(prop)
    db.flush()
    return prop


def make_property_ready(db: Session, prop: Property) -> int:
    """Ready the definition and give every live profile a pending row. Returns rows created."""
    ensure_unlocked(prop)
    transition(prop, PROPERTY_TRANSITIONS, "ready")
    db.flush()

    have_rows = {
        pid for (pid,) in db.query(ProfileProperty.profile_id).filter(ProfileProperty.property_id == prop.id).distinct()
    }
    now = utcnow()
    created = 0
    for profile in db.query(Profile).filter(Profile.destroyed_at.is_(None)):
        if profile.id in have_rows:
            continue
        db.add(ProfileProperty(
            profile_id=profile.id,
            property_id=prop.id,
            position=0,
            unique=prop.unique,
            state="pending",
            state_changed_at=now,
            value_changed_at=now,
        ))
        if profile.state == "ready":
            transition(profile, profile_service.PROFILE_TRANSITIONS, "pending")
        created += 1
    db.flush()
    logger.info(f"Property {prop.key} is ready; {created} profiles pending its value")
    return created


def update_property(
    db: Session,
    prop: Property,
    options: Optional[Dict[str, Any]] = None,
    filters: Optional[List[Any]] = None,
    unique: Optional[bool] = None,
) -> Property:
    """Changing how a value is computed sends every profile's value back to pending."""
    ensure_unlocked(prop)
    recompute = False
    if options is not None and options != prop.options:
        prop.options = options
        recompute = True
    if filters is not None and filters != prop.filters:
        prop.filters = filters
        recompute = True
    if unique is not None and unique != prop.unique:
        if unique and prop.is_array:
            raise ValidationError(f"unique property {prop.key} cannot be an array", field="unique")
        prop.unique = unique
        db.query(ProfileProperty).filter(ProfileProperty.property_id == prop.id).update(
            {"unique": unique}, synchronize_session=False
        )

    if prop.state == "ready":
        validate_property_options(prop)
        ensure_no_dependency_cycle(prop)
    db.flush()

    if recompute and prop.state == "ready":
        mark_property_pending(db, prop)
    return prop


def mark_property_pending(db: Session, prop: Property) -> int:
    now = utcnow()
    count = (
        db.query(ProfileProperty)
        .filter(ProfileProperty.property_id == prop.id)
        .update(
            {"state": "pending", "state_changed_at": now, "started_at": None, "failed_at": None, "error_message": None},
            synchronize_session=False,
        )
    )
    db.query(Profile).filter(
        Profile.state == "ready",
        Profile.id.in_(select(ProfileProperty.profile_id).where(ProfileProperty.property_id == prop.id)),
    ).update({"state": "pending"}, synchronize_session=False)
    db.expire_all()
    return count


def ensure_property_not_in_use(db: Session, prop: Property, exclude_source_ids: Iterable[str] = ()) -> None:
    excluded = set(exclude_source_ids)
    for source in db.query(Source).filter(Source.id != prop.source_id):
        if source.id not in excluded and prop.key in (source.mapping or {}).values():
            raise ConflictError(f"cannot delete property {prop.key}, source {source.id} relies on it")

    for group in db.query(Group).filter(Group.state != "deleted"):
        if any(rule.get("key") == prop.key for rule in group.rules or []):
            raise ConflictError(f"cannot delete property {prop.key}, group {group.name} uses it in a rule")

    for destination in db.query(Destination).filter(Destination.state != "deleted"):
        if prop.key in (destination.mapping or {}).values():
            raise ConflictError(f"cannot delete property {prop.key}, destination {destination.name} maps it")

    for other in db.query(Property).filter(Property.id != prop.id, Property.state != "deleted"):
        if other.source_id in excluded:
            continue
        if prop.key in collect_template_keys(other.options, other.filters):
            raise ConflictError(f"cannot delete property {prop.key}, property {other.key} depends on it")


def destroy_property(db: Session, prop: Property) -> None:
    ensure_unlocked(prop)
    if prop.directly_mapped:
        raise ConflictError(f"cannot delete property {prop.key}, it is the mapped property of its source")
    ensure_property_not_in_use(db, prop)
    db.query(ProfileProperty).filter(ProfileProperty.property_id == prop.id).delete(synchronize_session=False)
    db.delete(prop)
    db.flush()
    logger.info(f"Destroyed property {prop.key}")
