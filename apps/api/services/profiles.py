"""
Profile and ProfileProperty operations.

A Profile owns one ProfileProperty row per (Property, array position). Rows
start `pending` and become `ready` once a value (or an explicit "no value")
has been resolved; the Profile itself can only become `ready` when every
attached row is ready.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session, object_session

from core.exceptions import ConflictError, NotFoundError, ValidationError
from core.state_machine import Transition, transition
from models import GroupMember, Profile, ProfileProperty, Property, utcnow
from services.property_values import from_raw, to_raw


def validate_profile_properties_are_ready(profile: Profile) -> None:
    db = object_session(profile)
    row = (
        db.query(Property.key)
        .join(ProfileProperty, ProfileProperty.property_id == Property.id)
        .filter(ProfileProperty.profile_id == profile.id, ProfileProperty.state != "ready")
        .first()
    )
    if row is not None:
        raise ValidationError(
            f"cannot transition profile {profile.id} to ready state as not all properties are ready ({row.key})"
        )


PROFILE_TRANSITIONS = [
    Transition("draft", "pending"),
    Transition("draft", "ready"),
    Transition("pending", "ready", [validate_profile_properties_are_ready]),
    Transition("ready", "pending"),
]


def get_profile(db: Session, profile_id: str) -> Profile:
    profile = db.get(Profile, profile_id)
    if profile is None:
        raise NotFoundError("profile", profile_id)
    return profile


def get_property(db: Session, key_or_id: str) -> Property:
    prop = db.get(Property, key_or_id)
    if prop is None:
        prop = db.query(Property).filter(Property.key == key_or_id).first()
    if prop is None:
        raise NotFoundError("property", key_or_id)
    return prop


def create_profile(db: Session) -> Profile:
    profile = Profile()
    transition(profile, PROFILE_TRANSITIONS, "pending")
    db.add(profile)
    db.flush()
    build_null_properties(db, profile)
    return profile


def build_null_properties(db: Session, profile: Profile, state: str = "pending") -> int:
    """Create an empty row for every ready Property the profile has no row for yet."""
    existing = {
        pid for (pid,) in db.query(ProfileProperty.property_id)
        .filter(ProfileProperty.profile_id == profile.id)
        .distinct()
    }
    now = utcnow()
    created = 0
    for prop in db.query(Property).filter(Property.state == "ready"):
        if prop.id in existing:
            continue
        db.add(ProfileProperty(
            profile_id=profile.id,
            property_id=prop.id,
            position=0,
            raw_value=None,
            unique=prop.unique,
            state=state,
            state_changed_at=now,
            value_changed_at=now,
        ))
        created += 1
    db.flush()
    return created


def get_properties(db: Session, profile: Profile) -> Dict[str, Dict[str, Any]]:
    """
    {key: {property_id, type, is_array, unique, state, values, raw_values, ...}}

    A property's state is `pending` if any of its rows is pending.
    """
    rows = (
        db.query(ProfileProperty, Property)
        .join(Property, ProfileProperty.property_id == Property.id)
        .filter(ProfileProperty.profile_id == profile.id)
        .order_by(Property.key, ProfileProperty.position)
        .all()
    )
    properties: Dict[str, Dict[str, Any]] = {}
    for row, prop in rows:
        entry = properties.setdefault(prop.key, {
            "property_id": prop.id,
            "type": prop.type,
            "is_array": prop.is_array,
            "unique": prop.unique,
            "directly_mapped": prop.directly_mapped,
            "state": "ready",
            "values": [],
            "raw_values": [],
            "state_changed_at": row.state_changed_at,
            "value_changed_at": row.value_changed_at,
            "confirmed_at": row.confirmed_at,
        })
        if row.state != "ready":
            entry["state"] = row.state
        if row.raw_value is not None:
            entry["raw_values"].append(row.raw_value)
            entry["values"].append(from_raw(prop.type, row.raw_value))
    return properties


def simplified_properties(db: Session, profile: Profile) -> Dict[str, List[Any]]:
    return {k: v["values"] for k, v in get_properties(db, profile).items()}


def _ensure_unique_value(db: Session, profile: Profile, prop: Property, raw: str) -> None:
    other = (
        db.query(ProfileProperty.profile_id)
        .filter(
            ProfileProperty.property_id == prop.id,
            ProfileProperty.raw_value == raw,
            ProfileProperty.profile_id != profile.id,
        )
        .first()
    )
    if other is not None:
        raise ConflictError(
            f"another profile already has the value {raw} for unique property {prop.key}"
        )


def set_profile_property_values(
    db: Session,
    profile: Profile,
    prop: Property,
    values: Iterable[Any],
    now: Optional[datetime] = None,
) -> bool:
    """
    Replace the profile's values for one property and mark its rows ready.

    An empty `values` leaves a single ready row with a cleared raw value
    ("ready but absent"). Returns True if any raw value changed.
    """
    now = now or utcnow()
    raws = [r for r in (to_raw(prop.type, v) for v in values) if r is not None]
    if len(raws) > 1 and not prop.is_array:
        raise ValidationError(f"property {prop.key} is not an array and cannot hold {len(raws)} values")
    if prop.unique:
        for raw in raws:
            _ensure_unique_value(db, profile, prop, raw)
    if not raws:
        raws = [None]

    existing = (
        db.query(ProfileProperty)
        .filter(ProfileProperty.profile_id == profile.id, ProfileProperty.property_id == prop.id)
        .order_by(ProfileProperty.position)
        .with_for_update()
        .all()
    )

    changed = False
    for position in range(max(len(existing), len(raws))):
        if position >= len(raws):
            db.delete(existing[position])
            changed = True
            continue
        raw = raws[position]
        if position < len(existing):
            row = existing[position]
        else:
            row = ProfileProperty(
                profile_id=profile.id,
                property_id=prop.id,
                position=position,
                unique=prop.unique,
                state="pending",
                state_changed_at=now,
                value_changed_at=now,
            )
            db.add(row)
            changed = True
        if row.raw_value != raw:
            row.raw_value = raw
            row.value_changed_at = now
            changed = True
        if row.state != "ready":
            row.state = "ready"
            row.state_changed_at = now
        row.confirmed_at = now
        row.started_at = None
        row.failed_at = None
        row.error_message = None
    db.flush()
    return changed


def add_or_update_properties(db: Session, profile: Profile, values: Dict[str, Any]) -> bool:
    """Set several properties at once: {key or property id: value | [values]}."""
    changed = False
    now = utcnow()
    for key, value in values.items():
        prop = get_property(db, key)
        value_list = value if isinstance(value, (list, tuple)) else [value]
        if set_profile_property_values(db, profile, prop, value_list, now=now):
            changed = True
    if changed:
        profile.updated_at = now
    return changed


def remove_property(db: Session, profile: Profile, key: str) -> int:
    prop = get_property(db, key)
    return (
        db.query(ProfileProperty)
        .filter(ProfileProperty.profile_id == profile.id, ProfileProperty.property_id == prop.id)
        .delete(synchronize_session=False)
    )


def mark_pending(db: Session, profile: Profile, property_ids: Optional[Iterable[str]] = None) -> int:
    """Send rows (all, or the given properties') back to pending so they are re-resolved."""
    now = utcnow()
    query = db.query(ProfileProperty).filter(ProfileProperty.profile_id == profile.id)
    if property_ids is not None:
        query = query.filter(ProfileProperty.property_id.in_(list(property_ids)))
    rows = query.with_for_update().all()
    for row in rows:
        row.state = "pending"
        row.state_changed_at = now
        row.started_at = None
        row.failed_at = None
        row.error_message = None
    if rows and profile.state != "pending":
        transition(profile, PROFILE_TRANSITIONS, "pending")
    db.flush()
    return len(rows)


def pending_property_ids(db: Session, profile: Profile) -> List[str]:
    return [
        pid for (pid,) in db.query(ProfileProperty.property_id)
        .filter(ProfileProperty.profile_id == profile.id, ProfileProperty.state == "pending")
        .distinct()
    ]


def mark_ready_if_complete(db: Session, profile: Profile) -> bool:
    """Advance a pending profile to ready when nothing is pending; never raises for pending rows."""
    if profile.state == "ready":
        return True
    if pending_property_ids(db, profile):
        return False
    transition(profile, PROFILE_TRANSITIONS, "ready")
    db.flush()
    return True


def group_ids_for(db: Session, profile: Profile) -> Set[str]:
    return {
        gid for (gid,) in db.query(GroupMember.group_id).filter(GroupMember.profile_id == profile.id)
    }


def find_profile_by_unique_properties(db: Session, values: Dict[str, Any]) -> Optional[Profile]:
    for key, value in values.items():
        prop = db.query(Property).filter(Property.key == key, Property.unique.is_(True)).first()
        if prop is None:
            continue
        for v in (value if isinstance(value, (list, tuple)) else [value]):
            raw = to_raw(prop.type, v)
            if raw is None:
                continue
            profile_id = db.execute(
                select(ProfileProperty.profile_id).where(
                    ProfileProperty.property_id == prop.id,
                    ProfileProperty.raw_value == raw,
                )
            ).scalar()
            if profile_id:
                return db.get(Profile, profile_id)
    return None


def find_or_create_by_unique_properties(db: Session, values: Dict[str, Any]) -> Tuple[Profile, bool]:
    unique_keys = {
        key for (key,) in db.query(Property.key).filter(
            Property.key.in_(list(values.keys())), Property.unique.is_(True)
        )
    }
    if not any(values.get(k) not in (None, "", []) for k in unique_keys):
        raise ValidationError(
            f"there are no unique profile properties provided in {sorted(values.keys())}"
        )
    profile = find_profile_by_unique_properties(db, values)
    if profile is not None:
        return profile, False
    profile = create_profile(db)
    add_or_update_properties(db, profile, {k: values[k] for k in unique_keys if k in values})
    return profile, True
