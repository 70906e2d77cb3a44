"""
Group membership: calculated groups are derived from their rules, manual groups
only change through explicit add/remove.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple
import logging

from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import ConflictError, NotFoundError, ValidationError
from core.state_machine import Transition, ensure_unlocked, transition
from models import Destination, Group, GroupMember, Profile, ProfileProperty, Property, as_utc, utcnow
from services import group_rules
from services.property_values import from_raw

logger = logging.getLogger(__name__)

GROUP_TRANSITIONS = [
    Transition("draft", "ready"),
    Transition("draft", "updating"),
    Transition("draft", "deleted"),
    Transition("ready", "updating"),
    Transition("updating", "ready"),
    Transition("ready", "deleted"),
    Transition("updating", "deleted"),
    Transition("deleted", "ready"),
]

ACTIVE_GROUP_STATES = ("ready", "updating")


def get_group(db: Session, group_id: str) -> Group:
    group = db.get(Group, group_id)
    if group is None:
        raise NotFoundError("group", group_id)
    return group


def property_types(db: Session) -> Dict[str, str]:
    return {key: ptype for key, ptype in db.query(Property.key, Property.type).filter(Property.state != "deleted")}


def rule_types(db: Session) -> Dict[str, str]:
    types = dict(group_rules.TOP_LEVEL_KEYS)
    types.update(property_types(db))
    return types


def create_group(
    db: Session,
    name: str,
    type: str,
    match_type: str = "all",
    rules: Optional[List[Any]] = None,
) -> Group:
    if type not in ("manual", "calculated"):
        raise ValidationError(f"{type} is not a valid group type", field="type")
    if match_type not in ("all", "any"):
        raise ValidationError(f"{match_type} is not a valid match type", field="match_type")
    if rules and type == "manual":
        raise ValidationError("manual groups cannot have rules", field="rules")
    if db.query(Group.id).filter(Group.name == name).first():
        raise ConflictError(f"a group named {name} already exists")

    validated = group_rules.validate_rules(rules or [], property_types(db))
    group = Group(
        name=name,
        type=type,
        match_type=match_type,
        rules=[r.model_dump(exclude_none=True) for r in validated],
    )
    transition(group, GROUP_TRANSITIONS, "ready")
    db.add(group)
    db.flush()
    logger.info(f"Created {type} group {group.id} ({name})")
    return group


def update_group(
    db: Session,
    group: Group,
    name: Optional[str] = None,
    match_type: Optional[str] = None,
    rules: Optional[List[Any]] = None,
) -> Group:
    ensure_unlocked(group)
    if name is not None and name != group.name:
        if db.query(Group.id).filter(Group.name == name, Group.id != group.id).first():
            raise ConflictError(f"a group named {name} already exists")
        group.name = name
    if match_type is not None:
        if match_type not in ("all", "any"):
            raise ValidationError(f"{match_type} is not a valid match type", field="match_type")
        group.match_type = match_type
    if rules is not None:
        if group.type == "manual":
            raise ValidationError("manual groups cannot have rules", field="rules")
        validated = group_rules.validate_rules(rules, property_types(db))
        group.rules = [r.model_dump(exclude_none=True) for r in validated]
    db.flush()
    return group


def profile_rule_values(db: Session, profiles: List[Profile]) -> Dict[str, Dict[str, List[Any]]]:
    """{profile_id: {key: [typed values]}} including the top-level keys."""
    values = {
        p.id: {
            "_profile_id": [p.id],
            "_created_at": [as_utc(p.created_at)],
            "_updated_at": [as_utc(p.updated_at)],
        }
        for p in profiles
    }
    if not values:
        return values
    rows = (
        db.query(ProfileProperty.profile_id, ProfileProperty.raw_value, Property.key, Property.type)
        .join(Property, ProfileProperty.property_id == Property.id)
        .filter(ProfileProperty.profile_id.in_(list(values.keys())))
        .order_by(ProfileProperty.profile_id, ProfileProperty.position)
    )
    for profile_id, raw, key, ptype in rows:
        bucket = values[profile_id].setdefault(key, [])
        if raw is not None:
            bucket.append(from_raw(ptype, raw))
    return values


def iter_profile_rule_values(db: Session, batch_size: Optional[int] = None) -> Iterator[Tuple[str, Dict[str, List[Any]]]]:
    """Every live (not being destroyed) profile, keyset-paged by id."""
    batch_size = batch_size or settings.PROFILE_PROPERTY_BATCH_SIZE
    last_id = ""
    while True:
        batch = (
            db.query(Profile)
            .filter(Profile.destroyed_at.is_(None), Profile.id > last_id)
            .order_by(Profile.id)
            .limit(batch_size)
            .all()
        )
        if not batch:
            return
        yield from profile_rule_values(db, batch).items()
        last_id = batch[-1].id


def count_potential_members(
    db: Session, rules: List[Any], match_type: str = "all", now: Optional[datetime] = None
) -> int:
    """Preview: how many profiles an unsaved rule set would match."""
    validated = group_rules.validate_rules(rules, property_types(db))
    types = rule_types(db)
    now = now or utcnow()
    return sum(
        1 for _, values in iter_profile_rule_values(db)
        if group_rules.profile_matches(validated, match_type, values, types, now)
    )


def count_component_members_from_rules(
    db: Session, group: Group, rules: Optional[List[Any]] = None, now: Optional[datetime] = None
) -> Dict[str, List[int]]:
    """
    Per-rule match counts and the cumulative funnel.

    component_counts[i] counts profiles matching rule i alone; funnel_counts[i]
    counts profiles matching rules 0..i combined with the group's match type.
    """
    if group.type != "calculated":
        raise ValidationError(f"group {group.name} is not a calculated group")
    validated = group_rules.validate_rules(group.rules if rules is None else rules, property_types(db))
    types = rule_types(db)
    now = now or utcnow()
    component_counts = [0] * len(validated)
    funnel_counts = [0] * len(validated)
    for _, values in iter_profile_rule_values(db):
        component, cumulative = group_rules.funnel(validated, group.match_type, values, types, now)
        for i, matched in enumerate(component):
            component_counts[i] += int(matched)
        for i, matched in enumerate(cumulative):
            funnel_counts[i] += int(matched)
    return {"component_counts": component_counts, "funnel_counts": funnel_counts}


def member_ids(db: Session, group: Group) -> Set[str]:
    return {pid for (pid,) in db.query(GroupMember.profile_id).filter(GroupMember.group_id == group.id)}


def run_group(db: Session, group: Group, now: Optional[datetime] = None) -> Dict[str, List[str]]:
    """Rebuild a calculated group's membership. Returns the added and removed profile ids."""
    if group.type != "calculated" or group.state not in ACTIVE_GROUP_STATES:
        logger.debug(f"Skipping run of group {group.id} ({group.type}, {group.state})")
        return {"added": [], "removed": []}

    now = now or utcnow()
    transition(group, GROUP_TRANSITIONS, "updating")
    db.flush()

    validated = [group_rules.normalize_rule(r) for r in group.rules]
    types = rule_types(db)
    matching = {
        pid for pid, values in iter_profile_rule_values(db)
        if group_rules.profile_matches(validated, group.match_type, values, types, now)
    }
    existing = member_ids(db, group)

    added = sorted(matching - existing)
    removed = sorted(existing - matching)
    for pid in added:
        db.add(GroupMember(profile_id=pid, group_id=group.id))
    if removed:
        db.query(GroupMember).filter(
            GroupMember.group_id == group.id, GroupMember.profile_id.in_(removed)
        ).delete(synchronize_session=False)

    group.calculated_at = now
    transition(group, GROUP_TRANSITIONS, "ready")
    db.flush()
    logger.info(f"Group {group.id} calculated: {len(added)} added, {len(removed)} removed, {len(matching)} members")
    return {"added": added, "removed": removed}


def calculate_memberships_for_profile(
    db: Session, profile: Profile, now: Optional[datetime] = None
) -> Tuple[Set[str], Set[str]]:
    """
    Re-evaluate every active calculated group for one profile.

    Returns (old group ids, new group ids); manual memberships carry over.
    """
    now = now or utcnow()
    old_ids = {gid for (gid,) in db.query(GroupMember.group_id).filter(GroupMember.profile_id == profile.id)}
    values = profile_rule_values(db, [profile])[profile.id]
    types = rule_types(db)

    new_ids = set(old_ids)
    groups = db.query(Group).filter(Group.type == "calculated", Group.state.in_(ACTIVE_GROUP_STATES)).all()
    for group in groups:
        rules = [group_rules.normalize_rule(r) for r in group.rules]
        matched = group_rules.profile_matches(rules, group.match_type, values, types, now)
        if matched and group.id not in old_ids:
            db.add(GroupMember(profile_id=profile.id, group_id=group.id))
            new_ids.add(group.id)
        elif not matched and group.id in old_ids:
            db.query(GroupMember).filter(
                GroupMember.group_id == group.id, GroupMember.profile_id == profile.id
            ).delete(synchronize_session=False)
            new_ids.discard(group.id)
    db.flush()
    return old_ids, new_ids


def active_group_ids(db: Session, group_ids: Iterable[str]) -> Set[str]:
    ids = list(group_ids)
    if not ids:
        return set()
    return {gid for (gid,) in db.query(Group.id).filter(Group.id.in_(ids), Group.state.in_(ACTIVE_GROUP_STATES))}


def add_profile(db: Session, group: Group, profile: Profile) -> bool:
    ensure_unlocked(group)
    if group.type != "manual":
        raise ValidationError(f"cannot add profiles to calculated group {group.name}")
    exists = db.query(GroupMember.id).filter(
        GroupMember.group_id == group.id, GroupMember.profile_id == profile.id
    ).first()
    if exists:
        return False
    db.add(GroupMember(profile_id=profile.id, group_id=group.id))
    db.flush()
    return True


def remove_profile(db: Session, group: Group, profile: Profile) -> bool:
    ensure_unlocked(group)
    if group.type != "manual":
        raise ValidationError(f"cannot remove profiles from calculated group {group.name}")
    count = db.query(GroupMember).filter(
        GroupMember.group_id == group.id, GroupMember.profile_id == profile.id
    ).delete(synchronize_session=False)
    return count > 0


def list_destinations(db: Session, group: Group) -> List[Destination]:
    """Destinations (not deleted) that track the group or map it to a remote group, by name."""
    return [
        destination
        for destination in db.query(Destination)
        .filter(Destination.state != "deleted")
        .order_by(Destination.name, Destination.id)
        if destination.group_id == group.id or group.id in (destination.group_mappings or {})
    ]


def ensure_group_not_in_use(db: Session, group: Group) -> None:
    in_use = list_destinations(db, group)
    if in_use:
        raise ConflictError(f"cannot delete group {group.name}, it is used by destination {in_use[0].name}")


def _release_deleted_destinations(db: Session, group: Group) -> None:
    db.query(Destination).filter(Destination.group_id == group.id, Destination.state == "deleted").update(
        {"group_id": None}, synchronize_session=False
    )


def destroy_group(db: Session, group: Group, force: bool = False) -> str:
    """
    force: delete members and the group now ("destroyed").
    Otherwise move to `deleted`; `purge_deleted_groups` finishes the job ("deleted").
    """
    ensure_unlocked(group)
    ensure_group_not_in_use(db, group)
    if force:
        _release_deleted_destinations(db, group)
        db.delete(group)
        db.flush()
        logger.info(f"Destroyed group {group.id}")
        return "destroyed"
    transition(group, GROUP_TRANSITIONS, "deleted")
    db.flush()
    return "deleted"


def purge_deleted_groups(db: Session) -> Dict[str, List[str]]:
    """Delete groups in the `deleted` state. Returns {group_id: former member profile ids}."""
    purged: Dict[str, List[str]] = {}
    for group in db.query(Group).filter(Group.state == "deleted").all():
        purged[group.id] = sorted(member_ids(db, group))
        _release_deleted_destinations(db, group)
        db.delete(group)
        logger.info(f"Purged deleted group {group.id} with {len(purged[group.id])} former members")
    db.flush()
    return purged


def rule_options() -> Dict[str, Any]:
    return group_rules.rule_options()
