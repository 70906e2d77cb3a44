"""
Sync Orchestrator

Per-profile pipeline run after any upstream change:

    pending imports -> property resolution -> ready? -> group memberships -> exports

Every step is safe to repeat. Re-running with no new upstream data creates no
new Export rows: the "old" side of an export is whatever was last exported to
that destination, and a not-yet-sent export is updated in place.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
import logging

from sqlalchemy.orm import Session

from models import Destination, Export, Group, GroupMember, Profile, ProfileProperty, utcnow
from services import groups as group_service
from services import imports as import_service
from services import profiles as profile_service
from services.connectors import ConnectorRegistry, get_default_registry
from services.property_resolver import READY, resolve_profile_property

logger = logging.getLogger(__name__)


def resolve_pending_properties(
    db: Session, profile: Profile, registry: ConnectorRegistry, now: Optional[datetime] = None
) -> int:
    """
    Resolve the profile's pending properties inline.

    Passes repeat while at least one property became ready, so chains of
    dependencies settle in one call; anything still waiting stays deferred.
    """
    resolved = 0
    while True:
        pending = [
            pid for (pid,) in db.query(ProfileProperty.property_id)
            .filter(
                ProfileProperty.profile_id == profile.id,
                ProfileProperty.state == "pending",
                ProfileProperty.failed_at.is_(None),
            )
            .distinct()
        ]
        progress = False
        for property_id in pending:
            if resolve_profile_property(db, profile.id, property_id, registry, now=now) == READY:
                resolved += 1
                progress = True
        if not progress:
            return resolved


def sync_profile(
    db: Session,
    profile: Profile,
    registry: Optional[ConnectorRegistry] = None,
    to_export: bool = True,
    force: bool = False,
    resolve: bool = True,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Run the pipeline for one profile.

    With `resolve=False` pending properties are left to the profile property
    tasks, which call back into this function once nothing is pending.
    """
    if profile.destroyed_at is not None:
        return {"profile_id": profile.id, "status": "destroying"}
    now = now or utcnow()
    if resolve and registry is None:
        registry = get_default_registry()

    imported = import_service.apply_pending_imports(db, profile, now=now)
    profile_service.build_null_properties(db, profile)
    resolved = resolve_pending_properties(db, profile, registry, now=now) if resolve else 0
    ready = profile_service.mark_ready_if_complete(db, profile)

    old_group_ids, new_group_ids = group_service.calculate_memberships_for_profile(db, profile, now=now)

    exports: List[Export] = []
    if to_export and ready:
        exports = export_profile(db, profile, force=force, now=now)

    return {
        "profile_id": profile.id,
        "status": profile.state,
        "imported": imported,
        "resolved": resolved,
        "old_group_ids": sorted(old_group_ids),
        "new_group_ids": sorted(new_group_ids),
        "export_ids": [e.id for e in exports],
    }


def _export_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def exported_properties(db: Session, profile: Profile, destination: Destination) -> Dict[str, Any]:
    """The profile's values keyed by the destination's remote keys."""
    properties = profile_service.get_properties(db, profile)
    mapped: Dict[str, Any] = {}
    for remote_key, key in (destination.mapping or {}).items():
        entry = properties.get(key)
        if entry is None:
            mapped[remote_key] = None
            continue
        values = [_export_value(v) for v in entry["values"]]
        mapped[remote_key] = values if entry["is_array"] else (values[0] if values else None)
    return mapped


def exported_groups(destination: Destination, group_ids: Iterable[str]) -> List[str]:
    names = destination.group_mappings or {}
    return sorted(names[gid] for gid in group_ids if gid in names)


def _last_export(db: Session, profile_id: str, destination_id: str) -> Optional[Export]:
    """The most recent export that was (or is being) delivered."""
    query = db.query(Export).filter(
        Export.profile_id == profile_id,
        Export.destination_id == destination_id,
        Export.state.in_(("complete", "processing")),
    )
    return query.order_by(Export.created_at.desc(), Export.id.desc()).first()


def export_profile(
    db: Session,
    profile: Profile,
    old_groups_override: Optional[Iterable[str]] = None,
    force: bool = False,
    to_delete: bool = False,
    now: Optional[datetime] = None,
    save_exports: bool = True,
) -> List[Export]:
    """
    Build (or refresh) one pending Export per destination that should hear about this profile.

    A destination is involved when the profile is in its tracked group now or
    was a member at the last export. Leaving the tracked group, or `to_delete`,
    produces a removal (`to_delete=True`). Without `force`, a destination whose
    payload would not change gets no Export.

    With `save_exports=False` nothing is written: the returned Exports are
    transient and any pending Export already queued is left as it is.
    """
    now = now or utcnow()
    group_ids = group_service.active_group_ids(db, profile_service.group_ids_for(db, profile))
    override = set(old_groups_override) if old_groups_override is not None else None
    exports: List[Export] = []

    for destination in db.query(Destination).filter(Destination.state == "ready").order_by(Destination.id):
        pending: Optional[Export] = None
        if save_exports:
            pending = (
                db.query(Export)
                .filter(
                    Export.profile_id == profile.id,
                    Export.destination_id == destination.id,
                    Export.state == "pending",
                )
                .with_for_update()
                .first()
            )
        baseline = _last_export(db, profile.id, destination.id)

        was_member = baseline is not None and not baseline.to_delete
        is_member = destination.group_id is not None and destination.group_id in group_ids
        if not was_member and not is_member:
            if pending is not None:
                db.delete(pending)
            continue

        removing = to_delete or not is_member
        new_properties = exported_properties(db, profile, destination)
        new_groups = [] if removing else exported_groups(destination, group_ids)
        old_properties = dict(baseline.new_profile_properties) if baseline else {}
        if override is not None:
            old_groups = exported_groups(destination, override)
        else:
            old_groups = list(baseline.new_groups) if baseline else []

        has_changes = (
            new_properties != old_properties
            or new_groups != old_groups
            or removing != (baseline.to_delete if baseline else False)
        )
        if not has_changes and not force:
            if pending is not None:
                db.delete(pending)
            continue

        export = pending or Export(profile_id=profile.id, destination_id=destination.id, state="pending")
        export.old_profile_properties = old_properties
        export.new_profile_properties = new_properties
        export.old_groups = old_groups
        export.new_groups = new_groups
        export.to_delete = removing
        export.has_changes = has_changes
        export.send_at = now
        if save_exports and pending is None:
            db.add(export)
        exports.append(export)

    if not save_exports:
        return exports
    db.flush()
    if exports:
        logger.info(f"Profile {profile.id}: {len(exports)} exports pending")
    return exports


def snapshot_profile(
    db: Session,
    profile: Profile,
    registry: Optional[ConnectorRegistry] = None,
    save_exports: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Sync the profile and describe what every destination would receive.

    Imports, properties and memberships are brought up to date as in
    `sync_profile`; exports are only queued when `save_exports` is set.
    Groups are sorted by name and exports by destination name.
    """
    now = now or utcnow()
    result = sync_profile(db, profile, registry, to_export=False, now=now)
    exports: List[Export] = []
    if result["status"] == "ready":
        exports = export_profile(db, profile, now=now, save_exports=save_exports)

    group_ids = group_service.active_group_ids(db, profile_service.group_ids_for(db, profile))
    groups = (
        db.query(Group).filter(Group.id.in_(list(group_ids))).order_by(Group.name, Group.id).all()
        if group_ids else []
    )
    destinations = {
        d.id: d for d in db.query(Destination).filter(Destination.id.in_([e.destination_id for e in exports]))
    }
    exports.sort(key=lambda e: (destinations[e.destination_id].name, e.destination_id))

    return {
        "profile_id": profile.id,
        "state": profile.state,
        "properties": profile_service.get_properties(db, profile),
        "groups": [{"id": g.id, "name": g.name, "type": g.type} for g in groups],
        "exports": [
            {
                "destination_id": e.destination_id,
                "destination_name": destinations[e.destination_id].name,
                "export_id": e.id if save_exports else None,
                "to_delete": e.to_delete,
                "has_changes": e.has_changes,
                "old_profile_properties": e.old_profile_properties,
                "new_profile_properties": e.new_profile_properties,
                "old_groups": e.old_groups,
                "new_groups": e.new_groups,
            }
            for e in exports
        ],
    }


def destroy_profile(db: Session, profile: Profile, now: Optional[datetime] = None) -> List[Export]:
    """
    First half of a profile destroy: final removal exports, then memberships go.

    The row itself is deleted by `finalize_profile_destroy` once the removal
    exports have been delivered (immediately when there are none).
    """
    now = now or utcnow()
    exports = export_profile(db, profile, to_delete=True, force=True, now=now)
    db.query(GroupMember).filter(GroupMember.profile_id == profile.id).delete(synchronize_session=False)
    profile.destroyed_at = now
    db.flush()
    logger.info(f"Profile {profile.id} destroy requested; {len(exports)} removal exports")
    finalize_profile_destroy(db, profile.id)
    return exports


def finalize_profile_destroy(db: Session, profile_id: str) -> bool:
    """Delete a destroyed profile once none of its exports are pending or in flight."""
    profile = db.get(Profile, profile_id)
    if profile is None:
        return True
    if profile.destroyed_at is None:
        return False
    outstanding = (
        db.query(Export.id)
        .filter(Export.profile_id == profile_id, Export.state.in_(("pending", "processing")))
        .first()
    )
    if outstanding:
        return False
    db.query(Export).filter(Export.profile_id == profile_id).delete(synchronize_session=False)
    db.delete(profile)
    db.flush()
    logger.info(f"Profile {profile_id} deleted")
    return True


def _has_pending_rows(db: Session, failed: bool):
    """EXISTS over the profile's pending rows, either the resolvable ones or those parked as failed."""
    parked = ProfileProperty.failed_at.isnot(None) if failed else ProfileProperty.failed_at.is_(None)
    return (
        db.query(ProfileProperty.id)
        .filter(ProfileProperty.profile_id == Profile.id, ProfileProperty.state == "pending", parked)
        .exists()
    )


def stalled_pending_profile_ids(db: Session, limit: int = 1000) -> List[str]:
    """Pending profiles with nothing left to resolve (their last sync was lost or never ran)."""
    return [
        pid for (pid,) in db.query(Profile.id)
        .filter(
            Profile.state == "pending",
            Profile.destroyed_at.is_(None),
            ~_has_pending_rows(db, failed=False),
            ~_has_pending_rows(db, failed=True),
        )
        .order_by(Profile.id)
        .limit(limit)
    ]


def failed_profile_ids(db: Session, limit: int = 1000) -> List[str]:
    """
    Pending profiles held back by a property that failed permanently.

    Re-syncing them cannot help; they wait until the property is marked
    pending again (`mark_pending`, or an option change on the Property).
    """
    return [
        pid for (pid,) in db.query(Profile.id)
        .filter(Profile.state == "pending", Profile.destroyed_at.is_(None), _has_pending_rows(db, failed=True))
        .order_by(Profile.id)
        .limit(limit)
    ]


def destroyed_profile_ids(db: Session) -> List[str]:
    return [pid for (pid,) in db.query(Profile.id).filter(Profile.destroyed_at.isnot(None))]
