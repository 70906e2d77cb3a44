"""
Dependency-Aware Property Resolver

Computes one Property's value(s) for one Profile and writes the result to the
profile's ProfileProperty rows.

A Property depends on every other property key it references through
`{{ key }}` templates in its own options/filters or its Source's options, and
on the key its Source maps identity through. Dependencies are resolved lazily:
when one is not ready yet the row's `started_at` watermark is pushed so that
the sweeper picks it up again `PROPERTY_DEPENDENCY_RETRY_DELAY_S` later. This
is a normal outcome, not an error.

Batched connector responses are canonical as `{profile_id: [values]}`; a
profile id absent from the mapping means "no value".
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set
import logging

from sqlalchemy import or_, update
from sqlalchemy.orm import Session, object_session

from core.config import settings
from core.exceptions import ConnectorCapabilityError, DependencyConfigurationError, ValidationError
from models import Profile, ProfileProperty, Property, utcnow
from services import profiles as profile_service
from services.connectors import ConnectorRegistry, has_method
from services.option_templates import collect_template_keys, is_run_variable, render_options, unknown_keys

logger = logging.getLogger(__name__)

PROFILE_MISSING = "profile_missing"
PROPERTY_MISSING = "property_missing"
DEFERRED = "deferred"
READY = "ready"


def property_dependencies(db: Session, prop: Property, known_keys: Optional[Iterable[str]] = None) -> Set[str]:
    """
    Keys of the properties `prop` needs before it can be fetched.

    Raises DependencyConfigurationError for references to unknown keys or to
    the property itself.
    """
    source = prop.source
    referenced = collect_template_keys(prop.options, prop.filters)
    if source is not None:
        referenced.update(k for k in collect_template_keys(source.options) if not is_run_variable(k))
    if known_keys is None:
        known_keys = [k for (k,) in db.query(Property.key).filter(Property.state != "deleted")]

    if prop.key in referenced:
        raise DependencyConfigurationError(f"property {prop.key} cannot reference itself", field="options")
    missing = unknown_keys(referenced, known_keys)
    if missing:
        raise DependencyConfigurationError(
            f"property {prop.key} references unknown properties: {', '.join(sorted(missing))}",
            field="options",
        )

    if source is not None and not prop.directly_mapped:
        referenced.update(k for k in (source.mapping or {}).values() if k != prop.key)
    return referenced


def dependency_graph(db: Session, overrides: Optional[Dict[str, Property]] = None) -> Dict[str, Set[str]]:
    properties = {p.key: p for p in db.query(Property).filter(Property.state != "deleted")}
    properties.update(overrides or {})
    known = list(properties.keys())
    return {key: property_dependencies(db, p, known) for key, p in properties.items()}


def dependency_graph_has_cycle(graph: Dict[str, Set[str]]) -> bool:
    visiting: Set[str] = set()
    done: Set[str] = set()

    def visit(key: str) -> bool:
        if key in done:
            return False
        if key in visiting:
            return True
        visiting.add(key)
        for dep in graph.get(key, ()):
            if visit(dep):
                return True
        visiting.discard(key)
        done.add(key)
        return False

    return any(visit(key) for key in graph)


def ensure_no_dependency_cycle(prop: Property) -> None:
    """Transition check for Property draft -> ready."""
    db = object_session(prop)
    if dependency_graph_has_cycle(dependency_graph(db, {prop.key: prop})):
        raise DependencyConfigurationError(
            f"property {prop.key} is part of a dependency cycle", field="options"
        )


def retry_started_at(now: Optional[datetime] = None) -> datetime:
    """
    Watermark for a deferred row.

    The sweeper treats rows whose started_at is older than the claim timeout as
    eligible, so this makes the row eligible again after the retry delay.
    """
    now = now or utcnow()
    return (
        now
        - timedelta(seconds=settings.PROFILE_PROPERTY_CLAIM_TIMEOUT_S)
        + timedelta(seconds=settings.PROPERTY_DEPENDENCY_RETRY_DELAY_S)
    )


def defer_profile_property(db: Session, profile_id: str, property_id: str, now: Optional[datetime] = None) -> int:
    return db.execute(
        update(ProfileProperty)
        .where(
            ProfileProperty.profile_id == profile_id,
            ProfileProperty.property_id == property_id,
            ProfileProperty.state == "pending",
        )
        .values(started_at=retry_started_at(now)),
        execution_options={"synchronize_session": False},
    ).rowcount


def _dependencies_ready(db: Session, profile: Profile, dependencies: Set[str], current: Dict[str, Dict[str, Any]]) -> bool:
    if any(key not in current for key in dependencies):
        # Property became ready after this profile was created
        profile_service.build_null_properties(db, profile)
        return False
    return all(current[key]["state"] == "ready" for key in dependencies)


def normalize_values(values: Any) -> List[Any]:
    if values is None:
        return []
    if isinstance(values, (list, tuple)):
        return [v for v in values if v is not None]
    return [values]


def _fetch_single(registry: ConnectorRegistry, prop: Property, profile: Profile, variables: Dict[str, Any]) -> Any:
    source = prop.source
    connection = registry.get_connection(source.type)
    if not has_method(connection, "profile_property"):
        raise ConnectorCapabilityError(connection.name, "profile_property")
    return connection.profile_property(
        app_options=source.app.options,
        source_options=render_options(source.options, variables),
        source_mapping=source.mapping,
        property_key=prop.key,
        property_options=render_options(prop.options, variables),
        property_filters=render_options(prop.filters, variables),
        profile_id=profile.id,
        profile_properties=variables,
    )


def resolve_profile_property(
    db: Session,
    profile_id: str,
    property_id: str,
    registry: ConnectorRegistry,
    now: Optional[datetime] = None,
) -> str:
    """
    Resolve one Property for one Profile.

    Returns one of PROFILE_MISSING, PROPERTY_MISSING, DEFERRED, READY.
    Connector errors propagate to the caller's retry policy.
    """
    now = now or utcnow()
    profile = db.get(Profile, profile_id)
    if profile is None:
        deleted = (
            db.query(ProfileProperty)
            .filter(ProfileProperty.profile_id == profile_id, ProfileProperty.property_id == property_id)
            .delete(synchronize_session=False)
        )
        logger.info(f"Profile {profile_id} is gone; removed {deleted} orphaned rows for property {property_id}")
        return PROFILE_MISSING
    if profile.destroyed_at is not None:
        return PROFILE_MISSING

    prop = db.get(Property, property_id)
    if prop is None or prop.state == "deleted":
        return PROPERTY_MISSING

    dependencies = property_dependencies(db, prop)
    current = profile_service.get_properties(db, profile)
    if not _dependencies_ready(db, profile, dependencies, current):
        defer_profile_property(db, profile.id, prop.id, now)
        logger.debug(f"Deferred {prop.key} for profile {profile.id}: dependencies not ready")
        return DEFERRED

    variables = {key: entry["values"] for key, entry in current.items()}
    fetched = _fetch_single(registry, prop, profile, variables)
    profile_service.set_profile_property_values(db, profile, prop, normalize_values(fetched), now=now)
    return READY


def resolve_profile_properties(
    db: Session,
    profile_ids: List[str],
    property_id: str,
    registry: ConnectorRegistry,
    now: Optional[datetime] = None,
) -> Dict[str, str]:
    """
    Batched form: one connector call for every profile whose dependencies are ready.

    The connector receives un-rendered options plus each profile's current
    values (`profiles_properties`) and renders per profile itself. Connections
    without `profile_properties` are called once per profile instead.
    """
    now = now or utcnow()
    outcomes: Dict[str, str] = {}
    prop = db.get(Property, property_id)
    if prop is None or prop.state == "deleted":
        return {pid: PROPERTY_MISSING for pid in profile_ids}

    profiles = {p.id: p for p in db.query(Profile).filter(Profile.id.in_(profile_ids))}
    missing = [pid for pid in profile_ids if pid not in profiles]
    if missing:
        db.query(ProfileProperty).filter(
            ProfileProperty.profile_id.in_(missing), ProfileProperty.property_id == property_id
        ).delete(synchronize_session=False)
        outcomes.update({pid: PROFILE_MISSING for pid in missing})

    dependencies = property_dependencies(db, prop)
    ready: Dict[str, Dict[str, Any]] = {}
    for pid in profile_ids:
        profile = profiles.get(pid)
        if profile is None:
            continue
        if profile.destroyed_at is not None:
            outcomes[pid] = PROFILE_MISSING
            continue
        current = profile_service.get_properties(db, profile)
        if _dependencies_ready(db, profile, dependencies, current):
            ready[pid] = {key: entry["values"] for key, entry in current.items()}
        else:
            defer_profile_property(db, pid, prop.id, now)
            outcomes[pid] = DEFERRED

    if not ready:
        return outcomes

    source = prop.source
    connection = registry.get_connection(source.type)
    if not has_method(connection, "profile_properties"):
        for pid, variables in ready.items():
            fetched = _fetch_single(registry, prop, profiles[pid], variables)
            profile_service.set_profile_property_values(db, profiles[pid], prop, normalize_values(fetched), now=now)
            outcomes[pid] = READY
        return outcomes

    response = connection.profile_properties(
        app_options=source.app.options,
        source_options=source.options,
        source_mapping=source.mapping,
        property_key=prop.key,
        property_options=prop.options,
        property_filters=prop.filters,
        profile_ids=list(ready.keys()),
        profiles_properties=ready,
    )
    if response is None:
        response = {}
    if not isinstance(response, dict):
        raise ValidationError(
            f"connection {connection.name} returned {type(response).__name__} from profile_properties; "
            f"expected a mapping of profile id to values"
        )
    unexpected = set(response) - set(ready)
    if unexpected:
        logger.warning(f"profile_properties for {prop.key} returned unrequested profiles: {sorted(unexpected)}")

    for pid in ready:
        profile_service.set_profile_property_values(
            db, profiles[pid], prop, normalize_values(response.get(pid)), now=now
        )
        outcomes[pid] = READY
    logger.info(f"Resolved {prop.key} for {len(ready)} profiles ({len(profile_ids) - len(ready)} not resolved)")
    return outcomes


def claim_pending_profile_ids(
    db: Session, property_id: str, limit: Optional[int] = None, now: Optional[datetime] = None
) -> List[str]:
    """
    Claim up to `limit` profiles with an eligible pending row for this property.

    Eligible: pending, not permanently failed, and never started or started
    longer than the claim timeout ago (a deferred row's watermark lands there
    after the dependency retry delay). Claiming stamps `started_at = now`.
    """
    now = now or utcnow()
    limit = limit or settings.PROFILE_PROPERTY_BATCH_SIZE
    cutoff = now - timedelta(seconds=settings.PROFILE_PROPERTY_CLAIM_TIMEOUT_S)
    eligible = (
        ProfileProperty.property_id == property_id,
        ProfileProperty.state == "pending",
        ProfileProperty.failed_at.is_(None),
        or_(ProfileProperty.started_at.is_(None), ProfileProperty.started_at < cutoff),
    )
    candidate_ids = [
        pid for (pid,) in db.query(ProfileProperty.profile_id)
        .join(Profile, Profile.id == ProfileProperty.profile_id)
        .filter(*eligible, Profile.destroyed_at.is_(None))
        .distinct()
        .order_by(ProfileProperty.profile_id)
        .limit(limit)
    ]
    if not candidate_ids:
        return []

    db.execute(
        update(ProfileProperty)
        .where(ProfileProperty.profile_id.in_(candidate_ids), *eligible)
        .values(started_at=now),
        execution_options={"synchronize_session": False},
    )
    # Another sweeper may have won some rows between the select and the update
    return [
        pid for (pid,) in db.query(ProfileProperty.profile_id)
        .filter(
            ProfileProperty.profile_id.in_(candidate_ids),
            ProfileProperty.property_id == property_id,
            ProfileProperty.started_at == now,
        )
        .distinct()
        .order_by(ProfileProperty.profile_id)
    ]


def fail_profile_properties(db: Session, profile_ids: Iterable[str], property_id: str, message: str, now: Optional[datetime] = None) -> int:
    """Park rows whose resolution exhausted its retries; the sweeper skips them until marked pending again."""
    now = now or utcnow()
    count = db.execute(
        update(ProfileProperty)
        .where(
            ProfileProperty.profile_id.in_(list(profile_ids)),
            ProfileProperty.property_id == property_id,
            ProfileProperty.state == "pending",
        )
        .values(failed_at=now, error_message=message),
        execution_options={"synchronize_session": False},
    ).rowcount
    logger.error(f"Property {property_id} failed permanently for {count} rows: {message}")
    return count
