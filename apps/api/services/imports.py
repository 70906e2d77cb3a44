"""
Imports: source rows -> Import records -> profile property values.

A row is mapped through its Source's `{column: property key}` mapping and
associated with a Profile right away (found or created by unique properties).
The values themselves are applied later by the profile sync, so every change to
a profile goes through the same pipeline.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import ConflictError, ConnectorCapabilityError, NotFoundError, ValidationError
from models import Import, Profile, Property, Run, Schedule, Source, as_utc, utcnow
from schemas import ProfilesPage
from services import profiles as profile_service
from services.connectors import ConnectorRegistry, has_method
from services.option_templates import render, time_variables
from services.property_values import to_raw

logger = logging.getLogger(__name__)


def map_row(mapping: Dict[str, str], row: Dict[str, Any]) -> Dict[str, Any]:
    """Keep the mapped columns of a row, renamed to property keys."""
    return {key: row[column] for column, key in (mapping or {}).items() if column in row}


def _validate_import_data(db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
    """Typed-check the data against the property definitions; unknown keys are dropped."""
    properties = {p.key: p for p in db.query(Property).filter(Property.key.in_(list(data.keys())), Property.state == "ready")}
    unknown = set(data) - set(properties)
    if unknown:
        logger.warning(f"Import data references unknown properties: {sorted(unknown)}")
    known = {}
    for key, prop in properties.items():
        value = data[key]
        values = value if isinstance(value, (list, tuple)) else [value]
        raws = [r for r in (to_raw(prop.type, v) for v in values) if r is not None]
        if len(raws) > 1 and not prop.is_array:
            raise ValidationError(f"property {key} is not an array and cannot hold {len(raws)} values")
        known[key] = value
    return known


def import_row(db: Session, row: Dict[str, Any], mapping: Dict[str, str], source_id: Optional[str] = None, run: Optional[Run] = None) -> Import:
    """
    Create an Import for one source row and associate it with a Profile.

    Rows that cannot be associated (no unique property, invalid values,
    conflicting identities) are recorded as `failed` rather than raised.
    """
    imp = Import(source_id=source_id, run_id=run.id if run else None, data=map_row(mapping, row), state="pending")
    db.add(imp)
    try:
        data = _validate_import_data(db, imp.data)
        profile, created = profile_service.find_or_create_by_unique_properties(db, data)
    except (ValidationError, ConflictError, NotFoundError) as e:
        imp.state = "failed"
        imp.error_message = e.detail
        logger.warning(f"Import from source {source_id} failed: {e.detail}")
    else:
        imp.profile_id = profile.id
        imp.created_profile = created
    db.flush()
    return imp


def apply_pending_imports(db: Session, profile: Profile, now: Optional[datetime] = None) -> int:
    """
    Apply this profile's pending imports in arrival order.

    Properties the imports did not provide are sent back to pending so the
    resolver refreshes them.
    """
    now = now or utcnow()
    imports = (
        db.query(Import)
        .filter(Import.profile_id == profile.id, Import.state == "pending")
        .order_by(Import.created_at, Import.id)
        .with_for_update()
        .all()
    )
    if not imports:
        return 0

    provided = set()
    for imp in imports:
        data = _validate_import_data(db, imp.data)
        profile_service.add_or_update_properties(db, profile, data)
        provided.update(data.keys())
        imp.state = "imported"
        imp.imported_at = now

    refresh = [
        pid for (pid,) in db.query(Property.id).filter(
            Property.state == "ready", Property.key.notin_(list(provided))
        )
    ]
    if refresh:
        profile_service.mark_pending(db, profile, refresh)
    db.flush()
    logger.info(f"Applied {len(imports)} imports to profile {profile.id}")
    return len(imports)


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def run_variables(db: Session, run: Optional[Run] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Variables for source options during a run.

    `previous_run.*` describes the schedule's last complete run; before the
    first one it is empty with `created_at` at the epoch, so incremental queries
    written as `updated_at > {{ previous_run.created_at.sql }}` read everything.
    """
    now = now or utcnow()
    variables: Dict[str, Any] = time_variables("now", now)
    previous: Optional[Run] = None
    if run is not None:
        variables["run.id"] = run.id
        variables.update(time_variables("run.created_at", run.created_at or now))
        previous = (
            db.query(Run)
            .filter(Run.schedule_id == run.schedule_id, Run.id != run.id, Run.state == "complete")
            .order_by(Run.created_at.desc())
            .first()
        )
    variables["previous_run.id"] = previous.id if previous else ""
    variables.update(time_variables("previous_run.created_at", previous.created_at if previous else EPOCH))
    return variables


def parameterized_options(
    db: Session, source: Source, run: Optional[Run] = None, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """The source's options with run variables rendered into its string values."""
    variables = run_variables(db, run, now)
    return {
        key: render(value, variables) if isinstance(value, str) else value
        for key, value in (source.options or {}).items()
    }


def start_run(db: Session, schedule: Schedule) -> Run:
    running = db.query(Run).filter(Run.schedule_id == schedule.id, Run.state == "running").first()
    if running is not None:
        return running
    run = Run(schedule_id=schedule.id, state="running", high_water_mark={})
    db.add(run)
    db.flush()
    return run


def run_schedule_page(
    db: Session, registry: ConnectorRegistry, run: Run, limit: Optional[int] = None
) -> Tuple[Run, List[Import]]:
    """
    Pull one page from the Source connector and turn it into Imports.

    The run completes when a page comes back empty; otherwise the caller
    enqueues the next page.
    """
    schedule = run.schedule
    source = schedule.source
    connection = registry.get_connection(source.type)
    if not has_method(connection, "profiles"):
        raise ConnectorCapabilityError(connection.name, "profiles")

    page = ProfilesPage.model_validate(connection.profiles(
        app_options=source.app.options,
        source_options=parameterized_options(db, source, run),
        schedule_options=schedule.options,
        high_water_mark=run.high_water_mark or {},
        limit=limit or settings.IMPORT_BATCH_SIZE,
    ))

    imports = [import_row(db, row, source.mapping, source_id=source.id, run=run) for row in page.rows]
    run.imports_created += len(imports)
    run.high_water_mark = page.next_high_water_mark
    if not page.rows:
        run.state = "complete"
        run.completed_at = utcnow()
    db.flush()
    logger.info(f"Run {run.id}: imported {len(imports)} rows (total {run.imports_created})")
    return run, imports


def stop_run(db: Session, run: Run, error: str) -> Run:
    if run.state == "running":
        run.state = "stopped"
        run.error = error
        run.completed_at = utcnow()
        db.flush()
        logger.error(f"Run {run.id} stopped: {error}")
    return run


def due_recurring_schedule_ids(db: Session, now: Optional[datetime] = None) -> List[str]:
    """Ready recurring schedules with no running Run whose last Run started at least one frequency ago."""
    now = now or utcnow()
    due = []
    for schedule in db.query(Schedule).filter(Schedule.state == "ready", Schedule.recurring.is_(True)):
        last = db.query(Run).filter(Run.schedule_id == schedule.id).order_by(Run.created_at.desc()).first()
        if last is not None and last.state == "running":
            continue
        if last is None or as_utc(last.created_at) + timedelta(seconds=schedule.recurring_frequency_s or 0) <= now:
            due.append(schedule.id)
    return due
