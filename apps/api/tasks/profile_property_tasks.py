"""
Profile property tasks (queue: profile_properties).

The beat sweeper claims pending ProfileProperty rows per Property and hands
them to `import_profile_properties` in batches. A row whose dependencies are
not ready is deferred by pushing its `started_at` watermark, so the sweeper
claims it again after PROPERTY_DEPENDENCY_RETRY_DELAY_S.
"""

from typing import Any, Dict, List
import logging

from celery import Task

from core.database import session_scope
from core.exceptions import NotFoundError
from core.logging import log_context
from models import Profile, Property
from services.app_throttle import app_parallelism, app_slot
from services.connectors import get_default_registry
from services.profiles import pending_property_ids
from services.property_resolver import (
    READY,
    claim_pending_profile_ids,
    fail_profile_properties,
    resolve_profile_properties,
    resolve_profile_property,
)
from tasks import celery_app
from tasks.profile_tasks import sync_profile_task
from tasks.retryable import RetryableTask

logger = logging.getLogger(__name__)


class ProfilePropertyTask(RetryableTask):
    abstract = True

    def on_permanent_failure(self, exc: Exception, args: Any, kwargs: Any) -> None:
        args = list(args or [])
        kwargs = dict(kwargs or {})
        subject = args[0] if args else kwargs.get("profile_ids", kwargs.get("profile_id"))
        property_id = args[1] if len(args) > 1 else kwargs.get("property_id")
        if subject is None or property_id is None:
            return
        profile_ids = subject if isinstance(subject, (list, tuple)) else [subject]
        with session_scope() as db:
            fail_profile_properties(db, profile_ids, property_id, f"{type(exc).__name__}: {exc}")


def _completed_profile_ids(db, outcomes: Dict[str, str]) -> List[str]:
    """Profiles that just resolved a property and have nothing else pending."""
    completed = []
    for profile_id, outcome in outcomes.items():
        if outcome != READY:
            continue
        profile = db.get(Profile, profile_id)
        if profile is not None and not pending_property_ids(db, profile):
            completed.append(profile_id)
    return completed


def _load_property(db, property_id: str) -> Property:
    prop = db.get(Property, property_id)
    if prop is None:
        raise NotFoundError("property", property_id)
    return prop


@celery_app.task(name="tasks.import_profile_properties", bind=True, base=ProfilePropertyTask)
def import_profile_properties(self: Task, profile_ids: List[str], property_id: str) -> Dict:
    """Resolve one Property for a batch of profiles with a single connector call."""
    registry = get_default_registry()
    try:
        with session_scope() as db:
            prop = _load_property(db, property_id)
            app = prop.source.app
            with app_slot(app.id, app_parallelism(registry, app)) as acquired:
                if not acquired:
                    return self.defer(reason=f"app {app.id} at capacity")
                outcomes = resolve_profile_properties(db, list(profile_ids), property_id, registry)
            completed = _completed_profile_ids(db, outcomes)
    except NotFoundError as e:
        return self.skipped(e)
    except Exception as e:
        self.retry_for(e)

    for profile_id in completed:
        sync_profile_task.delay(profile_id)
    counts: Dict[str, int] = {}
    for outcome in outcomes.values():
        counts[outcome] = counts.get(outcome, 0) + 1
    return {"status": "success", "property_id": property_id, "outcomes": counts, "completed": len(completed)}


@celery_app.task(name="tasks.import_profile_property", bind=True, base=ProfilePropertyTask)
def import_profile_property(self: Task, profile_id: str, property_id: str) -> Dict:
    registry = get_default_registry()
    try:
        with session_scope() as db:
            prop = _load_property(db, property_id)
            app = prop.source.app
            with app_slot(app.id, app_parallelism(registry, app)) as acquired:
                if not acquired:
                    return self.defer(reason=f"app {app.id} at capacity")
                outcome = resolve_profile_property(db, profile_id, property_id, registry)
            completed = _completed_profile_ids(db, {profile_id: outcome})
    except NotFoundError as e:
        return self.skipped(e)
    except Exception as e:
        self.retry_for(e)

    if completed:
        sync_profile_task.delay(profile_id)
    return {"status": "success", "profile_id": profile_id, "property_id": property_id, "outcome": outcome}


@celery_app.task(name="tasks.enqueue_pending_profile_properties", bind=True)
def enqueue_pending_profile_properties(self: Task) -> Dict:
    """
    Celery beat task: claim eligible pending rows for every ready Property and
    enqueue one batch task per claimed page.
    """
    batches = []
    with session_scope() as db:
        property_ids = [pid for (pid,) in db.query(Property.id).filter(Property.state == "ready").order_by(Property.id)]
        for property_id in property_ids:
            profile_ids = claim_pending_profile_ids(db, property_id)
            if profile_ids:
                batches.append((profile_ids, property_id))

    for profile_ids, property_id in batches:
        import_profile_properties.delay(profile_ids, property_id)
    enqueued = sum(len(ids) for ids, _ in batches)
    if enqueued:
        logger.info(
            f"Profile property sweep: {enqueued} rows in {len(batches)} batches",
            extra=log_context(task=self.name, property_ids=sorted({pid for _, pid in batches})),
        )
    return {"status": "success", "batches": len(batches), "enqueued": enqueued}
