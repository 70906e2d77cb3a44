"""
Profile tasks (queue: profiles).

sync_profile_task is the entry point after any upstream change to a profile:
an import, a resolved property, a membership change.
"""

from typing import Dict, List
import logging

from celery import Task

from core.database import session_scope
from core.exceptions import NotFoundError
from core.logging import log_context
from services.profile_sync import (
    destroy_profile,
    destroyed_profile_ids,
    failed_profile_ids,
    finalize_profile_destroy,
    stalled_pending_profile_ids,
    sync_profile,
)
from services.profiles import get_profile
from tasks import celery_app
from tasks.retryable import RetryableTask

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.sync_profile", bind=True, base=RetryableTask)
def sync_profile_task(self: Task, profile_id: str, to_export: bool = True, force: bool = False) -> Dict:
    """
    Apply pending imports, then groups and exports once the profile is ready.

    Pending properties are left to the profile property sweeper, which
    enqueues this task again when the profile has nothing left pending.
    """
    try:
        with session_scope() as db:
            profile = get_profile(db, profile_id)
            result = sync_profile(db, profile, to_export=to_export, force=force, resolve=False)
    except NotFoundError as e:
        return self.skipped(e)
    except Exception as e:
        self.retry_for(e)
    profile_state = result.pop("status")
    logger.info(
        f"Synced profile {profile_id}: {profile_state}, {result.get('imported', 0)} imports, "
        f"{len(result.get('export_ids', []))} exports",
        extra=log_context(**self.log_fields(), profile_state=profile_state),
    )
    return {"status": "success", "profile_state": profile_state, **result}


@celery_app.task(name="tasks.destroy_profile", bind=True, base=RetryableTask)
def destroy_profile_task(self: Task, profile_id: str) -> Dict:
    try:
        with session_scope() as db:
            profile = get_profile(db, profile_id)
            exports = destroy_profile(db, profile)
            export_ids = [e.id for e in exports]
    except NotFoundError as e:
        return self.skipped(e)
    except Exception as e:
        self.retry_for(e)
    return {"status": "success", "profile_id": profile_id, "export_ids": export_ids}


@celery_app.task(name="tasks.complete_pending_profiles", bind=True)
def complete_pending_profiles(self: Task) -> Dict:
    """
    Celery beat task: re-sync pending profiles that have nothing left to resolve,
    and delete destroyed profiles whose removal exports are done.

    Profiles held back by a permanently failed property are reported, not
    re-synced.
    """
    with session_scope() as db:
        stalled: List[str] = stalled_pending_profile_ids(db)
        failed: List[str] = failed_profile_ids(db)
        finalized = sum(1 for pid in destroyed_profile_ids(db) if finalize_profile_destroy(db, pid))

    for profile_id in stalled:
        sync_profile_task.delay(profile_id)
    if stalled or finalized:
        logger.info(
            f"Pending profile sweep: {len(stalled)} re-synced, {finalized} destroyed profiles deleted",
            extra=log_context(task=self.name),
        )
    if failed:
        logger.warning(
            f"{len(failed)} profiles are waiting on failed properties",
            extra=log_context(task=self.name, profile_ids=failed[:20]),
        )
    return {"status": "success", "enqueued": len(stalled), "finalized": finalized, "failed": len(failed)}
