"""
Group tasks (queue: groups).
"""

from typing import Dict, List, Set
import logging

from celery import Task

from core.database import session_scope
from core.exceptions import NotFoundError
from core.logging import log_context
from models import Group
from services.groups import ACTIVE_GROUP_STATES, get_group, purge_deleted_groups, run_group
from tasks import celery_app
from tasks.profile_tasks import sync_profile_task
from tasks.retryable import RetryableTask

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.run_group", bind=True, base=RetryableTask)
def run_group_task(self: Task, group_id: str) -> Dict:
    """Recalculate one group; every profile that joined or left is re-synced so its exports follow."""
    try:
        with session_scope() as db:
            group = get_group(db, group_id)
            changes = run_group(db, group)
    except NotFoundError as e:
        return self.skipped(e)
    except Exception as e:
        self.retry_for(e)

    affected = sorted(set(changes["added"]) | set(changes["removed"]))
    for profile_id in affected:
        sync_profile_task.delay(profile_id)
    return {"status": "success", "group_id": group_id, "added": len(changes["added"]), "removed": len(changes["removed"])}


@celery_app.task(name="tasks.run_calculated_groups", bind=True)
def run_calculated_groups(self: Task) -> Dict:
    """
    Celery beat task: recalculate every active calculated group.
    Relative date rules drift with time even when no profile changes.
    """
    with session_scope() as db:
        group_ids: List[str] = [
            gid for (gid,) in db.query(Group.id)
            .filter(Group.type == "calculated", Group.state.in_(ACTIVE_GROUP_STATES))
            .order_by(Group.id)
        ]
    for group_id in group_ids:
        run_group_task.delay(group_id)
    return {"status": "success", "enqueued": len(group_ids)}


@celery_app.task(name="tasks.purge_deleted_groups", bind=True, base=RetryableTask)
def purge_deleted_groups_task(self: Task) -> Dict:
    """Delete groups in the `deleted` state and re-export their former members."""
    try:
        with session_scope() as db:
            purged = purge_deleted_groups(db)
    except Exception as e:
        self.retry_for(e)

    affected: Set[str] = set()
    for profile_ids in purged.values():
        affected.update(profile_ids)
    for profile_id in sorted(affected):
        sync_profile_task.delay(profile_id)
    if purged:
        logger.info(
            f"Purged {len(purged)} deleted groups; {len(affected)} profiles re-synced",
            extra=log_context(task=self.name, group_ids=sorted(purged)),
        )
    return {"status": "success", "purged": len(purged), "profiles": len(affected)}
