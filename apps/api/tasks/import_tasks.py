"""
Import tasks (queue: imports).

A schedule run pulls one page per task execution; the task re-enqueues itself
for the next page until the source returns an empty page. Every profile an
import touched is synced afterwards.
"""

from typing import Any, Dict, List, Optional
import logging

from celery import Task

from core.database import session_scope
from core.exceptions import NotFoundError
from core.logging import log_context
from models import Run
from services.app_throttle import app_parallelism, app_slot
from services.connectors import get_default_registry
from services.imports import due_recurring_schedule_ids, run_schedule_page, start_run, stop_run
from services.sources import get_schedule
from tasks import celery_app
from tasks.profile_tasks import sync_profile_task
from tasks.retryable import RetryableTask

logger = logging.getLogger(__name__)


class RunScheduleTask(RetryableTask):
    abstract = True

    def on_permanent_failure(self, exc: Exception, args: Any, kwargs: Any) -> None:
        args = list(args or [])
        kwargs = dict(kwargs or {})
        schedule_id = args[0] if args else kwargs.get("schedule_id")
        run_id = args[1] if len(args) > 1 else kwargs.get("run_id")
        with session_scope() as db:
            query = db.query(Run).filter(Run.state == "running")
            if run_id:
                query = query.filter(Run.id == run_id)
            else:
                query = query.filter(Run.schedule_id == schedule_id)
            for run in query.all():
                stop_run(db, run, f"{type(exc).__name__}: {exc}")


@celery_app.task(name="tasks.run_schedule", bind=True, base=RunScheduleTask)
def run_schedule_task(self: Task, schedule_id: str, run_id: Optional[str] = None) -> Dict:
    registry = get_default_registry()
    try:
        with session_scope() as db:
            schedule = get_schedule(db, schedule_id)
            if run_id:
                run = db.get(Run, run_id)
                if run is None:
                    raise NotFoundError("run", run_id)
            else:
                run = start_run(db, schedule)
            if run.state != "running":
                return {"status": "skipped", "reason": f"run {run.id} is {run.state}"}

            app = schedule.source.app
            with app_slot(app.id, app_parallelism(registry, app)) as acquired:
                if not acquired:
                    return self.defer(reason=f"app {app.id} at capacity")
                run, imports = run_schedule_page(db, registry, run)
            profile_ids: List[str] = sorted({imp.profile_id for imp in imports if imp.profile_id})
            run_id = run.id
            finished = run.state != "running"
            failed = sum(1 for imp in imports if imp.state == "failed")
    except NotFoundError as e:
        return self.skipped(e)
    except Exception as e:
        self.retry_for(e)

    for profile_id in profile_ids:
        sync_profile_task.delay(profile_id)
    if not finished:
        run_schedule_task.delay(schedule_id, run_id)
    return {
        "status": "success",
        "run_id": run_id,
        "imports": len(imports),
        "failed": failed,
        "profiles": len(profile_ids),
        "complete": finished,
    }


@celery_app.task(name="tasks.enqueue_recurring_schedules", bind=True)
def enqueue_recurring_schedules(self: Task) -> Dict:
    """Celery beat task: start a run for every recurring schedule that is due."""
    with session_scope() as db:
        schedule_ids = due_recurring_schedule_ids(db)
    for schedule_id in schedule_ids:
        run_schedule_task.delay(schedule_id)
    if schedule_ids:
        logger.info(
            f"Recurring schedules: {len(schedule_ids)} runs enqueued",
            extra=log_context(task=self.name, schedule_ids=schedule_ids),
        )
    return {"status": "success", "enqueued": len(schedule_ids)}
