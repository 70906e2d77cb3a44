"""
Celery tasks for background processing.

Tasks are defined here and imported by both the API side (to enqueue) and
the worker (to execute). Each engine concern has its own queue so a slow
destination cannot starve property resolution.
"""
from celery import Celery
from kombu import Queue
from core.config import settings
from celerybeat_schedule import beat_schedule

QUEUES = ("profile_properties", "profiles", "exports", "imports", "groups")

# Create Celery app instance
celery_app = Celery(
    "profile_sync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.TASK_TIME_LIMIT_S,
    task_soft_time_limit=settings.TASK_SOFT_TIME_LIMIT_S,
    # A task is acknowledged after it ran, so a worker crash redelivers it
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_queues=[Queue(name) for name in QUEUES],
    task_default_queue="profiles",
    task_routes={
        "tasks.import_profile_property": {"queue": "profile_properties"},
        "tasks.import_profile_properties": {"queue": "profile_properties"},
        "tasks.enqueue_pending_profile_properties": {"queue": "profile_properties"},
        "tasks.sync_profile": {"queue": "profiles"},
        "tasks.destroy_profile": {"queue": "profiles"},
        "tasks.complete_pending_profiles": {"queue": "profiles"},
        "tasks.send_exports": {"queue": "exports"},
        "tasks.process_exports": {"queue": "exports"},
        "tasks.enqueue_pending_exports": {"queue": "exports"},
        "tasks.run_schedule": {"queue": "imports"},
        "tasks.enqueue_recurring_schedules": {"queue": "imports"},
        "tasks.run_group": {"queue": "groups"},
        "tasks.run_calculated_groups": {"queue": "groups"},
        "tasks.purge_deleted_groups": {"queue": "groups"},
    },
    beat_schedule=beat_schedule,
)

# Import tasks to register them
from . import profile_tasks  # noqa: E402
from . import profile_property_tasks  # noqa: E402
from . import export_tasks  # noqa: E402
from . import group_tasks  # noqa: E402
from . import import_tasks  # noqa: E402

__all__ = ["celery_app"]
