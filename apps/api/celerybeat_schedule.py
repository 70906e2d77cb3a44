"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule. The sweepers are cheap when
there is nothing to claim, so they run every few seconds.
"""

from datetime import timedelta

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Claim pending ProfileProperty rows (including deferred ones whose
    # retry watermark has passed) and resolve them in batches.
    'enqueue-pending-profile-properties': {
        'task': 'tasks.enqueue_pending_profile_properties',
        'schedule': timedelta(seconds=5),
    },
    # Claim due exports per destination and poll asynchronous export batches.
    'enqueue-pending-exports': {
        'task': 'tasks.enqueue_pending_exports',
        'schedule': timedelta(seconds=5),
    },
    # Re-sync stalled pending profiles, delete destroyed profiles once exported.
    'complete-pending-profiles': {
        'task': 'tasks.complete_pending_profiles',
        'schedule': timedelta(seconds=30),
    },
    'enqueue-recurring-schedules': {
        'task': 'tasks.enqueue_recurring_schedules',
        'schedule': crontab(minute='*'),  # Every minute
    },
    'purge-deleted-groups': {
        'task': 'tasks.purge_deleted_groups',
        'schedule': crontab(minute='*/5'),
    },
    # Relative date rules ("within the last 7 days") drift with the clock.
    'run-calculated-groups': {
        'task': 'tasks.run_calculated_groups',
        'schedule': crontab(hour='*', minute=0),  # Hourly
    },
}
