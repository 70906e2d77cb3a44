"""
Retryable task base.

Every engine task runs with a bounded attempt budget:
- connector / transient errors retry with a countdown (the connector's
  `retry_delay` when it gave one, else exponential backoff from
  TASK_RETRY_DELAY_S, capped at TASK_RETRY_DELAY_MAX_S)
- validation / configuration errors never retry
- a missing subject cancels the task (`{"status": "skipped"}`)
- an exhausted task is written to the `task_failures` table and logged

`defer()` is a voluntary reschedule (throttled, waiting on something) and does
not spend an attempt.
"""

from typing import Any, Dict, Optional
import inspect
import logging

from celery import Task

from core.config import settings
from core.database import session_scope
from core.exceptions import NotFoundError, ValidationError
from core.logging import log_context
from models import TaskFailure

logger = logging.getLogger(__name__)


def retry_countdown(retries: int, retry_delay: Optional[int] = None) -> int:
    if retry_delay:
        return min(int(retry_delay), settings.TASK_RETRY_DELAY_MAX_S)
    return min(settings.TASK_RETRY_DELAY_S * (2 ** retries), settings.TASK_RETRY_DELAY_MAX_S)


def record_task_failure(
    task_name: str,
    task_id: Optional[str],
    args: Any,
    kwargs: Any,
    error: str,
    attempts: int,
) -> None:
    with session_scope() as db:
        db.add(TaskFailure(
            task_name=task_name,
            task_id=task_id,
            args=list(args or []),
            kwargs=dict(kwargs or {}),
            error=error,
            attempts=attempts,
        ))


class RetryableTask(Task):
    abstract = True
    max_retries = max(0, settings.TASK_MAX_ATTEMPTS - 1)
    # Retry is decided explicitly in retry_for()
    autoretry_for = ()

    def log_fields(self, args: Any = None, kwargs: Any = None) -> Dict[str, Any]:
        """Task name and id plus the `*_id` / `*_ids` arguments of the call."""
        args = self.request.args if args is None else args
        kwargs = self.request.kwargs if kwargs is None else kwargs
        fields: Dict[str, Any] = {"task": self.name, "task_id": self.request.id}
        try:
            bound = inspect.signature(self.run).bind_partial(*(args or ()), **(kwargs or {}))
        except TypeError:
            return fields
        fields.update({k: v for k, v in bound.arguments.items() if k.endswith(("_id", "_ids"))})
        return fields

    def skipped(self, exc: NotFoundError) -> Dict[str, Any]:
        logger.info(f"{self.name} skipped: {exc.detail}", extra=log_context(**self.log_fields()))
        return {"status": "skipped", "reason": exc.detail}

    def retry_for(self, exc: Exception, retry_delay: Optional[int] = None):
        """
        Raise the right thing for a failed attempt.

        NotFoundError is handled by callers (skip). ValidationError propagates
        untouched so it fails on the first attempt.
        """
        if isinstance(exc, ValidationError):
            raise exc
        delay = retry_delay if retry_delay is not None else getattr(exc, "retry_delay", None)
        countdown = retry_countdown(self.request.retries, delay)
        logger.warning(
            f"{self.name} attempt {self.request.retries + 1}/{self.max_retries + 1} failed: {exc}; "
            f"retrying in {countdown}s",
            extra=log_context(**self.log_fields()),
        )
        raise self.retry(exc=exc, countdown=countdown)

    def defer(self, countdown: Optional[int] = None, reason: str = "deferred") -> Dict[str, Any]:
        countdown = settings.APP_SLOT_DEFER_S if countdown is None else countdown
        self.apply_async(args=self.request.args, kwargs=self.request.kwargs, countdown=countdown)
        logger.info(f"{self.name} deferred for {countdown}s ({reason})", extra=log_context(**self.log_fields()))
        return {"status": "deferred", "reason": reason, "countdown": countdown}

    def on_permanent_failure(self, exc: Exception, args: Any, kwargs: Any) -> None:
        """Hook for tasks that must mark their subject failed."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        attempts = (self.request.retries or 0) + 1
        fields = self.log_fields(args, kwargs)
        fields["task_id"] = task_id
        logger.error(
            f"{self.name} [{task_id}] failed permanently after {attempts} attempts: {exc}",
            extra=log_context(**fields),
        )
        try:
            self.on_permanent_failure(exc, args, kwargs)
        finally:
            record_task_failure(self.name, task_id, args, kwargs, f"{type(exc).__name__}: {exc}", attempts)
