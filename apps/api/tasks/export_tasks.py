"""
Export tasks (queue: exports).

The beat sweeper releases exports stuck in `processing`, claims due pending
exports per destination in batches, and enqueues one send task per batch.
A batch that fails as a whole is counted against each of its exports at once
(`record_batch_failure`): they go back to pending with a backoff `send_at`, or
fail for good after EXPORT_MAX_ATTEMPTS. The task never retries a batch itself,
so an export is `processing` only while a send task is actually working on it.
"""

from typing import Any, Dict, List, Tuple
import logging

from celery import Task

from core.config import settings
from core.database import session_scope
from core.exceptions import NotFoundError, ValidationError
from core.logging import log_context
from models import Export, ExportProcessor
from services.app_throttle import app_parallelism, app_slot
from services.connectors import get_default_registry
from services.destinations import get_destination
from services.export_dispatch import (
    claim_pending_exports,
    destinations_with_due_exports,
    due_export_processor_ids,
    fail_export_processor,
    fail_exports,
    process_exports,
    record_batch_failure,
    record_processor_error,
    release_stale_exports,
    send_exports,
)
from tasks import celery_app
from tasks.retryable import RetryableTask

logger = logging.getLogger(__name__)

# Batches claimed per destination per sweep
MAX_BATCHES_PER_DESTINATION = 10


def _error_message(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"


class SendExportsTask(RetryableTask):
    abstract = True

    def on_permanent_failure(self, exc: Exception, args: Any, kwargs: Any) -> None:
        args = list(args or [])
        export_ids = args[1] if len(args) > 1 else (kwargs or {}).get("export_ids")
        if not export_ids:
            return
        with session_scope() as db:
            record_batch_failure(db, export_ids, _error_message(exc), getattr(exc, "retry_delay", None))


class ProcessExportsTask(RetryableTask):
    abstract = True

    def on_permanent_failure(self, exc: Exception, args: Any, kwargs: Any) -> None:
        args = list(args or [])
        processor_id = args[0] if args else (kwargs or {}).get("export_processor_id")
        if not processor_id:
            return
        with session_scope() as db:
            processor = db.get(ExportProcessor, processor_id)
            if processor is not None and processor.state == "pending":
                fail_export_processor(db, processor, _error_message(exc))


@celery_app.task(name="tasks.send_exports", bind=True, base=SendExportsTask)
def send_exports_task(self: Task, destination_id: str, export_ids: List[str]) -> Dict:
    registry = get_default_registry()
    try:
        with session_scope() as db:
            destination = get_destination(db, destination_id)
            if destination.state != "ready":
                dropped = fail_exports(db, export_ids, f"destination {destination_id} is {destination.state}")
                return {"status": "skipped", "reason": "destination_not_ready", "failed": dropped}
            exports = (
                db.query(Export)
                .filter(Export.id.in_(list(export_ids)), Export.state == "processing")
                .order_by(Export.send_at, Export.created_at)
                .all()
            )
            app = destination.app
            with app_slot(app.id, app_parallelism(registry, app)) as acquired:
                if not acquired:
                    return self.defer(reason=f"app {app.id} at capacity")
                summary = send_exports(db, destination, exports, registry)
    except NotFoundError as e:
        with session_scope() as db:
            fail_exports(db, export_ids, e.detail)
        return self.skipped(e)
    except ValidationError:
        raise
    except Exception as e:
        # The batch session rolled back; record the failure in a fresh one.
        with session_scope() as db:
            summary = record_batch_failure(db, export_ids, _error_message(e), getattr(e, "retry_delay", None))
        logger.warning(
            f"Export batch to {destination_id} failed: {e}; {len(summary.retrying)} retrying, "
            f"{len(summary.failed)} failed",
            extra=log_context(**self.log_fields()),
        )
        return {"status": "failed", "error": _error_message(e), **summary.model_dump()}
    return {"status": "success", **summary.model_dump()}


@celery_app.task(name="tasks.process_exports", bind=True, base=ProcessExportsTask)
def process_exports_task(self: Task, export_processor_id: str) -> Dict:
    registry = get_default_registry()
    try:
        with session_scope() as db:
            processor = db.get(ExportProcessor, export_processor_id)
            if processor is None:
                raise NotFoundError("export processor", export_processor_id)
            summary = process_exports(db, processor, registry)
    except NotFoundError as e:
        return self.skipped(e)
    except ValidationError:
        raise
    except Exception as e:
        with session_scope() as db:
            processor = db.get(ExportProcessor, export_processor_id)
            if processor is None:
                return self.skipped(NotFoundError("export processor", export_processor_id))
            summary = record_processor_error(db, processor, _error_message(e), getattr(e, "retry_delay", None))
        logger.warning(
            f"Export processor {export_processor_id} poll failed: {e}",
            extra=log_context(**self.log_fields(), destination_id=summary.destination_id),
        )
        return {"status": "failed", "error": _error_message(e), **summary.model_dump()}
    return {"status": "success", **summary.model_dump()}


@celery_app.task(name="tasks.enqueue_pending_exports", bind=True)
def enqueue_pending_exports(self: Task) -> Dict:
    """
    Celery beat task: claim due exports and poll due export processors.

    Claims commit before anything is enqueued, so a send task never sees an
    export that is not yet `processing`.
    """
    batches: List[Tuple[str, List[str]]] = []
    with session_scope() as db:
        released = release_stale_exports(db)
        for destination_id in destinations_with_due_exports(db):
            for _ in range(MAX_BATCHES_PER_DESTINATION):
                claimed = claim_pending_exports(db, destination_id, limit=settings.EXPORT_BATCH_SIZE)
                if not claimed:
                    break
                batches.append((destination_id, [e.id for e in claimed]))
        processor_ids = due_export_processor_ids(db)

    for destination_id, export_ids in batches:
        send_exports_task.delay(destination_id, export_ids)
    for processor_id in processor_ids:
        process_exports_task.delay(processor_id)

    if batches or processor_ids or released:
        logger.info(
            f"Export sweep: {len(batches)} batches, {len(processor_ids)} processors, {released} stale released",
            extra=log_context(task=self.name),
        )
    return {
        "status": "success",
        "batches": len(batches),
        "exports": sum(len(ids) for _, ids in batches),
        "processors": len(processor_ids),
        "released": released,
    }
