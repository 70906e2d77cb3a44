"""
Export Dispatcher

Delivers pending Exports to their Destination connector in batches.

Claiming: a sweeper moves due `pending` exports to `processing` with an
update-where-state statement, so two workers never send the same export.

Per batch the connector answers with one of:
- success: every export in the batch completes
- success plus `process_exports`: the listed profiles are being handled
  asynchronously; an ExportProcessor is persisted and polled later
- per-record errors: only the named profiles' exports are retried (or fail
  permanently after EXPORT_MAX_ATTEMPTS); `info` level errors complete
- an exception, or failure without per-record errors (ExportBatchError): the
  task records the failure against every export in the batch right away
  (`record_batch_failure`), which puts them back to pending with a backoff
  `send_at`; the sweeper claims them again once due

Exports are only `processing` while a send task holds them, so the stale claim
release never races a batch that is waiting to be retried.
"""

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional
import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import ConnectorCapabilityError, ExportBatchError
from models import Destination, Export, ExportProcessor, as_utc, utcnow
from schemas import (
    DispatchSummary,
    ErrorWithProfileId,
    ExportedProfile,
    ExportProfileResponse,
    ExportProfilesResponse,
)
from services.connectors import ConnectorRegistry, has_method
from services.profile_sync import finalize_profile_destroy

logger = logging.getLogger(__name__)


def claim_pending_exports(
    db: Session, destination_id: str, limit: Optional[int] = None, now: Optional[datetime] = None
) -> List[Export]:
    """Move up to `limit` due pending exports of one destination to processing and return them."""
    now = now or utcnow()
    limit = limit or settings.EXPORT_BATCH_SIZE
    db.flush()
    candidate_ids = [
        eid for (eid,) in db.query(Export.id)
        .filter(
            Export.destination_id == destination_id,
            Export.state == "pending",
            Export.send_at <= now,
        )
        .order_by(Export.send_at, Export.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    ]
    if not candidate_ids:
        return []

    db.execute(
        update(Export)
        .where(Export.id.in_(candidate_ids), Export.state == "pending")
        .values(state="processing", started_at=now),
        execution_options={"synchronize_session": False},
    )
    return (
        db.query(Export)
        .filter(Export.id.in_(candidate_ids), Export.state == "processing")
        .populate_existing()
        .order_by(Export.send_at, Export.created_at)
        .all()
    )


def release_stale_exports(db: Session, now: Optional[datetime] = None) -> int:
    """Claimed exports whose worker died go back to pending."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.EXPORT_CLAIM_TIMEOUT_S)
    count = db.execute(
        update(Export)
        .where(
            Export.state == "processing",
            Export.export_processor_id.is_(None),
            Export.started_at < cutoff,
        )
        .values(state="pending", started_at=None),
        execution_options={"synchronize_session": False},
    ).rowcount
    if count:
        logger.warning(f"Released {count} stale processing exports")
    return count


def destinations_with_due_exports(db: Session, now: Optional[datetime] = None) -> List[str]:
    now = now or utcnow()
    return [
        did for (did,) in db.query(Export.destination_id)
        .join(Destination, Destination.id == Export.destination_id)
        .filter(Destination.state == "ready", Export.state == "pending", Export.send_at <= now)
        .distinct()
    ]


def exported_profile(export: Export) -> ExportedProfile:
    return ExportedProfile(
        export_id=export.id,
        profile_id=export.profile_id,
        old_profile_properties=export.old_profile_properties or {},
        new_profile_properties=export.new_profile_properties or {},
        old_groups=export.old_groups or [],
        new_groups=export.new_groups or [],
        to_delete=export.to_delete,
    )


def _complete(export: Export, now: datetime, summary: DispatchSummary, message: Optional[str] = None, level: Optional[str] = None) -> None:
    export.state = "complete"
    export.completed_at = now
    export.error_message = message
    export.error_level = level
    summary.completed.append(export.id)


def retry_backoff(attempt: int, retry_delay: Optional[int] = None) -> int:
    """Seconds until the next attempt: the connector's delay, else exponential from TASK_RETRY_DELAY_S."""
    if retry_delay:
        return min(int(retry_delay), settings.TASK_RETRY_DELAY_MAX_S)
    return min(settings.TASK_RETRY_DELAY_S * (2 ** max(0, attempt - 1)), settings.TASK_RETRY_DELAY_MAX_S)


def _record_error(
    export: Export,
    message: str,
    level: str,
    retry_delay: Optional[int],
    now: datetime,
    summary: DispatchSummary,
) -> None:
    if level == "info":
        _complete(export, now, summary, message, level)
        return
    export.retry_count += 1
    export.error_message = message
    export.error_level = level
    export.export_processor_id = None
    if export.retry_count >= settings.EXPORT_MAX_ATTEMPTS:
        export.state = "failed"
        export.completed_at = now
        summary.failed.append(export.id)
        logger.error(
            f"Export {export.id} for profile {export.profile_id} failed permanently after "
            f"{export.retry_count} attempts: {message}"
        )
        return
    export.state = "pending"
    export.started_at = None
    export.send_at = now + timedelta(seconds=retry_backoff(export.retry_count, retry_delay))
    summary.retrying.append(export.id)


def _apply_response(
    db: Session,
    destination: Destination,
    exports: List[Export],
    response: ExportProfilesResponse,
    now: datetime,
    summary: DispatchSummary,
    processor: Optional[ExportProcessor] = None,
) -> None:
    if not response.success and not response.errors:
        raise ExportBatchError(destination.id, "connector reported failure without errors", response.retry_delay)

    errors: Dict[str, ErrorWithProfileId] = {e.profile_id: e for e in response.errors}
    unknown = set(errors) - {e.profile_id for e in exports}
    if unknown:
        logger.warning(f"Destination {destination.id} reported errors for profiles not in the batch: {sorted(unknown)}")

    waiting = set()
    if response.process_exports is not None and processor is None:
        token = response.process_exports
        processor = ExportProcessor(
            destination_id=destination.id,
            remote_key=token.remote_key,
            profile_ids=list(token.profile_ids),
            process_at=now + timedelta(seconds=token.process_delay),
            state="pending",
        )
        db.add(processor)
        db.flush()
        summary.export_processor_id = processor.id
        waiting = set(token.profile_ids)

    for export in exports:
        error = errors.get(export.profile_id)
        if error is not None:
            _record_error(export, error.message, error.error_level, response.retry_delay, now, summary)
        elif export.profile_id in waiting:
            export.export_processor_id = processor.id
            summary.processing.append(export.id)
        else:
            _complete(export, now, summary)
    db.flush()

    for export in exports:
        if export.to_delete and export.state in ("complete", "failed"):
            finalize_profile_destroy(db, export.profile_id)


def _call_export(registry: ConnectorRegistry, destination: Destination, exports: List[Export]) -> ExportProfilesResponse:
    connection = registry.get_connection(destination.type)
    payload = [exported_profile(e) for e in exports]
    if has_method(connection, "export_profiles"):
        raw = connection.export_profiles(
            app_options=destination.app.options,
            destination_options=destination.options,
            exports=payload,
        )
        return ExportProfilesResponse.model_validate(raw, from_attributes=True)

    if not has_method(connection, "export_profile"):
        raise ConnectorCapabilityError(connection.name, "export_profiles")

    errors: List[ErrorWithProfileId] = []
    retry_delay: Optional[int] = None
    for item in payload:
        single = ExportProfileResponse.model_validate(
            connection.export_profile(
                app_options=destination.app.options,
                destination_options=destination.options,
                export=item,
            ),
            from_attributes=True,
        )
        if not single.success:
            errors.append(ErrorWithProfileId(profile_id=item.profile_id, message=single.error or "export failed"))
            if single.retry_delay is not None:
                retry_delay = max(retry_delay or 0, single.retry_delay)
    return ExportProfilesResponse(success=not errors, errors=errors, retry_delay=retry_delay)


def send_exports(
    db: Session,
    destination: Destination,
    exports: List[Export],
    registry: ConnectorRegistry,
    now: Optional[datetime] = None,
) -> DispatchSummary:
    """
    Send one batch of claimed exports and record the outcome per export.

    Connector exceptions propagate with the exports still `processing`; the
    caller records them with `record_batch_failure`.
    """
    now = now or utcnow()
    summary = DispatchSummary(destination_id=destination.id)
    if not exports:
        return summary

    response = _call_export(registry, destination, exports)
    _apply_response(db, destination, exports, response, now, summary)
    logger.info(
        f"Destination {destination.id}: {len(summary.completed)} complete, {len(summary.retrying)} retrying, "
        f"{len(summary.failed)} failed, {len(summary.processing)} processing asynchronously"
    )
    return summary


def process_exports(
    db: Session, processor: ExportProcessor, registry: ConnectorRegistry, now: Optional[datetime] = None
) -> DispatchSummary:
    """Poll the connector about an asynchronous batch; reschedule until it resolves."""
    now = now or utcnow()
    summary = DispatchSummary(destination_id=processor.destination_id, export_processor_id=processor.id)
    if processor.state != "pending":
        return summary

    exports = (
        db.query(Export)
        .filter(Export.export_processor_id == processor.id, Export.state == "processing")
        .order_by(Export.created_at)
        .all()
    )
    if as_utc(processor.process_at) > now:
        summary.processing = [e.id for e in exports]
        return summary

    destination = db.get(Destination, processor.destination_id)
    connection = registry.get_connection(destination.type)
    if not has_method(connection, "process_exported_profiles"):
        raise ConnectorCapabilityError(connection.name, "process_exported_profiles")

    raw = connection.process_exported_profiles(
        app_options=destination.app.options,
        destination_options=destination.options,
        remote_key=processor.remote_key,
        exports=[exported_profile(e) for e in exports],
    )
    response = ExportProfilesResponse.model_validate(raw, from_attributes=True)

    if response.process_exports is not None:
        processor.retry_count += 1
        if processor.retry_count >= settings.EXPORT_PROCESSOR_MAX_ATTEMPTS:
            fail_export_processor(db, processor, "remote batch did not finish in time", now, summary)
            return summary
        processor.process_at = now + timedelta(seconds=response.process_exports.process_delay)
        summary.processing = [e.id for e in exports]
        db.flush()
        return summary

    _apply_response(db, destination, exports, response, now, summary, processor=processor)
    processor.state = "complete"
    processor.completed_at = now
    db.flush()
    return summary


def fail_export_processor(
    db: Session,
    processor: ExportProcessor,
    message: str,
    now: Optional[datetime] = None,
    summary: Optional[DispatchSummary] = None,
) -> DispatchSummary:
    now = now or utcnow()
    summary = summary or DispatchSummary(destination_id=processor.destination_id, export_processor_id=processor.id)
    processor.state = "failed"
    processor.error_message = message
    processor.completed_at = now
    for export in db.query(Export).filter(Export.export_processor_id == processor.id, Export.state == "processing"):
        _record_error(export, message, "error", None, now, summary)
    db.flush()
    logger.error(f"Export processor {processor.id} failed: {message}")
    return summary


def record_processor_error(
    db: Session,
    processor: ExportProcessor,
    message: str,
    retry_delay: Optional[int] = None,
    now: Optional[datetime] = None,
) -> DispatchSummary:
    """A failed poll pushes `process_at` back with backoff; too many fail the processor."""
    now = now or utcnow()
    summary = DispatchSummary(destination_id=processor.destination_id, export_processor_id=processor.id)
    if processor.state != "pending":
        return summary
    processor.retry_count += 1
    processor.error_message = message
    if processor.retry_count >= settings.EXPORT_PROCESSOR_MAX_ATTEMPTS:
        return fail_export_processor(db, processor, message, now, summary)
    processor.process_at = now + timedelta(seconds=retry_backoff(processor.retry_count, retry_delay))
    summary.processing = [
        eid for (eid,) in db.query(Export.id)
        .filter(Export.export_processor_id == processor.id, Export.state == "processing")
    ]
    db.flush()
    logger.warning(f"Export processor {processor.id} poll failed, next poll at {processor.process_at}: {message}")
    return summary


def due_export_processor_ids(db: Session, now: Optional[datetime] = None) -> List[str]:
    now = now or utcnow()
    return [
        pid for (pid,) in db.query(ExportProcessor.id)
        .filter(ExportProcessor.state == "pending", ExportProcessor.process_at <= now)
    ]


def record_batch_failure(
    db: Session, export_ids: Iterable[str], message: str, retry_delay: Optional[int] = None, now: Optional[datetime] = None
) -> DispatchSummary:
    """Count a whole-batch failure against each export still processing."""
    now = now or utcnow()
    exports = db.query(Export).filter(Export.id.in_(list(export_ids)), Export.state == "processing").all()
    summary = DispatchSummary(destination_id=exports[0].destination_id if exports else "")
    for export in exports:
        _record_error(export, message, "error", retry_delay, now, summary)
    db.flush()
    return summary


def fail_exports(db: Session, export_ids: Iterable[str], message: str, now: Optional[datetime] = None) -> int:
    """Mark exports failed outright (destination gone, configuration error)."""
    now = now or utcnow()
    count = 0
    for export in db.query(Export).filter(Export.id.in_(list(export_ids)), Export.state.in_(("pending", "processing"))):
        export.state = "failed"
        export.error_message = message
        export.error_level = "error"
        export.completed_at = now
        count += 1
    db.flush()
    return count
