"""
Export dispatch tests

Claiming, batch delivery and the per-record outcome rules, including
asynchronous completion through export processors.
"""
from datetime import timedelta

import pytest

from core.config import settings
from core.exceptions import ExportBatchError
from models import Export, ExportProcessor, Profile, as_utc, utcnow
from services import export_dispatch as dispatch
from services import groups as group_service
from services.profile_sync import destroy_profile, sync_profile
from services.profiles import add_or_update_properties


@pytest.fixture
def vips(db_session):
    return group_service.create_group(db_session, "vips", "manual")


@pytest.fixture
def members(db_session, make_property, make_profile, vips):
    """Two ready profiles in the tracked group."""
    make_property("first_name")
    profiles = []
    for email, name in (("ada@example.com", "Ada"), ("bob@example.com", "Bob")):
        profile = make_profile(email)
        add_or_update_properties(db_session, profile, {"first_name": name})
        group_service.add_profile(db_session, vips, profile)
        profiles.append(profile)
    return profiles


@pytest.fixture
def crm(make_destination, vips, members):
    return make_destination(mapping={"Email": "email", "First": "first_name"}, group=vips)


def queue_exports(db, registry, profiles, destination, now=None):
    for profile in profiles:
        sync_profile(db, profile, registry, resolve=False, now=now)
    return dispatch.claim_pending_exports(db, destination.id, now=now)


def export_of(db, profile):
    return db.query(Export).filter(Export.profile_id == profile.id).order_by(Export.created_at.desc()).first()


class TestClaim:

    def test_claim_moves_due_exports_to_processing(self, db_session, registry, crm, members):
        claimed = queue_exports(db_session, registry, members, crm)

        assert {e.profile_id for e in claimed} == {p.id for p in members}
        assert all(e.state == "processing" for e in claimed)
        assert dispatch.claim_pending_exports(db_session, crm.id) == []

    def test_exports_not_yet_due_are_left(self, db_session, registry, crm, members):
        for profile in members:
            sync_profile(db_session, profile, registry, resolve=False)
        earlier = utcnow() - timedelta(minutes=5)

        assert dispatch.claim_pending_exports(db_session, crm.id, now=earlier) == []
        assert dispatch.destinations_with_due_exports(db_session) == [crm.id]

    def test_stale_claims_are_released(self, db_session, registry, crm, members):
        now = utcnow()
        queue_exports(db_session, registry, members, crm, now=now)

        assert dispatch.release_stale_exports(db_session, now=now + timedelta(seconds=60)) == 0
        assert dispatch.release_stale_exports(db_session, now=now + timedelta(minutes=30)) == 0
        stale = now + timedelta(seconds=settings.EXPORT_CLAIM_TIMEOUT_S + 1)
        assert dispatch.release_stale_exports(db_session, now=stale) == 2
        assert len(dispatch.claim_pending_exports(db_session, crm.id)) == 2


class TestSendExports:

    def test_success_completes_every_export(self, db_session, registry, fake_export, crm, members):
        exports = queue_exports(db_session, registry, members, crm)

        summary = dispatch.send_exports(db_session, crm, exports, registry)

        assert sorted(summary.completed) == sorted(e.id for e in exports)
        assert all(e.state == "complete" and e.completed_at is not None for e in exports)
        [batch] = fake_export.batches
        assert {p.profile_id for p in batch} == {p.id for p in members}
        assert batch[0].new_groups == ["VIPS"]

    def test_per_record_error_only_retries_that_profile(self, db_session, registry, fake_export, crm, members):
        ada, bob = members
        exports = queue_exports(db_session, registry, members, crm)
        now = utcnow()
        fake_export.responses = [{
            "success": False,
            "retry_delay": 30,
            "errors": [{"profile_id": ada.id, "message": "invalid email"}],
        }]

        summary = dispatch.send_exports(db_session, crm, exports, registry, now=now)

        ada_export, bob_export = export_of(db_session, ada), export_of(db_session, bob)
        assert summary.retrying == [ada_export.id]
        assert summary.completed == [bob_export.id]
        assert bob_export.state == "complete"
        assert ada_export.state == "pending"
        assert ada_export.retry_count == 1
        assert ada_export.error_message == "invalid email"
        assert as_utc(ada_export.send_at) == now + timedelta(seconds=30)

    def test_info_level_errors_complete(self, db_session, registry, fake_export, crm, members):
        ada, _ = members
        exports = queue_exports(db_session, registry, members, crm)
        fake_export.responses = [{
            "success": True,
            "errors": [{"profile_id": ada.id, "message": "already subscribed", "error_level": "info"}],
        }]

        summary = dispatch.send_exports(db_session, crm, exports, registry)

        assert len(summary.completed) == 2
        ada_export = export_of(db_session, ada)
        assert ada_export.state == "complete"
        assert ada_export.error_level == "info"
        assert ada_export.error_message == "already subscribed"

    def test_max_attempts_fail_the_export(self, db_session, registry, fake_export, crm, members):
        ada, _ = members
        exports = queue_exports(db_session, registry, members, crm)
        export_of(db_session, ada).retry_count = 4
        fake_export.responses = [{"success": False, "errors": [{"profile_id": ada.id, "message": "nope"}]}]

        summary = dispatch.send_exports(db_session, crm, exports, registry)

        ada_export = export_of(db_session, ada)
        assert summary.failed == [ada_export.id]
        assert ada_export.state == "failed"
        assert ada_export.retry_count == 5

    def test_failure_without_errors_fails_the_batch(self, db_session, registry, fake_export, crm, members):
        exports = queue_exports(db_session, registry, members, crm)
        fake_export.responses = [{"success": False, "retry_delay": 120}]

        with pytest.raises(ExportBatchError) as exc:
            dispatch.send_exports(db_session, crm, exports, registry)
        assert exc.value.retry_delay == 120
        assert all(e.state == "processing" for e in exports)

    def test_connector_exception_propagates_then_batch_failure_is_recorded(
        self, db_session, registry, fake_export, crm, members
    ):
        exports = queue_exports(db_session, registry, members, crm)
        fake_export.responses = [RuntimeError("connection reset")]

        with pytest.raises(RuntimeError):
            dispatch.send_exports(db_session, crm, exports, registry)
        assert all(e.state == "processing" for e in exports)

        summary = dispatch.record_batch_failure(db_session, [e.id for e in exports], "connection reset")
        assert len(summary.retrying) == 2
        assert all(e.state == "pending" and e.retry_count == 1 for e in exports)

    def test_single_export_fallback(self, db_session, registry, make_destination, vips, members):
        ada, bob = members
        destination = make_destination(name="webhook", type="fake-single-export", options={}, group=vips)
        connection = registry.get_connection("fake-single-export")
        connection.fail_profile_ids = [ada.id]
        now = utcnow()
        exports = queue_exports(db_session, registry, members, destination, now=now)

        summary = dispatch.send_exports(db_session, destination, exports, registry, now=now)

        assert len(connection.exports) == 2
        assert summary.completed == [export_of(db_session, bob).id]
        ada_export = export_of(db_session, ada)
        assert ada_export.state == "pending"
        assert ada_export.error_message == "rejected"
        assert as_utc(ada_export.send_at) == now + timedelta(seconds=30)

    def test_fail_exports(self, db_session, registry, crm, members):
        exports = queue_exports(db_session, registry, members, crm)
        assert dispatch.fail_exports(db_session, [e.id for e in exports], "destination is not ready") == 2
        assert all(e.state == "failed" for e in exports)

    def test_delivered_removal_finishes_profile_destroy(self, db_session, registry, crm, members):
        ada, _ = members
        ada_id = ada.id
        destroy_profile(db_session, ada)
        exports = dispatch.claim_pending_exports(db_session, crm.id)
        assert [e.to_delete for e in exports] == [True]

        dispatch.send_exports(db_session, crm, exports, registry)

        assert db_session.get(Profile, ada_id) is None


class TestExportProcessors:

    def test_asynchronous_completion(self, db_session, registry, fake_export, crm, members):
        ada, bob = members
        now = utcnow()
        exports = queue_exports(db_session, registry, members, crm, now=now)
        fake_export.responses = [{
            "success": True,
            "process_exports": {"remote_key": "job-1", "profile_ids": [ada.id], "process_delay": 60},
        }]

        summary = dispatch.send_exports(db_session, crm, exports, registry, now=now)

        processor = db_session.get(ExportProcessor, summary.export_processor_id)
        ada_export = export_of(db_session, ada)
        assert summary.processing == [ada_export.id]
        assert summary.completed == [export_of(db_session, bob).id]
        assert ada_export.state == "processing"
        assert ada_export.export_processor_id == processor.id
        assert processor.remote_key == "job-1"

        # not due yet
        assert dispatch.due_export_processor_ids(db_session, now=now) == []
        early = dispatch.process_exports(db_session, processor, registry, now=now)
        assert early.processing == [ada_export.id]
        assert fake_export.process_calls == []

        # still running remotely: polled again later
        later = now + timedelta(seconds=61)
        assert dispatch.due_export_processor_ids(db_session, now=later) == [processor.id]
        fake_export.process_responses = [
            {"success": True, "process_exports": {"remote_key": "job-1", "profile_ids": [ada.id], "process_delay": 30}},
            {"success": True},
        ]
        dispatch.process_exports(db_session, processor, registry, now=later)
        assert processor.retry_count == 1
        assert as_utc(processor.process_at) == later + timedelta(seconds=30)
        assert processor.state == "pending"

        done = dispatch.process_exports(db_session, processor, registry, now=later + timedelta(seconds=31))
        assert done.completed == [ada_export.id]
        assert ada_export.state == "complete"
        assert processor.state == "complete"
        assert [c["remote_key"] for c in fake_export.process_calls] == ["job-1", "job-1"]

    def test_failed_processor_sends_exports_back(self, db_session, registry, fake_export, crm, members):
        ada, _ = members
        exports = queue_exports(db_session, registry, members, crm)
        fake_export.responses = [{
            "success": True,
            "process_exports": {"remote_key": "job-2", "profile_ids": [ada.id]},
        }]
        summary = dispatch.send_exports(db_session, crm, exports, registry)
        processor = db_session.get(ExportProcessor, summary.export_processor_id)

        result = dispatch.fail_export_processor(db_session, processor, "remote batch did not finish in time")

        ada_export = export_of(db_session, ada)
        assert processor.state == "failed"
        assert result.retrying == [ada_export.id]
        assert ada_export.state == "pending"
        assert ada_export.export_processor_id is None


class TestRetryBackoff:

    def test_connector_delay_wins_and_is_capped(self):
        assert dispatch.retry_backoff(3, retry_delay=45) == 45
        assert dispatch.retry_backoff(1, retry_delay=10 ** 6) == 3600

    def test_exponential_per_attempt(self):
        assert [dispatch.retry_backoff(n) for n in (1, 2, 3)] == [60, 120, 240]
        assert dispatch.retry_backoff(20) == 3600

    def test_repeated_batch_failures_back_off(self, db_session, registry, crm, members):
        exports = queue_exports(db_session, registry, members, crm)
        now = utcnow()
        dispatch.record_batch_failure(db_session, [e.id for e in exports], "timeout", now=now)
        assert all(as_utc(e.send_at) == now + timedelta(seconds=60) for e in exports)

        again = dispatch.claim_pending_exports(db_session, crm.id, now=now + timedelta(seconds=61))
        dispatch.record_batch_failure(db_session, [e.id for e in again], "timeout", now=now)
        assert all(e.retry_count == 2 for e in exports)
        assert all(as_utc(e.send_at) == now + timedelta(seconds=120) for e in exports)
