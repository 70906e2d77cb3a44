"""
Dependency-aware property resolution tests

Each test wires real Property definitions to the in-memory import connector
and checks what lands in the profile's ProfileProperty rows.
"""
from datetime import timedelta

import pytest

from core.exceptions import DependencyConfigurationError
from models import ProfileProperty, as_utc, utcnow
from services import property_resolver as resolver
from services.profiles import get_properties, simplified_properties
from services.properties import create_property, make_property_ready, update_property
from services.sources import create_source, update_source


def started_at(db, profile_id, property_id):
    (value,) = (
        db.query(ProfileProperty.started_at)
        .filter(ProfileProperty.profile_id == profile_id, ProfileProperty.property_id == property_id)
        .one()
    )
    return as_utc(value)


@pytest.fixture
def batch_source(db_session, registry, app, source):
    """A second source on the same app whose connection answers for many profiles at once."""
    instance = create_source(
        db_session, registry, app.id, "fake-batch-import",
        name="scores", options={"table": "scores"}, mapping={"email": "email"},
    )
    return update_source(db_session, registry, instance, state="ready")


class TestResolveProfileProperty:

    def test_fetches_and_stores_value(self, db_session, registry, fake_import, make_property, make_profile):
        first_name = make_property("first_name")
        profile = make_profile("ada@example.com")
        fake_import.rows = [{"email": "ada@example.com", "first_name": "Ada"}]

        outcome = resolver.resolve_profile_property(db_session, profile.id, first_name.id, registry)

        assert outcome == resolver.READY
        properties = get_properties(db_session, profile)
        assert properties["first_name"]["state"] == "ready"
        assert properties["first_name"]["values"] == ["Ada"]

    def test_defers_until_dependency_is_ready(self, db_session, registry, fake_import, make_property, make_profile):
        user_id = make_property("user_id")
        total = make_property("total", options={"column": "total", "where": "user_id = {{ user_id }}"})
        profile = make_profile("ada@example.com")
        fake_import.rows = [{"email": "ada@example.com", "user_id": "u1", "total": 12}]
        now = utcnow()

        outcome = resolver.resolve_profile_property(db_session, profile.id, total.id, registry, now=now)

        assert outcome == resolver.DEFERRED
        assert fake_import.calls == []
        assert started_at(db_session, profile.id, total.id) == resolver.retry_started_at(now)
        assert started_at(db_session, profile.id, total.id) == now - timedelta(seconds=300) + timedelta(seconds=10)

        assert resolver.resolve_profile_property(db_session, profile.id, user_id.id, registry) == resolver.READY
        assert resolver.resolve_profile_property(db_session, profile.id, total.id, registry) == resolver.READY

        assert fake_import.calls[-1]["property_options"] == {"column": "total", "where": "user_id = u1"}
        assert simplified_properties(db_session, profile)["total"] == ["12"]

    def test_missing_connector_value_is_ready_but_absent(self, db_session, registry, fake_import, make_property, make_profile):
        first_name = make_property("first_name")
        profile = make_profile("ada@example.com")
        fake_import.rows = []

        assert resolver.resolve_profile_property(db_session, profile.id, first_name.id, registry) == resolver.READY
        entry = get_properties(db_session, profile)["first_name"]
        assert entry["state"] == "ready"
        assert entry["values"] == []

    def test_array_values(self, db_session, registry, fake_import, make_property, make_profile):
        tags = make_property("tags", is_array=True)
        profile = make_profile("ada@example.com")
        fake_import.rows = [{"email": "ada@example.com", "tags": ["a", None, "b"]}]

        resolver.resolve_profile_property(db_session, profile.id, tags.id, registry)

        assert simplified_properties(db_session, profile)["tags"] == ["a", "b"]

    def test_profile_missing_removes_orphan_rows(self, db_session, registry, make_property):
        first_name = make_property("first_name")
        db_session.add(ProfileProperty(profile_id="pro_gone", property_id=first_name.id, state="pending"))
        db_session.flush()

        outcome = resolver.resolve_profile_property(db_session, "pro_gone", first_name.id, registry)

        assert outcome == resolver.PROFILE_MISSING
        assert db_session.query(ProfileProperty).filter(ProfileProperty.profile_id == "pro_gone").count() == 0

    def test_property_missing(self, db_session, registry, make_profile):
        profile = make_profile("ada@example.com")
        assert resolver.resolve_profile_property(db_session, profile.id, "prp_gone", registry) == resolver.PROPERTY_MISSING

    def test_connector_errors_propagate(self, db_session, registry, fake_import, make_property, make_profile):
        first_name = make_property("first_name")
        profile = make_profile("ada@example.com")
        fake_import.error = ConnectionError("warehouse down")

        with pytest.raises(ConnectionError):
            resolver.resolve_profile_property(db_session, profile.id, first_name.id, registry)
        assert get_properties(db_session, profile)["first_name"]["state"] == "pending"


class TestResolveProfileProperties:

    def test_one_call_for_the_batch(self, db_session, registry, batch_source, make_profile):
        connection = registry.get_connection("fake-batch-import")
        score = create_property(db_session, batch_source, key="score", type="integer", options={"column": "score"})
        make_property_ready(db_session, score)
        ada = make_profile("ada@example.com")
        bob = make_profile("bob@example.com")
        connection.rows = [{"email": "ada@example.com", "score": 7}]

        outcomes = resolver.resolve_profile_properties(db_session, [ada.id, bob.id, "pro_gone"], score.id, registry)

        assert outcomes == {
            ada.id: resolver.READY,
            bob.id: resolver.READY,
            "pro_gone": resolver.PROFILE_MISSING,
        }
        assert len(connection.calls) == 1
        assert connection.calls[0]["profile_ids"] == [ada.id, bob.id]
        assert simplified_properties(db_session, ada)["score"] == [7]
        assert get_properties(db_session, bob)["score"]["state"] == "ready"
        assert simplified_properties(db_session, bob)["score"] == []

    def test_falls_back_to_single_calls(self, db_session, registry, fake_import, make_property, make_profile):
        first_name = make_property("first_name")
        ada = make_profile("ada@example.com")
        bob = make_profile("bob@example.com")
        fake_import.rows = [
            {"email": "ada@example.com", "first_name": "Ada"},
            {"email": "bob@example.com", "first_name": "Bob"},
        ]

        outcomes = resolver.resolve_profile_properties(db_session, [ada.id, bob.id], first_name.id, registry)

        assert set(outcomes.values()) == {resolver.READY}
        assert [c["method"] for c in fake_import.calls] == ["profile_property", "profile_property"]
        assert simplified_properties(db_session, bob)["first_name"] == ["Bob"]

    def test_deferred_profiles_are_left_out_of_the_call(self, db_session, registry, fake_import, make_property, make_profile):
        user_id = make_property("user_id")
        total = make_property("total", options={"column": "total", "where": "{{ user_id }}"})
        ada = make_profile("ada@example.com")
        bob = make_profile("bob@example.com")
        fake_import.rows = [{"email": "ada@example.com", "user_id": "u1", "total": 1}]
        resolver.resolve_profile_property(db_session, ada.id, user_id.id, registry)
        fake_import.calls.clear()

        outcomes = resolver.resolve_profile_properties(db_session, [ada.id, bob.id], total.id, registry)

        assert outcomes == {ada.id: resolver.READY, bob.id: resolver.DEFERRED}
        assert [c["profile_id"] for c in fake_import.calls] == [ada.id]

    def test_property_missing_for_every_profile(self, db_session, registry, make_profile):
        ada = make_profile("ada@example.com")
        assert resolver.resolve_profile_properties(db_session, [ada.id], "prp_gone", registry) == {
            ada.id: resolver.PROPERTY_MISSING
        }


class TestDependencies:

    def test_non_mapped_property_depends_on_mapping_key(self, db_session, make_property):
        make_property("user_id")
        first_name = make_property("first_name")
        total = make_property("total", options={"column": "total", "where": "{{ user_id }}"})
        assert resolver.property_dependencies(db_session, first_name) == {"email"}
        assert resolver.property_dependencies(db_session, total) == {"user_id", "email"}

    def test_unknown_key_is_a_configuration_error(self, db_session, make_property):
        with pytest.raises(DependencyConfigurationError, match="references unknown properties: nope"):
            make_property("total", options={"where": "{{ nope }}"})

    def test_self_reference(self, db_session, make_property):
        with pytest.raises(DependencyConfigurationError, match="cannot reference itself"):
            make_property("total", options={"where": "{{ total }}"})

    def test_cycle_is_rejected(self, db_session, make_property):
        a = make_property("a")
        make_property("b", options={"where": "{{ a }}"})
        with pytest.raises(DependencyConfigurationError, match="property a is part of a dependency cycle"):
            update_property(db_session, a, options={"where": "{{ b }}"})


class TestClaims:

    def test_claim_stamps_rows_and_is_exclusive(self, db_session, make_property, make_profile):
        first_name = make_property("first_name")
        ada = make_profile("ada@example.com")
        bob = make_profile("bob@example.com")
        now = utcnow()

        claimed = resolver.claim_pending_profile_ids(db_session, first_name.id, now=now)

        assert claimed == sorted([ada.id, bob.id])
        assert started_at(db_session, ada.id, first_name.id) == now
        assert resolver.claim_pending_profile_ids(db_session, first_name.id, now=now + timedelta(seconds=1)) == []

    def test_abandoned_claims_become_eligible_after_timeout(self, db_session, make_property, make_profile):
        first_name = make_property("first_name")
        ada = make_profile("ada@example.com")
        now = utcnow()
        resolver.claim_pending_profile_ids(db_session, first_name.id, now=now)

        later = now + timedelta(seconds=301)
        assert resolver.claim_pending_profile_ids(db_session, first_name.id, now=later) == [ada.id]

    def test_deferred_rows_wait_for_retry_delay(self, db_session, make_property, make_profile):
        first_name = make_property("first_name")
        ada = make_profile("ada@example.com")
        now = utcnow()
        resolver.defer_profile_property(db_session, ada.id, first_name.id, now)

        assert resolver.claim_pending_profile_ids(db_session, first_name.id, now=now + timedelta(seconds=5)) == []
        assert resolver.claim_pending_profile_ids(db_session, first_name.id, now=now + timedelta(seconds=11)) == [ada.id]

    def test_limit(self, db_session, make_property, make_profile):
        first_name = make_property("first_name")
        for i in range(3):
            make_profile(f"user{i}@example.com")
        assert len(resolver.claim_pending_profile_ids(db_session, first_name.id, limit=2)) == 2

    def test_failed_and_destroyed_profiles_are_skipped(self, db_session, make_property, make_profile):
        first_name = make_property("first_name")
        ada = make_profile("ada@example.com")
        bob = make_profile("bob@example.com")
        cy = make_profile("cy@example.com")

        assert resolver.fail_profile_properties(db_session, [ada.id], first_name.id, "gave up") == 1
        bob.destroyed_at = utcnow()
        db_session.flush()

        assert resolver.claim_pending_profile_ids(db_session, first_name.id) == [cy.id]
        (message,) = (
            db_session.query(ProfileProperty.error_message)
            .filter(ProfileProperty.profile_id == ada.id, ProfileProperty.property_id == first_name.id)
            .one()
        )
        assert message == "gave up"
