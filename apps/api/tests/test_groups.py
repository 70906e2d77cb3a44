"""
Group membership tests

Calculated groups against real profiles in the store: run, counts, manual
add/remove and the two-phase delete.
"""
import pytest

from core.exceptions import ConflictError, LockedResourceError, ValidationError
from models import Destination, Group, GroupMember
from services import groups as group_service
from services.destinations import create_destination
from services.profiles import add_or_update_properties


@pytest.fixture
def people(db_session, make_property, make_profile):
    make_property("age", type="integer")
    make_property("country")
    make_property("tags", is_array=True)
    rows = [
        ("ada@example.com", {"age": 36, "country": "US", "tags": ["vip", "beta"]}),
        ("bob@example.com", {"age": 17, "country": "US", "tags": []}),
        ("cy@example.com", {"age": 40, "country": "CA", "tags": ["beta"]}),
        ("dee@example.com", {"age": None, "country": "US", "tags": ["vip"]}),
    ]
    created = {}
    for email, values in rows:
        profile = make_profile(email)
        add_or_update_properties(db_session, profile, values)
        created[email.split("@")[0]] = profile
    db_session.flush()
    return created


ADULTS_IN_US = [
    {"key": "age", "op": "gt", "match": 18},
    {"key": "country", "op": "eq", "match": "US"},
]


class TestCalculatedGroups:

    def test_run_group_adds_matching_profiles(self, db_session, people):
        group = group_service.create_group(db_session, "us adults", "calculated", rules=ADULTS_IN_US)
        result = group_service.run_group(db_session, group)

        assert result == {"added": [people["ada"].id], "removed": []}
        assert group_service.member_ids(db_session, group) == {people["ada"].id}
        assert group.state == "ready"
        assert group.calculated_at is not None

    def test_rerun_removes_profiles_that_stopped_matching(self, db_session, people):
        group = group_service.create_group(db_session, "us adults", "calculated", rules=ADULTS_IN_US)
        group_service.run_group(db_session, group)

        add_or_update_properties(db_session, people["ada"], {"country": "FR"})
        add_or_update_properties(db_session, people["bob"], {"age": 19})
        result = group_service.run_group(db_session, group)

        assert result == {"added": [people["bob"].id], "removed": [people["ada"].id]}
        assert group_service.member_ids(db_session, group) == {people["bob"].id}

    def test_run_is_a_no_op_for_manual_groups(self, db_session, people):
        group = group_service.create_group(db_session, "hand picked", "manual")
        assert group_service.run_group(db_session, group) == {"added": [], "removed": []}

    def test_array_and_negative_rules(self, db_session, people):
        group = group_service.create_group(
            db_session, "non vips", "calculated",
            rules=[{"key": "tags", "op": "ne", "match": "vip"}, {"key": "tags", "op": "exists"}],
        )
        group_service.run_group(db_session, group)
        assert group_service.member_ids(db_session, group) == {people["cy"].id}

    def test_any_match_type(self, db_session, people):
        group = group_service.create_group(
            db_session, "young or canadian", "calculated", match_type="any",
            rules=[{"key": "age", "op": "lt", "match": 18}, {"key": "country", "op": "eq", "match": "CA"}],
        )
        group_service.run_group(db_session, group)
        assert group_service.member_ids(db_session, group) == {people["bob"].id, people["cy"].id}

    def test_counts(self, db_session, people):
        group = group_service.create_group(db_session, "us adults", "calculated", rules=ADULTS_IN_US)
        counts = group_service.count_component_members_from_rules(db_session, group)

        assert counts["component_counts"] == [2, 3]
        assert counts["funnel_counts"] == [2, 1]
        for component, full in zip(counts["component_counts"], counts["funnel_counts"]):
            assert component >= full
        assert group_service.count_potential_members(db_session, ADULTS_IN_US) == 1

    def test_counts_only_for_calculated_groups(self, db_session, people):
        group = group_service.create_group(db_session, "hand picked", "manual")
        with pytest.raises(ValidationError, match="is not a calculated group"):
            group_service.count_component_members_from_rules(db_session, group)

    def test_profile_level_membership(self, db_session, people):
        group = group_service.create_group(db_session, "us adults", "calculated", rules=ADULTS_IN_US)
        old, new = group_service.calculate_memberships_for_profile(db_session, people["ada"])
        assert old == set()
        assert new == {group.id}

        add_or_update_properties(db_session, people["ada"], {"age": 12})
        old, new = group_service.calculate_memberships_for_profile(db_session, people["ada"])
        assert old == {group.id}
        assert new == set()


class TestGroupDefinitions:

    def test_rules_are_validated_against_properties(self, db_session, people):
        with pytest.raises(ValidationError, match="cannot find property height"):
            group_service.create_group(
                db_session, "tall", "calculated", rules=[{"key": "height", "op": "gt", "match": 2}]
            )

    def test_manual_groups_cannot_have_rules(self, db_session, people):
        with pytest.raises(ValidationError, match="manual groups cannot have rules"):
            group_service.create_group(db_session, "hand picked", "manual", rules=ADULTS_IN_US)

    def test_names_are_unique(self, db_session):
        group_service.create_group(db_session, "vips", "manual")
        with pytest.raises(ConflictError, match="a group named vips already exists"):
            group_service.create_group(db_session, "vips", "manual")


class TestManualGroups:

    def test_add_and_remove(self, db_session, people):
        group = group_service.create_group(db_session, "hand picked", "manual")
        assert group_service.add_profile(db_session, group, people["bob"]) is True
        assert group_service.add_profile(db_session, group, people["bob"]) is False
        assert group_service.member_ids(db_session, group) == {people["bob"].id}

        assert group_service.remove_profile(db_session, group, people["bob"]) is True
        assert group_service.remove_profile(db_session, group, people["bob"]) is False
        assert group_service.member_ids(db_session, group) == set()

    def test_calculated_groups_refuse_manual_edits(self, db_session, people):
        group = group_service.create_group(db_session, "us adults", "calculated", rules=ADULTS_IN_US)
        with pytest.raises(ValidationError, match="cannot add profiles to calculated group us adults"):
            group_service.add_profile(db_session, group, people["bob"])

    def test_locked_group_refuses_membership_edits(self, db_session, people):
        group = group_service.create_group(db_session, "hand picked", "manual")
        group_service.add_profile(db_session, group, people["ada"])
        group.locked = "config:groups.yml"

        with pytest.raises(LockedResourceError, match="is locked by config:groups.yml"):
            group_service.add_profile(db_session, group, people["bob"])
        with pytest.raises(LockedResourceError):
            group_service.remove_profile(db_session, group, people["ada"])
        assert group_service.member_ids(db_session, group) == {people["ada"].id}


class TestDestroyGroup:

    def test_soft_delete_then_purge(self, db_session, people):
        group = group_service.create_group(db_session, "hand picked", "manual")
        group_service.add_profile(db_session, group, people["ada"])

        assert group_service.destroy_group(db_session, group) == "deleted"
        assert group.state == "deleted"
        assert group_service.active_group_ids(db_session, [group.id]) == set()

        purged = group_service.purge_deleted_groups(db_session)
        assert purged == {group.id: [people["ada"].id]}
        assert db_session.get(Group, group.id) is None
        assert db_session.query(GroupMember).count() == 0

    def test_force_destroys_immediately(self, db_session, people):
        group = group_service.create_group(db_session, "hand picked", "manual")
        group_service.add_profile(db_session, group, people["ada"])

        assert group_service.destroy_group(db_session, group, force=True) == "destroyed"
        assert db_session.get(Group, group.id) is None

    def test_group_tracked_by_destination_cannot_be_deleted(self, db_session, registry, app, people):
        group = group_service.create_group(db_session, "hand picked", "manual")
        create_destination(
            db_session, registry, app.id, "fake-export", name="crm", options={"list": "a"}, group_id=group.id
        )
        with pytest.raises(ConflictError, match="it is used by destination crm"):
            group_service.destroy_group(db_session, group)

    def test_deleted_destination_releases_group(self, db_session, registry, app, people):
        group = group_service.create_group(db_session, "hand picked", "manual")
        destination = create_destination(
            db_session, registry, app.id, "fake-export", name="crm", options={"list": "a"}, group_id=group.id
        )
        destination.state = "deleted"
        db_session.flush()

        group_service.destroy_group(db_session, group, force=True)
        db_session.refresh(destination)
        assert db_session.get(Destination, destination.id).group_id is None


class TestGroupDestinations:

    def test_lists_tracking_and_mapping_destinations_by_name(self, db_session, registry, app):
        group = group_service.create_group(db_session, "hand picked", "manual")
        other = group_service.create_group(db_session, "others", "manual")
        tracking = create_destination(
            db_session, registry, app.id, "fake-export", name="crm", options={"list": "a"}, group_id=group.id
        )
        mapping = create_destination(
            db_session, registry, app.id, "fake-export", name="ads", options={"list": "b"},
            group_id=other.id, group_mappings={group.id: "Hand Picked"},
        )
        mailer = create_destination(
            db_session, registry, app.id, "fake-export", name="mailer", options={"list": "c"}, group_id=other.id
        )
        gone = create_destination(
            db_session, registry, app.id, "fake-export", name="old", options={"list": "d"}, group_id=group.id
        )
        gone.state = "deleted"
        db_session.flush()

        assert group_service.list_destinations(db_session, group) == [mapping, tracking]
        assert group_service.list_destinations(db_session, other) == [mapping, mailer]

    def test_unused_group_has_no_destinations(self, db_session):
        group = group_service.create_group(db_session, "hand picked", "manual")
        assert group_service.list_destinations(db_session, group) == []
