"""
State machine tests

Covers the declarative transition tables: new instances, declared and
undeclared transitions, failing checks and locked entities.
"""
import pytest

from core.exceptions import InvalidTransitionError, LockedResourceError, ValidationError
from core.state_machine import Transition, persisted_state, transition
from models import Group, Profile
from services.groups import GROUP_TRANSITIONS, create_group, destroy_group, update_group
from services.profiles import PROFILE_TRANSITIONS


class TestTransition:

    def test_new_instance_accepts_any_state(self):
        group = Group(name="new", type="manual")
        transition(group, GROUP_TRANSITIONS, "updating")
        assert group.state == "updating"

    def test_declared_transition_applies(self, db_session):
        group = create_group(db_session, "vips", "manual")
        transition(group, GROUP_TRANSITIONS, "updating")
        assert group.state == "updating"

    def test_undeclared_transition_names_both_states(self, db_session):
        group = create_group(db_session, "vips", "manual")
        with pytest.raises(InvalidTransitionError) as exc:
            transition(group, GROUP_TRANSITIONS, "draft")
        assert exc.value.detail == f"cannot transition Group {group.id} from ready to draft"
        assert group.state == "ready"

    def test_same_state_is_a_no_op(self, db_session):
        group = create_group(db_session, "vips", "manual")
        transition(group, [], "ready")
        assert group.state == "ready"

    def test_failing_check_leaves_state_unchanged(self, db_session, make_property, make_profile):
        make_property("first_name")
        profile = make_profile("ada@example.com")
        db_session.flush()
        assert profile.state == "pending"

        with pytest.raises(ValidationError) as exc:
            transition(profile, PROFILE_TRANSITIONS, "ready")
        assert "not all properties are ready (first_name)" in exc.value.detail
        assert profile.state == "pending"

    def test_checks_run_in_order_and_first_failure_wins(self, db_session):
        calls = []

        def first(instance):
            calls.append("first")
            raise ValidationError("first failed")

        def second(instance):
            calls.append("second")

        profile = Profile(state="draft")
        db_session.add(profile)
        db_session.flush()

        with pytest.raises(ValidationError, match="first failed"):
            transition(profile, [Transition("draft", "ready", [first, second])], "ready")
        assert calls == ["first"]
        assert profile.state == "draft"

    def test_persisted_state_sees_unflushed_assignment(self, db_session):
        group = create_group(db_session, "vips", "manual")
        group.state = "deleted"
        assert persisted_state(group) == "ready"


class TestLocking:

    def test_locked_group_refuses_update_and_destroy(self, db_session):
        group = create_group(db_session, "vips", "manual")
        group.locked = "config:groups.yml"
        db_session.flush()

        with pytest.raises(LockedResourceError) as exc:
            update_group(db_session, group, name="renamed")
        assert exc.value.detail == f"Group {group.id} is locked by config:groups.yml"

        with pytest.raises(LockedResourceError):
            destroy_group(db_session, group)
        assert group.state == "ready"
