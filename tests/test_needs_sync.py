"""Tests for NeedsSyncService: the flat goal mirror and grouped-needs edits."""

import copy

import pytest

from conftest import make_need, make_plan
from model import CarePlan, GoalStatus
from service import NeedsSyncService


@pytest.fixture
def sync():
    return NeedsSyncService()


def assert_mirrored(plan: CarePlan):
    flat = NeedsSyncService().needs_to_flat(plan.needs or [])
    assert plan.long_term_goal == flat.long_term_goal
    assert plan.short_term_goals == flat.short_term_goals


class TestNeedsToFlat:

    def test_no_needs(self, sync):
        flat = sync.needs_to_flat([])

        assert flat.long_term_goal == ""
        assert flat.short_term_goals == []

    def test_single_need(self, sync):
        need = make_need(goals=["a", "b"])

        flat = sync.needs_to_flat([need])

        assert flat.long_term_goal == need.long_term_goal
        assert [g.content for g in flat.short_term_goals] == ["a", "b"]

    def test_goals_concatenate_in_need_then_goal_order(self, sync):
        needs = [
            make_need(long_term_goal="first", goals=["a1", "a2"]),
            make_need(long_term_goal="second", goals=["b1"]),
            make_need(long_term_goal="third", goals=[]),
        ]

        flat = sync.needs_to_flat(needs)

        assert flat.long_term_goal == "first"
        assert [g.content for g in flat.short_term_goals] == ["a1", "a2", "b1"]

    def test_mirror_does_not_alias_need_goals(self, sync):
        need = make_need()

        flat = sync.needs_to_flat([need])
        flat.short_term_goals[0].content = "changed"

        assert need.short_term_goals[0].content != "changed"


class TestNeedMutations:

    def test_add_need_keeps_input_untouched(self, sync):
        plan = make_plan()
        before = copy.deepcopy(plan)

        updated = sync.add_need(plan, content="Bathing", long_term_goal="Bathe safely")

        assert plan == before
        assert len(updated.needs) == 2
        assert updated.needs[1].short_term_goals == []
        assert_mirrored(updated)

    def test_add_need_to_plan_without_needs(self, sync):
        updated = sync.add_need(CarePlan(), content="Meals", long_term_goal="Eat well")

        assert updated.long_term_goal == "Eat well"
        assert_mirrored(updated)

    def test_update_need_long_term_goal_updates_mirror(self, sync):
        plan = make_plan()

        updated = sync.update_need(plan, plan.needs[0].id, long_term_goal="Go to the park")

        assert updated.long_term_goal == "Go to the park"

    def test_update_need_rejects_id_change(self, sync):
        plan = make_plan()

        with pytest.raises(ValueError):
            sync.update_need(plan, plan.needs[0].id, id="other")

    def test_remove_first_need_promotes_next_long_term_goal(self, sync):
        plan = make_plan(needs=[make_need(long_term_goal="one"), make_need(long_term_goal="two")])

        updated = sync.remove_need(plan, plan.needs[0].id)

        assert updated.long_term_goal == "two"
        assert_mirrored(updated)

    def test_removing_last_need_clears_mirror(self, sync):
        plan = make_plan()

        updated = sync.remove_need(plan, plan.needs[0].id)

        assert updated.needs == []
        assert updated.long_term_goal == ""
        assert updated.short_term_goals == []

    def test_unknown_need_raises_key_error(self, sync):
        with pytest.raises(KeyError):
            sync.remove_need(make_plan(), "missing")


class TestGoalMutations:

    def test_add_goal(self, sync):
        plan = make_plan()
        need_id = plan.needs[0].id

        updated = sync.add_goal(plan, need_id, "  Cook one meal a week ")

        goal = updated.needs[0].short_term_goals[-1]
        assert goal.content == "Cook one meal a week"
        assert goal.status == GoalStatus.NOT_STARTED
        assert updated.short_term_goals[-1] == goal
        assert_mirrored(updated)

    def test_add_blank_goal_is_rejected(self, sync):
        plan = make_plan()

        with pytest.raises(ValueError):
            sync.add_goal(plan, plan.needs[0].id, "   ")

    def test_update_goal_status(self, sync):
        plan = make_plan()
        need = plan.needs[0]

        updated = sync.update_goal(
            plan, need.id, need.short_term_goals[0].id, status=GoalStatus.ACHIEVED
        )

        assert updated.short_term_goals[0].status == GoalStatus.ACHIEVED
        assert_mirrored(updated)

    def test_update_unknown_goal(self, sync):
        plan = make_plan()

        with pytest.raises(KeyError):
            sync.update_goal(plan, plan.needs[0].id, "missing", content="x")

    def test_remove_goal(self, sync):
        plan = make_plan(needs=[make_need(goals=["a", "b"])])
        need = plan.needs[0]

        updated = sync.remove_goal(plan, need.id, need.short_term_goals[0].id)

        assert [g.content for g in updated.short_term_goals] == ["b"]
        assert_mirrored(updated)


class TestServiceMutations:

    def test_services_do_not_touch_flat_goals(self, sync):
        plan = make_plan()
        need_id = plan.needs[0].id

        updated = sync.add_service(plan, need_id, "Home help", type="home_help", frequency="weekly")

        assert len(updated.needs[0].services) == 2
        assert updated.short_term_goals == plan.short_term_goals

    def test_blank_service_is_rejected(self, sync):
        plan = make_plan()

        with pytest.raises(ValueError):
            sync.add_service(plan, plan.needs[0].id, "")

    def test_update_and_remove_service(self, sync):
        plan = make_plan()
        need = plan.needs[0]
        service_id = need.services[0].id

        updated = sync.update_service(plan, need.id, service_id, frequency="3/week")
        assert updated.needs[0].services[0].frequency == "3/week"

        removed = sync.remove_service(updated, need.id, service_id)
        assert removed.needs[0].services == []


def test_sync_plan_leaves_flat_only_plans_alone(sync):
    plan = CarePlan(long_term_goal="legacy text")

    assert sync.sync_plan(plan) is plan
