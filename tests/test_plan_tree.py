"""Tests for the plan tree service: access checks, root rules, parent resolution and events."""
from datetime import datetime
from uuid import uuid4

import pytest

from planner_core import decisions, events, nodes, plan_tree, schemas
from planner_core.access import Role
from planner_core.errors import (
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from planner_core.events import EventType
from planner_core.models import (
    AgentRequestType,
    Collaborator,
    CollaboratorRole,
    DecisionRequest,
    NodeStatus,
    NodeType,
    Plan,
    PlanVisibility,
)


class TestTreeScenario:
    """End-to-end: create, reorder, move, delete."""

    def test_reorder_move_delete(self, db, plan, root, owner):
        a = plan_tree.create_node(db, plan.id, owner.id, NodeType.PHASE, "A", parent_id=root.id)
        b = plan_tree.create_node(db, plan.id, owner.id, NodeType.PHASE, "B", parent_id=root.id)
        assert (a.order_index, b.order_index) == (0, 1)

        plan_tree.reorder_node(db, plan.id, a.id, owner.id, 1)
        assert [c.id for c in nodes.get_children(db, root.id)] == [b.id, a.id]

        moved = plan_tree.move_node(db, plan.id, a.id, owner.id, b.id)
        assert moved.parent_id == b.id
        assert moved.order_index == 0

        a_id, b_id = a.id, b.id
        removed = plan_tree.delete_node(db, plan.id, b_id, owner.id)

        assert set(removed) == {a_id, b_id}
        assert nodes.get_children(db, root.id) == []
        assert [n.id for n in nodes.list_by_plan(db, plan.id)] == [root.id]


class TestCreatePlan:
    """A plan always starts with exactly one root."""

    def test_plan_has_single_root(self, db, owner):
        new_plan = plan_tree.create_plan(db, owner.id, "Roadmap")

        tree = nodes.get_tree(db, new_plan.id)
        assert len(tree) == 1
        assert tree[0].node.node_type == NodeType.ROOT
        assert tree[0].node.title == "Roadmap"

    def test_unknown_owner(self, db):
        with pytest.raises(NotFoundError):
            plan_tree.create_plan(db, uuid4(), "Nobody's plan")

    def test_emits_plan_created(self, db, owner, recorder):
        new_plan = plan_tree.create_plan(db, owner.id, "Roadmap")

        created = recorder.of_type(EventType.PLAN_CREATED)
        assert len(created) == 1
        assert created[0].plan_id == new_plan.id
        assert created[0].actor_id == owner.id


class TestParentResolution:
    """Node lookup first, then plan lookup."""

    def test_resolves_node(self, db, plan, root):
        result = plan_tree.resolve_parent(db, root.id)
        assert isinstance(result, plan_tree.ResolvedAsNode)
        assert result.node.id == root.id

    def test_falls_back_to_plan_root(self, db, plan, root):
        result = plan_tree.resolve_parent(db, plan.id)
        assert isinstance(result, plan_tree.ResolvedAsPlanRoot)
        assert result.root.id == root.id

    def test_not_found(self, db, plan):
        missing = uuid4()
        assert plan_tree.resolve_parent(db, missing) == plan_tree.ParentNotFound(ref_id=missing)

    def test_create_under_plan_id(self, db, plan, root, owner):
        node = plan_tree.create_node(db, plan.id, owner.id, NodeType.PHASE, "Phase", parent_id=plan.id)
        assert node.parent_id == root.id

    def test_create_without_parent_goes_under_root(self, db, plan, root, editor):
        node = plan_tree.create_node(db, plan.id, editor.id, NodeType.MILESTONE, "M1")
        assert node.parent_id == root.id

    def test_parent_from_another_plan(self, db, plan, owner):
        other = plan_tree.create_plan(db, owner.id, "Other")
        with pytest.raises(NotFoundError):
            plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "T", parent_id=other.id)

    def test_unknown_parent(self, db, plan, owner):
        with pytest.raises(NotFoundError):
            plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "T", parent_id=uuid4())

    def test_create_at_requested_index(self, db, plan, root, owner):
        plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "First")
        plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Second")

        node = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Front", order_index=0)

        assert node.order_index == 0
        assert [c.title for c in nodes.get_children(db, root.id)] == ["Front", "First", "Second"]


class TestAccessEnforcement:
    """Forbidden callers never mutate anything."""

    def test_viewer_cannot_create(self, db, plan, viewer):
        with pytest.raises(ForbiddenError):
            plan_tree.create_node(db, plan.id, viewer.id, NodeType.TASK, "Nope")
        assert len(nodes.list_by_plan(db, plan.id)) == 1

    def test_outsider_cannot_read(self, db, plan, outsider):
        with pytest.raises(ForbiddenError):
            plan_tree.get_plan_tree(db, plan.id, outsider.id)

    def test_viewer_cannot_delete(self, db, plan, owner, viewer):
        node = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Keep")
        with pytest.raises(ForbiddenError):
            plan_tree.delete_node(db, plan.id, node.id, viewer.id)
        assert nodes.get_node(db, node.id) is not None

    def test_node_from_other_plan_is_not_found(self, db, plan, owner):
        other = plan_tree.create_plan(db, owner.id, "Other")
        foreign = plan_tree.create_node(db, other.id, owner.id, NodeType.TASK, "Foreign")

        with pytest.raises(NotFoundError):
            plan_tree.get_node(db, plan.id, foreign.id, owner.id)


class TestRootRules:
    """The root is created with the plan and otherwise untouchable."""

    def test_cannot_create_root(self, db, plan, owner):
        with pytest.raises(InvalidInputError):
            plan_tree.create_node(db, plan.id, owner.id, NodeType.ROOT, "Second root")

    def test_cannot_retype_root(self, db, plan, root, owner):
        with pytest.raises(InvalidStateError):
            plan_tree.update_node(db, plan.id, root.id, owner.id, {"node_type": NodeType.PHASE})

    def test_cannot_promote_to_root(self, db, plan, owner):
        node = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Task")
        with pytest.raises(InvalidInputError):
            plan_tree.update_node(db, plan.id, node.id, owner.id, {"node_type": NodeType.ROOT})

    def test_cannot_delete_root(self, db, plan, root, owner):
        with pytest.raises(InvalidStateError):
            plan_tree.delete_node(db, plan.id, root.id, owner.id)

    def test_cannot_move_root(self, db, plan, root, owner):
        node = plan_tree.create_node(db, plan.id, owner.id, NodeType.PHASE, "Phase")
        with pytest.raises(InvalidStateError):
            plan_tree.move_node(db, plan.id, root.id, owner.id, node.id)

    def test_root_title_can_change(self, db, plan, root, owner):
        updated = plan_tree.update_node(db, plan.id, root.id, owner.id, {"title": "Renamed"})
        assert updated.title == "Renamed"
        assert updated.node_type == NodeType.ROOT


class TestUpdateNode:
    """Field updates and their events."""

    def test_status_change_emits_event(self, db, plan, editor, recorder):
        node = plan_tree.create_node(db, plan.id, editor.id, NodeType.TASK, "Task")
        recorder.clear()

        plan_tree.update_node_status(db, plan.id, node.id, editor.id, NodeStatus.IN_PROGRESS)

        changed = recorder.of_type(EventType.NODE_STATUS_CHANGED)
        assert len(changed) == 1
        assert changed[0].node_ids == [node.id]
        assert changed[0].data == {"old_status": "not_started", "new_status": "in_progress"}

    def test_unknown_field_rejected(self, db, plan, owner):
        node = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Task")
        with pytest.raises(InvalidInputError):
            plan_tree.update_node(db, plan.id, node.id, owner.id, {"plan_id": uuid4()})

    def test_metadata_and_order(self, db, plan, root, owner):
        first = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "First")
        second = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Second")

        plan_tree.update_node(db, plan.id, second.id, owner.id, {"metadata": {"estimate": 3}, "order_index": 0})

        db.refresh(second)
        db.refresh(first)
        assert second.metadata_ == {"estimate": 3}
        assert (second.order_index, first.order_index) == (0, 1)

    def test_move_with_order_index(self, db, plan, owner):
        phase = plan_tree.create_node(db, plan.id, owner.id, NodeType.PHASE, "Phase")
        plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Existing", parent_id=phase.id)
        task = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Mover")

        moved = plan_tree.move_node(db, plan.id, task.id, owner.id, phase.id, order_index=0)

        assert moved.parent_id == phase.id
        assert [c.title for c in nodes.get_children(db, phase.id)] == ["Mover", "Existing"]

    def test_move_into_descendant_rejected(self, db, plan, owner):
        phase = plan_tree.create_node(db, plan.id, owner.id, NodeType.PHASE, "Phase")
        task = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Task", parent_id=phase.id)

        with pytest.raises(InvalidInputError):
            plan_tree.move_node(db, plan.id, phase.id, owner.id, task.id)

    def test_move_to_current_parent_is_noop(self, db, plan, root, owner, recorder):
        node = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Stay")
        recorder.clear()

        result = plan_tree.move_node(db, plan.id, node.id, owner.id, root.id)

        assert result.parent_id == root.id
        assert result.order_index == 0
        assert recorder.of_type(EventType.NODE_MOVED) == []


class TestSiblingUniqueness:
    """A parent cannot hold two children with the same title and type."""

    def test_duplicate_create_is_conflict(self, db, plan, owner):
        plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Write docs")

        with pytest.raises(ConflictError):
            plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Write docs")
        assert len(nodes.list_by_plan(db, plan.id)) == 2

    def test_same_title_different_type_or_parent(self, db, plan, owner):
        phase = plan_tree.create_node(db, plan.id, owner.id, NodeType.PHASE, "Write docs")
        plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Write docs")
        plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Write docs", parent_id=phase.id)

        assert len(nodes.list_by_plan(db, plan.id)) == 4

    def test_move_onto_duplicate_is_conflict(self, db, plan, root, owner):
        phase = plan_tree.create_node(db, plan.id, owner.id, NodeType.PHASE, "Phase")
        plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Review", parent_id=phase.id)
        loose = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Review")

        with pytest.raises(ConflictError):
            plan_tree.move_node(db, plan.id, loose.id, owner.id, phase.id)

        db.refresh(loose)
        assert loose.parent_id == root.id

    def test_rename_onto_duplicate_is_conflict(self, db, plan, owner):
        plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Alpha")
        beta = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Beta")

        with pytest.raises(ConflictError):
            plan_tree.update_node(db, plan.id, beta.id, owner.id, {"title": "Alpha"})

        db.refresh(beta)
        assert beta.title == "Beta"


class TestPublicPlans:
    """Discovery of public plans."""

    def test_only_public_newest_first(self, db, plan, owner):
        older = plan_tree.create_plan(db, owner.id, "Older", visibility=PlanVisibility.PUBLIC)
        newer = plan_tree.create_plan(db, owner.id, "Newer", visibility=PlanVisibility.PUBLIC)
        plan_tree.create_plan(db, owner.id, "Hidden", visibility=PlanVisibility.UNLISTED)
        older.updated_at = datetime(2026, 1, 1, 9, 0)
        newer.updated_at = datetime(2026, 1, 2, 9, 0)
        db.commit()

        items, total = plan_tree.list_public_plans(db)

        assert total == 2
        assert [p.id for p in items] == [newer.id, older.id]

    def test_pagination(self, db, owner):
        created = [
            plan_tree.create_plan(db, owner.id, f"Public {i}", visibility=PlanVisibility.PUBLIC)
            for i in range(3)
        ]
        for i, public_plan in enumerate(created):
            public_plan.updated_at = datetime(2026, 1, 1, 9, i)
        db.commit()

        items, total = plan_tree.list_public_plans(db, limit=2, offset=2)

        assert total == 3
        assert [p.title for p in items] == ["Public 0"]


class TestAgentCollaboration:
    """Agent requests and assignment."""

    def test_viewer_may_request_agent(self, db, plan, owner, viewer, recorder):
        node = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Task")

        updated = plan_tree.request_agent(db, plan.id, node.id, viewer.id, AgentRequestType.REVIEW, "Please check")

        assert updated.agent_requested == AgentRequestType.REVIEW
        assert updated.agent_requested_by == viewer.id
        assert updated.agent_requested_at is not None
        assert recorder.of_type(EventType.AGENT_REQUESTED)

        cleared = plan_tree.clear_agent_request(db, plan.id, node.id, viewer.id)
        assert cleared.agent_requested is None
        assert cleared.agent_request_message is None

    def test_assign_requires_edit(self, db, plan, owner, viewer, agent):
        node = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Task")
        with pytest.raises(ForbiddenError):
            plan_tree.assign_agent(db, plan.id, node.id, viewer.id, agent.id)

    def test_assign_and_unassign(self, db, plan, editor, agent):
        node = plan_tree.create_node(db, plan.id, editor.id, NodeType.TASK, "Task")

        assigned = plan_tree.assign_agent(db, plan.id, node.id, editor.id, agent.id)
        assert assigned.assigned_agent_id == agent.id
        assert assigned.assigned_agent_by == editor.id

        unassigned = plan_tree.unassign_agent(db, plan.id, node.id, editor.id)
        assert unassigned.assigned_agent_id is None

    def test_assign_unknown_user(self, db, plan, owner):
        node = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Task")
        with pytest.raises(NotFoundError):
            plan_tree.assign_agent(db, plan.id, node.id, owner.id, uuid4())


class TestPlanLifecycle:
    """Plan updates, listing, progress and deletion."""

    def test_visibility_change_is_owner_only(self, db, plan, owner, editor):
        with pytest.raises(ForbiddenError):
            plan_tree.update_plan(db, plan.id, editor.id, {"visibility": PlanVisibility.PUBLIC})

        updated = plan_tree.update_plan(db, plan.id, owner.id, {"visibility": PlanVisibility.PUBLIC})
        assert updated.visibility == PlanVisibility.PUBLIC

    def test_editor_updates_title(self, db, plan, editor):
        updated = plan_tree.update_plan(db, plan.id, editor.id, {"title": "Launch v2"})
        assert updated.title == "Launch v2"

    def test_list_plans_for_user(self, db, plan, owner, editor):
        own = plan_tree.create_plan(db, editor.id, "Editor's own")

        listed = {p.id: role for p, role in plan_tree.list_plans_for_user(db, editor.id)}

        assert listed == {plan.id: Role.EDITOR, own.id: Role.OWNER}

    def test_progress(self, db, plan, owner):
        done = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Done")
        plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Todo")
        plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Blocked", status=NodeStatus.BLOCKED)
        plan_tree.update_node_status(db, plan.id, done.id, owner.id, NodeStatus.COMPLETED)

        progress = plan_tree.get_plan_progress(db, plan.id, owner.id)

        assert progress["total"] == 4
        assert progress["completed"] == 1
        assert progress["blocked"] == 1
        assert progress["not_started"] == 2
        assert progress["percent_complete"] == 25

    def test_collaborator_upsert(self, db, plan, owner, viewer):
        plan_tree.add_collaborator(db, plan.id, owner.id, viewer.id, CollaboratorRole.ADMIN)

        rows = [c for c in plan_tree.list_collaborators(db, plan.id, owner.id) if c.user_id == viewer.id]
        assert len(rows) == 1
        assert rows[0].role == CollaboratorRole.ADMIN

    def test_editor_cannot_manage_collaborators(self, db, plan, editor, outsider):
        with pytest.raises(ForbiddenError):
            plan_tree.add_collaborator(db, plan.id, editor.id, outsider.id, CollaboratorRole.VIEWER)

    def test_owner_cannot_be_collaborator(self, db, plan, owner):
        with pytest.raises(InvalidInputError):
            plan_tree.add_collaborator(db, plan.id, owner.id, owner.id, CollaboratorRole.EDITOR)

    def test_remove_collaborator(self, db, plan, owner, viewer):
        plan_tree.remove_collaborator(db, plan.id, owner.id, viewer.id)

        with pytest.raises(ForbiddenError):
            plan_tree.get_plan(db, plan.id, viewer.id)
        with pytest.raises(NotFoundError):
            plan_tree.remove_collaborator(db, plan.id, owner.id, viewer.id)

    def test_only_owner_deletes(self, db, plan, editor):
        with pytest.raises(ForbiddenError):
            plan_tree.delete_plan(db, plan.id, editor.id)

    def test_delete_plan_removes_everything(self, db, plan, root, owner, recorder):
        plan_id = plan.id
        phase = plan_tree.create_node(db, plan_id, owner.id, NodeType.PHASE, "Phase")
        task = plan_tree.create_node(db, plan_id, owner.id, NodeType.TASK, "Task", parent_id=phase.id)
        decisions.create_decision(
            db, plan_id, owner.id,
            schemas.DecisionRequestCreate(title="Pick a DB", context="Need storage", node_id=task.id),
        )
        expected = {root.id, phase.id, task.id}

        removed = plan_tree.delete_plan(db, plan_id, owner.id)

        assert set(removed) == expected
        assert db.query(Plan).filter(Plan.id == plan_id).count() == 0
        assert nodes.list_by_plan(db, plan_id) == []
        assert db.query(Collaborator).filter(Collaborator.plan_id == plan_id).count() == 0
        assert db.query(DecisionRequest).filter(DecisionRequest.plan_id == plan_id).count() == 0
        assert recorder.of_type(EventType.PLAN_DELETED)[0].node_ids == removed


class TestEventDelivery:
    """Sink failures never undo a committed mutation."""

    def test_failing_sink_does_not_break_mutation(self, db, plan, owner):
        class BrokenSink:
            def publish(self, event):
                raise RuntimeError("broadcast down")

        sink = BrokenSink()
        events.dispatcher.register(sink)
        try:
            node = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Still here")
        finally:
            events.dispatcher.unregister(sink)

        assert nodes.get_node(db, node.id) is not None

    def test_delete_node_event_lists_subtree(self, db, plan, owner, recorder):
        phase = plan_tree.create_node(db, plan.id, owner.id, NodeType.PHASE, "Phase")
        task = plan_tree.create_node(db, plan.id, owner.id, NodeType.TASK, "Task", parent_id=phase.id)
        expected = [phase.id, task.id]

        plan_tree.delete_node(db, plan.id, phase.id, owner.id)

        deleted = recorder.of_type(EventType.NODE_DELETED)
        assert deleted[0].node_ids == expected


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
