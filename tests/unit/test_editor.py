import pytest

from crmflow.editor import AddStep, RemoveStep, UpdateStep, WorkflowEditor
from crmflow.errors import GraphEditError
from crmflow.graph import ActionStep, ConditionStep, TriggerStep


def _tag(step_id, tag="x"):
    return ActionStep(id=step_id, name=step_id, config={"action_type": "add_tag", "tag_name": tag})


def test_add_step_after_wires_edge():
    editor = WorkflowEditor([TriggerStep(id="t")])
    editor.add_step(_tag("a"), after_step_id="t")

    assert editor.get_step("t").next_step_ids == ["a"]
    assert editor.is_dirty
    assert editor.validate() == []


def test_add_duplicate_id_fails_and_keeps_snapshot():
    editor = WorkflowEditor([TriggerStep(id="t")])
    before = editor.steps
    with pytest.raises(GraphEditError):
        editor.add_step(TriggerStep(id="t"))
    assert editor.steps is before
    assert not editor.can_undo


def test_update_step_merges_config_and_keeps_type():
    editor = WorkflowEditor([TriggerStep(id="t", next_step_ids=["a"]), _tag("a", "old")])
    editor.update_step("a", name="Tag it", config={"tag_name": "new"})

    step = editor.get_step("a")
    assert step.type == "action"
    assert step.name == "Tag it"
    assert step.config.tag_name == "new"
    assert step.config.action_type.value == "add_tag"


def test_remove_step_drops_edges():
    editor = WorkflowEditor(
        [TriggerStep(id="t", next_step_ids=["a"]), _tag("a")]
    )
    editor.remove_step("a")
    assert [s.id for s in editor.steps] == ["t"]
    assert editor.get_step("t").next_step_ids == []


def test_remove_step_keeps_condition_branch_positions():
    editor = WorkflowEditor(
        [
            TriggerStep(id="t", next_step_ids=["c"]),
            ConditionStep(
                id="c",
                config={"conditions": [{"field": "x", "operator": "is_true"}]},
                next_step_ids=["yes", "no"],
            ),
            _tag("yes"),
            _tag("no"),
        ]
    )
    editor.remove_step("yes")
    assert editor.get_step("c").next_step_ids == [None, "no"]

    editor.remove_step("no")
    assert editor.get_step("c").next_step_ids == []


def test_connect_condition_branches():
    editor = WorkflowEditor(
        [
            TriggerStep(id="t", next_step_ids=["c"]),
            ConditionStep(id="c"),
            _tag("a"),
            _tag("b"),
        ]
    )
    editor.connect("c", "b", branch="no")
    assert editor.get_step("c").next_step_ids == [None, "b"]
    editor.connect("c", "a", branch="yes")
    assert editor.get_step("c").next_step_ids == ["a", "b"]


def test_condition_rejects_third_branch():
    editor = WorkflowEditor(
        [ConditionStep(id="c", next_step_ids=["a", "b"]), _tag("a"), _tag("b"), _tag("d")]
    )
    with pytest.raises(GraphEditError):
        editor.connect("c", "d")


def test_connect_rejects_self_loop_and_unknown_steps():
    editor = WorkflowEditor([TriggerStep(id="t"), _tag("a")])
    with pytest.raises(GraphEditError):
        editor.connect("a", "a")
    with pytest.raises(GraphEditError):
        editor.connect("a", "ghost")


def test_disconnect():
    editor = WorkflowEditor([TriggerStep(id="t", next_step_ids=["a"]), _tag("a")])
    editor.disconnect("t", "a")
    assert editor.get_step("t").next_step_ids == []


def test_undo_redo_restore_snapshots():
    editor = WorkflowEditor([TriggerStep(id="t")])
    original = editor.steps
    editor.add_step(_tag("a"), after_step_id="t")
    edited = editor.steps

    assert editor.undo()
    assert editor.steps is original
    assert not editor.is_dirty
    assert editor.can_redo

    assert editor.redo()
    assert editor.steps is edited
    assert not editor.can_redo
    assert not editor.redo()


def test_new_edit_clears_redo():
    editor = WorkflowEditor([TriggerStep(id="t")])
    editor.add_step(_tag("a"))
    editor.undo()
    editor.add_step(_tag("b"))
    assert not editor.can_redo


def test_snapshots_are_unaffected_by_later_edits():
    editor = WorkflowEditor([TriggerStep(id="t")])
    snapshot = editor.steps
    editor.add_step(_tag("a"), after_step_id="t")
    assert len(snapshot) == 1
    assert snapshot[0].next_step_ids == []


def test_apply_all_is_one_undoable_edit():
    editor = WorkflowEditor([TriggerStep(id="t")])
    editor.apply_all(
        [
            AddStep(step=_tag("a"), after_step_id="t"),
            AddStep(step=_tag("b"), after_step_id="a"),
            UpdateStep(step_id="b", name="Last"),
        ]
    )
    assert [s.id for s in editor.steps] == ["t", "a", "b"]
    assert editor.revision == 1

    editor.undo()
    assert [s.id for s in editor.steps] == ["t"]


def test_apply_all_is_atomic():
    editor = WorkflowEditor([TriggerStep(id="t")])
    with pytest.raises(GraphEditError):
        editor.apply_all([AddStep(step=_tag("a")), RemoveStep(step_id="ghost")])
    assert [s.id for s in editor.steps] == ["t"]


def test_mark_saved():
    editor = WorkflowEditor([TriggerStep(id="t")])
    editor.add_step(_tag("a"))
    editor.mark_saved()
    assert not editor.is_dirty
    editor.undo()
    assert editor.is_dirty
