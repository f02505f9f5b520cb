"""Workflow lifecycle through the service facade."""

from datetime import timedelta

import pytest

from crmflow.contracts import utcnow
from crmflow.editor import RemoveStep, UpdateStep
from crmflow.errors import (
    EnrollmentConflictError,
    EntityNotFoundError,
    GraphValidationError,
    InvalidTransitionError,
    TemplateNotFoundError,
    WorkflowNotFoundError,
    WorkflowStateError,
)
from crmflow.graph import ActionStep, Criteria, TriggerStep, validate
from crmflow.scheduler import Scheduler


async def _active(service, steps, **kwargs):
    workflow = await service.create_workflow("ws", name="Flow", steps=steps, **kwargs)
    return await service.activate(workflow.id)


def _mail_steps():
    return [
        TriggerStep(id="t", next_step_ids=["mail"]),
        ActionStep(
            id="mail",
            name="Mail",
            config={"action_type": "send_email", "email_subject": "s", "email_body": "b"},
        ),
    ]


@pytest.mark.asyncio
async def test_template_workflow_runs_to_completion(service, outbox):
    workflow = await service.create_workflow("ws", template_id="welcome-new-contacts")
    assert workflow.status == "draft"
    assert workflow.name == "Welcome New Contacts"
    assert workflow.trigger_type == "contact_created"

    await service.activate(workflow.id)
    enrollment = await service.enroll(workflow.id, "contact", "c1")
    scheduler = Scheduler(service)

    start = utcnow() + timedelta(seconds=1)
    assert await scheduler.process_due(start) == 1
    assert [m.subject for m in outbox.sent] == ["Welcome to Acme!"]
    waiting = await service.get_enrollment(enrollment.id)
    assert waiting.status == "active"
    assert waiting.next_execution_time == start + timedelta(days=1)

    assert await scheduler.process_due(start + timedelta(hours=1)) == 0
    assert await scheduler.process_due(start + timedelta(days=1)) == 1
    assert len(outbox.sent) == 2

    done = await service.get_enrollment(enrollment.id)
    assert done.status == "completed"
    stored = await service.get_workflow(workflow.id)
    assert stored.stats.total_enrolled == 1
    assert stored.stats.completed == 1


@pytest.mark.asyncio
async def test_unknown_template(service):
    with pytest.raises(TemplateNotFoundError):
        await service.create_workflow("ws", template_id="missing")


@pytest.mark.asyncio
async def test_new_workflow_defaults_to_manual_trigger(service):
    workflow = await service.create_workflow("ws", name="Empty")
    assert [s.type for s in workflow.steps] == ["trigger"]
    assert workflow.trigger_type == "manual"


@pytest.mark.asyncio
async def test_workspace_scoping(service, drip_steps):
    workflow = await _active(service, drip_steps)
    with pytest.raises(WorkflowNotFoundError):
        await service.get_workflow(workflow.id, workspace_id="other")
    assert await service.list_workflows(workspace_id="other") == []


@pytest.mark.asyncio
async def test_activation_rejects_fatal_graph(service):
    draft = await service.create_workflow(
        "ws",
        name="No trigger",
        steps=[ActionStep(id="a", config={"action_type": "add_tag", "tag_name": "x"})],
    )
    with pytest.raises(GraphValidationError) as exc:
        await service.activate(draft.id)
    assert "missing_trigger" in {e.code for e in exc.value.errors}
    assert (await service.get_workflow(draft.id)).status == "draft"


@pytest.mark.asyncio
async def test_enrollment_requires_active_workflow(service, drip_steps):
    draft = await service.create_workflow("ws", name="Draft", steps=drip_steps)
    with pytest.raises(WorkflowStateError):
        await service.enroll(draft.id, "contact", "c1")


@pytest.mark.asyncio
async def test_duplicate_enrollment_conflicts(service, drip_steps):
    workflow = await _active(service, drip_steps)
    await service.enroll(workflow.id, "contact", "c1")
    with pytest.raises(EnrollmentConflictError):
        await service.enroll(workflow.id, "contact", "c1")
    with pytest.raises(EntityNotFoundError):
        await service.enroll(workflow.id, "contact", "ghost")


@pytest.mark.asyncio
async def test_reenrollment_allowed_when_enabled(service, drip_steps):
    workflow = await _active(service, drip_steps, allow_reenrollment=True)
    await service.enroll(workflow.id, "contact", "c1")
    await service.enroll(workflow.id, "contact", "c1")
    assert len(await service.list_entity_enrollments("contact", "c1")) == 2


@pytest.mark.asyncio
async def test_bulk_enrollment_reports_each_entity(service, drip_steps):
    workflow = await _active(service, drip_steps)
    await service.enroll(workflow.id, "contact", "c1")

    result = await service.enroll_bulk(workflow.id, "contact", ["c1", "c2", "c3", "ghost"])

    assert (result.enrolled, result.skipped, result.failed) == (2, 1, 1)
    assert result.errors == ["ghost: contact ghost not found"]
    assert [o.entity_id for o in result.outcomes] == ["c1", "c2", "c3", "ghost"]
    stored = await service.get_workflow(workflow.id)
    assert stored.stats.total_enrolled == 3


@pytest.mark.asyncio
async def test_trigger_event_respects_criteria_and_status(service, drip_steps):
    everyone = await _active(service, drip_steps)
    pro_only = await _active(
        service,
        drip_steps,
        enrollment_criteria=Criteria(conditions=[{"field": "plan", "operator": "equals", "value": "pro"}]),
    )
    paused = await _active(service, drip_steps)
    await service.pause(paused.id)

    basic = await service.trigger_event("ws", "contact_created", "contact", "c2")
    assert [e.workflow_id for e in basic] == [everyone.id]
    assert basic[0].enrollment_source == "trigger"

    pro = await service.trigger_event("ws", "contact_created", "contact", "c1")
    assert {e.workflow_id for e in pro} == {everyone.id, pro_only.id}

    assert await service.trigger_event("ws", "contact_created", "contact", "c1") == []
    assert await service.trigger_event("ws", "deal_created", "deal", "d1") == []


@pytest.mark.asyncio
async def test_paused_workflow_keeps_running_enrollments(service, drip_steps, outbox):
    workflow = await _active(service, drip_steps)
    enrollment = await service.enroll(workflow.id, "contact", "c1")
    await service.pause(workflow.id)

    with pytest.raises(WorkflowStateError):
        await service.enroll(workflow.id, "contact", "c2")
    result = await service.advance_enrollment(enrollment.id, now=utcnow() + timedelta(seconds=1))
    assert result.outcome == "waiting"
    assert len(outbox.sent) == 1

    resumed = await service.resume(workflow.id)
    assert resumed.status == "active"
    with pytest.raises(WorkflowStateError):
        await service.resume(workflow.id)


@pytest.mark.asyncio
async def test_graph_change_bumps_version_and_keeps_running_enrollments(service, drip_steps, outbox):
    workflow = await _active(service, drip_steps)
    old = await service.enroll(workflow.id, "contact", "c1")

    updated = await service.edit_steps(
        workflow.id, [UpdateStep(step_id="welcome", config={"email_subject": "Changed"})]
    )
    assert updated.version == 2
    new = await service.enroll(workflow.id, "contact", "c3")
    assert (old.workflow_version, new.workflow_version) == (1, 2)

    later = utcnow() + timedelta(seconds=1)
    await service.advance_enrollment(old.id, now=later)
    await service.advance_enrollment(new.id, now=later)
    assert [m.subject for m in outbox.sent] == ["Welcome to Acme", "Changed"]


@pytest.mark.asyncio
async def test_active_workflow_rejects_breaking_edit(service, drip_steps):
    workflow = await _active(service, drip_steps)
    with pytest.raises(GraphValidationError):
        await service.edit_steps(workflow.id, [RemoveStep(step_id="t")])
    stored = await service.get_workflow(workflow.id)
    assert stored.version == 1
    assert stored.steps == drip_steps


@pytest.mark.asyncio
async def test_update_fields(service, drip_steps):
    workflow = await service.create_workflow("ws", name="Old", steps=drip_steps)
    updated = await service.update_workflow(workflow.id, name="New", description="Drip campaign")
    assert (updated.name, updated.description, updated.version) == ("New", "Drip campaign", 1)
    with pytest.raises(WorkflowStateError):
        await service.update_workflow(workflow.id, status="active")


@pytest.mark.asyncio
async def test_delete_or_archive(service, branch_steps):
    unused = await service.create_workflow("ws", name="Unused", steps=branch_steps)
    assert await service.delete_workflow(unused.id) == "deleted"
    with pytest.raises(WorkflowNotFoundError):
        await service.get_workflow(unused.id)

    workflow = await _active(service, branch_steps)
    enrollment = await service.enroll(workflow.id, "contact", "c1")
    with pytest.raises(WorkflowStateError):
        await service.delete_workflow(workflow.id)

    await service.advance_enrollment(enrollment.id, now=utcnow() + timedelta(seconds=1))
    assert await service.delete_workflow(workflow.id) == "archived"
    assert await service.list_workflows(workspace_id="ws") == []
    assert [w.id for w in await service.list_workflows(workspace_id="ws", status="archived")] == [workflow.id]
    with pytest.raises(WorkflowStateError):
        await service.activate(workflow.id)


@pytest.mark.asyncio
async def test_clone_gets_fresh_ids(service, branch_steps):
    source = await _active(service, branch_steps)
    copy = await service.clone(source.id, created_by="u1")

    assert copy.id != source.id
    assert copy.name == "Flow (Copy)"
    assert copy.status == "draft"
    assert copy.created_by == "u1"
    assert {s.id for s in copy.steps}.isdisjoint({s.id for s in source.steps})
    assert validate(copy.steps) == []


@pytest.mark.asyncio
async def test_retry_failed_enrollment(service, entities, outbox):
    workflow = await _active(service, _mail_steps())
    enrollment = await service.enroll(workflow.id, "contact", "no-email")

    failed = await service.advance_enrollment(enrollment.id, now=utcnow() + timedelta(seconds=1))
    assert failed.outcome == "failed"
    assert (await service.get_workflow(workflow.id)).stats.failed == 1

    entities.put("contact", "no-email", {"firstName": "Nomail", "email": "found@example.com"})
    retried = await service.retry_enrollment(enrollment.id)
    assert retried.status == "active"
    assert retried.current_step_id == "mail"

    done = await service.advance_enrollment(enrollment.id, now=utcnow() + timedelta(seconds=1))
    assert done.outcome == "completed"
    assert outbox.sent[0].to == "found@example.com"
    with pytest.raises(InvalidTransitionError):
        await service.retry_enrollment(enrollment.id)


@pytest.mark.asyncio
async def test_retry_refused_while_entity_has_newer_enrollment(service):
    workflow = await _active(service, _mail_steps())
    first = await service.enroll(workflow.id, "contact", "no-email")
    await service.advance_enrollment(first.id, now=utcnow() + timedelta(seconds=1))
    second = await service.enroll(workflow.id, "contact", "no-email")

    with pytest.raises(EnrollmentConflictError):
        await service.retry_enrollment(first.id)
    assert (await service.get_enrollment(first.id)).status == "failed"
    active = await service.list_enrollments(workflow.id, status="active")
    assert [e.id for e in active.items] == [second.id]


@pytest.mark.asyncio
async def test_retry_allowed_alongside_reenrollment(service):
    workflow = await _active(service, _mail_steps(), allow_reenrollment=True)
    first = await service.enroll(workflow.id, "contact", "no-email")
    await service.advance_enrollment(first.id, now=utcnow() + timedelta(seconds=1))
    await service.enroll(workflow.id, "contact", "no-email")

    retried = await service.retry_enrollment(first.id)
    assert retried.status == "active"
    assert (await service.list_enrollments(workflow.id, status="active")).total == 2


@pytest.mark.asyncio
async def test_pause_and_resume_enrollment(service, drip_steps):
    workflow = await _active(service, drip_steps)
    enrollment = await service.enroll(workflow.id, "contact", "c1")

    paused = await service.pause_enrollment(enrollment.id)
    assert paused.status == "paused"
    result = await service.advance_enrollment(enrollment.id, now=utcnow() + timedelta(seconds=1))
    assert result.outcome == "noop"

    resumed = await service.resume_enrollment(enrollment.id)
    assert resumed.status == "active"
    assert resumed.current_step_id == "welcome"


@pytest.mark.asyncio
async def test_list_enrollments_pages(service, drip_steps):
    workflow = await _active(service, drip_steps)
    await service.enroll_bulk(workflow.id, "contact", [f"c{i}" for i in range(1, 6)])

    page = await service.list_enrollments(workflow.id, limit=2, offset=2)
    assert len(page.items) == 2
    assert page.total == 5
    assert (await service.list_enrollments(workflow.id, status="completed")).total == 0


@pytest.mark.asyncio
async def test_test_workflow_uses_stored_or_given_entity(service, drip_steps, outbox):
    workflow = await service.create_workflow("ws", name="Draft", steps=drip_steps)

    result = await service.test_workflow(workflow.id, "c1")
    assert result.success
    assert result.final_status == "completed"
    assert outbox.sent == []

    custom = await service.test_workflow(
        workflow.id, "preview", entity={"email": "preview@example.com", "firstName": "P"}
    )
    assert "preview@example.com" in custom.steps[1].message

    with pytest.raises(EntityNotFoundError):
        await service.test_workflow(workflow.id, "ghost")


@pytest.mark.asyncio
async def test_analytics_after_runs(service, branch_steps):
    workflow = await _active(service, branch_steps)
    await service.enroll_bulk(workflow.id, "contact", ["c1", "c2", "c3"])
    await Scheduler(service).process_due(utcnow() + timedelta(seconds=1))

    funnel = {row.step_id: row for row in await service.funnel(workflow.id)}
    assert funnel["check"].entered == 3
    assert funnel["pro"].completed == 2
    assert funnel["basic"].completed == 1

    overview = await service.overview(workflow.id)
    assert overview.total_enrolled == 3
    assert overview.completed == 3
    assert overview.completion_rate == 100.0

    timeline = await service.timeline(workflow.id, days=7)
    assert len(timeline) == 7
    assert timeline[-1].enrolled == 3
    assert timeline[-1].completed == 3
