"""Enrollment creation and status transitions."""

from datetime import timedelta

import pytest

from crmflow.contracts import StepExecution, Workflow, WorkflowEnrollment
from crmflow.enrollment import (
    blocks_enrollment,
    can_transition,
    new_enrollment,
    pause,
    resume,
    retry,
    transition,
)
from crmflow.errors import GraphValidationError, InvalidTransitionError, WorkflowStateError
from crmflow.graph import ActionStep, TriggerStep


def _workflow(steps, **kwargs):
    return Workflow(workspace_id="ws", name="Drip", steps=steps, status="active", **kwargs)


def _failed_enrollment(error_count=1):
    return WorkflowEnrollment(
        workflow_id="wf",
        workspace_id="ws",
        entity_type="contact",
        entity_id="c1",
        status="failed",
        error_count=error_count,
        last_error="boom",
        steps_executed=[
            StepExecution(step_id="t", step_type="trigger", status="completed"),
            StepExecution(step_id="a", step_type="action", status="completed"),
            StepExecution(step_id="b", step_type="action", status="failed", error="boom"),
        ],
    )


def test_new_enrollment_starts_after_trigger(drip_steps, now):
    enrollment = new_enrollment(_workflow(drip_steps, version=4), "contact", "c1", now=now)

    assert enrollment.status == "active"
    assert enrollment.current_step_id == "welcome"
    assert enrollment.next_execution_time == now
    assert enrollment.workflow_version == 4
    assert enrollment.workspace_id == "ws"
    [entry] = enrollment.steps_executed
    assert entry.step_id == "t"
    assert entry.status == "completed"
    assert entry.result == {"source": "manual", "trigger_type": "contact_created"}


def test_trigger_only_workflow_completes_immediately(now):
    enrollment = new_enrollment(_workflow([TriggerStep(id="t")]), "contact", "c1", now=now)
    assert enrollment.status == "completed"
    assert enrollment.completed_at == now
    assert enrollment.current_step_id is None


def test_wrong_entity_type_is_rejected(drip_steps):
    with pytest.raises(WorkflowStateError):
        new_enrollment(_workflow(drip_steps), "deal", "d1")


def test_workflow_without_trigger_cannot_enroll():
    steps = [ActionStep(id="a", config={"action_type": "add_tag", "tag_name": "x"})]
    with pytest.raises(GraphValidationError):
        new_enrollment(_workflow(steps), "contact", "c1")


@pytest.mark.parametrize(
    "current, target, allowed",
    [
        ("active", "paused", True),
        ("active", "completed", True),
        ("active", "failed", True),
        ("paused", "active", True),
        ("paused", "completed", False),
        ("completed", "active", False),
        ("failed", "active", False),
        ("failed", "completed", False),
    ],
)
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_terminal_transition_clears_position(drip_steps, now):
    enrollment = new_enrollment(_workflow(drip_steps), "contact", "c1", now=now)
    failed = transition(enrollment, "failed", now=now, error="nope")

    assert failed.status == "failed"
    assert failed.current_step_id is None
    assert failed.next_execution_time is None
    assert failed.last_error == "nope"
    assert enrollment.status == "active"


def test_completed_enrollment_cannot_be_paused(now):
    enrollment = new_enrollment(_workflow([TriggerStep(id="t")]), "contact", "c1", now=now)
    with pytest.raises(InvalidTransitionError):
        pause(enrollment)


def test_pause_and_resume(drip_steps):
    enrollment = new_enrollment(_workflow(drip_steps), "contact", "c1")
    paused = pause(enrollment)
    assert paused.status == "paused"
    assert paused.current_step_id == "welcome"
    assert resume(paused).status == "active"


def test_retry_resumes_at_failed_step(now):
    retried = retry(_failed_enrollment(), max_retries=3, now=now)

    assert retried.status == "active"
    assert retried.current_step_id == "b"
    assert retried.retry_count == 1
    assert retried.last_error is None
    assert retried.next_execution_time == now
    assert len(retried.steps_executed) == 3


def test_retry_rejects_non_failed():
    enrollment = _failed_enrollment().model_copy(update={"status": "active"})
    with pytest.raises(InvalidTransitionError):
        retry(enrollment)


def test_retry_limit():
    with pytest.raises(InvalidTransitionError) as exc:
        retry(_failed_enrollment(error_count=4), max_retries=3)
    assert "exceeds" in str(exc.value)
    retry(_failed_enrollment(error_count=3), max_retries=3)


@pytest.mark.parametrize(
    "status, blocked",
    [("active", True), ("paused", True), ("completed", True), ("failed", False)],
)
def test_blocking_statuses(status, blocked):
    existing = _failed_enrollment().model_copy(update={"status": status})
    assert (blocks_enrollment([existing], allow_reenrollment=False) is not None) is blocked
    assert blocks_enrollment([existing], allow_reenrollment=True) is None


def test_is_due(drip_steps, now):
    enrollment = new_enrollment(_workflow(drip_steps), "contact", "c1", now=now)
    enrollment.next_execution_time = now + timedelta(hours=1)
    assert not enrollment.is_due(now)
    assert enrollment.is_due(now + timedelta(hours=1))
