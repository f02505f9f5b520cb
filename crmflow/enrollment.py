"""Enrollment creation and the status state machine."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, Optional

from .contracts import (
    EnrollmentSource,
    EnrollmentStatus,
    StepExecution,
    Workflow,
    WorkflowEnrollment,
    utcnow,
)
from .errors import GraphValidationError, InvalidTransitionError, WorkflowStateError
from .graph import GraphError

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "active": frozenset({"paused", "completed", "failed"}),
    "paused": frozenset({"active"}),
    "completed": frozenset(),
    "failed": frozenset(),
}

# statuses that stop the same entity from being enrolled again
BLOCKING_STATUSES: FrozenSet[str] = frozenset({"active", "paused", "completed"})


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def transition(
    enrollment: WorkflowEnrollment,
    target: EnrollmentStatus,
    now: Optional[datetime] = None,
    error: Optional[str] = None,
) -> WorkflowEnrollment:
    """Return a copy of ``enrollment`` moved to ``target``.

    Raises:
        InvalidTransitionError: the move is not allowed from the current status.
    """
    if not can_transition(enrollment.status, target):
        raise InvalidTransitionError(enrollment.status, target)
    now = now or utcnow()
    updated = enrollment.model_copy(deep=True)
    updated.status = target
    if target in ("completed", "failed"):
        updated.current_step_id = None
        updated.next_execution_time = None
    if target == "completed":
        updated.completed_at = now
    if target == "failed" and error is not None:
        updated.last_error = error
    return updated


def pause(enrollment: WorkflowEnrollment) -> WorkflowEnrollment:
    return transition(enrollment, "paused")


def resume(enrollment: WorkflowEnrollment) -> WorkflowEnrollment:
    return transition(enrollment, "active")


def new_enrollment(
    workflow: Workflow,
    entity_type: str,
    entity_id: str,
    source: EnrollmentSource = "manual",
    enrolled_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> WorkflowEnrollment:
    """Build an enrollment positioned on the trigger's first successor.

    The trigger itself is consumed here and recorded as the first audit entry.
    """
    if entity_type != workflow.trigger_entity_type:
        raise WorkflowStateError(
            f"Workflow {workflow.id} enrolls {workflow.trigger_entity_type} records, not {entity_type}"
        )
    trigger = workflow.graph().trigger
    if trigger is None:
        raise GraphValidationError(
            [GraphError(code="missing_trigger", message="Workflow has no trigger step")]
        )
    now = now or utcnow()
    enrollment = WorkflowEnrollment(
        workflow_id=workflow.id,
        workflow_version=workflow.version,
        workspace_id=workflow.workspace_id,
        entity_type=entity_type,
        entity_id=entity_id,
        enrolled_at=now,
        enrollment_source=source,
        enrolled_by=enrolled_by,
        current_step_id=trigger.successor(0),
        next_execution_time=now,
        steps_executed=[
            StepExecution(
                step_id=trigger.id,
                step_name=trigger.name,
                step_type="trigger",
                started_at=now,
                completed_at=now,
                status="completed",
                result={"source": source, "trigger_type": trigger.config.trigger_type.value},
            )
        ],
    )
    if enrollment.current_step_id is None:
        enrollment = transition(enrollment, "completed", now=now)
    return enrollment


def blocks_enrollment(
    existing: Iterable[WorkflowEnrollment], allow_reenrollment: bool
) -> Optional[WorkflowEnrollment]:
    """Return the enrollment that prevents a new one, if any."""
    if allow_reenrollment:
        return None
    for enrollment in existing:
        if enrollment.status in BLOCKING_STATUSES:
            return enrollment
    return None


def retry(
    enrollment: WorkflowEnrollment,
    max_retries: Optional[int] = None,
    now: Optional[datetime] = None,
) -> WorkflowEnrollment:
    """Reactivate a failed enrollment on the step that failed.

    The audit log is kept as is; the next advance appends new entries.
    """
    if enrollment.status != "failed":
        raise InvalidTransitionError(enrollment.status, "active", "only failed enrollments can be retried")
    if max_retries is not None and enrollment.error_count > max_retries:
        raise InvalidTransitionError(
            enrollment.status,
            "active",
            f"error count {enrollment.error_count} exceeds the limit of {max_retries}",
        )
    failed_entry = next(
        (e for e in reversed(enrollment.steps_executed) if e.status == "failed"), None
    )
    if failed_entry is None:
        raise InvalidTransitionError(enrollment.status, "active", "no failed step to resume from")

    retried = enrollment.model_copy(deep=True)
    retried.status = "active"
    retried.current_step_id = failed_entry.step_id
    retried.last_error = None
    retried.retry_count += 1
    retried.completed_at = None
    retried.next_execution_time = now or utcnow()
    logger.info(
        f"Retrying enrollment {enrollment.id} at step {failed_entry.step_id} (retry {retried.retry_count})"
    )
    return retried
