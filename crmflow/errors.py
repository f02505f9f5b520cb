"""Exception taxonomy for the automation engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .graph import GraphError


class CrmflowError(Exception):
    """Base class for all engine errors."""


class GraphValidationError(CrmflowError):
    """A step graph has fatal structural problems."""

    def __init__(self, errors: List["GraphError"], message: Optional[str] = None):
        self.errors = errors
        if message is None:
            details = "; ".join(e.message for e in errors) or "invalid graph"
            message = f"Workflow graph is invalid: {details}"
        super().__init__(message)


class GraphEditError(CrmflowError):
    """An edit command refers to steps it cannot be applied to."""


class EnrollmentConflictError(CrmflowError):
    """The entity already holds an enrollment that blocks a new one."""

    def __init__(self, workflow_id: str, entity_type: str, entity_id: str):
        self.workflow_id = workflow_id
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} {entity_id} is already enrolled in workflow {workflow_id}"
        )


class StepExecutionError(CrmflowError):
    """A step could not be executed for an enrollment."""

    def __init__(self, message: str, step_id: Optional[str] = None):
        self.step_id = step_id
        super().__init__(message)


class SchedulingError(StepExecutionError):
    """A delay step has a configuration no wake time can be computed from."""


class WorkflowNotFoundError(CrmflowError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found")


class EnrollmentNotFoundError(CrmflowError):
    def __init__(self, enrollment_id: str):
        self.enrollment_id = enrollment_id
        super().__init__(f"Enrollment {enrollment_id} not found")


class TemplateNotFoundError(CrmflowError):
    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template {template_id} not found")


class EntityNotFoundError(CrmflowError):
    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class WorkflowStateError(CrmflowError):
    """An operation is not allowed in the workflow's current lifecycle state."""


class InvalidTransitionError(CrmflowError):
    """An enrollment status change is not permitted by the state machine."""

    def __init__(self, current: str, target: str, reason: Optional[str] = None):
        self.current = current
        self.target = target
        message = f"Cannot move enrollment from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
