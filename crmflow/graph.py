"""Step graph model: typed workflow steps and structural validation."""

from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def new_step_id() -> str:
    """Return a fresh, collision-resistant step identifier."""
    return str(uuid.uuid4())


class TriggerType(str, Enum):
    CONTACT_CREATED = "contact_created"
    CONTACT_UPDATED = "contact_updated"
    CONTACT_JOB_CHANGED = "contact_job_changed"
    DEAL_STAGE_CHANGED = "deal_stage_changed"
    DEAL_CREATED = "deal_created"
    EMAIL_OPENED = "email_opened"
    EMAIL_CLICKED = "email_clicked"
    FORM_SUBMITTED = "form_submitted"
    MANUAL = "manual"
    WEBHOOK_RECEIVED = "webhook_received"


class ActionType(str, Enum):
    SEND_EMAIL = "send_email"
    CREATE_TASK = "create_task"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    UPDATE_FIELD = "update_field"
    ASSIGN_OWNER = "assign_owner"
    SEND_NOTIFICATION = "send_notification"
    SEND_WEBHOOK = "send_webhook"
    UPDATE_LEAD_SCORE = "update_lead_score"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"
    IN = "in"
    NOT_IN = "not_in"


class DelayType(str, Enum):
    DURATION = "duration"
    UNTIL_DATE = "until_date"
    UNTIL_TIME = "until_time"
    UNTIL_WEEKDAY = "until_weekday"


class DelayUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


EntityType = Literal["contact", "deal", "company"]
StepType = Literal["trigger", "action", "condition", "delay"]


class Position(BaseModel):
    """Canvas coordinates; layout only."""

    x: float = 0
    y: float = 0


class Condition(BaseModel):
    """A single ``field operator value`` clause."""

    field: str
    operator: ConditionOperator
    value: Any = None


class Criteria(BaseModel):
    """Clause list used for enrollment filters and goals."""

    conditions: List[Condition] = Field(default_factory=list)
    match_all: bool = True


# ---------------------------------------------------------------------------
# Step configurations


class TriggerConfig(BaseModel):
    trigger_type: TriggerType = TriggerType.MANUAL


_REQUIRED_ACTION_FIELDS: Dict[ActionType, tuple[str, ...]] = {
    ActionType.SEND_EMAIL: ("email_subject", "email_body"),
    ActionType.CREATE_TASK: ("task_title",),
    ActionType.ADD_TAG: ("tag_name",),
    ActionType.REMOVE_TAG: ("tag_name",),
    ActionType.UPDATE_FIELD: ("field_name",),
    ActionType.ASSIGN_OWNER: ("owner_id",),
    ActionType.SEND_NOTIFICATION: ("notification_message",),
    ActionType.SEND_WEBHOOK: ("webhook_url",),
    ActionType.UPDATE_LEAD_SCORE: ("score_points",),
}


class ActionConfig(BaseModel):
    """Parameters for an action step; which fields matter depends on ``action_type``."""

    action_type: ActionType

    # send_email
    email_subject: Optional[str] = None
    email_body: Optional[str] = None
    recipient_email: Optional[str] = None

    # create_task
    task_title: Optional[str] = None
    task_description: Optional[str] = None
    task_due_in_days: Optional[int] = None
    task_assignee: Optional[str] = None

    # add_tag / remove_tag
    tag_name: Optional[str] = None

    # update_field / assign_owner
    field_name: Optional[str] = None
    field_value: Any = None
    owner_id: Optional[str] = None

    # send_notification
    notification_message: Optional[str] = None
    notification_user_id: Optional[str] = None

    # send_webhook
    webhook_url: Optional[str] = None
    webhook_method: Literal["GET", "POST", "PUT", "PATCH"] = "POST"
    webhook_headers: Dict[str, str] = Field(default_factory=dict)
    webhook_body: Optional[str] = None

    # update_lead_score
    score_points: Optional[int] = None
    score_reason: Optional[str] = None

    def missing_fields(self) -> List[str]:
        """Names of parameters the action type needs but the config lacks."""
        required = _REQUIRED_ACTION_FIELDS.get(self.action_type, ())
        return [name for name in required if getattr(self, name) in (None, "")]

    def params(self) -> Dict[str, Any]:
        """Parameters that are set, without the action type."""
        return self.model_dump(exclude={"action_type"}, exclude_none=True, mode="json")


class ConditionConfig(BaseModel):
    conditions: List[Condition] = Field(default_factory=list)
    match_all: bool = True

    def as_criteria(self) -> Criteria:
        return Criteria(conditions=self.conditions, match_all=self.match_all)


class DelayConfig(BaseModel):
    delay_type: DelayType = DelayType.DURATION
    value: Optional[float] = None
    unit: Optional[DelayUnit] = None
    date: Optional[datetime] = None
    time: Optional[str] = None
    weekday: Optional[int] = Field(default=None, description="0=Monday .. 6=Sunday")

    def problems(self) -> List[str]:
        """Reasons no wake time can be computed; empty when usable."""
        if self.delay_type == DelayType.DURATION:
            issues = []
            if self.value is None or self.value < 0:
                issues.append("delay value must be a non-negative number")
            if self.unit is None:
                issues.append("delay unit is required")
            return issues
        if self.delay_type == DelayType.UNTIL_DATE:
            return [] if self.date is not None else ["delay date is required"]
        if self.delay_type == DelayType.UNTIL_TIME:
            return [] if parse_clock(self.time) else ["delay time must be HH:MM"]
        if self.weekday is None or not 0 <= self.weekday <= 6:
            return ["delay weekday must be between 0 and 6"]
        return []


def parse_clock(value: Optional[str]) -> Optional[tuple[int, int]]:
    if not value or ":" not in value:
        return None
    hours, _, minutes = value.partition(":")
    try:
        h, m = int(hours), int(minutes)
    except ValueError:
        return None
    if not (0 <= h < 24 and 0 <= m < 60):
        return None
    return h, m


# ---------------------------------------------------------------------------
# Steps


class _StepBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_step_id)
    name: str = ""
    position: Position = Field(default_factory=Position)
    next_step_ids: List[Optional[str]] = Field(default_factory=list)

    def successor(self, index: int = 0) -> Optional[str]:
        """Target at ``index`` in ``next_step_ids`` or ``None`` for "end"."""
        if index < len(self.next_step_ids):
            return self.next_step_ids[index]
        return None


class TriggerStep(_StepBase):
    type: Literal["trigger"] = "trigger"
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class ActionStep(_StepBase):
    type: Literal["action"] = "action"
    config: ActionConfig


class ConditionStep(_StepBase):
    """Branching step: ``next_step_ids[0]`` is the true path, ``[1]`` the false path."""

    type: Literal["condition"] = "condition"
    config: ConditionConfig = Field(default_factory=ConditionConfig)


class DelayStep(_StepBase):
    type: Literal["delay"] = "delay"
    config: DelayConfig = Field(default_factory=DelayConfig)


WorkflowStep = Annotated[
    Union[TriggerStep, ActionStep, ConditionStep, DelayStep],
    Field(discriminator="type"),
]

_steps_adapter: TypeAdapter[List[WorkflowStep]] = TypeAdapter(List[WorkflowStep])
_step_adapter: TypeAdapter[WorkflowStep] = TypeAdapter(WorkflowStep)


def parse_steps(data: Iterable[Any]) -> List[WorkflowStep]:
    """Validate raw step dictionaries into typed steps."""
    return _steps_adapter.validate_python(list(data))


def parse_step(data: Any) -> WorkflowStep:
    return _step_adapter.validate_python(data)


def dump_steps(steps: Iterable[WorkflowStep]) -> List[Dict[str, Any]]:
    return [step.model_dump(mode="json") for step in steps]


# ---------------------------------------------------------------------------
# Validation


class GraphError(BaseModel):
    """A problem found in a step graph."""

    code: str
    message: str
    step_id: Optional[str] = None
    severity: Literal["error", "warning"] = "error"

    @property
    def fatal(self) -> bool:
        return self.severity == "error"


def has_fatal(errors: Iterable[GraphError]) -> bool:
    return any(e.fatal for e in errors)


def validate(steps: Iterable[WorkflowStep]) -> List[GraphError]:
    """Check the structure of a step graph.

    Unreachable steps and empty conditions are reported as warnings so that a
    graph which is still being edited can be saved; everything else is fatal.
    """
    steps = list(steps)
    errors: List[GraphError] = []

    ids: set[str] = set()
    for step in steps:
        if step.id in ids:
            errors.append(
                GraphError(
                    code="duplicate_id",
                    message=f"Step id {step.id} is used more than once",
                    step_id=step.id,
                )
            )
        ids.add(step.id)

    triggers = [s for s in steps if s.type == "trigger"]
    if not triggers:
        errors.append(
            GraphError(code="missing_trigger", message="Workflow has no trigger step")
        )
    for extra in triggers[1:]:
        errors.append(
            GraphError(
                code="multiple_triggers",
                message=f"Workflow must have exactly one trigger (extra: {extra.name or extra.id})",
                step_id=extra.id,
            )
        )

    incoming: Dict[str, int] = {}
    for step in steps:
        if step.type == "condition" and len(step.next_step_ids) > 2:
            errors.append(
                GraphError(
                    code="too_many_branches",
                    message=f"Condition '{step.name or step.id}' has more than two branches",
                    step_id=step.id,
                )
            )
        for target in step.next_step_ids:
            if target is None:
                if step.type != "condition":
                    errors.append(
                        GraphError(
                            code="empty_edge",
                            message=f"Step '{step.name or step.id}' has an empty successor entry",
                            step_id=step.id,
                        )
                    )
                continue
            if target not in ids:
                errors.append(
                    GraphError(
                        code="dangling_edge",
                        message=f"Step '{step.name or step.id}' points to unknown step {target}",
                        step_id=step.id,
                    )
                )
                continue
            incoming[target] = incoming.get(target, 0) + 1
        errors.extend(_config_errors(step))

    for trigger in triggers:
        if incoming.get(trigger.id):
            errors.append(
                GraphError(
                    code="trigger_has_incoming",
                    message=f"Trigger '{trigger.name or trigger.id}' cannot be the target of an edge",
                    step_id=trigger.id,
                )
            )

    if len(triggers) == 1:
        reachable = _reachable_from(triggers[0].id, {s.id: s for s in steps})
        for step in steps:
            if step.id not in reachable:
                errors.append(
                    GraphError(
                        code="unreachable",
                        message=f"Step '{step.name or step.id}' is not reachable from the trigger",
                        step_id=step.id,
                        severity="warning",
                    )
                )
    return errors


def _config_errors(step: WorkflowStep) -> List[GraphError]:
    label = step.name or step.id
    if step.type == "action":
        missing = step.config.missing_fields()
        if missing:
            return [
                GraphError(
                    code="missing_action_fields",
                    message=f"Action '{label}' ({step.config.action_type.value}) is missing: {', '.join(missing)}",
                    step_id=step.id,
                )
            ]
    elif step.type == "delay":
        return [
            GraphError(code="invalid_delay", message=f"Delay '{label}': {problem}", step_id=step.id)
            for problem in step.config.problems()
        ]
    elif step.type == "condition" and not step.config.conditions:
        return [
            GraphError(
                code="empty_condition",
                message=f"Condition '{label}' has no clauses and always takes the true branch",
                step_id=step.id,
                severity="warning",
            )
        ]
    return []


def _reachable_from(start_id: str, by_id: Dict[str, WorkflowStep]) -> set[str]:
    seen = {start_id}
    queue = deque([start_id])
    while queue:
        step = by_id.get(queue.popleft())
        if step is None:
            continue
        for target in step.next_step_ids:
            if target is not None and target not in seen and target in by_id:
                seen.add(target)
                queue.append(target)
    return seen


class StepGraph:
    """Read-only id index over one version of a workflow's steps."""

    def __init__(self, steps: Iterable[WorkflowStep], version: int = 1) -> None:
        self.steps = tuple(steps)
        self.version = version
        self._by_id = {step.id: step for step in self.steps}

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._by_id

    def __len__(self) -> int:
        return len(self.steps)

    def get(self, step_id: Optional[str]) -> Optional[WorkflowStep]:
        if step_id is None:
            return None
        return self._by_id.get(step_id)

    @property
    def trigger(self) -> Optional[TriggerStep]:
        for step in self.steps:
            if step.type == "trigger":
                return step
        return None

    def entry_step_id(self) -> Optional[str]:
        """First step an enrollment executes, i.e. the trigger's successor."""
        trigger = self.trigger
        return trigger.successor(0) if trigger else None

    def validate(self) -> List[GraphError]:
        return validate(self.steps)
