"""Core records of the automation engine: workflows, enrollments and results."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field, field_validator

from .graph import Criteria, EntityType, StepGraph, TriggerType, WorkflowStep


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


WorkflowStatus = Literal["draft", "active", "paused", "archived"]
EnrollmentStatus = Literal["active", "paused", "completed", "failed"]
EnrollmentSource = Literal["trigger", "manual", "api"]
ExecutionStatus = Literal["completed", "pending", "failed"]
AdvanceOutcome = Literal["advanced", "waiting", "completed", "failed", "noop"]


class WorkflowStats(BaseModel):
    total_enrolled: int = 0
    currently_active: int = 0
    completed: int = 0
    failed: int = 0
    goals_met: int = 0


class Workflow(BaseModel):
    """A named automation graph owned by a workspace."""

    id: str = Field(default_factory=new_id)
    workspace_id: str
    name: str
    description: str = ""
    status: WorkflowStatus = "draft"
    trigger_entity_type: EntityType = "contact"
    steps: List[WorkflowStep] = Field(default_factory=list)
    allow_reenrollment: bool = False
    goal_criteria: Optional[Criteria] = None
    enrollment_criteria: Optional[Criteria] = None
    version: int = 1
    stats: WorkflowStats = Field(default_factory=WorkflowStats)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_activated_at: Optional[datetime] = None

    @computed_field
    @property
    def trigger_type(self) -> Optional[TriggerType]:
        """Trigger type taken from the graph's trigger step."""
        for step in self.steps:
            if step.type == "trigger":
                return step.config.trigger_type
        return None

    def graph(self) -> StepGraph:
        return StepGraph(self.steps, version=self.version)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "Workflow":
        return cls.model_validate_json(data)


class StepExecution(BaseModel):
    """One entry of an enrollment's append-only audit log."""

    id: str = Field(default_factory=new_id)
    step_id: str
    step_name: str = ""
    step_type: str
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    status: ExecutionStatus
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    simulated: bool = False
    attempt: int = 1


class WorkflowEnrollment(BaseModel):
    """The run of one workflow for one CRM entity."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    workflow_version: int = 1
    workspace_id: str
    entity_type: EntityType
    entity_id: str
    status: EnrollmentStatus = "active"
    current_step_id: Optional[str] = None
    next_execution_time: Optional[datetime] = None
    enrolled_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    enrollment_source: EnrollmentSource = "manual"
    enrolled_by: Optional[str] = None
    steps_executed: List[StepExecution] = Field(default_factory=list)
    error_count: int = 0
    last_error: Optional[str] = None
    retry_count: int = 0
    goal_met: bool = False

    def is_due(self, now: datetime) -> bool:
        return self.next_execution_time is None or self.next_execution_time <= now

    def last_entry_for(self, step_id: str) -> Optional[StepExecution]:
        for entry in reversed(self.steps_executed):
            if entry.step_id == step_id:
                return entry
        return None

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowEnrollment":
        return cls.model_validate_json(data)


class EnrollmentStepResult(BaseModel):
    """What a single ``advance`` call did to an enrollment."""

    enrollment: WorkflowEnrollment
    executed: List[StepExecution] = Field(default_factory=list)
    outcome: AdvanceOutcome
    error: Optional[str] = None


class EnrollmentOutcome(BaseModel):
    entity_id: str
    outcome: Literal["enrolled", "skipped", "failed"]
    enrollment_id: Optional[str] = None
    error: Optional[str] = None


class BulkEnrollmentResult(BaseModel):
    enrolled: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
    outcomes: List[EnrollmentOutcome] = Field(default_factory=list)


class TestStepTrace(BaseModel):
    __test__ = False

    step_id: str
    step_name: str = ""
    step_type: str
    status: ExecutionStatus
    simulated: bool = False
    message: str = ""
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: float = 0
    delay_skipped_ms: Optional[int] = None


class TestRunResult(BaseModel):
    """Trace of a dry-run or fast-forwarded test execution."""

    __test__ = False

    workflow_id: str
    entity_type: EntityType
    entity_id: str
    dry_run: bool
    fast_forward: bool
    steps: List[TestStepTrace] = Field(default_factory=list)
    success: bool = True
    final_status: EnrollmentStatus = "active"
    error: Optional[str] = None
    simulated_duration_ms: float = 0
    estimated_duration_ms: int = 0


class FunnelStep(BaseModel):
    step_id: str
    step_name: str = ""
    step_type: str
    entered: int = 0
    completed: int = 0
    failed: int = 0
    dropoff: int = 0


class WorkflowOverview(BaseModel):
    workflow_id: str
    total_enrolled: int = 0
    currently_active: int = 0
    paused: int = 0
    completed: int = 0
    failed: int = 0
    goals_met: int = 0
    completion_rate: float = 0.0
    avg_days_to_complete: Optional[float] = None


class TimelinePoint(BaseModel):
    day: date
    enrolled: int = 0
    completed: int = 0
    failed: int = 0


class EnrollmentPage(BaseModel):
    items: List[WorkflowEnrollment] = Field(default_factory=list)
    total: int = 0
    limit: int = 50
    offset: int = 0


class SchedulerStatus(BaseModel):
    running: bool = False
    last_run_at: Optional[datetime] = None
    last_processed: int = 0
    pending: int = 0


class EnrollmentDispatch(BaseModel):
    """Envelope published on a transport so a worker advances an enrollment."""

    message_id: str = Field(default_factory=new_id)
    enrollment_id: str
    workflow_id: str
    scheduled_for: Optional[datetime] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("enrollment_id", "workflow_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value:
            raise ValueError("identifier must not be empty")
        return value

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "EnrollmentDispatch":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
