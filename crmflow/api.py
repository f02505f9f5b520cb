"""HTTP surface of the automation engine.

``create_app(service)`` returns a FastAPI application whose routes are thin
wrappers over :class:`~crmflow.service.WorkflowService`. Engine errors are
mapped to HTTP responses in one place by :func:`register_exception_handlers`.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .contracts import (
    BulkEnrollmentResult,
    EnrollmentPage,
    EnrollmentSource,
    EnrollmentStatus,
    FunnelStep,
    SchedulerStatus,
    TestRunResult,
    TimelinePoint,
    Workflow,
    WorkflowEnrollment,
    WorkflowOverview,
    WorkflowStatus,
)
from .editor import GraphCommand
from .errors import (
    CrmflowError,
    EnrollmentConflictError,
    EnrollmentNotFoundError,
    EntityNotFoundError,
    GraphEditError,
    GraphValidationError,
    InvalidTransitionError,
    TemplateNotFoundError,
    WorkflowNotFoundError,
    WorkflowStateError,
)
from .graph import Criteria, EntityType, GraphError, TriggerType, WorkflowStep
from .scheduler import Scheduler
from .service import WorkflowService
from .templates import WorkflowTemplate, list_templates

logger = logging.getLogger(__name__)

_ERROR_STATUS: Dict[type, int] = {
    WorkflowNotFoundError: 404,
    EnrollmentNotFoundError: 404,
    TemplateNotFoundError: 404,
    EntityNotFoundError: 404,
    EnrollmentConflictError: 409,
    GraphValidationError: 422,
    GraphEditError: 422,
    WorkflowStateError: 400,
    InvalidTransitionError: 400,
}


class CreateWorkflowRequest(BaseModel):
    name: Optional[str] = None
    description: str = ""
    trigger_entity_type: Optional[EntityType] = None
    steps: Optional[List[WorkflowStep]] = None
    template_id: Optional[str] = None
    created_by: Optional[str] = None
    allow_reenrollment: bool = False
    goal_criteria: Optional[Criteria] = None
    enrollment_criteria: Optional[Criteria] = None


class UpdateWorkflowRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    trigger_entity_type: Optional[EntityType] = None
    steps: Optional[List[WorkflowStep]] = None
    allow_reenrollment: Optional[bool] = None
    goal_criteria: Optional[Criteria] = None
    enrollment_criteria: Optional[Criteria] = None


class EditStepsRequest(BaseModel):
    commands: List[GraphCommand] = Field(default_factory=list)


class ValidateStepsRequest(BaseModel):
    steps: List[WorkflowStep] = Field(default_factory=list)


class CloneRequest(BaseModel):
    name: Optional[str] = None
    created_by: Optional[str] = None


class EnrollRequest(BaseModel):
    entity_type: EntityType
    entity_id: str
    source: EnrollmentSource = "manual"
    enrolled_by: Optional[str] = None


class BulkEnrollRequest(BaseModel):
    entity_type: EntityType
    entity_ids: List[str] = Field(min_length=1)
    enrolled_by: Optional[str] = None


class TriggerEventRequest(BaseModel):
    trigger_type: TriggerType
    entity_type: EntityType
    entity_id: str


class TestWorkflowRequest(BaseModel):
    __test__ = False

    entity_id: str
    entity: Optional[Dict[str, Any]] = None
    dry_run: bool = True
    fast_forward: bool = True


class ValidationReport(BaseModel):
    valid: bool
    errors: List[GraphError] = Field(default_factory=list)


class DeleteResult(BaseModel):
    workflow_id: str
    result: str


class ProcessResult(BaseModel):
    processed: int


def _error_status(exc: CrmflowError) -> int:
    for cls in type(exc).__mro__:
        if cls in _ERROR_STATUS:
            return _ERROR_STATUS[cls]
    return 400


def _crmflow_exception_handler(request: Request, exc: CrmflowError) -> JSONResponse:
    status = _error_status(exc)
    content: Dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, GraphValidationError):
        content["details"] = [e.model_dump() for e in exc.errors]
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CrmflowError, _crmflow_exception_handler)


def _report(errors: List[GraphError]) -> ValidationReport:
    return ValidationReport(valid=not any(e.fatal for e in errors), errors=errors)


def create_router(service: WorkflowService, scheduler: Optional[Scheduler] = None) -> APIRouter:
    """Routes for workflows, enrollments, test runs and analytics."""
    router = APIRouter()
    scheduler = scheduler or Scheduler(service)

    @router.get("/templates", response_model=List[WorkflowTemplate])
    async def get_templates() -> List[WorkflowTemplate]:
        return list_templates()

    @router.get("/workspaces/{workspace_id}/workflows", response_model=List[Workflow])
    async def list_workflows(
        workspace_id: str, status: Optional[WorkflowStatus] = None
    ) -> List[Workflow]:
        return await service.list_workflows(workspace_id=workspace_id, status=status)

    @router.post(
        "/workspaces/{workspace_id}/workflows", response_model=Workflow, status_code=201
    )
    async def create_workflow(workspace_id: str, body: CreateWorkflowRequest) -> Workflow:
        fields = {field: getattr(body, field) for field in CreateWorkflowRequest.model_fields}
        return await service.create_workflow(workspace_id, **fields)

    @router.post(
        "/workspaces/{workspace_id}/workflows/validate", response_model=ValidationReport
    )
    async def validate_steps(workspace_id: str, body: ValidateStepsRequest) -> ValidationReport:
        return _report(service.validate_steps(body.steps))

    @router.get("/workspaces/{workspace_id}/workflows/{workflow_id}", response_model=Workflow)
    async def get_workflow(workspace_id: str, workflow_id: str) -> Workflow:
        return await service.get_workflow(workflow_id, workspace_id)

    @router.patch("/workspaces/{workspace_id}/workflows/{workflow_id}", response_model=Workflow)
    async def update_workflow(
        workspace_id: str, workflow_id: str, body: UpdateWorkflowRequest
    ) -> Workflow:
        changes = {field: getattr(body, field) for field in body.model_fields_set}
        return await service.update_workflow(workflow_id, workspace_id, **changes)

    @router.delete(
        "/workspaces/{workspace_id}/workflows/{workflow_id}", response_model=DeleteResult
    )
    async def delete_workflow(workspace_id: str, workflow_id: str) -> DeleteResult:
        result = await service.delete_workflow(workflow_id, workspace_id)
        return DeleteResult(workflow_id=workflow_id, result=result)

    @router.post(
        "/workspaces/{workspace_id}/workflows/{workflow_id}/steps", response_model=Workflow
    )
    async def edit_steps(workspace_id: str, workflow_id: str, body: EditStepsRequest) -> Workflow:
        return await service.edit_steps(workflow_id, body.commands, workspace_id=workspace_id)

    @router.get(
        "/workspaces/{workspace_id}/workflows/{workflow_id}/validate",
        response_model=ValidationReport,
    )
    async def validate_workflow(workspace_id: str, workflow_id: str) -> ValidationReport:
        return _report(await service.validate_workflow(workflow_id, workspace_id))

    @router.post(
        "/workspaces/{workspace_id}/workflows/{workflow_id}/activate", response_model=Workflow
    )
    async def activate(workspace_id: str, workflow_id: str) -> Workflow:
        return await service.activate(workflow_id, workspace_id)

    @router.post(
        "/workspaces/{workspace_id}/workflows/{workflow_id}/pause", response_model=Workflow
    )
    async def pause(workspace_id: str, workflow_id: str) -> Workflow:
        return await service.pause(workflow_id, workspace_id)

    @router.post(
        "/workspaces/{workspace_id}/workflows/{workflow_id}/resume", response_model=Workflow
    )
    async def resume(workspace_id: str, workflow_id: str) -> Workflow:
        return await service.resume(workflow_id, workspace_id)

    @router.post(
        "/workspaces/{workspace_id}/workflows/{workflow_id}/clone",
        response_model=Workflow,
        status_code=201,
    )
    async def clone(
        workspace_id: str, workflow_id: str, body: Optional[CloneRequest] = None
    ) -> Workflow:
        body = body or CloneRequest()
        return await service.clone(
            workflow_id, workspace_id, name=body.name, created_by=body.created_by
        )

    @router.post(
        "/workspaces/{workspace_id}/workflows/{workflow_id}/enrollments",
        response_model=WorkflowEnrollment,
        status_code=201,
    )
    async def enroll(workspace_id: str, workflow_id: str, body: EnrollRequest) -> WorkflowEnrollment:
        return await service.enroll(
            workflow_id,
            body.entity_type,
            body.entity_id,
            source=body.source,
            enrolled_by=body.enrolled_by,
            workspace_id=workspace_id,
        )

    @router.post(
        "/workspaces/{workspace_id}/workflows/{workflow_id}/enrollments/bulk",
        response_model=BulkEnrollmentResult,
    )
    async def enroll_bulk(
        workspace_id: str, workflow_id: str, body: BulkEnrollRequest
    ) -> BulkEnrollmentResult:
        return await service.enroll_bulk(
            workflow_id,
            body.entity_type,
            body.entity_ids,
            enrolled_by=body.enrolled_by,
            workspace_id=workspace_id,
        )

    @router.get(
        "/workspaces/{workspace_id}/workflows/{workflow_id}/enrollments",
        response_model=EnrollmentPage,
    )
    async def list_enrollments(
        workspace_id: str,
        workflow_id: str,
        status: Optional[EnrollmentStatus] = None,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
    ) -> EnrollmentPage:
        return await service.list_enrollments(
            workflow_id, status=status, limit=limit, offset=offset, workspace_id=workspace_id
        )

    @router.post(
        "/workspaces/{workspace_id}/workflows/{workflow_id}/test", response_model=TestRunResult
    )
    async def test_workflow(
        workspace_id: str, workflow_id: str, body: TestWorkflowRequest
    ) -> TestRunResult:
        return await service.test_workflow(
            workflow_id,
            body.entity_id,
            entity=body.entity,
            dry_run=body.dry_run,
            fast_forward=body.fast_forward,
            workspace_id=workspace_id,
        )

    @router.get(
        "/workspaces/{workspace_id}/workflows/{workflow_id}/analytics/funnel",
        response_model=List[FunnelStep],
    )
    async def funnel(workspace_id: str, workflow_id: str) -> List[FunnelStep]:
        return await service.funnel(workflow_id, workspace_id)

    @router.get(
        "/workspaces/{workspace_id}/workflows/{workflow_id}/analytics/overview",
        response_model=WorkflowOverview,
    )
    async def overview(workspace_id: str, workflow_id: str) -> WorkflowOverview:
        return await service.overview(workflow_id, workspace_id)

    @router.get(
        "/workspaces/{workspace_id}/workflows/{workflow_id}/analytics/timeline",
        response_model=List[TimelinePoint],
    )
    async def timeline(
        workspace_id: str, workflow_id: str, days: int = Query(30, ge=1, le=365)
    ) -> List[TimelinePoint]:
        return await service.timeline(workflow_id, days=days, workspace_id=workspace_id)

    async def _scoped_enrollment(workspace_id: str, enrollment_id: str) -> WorkflowEnrollment:
        enrollment = await service.get_enrollment(enrollment_id)
        if enrollment.workspace_id != workspace_id:
            raise EnrollmentNotFoundError(enrollment_id)
        return enrollment

    @router.get(
        "/workspaces/{workspace_id}/enrollments/{enrollment_id}",
        response_model=WorkflowEnrollment,
    )
    async def get_enrollment(workspace_id: str, enrollment_id: str) -> WorkflowEnrollment:
        return await _scoped_enrollment(workspace_id, enrollment_id)

    @router.post(
        "/workspaces/{workspace_id}/enrollments/{enrollment_id}/retry",
        response_model=WorkflowEnrollment,
    )
    async def retry_enrollment(workspace_id: str, enrollment_id: str) -> WorkflowEnrollment:
        await _scoped_enrollment(workspace_id, enrollment_id)
        return await service.retry_enrollment(enrollment_id)

    @router.post(
        "/workspaces/{workspace_id}/enrollments/{enrollment_id}/pause",
        response_model=WorkflowEnrollment,
    )
    async def pause_enrollment(workspace_id: str, enrollment_id: str) -> WorkflowEnrollment:
        await _scoped_enrollment(workspace_id, enrollment_id)
        return await service.pause_enrollment(enrollment_id)

    @router.post(
        "/workspaces/{workspace_id}/enrollments/{enrollment_id}/resume",
        response_model=WorkflowEnrollment,
    )
    async def resume_enrollment(workspace_id: str, enrollment_id: str) -> WorkflowEnrollment:
        await _scoped_enrollment(workspace_id, enrollment_id)
        return await service.resume_enrollment(enrollment_id)

    @router.get(
        "/workspaces/{workspace_id}/entities/{entity_type}/{entity_id}/enrollments",
        response_model=List[WorkflowEnrollment],
    )
    async def entity_enrollments(
        workspace_id: str, entity_type: EntityType, entity_id: str
    ) -> List[WorkflowEnrollment]:
        enrollments = await service.list_entity_enrollments(entity_type, entity_id)
        return [e for e in enrollments if e.workspace_id == workspace_id]

    @router.post(
        "/workspaces/{workspace_id}/events", response_model=List[WorkflowEnrollment]
    )
    async def trigger_event(workspace_id: str, body: TriggerEventRequest) -> List[WorkflowEnrollment]:
        return await service.trigger_event(
            workspace_id, body.trigger_type, body.entity_type, body.entity_id
        )

    @router.get("/scheduler/status", response_model=SchedulerStatus)
    async def scheduler_status() -> SchedulerStatus:
        return await scheduler.status()

    @router.post("/scheduler/process", response_model=ProcessResult)
    async def process_due() -> ProcessResult:
        return ProcessResult(processed=await scheduler.process_due())

    return router


def create_app(service: WorkflowService, scheduler: Optional[Scheduler] = None) -> FastAPI:
    app = FastAPI(title="crmflow")
    app.include_router(create_router(service, scheduler))
    register_exception_handlers(app)
    return app
