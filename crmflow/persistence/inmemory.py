"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..contracts import Workflow, WorkflowEnrollment
from ..enrollment import blocks_enrollment
from ..errors import EnrollmentConflictError
from ..graph import WorkflowStep
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflows and enrollments in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._versions: Dict[Tuple[str, int], List[WorkflowStep]] = {}
        self._enrollments: Dict[str, WorkflowEnrollment] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    def _snapshot(self, workflow: Workflow) -> None:
        key = (workflow.id, workflow.version)
        if key not in self._versions:
            self._versions[key] = list(workflow.steps)

    async def create_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        self._snapshot(workflow)

    async def update_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        self._snapshot(workflow)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        workflow = self._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    async def list_workflows(
        self, workspace_id: Optional[str] = None, status: Optional[str] = None
    ) -> list[Workflow]:
        return [
            w.model_copy(deep=True)
            for w in sorted(self._workflows.values(), key=lambda w: w.created_at)
            if (workspace_id is None or w.workspace_id == workspace_id)
            and (status is None or w.status == status)
        ]

    async def delete_workflow(self, workflow_id: str) -> None:
        self._workflows.pop(workflow_id, None)
        for key in [k for k in self._versions if k[0] == workflow_id]:
            del self._versions[key]

    async def get_workflow_version(
        self, workflow_id: str, version: int
    ) -> List[WorkflowStep] | None:
        steps = self._versions.get((workflow_id, version))
        return list(steps) if steps is not None else None

    # ------------------------------------------------------------------
    def _raise_if_blocked(self, enrollment: WorkflowEnrollment) -> None:
        others = [
            e
            for e in self._enrollments.values()
            if e.id != enrollment.id
            and e.workflow_id == enrollment.workflow_id
            and e.entity_type == enrollment.entity_type
            and e.entity_id == enrollment.entity_id
        ]
        if blocks_enrollment(others, allow_reenrollment=False):
            raise EnrollmentConflictError(
                enrollment.workflow_id, enrollment.entity_type, enrollment.entity_id
            )

    async def add_enrollment(
        self, enrollment: WorkflowEnrollment, exclusive: bool = True
    ) -> None:
        async with self._lock:
            if exclusive:
                self._raise_if_blocked(enrollment)
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)

    async def save_enrollment(
        self, enrollment: WorkflowEnrollment, exclusive: bool = False
    ) -> None:
        async with self._lock:
            if exclusive:
                self._raise_if_blocked(enrollment)
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)

    async def get_enrollment(self, enrollment_id: str) -> WorkflowEnrollment | None:
        enrollment = self._enrollments.get(enrollment_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    def _filter(
        self,
        workflow_id: Optional[str],
        status: Optional[str],
        entity_type: Optional[str],
        entity_id: Optional[str],
    ) -> list[WorkflowEnrollment]:
        matches = [
            e
            for e in self._enrollments.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (status is None or e.status == status)
            and (entity_type is None or e.entity_type == entity_type)
            and (entity_id is None or e.entity_id == entity_id)
        ]
        return sorted(matches, key=lambda e: (e.enrolled_at, e.id))

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[WorkflowEnrollment]:
        matches = self._filter(workflow_id, status, entity_type, entity_id)
        end = offset + limit if limit is not None else None
        return [e.model_copy(deep=True) for e in matches[offset:end]]

    async def count_enrollments(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> int:
        return len(self._filter(workflow_id, status, entity_type, entity_id))

    def _due(self, now: datetime) -> list[WorkflowEnrollment]:
        due = [
            e
            for e in self._enrollments.values()
            if e.status == "active"
            and e.next_execution_time is not None
            and e.next_execution_time <= now
        ]
        return sorted(due, key=lambda e: e.next_execution_time)

    async def find_due_enrollments(
        self, now: datetime, limit: Optional[int] = None
    ) -> list[WorkflowEnrollment]:
        due = self._due(now)
        if limit is not None:
            due = due[:limit]
        return [e.model_copy(deep=True) for e in due]

    async def count_due_enrollments(self, now: datetime) -> int:
        return len(self._due(now))
