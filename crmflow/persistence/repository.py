"""Repository abstraction for workflow and enrollment persistence."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from ..contracts import Workflow, WorkflowEnrollment
from ..graph import WorkflowStep


class WorkflowRepository(Protocol):
    """Protocol for persistence backends."""

    async def create_workflow(self, workflow: Workflow) -> None:
        """Persist a new workflow and snapshot its graph version."""

    async def update_workflow(self, workflow: Workflow) -> None:
        """Replace a stored workflow; snapshot its graph version if new."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def list_workflows(
        self, workspace_id: Optional[str] = None, status: Optional[str] = None
    ) -> list[Workflow]:
        """Return workflows, optionally filtered."""

    async def delete_workflow(self, workflow_id: str) -> None:
        """Remove a workflow and its graph versions."""

    async def get_workflow_version(
        self, workflow_id: str, version: int
    ) -> List[WorkflowStep] | None:
        """Return the steps of a stored graph version."""

    async def add_enrollment(
        self, enrollment: WorkflowEnrollment, exclusive: bool = True
    ) -> None:
        """Insert an enrollment.

        When ``exclusive`` is set, the insert is refused with
        ``EnrollmentConflictError`` if an active, paused or completed
        enrollment exists for the same workflow and entity. The check and
        the insert happen atomically.
        """

    async def save_enrollment(
        self, enrollment: WorkflowEnrollment, exclusive: bool = False
    ) -> None:
        """Persist the full state of an existing enrollment in one write.

        With ``exclusive`` the write is refused like an exclusive
        :meth:`add_enrollment` when another blocking enrollment exists for the
        same workflow and entity.
        """

    async def get_enrollment(self, enrollment_id: str) -> WorkflowEnrollment | None:
        """Retrieve an enrollment by id."""

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[WorkflowEnrollment]:
        """Return enrollments ordered by enrollment time."""

    async def count_enrollments(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> int:
        """Count enrollments matching the filters."""

    async def find_due_enrollments(
        self, now: datetime, limit: Optional[int] = None
    ) -> list[WorkflowEnrollment]:
        """Active enrollments whose next execution time has passed."""

    async def count_due_enrollments(self, now: datetime) -> int:
        """Number of enrollments ``find_due_enrollments`` would return."""
