"""Workflow service: the operations exposed to the API and CLI."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Literal, Optional

from .actions import (
    ActionRegistry,
    BuiltinActions,
    InMemoryNotifier,
    InMemoryOutbox,
    InMemoryTaskBoard,
)
from .analytics import FunnelAggregator, OverviewAggregator, TimelineAggregator
from .conditions import matches
from .config import CrmflowConfig, EngineConfig
from .constants import DEFAULT_TIMELINE_DAYS
from .contracts import (
    BulkEnrollmentResult,
    EnrollmentOutcome,
    EnrollmentPage,
    EnrollmentSource,
    EnrollmentStepResult,
    FunnelStep,
    TestRunResult,
    TimelinePoint,
    Workflow,
    WorkflowEnrollment,
    WorkflowOverview,
    WorkflowStats,
    utcnow,
)
from .editor import EditCommand, WorkflowEditor
from .enrollment import new_enrollment, pause, resume, retry
from .entities import EntityProvider, InMemoryEntityProvider
from .errors import (
    CrmflowError,
    EnrollmentConflictError,
    EnrollmentNotFoundError,
    EntityNotFoundError,
    GraphValidationError,
    TemplateNotFoundError,
    WorkflowNotFoundError,
    WorkflowStateError,
)
from .execute import StepEngine
from .graph import (
    Criteria,
    EntityType,
    GraphError,
    StepGraph,
    TriggerStep,
    TriggerType,
    WorkflowStep,
    has_fatal,
    validate,
)
from .persistence import WorkflowRepository, get_repository
from .templates import get_template, instantiate, remap_step_ids

logger = logging.getLogger(__name__)

_PAGE_SIZE = 200
_EDITABLE_FIELDS = {
    "name",
    "description",
    "trigger_entity_type",
    "steps",
    "allow_reenrollment",
    "goal_criteria",
    "enrollment_criteria",
}


class WorkflowService:
    """Facade over the repository, the step engine and the entity provider."""

    def __init__(
        self,
        repository: WorkflowRepository,
        entities: EntityProvider,
        registry: ActionRegistry,
        engine_config: Optional[EngineConfig] = None,
    ) -> None:
        self.repository = repository
        self.entities = entities
        self.registry = registry
        self.engine_config = engine_config or EngineConfig()
        self.engine = StepEngine(
            registry, entities, max_steps_per_advance=self.engine_config.max_steps_per_advance
        )

    # ------------------------------------------------------------------
    # Workflows
    async def get_workflow(self, workflow_id: str, workspace_id: Optional[str] = None) -> Workflow:
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None or (workspace_id is not None and workflow.workspace_id != workspace_id):
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    async def list_workflows(
        self, workspace_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[Workflow]:
        workflows = await self.repository.list_workflows(workspace_id=workspace_id, status=status)
        if status is None:
            workflows = [w for w in workflows if w.status != "archived"]
        return workflows

    async def create_workflow(
        self,
        workspace_id: str,
        name: Optional[str] = None,
        description: str = "",
        trigger_entity_type: Optional[EntityType] = None,
        steps: Optional[List[WorkflowStep]] = None,
        template_id: Optional[str] = None,
        created_by: Optional[str] = None,
        allow_reenrollment: bool = False,
        goal_criteria: Optional[Criteria] = None,
        enrollment_criteria: Optional[Criteria] = None,
    ) -> Workflow:
        """Create a draft, from explicit steps, a template or a bare manual trigger."""
        if template_id is not None:
            template = get_template(template_id)
            if template is None:
                raise TemplateNotFoundError(template_id)
            seeded = instantiate(template)
            name = name or seeded.name
            description = description or seeded.description
            trigger_entity_type = trigger_entity_type or seeded.trigger_entity_type
            steps = steps if steps is not None else seeded.steps
        if not name:
            raise WorkflowStateError("A workflow needs a name")
        if steps is None:
            steps = [TriggerStep(name="Manual trigger")]

        workflow = Workflow(
            workspace_id=workspace_id,
            name=name,
            description=description,
            trigger_entity_type=trigger_entity_type or "contact",
            steps=steps,
            created_by=created_by,
            allow_reenrollment=allow_reenrollment,
            goal_criteria=goal_criteria,
            enrollment_criteria=enrollment_criteria,
        )
        await self.repository.create_workflow(workflow)
        logger.info(f"Created workflow {workflow.id} '{workflow.name}' in workspace {workspace_id}")
        return workflow

    async def update_workflow(
        self, workflow_id: str, workspace_id: Optional[str] = None, **changes: Any
    ) -> Workflow:
        """Apply field changes. A new graph bumps the version.

        Active and paused workflows only accept graphs without fatal errors.
        """
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise WorkflowStateError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        workflow = await self.get_workflow(workflow_id, workspace_id)
        if workflow.status == "archived":
            raise WorkflowStateError(f"Workflow {workflow_id} is archived")

        updated = workflow.model_copy(deep=True)
        for field, value in changes.items():
            if value is not None or field in ("goal_criteria", "enrollment_criteria"):
                setattr(updated, field, value)

        if "steps" in changes and changes["steps"] is not None:
            updated = Workflow.model_validate(updated.model_dump())
            if workflow.status in ("active", "paused"):
                errors = validate(updated.steps)
                if has_fatal(errors):
                    raise GraphValidationError([e for e in errors if e.fatal])
            if updated.steps != workflow.steps:
                updated.version = workflow.version + 1
        updated.updated_at = utcnow()
        await self.repository.update_workflow(updated)
        logger.info(f"Updated workflow {workflow_id} (version {updated.version})")
        return updated

    async def edit_steps(
        self, workflow_id: str, commands: Iterable[EditCommand], workspace_id: Optional[str] = None
    ) -> Workflow:
        """Apply editor commands to the stored graph as a single change."""
        workflow = await self.get_workflow(workflow_id, workspace_id)
        editor = WorkflowEditor(workflow.steps)
        editor.apply_all(commands)
        if not editor.is_dirty:
            return workflow
        return await self.update_workflow(workflow_id, workspace_id, steps=list(editor.steps))

    async def delete_workflow(
        self, workflow_id: str, workspace_id: Optional[str] = None
    ) -> Literal["deleted", "archived"]:
        """Remove a workflow, or archive it when enrollments reference it."""
        workflow = await self.get_workflow(workflow_id, workspace_id)
        running = await self.repository.count_enrollments(
            workflow_id=workflow_id, status="active"
        ) + await self.repository.count_enrollments(workflow_id=workflow_id, status="paused")
        if running:
            raise WorkflowStateError(
                f"Workflow {workflow_id} has {running} running enrollments; pause and finish them first"
            )
        if await self.repository.count_enrollments(workflow_id=workflow_id):
            workflow.status = "archived"
            workflow.updated_at = utcnow()
            await self.repository.update_workflow(workflow)
            logger.info(f"Archived workflow {workflow_id}")
            return "archived"
        await self.repository.delete_workflow(workflow_id)
        logger.info(f"Deleted workflow {workflow_id}")
        return "deleted"

    def validate_steps(self, steps: Iterable[WorkflowStep]) -> List[GraphError]:
        return validate(steps)

    async def validate_workflow(
        self, workflow_id: str, workspace_id: Optional[str] = None
    ) -> List[GraphError]:
        workflow = await self.get_workflow(workflow_id, workspace_id)
        return validate(workflow.steps)

    async def activate(self, workflow_id: str, workspace_id: Optional[str] = None) -> Workflow:
        workflow = await self.get_workflow(workflow_id, workspace_id)
        if workflow.status == "active":
            return workflow
        if workflow.status == "archived":
            raise WorkflowStateError(f"Workflow {workflow_id} is archived")
        errors = validate(workflow.steps)
        if has_fatal(errors):
            raise GraphValidationError([e for e in errors if e.fatal])
        workflow.status = "active"
        workflow.last_activated_at = utcnow()
        workflow.updated_at = workflow.last_activated_at
        await self.repository.update_workflow(workflow)
        logger.info(f"Activated workflow {workflow_id}")
        return workflow

    async def pause(self, workflow_id: str, workspace_id: Optional[str] = None) -> Workflow:
        """Stop trigger enrollment; enrollments already running keep going."""
        workflow = await self.get_workflow(workflow_id, workspace_id)
        if workflow.status != "active":
            raise WorkflowStateError(f"Only active workflows can be paused (status: {workflow.status})")
        workflow.status = "paused"
        workflow.updated_at = utcnow()
        await self.repository.update_workflow(workflow)
        logger.info(f"Paused workflow {workflow_id}")
        return workflow

    async def resume(self, workflow_id: str, workspace_id: Optional[str] = None) -> Workflow:
        workflow = await self.get_workflow(workflow_id, workspace_id)
        if workflow.status != "paused":
            raise WorkflowStateError(f"Only paused workflows can be resumed (status: {workflow.status})")
        return await self.activate(workflow_id, workspace_id)

    async def clone(
        self,
        workflow_id: str,
        workspace_id: Optional[str] = None,
        name: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Workflow:
        source = await self.get_workflow(workflow_id, workspace_id)
        copy = Workflow(
            workspace_id=source.workspace_id,
            name=name or f"{source.name} (Copy)",
            description=source.description,
            trigger_entity_type=source.trigger_entity_type,
            steps=remap_step_ids(source.steps),
            allow_reenrollment=source.allow_reenrollment,
            goal_criteria=source.goal_criteria,
            enrollment_criteria=source.enrollment_criteria,
            created_by=created_by or source.created_by,
        )
        await self.repository.create_workflow(copy)
        logger.info(f"Cloned workflow {workflow_id} into {copy.id}")
        return copy

    # ------------------------------------------------------------------
    # Enrollments
    async def _entity(self, entity_type: str, entity_id: str) -> Dict[str, Any]:
        entity = await self.entities.get(entity_type, entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_type, entity_id)
        return entity

    async def _enroll(
        self,
        workflow: Workflow,
        entity_type: str,
        entity_id: str,
        source: EnrollmentSource,
        enrolled_by: Optional[str],
    ) -> WorkflowEnrollment:
        await self._entity(entity_type, entity_id)
        enrollment = new_enrollment(workflow, entity_type, entity_id, source, enrolled_by)
        await self.repository.add_enrollment(enrollment, exclusive=not workflow.allow_reenrollment)
        logger.info(
            f"Enrolled {entity_type} {entity_id} in workflow {workflow.id} as {enrollment.id}"
        )
        return enrollment

    def _require_active(self, workflow: Workflow) -> None:
        if workflow.status != "active":
            raise WorkflowStateError(
                f"Workflow {workflow.id} is {workflow.status}; activate it before enrolling"
            )

    async def enroll(
        self,
        workflow_id: str,
        entity_type: str,
        entity_id: str,
        source: EnrollmentSource = "manual",
        enrolled_by: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> WorkflowEnrollment:
        workflow = await self.get_workflow(workflow_id, workspace_id)
        self._require_active(workflow)
        enrollment = await self._enroll(workflow, entity_type, entity_id, source, enrolled_by)
        await self.refresh_stats(workflow_id)
        return enrollment

    async def enroll_bulk(
        self,
        workflow_id: str,
        entity_type: str,
        entity_ids: Iterable[str],
        source: EnrollmentSource = "manual",
        enrolled_by: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> BulkEnrollmentResult:
        """Enroll many entities; each one succeeds or fails on its own."""
        workflow = await self.get_workflow(workflow_id, workspace_id)
        self._require_active(workflow)

        async def enroll_one(entity_id: str) -> EnrollmentOutcome:
            try:
                enrollment = await self._enroll(workflow, entity_type, entity_id, source, enrolled_by)
            except EnrollmentConflictError as e:
                return EnrollmentOutcome(entity_id=entity_id, outcome="skipped", error=str(e))
            except CrmflowError as e:
                return EnrollmentOutcome(entity_id=entity_id, outcome="failed", error=str(e))
            except Exception as e:
                logger.exception(f"Unexpected error enrolling {entity_type} {entity_id}")
                return EnrollmentOutcome(entity_id=entity_id, outcome="failed", error=str(e))
            return EnrollmentOutcome(
                entity_id=entity_id, outcome="enrolled", enrollment_id=enrollment.id
            )

        outcomes = await asyncio.gather(*(enroll_one(entity_id) for entity_id in entity_ids))
        result = BulkEnrollmentResult(outcomes=list(outcomes))
        for outcome in outcomes:
            if outcome.outcome == "enrolled":
                result.enrolled += 1
            elif outcome.outcome == "skipped":
                result.skipped += 1
            else:
                result.failed += 1
                result.errors.append(f"{outcome.entity_id}: {outcome.error}")
        await self.refresh_stats(workflow_id)
        logger.info(
            f"Bulk enrollment into {workflow_id}: {result.enrolled} enrolled, "
            f"{result.skipped} skipped, {result.failed} failed"
        )
        return result

    async def trigger_event(
        self,
        workspace_id: str,
        trigger_type: TriggerType | str,
        entity_type: str,
        entity_id: str,
    ) -> List[WorkflowEnrollment]:
        """Enroll an entity in every active workflow listening for ``trigger_type``."""
        trigger_type = TriggerType(trigger_type)
        entity = await self._entity(entity_type, entity_id)
        enrolled = []
        for workflow in await self.repository.list_workflows(workspace_id=workspace_id, status="active"):
            if workflow.trigger_type != trigger_type or workflow.trigger_entity_type != entity_type:
                continue
            if not matches(workflow.enrollment_criteria, entity):
                logger.debug(f"{entity_type} {entity_id} does not meet criteria of {workflow.id}")
                continue
            try:
                enrolled.append(await self._enroll(workflow, entity_type, entity_id, "trigger", None))
            except EnrollmentConflictError:
                logger.debug(f"{entity_type} {entity_id} already enrolled in {workflow.id}")
                continue
            await self.refresh_stats(workflow.id)
        return enrolled

    async def get_enrollment(self, enrollment_id: str) -> WorkflowEnrollment:
        enrollment = await self.repository.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(enrollment_id)
        return enrollment

    async def list_enrollments(
        self,
        workflow_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        workspace_id: Optional[str] = None,
    ) -> EnrollmentPage:
        await self.get_workflow(workflow_id, workspace_id)
        items = await self.repository.list_enrollments(
            workflow_id=workflow_id, status=status, limit=limit, offset=offset
        )
        total = await self.repository.count_enrollments(workflow_id=workflow_id, status=status)
        return EnrollmentPage(items=items, total=total, limit=limit, offset=offset)

    async def list_entity_enrollments(
        self, entity_type: str, entity_id: str
    ) -> List[WorkflowEnrollment]:
        return await self.repository.list_enrollments(entity_type=entity_type, entity_id=entity_id)

    async def retry_enrollment(self, enrollment_id: str) -> WorkflowEnrollment:
        enrollment = await self.get_enrollment(enrollment_id)
        retried = retry(enrollment, max_retries=self.engine_config.max_retries)
        workflow = await self.get_workflow(retried.workflow_id)
        await self.repository.save_enrollment(retried, exclusive=not workflow.allow_reenrollment)
        await self.refresh_stats(retried.workflow_id)
        return retried

    async def pause_enrollment(self, enrollment_id: str) -> WorkflowEnrollment:
        paused = pause(await self.get_enrollment(enrollment_id))
        await self.repository.save_enrollment(paused)
        await self.refresh_stats(paused.workflow_id)
        return paused

    async def resume_enrollment(self, enrollment_id: str) -> WorkflowEnrollment:
        resumed = resume(await self.get_enrollment(enrollment_id))
        await self.repository.save_enrollment(resumed)
        await self.refresh_stats(resumed.workflow_id)
        return resumed

    async def graph_for(self, enrollment: WorkflowEnrollment, workflow: Workflow) -> StepGraph:
        """The graph version the enrollment was created under."""
        if enrollment.workflow_version == workflow.version:
            return workflow.graph()
        steps = await self.repository.get_workflow_version(
            workflow.id, enrollment.workflow_version
        )
        if steps is None:
            logger.warning(
                f"Version {enrollment.workflow_version} of workflow {workflow.id} is missing; "
                f"using version {workflow.version}"
            )
            return workflow.graph()
        return StepGraph(steps, version=enrollment.workflow_version)

    async def advance_enrollment(
        self, enrollment_id: str, now: Optional[datetime] = None, refresh: bool = True
    ) -> EnrollmentStepResult:
        """Advance one enrollment and persist the result in a single write."""
        enrollment = await self.get_enrollment(enrollment_id)
        workflow = await self.get_workflow(enrollment.workflow_id)
        graph = await self.graph_for(enrollment, workflow)
        result = await self.engine.advance(enrollment, graph, workflow.goal_criteria, now=now)
        if result.outcome != "noop":
            await self.repository.save_enrollment(result.enrollment)
            if refresh:
                await self.refresh_stats(workflow.id)
        return result

    # ------------------------------------------------------------------
    # Test runs
    async def test_workflow(
        self,
        workflow_id: str,
        entity_id: str,
        entity: Optional[Dict[str, Any]] = None,
        dry_run: bool = True,
        fast_forward: bool = True,
        workspace_id: Optional[str] = None,
    ) -> TestRunResult:
        workflow = await self.get_workflow(workflow_id, workspace_id)
        if entity is None:
            entity = await self._entity(workflow.trigger_entity_type, entity_id)
        result = await self.engine.run_test(
            workflow, entity_id, entity, dry_run=dry_run, fast_forward=fast_forward
        )
        logger.info(
            f"Test run of {workflow_id} for {entity_id}: {len(result.steps)} steps, "
            f"final status {result.final_status}"
        )
        return result

    # ------------------------------------------------------------------
    # Analytics
    async def iter_enrollments(
        self, workflow_id: str, page_size: int = _PAGE_SIZE
    ) -> AsyncIterator[WorkflowEnrollment]:
        offset = 0
        while True:
            page = await self.repository.list_enrollments(
                workflow_id=workflow_id, limit=page_size, offset=offset
            )
            for enrollment in page:
                yield enrollment
            if len(page) < page_size:
                return
            offset += page_size

    async def funnel(self, workflow_id: str, workspace_id: Optional[str] = None) -> List[FunnelStep]:
        workflow = await self.get_workflow(workflow_id, workspace_id)
        aggregator = FunnelAggregator()
        async for enrollment in self.iter_enrollments(workflow_id):
            aggregator.add(enrollment)
        return aggregator.result(workflow.steps)

    async def overview(self, workflow_id: str, workspace_id: Optional[str] = None) -> WorkflowOverview:
        await self.get_workflow(workflow_id, workspace_id)
        aggregator = OverviewAggregator(workflow_id)
        async for enrollment in self.iter_enrollments(workflow_id):
            aggregator.add(enrollment)
        return aggregator.result()

    async def timeline(
        self,
        workflow_id: str,
        days: int = DEFAULT_TIMELINE_DAYS,
        now: Optional[datetime] = None,
        workspace_id: Optional[str] = None,
    ) -> List[TimelinePoint]:
        await self.get_workflow(workflow_id, workspace_id)
        aggregator = TimelineAggregator(days=days, now=now)
        async for enrollment in self.iter_enrollments(workflow_id):
            aggregator.add(enrollment)
        return aggregator.result()

    async def refresh_stats(self, workflow_id: str) -> WorkflowStats:
        """Recompute ``Workflow.stats`` from the enrollment records."""
        aggregator = OverviewAggregator(workflow_id)
        async for enrollment in self.iter_enrollments(workflow_id):
            aggregator.add(enrollment)
        stats = aggregator.stats()
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is not None and workflow.stats != stats:
            workflow.stats = stats
            await self.repository.update_workflow(workflow)
        return stats


def build_service(
    config: CrmflowConfig,
    repository: Optional[WorkflowRepository] = None,
    entities: Optional[EntityProvider] = None,
) -> WorkflowService:
    """Wire a service from configuration with in-process collaborators."""
    if entities is None:
        if config.entities_path:
            entities = InMemoryEntityProvider.from_file(config.entities_path)
        else:
            entities = InMemoryEntityProvider()
    actions = BuiltinActions(
        entities,
        InMemoryOutbox(),
        InMemoryTaskBoard(),
        InMemoryNotifier(),
        webhook_timeout=config.engine.webhook_timeout,
    )
    if repository is None:
        repository = get_repository(database_url=config.database_url)
    return WorkflowService(
        repository,
        entities,
        actions.registry(),
        engine_config=config.engine,
    )
