"""Step execution engine for workflow enrollments."""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from .actions import ActionContext, ActionRegistry, ActionResult, simulator_registry
from .conditions import evaluate_all, goal_reached
from .constants import DEFAULT_MAX_STEPS_PER_ADVANCE
from .contracts import (
    AdvanceOutcome,
    EnrollmentStepResult,
    StepExecution,
    TestRunResult,
    TestStepTrace,
    Workflow,
    WorkflowEnrollment,
    utcnow,
)
from .delays import compute_wake_time, delay_ms, describe_delay
from .enrollment import new_enrollment, transition
from .entities import EntityProvider
from .errors import CrmflowError, SchedulingError
from .graph import Criteria, StepGraph, WorkflowStep
from .rendering import render_config

logger = logging.getLogger(__name__)


class _Run:
    """Mutable state of one pass through the graph."""

    def __init__(self, enrollment: WorkflowEnrollment, entity: Dict[str, Any]) -> None:
        self.enrollment = enrollment
        self.entity = entity
        self.executed: List[StepExecution] = []
        self.trace: List[TestStepTrace] = []
        self.outcome: AdvanceOutcome = "advanced"
        self.error: Optional[str] = None
        self.estimated_delay_ms = 0

    def record(
        self,
        entry: StepExecution,
        message: str = "",
        duration_ms: float = 0,
        delay_skipped_ms: Optional[int] = None,
    ) -> None:
        self.enrollment.steps_executed.append(entry)
        self.executed.append(entry)
        self.trace.append(
            TestStepTrace(
                step_id=entry.step_id,
                step_name=entry.step_name,
                step_type=entry.step_type,
                status=entry.status,
                simulated=entry.simulated,
                message=message,
                result=entry.result,
                error=entry.error,
                duration_ms=duration_ms,
                delay_skipped_ms=delay_skipped_ms,
            )
        )


class StepEngine:
    """Advances enrollments through their workflow graph."""

    def __init__(
        self,
        registry: ActionRegistry,
        entities: EntityProvider,
        max_steps_per_advance: int = DEFAULT_MAX_STEPS_PER_ADVANCE,
    ) -> None:
        self._registry = registry
        self._entities = entities
        self._max_steps = max_steps_per_advance

    async def advance(
        self,
        enrollment: WorkflowEnrollment,
        graph: StepGraph,
        goal_criteria: Optional[Criteria] = None,
        now: Optional[datetime] = None,
    ) -> EnrollmentStepResult:
        """Run ``enrollment`` until it waits on a delay, completes or fails.

        The given enrollment is not modified; persist ``result.enrollment``.
        """
        now = now or utcnow()
        if enrollment.status != "active" or not enrollment.is_due(now):
            return EnrollmentStepResult(enrollment=enrollment, outcome="noop")

        run = _Run(enrollment.model_copy(deep=True), {})
        entity = await self._entities.get(enrollment.entity_type, enrollment.entity_id)
        if entity is None:
            step = graph.get(enrollment.current_step_id)
            self._fail(
                run,
                step,
                enrollment.current_step_id,
                f"{enrollment.entity_type} {enrollment.entity_id} not found",
                now,
            )
        else:
            run.entity = entity
            await self._drive(run, graph, self._registry, goal_criteria, now, fast_forward=False)

        logger.info(
            f"Enrollment {enrollment.id} advanced: {run.outcome} "
            f"({len(run.executed)} steps, now at {run.enrollment.current_step_id})"
        )
        return EnrollmentStepResult(
            enrollment=run.enrollment,
            executed=run.executed,
            outcome=run.outcome,
            error=run.error,
        )

    async def run_test(
        self,
        workflow: Workflow,
        entity_id: str,
        entity: Dict[str, Any],
        dry_run: bool = True,
        fast_forward: bool = True,
        now: Optional[datetime] = None,
    ) -> TestRunResult:
        """Walk the graph for one entity without persisting anything.

        ``dry_run`` swaps action executors for simulators and ``fast_forward``
        records delays as skipped instead of stopping at them.
        """
        now = now or utcnow()
        enrollment = new_enrollment(
            workflow, workflow.trigger_entity_type, entity_id, source="manual", now=now
        )
        run = _Run(enrollment, dict(entity))
        trigger_entry = enrollment.steps_executed[0]
        run.trace.append(
            TestStepTrace(
                step_id=trigger_entry.step_id,
                step_name=trigger_entry.step_name,
                step_type="trigger",
                status="completed",
                message=f"Triggered by {trigger_entry.result.get('trigger_type')}",
                result=trigger_entry.result,
            )
        )
        registry = simulator_registry() if dry_run else self._registry
        if enrollment.status == "active":
            await self._drive(
                run, workflow.graph(), registry, workflow.goal_criteria, now, fast_forward=fast_forward
            )

        final = run.enrollment
        return TestRunResult(
            workflow_id=workflow.id,
            entity_type=workflow.trigger_entity_type,
            entity_id=entity_id,
            dry_run=dry_run,
            fast_forward=fast_forward,
            steps=run.trace,
            success=final.status != "failed",
            final_status=final.status,
            error=run.error,
            simulated_duration_ms=round(sum(t.duration_ms for t in run.trace), 3),
            estimated_duration_ms=run.estimated_delay_ms,
        )

    # ------------------------------------------------------------------
    async def _drive(
        self,
        run: _Run,
        graph: StepGraph,
        registry: ActionRegistry,
        goal_criteria: Optional[Criteria],
        now: datetime,
        fast_forward: bool,
    ) -> None:
        steps_run = 0
        while True:
            if goal_reached(goal_criteria, run.entity):
                run.enrollment.goal_met = True
                run.enrollment = transition(run.enrollment, "completed", now=now)
                run.outcome = "completed"
                logger.info(f"Enrollment {run.enrollment.id} reached its goal")
                return

            step_id = run.enrollment.current_step_id
            if step_id is None:
                run.enrollment = transition(run.enrollment, "completed", now=now)
                run.outcome = "completed"
                return

            if steps_run >= self._max_steps:
                logger.warning(
                    f"Enrollment {run.enrollment.id} hit the limit of {self._max_steps} steps; rescheduling"
                )
                run.enrollment.next_execution_time = now
                run.outcome = "advanced"
                return
            steps_run += 1

            step = graph.get(step_id)
            if step is None:
                self._fail(
                    run, None, step_id, f"Step {step_id} does not exist in workflow version {graph.version}", now
                )
                return

            if step.type == "trigger":
                self._fail(run, step, step.id, f"Trigger step '{step.name or step.id}' cannot be executed", now)
                return
            if step.type == "action":
                if not await self._run_action(run, step, registry, now):
                    return
            elif step.type == "condition":
                self._run_condition(run, step, now)
            elif step.type == "delay":
                if not self._run_delay(run, step, now, fast_forward):
                    return

    async def _run_action(
        self, run: _Run, step: WorkflowStep, registry: ActionRegistry, now: datetime
    ) -> bool:
        enrollment = run.enrollment
        started = time.perf_counter()
        try:
            config = render_config(step.config, run.entity)
            result = await registry.execute(
                ActionContext(
                    workflow_id=enrollment.workflow_id,
                    enrollment_id=enrollment.id,
                    step_id=step.id,
                    entity_type=enrollment.entity_type,
                    entity_id=enrollment.entity_id,
                    entity=run.entity,
                    config=config,
                    now=now,
                )
            )
        except CrmflowError as e:
            result = ActionResult.failure(str(e))
        except Exception as e:
            logger.exception(f"Action {step.config.action_type.value} raised for enrollment {enrollment.id}")
            result = ActionResult.failure(f"{type(e).__name__}: {e}")
        duration_ms = (time.perf_counter() - started) * 1000

        if not result.success:
            self._fail(run, step, step.id, result.error or "Action failed", now, duration_ms, result.simulated)
            return False

        run.record(
            StepExecution(
                step_id=step.id,
                step_name=step.name,
                step_type="action",
                started_at=now,
                completed_at=now,
                status="completed",
                result={"action_type": step.config.action_type.value, **result.data},
                simulated=result.simulated,
                attempt=enrollment.retry_count + 1,
            ),
            message=result.message,
            duration_ms=duration_ms,
        )
        if result.entity_changed:
            refreshed = await self._entities.get(enrollment.entity_type, enrollment.entity_id)
            if refreshed is not None:
                run.entity = refreshed
        enrollment.current_step_id = step.successor(0)
        return True

    def _run_condition(self, run: _Run, step: WorkflowStep, now: datetime) -> None:
        matched = evaluate_all(step.config.conditions, run.entity, step.config.match_all)
        target = step.successor(0 if matched else 1)
        branch = "yes" if matched else "no"
        run.record(
            StepExecution(
                step_id=step.id,
                step_name=step.name,
                step_type="condition",
                started_at=now,
                completed_at=now,
                status="completed",
                result={"result": matched, "branch": branch, "next_step_id": target},
                attempt=run.enrollment.retry_count + 1,
            ),
            message=f"Condition {'met' if matched else 'not met'}, taking the {branch} branch",
        )
        run.enrollment.current_step_id = target

    def _run_delay(self, run: _Run, step: WorkflowStep, now: datetime, fast_forward: bool) -> bool:
        enrollment = run.enrollment
        log = enrollment.steps_executed
        waking = bool(log) and log[-1].step_id == step.id and log[-1].status == "pending"
        if waking:
            run.record(
                StepExecution(
                    step_id=step.id,
                    step_name=step.name,
                    step_type="delay",
                    started_at=log[-1].started_at,
                    completed_at=now,
                    status="completed",
                    result={"waited": describe_delay(step.config)},
                    attempt=enrollment.retry_count + 1,
                ),
                message=f"Waited {describe_delay(step.config)}",
            )
            enrollment.current_step_id = step.successor(0)
            return True

        try:
            wake_at = compute_wake_time(step.config, now, step.id)
        except SchedulingError as e:
            self._fail(run, step, step.id, str(e), now)
            return False
        wait_ms = delay_ms(step.config, now, step.id)
        run.estimated_delay_ms += wait_ms

        if fast_forward:
            run.record(
                StepExecution(
                    step_id=step.id,
                    step_name=step.name,
                    step_type="delay",
                    started_at=now,
                    completed_at=now,
                    status="completed",
                    result={"skipped": True, "delay_ms": wait_ms, "wake_time": wake_at.isoformat()},
                    simulated=True,
                ),
                message=f"Skipped delay of {describe_delay(step.config)}",
                delay_skipped_ms=wait_ms,
            )
            enrollment.current_step_id = step.successor(0)
            return True

        run.record(
            StepExecution(
                step_id=step.id,
                step_name=step.name,
                step_type="delay",
                started_at=now,
                status="pending",
                result={"wake_time": wake_at.isoformat(), "delay": describe_delay(step.config)},
                attempt=enrollment.retry_count + 1,
            ),
            message=f"Waiting {describe_delay(step.config)} until {wake_at.isoformat()}",
        )
        enrollment.next_execution_time = wake_at
        run.outcome = "waiting"
        return False

    def _fail(
        self,
        run: _Run,
        step: Optional[WorkflowStep],
        step_id: Optional[str],
        error: str,
        now: datetime,
        duration_ms: float = 0,
        simulated: bool = False,
    ) -> None:
        enrollment = run.enrollment
        run.record(
            StepExecution(
                step_id=step_id or "",
                step_name=step.name if step else "",
                step_type=step.type if step else "unknown",
                started_at=now,
                completed_at=now,
                status="failed",
                error=error,
                simulated=simulated,
                attempt=enrollment.retry_count + 1,
            ),
            message=error,
            duration_ms=duration_ms,
        )
        enrollment.error_count += 1
        run.enrollment = transition(enrollment, "failed", now=now, error=error)
        run.outcome = "failed"
        run.error = error
        logger.warning(f"Enrollment {enrollment.id} failed at step {step_id}: {error}")
