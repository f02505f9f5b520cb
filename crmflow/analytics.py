"""Read-side projections over a workflow's enrollments.

The aggregators accept enrollments one at a time so callers can stream them
from storage page by page.
"""

from __future__ import annotations

from collections import deque
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

from .constants import DEFAULT_TIMELINE_DAYS
from .contracts import (
    FunnelStep,
    TimelinePoint,
    WorkflowEnrollment,
    WorkflowOverview,
    WorkflowStats,
    utcnow,
)
from .graph import WorkflowStep


def funnel_order(steps: Iterable[WorkflowStep]) -> List[WorkflowStep]:
    """Steps in breadth-first order from the trigger, then any unreachable ones."""
    steps = list(steps)
    by_id = {s.id: s for s in steps}
    ordered: List[WorkflowStep] = []
    seen: set[str] = set()
    queue = deque(s.id for s in steps if s.type == "trigger")
    while queue:
        step_id = queue.popleft()
        if step_id in seen or step_id not in by_id:
            continue
        seen.add(step_id)
        ordered.append(by_id[step_id])
        queue.extend(t for t in by_id[step_id].next_step_ids if t is not None)
    ordered.extend(s for s in steps if s.id not in seen)
    return ordered


class FunnelAggregator:
    """Counts, per step, how many enrollments entered, completed and failed it.

    Each enrollment counts at most once per step, using its latest audit
    entry for that step. An enrollment parked on a step it has no entry for
    yet has still entered it.
    """

    def __init__(self) -> None:
        self._entered: Dict[str, int] = {}
        self._completed: Dict[str, int] = {}
        self._failed: Dict[str, int] = {}
        self._names: Dict[str, tuple[str, str]] = {}

    def add(self, enrollment: WorkflowEnrollment) -> None:
        latest: Dict[str, str] = {}
        for entry in enrollment.steps_executed:
            latest[entry.step_id] = entry.status
            self._names.setdefault(entry.step_id, (entry.step_name, entry.step_type))
        parked = enrollment.current_step_id
        if enrollment.status in ("active", "paused") and parked and parked not in latest:
            latest[parked] = "pending"
        for step_id, status in latest.items():
            self._entered[step_id] = self._entered.get(step_id, 0) + 1
            if status == "completed":
                self._completed[step_id] = self._completed.get(step_id, 0) + 1
            elif status == "failed":
                self._failed[step_id] = self._failed.get(step_id, 0) + 1

    def _row(self, step_id: str, name: str, step_type: str) -> FunnelStep:
        entered = self._entered.get(step_id, 0)
        completed = self._completed.get(step_id, 0)
        failed = self._failed.get(step_id, 0)
        return FunnelStep(
            step_id=step_id,
            step_name=name,
            step_type=step_type,
            entered=entered,
            completed=completed,
            failed=failed,
            dropoff=max(entered - completed - failed, 0),
        )

    def result(self, steps: Iterable[WorkflowStep]) -> List[FunnelStep]:
        rows = []
        known: set[str] = set()
        for step in funnel_order(steps):
            known.add(step.id)
            rows.append(self._row(step.id, step.name, step.type))
        # steps removed in later versions of the graph
        for step_id in self._entered:
            if step_id not in known and step_id:
                name, step_type = self._names.get(step_id, ("", "unknown"))
                rows.append(self._row(step_id, name, step_type))
        return rows


def compute_funnel(
    steps: Iterable[WorkflowStep], enrollments: Iterable[WorkflowEnrollment]
) -> List[FunnelStep]:
    aggregator = FunnelAggregator()
    for enrollment in enrollments:
        aggregator.add(enrollment)
    return aggregator.result(steps)


class OverviewAggregator:
    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        self._counts: Dict[str, int] = {"active": 0, "paused": 0, "completed": 0, "failed": 0}
        self._goals = 0
        self._completion_days: List[float] = []

    def add(self, enrollment: WorkflowEnrollment) -> None:
        self._counts[enrollment.status] = self._counts.get(enrollment.status, 0) + 1
        if enrollment.goal_met:
            self._goals += 1
        if enrollment.status == "completed" and enrollment.completed_at:
            elapsed = enrollment.completed_at - enrollment.enrolled_at
            self._completion_days.append(elapsed.total_seconds() / 86400)

    def stats(self) -> WorkflowStats:
        return WorkflowStats(
            total_enrolled=sum(self._counts.values()),
            currently_active=self._counts["active"],
            completed=self._counts["completed"],
            failed=self._counts["failed"],
            goals_met=self._goals,
        )

    def result(self) -> WorkflowOverview:
        total = sum(self._counts.values())
        completed = self._counts["completed"]
        avg_days = None
        if self._completion_days:
            avg_days = round(sum(self._completion_days) / len(self._completion_days), 2)
        return WorkflowOverview(
            workflow_id=self.workflow_id,
            total_enrolled=total,
            currently_active=self._counts["active"],
            paused=self._counts["paused"],
            completed=completed,
            failed=self._counts["failed"],
            goals_met=self._goals,
            completion_rate=round(completed / total * 100, 1) if total else 0.0,
            avg_days_to_complete=avg_days,
        )


def compute_stats(enrollments: Iterable[WorkflowEnrollment]) -> WorkflowStats:
    aggregator = OverviewAggregator("")
    for enrollment in enrollments:
        aggregator.add(enrollment)
    return aggregator.stats()


def _failed_at(enrollment: WorkflowEnrollment) -> Optional[datetime]:
    for entry in reversed(enrollment.steps_executed):
        if entry.status == "failed":
            return entry.completed_at or entry.started_at
    return None


class TimelineAggregator:
    """Daily enrolled/completed/failed counts for the last ``days`` days."""

    def __init__(self, days: int = DEFAULT_TIMELINE_DAYS, now: Optional[datetime] = None) -> None:
        today = (now or utcnow()).date()
        self._first = today - timedelta(days=days - 1)
        self._points: Dict[date, TimelinePoint] = {
            self._first + timedelta(days=i): TimelinePoint(day=self._first + timedelta(days=i))
            for i in range(days)
        }

    def _bump(self, when: Optional[datetime], field: str) -> None:
        if when is None:
            return
        point = self._points.get(when.date())
        if point is not None:
            setattr(point, field, getattr(point, field) + 1)

    def add(self, enrollment: WorkflowEnrollment) -> None:
        self._bump(enrollment.enrolled_at, "enrolled")
        if enrollment.status == "completed":
            self._bump(enrollment.completed_at, "completed")
        elif enrollment.status == "failed":
            self._bump(_failed_at(enrollment), "failed")

    def result(self) -> List[TimelinePoint]:
        return [self._points[day] for day in sorted(self._points)]
