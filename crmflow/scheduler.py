"""Polling scheduler that wakes enrollments whose next execution time passed."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Set

from .config import SchedulerConfig
from .constants import DUE_ENROLLMENTS_TOPIC
from .contracts import EnrollmentDispatch, SchedulerStatus, utcnow
from .errors import CrmflowError
from .service import WorkflowService
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class Scheduler:
    """Finds due enrollments and advances them in-process or hands them to workers."""

    def __init__(
        self,
        service: WorkflowService,
        config: Optional[SchedulerConfig] = None,
        transport: Optional[BaseTransport] = None,
        topic: str = DUE_ENROLLMENTS_TOPIC,
    ) -> None:
        self._service = service
        self._config = config or SchedulerConfig()
        self._transport = transport
        self._topic = topic
        self._running = False
        self._last_run_at: Optional[datetime] = None
        self._last_processed = 0
        # enrollment id -> due time it was last published for
        self._dispatched: Dict[str, Optional[datetime]] = {}

    @property
    def running(self) -> bool:
        return self._running

    async def process_due(self, now: Optional[datetime] = None) -> int:
        """Advance every due enrollment once; returns how many were advanced."""
        now = now or utcnow()
        due = await self._service.repository.find_due_enrollments(now, limit=self._config.batch_size)
        processed = 0
        touched: Set[str] = set()
        for enrollment in due:
            try:
                result = await self._service.advance_enrollment(enrollment.id, now=now, refresh=False)
            except CrmflowError as e:
                logger.error(f"Could not advance enrollment {enrollment.id}: {e}")
                continue
            except Exception:
                logger.exception(f"Advancing enrollment {enrollment.id} raised; leaving it due")
                continue
            if result.outcome != "noop":
                processed += 1
                touched.add(enrollment.workflow_id)
        for workflow_id in touched:
            await self._service.refresh_stats(workflow_id)
        self._last_run_at = now
        self._last_processed = processed
        if processed:
            logger.info(f"Processed {processed} due enrollments")
        return processed

    async def dispatch_due(self, now: Optional[datetime] = None) -> int:
        """Publish one dispatch message per due enrollment not yet handed out."""
        if self._transport is None:
            raise RuntimeError("dispatch_due requires a transport")
        now = now or utcnow()
        due = await self._service.repository.find_due_enrollments(now, limit=self._config.batch_size)
        seen: Dict[str, Optional[datetime]] = {}
        batch: List[EnrollmentDispatch] = []
        for enrollment in due:
            seen[enrollment.id] = enrollment.next_execution_time
            if enrollment.id in self._dispatched and self._dispatched[enrollment.id] == enrollment.next_execution_time:
                continue
            batch.append(
                EnrollmentDispatch(
                    enrollment_id=enrollment.id,
                    workflow_id=enrollment.workflow_id,
                    scheduled_for=enrollment.next_execution_time,
                )
            )
        published = await self._transport.publish_many(self._topic, batch)
        self._dispatched = seen
        self._last_run_at = now
        self._last_processed = published
        if published:
            logger.info(f"Dispatched {published} due enrollments on {self._topic}")
        return published

    async def status(self, now: Optional[datetime] = None) -> SchedulerStatus:
        pending = await self._service.repository.count_due_enrollments(now or utcnow())
        return SchedulerStatus(
            running=self._running,
            last_run_at=self._last_run_at,
            last_processed=self._last_processed,
            pending=pending,
        )

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll until cancelled or until ``lifespan`` seconds have passed."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        self._running = True
        if self._transport is not None:
            await self._transport.connect()
        logger.info(
            f"Scheduler started ({'dispatch' if self._transport else 'in-process'}, "
            f"every {self._config.interval_seconds}s)"
        )
        try:
            while True:
                if self._transport is not None:
                    await self.dispatch_due()
                else:
                    await self.process_due()
                if lifespan is not None and loop.time() - started >= lifespan:
                    break
                await asyncio.sleep(self._config.interval_seconds)
        finally:
            self._running = False
            if self._transport is not None:
                await self._transport.disconnect()
            logger.info("Scheduler stopped")
