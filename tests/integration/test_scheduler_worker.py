"""Due-enrollment processing in-process and through a transport."""

from datetime import timedelta

import pytest

from crmflow.config import SchedulerConfig
from crmflow.contracts import EnrollmentDispatch, utcnow
from crmflow.scheduler import Scheduler
from crmflow.transports.inmemory import InMemoryTransport
from crmflow.worker import EnrollmentWorker


async def _drip(service, drip_steps, contacts):
    workflow = await service.create_workflow("ws", name="Drip", steps=drip_steps)
    await service.activate(workflow.id)
    result = await service.enroll_bulk(workflow.id, "contact", contacts)
    return workflow, [o.enrollment_id for o in result.outcomes]


@pytest.mark.asyncio
async def test_process_due_respects_batch_size(service, drip_steps, outbox):
    await _drip(service, drip_steps, ["c1", "c2", "c3"])
    scheduler = Scheduler(service, SchedulerConfig(batch_size=2))
    now = utcnow() + timedelta(seconds=1)

    assert (await scheduler.status(now)).pending == 3
    assert await scheduler.process_due(now) == 2
    assert await scheduler.process_due(now) == 1
    assert len(outbox.sent) == 3

    status = await scheduler.status(now)
    assert status.pending == 0
    assert status.last_processed == 1
    assert status.last_run_at == now
    assert (await scheduler.status(now + timedelta(days=1))).pending == 3


@pytest.mark.asyncio
async def test_run_polls_until_lifespan(service, drip_steps):
    await _drip(service, drip_steps, ["c1"])
    scheduler = Scheduler(service, SchedulerConfig(interval_seconds=0.05))

    await scheduler.run(lifespan=0.1)

    status = await scheduler.status()
    assert not status.running
    assert status.pending == 0
    assert status.last_run_at is not None


@pytest.mark.asyncio
async def test_dispatch_publishes_each_due_enrollment_once(service, drip_steps):
    _, enrollment_ids = await _drip(service, drip_steps, ["c1", "c2"])
    transport = InMemoryTransport()
    scheduler = Scheduler(service, transport=transport, topic="due")
    now = utcnow() + timedelta(seconds=1)

    assert await scheduler.dispatch_due(now) == 2
    assert await scheduler.dispatch_due(now) == 0
    assert transport.pending("due") == 2

    received = []
    async for raw, message in transport.subscribe("due"):
        received.append(message.enrollment_id)
        await transport.ack(raw)
        if len(received) == 2:
            break
    assert sorted(received) == sorted(enrollment_ids)


@pytest.mark.asyncio
async def test_dispatch_requires_transport(service):
    with pytest.raises(RuntimeError):
        await Scheduler(service).dispatch_due()


@pytest.mark.asyncio
async def test_worker_advances_dispatched_enrollments(service, drip_steps, outbox):
    workflow, enrollment_ids = await _drip(service, drip_steps, ["c1", "c2"])
    transport = InMemoryTransport()
    scheduler = Scheduler(service, transport=transport, topic="due")
    worker = EnrollmentWorker(transport, service, topic="due")

    await scheduler.dispatch_due(utcnow() + timedelta(seconds=1))
    await worker.start(lifespan=0.3)

    assert [r.outcome for r in worker.processed] == ["waiting", "waiting"]
    assert worker.processed_total == 2
    assert len(outbox.sent) == 2
    assert transport.pending("due") == 0
    for enrollment_id in enrollment_ids:
        enrollment = await service.get_enrollment(enrollment_id)
        assert enrollment.current_step_id == "wait"
    assert (await service.get_workflow(workflow.id)).stats.currently_active == 2


@pytest.mark.asyncio
async def test_worker_drops_unknown_enrollment(service):
    transport = InMemoryTransport()
    await transport.publish("due", EnrollmentDispatch(enrollment_id="missing", workflow_id="wf"))
    worker = EnrollmentWorker(transport, service, topic="due")

    await worker.start(lifespan=0.2)

    assert list(worker.processed) == []
    assert worker.processed_total == 0
    assert transport.pending("due") == 0


@pytest.mark.asyncio
async def test_worker_keeps_only_recent_results(service, drip_steps):
    await _drip(service, drip_steps, ["c1", "c2", "c3"])
    transport = InMemoryTransport()
    await Scheduler(service, transport=transport, topic="due").dispatch_due(utcnow() + timedelta(seconds=1))
    worker = EnrollmentWorker(transport, service, topic="due", history=2)

    await worker.start(lifespan=0.3)

    assert worker.processed_total == 3
    assert len(worker.processed) == 2


@pytest.mark.asyncio
async def test_process_due_isolates_provider_outage(service, drip_steps, entities, outbox, monkeypatch):
    _, (down_id, up_id) = await _drip(service, drip_steps, ["c1", "c2"])
    lookup = entities.get

    async def flaky_get(entity_type, entity_id):
        if entity_id == "c1":
            raise ConnectionError("crm down")
        return await lookup(entity_type, entity_id)

    monkeypatch.setattr(entities, "get", flaky_get)
    now = utcnow() + timedelta(seconds=1)

    assert await Scheduler(service).process_due(now) == 1
    assert [m.to for m in outbox.sent] == ["contact2@example.com"]
    assert (await service.get_enrollment(up_id)).current_step_id == "wait"
    stuck = await service.get_enrollment(down_id)
    assert stuck.status == "active"
    assert stuck.current_step_id == "welcome"
