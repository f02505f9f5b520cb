from datetime import timedelta

import httpx
import pytest

from crmflow.actions import (
    ActionContext,
    BuiltinActions,
    InMemoryNotifier,
    InMemoryOutbox,
    InMemoryTaskBoard,
    simulator_registry,
)
from crmflow.graph import ActionConfig, ActionType


def _ctx(entities_entity, now, **config):
    return ActionContext(
        workflow_id="wf",
        enrollment_id="en",
        step_id="s",
        entity_type="contact",
        entity_id="c1",
        entity=entities_entity,
        config=ActionConfig(**config),
        now=now,
    )


@pytest.fixture
def c1():
    return {
        "id": "c1",
        "email": "contact1@example.com",
        "firstName": "Contact1",
        "tags": [],
        "ownerId": "owner-1",
    }


@pytest.mark.asyncio
async def test_send_email_uses_entity_address(registry, outbox, c1, now):
    result = await registry.execute(
        _ctx(c1, now, action_type="send_email", email_subject="Hi", email_body="Body")
    )
    assert result.success
    assert outbox.sent[0].to == "contact1@example.com"
    assert result.data["message_id"] == outbox.sent[0].id
    assert outbox.sent[0].metadata == {"workflow_id": "wf", "enrollment_id": "en"}


@pytest.mark.asyncio
async def test_create_task_defaults_assignee_to_owner(registry, task_board, c1, now):
    result = await registry.execute(
        _ctx(c1, now, action_type="create_task", task_title="Call", task_due_in_days=2)
    )
    assert result.success
    [task] = task_board.tasks
    assert task.assignee == "owner-1"
    assert task.due_at == now + timedelta(days=2)
    assert task.entity_id == "c1"


@pytest.mark.asyncio
async def test_tags_are_idempotent(registry, entities, c1, now):
    added = await registry.execute(_ctx(c1, now, action_type="add_tag", tag_name="VIP"))
    assert added.entity_changed
    entity = await entities.get("contact", "c1")
    assert entity["tags"] == ["VIP"]

    again = await registry.execute(_ctx(entity, now, action_type="add_tag", tag_name="VIP"))
    assert again.success and not again.entity_changed

    removed = await registry.execute(_ctx(entity, now, action_type="remove_tag", tag_name="VIP"))
    assert removed.entity_changed
    assert (await entities.get("contact", "c1"))["tags"] == []


@pytest.mark.asyncio
async def test_update_field_owner_and_score(registry, entities, c1, now):
    await registry.execute(
        _ctx(c1, now, action_type="update_field", field_name="lifecycle", field_value="customer")
    )
    await registry.execute(_ctx(c1, now, action_type="assign_owner", owner_id="owner-2"))
    entity = await entities.get("contact", "c1")
    scored = await registry.execute(
        _ctx(entity, now, action_type="update_lead_score", score_points=15)
    )
    entity = await entities.get("contact", "c1")

    assert entity["lifecycle"] == "customer"
    assert entity["ownerId"] == "owner-2"
    assert entity["leadScore"] == 15
    assert scored.data["previous_score"] == 0


@pytest.mark.asyncio
async def test_notification_goes_to_owner(registry, notifier, c1, now):
    await registry.execute(
        _ctx(c1, now, action_type="send_notification", notification_message="Look")
    )
    assert notifier.notifications[0].user_id == "owner-1"
    assert notifier.notifications[0].message == "Look"


@pytest.mark.asyncio
async def test_webhook_posts_entity(entities, c1, now):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    actions = BuiltinActions(
        entities,
        InMemoryOutbox(),
        InMemoryTaskBoard(),
        InMemoryNotifier(),
        http_transport=httpx.MockTransport(handler),
    )
    result = await actions.registry().execute(
        _ctx(
            c1,
            now,
            action_type="send_webhook",
            webhook_url="https://hooks.example.com/crm",
            webhook_headers={"X-Token": "abc"},
        )
    )
    assert result.success
    assert result.data["status_code"] == 200
    request = seen[0]
    assert request.method == "POST"
    assert request.headers["X-Token"] == "abc"
    assert b'"entity_type":"contact"' in request.content.replace(b" ", b"")


@pytest.mark.asyncio
async def test_webhook_error_status_is_a_failure(entities, c1, now):
    actions = BuiltinActions(
        entities,
        InMemoryOutbox(),
        InMemoryTaskBoard(),
        InMemoryNotifier(),
        http_transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    result = await actions.registry().execute(
        _ctx(c1, now, action_type="send_webhook", webhook_url="https://hooks.example.com/crm")
    )
    assert not result.success
    assert "503" in result.error


@pytest.mark.asyncio
async def test_simulators_cover_every_action(c1, now):
    registry = simulator_registry()
    assert set(registry) == set(ActionType)
    result = await registry.execute(_ctx(c1, now, action_type="assign_owner", owner_id="o9"))
    assert result.simulated
    assert result.message == "Would assign owner o9"
