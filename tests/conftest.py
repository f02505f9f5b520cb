from datetime import datetime, timezone

import pytest

from crmflow.actions import BuiltinActions, InMemoryNotifier, InMemoryOutbox, InMemoryTaskBoard
from crmflow.entities import InMemoryEntityProvider
from crmflow.graph import ActionStep, ConditionStep, DelayStep, TriggerStep, parse_steps
from crmflow.persistence import InMemoryWorkflowRepository
from crmflow.service import WorkflowService

NOW = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def entities() -> InMemoryEntityProvider:
    contacts = {
        f"c{i}": {
            "email": f"contact{i}@example.com",
            "firstName": f"Contact{i}",
            "company": "Acme",
            "plan": "pro" if i % 2 else "basic",
            "tags": [],
            "ownerId": "owner-1",
        }
        for i in range(1, 13)
    }
    contacts["no-email"] = {"firstName": "Nomail", "tags": []}
    return InMemoryEntityProvider(
        {
            "contact": contacts,
            "deal": {"d1": {"name": "Big deal", "email": "buyer@example.com", "firstName": "Buyer"}},
        }
    )


@pytest.fixture
def outbox() -> InMemoryOutbox:
    return InMemoryOutbox()


@pytest.fixture
def task_board() -> InMemoryTaskBoard:
    return InMemoryTaskBoard()


@pytest.fixture
def notifier() -> InMemoryNotifier:
    return InMemoryNotifier()


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def registry(entities, outbox, task_board, notifier):
    return BuiltinActions(entities, outbox, task_board, notifier).registry()


@pytest.fixture
def service(repository, entities, registry) -> WorkflowService:
    return WorkflowService(repository, entities, registry)


@pytest.fixture
def drip_steps():
    """trigger -> welcome email -> wait 1 day -> follow-up email."""
    return parse_steps(
        [
            {
                "id": "t",
                "type": "trigger",
                "name": "Contact created",
                "config": {"trigger_type": "contact_created"},
                "next_step_ids": ["welcome"],
            },
            {
                "id": "welcome",
                "type": "action",
                "name": "Welcome",
                "config": {
                    "action_type": "send_email",
                    "email_subject": "Welcome to {{company}}",
                    "email_body": "Hi {{firstName}}",
                },
                "next_step_ids": ["wait"],
            },
            {
                "id": "wait",
                "type": "delay",
                "name": "Wait a day",
                "config": {"delay_type": "duration", "value": 1, "unit": "days"},
                "next_step_ids": ["followup"],
            },
            {
                "id": "followup",
                "type": "action",
                "name": "Follow-up",
                "config": {
                    "action_type": "send_email",
                    "email_subject": "Getting started",
                    "email_body": "Hello again {{firstName}}",
                },
                "next_step_ids": [],
            },
        ]
    )


@pytest.fixture
def branch_steps():
    """trigger -> plan == pro ? tag "Pro" : tag "Basic"."""
    return [
        TriggerStep(id="t", name="Manual", next_step_ids=["check"]),
        ConditionStep(
            id="check",
            name="Is pro?",
            config={"conditions": [{"field": "plan", "operator": "equals", "value": "pro"}]},
            next_step_ids=["pro", "basic"],
        ),
        ActionStep(
            id="pro",
            name="Tag pro",
            config={"action_type": "add_tag", "tag_name": "Pro"},
        ),
        ActionStep(
            id="basic",
            name="Tag basic",
            config={"action_type": "add_tag", "tag_name": "Basic"},
        ),
    ]


@pytest.fixture
def wait_step():
    return DelayStep(id="wait", name="Wait", config={"delay_type": "duration", "value": 2, "unit": "hours"})
