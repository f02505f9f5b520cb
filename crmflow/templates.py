"""Built-in workflow templates and the instantiation that gives them fresh ids."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

from .graph import EntityType, WorkflowStep, new_step_id, parse_steps

logger = logging.getLogger(__name__)


class WorkflowTemplate(BaseModel):
    """A canned graph whose step ids are local to the template."""

    id: str
    name: str
    description: str = ""
    category: Literal["lead-nurturing", "sales", "onboarding", "engagement"] = "engagement"
    trigger_entity_type: EntityType = "contact"
    steps: List[WorkflowStep] = Field(default_factory=list)


class InstantiatedWorkflow(BaseModel):
    name: str
    description: str = ""
    trigger_entity_type: EntityType = "contact"
    steps: List[WorkflowStep] = Field(default_factory=list)


def remap_step_ids(steps: Iterable[WorkflowStep]) -> List[WorkflowStep]:
    """Copy ``steps`` giving every step a fresh id and rewriting edges to match.

    Edges pointing outside the list are left untouched so that validation can
    still report them.
    """
    steps = list(steps)
    id_map: Dict[str, str] = {step.id: new_step_id() for step in steps}
    remapped = []
    for step in steps:
        targets = [
            id_map.get(target, target) if target is not None else None
            for target in step.next_step_ids
        ]
        remapped.append(
            step.model_copy(
                update={"id": id_map[step.id], "next_step_ids": targets}, deep=True
            )
        )
    return remapped


def instantiate(template: WorkflowTemplate) -> InstantiatedWorkflow:
    """Produce an independent copy of a template's graph."""
    logger.debug(f"Instantiating template {template.id}")
    return InstantiatedWorkflow(
        name=template.name,
        description=template.description,
        trigger_entity_type=template.trigger_entity_type,
        steps=remap_step_ids(template.steps),
    )


def _step(
    local_id: str,
    name: str,
    type: str,
    config: Dict[str, Any],
    next_ids: List[Optional[str]],
    y: float,
    x: float = 250,
) -> Dict[str, Any]:
    return {
        "id": local_id,
        "name": name,
        "type": type,
        "config": config,
        "next_step_ids": next_ids,
        "position": {"x": x, "y": y},
    }


def _email(subject: str, body: str) -> Dict[str, Any]:
    return {"action_type": "send_email", "email_subject": subject, "email_body": body}


def _wait_days(days: int) -> Dict[str, Any]:
    return {"delay_type": "duration", "value": days, "unit": "days"}


_CATALOGUE: List[Dict[str, Any]] = [
    {
        "id": "welcome-new-contacts",
        "name": "Welcome New Contacts",
        "description": "Send a welcome email to new contacts, wait 1 day, then follow up with more info.",
        "category": "onboarding",
        "trigger_entity_type": "contact",
        "steps": [
            _step("step-1", "Contact Created", "trigger", {"trigger_type": "contact_created"}, ["step-2"], 50),
            _step(
                "step-2",
                "Send Welcome Email",
                "action",
                _email(
                    "Welcome to {{company}}!",
                    "Hi {{firstName}},\n\nThank you for connecting with us! "
                    "We're excited to have you.\n\nBest regards,\nThe Team",
                ),
                ["step-3"],
                180,
            ),
            _step("step-3", "Wait 1 Day", "delay", _wait_days(1), ["step-4"], 310),
            _step(
                "step-4",
                "Send Follow-up",
                "action",
                _email(
                    "Resources to help you get started",
                    "Hi {{firstName}},\n\nHere are some resources to help you get the most "
                    "out of our service:\n\n- Getting Started Guide\n- FAQ\n- Support Portal\n\n"
                    "Let us know if you have any questions!\n\nBest,\nThe Team",
                ),
                [],
                440,
            ),
        ],
    },
    {
        "id": "nurture-cold-leads",
        "name": "Nurture Cold Leads",
        "description": "A 3-email sequence over 2 weeks to re-engage cold leads.",
        "category": "lead-nurturing",
        "trigger_entity_type": "contact",
        "steps": [
            _step("step-1", "Tag Added: Cold Lead", "trigger", {"trigger_type": "contact_updated"}, ["step-2"], 50),
            _step(
                "step-2",
                "Email 1: Reconnect",
                "action",
                _email(
                    "We miss you, {{firstName}}!",
                    "Hi {{firstName}},\n\nIt's been a while since we connected. Just checking in "
                    "to see how things are going.\n\nWould you like to schedule a quick call?\n\n"
                    "Best,\nThe Team",
                ),
                ["step-3"],
                180,
            ),
            _step("step-3", "Wait 5 Days", "delay", _wait_days(5), ["step-4"], 310),
            _step(
                "step-4",
                "Email 2: Value Add",
                "action",
                _email(
                    "Thought you might find this useful",
                    "Hi {{firstName}},\n\nI came across something I thought would be valuable "
                    "for you.\n\nLet me know if you'd like to discuss!\n\nBest,\nThe Team",
                ),
                ["step-5"],
                440,
            ),
            _step("step-5", "Wait 7 Days", "delay", _wait_days(7), ["step-6"], 570),
            _step(
                "step-6",
                "Email 3: Final Check",
                "action",
                _email(
                    "Is this goodbye?",
                    "Hi {{firstName}},\n\nI wanted to reach out one last time. If you're no longer "
                    "interested, no worries at all!\n\nBut if there's anything we can help with, "
                    "just reply to this email.\n\nWishing you all the best,\nThe Team",
                ),
                [],
                700,
            ),
        ],
    },
    {
        "id": "deal-won-followup",
        "name": "Deal Won Follow-up",
        "description": "Thank new customers and ask for referrals after a deal closes.",
        "category": "sales",
        "trigger_entity_type": "deal",
        "steps": [
            _step("step-1", "Deal Closed Won", "trigger", {"trigger_type": "deal_stage_changed"}, ["step-2"], 50),
            _step(
                "step-2",
                "Send Thank You",
                "action",
                _email(
                    "Thank you for your business!",
                    "Hi {{firstName}},\n\nThank you for choosing us! We're thrilled to have you "
                    "as a customer.\n\nOur team is here to support you every step of the way.\n\n"
                    "Welcome aboard!\n\nBest,\nThe Team",
                ),
                ["step-3"],
                180,
            ),
            _step(
                "step-3",
                "Create Follow-up Task",
                "action",
                {
                    "action_type": "create_task",
                    "task_title": "Follow up with {{firstName}} - new customer",
                    "task_description": "Check in on onboarding progress and satisfaction",
                    "task_due_in_days": 7,
                },
                ["step-4"],
                310,
            ),
            _step("step-4", "Wait 14 Days", "delay", _wait_days(14), ["step-5"], 440),
            _step(
                "step-5",
                "Ask for Referral",
                "action",
                _email(
                    "Know anyone who could benefit?",
                    "Hi {{firstName}},\n\nI hope you're enjoying working with us!\n\nIf you know "
                    "anyone who might benefit from our services, we'd be grateful for a referral.\n\n"
                    "Thanks again for your business!\n\nBest,\nThe Team",
                ),
                [],
                570,
            ),
        ],
    },
    {
        "id": "re-engagement",
        "name": "Re-engagement Campaign",
        "description": "Win back contacts who have been inactive for 30+ days.",
        "category": "engagement",
        "trigger_entity_type": "contact",
        "steps": [
            _step("step-1", "Contact Inactive 30 Days", "trigger", {"trigger_type": "contact_updated"}, ["step-2"], 50),
            _step("step-2", 'Tag as "At Risk"', "action", {"action_type": "add_tag", "tag_name": "At Risk"}, ["step-3"], 180),
            _step(
                "step-3",
                "Send Re-engagement Email",
                "action",
                _email(
                    "We noticed you've been away...",
                    "Hi {{firstName}},\n\nWe noticed it's been a while since we heard from you.\n\n"
                    "Is there anything we can help with? We'd love to reconnect.\n\nBest,\nThe Team",
                ),
                ["step-4"],
                310,
            ),
            _step(
                "step-4",
                "Notify Sales Rep",
                "action",
                {
                    "action_type": "send_notification",
                    "notification_message": "At-risk contact {{firstName}} {{lastName}} sent re-engagement email",
                },
                [],
                440,
            ),
        ],
    },
    {
        "id": "meeting-noshow",
        "name": "Meeting No-Show Follow-up",
        "description": "Automatically follow up when a contact misses a meeting with branching based on response.",
        "category": "engagement",
        "trigger_entity_type": "contact",
        "steps": [
            _step("step-1", "Meeting No-Show", "trigger", {"trigger_type": "contact_updated"}, ["step-2"], 50),
            _step("step-2", "Add Tag: No-Show", "action", {"action_type": "add_tag", "tag_name": "No-Show"}, ["step-3"], 180),
            _step(
                "step-3",
                "Send Apology & Reschedule",
                "action",
                _email(
                    "We missed you at today's meeting",
                    "Hi {{firstName}},\n\nI noticed we missed our meeting today. No worries, "
                    "things come up!\n\nWould you like to reschedule?\n\n"
                    "Looking forward to connecting,\nThe Team",
                ),
                ["step-4"],
                310,
            ),
            _step("step-4", "Wait 2 Days", "delay", _wait_days(2), ["step-5"], 440),
            _step(
                "step-5",
                "Check: Email Opened?",
                "condition",
                {"conditions": [{"field": "lastEmailOpened", "operator": "is_not_empty"}]},
                ["step-6", "step-7"],
                570,
            ),
            _step(
                "step-6",
                "Email Opened - Create Task",
                "action",
                {
                    "action_type": "create_task",
                    "task_title": "Call {{firstName}} - engaged after no-show",
                    "task_description": "Contact opened reschedule email. Call to reconnect.",
                    "task_due_in_days": 1,
                },
                [],
                700,
                x=450,
            ),
            _step(
                "step-7",
                "Not Opened - Send Final Reminder",
                "action",
                _email(
                    "Last chance to reschedule",
                    "Hi {{firstName}},\n\nI wanted to reach out one more time about rescheduling "
                    "our meeting.\n\nIf you're still interested, reply to this email and we'll find "
                    "a time that works.\n\nBest,\nThe Team",
                ),
                [],
                700,
                x=50,
            ),
        ],
    },
]

BUILTIN_TEMPLATES: List[WorkflowTemplate] = [
    WorkflowTemplate(**{**entry, "steps": parse_steps(entry["steps"])})
    for entry in _CATALOGUE
]


def list_templates() -> List[WorkflowTemplate]:
    return list(BUILTIN_TEMPLATES)


def get_template(template_id: str) -> Optional[WorkflowTemplate]:
    for template in BUILTIN_TEMPLATES:
        if template.id == template_id:
            return template
    return None
