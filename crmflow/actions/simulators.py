"""Side-effect free stand-ins used by dry runs."""

from __future__ import annotations

from ..graph import ActionType
from .base import ActionContext, ActionRegistry, ActionResult


def _describe(ctx: ActionContext) -> str:
    config = ctx.config
    action = config.action_type
    if action == ActionType.SEND_EMAIL:
        to = config.recipient_email or ctx.entity.get("email") or "<no email>"
        return f"Would send email '{config.email_subject}' to {to}"
    if action == ActionType.CREATE_TASK:
        return f"Would create task '{config.task_title}'"
    if action == ActionType.ADD_TAG:
        return f"Would add tag '{config.tag_name}'"
    if action == ActionType.REMOVE_TAG:
        return f"Would remove tag '{config.tag_name}'"
    if action == ActionType.UPDATE_FIELD:
        return f"Would set {config.field_name} to {config.field_value!r}"
    if action == ActionType.ASSIGN_OWNER:
        return f"Would assign owner {config.owner_id}"
    if action == ActionType.SEND_NOTIFICATION:
        return f"Would notify: {config.notification_message}"
    if action == ActionType.SEND_WEBHOOK:
        return f"Would call {config.webhook_method} {config.webhook_url}"
    if action == ActionType.UPDATE_LEAD_SCORE:
        return f"Would change lead score by {config.score_points}"
    return f"Would execute {action.value}"


async def simulate(ctx: ActionContext) -> ActionResult:
    return ActionResult(
        data={"action_type": ctx.config.action_type.value, "params": ctx.config.params()},
        message=_describe(ctx),
        simulated=True,
    )


def simulator_registry() -> ActionRegistry:
    """Registry answering every action type with a simulated result."""
    return ActionRegistry({action_type: simulate for action_type in ActionType})
