"""Built-in executors for every action type."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

import httpx

from ..constants import DEFAULT_WEBHOOK_TIMEOUT
from ..entities import EntityProvider
from ..graph import ActionType
from .base import ActionContext, ActionRegistry, ActionResult
from .collaborators import EmailSender, Notifier, TaskCreator

logger = logging.getLogger(__name__)


class BuiltinActions:
    """Executors backed by the CRM's collaborator services."""

    def __init__(
        self,
        entities: EntityProvider,
        email_sender: EmailSender,
        task_creator: TaskCreator,
        notifier: Notifier,
        webhook_timeout: float = DEFAULT_WEBHOOK_TIMEOUT,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._entities = entities
        self._email = email_sender
        self._tasks = task_creator
        self._notifier = notifier
        self._webhook_timeout = webhook_timeout
        self._http_transport = http_transport

    def registry(self) -> ActionRegistry:
        return ActionRegistry(
            {
                ActionType.SEND_EMAIL: self.send_email,
                ActionType.CREATE_TASK: self.create_task,
                ActionType.ADD_TAG: self.add_tag,
                ActionType.REMOVE_TAG: self.remove_tag,
                ActionType.UPDATE_FIELD: self.update_field,
                ActionType.ASSIGN_OWNER: self.assign_owner,
                ActionType.SEND_NOTIFICATION: self.send_notification,
                ActionType.SEND_WEBHOOK: self.send_webhook,
                ActionType.UPDATE_LEAD_SCORE: self.update_lead_score,
            }
        )

    async def _update(self, ctx: ActionContext, changes: Dict[str, Any]) -> Dict[str, Any]:
        return await self._entities.update(ctx.entity_type, ctx.entity_id, changes)

    # ------------------------------------------------------------------
    async def send_email(self, ctx: ActionContext) -> ActionResult:
        config = ctx.config
        recipient = config.recipient_email or ctx.entity.get("email")
        if not recipient:
            return ActionResult.failure(f"{ctx.entity_type} {ctx.entity_id} has no email address")
        message_id = await self._email.send(
            recipient,
            config.email_subject or "",
            config.email_body or "",
            workflow_id=ctx.workflow_id,
            enrollment_id=ctx.enrollment_id,
        )
        return ActionResult(
            data={"message_id": message_id, "to": recipient, "subject": config.email_subject},
            message=f"Sent email to {recipient}",
        )

    async def create_task(self, ctx: ActionContext) -> ActionResult:
        config = ctx.config
        due_at = None
        if config.task_due_in_days is not None:
            due_at = ctx.now + timedelta(days=config.task_due_in_days)
        task_id = await self._tasks.create_task(
            config.task_title or "",
            description=config.task_description or "",
            due_at=due_at,
            assignee=config.task_assignee or ctx.entity.get("ownerId"),
            entity_type=ctx.entity_type,
            entity_id=ctx.entity_id,
        )
        return ActionResult(
            data={"task_id": task_id, "title": config.task_title},
            message=f"Created task '{config.task_title}'",
        )

    async def add_tag(self, ctx: ActionContext) -> ActionResult:
        tag = ctx.config.tag_name
        tags: List[str] = list(ctx.entity.get("tags") or [])
        if tag in tags:
            return ActionResult(data={"tag": tag, "changed": False}, message=f"Tag '{tag}' already present")
        await self._update(ctx, {"tags": tags + [tag]})
        return ActionResult(
            data={"tag": tag, "changed": True}, message=f"Added tag '{tag}'", entity_changed=True
        )

    async def remove_tag(self, ctx: ActionContext) -> ActionResult:
        tag = ctx.config.tag_name
        tags: List[str] = list(ctx.entity.get("tags") or [])
        if tag not in tags:
            return ActionResult(data={"tag": tag, "changed": False}, message=f"Tag '{tag}' not present")
        await self._update(ctx, {"tags": [t for t in tags if t != tag]})
        return ActionResult(
            data={"tag": tag, "changed": True}, message=f"Removed tag '{tag}'", entity_changed=True
        )

    async def update_field(self, ctx: ActionContext) -> ActionResult:
        config = ctx.config
        previous = ctx.entity.get(config.field_name)
        await self._update(ctx, {config.field_name: config.field_value})
        return ActionResult(
            data={"field": config.field_name, "old_value": previous, "new_value": config.field_value},
            message=f"Set {config.field_name}",
            entity_changed=True,
        )

    async def assign_owner(self, ctx: ActionContext) -> ActionResult:
        owner_id = ctx.config.owner_id
        await self._update(ctx, {"ownerId": owner_id})
        return ActionResult(
            data={"owner_id": owner_id, "previous_owner_id": ctx.entity.get("ownerId")},
            message=f"Assigned owner {owner_id}",
            entity_changed=True,
        )

    async def send_notification(self, ctx: ActionContext) -> ActionResult:
        config = ctx.config
        user_id = config.notification_user_id or ctx.entity.get("ownerId")
        await self._notifier.notify(
            user_id,
            config.notification_message or "",
            workflow_id=ctx.workflow_id,
            entity_type=ctx.entity_type,
            entity_id=ctx.entity_id,
        )
        return ActionResult(data={"user_id": user_id}, message="Notification sent")

    async def send_webhook(self, ctx: ActionContext) -> ActionResult:
        config = ctx.config
        request: Dict[str, Any] = {"headers": config.webhook_headers}
        if config.webhook_method != "GET":
            if config.webhook_body:
                request["content"] = config.webhook_body
            else:
                request["json"] = {
                    "workflow_id": ctx.workflow_id,
                    "enrollment_id": ctx.enrollment_id,
                    "entity_type": ctx.entity_type,
                    "entity": json.loads(json.dumps(ctx.entity, default=str)),
                }
        try:
            async with httpx.AsyncClient(
                timeout=self._webhook_timeout, transport=self._http_transport
            ) as client:
                response = await client.request(config.webhook_method, config.webhook_url, **request)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Webhook {config.webhook_url} failed: {type(e).__name__}: {e}")
            return ActionResult.failure(f"Webhook request failed: {e}")
        return ActionResult(
            data={"status_code": response.status_code, "url": config.webhook_url},
            message=f"{config.webhook_method} {config.webhook_url} -> {response.status_code}",
        )

    async def update_lead_score(self, ctx: ActionContext) -> ActionResult:
        config = ctx.config
        try:
            current = int(ctx.entity.get("leadScore") or 0)
        except (TypeError, ValueError):
            current = 0
        score = current + config.score_points
        await self._update(ctx, {"leadScore": score})
        return ActionResult(
            data={"previous_score": current, "score": score, "reason": config.score_reason},
            message=f"Lead score {current} -> {score}",
            entity_changed=True,
        )
