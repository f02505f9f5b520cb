"""Outbound services used by the built-in actions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from ..contracts import utcnow

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    async def send(self, to: str, subject: str, body: str, **metadata: Any) -> str:
        """Send a message and return its provider id."""


class TaskCreator(Protocol):
    async def create_task(
        self,
        title: str,
        description: str = "",
        due_at: Optional[datetime] = None,
        assignee: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> str:
        """Create a CRM task and return its id."""


class Notifier(Protocol):
    async def notify(self, user_id: Optional[str], message: str, **metadata: Any) -> None:
        """Deliver an in-app notification."""


class SentEmail(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    to: str
    subject: str
    body: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    sent_at: datetime = Field(default_factory=utcnow)


class CreatedTask(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str
    description: str = ""
    due_at: Optional[datetime] = None
    assignee: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None


class Notification(BaseModel):
    user_id: Optional[str] = None
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class InMemoryOutbox(EmailSender):
    """Records emails instead of delivering them."""

    def __init__(self) -> None:
        self.sent: List[SentEmail] = []

    async def send(self, to: str, subject: str, body: str, **metadata: Any) -> str:
        email = SentEmail(to=to, subject=subject, body=body, metadata=metadata)
        self.sent.append(email)
        logger.info(f"Queued email {email.id} to {to}")
        return email.id


class InMemoryTaskBoard(TaskCreator):
    def __init__(self) -> None:
        self.tasks: List[CreatedTask] = []

    async def create_task(
        self,
        title: str,
        description: str = "",
        due_at: Optional[datetime] = None,
        assignee: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> str:
        task = CreatedTask(
            title=title,
            description=description,
            due_at=due_at,
            assignee=assignee,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        self.tasks.append(task)
        return task.id


class InMemoryNotifier(Notifier):
    def __init__(self) -> None:
        self.notifications: List[Notification] = []

    async def notify(self, user_id: Optional[str], message: str, **metadata: Any) -> None:
        self.notifications.append(Notification(user_id=user_id, message=message, metadata=metadata))
