"""Action executor contract and registry."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional

from pydantic import BaseModel, Field

from ..contracts import utcnow
from ..graph import ActionConfig, ActionType

logger = logging.getLogger(__name__)


class ActionContext(BaseModel):
    """Everything an executor needs to perform one action for one entity."""

    workflow_id: str
    enrollment_id: str
    step_id: str
    entity_type: str
    entity_id: str
    entity: Dict[str, Any] = Field(default_factory=dict)
    config: ActionConfig
    now: datetime = Field(default_factory=utcnow)


class ActionResult(BaseModel):
    success: bool = True
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    message: str = ""
    simulated: bool = False
    entity_changed: bool = False

    @classmethod
    def failure(cls, error: str) -> "ActionResult":
        return cls(success=False, error=error, message=error)


ActionExecutor = Callable[[ActionContext], Awaitable[ActionResult]]


class ActionRegistry:
    """Executors keyed by action type."""

    def __init__(self, executors: Optional[Dict[ActionType, ActionExecutor]] = None) -> None:
        self._executors: Dict[ActionType, ActionExecutor] = dict(executors or {})

    def register(self, action_type: ActionType | str, executor: ActionExecutor) -> None:
        action_type = ActionType(action_type)
        if action_type in self._executors:
            logger.debug(f"Replacing executor for {action_type.value}")
        self._executors[action_type] = executor

    def executor(self, action_type: ActionType | str) -> Callable[[ActionExecutor], ActionExecutor]:
        """Decorator form of :meth:`register`."""

        def decorator(func: ActionExecutor) -> ActionExecutor:
            self.register(action_type, func)
            return func

        return decorator

    def get(self, action_type: ActionType | str) -> Optional[ActionExecutor]:
        return self._executors.get(ActionType(action_type))

    def __contains__(self, action_type: object) -> bool:
        try:
            return ActionType(action_type) in self._executors
        except ValueError:
            return False

    def __iter__(self) -> Iterator[ActionType]:
        return iter(self._executors)

    async def execute(self, context: ActionContext) -> ActionResult:
        action_type = context.config.action_type
        executor = self.get(action_type)
        if executor is None:
            return ActionResult.failure(f"No executor registered for {action_type.value}")
        return await executor(context)
