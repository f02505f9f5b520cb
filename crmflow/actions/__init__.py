"""Action executors and the collaborators they call."""

from .base import ActionContext, ActionExecutor, ActionRegistry, ActionResult
from .builtin import BuiltinActions
from .collaborators import (
    EmailSender,
    InMemoryNotifier,
    InMemoryOutbox,
    InMemoryTaskBoard,
    Notifier,
    TaskCreator,
)
from .simulators import simulator_registry

__all__ = [
    "ActionContext",
    "ActionExecutor",
    "ActionRegistry",
    "ActionResult",
    "BuiltinActions",
    "EmailSender",
    "InMemoryNotifier",
    "InMemoryOutbox",
    "InMemoryTaskBoard",
    "Notifier",
    "TaskCreator",
    "simulator_registry",
]
