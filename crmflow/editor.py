"""Command-based editing of workflow graphs.

Every command maps one immutable snapshot (a tuple of frozen steps) to a new
one. Readers holding a snapshot never observe a partial edit, and undo/redo is
a matter of swapping snapshots.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import GraphEditError
from .graph import GraphError, Position, WorkflowStep, parse_step, validate

logger = logging.getLogger(__name__)

Snapshot = Tuple[WorkflowStep, ...]


def _index_of(steps: Snapshot, step_id: str) -> int:
    for index, step in enumerate(steps):
        if step.id == step_id:
            return index
    raise GraphEditError(f"Step {step_id} does not exist")


def _trim(targets: List[Optional[str]]) -> List[Optional[str]]:
    while targets and targets[-1] is None:
        targets.pop()
    return targets


def _without_target(step: WorkflowStep, target_id: str) -> WorkflowStep:
    if target_id not in step.next_step_ids:
        return step
    if step.type == "condition":
        # branches are positional
        targets = [None if t == target_id else t for t in step.next_step_ids]
        targets = _trim(targets)
    else:
        targets = [t for t in step.next_step_ids if t != target_id]
    return step.model_copy(update={"next_step_ids": targets})


class EditCommand(BaseModel):
    model_config = ConfigDict(frozen=True)

    def apply(self, steps: Snapshot) -> Snapshot:
        raise NotImplementedError


class AddStep(EditCommand):
    """Insert a step, optionally wiring ``after_step_id`` to it."""

    op: Literal["add_step"] = "add_step"
    step: WorkflowStep
    after_step_id: Optional[str] = None

    def apply(self, steps: Snapshot) -> Snapshot:
        if any(s.id == self.step.id for s in steps):
            raise GraphEditError(f"Step {self.step.id} already exists")
        result = steps + (self.step,)
        if self.after_step_id is not None:
            result = ConnectSteps(source_id=self.after_step_id, target_id=self.step.id).apply(result)
        return result


class UpdateStep(EditCommand):
    """Replace some fields of a step; its id and type never change."""

    op: Literal["update_step"] = "update_step"
    step_id: str
    name: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    position: Optional[Position] = None

    def apply(self, steps: Snapshot) -> Snapshot:
        index = _index_of(steps, self.step_id)
        data = steps[index].model_dump()
        if self.name is not None:
            data["name"] = self.name
        if self.config is not None:
            data["config"] = {**data["config"], **self.config}
        if self.position is not None:
            data["position"] = self.position.model_dump()
        updated = parse_step(data)
        return steps[:index] + (updated,) + steps[index + 1 :]


class RemoveStep(EditCommand):
    """Delete a step and every edge that points at it."""

    op: Literal["remove_step"] = "remove_step"
    step_id: str

    def apply(self, steps: Snapshot) -> Snapshot:
        _index_of(steps, self.step_id)
        return tuple(
            _without_target(step, self.step_id)
            for step in steps
            if step.id != self.step_id
        )


class ConnectSteps(EditCommand):
    """Add an edge. ``branch`` picks the true/false slot of a condition."""

    op: Literal["connect"] = "connect"
    source_id: str
    target_id: str
    branch: Optional[Literal["yes", "no"]] = None

    def apply(self, steps: Snapshot) -> Snapshot:
        index = _index_of(steps, self.source_id)
        _index_of(steps, self.target_id)
        if self.source_id == self.target_id:
            raise GraphEditError("A step cannot connect to itself")
        source = steps[index]
        targets = list(source.next_step_ids)
        if source.type == "condition" and self.branch is not None:
            slot = 0 if self.branch == "yes" else 1
            while len(targets) <= slot:
                targets.append(None)
            targets[slot] = self.target_id
        elif self.target_id not in targets:
            if source.type == "condition" and len(targets) >= 2:
                raise GraphEditError(f"Condition {source.id} already has two branches")
            targets.append(self.target_id)
        updated = source.model_copy(update={"next_step_ids": targets})
        return steps[:index] + (updated,) + steps[index + 1 :]


class DisconnectSteps(EditCommand):
    op: Literal["disconnect"] = "disconnect"
    source_id: str
    target_id: str

    def apply(self, steps: Snapshot) -> Snapshot:
        index = _index_of(steps, self.source_id)
        updated = _without_target(steps[index], self.target_id)
        return steps[:index] + (updated,) + steps[index + 1 :]


class ReplaceSteps(EditCommand):
    """Swap in a whole graph, as produced by the canvas."""

    op: Literal["replace_steps"] = "replace_steps"
    steps: List[WorkflowStep]

    def apply(self, steps: Snapshot) -> Snapshot:
        return tuple(self.steps)


GraphCommand = Annotated[
    Union[AddStep, UpdateStep, RemoveStep, ConnectSteps, DisconnectSteps, ReplaceSteps],
    Field(discriminator="op"),
]


class WorkflowEditor:
    """Holds the authoritative graph of a workflow while it is being edited."""

    def __init__(self, steps: Iterable[WorkflowStep] = ()) -> None:
        self._snapshot: Snapshot = tuple(steps)
        self._saved: Snapshot = self._snapshot
        self._undo: List[Snapshot] = []
        self._redo: List[Snapshot] = []
        self.revision = 0

    @property
    def steps(self) -> Snapshot:
        return self._snapshot

    @property
    def is_dirty(self) -> bool:
        return self._snapshot is not self._saved

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self._snapshot:
            if step.id == step_id:
                return step
        return None

    def apply(self, command: EditCommand) -> Snapshot:
        """Run ``command``; on error the current snapshot is left untouched."""
        new_snapshot = command.apply(self._snapshot)
        self._undo.append(self._snapshot)
        self._redo.clear()
        self._snapshot = new_snapshot
        self.revision += 1
        logger.debug(f"Applied {type(command).__name__}, revision {self.revision}")
        return new_snapshot

    def apply_all(self, commands: Iterable[EditCommand]) -> Snapshot:
        """Apply several commands as one undoable edit."""
        snapshot = self._snapshot
        for command in commands:
            snapshot = command.apply(snapshot)
        if snapshot is self._snapshot:
            return snapshot
        return self.apply(ReplaceSteps(steps=list(snapshot)))

    def add_step(self, step: WorkflowStep, after_step_id: Optional[str] = None) -> Snapshot:
        return self.apply(AddStep(step=step, after_step_id=after_step_id))

    def update_step(self, step_id: str, **changes: Any) -> Snapshot:
        return self.apply(UpdateStep(step_id=step_id, **changes))

    def remove_step(self, step_id: str) -> Snapshot:
        return self.apply(RemoveStep(step_id=step_id))

    def connect(
        self, source_id: str, target_id: str, branch: Optional[Literal["yes", "no"]] = None
    ) -> Snapshot:
        return self.apply(ConnectSteps(source_id=source_id, target_id=target_id, branch=branch))

    def disconnect(self, source_id: str, target_id: str) -> Snapshot:
        return self.apply(DisconnectSteps(source_id=source_id, target_id=target_id))

    def replace_steps(self, steps: Iterable[WorkflowStep]) -> Snapshot:
        return self.apply(ReplaceSteps(steps=list(steps)))

    def undo(self) -> bool:
        if not self._undo:
            return False
        self._redo.append(self._snapshot)
        self._snapshot = self._undo.pop()
        self.revision += 1
        return True

    def redo(self) -> bool:
        if not self._redo:
            return False
        self._undo.append(self._snapshot)
        self._snapshot = self._redo.pop()
        self.revision += 1
        return True

    def mark_saved(self) -> None:
        self._saved = self._snapshot

    def validate(self) -> List[GraphError]:
        return validate(self._snapshot)
