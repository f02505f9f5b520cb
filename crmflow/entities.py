"""Access to CRM entity data (contacts, deals, companies)."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Tuple

import yaml

from .errors import EntityNotFoundError

logger = logging.getLogger(__name__)

EntityKey = Tuple[str, str]


class EntityProvider(Protocol):
    """Source of current field values for enrolled entities."""

    async def get(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Return the entity's fields, or ``None`` when it does not exist."""

    async def update(
        self, entity_type: str, entity_id: str, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Apply ``changes`` and return the updated fields."""


class InMemoryEntityProvider(EntityProvider):
    """Entity store held in a dictionary.

    Useful for tests and for running the CLI against a fixture file.
    """

    def __init__(self, entities: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None):
        self._entities: Dict[EntityKey, Dict[str, Any]] = {}
        for entity_type, items in (entities or {}).items():
            for entity_id, fields in items.items():
                self.put(entity_type, entity_id, fields)

    @classmethod
    def from_file(cls, path: str | Path) -> "InMemoryEntityProvider":
        """Load ``{entity_type: {entity_id: {field: value}}}`` from YAML or JSON."""
        path = Path(path)
        with open(path) as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}
        logger.info(f"Loaded entities from {path}")
        return cls(data)

    def put(self, entity_type: str, entity_id: str, fields: Dict[str, Any]) -> None:
        self._entities[(entity_type, entity_id)] = {"id": entity_id, **fields}

    async def get(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        fields = self._entities.get((entity_type, entity_id))
        return dict(fields) if fields is not None else None

    async def update(
        self, entity_type: str, entity_id: str, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        key = (entity_type, entity_id)
        if key not in self._entities:
            raise EntityNotFoundError(entity_type, entity_id)
        self._entities[key].update(changes)
        return dict(self._entities[key])
