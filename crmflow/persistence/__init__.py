"""Workflow and enrollment storage.

``get_repository()`` hands out one repository per process. The backend is
chosen from the database URL scheme:

- no URL: :class:`InMemoryWorkflowRepository`
- ``sqlite://<path>``: :class:`SQLiteWorkflowRepository`
- ``postgres://`` / ``postgresql://``: ``PostgresWorkflowRepository``
"""

from __future__ import annotations

import logging
from typing import Optional

from ..config import CrmflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

logger = logging.getLogger(__name__)

_repository_instance: WorkflowRepository | None = None


def _open_repository(database_url: Optional[str]) -> WorkflowRepository:
    if not database_url:
        return InMemoryWorkflowRepository()

    scheme, _, location = database_url.partition("://")
    if scheme == "sqlite" and location:
        return SQLiteWorkflowRepository(location)
    if scheme in ("postgres", "postgresql"):
        from .postgres import PostgresWorkflowRepository

        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[CrmflowConfig] = None
) -> WorkflowRepository:
    """Return the process-wide repository, creating it on first use.

    Passing ``database_url`` or ``config`` replaces the cached repository.
    Otherwise the URL comes from :func:`~crmflow.config.load_config`, which
    already applies the ``CRMFLOW_DATABASE_URL`` / ``DATABASE_URL`` overrides.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    repository = _open_repository(database_url or config.database_url)
    logger.debug(f"Using {type(repository).__name__}")
    _repository_instance = repository
    return repository


def reset_repository() -> None:
    """Forget the cached repository so the next call rebuilds it."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
    "reset_repository",
]
