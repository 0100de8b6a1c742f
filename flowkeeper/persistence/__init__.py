"""Persistence layer for flowkeeper workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowkeeperConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .repository import RUN_COUNTER_FIELDS, WorkflowRepository
from .sql import SQLWorkflowRepository

SQL_PREFIXES = (
    "sqlite://",
    "sqlite+aiosqlite://",
    "postgres://",
    "postgresql://",
    "postgresql+asyncpg://",
)


def get_repository(
    database_url: Optional[str] = None, config: Optional[FlowkeeperConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The backend is selected from ``database_url``, which can be given
    explicitly, via ``FLOWKEEPER_DATABASE_URL`` or ``DATABASE_URL``, or from the
    loaded configuration. Without a database an in-memory repository is
    returned.
    """

    if database_url is None:
        config = config or load_config()
        database_url = (
            os.getenv("FLOWKEEPER_DATABASE_URL")
            or os.getenv("DATABASE_URL")
            or config.database_url
        )

    if not database_url:
        return InMemoryWorkflowRepository()

    if database_url.startswith(SQL_PREFIXES):
        return SQLWorkflowRepository(database_url)

    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "RUN_COUNTER_FIELDS",
    "WorkflowRepository",
    "InMemoryWorkflowRepository",
    "SQLWorkflowRepository",
    "get_repository",
]
