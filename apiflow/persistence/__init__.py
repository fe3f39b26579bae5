"""Persistence layer for apiflow executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ApiflowConfig, load_config
from .inmemory import InMemoryExecutionRepository
from .repository import ExecutionRepository
from .sqlite import SQLiteExecutionRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[ApiflowConfig] = None
) -> ExecutionRepository:
    """Factory function to build an execution repository.

    The backend is selected from ``database_url``, which can be provided
    explicitly, via environment variable ``APIFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured an in-memory repository is returned. Every call builds a new
    repository; callers own the instance they receive.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("APIFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryExecutionRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteExecutionRepository(path)

    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "ExecutionRepository",
    "InMemoryExecutionRepository",
    "SQLiteExecutionRepository",
    "get_repository",
]
