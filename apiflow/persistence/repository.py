"""Repository abstraction for execution state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..contracts import ExecutionLogEntry, ExecutionStatus, WorkflowExecution


class ExecutionRepository(Protocol):
    """Protocol for execution state persistence backends."""

    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Persist a new execution row."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve the execution by id."""

    async def save_execution(
        self, execution: WorkflowExecution, expected_revision: int
    ) -> WorkflowExecution:
        """Write ``execution`` if the stored revision equals ``expected_revision``.

        Returns the stored copy with its revision bumped. Raises
        ``ConcurrentModificationError`` on a revision mismatch and
        ``ExecutionNotFoundError`` when the row does not exist.
        """

    async def list_executions(
        self,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
        workflow_id: Optional[str] = None,
        user_id: Optional[str] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> list[WorkflowExecution]:
        """Return executions matching every given filter, newest first."""

    async def delete_executions(
        self, statuses: Iterable[ExecutionStatus], created_before: datetime
    ) -> int:
        """Delete rows in ``statuses`` created before the cutoff."""

    async def add_log_entry(self, entry: ExecutionLogEntry) -> None:
        """Append a structured log entry for an execution."""

    async def list_log_entries(
        self, execution_id: str, limit: Optional[int] = None
    ) -> list[ExecutionLogEntry]:
        """Return log entries oldest first; ``limit`` keeps the most recent."""
