"""In-memory implementation of the execution repository."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..contracts import ExecutionLogEntry, ExecutionStatus, WorkflowExecution, utcnow
from ..errors import ConcurrentModificationError, ExecutionNotFoundError
from .repository import ExecutionRepository


class InMemoryExecutionRepository(ExecutionRepository):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Callers always get copies so that a
    stale object can never bypass the revision check.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, WorkflowExecution] = {}
        self._logs: Dict[str, List[ExecutionLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._lock:
            self._executions[execution.id] = execution.model_copy(deep=True)
        return execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def save_execution(
        self, execution: WorkflowExecution, expected_revision: int
    ) -> WorkflowExecution:
        async with self._lock:
            stored = self._executions.get(execution.id)
            if stored is None:
                raise ExecutionNotFoundError(execution.id)
            if stored.revision != expected_revision:
                raise ConcurrentModificationError(
                    f"Execution {execution.id} is at revision {stored.revision}, "
                    f"expected {expected_revision}"
                )
            updated = execution.model_copy(
                deep=True,
                update={"revision": expected_revision + 1, "updated_at": utcnow()},
            )
            self._executions[execution.id] = updated
        return updated.model_copy(deep=True)

    async def list_executions(
        self,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
        workflow_id: Optional[str] = None,
        user_id: Optional[str] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> list[WorkflowExecution]:
        wanted = set(statuses) if statuses is not None else None
        matches = [
            e
            for e in self._executions.values()
            if (wanted is None or e.status in wanted)
            and (workflow_id is None or e.workflow_id == workflow_id)
            and (user_id is None or e.user_id == user_id)
            and (created_after is None or e.created_at >= created_after)
            and (created_before is None or e.created_at <= created_before)
        ]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return [e.model_copy(deep=True) for e in matches]

    async def delete_executions(
        self, statuses: Iterable[ExecutionStatus], created_before: datetime
    ) -> int:
        wanted = set(statuses)
        async with self._lock:
            doomed = [
                e.id
                for e in self._executions.values()
                if e.status in wanted and e.created_at < created_before
            ]
            for execution_id in doomed:
                del self._executions[execution_id]
                self._logs.pop(execution_id, None)
        return len(doomed)

    async def add_log_entry(self, entry: ExecutionLogEntry) -> None:
        self._logs[entry.execution_id].append(entry.model_copy(deep=True))

    async def list_log_entries(
        self, execution_id: str, limit: Optional[int] = None
    ) -> list[ExecutionLogEntry]:
        entries = list(self._logs.get(execution_id, []))
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries
