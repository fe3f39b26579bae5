"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from ..contracts import ExecutionLogEntry, ExecutionStatus, WorkflowExecution, utcnow
from ..errors import ConcurrentModificationError, ExecutionNotFoundError
from .repository import ExecutionRepository


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so that string comparison orders correctly."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist execution state using SQLite.

    The full execution is stored as a JSON document; the columns used for
    filtering and for the revision check are kept alongside it.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                revision INTEGER NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_status ON executions (status)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_logs (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                step_order INTEGER,
                step_name TEXT,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                data TEXT,
                timestamp TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_logs_execution ON execution_logs (execution_id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _row_to_execution(row: sqlite3.Row) -> WorkflowExecution:
        execution = WorkflowExecution.model_validate_json(row["body"])
        execution.revision = row["revision"]
        return execution

    # ------------------------------------------------------------------
    # Repository API
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO executions (id, workflow_id, user_id, status, created_at, revision, body) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            execution.id,
            execution.workflow_id,
            execution.user_id,
            execution.status.value,
            _ts(execution.created_at),
            execution.revision,
            execution.model_dump_json(),
        )
        return execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT revision, body FROM executions WHERE id = ?",
            execution_id,
        )
        return self._row_to_execution(row) if row else None

    async def save_execution(
        self, execution: WorkflowExecution, expected_revision: int
    ) -> WorkflowExecution:
        updated = execution.model_copy(
            deep=True,
            update={"revision": expected_revision + 1, "updated_at": utcnow()},
        )
        changed = await asyncio.to_thread(
            self._execute,
            "UPDATE executions SET status = ?, revision = ?, body = ? "
            "WHERE id = ? AND revision = ?",
            updated.status.value,
            updated.revision,
            updated.model_dump_json(),
            execution.id,
            expected_revision,
        )
        if changed == 0:
            current = await self.get_execution(execution.id)
            if current is None:
                raise ExecutionNotFoundError(execution.id)
            raise ConcurrentModificationError(
                f"Execution {execution.id} is at revision {current.revision}, "
                f"expected {expected_revision}"
            )
        return updated

    async def list_executions(
        self,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
        workflow_id: Optional[str] = None,
        user_id: Optional[str] = None,
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
    ) -> list[WorkflowExecution]:
        clauses: list[str] = []
        params: list[Any] = []
        if statuses is not None:
            wanted = [ExecutionStatus(s).value for s in statuses]
            if not wanted:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in wanted)})")
            params.extend(wanted)
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if created_after is not None:
            clauses.append("created_at >= ?")
            params.append(_ts(created_after))
        if created_before is not None:
            clauses.append("created_at <= ?")
            params.append(_ts(created_before))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT revision, body FROM executions{where} ORDER BY created_at DESC",
            *params,
        )
        return [self._row_to_execution(r) for r in rows]

    async def delete_executions(
        self, statuses: Iterable[ExecutionStatus], created_before: datetime
    ) -> int:
        wanted = [ExecutionStatus(s).value for s in statuses]
        if not wanted:
            return 0
        placeholders = ", ".join("?" for _ in wanted)
        cutoff = _ts(created_before)
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM execution_logs WHERE execution_id IN ("
            f"SELECT id FROM executions WHERE status IN ({placeholders}) AND created_at < ?)",
            *wanted,
            cutoff,
        )
        return await asyncio.to_thread(
            self._execute,
            f"DELETE FROM executions WHERE status IN ({placeholders}) AND created_at < ?",
            *wanted,
            cutoff,
        )

    async def add_log_entry(self, entry: ExecutionLogEntry) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO execution_logs (id, execution_id, step_order, step_name, level, message, data, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            entry.id,
            entry.execution_id,
            entry.step_order,
            entry.step_name,
            entry.level,
            entry.message,
            json.dumps(entry.data, default=str) if entry.data is not None else None,
            _ts(entry.timestamp),
        )

    async def list_log_entries(
        self, execution_id: str, limit: Optional[int] = None
    ) -> list[ExecutionLogEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM execution_logs WHERE execution_id = ? ORDER BY timestamp, rowid",
            execution_id,
        )
        entries = [
            ExecutionLogEntry(
                id=r["id"],
                execution_id=r["execution_id"],
                step_order=r["step_order"],
                step_name=r["step_name"],
                level=r["level"],
                message=r["message"],
                data=json.loads(r["data"]) if r["data"] else None,
                timestamp=datetime.fromisoformat(r["timestamp"]),
            )
            for r in rows
        ]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries
