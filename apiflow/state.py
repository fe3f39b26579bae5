"""Execution state management.

:class:`ExecutionStateManager` is the only component that writes execution
rows. Every write is a read-modify-write guarded by the row's ``revision``
counter; a conflicting concurrent write causes the change to be re-applied
to the fresh row, which re-validates the transition.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from .config import RetryPolicy
from .contracts import (
    TERMINAL_STATUSES,
    ExecutionLogEntry,
    ExecutionMetrics,
    ExecutionProgress,
    ExecutionStatus,
    StepResult,
    WorkflowExecution,
    utcnow,
)
from .errors import (
    ConcurrentModificationError,
    ExecutionNotFoundError,
    InvalidTransitionError,
    ValidationError,
    is_permanent_error,
)
from .persistence import ExecutionRepository
from .queue import QueueService

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[ExecutionStatus, FrozenSet[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED, ExecutionStatus.FAILED}
    ),
    ExecutionStatus.RUNNING: frozenset(
        {
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.PAUSED,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.PAUSED: frozenset({ExecutionStatus.PENDING, ExecutionStatus.CANCELLED}),
    ExecutionStatus.FAILED: frozenset({ExecutionStatus.RETRYING}),
    ExecutionStatus.RETRYING: frozenset({ExecutionStatus.PENDING}),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}

MAX_WRITE_ATTEMPTS = 5
RECENT_EXECUTIONS_LIMIT = 10


def _elapsed_ms(since: Optional[datetime], now: datetime) -> int:
    if since is None:
        return 0
    return max(int((now - since).total_seconds() * 1000), 0)


class ExecutionStateManager:
    """Own the lifecycle of persisted workflow executions."""

    def __init__(
        self,
        repository: ExecutionRepository,
        queue_service: Optional[QueueService] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.repository = repository
        self.queue_service = queue_service
        self.retry_policy = retry_policy or RetryPolicy()

    # ------------------------------------------------------------------
    # Write helpers
    async def _mutate(
        self, execution_id: str, change: Callable[[WorkflowExecution], None]
    ) -> WorkflowExecution:
        for attempt in range(MAX_WRITE_ATTEMPTS):
            execution = await self.repository.get_execution(execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)
            expected = execution.revision
            change(execution)
            try:
                return await self.repository.save_execution(execution, expected)
            except ConcurrentModificationError:
                logger.debug(
                    f"Execution {execution_id} changed concurrently "
                    f"(attempt {attempt + 1}/{MAX_WRITE_ATTEMPTS}), re-applying"
                )
        raise ConcurrentModificationError(
            f"Execution {execution_id} kept changing; gave up after "
            f"{MAX_WRITE_ATTEMPTS} attempts"
        )

    @staticmethod
    def _check_transition(execution: WorkflowExecution, target: ExecutionStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[execution.status]:
            raise InvalidTransitionError(
                execution.id, execution.status.value, target.value
            )

    async def _cancel_queue_job(self, execution: WorkflowExecution) -> None:
        if not (self.queue_service and execution.queue_job_id and execution.queue_name):
            return
        try:
            await self.queue_service.cancel_job(execution.queue_name, execution.queue_job_id)
            logger.info(
                f"Cancelled queue job {execution.queue_job_id} for execution {execution.id}"
            )
        except Exception as e:
            logger.error(f"Failed to cancel queue job for execution {execution.id}: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    async def create_execution(
        self,
        workflow_id: str,
        user_id: str,
        total_steps: int,
        max_attempts: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecution:
        execution = WorkflowExecution(
            workflow_id=workflow_id,
            user_id=user_id,
            total_steps=total_steps,
            max_attempts=(
                max_attempts if max_attempts is not None else self.retry_policy.max_attempts
            ),
            metadata=metadata or {},
        )
        created = await self.repository.create_execution(execution)
        logger.info(
            f"Created execution {created.id} for workflow {workflow_id} "
            f"(user={user_id}, total_steps={total_steps})"
        )
        return created

    async def update_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        current_step: Optional[int] = None,
        completed_steps: Optional[int] = None,
        failed_steps: Optional[int] = None,
        error: Optional[str] = None,
        result: Optional[Dict[str, Any]] = None,
        step_results: Optional[Dict[int, StepResult]] = None,
    ) -> WorkflowExecution:
        """Move an execution to ``status`` and apply its side effects.

        Raises:
            InvalidTransitionError: the move is not allowed from the current
                status.
            ExecutionNotFoundError: unknown ``execution_id``.
        """
        status = ExecutionStatus(status)

        def change(execution: WorkflowExecution) -> None:
            self._check_transition(execution, status)
            now = utcnow()
            if status == ExecutionStatus.RUNNING:
                execution.started_at = now
            elif status in TERMINAL_STATUSES:
                execution.completed_at = now
                if status != ExecutionStatus.CANCELLED:
                    execution.execution_time = _elapsed_ms(execution.started_at, now)
            elif status == ExecutionStatus.PAUSED:
                execution.paused_at = now
            elif status == ExecutionStatus.RETRYING:
                if execution.attempt_count >= execution.max_attempts:
                    raise ValidationError(
                        f"Execution {execution.id} exhausted its "
                        f"{execution.max_attempts} attempts"
                    )
                delay = self.compute_retry_delay(execution.attempt_count)
                execution.attempt_count += 1
                execution.retry_after = now + timedelta(milliseconds=delay)
            execution.status = status
            if current_step is not None:
                execution.current_step = current_step
            if completed_steps is not None:
                execution.completed_steps = completed_steps
            if failed_steps is not None:
                execution.failed_steps = failed_steps
            if error is not None:
                execution.error = error
            if result is not None:
                execution.result = result
            if step_results is not None:
                execution.step_results = dict(step_results)

        updated = await self._mutate(execution_id, change)
        logger.info(
            f"Execution {execution_id} -> {status.value} "
            f"(step={updated.current_step}, completed={updated.completed_steps}, "
            f"failed={updated.failed_steps})"
        )
        return updated

    async def pause_execution(self, execution_id: str, paused_by: str) -> WorkflowExecution:
        def change(execution: WorkflowExecution) -> None:
            self._check_transition(execution, ExecutionStatus.PAUSED)
            execution.status = ExecutionStatus.PAUSED
            execution.paused_at = utcnow()
            execution.paused_by = paused_by

        updated = await self._mutate(execution_id, change)
        await self._cancel_queue_job(updated)
        logger.info(f"Paused execution {execution_id} (by {paused_by})")
        return updated

    async def resume_execution(self, execution_id: str, resumed_by: str) -> WorkflowExecution:
        def change(execution: WorkflowExecution) -> None:
            if execution.status != ExecutionStatus.PAUSED:
                raise InvalidTransitionError(
                    execution.id, execution.status.value, ExecutionStatus.PENDING.value
                )
            execution.status = ExecutionStatus.PENDING
            execution.resumed_at = utcnow()
            execution.resumed_by = resumed_by

        updated = await self._mutate(execution_id, change)
        logger.info(f"Resumed execution {execution_id} (by {resumed_by})")
        return updated

    async def cancel_execution(self, execution_id: str, cancelled_by: str) -> WorkflowExecution:
        def change(execution: WorkflowExecution) -> None:
            self._check_transition(execution, ExecutionStatus.CANCELLED)
            now = utcnow()
            execution.status = ExecutionStatus.CANCELLED
            execution.completed_at = now
            execution.result = {
                "cancelled": True,
                "cancelledAt": now.isoformat(),
                "cancelledBy": cancelled_by,
            }

        updated = await self._mutate(execution_id, change)
        await self._cancel_queue_job(updated)
        logger.info(f"Cancelled execution {execution_id} (by {cancelled_by})")
        return updated

    async def update_progress(
        self,
        execution_id: str,
        *,
        current_step: Optional[int] = None,
        completed_steps: Optional[int] = None,
        failed_steps: Optional[int] = None,
        step_results: Optional[Dict[int, StepResult]] = None,
    ) -> WorkflowExecution:
        """Record progress without touching the status."""

        def change(execution: WorkflowExecution) -> None:
            if current_step is not None:
                execution.current_step = current_step
            if completed_steps is not None:
                execution.completed_steps = completed_steps
            if failed_steps is not None:
                execution.failed_steps = failed_steps
            if step_results is not None:
                execution.step_results = dict(step_results)

        updated = await self._mutate(execution_id, change)
        logger.debug(
            f"Execution {execution_id} progress: step={updated.current_step} "
            f"completed={updated.completed_steps} failed={updated.failed_steps}"
        )
        return updated

    async def set_queue_job(
        self, execution_id: str, queue_job_id: str, queue_name: str
    ) -> WorkflowExecution:
        def change(execution: WorkflowExecution) -> None:
            execution.queue_job_id = queue_job_id
            execution.queue_name = queue_name

        updated = await self._mutate(execution_id, change)
        logger.info(f"Execution {execution_id} queued as job {queue_job_id} on {queue_name}")
        return updated

    # ------------------------------------------------------------------
    # Reads
    async def get_execution_state(self, execution_id: str) -> Optional[WorkflowExecution]:
        return await self.repository.get_execution(execution_id)

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def get_execution_progress(self, execution_id: str) -> Optional[ExecutionProgress]:
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            return None
        total = execution.total_steps
        progress = round(execution.completed_steps / total * 100) if total else 0
        current = execution.current_step or 0

        estimated: Optional[float] = None
        if (
            execution.status == ExecutionStatus.RUNNING
            and current > 0
            and execution.started_at is not None
        ):
            elapsed = _elapsed_ms(execution.started_at, utcnow())
            estimated = elapsed / current * max(total - current, 0)

        return ExecutionProgress(
            current_step=current,
            total_steps=total,
            completed_steps=execution.completed_steps,
            failed_steps=execution.failed_steps,
            progress=progress,
            estimated_time_remaining=estimated,
        )

    async def get_execution_logs(
        self, execution_id: str, limit: Optional[int] = None
    ) -> List[ExecutionLogEntry]:
        return await self.repository.list_log_entries(execution_id, limit=limit)

    # ------------------------------------------------------------------
    # Retry
    def compute_retry_delay(self, attempt_count: int) -> int:
        """Backoff in milliseconds before retry number ``attempt_count + 1``."""
        policy = self.retry_policy
        if not policy.exponential_backoff:
            return policy.retry_delay
        return min(policy.retry_delay * 2 ** max(attempt_count, 0), policy.max_retry_delay)

    @staticmethod
    def _has_permanent_error(execution: WorkflowExecution) -> bool:
        """Whether a failed step's error, or the run error when no step failed, is permanent."""
        failures = [
            result.error
            for result in execution.step_results.values()
            if not result.success and not result.metadata.get("skipped")
        ]
        if failures:
            return any(is_permanent_error(error) for error in failures)
        return is_permanent_error(execution.error)

    def _is_retryable(self, execution: WorkflowExecution, now: datetime) -> bool:
        if execution.status != ExecutionStatus.FAILED:
            return False
        if execution.attempt_count >= execution.max_attempts:
            return False
        if execution.retry_after is not None and execution.retry_after > now:
            return False
        return not self._has_permanent_error(execution)

    async def should_retry(self, execution_id: str) -> bool:
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            return False
        retryable = self._is_retryable(execution, utcnow())
        if not retryable and self._has_permanent_error(execution):
            logger.info(
                f"Execution {execution_id} has a permanent error, not retrying: "
                f"{execution.error}"
            )
        return retryable

    async def schedule_retry(self, execution_id: str) -> WorkflowExecution:
        """FAILED -> RETRYING, bumping the attempt counter."""
        return await self.update_status(execution_id, ExecutionStatus.RETRYING)

    async def reset_execution_for_retry(self, execution_id: str) -> WorkflowExecution:
        """RETRYING -> PENDING with progress and results cleared."""

        def change(execution: WorkflowExecution) -> None:
            self._check_transition(execution, ExecutionStatus.PENDING)
            if execution.status != ExecutionStatus.RETRYING:
                raise InvalidTransitionError(
                    execution.id, execution.status.value, ExecutionStatus.PENDING.value
                )
            execution.status = ExecutionStatus.PENDING
            execution.current_step = 0
            execution.completed_steps = 0
            execution.failed_steps = 0
            execution.step_results = {}
            execution.error = None
            execution.result = None
            execution.execution_time = None
            execution.started_at = None
            execution.completed_at = None

        updated = await self._mutate(execution_id, change)
        logger.info(f"Reset execution {execution_id} for retry")
        return updated

    # ------------------------------------------------------------------
    # Queries
    async def get_retryable_executions(self) -> List[WorkflowExecution]:
        now = utcnow()
        failed = await self.repository.list_executions(statuses=[ExecutionStatus.FAILED])
        return [e for e in failed if self._is_retryable(e, now)]

    async def get_paused_executions(self) -> List[WorkflowExecution]:
        return await self.repository.list_executions(statuses=[ExecutionStatus.PAUSED])

    async def get_stuck_executions(self, timeout_minutes: int = 30) -> List[WorkflowExecution]:
        """RUNNING executions started more than ``timeout_minutes`` ago."""
        cutoff = utcnow() - timedelta(minutes=timeout_minutes)
        running = await self.repository.list_executions(statuses=[ExecutionStatus.RUNNING])
        return [e for e in running if e.started_at is not None and e.started_at < cutoff]

    async def get_execution_metrics(
        self,
        workflow_id: Optional[str] = None,
        user_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ExecutionMetrics:
        executions = await self.repository.list_executions(
            workflow_id=workflow_id,
            user_id=user_id,
            created_after=start,
            created_before=end,
        )
        total = len(executions)
        by_status = {status: 0 for status in ExecutionStatus}
        for execution in executions:
            by_status[execution.status] += 1
        durations = [
            e.execution_time
            for e in executions
            if e.status == ExecutionStatus.COMPLETED and e.execution_time is not None
        ]
        successful = by_status[ExecutionStatus.COMPLETED]
        return ExecutionMetrics(
            total_executions=total,
            successful_executions=successful,
            failed_executions=by_status[ExecutionStatus.FAILED],
            cancelled_executions=by_status[ExecutionStatus.CANCELLED],
            average_execution_time=sum(durations) / len(durations) if durations else 0.0,
            success_rate=successful / total * 100 if total else 0.0,
            recent_executions=executions[:RECENT_EXECUTIONS_LIMIT],
        )

    async def cleanup_old_executions(self, retention_days: int = 30) -> int:
        """Delete terminal executions older than ``retention_days``."""
        cutoff = utcnow() - timedelta(days=retention_days)
        deleted = await self.repository.delete_executions(TERMINAL_STATUSES, cutoff)
        logger.info(
            f"Cleaned up {deleted} execution records older than {retention_days} days"
        )
        return deleted
