"""Workflow executor: runs workflows inline or through the job queue."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Union

from .config import ExecutorConfig
from .constants import DEFAULT_JOB_NAME
from .contracts import (
    ExecutionContext,
    ExecutionLogEntry,
    ExecutionMetrics,
    ExecutionProgress,
    ExecutionStatus,
    Step,
    StepResult,
    SubmittedExecution,
    Workflow,
    WorkflowExecution,
    WorkflowExecutionResult,
    WorkflowJobPayload,
    utcnow,
)
from .errors import (
    CancellationError,
    ConfigurationError,
    InvalidTransitionError,
    ValidationError,
    is_permanent_error,
)
from .queue import QueueJob, QueueService, WorkerId
from .state import ExecutionStateManager
from .steps import StepRunner
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


def _count(results: Dict[int, StepResult]) -> tuple[int, int]:
    completed = sum(1 for r in results.values() if r.success)
    return completed, len(results) - completed


def _failure_summary(steps: Sequence[Step], results: Dict[int, StepResult]) -> str:
    names = {s.step_order: s.name for s in steps}
    failures = [
        f"step {order} ({names.get(order, order)}): {result.error}"
        for order, result in sorted(results.items())
        if not result.success
    ]
    return f"{len(failures)} step(s) failed: " + "; ".join(failures)


class WorkflowExecutor:
    """Top-level orchestrator for workflow executions."""

    def __init__(
        self,
        state_manager: ExecutionStateManager,
        step_runner: StepRunner,
        queue_service: Optional[QueueService] = None,
        config: Optional[ExecutorConfig] = None,
    ) -> None:
        self.config = config or ExecutorConfig()
        if self.config.max_concurrency != 1:
            raise ConfigurationError(
                "Only sequential step execution (max_concurrency=1) is supported"
            )
        self.state = state_manager
        self.step_runner = step_runner
        self.queue_service = queue_service

    @property
    def queue_enabled(self) -> bool:
        return self.config.use_queue and self.queue_service is not None

    # ------------------------------------------------------------------
    # Synchronous path
    async def execute_workflow(
        self,
        workflow: Workflow,
        user_id: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecutionResult:
        """Create an execution for ``workflow`` and run it to the end."""
        execution = await self.state.create_execution(
            workflow.id,
            user_id,
            total_steps=len(workflow.steps),
            metadata={"workflow_name": workflow.name},
        )
        return await self.run_execution(execution.id, workflow.steps, parameters)

    async def run_execution(
        self,
        execution_id: str,
        steps: Sequence[Step],
        parameters: Optional[Dict[str, Any]] = None,
        continue_on_failure: Optional[bool] = None,
    ) -> WorkflowExecutionResult:
        """Run the steps of a PENDING execution in ascending ``step_order``.

        Steps that already succeeded in an earlier, paused run are skipped.
        """
        started = time.monotonic()
        if continue_on_failure is None:
            continue_on_failure = self.config.continue_on_failure
        ordered: List[Step] = sorted(steps, key=lambda s: s.step_order)

        execution = await self.state.get_execution(execution_id)
        results: Dict[int, StepResult] = {
            order: result for order, result in execution.step_results.items() if result.success
        }
        context = ExecutionContext(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            user_id=execution.user_id,
            parameters=parameters or {},
            step_results=dict(results),
        )

        await self.state.update_status(execution_id, ExecutionStatus.RUNNING)
        logger.info(f"Running execution {execution_id} ({len(ordered)} steps)")

        try:
            for index, step in enumerate(ordered):
                if step.step_order in results:
                    continue
                current = await self.state.update_progress(
                    execution_id, current_step=step.step_order
                )
                if current.status == ExecutionStatus.PAUSED:
                    raise CancellationError("Execution paused by user")
                if current.status == ExecutionStatus.CANCELLED:
                    raise CancellationError("Execution cancelled by user")

                result = await self._execute_step_with_retry(step, context)
                results[step.step_order] = result
                context.step_results[step.step_order] = result

                if not result.success and not continue_on_failure:
                    for skipped in ordered[index + 1:]:
                        results[skipped.step_order] = StepResult(
                            success=False,
                            error=f"Skipped because step {step.step_order} failed",
                            retryable=False,
                            metadata={"skipped": True},
                        )

                completed, failed = _count(results)
                await self.state.update_progress(
                    execution_id,
                    completed_steps=completed,
                    failed_steps=failed,
                    step_results=results,
                )
                if not result.success and not continue_on_failure:
                    break

            completed, failed = _count(results)
            if failed == 0:
                status, error = ExecutionStatus.COMPLETED, None
                outcome = {"results": {str(k): v.data for k, v in sorted(results.items())}}
            else:
                status, error = ExecutionStatus.FAILED, _failure_summary(ordered, results)
                outcome = None
            try:
                final = await self.state.update_status(
                    execution_id,
                    status,
                    completed_steps=completed,
                    failed_steps=failed,
                    step_results=results,
                    error=error,
                    result=outcome,
                )
            except InvalidTransitionError:
                # Paused or cancelled while the last step was running.
                final = await self.state.get_execution(execution_id)
                logger.info(
                    f"Execution {execution_id} finished its steps while {final.status.value}"
                )
            return self._build_result(final, started, error)

        except CancellationError as e:
            logger.info(f"Execution {execution_id} stopped: {e.message}")
            final = await self.state.get_execution(execution_id)
            return self._build_result(final, started, str(e))

        except Exception as e:
            logger.exception(f"Execution {execution_id} failed")
            error = str(e) or type(e).__name__
            completed, _ = _count(results)
            try:
                final = await self.state.update_status(
                    execution_id,
                    ExecutionStatus.FAILED,
                    completed_steps=completed,
                    failed_steps=len(ordered) - completed,
                    step_results=results,
                    error=error,
                )
            except Exception as record_error:
                logger.error(
                    f"Failed to record failure of execution {execution_id}: {record_error}"
                )
                final = await self.state.get_execution_state(execution_id)
            if final is None:
                raise
            return self._build_result(final, started, error)

    async def _execute_step_with_retry(
        self, step: Step, context: ExecutionContext
    ) -> StepResult:
        """Run one step, re-running retryable failures with backoff."""
        max_retries = self.config.max_retries
        result = await self.step_runner.run_step(step, context)
        for attempt in range(max_retries):
            if result.success or not result.retryable or is_permanent_error(result.error):
                break
            delay = compute_backoff(attempt, base=self.config.retry_backoff_base)
            logger.warning(
                f"Step {step.step_order} ({step.name}) failed, retry "
                f"{attempt + 1}/{max_retries} in {delay:.2f}s: {result.error}"
            )
            await asyncio.sleep(delay)
            result = await self.step_runner.run_step(step, context)
        return result

    @staticmethod
    def _build_result(
        execution: WorkflowExecution, started: float, error: Optional[str]
    ) -> WorkflowExecutionResult:
        return WorkflowExecutionResult(
            success=execution.status == ExecutionStatus.COMPLETED,
            execution_id=execution.id,
            status=execution.status,
            total_steps=execution.total_steps,
            completed_steps=execution.completed_steps,
            failed_steps=execution.failed_steps,
            total_duration=(time.monotonic() - started) * 1000,
            results=dict(execution.step_results),
            error=error or execution.error,
            metadata=dict(execution.metadata),
            queue_job_id=execution.queue_job_id,
        )

    # ------------------------------------------------------------------
    # Queued path
    def _require_queue(self) -> QueueService:
        if not self.queue_enabled:
            raise ConfigurationError("Queue execution is disabled")
        return self.queue_service

    async def _enqueue(
        self,
        execution: WorkflowExecution,
        steps: Sequence[Step],
        parameters: Optional[Dict[str, Any]],
        delay: Optional[int] = None,
    ) -> SubmittedExecution:
        queue = self._require_queue()
        payload = WorkflowJobPayload(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            user_id=execution.user_id,
            steps=list(steps),
            parameters=parameters or {},
            config={
                "continueOnFailure": self.config.continue_on_failure,
                "maxRetries": self.config.max_retries,
            },
        )
        submitted = await queue.submit_job(
            QueueJob(
                queue_name=self.config.queue_name,
                name=DEFAULT_JOB_NAME,
                data=payload.model_dump(mode="json", by_alias=True),
                retry_delay=self.config.queue_retry_delay,
                timeout=self.config.timeout,
                delay=delay,
                job_key=f"{execution.id}:{execution.revision}",
            )
        )
        await self.state.set_queue_job(execution.id, submitted.job_id, submitted.queue_name)
        return SubmittedExecution(
            execution_id=execution.id,
            queue_job_id=submitted.job_id,
            queue_name=submitted.queue_name,
        )

    async def submit_workflow_for_execution(
        self,
        workflow: Workflow,
        user_id: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> SubmittedExecution:
        """Create an execution and hand it to the queue workers."""
        self._require_queue()
        execution = await self.state.create_execution(
            workflow.id,
            user_id,
            total_steps=len(workflow.steps),
            metadata={"workflow_name": workflow.name, "queued": True},
        )
        try:
            submitted = await self._enqueue(execution, workflow.steps, parameters)
        except Exception as e:
            logger.error(f"Failed to submit execution {execution.id} to queue: {e}")
            await self.state.update_status(
                execution.id,
                ExecutionStatus.FAILED,
                failed_steps=execution.total_steps,
                error=f"Failed to enqueue execution: {e}",
            )
            raise
        logger.info(
            f"Execution {execution.id} submitted as job {submitted.queue_job_id} "
            f"on {submitted.queue_name}"
        )
        return submitted

    async def handle_job(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Queue handler: run the execution described by a job payload."""
        payload = WorkflowJobPayload.model_validate(data)
        execution = await self.state.get_execution_state(payload.execution_id)
        if execution is None:
            logger.warning(f"Skipping job for unknown execution {payload.execution_id}")
            return {"skipped": True, "reason": "execution not found"}
        if execution.status == ExecutionStatus.RUNNING:
            # Only one job exists per execution, so an earlier delivery of
            # this job died mid-run.
            await self._fail_interrupted(execution.id, "TIMEOUT: previous job attempt was lost")
            return {"skipped": True, "reason": "execution was interrupted"}
        if execution.status != ExecutionStatus.PENDING:
            logger.info(
                f"Skipping job for execution {execution.id} in status {execution.status.value}"
            )
            return {"skipped": True, "reason": f"execution is {execution.status.value}"}

        continue_on_failure = payload.config.get("continueOnFailure")
        try:
            result = await self.run_execution(
                payload.execution_id,
                payload.steps,
                payload.parameters,
                continue_on_failure=continue_on_failure,
            )
        except asyncio.CancelledError:
            await self._fail_interrupted(
                payload.execution_id, "TIMEOUT: job stopped before the run finished"
            )
            raise
        return result.model_dump(mode="json", include={"execution_id", "status", "success"})

    async def _fail_interrupted(self, execution_id: str, error: str) -> None:
        """Force a RUNNING execution whose job was cut short to FAILED."""
        execution = await self.state.get_execution_state(execution_id)
        if execution is None or execution.status != ExecutionStatus.RUNNING:
            return
        try:
            await self.state.update_status(
                execution_id,
                ExecutionStatus.FAILED,
                failed_steps=execution.total_steps - execution.completed_steps,
                error=error,
            )
        except InvalidTransitionError:
            # Paused or cancelled in the meantime.
            return
        logger.warning(f"Execution {execution_id} interrupted: {error}")

    async def register_worker(self, team_size: Optional[int] = None) -> WorkerId:
        queue = self._require_queue()
        return await queue.register_worker(
            self.config.queue_name,
            self.handle_job,
            team_size=team_size,
            timeout=self.config.timeout,
        )

    # ------------------------------------------------------------------
    # Control
    async def pause_execution(self, execution_id: str, paused_by: str) -> WorkflowExecution:
        return await self.state.pause_execution(execution_id, paused_by)

    async def resume_execution(
        self,
        execution_id: str,
        resumed_by: str,
        steps: Optional[Sequence[Step]] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> WorkflowExecution:
        """Move a paused execution back to PENDING.

        With ``steps`` and queueing enabled, the run is re-enqueued and
        continues after the last successful step.
        """
        execution = await self.state.resume_execution(execution_id, resumed_by)
        if steps and self.queue_enabled:
            await self._enqueue(execution, steps, parameters)
            execution = await self.state.get_execution(execution_id)
        return execution

    async def cancel_execution(self, execution_id: str, cancelled_by: str) -> WorkflowExecution:
        return await self.state.cancel_execution(execution_id, cancelled_by)

    async def retry_execution(
        self,
        execution_id: str,
        steps: Sequence[Step],
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Union[WorkflowExecutionResult, SubmittedExecution]:
        """Retry a failed execution from scratch.

        Raises:
            ValidationError: the execution is not eligible for retry.
        """
        if not await self.state.should_retry(execution_id):
            raise ValidationError(f"Execution {execution_id} is not eligible for retry")
        retrying = await self.state.schedule_retry(execution_id)
        execution = await self.state.reset_execution_for_retry(execution_id)
        if self.queue_enabled:
            delay_ms = 0
            if retrying.retry_after is not None:
                delay_ms = max(int((retrying.retry_after - utcnow()).total_seconds() * 1000), 0)
            return await self._enqueue(execution, steps, parameters, delay=delay_ms)
        return await self.run_execution(execution_id, steps, parameters)

    # ------------------------------------------------------------------
    # Monitoring
    async def get_execution_status(self, execution_id: str) -> Optional[WorkflowExecution]:
        return await self.state.get_execution_state(execution_id)

    async def get_execution_progress(self, execution_id: str) -> Optional[ExecutionProgress]:
        return await self.state.get_execution_progress(execution_id)

    async def get_execution_logs(
        self, execution_id: str, limit: Optional[int] = None
    ) -> List[ExecutionLogEntry]:
        return await self.state.get_execution_logs(execution_id, limit=limit)

    async def get_execution_metrics(
        self,
        workflow_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ExecutionMetrics:
        return await self.state.get_execution_metrics(workflow_id=workflow_id, user_id=user_id)

    async def get_stuck_executions(self) -> List[WorkflowExecution]:
        return await self.state.get_stuck_executions(self.config.stuck_execution_timeout)

    async def get_retryable_executions(self) -> List[WorkflowExecution]:
        return await self.state.get_retryable_executions()

    async def get_paused_executions(self) -> List[WorkflowExecution]:
        return await self.state.get_paused_executions()

    async def cleanup_old_executions(self, retention_days: int = 30) -> int:
        return await self.state.cleanup_old_executions(retention_days)
