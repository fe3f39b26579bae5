"""Step runner: validates, dispatches and logs single steps."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, Optional

from ..contracts import ExecutionContext, ExecutionLogEntry, Step, StepKind, StepResult
from ..errors import ValidationError
from ..persistence import ExecutionRepository
from .base import StepExecutor, elapsed_ms

logger = logging.getLogger(__name__)


class StepRunner:
    """Dispatch steps to the executor registered for their kind.

    ``run_step`` never raises; every failure is reported through the
    returned :class:`StepResult`.
    """

    def __init__(
        self,
        executors: Iterable[StepExecutor] = (),
        repository: Optional[ExecutionRepository] = None,
    ) -> None:
        self.executors: Dict[StepKind, StepExecutor] = {}
        self.repository = repository
        for executor in executors:
            self.register_executor(executor)

    def register_executor(self, executor: StepExecutor) -> None:
        self.executors[executor.kind] = executor

    async def run_step(self, step: Step, context: ExecutionContext) -> StepResult:
        started = time.monotonic()
        executor = self.executors.get(step.kind)
        if executor is None:
            error = ValidationError(f"No executor registered for step kind {step.kind}")
            return StepResult(
                success=False, error=str(error), duration=0.0, retryable=False
            )

        problems = executor.validate(step)
        if problems:
            error = ValidationError(
                f"Invalid step configuration for {step.kind.value} "
                f"'{step.name}': {'; '.join(problems)}"
            )
            await self._log(context, step, "ERROR", str(error))
            return StepResult(
                success=False, error=str(error), duration=0.0, retryable=False
            )

        await self._log(context, step, "INFO", "Step execution started")
        try:
            if step.timeout:
                result = await asyncio.wait_for(
                    executor.execute(step, context), timeout=step.timeout / 1000
                )
            else:
                result = await executor.execute(step, context)
        except asyncio.TimeoutError:
            result = StepResult(
                success=False,
                error=f"TIMEOUT: Step timed out after {step.timeout}ms",
                duration=elapsed_ms(started),
            )
        except Exception as e:
            logger.exception(f"Step {step.step_order} ({step.name}) raised")
            result = StepResult(
                success=False,
                error=str(e) or type(e).__name__,
                duration=elapsed_ms(started),
                retryable=not isinstance(e, ValidationError),
            )

        if result.success:
            await self._log(
                context, step, "INFO", "Step completed successfully",
                {"duration": result.duration, "retry_count": result.retry_count},
            )
        else:
            await self._log(
                context, step, "ERROR", f"Step failed: {result.error}",
                {"duration": result.duration, "retry_count": result.retry_count},
            )
        return result

    async def _log(
        self,
        context: ExecutionContext,
        step: Step,
        level: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.repository is None:
            return
        entry = ExecutionLogEntry(
            execution_id=context.execution_id,
            step_order=step.step_order,
            step_name=step.name,
            level=level,
            message=message,
            data=data,
        )
        try:
            await self.repository.add_log_entry(entry)
        except Exception as e:
            logger.error(f"Failed to log step execution: {e}")
