"""CUSTOM step executor for built-in actions."""

from __future__ import annotations

import logging
import time
from typing import List

from ..contracts import ExecutionContext, Step, StepKind, StepResult
from ..utils.retry import linear_backoff, sleep_ms
from .base import StepExecutor, elapsed_ms
from .substitution import substitute_variables

logger = logging.getLogger(__name__)

DEFAULT_WAIT_MS = 1000


class CustomExecutor(StepExecutor):
    """Runs ``noop``, ``wait``, ``log`` and ``flaky``.

    Any other action succeeds with a descriptive message.
    """

    kind = StepKind.CUSTOM

    def validate(self, step: Step) -> List[str]:
        errors = []
        if not step.action:
            errors.append("Custom step requires an action")
        if step.action == "wait":
            wait_time = step.parameters.get("waitTime", DEFAULT_WAIT_MS)
            if not isinstance(wait_time, (int, float)) or wait_time < 0:
                errors.append("parameters.waitTime must be a non-negative number")
        if step.action == "flaky":
            fail_count = step.parameters.get("failCount", 0)
            if not isinstance(fail_count, int) or fail_count < 0:
                errors.append("parameters.failCount must be a non-negative integer")
        return errors

    async def execute(self, step: Step, context: ExecutionContext) -> StepResult:
        started = time.monotonic()
        action = step.action
        if action == "noop":
            data = {"message": "No operation performed"}
        elif action == "wait":
            wait_time = step.parameters.get("waitTime", DEFAULT_WAIT_MS)
            await sleep_ms(wait_time)
            data = {"message": f"Waited for {wait_time}ms"}
        elif action == "log":
            message = str(substitute_variables(step.parameters.get("message", ""), context))
            logger.info(f"[{context.execution_id}] {message}")
            data = {"message": message}
        elif action == "flaky":
            return await self._flaky(step, started)
        else:
            data = {"message": f"Custom action: {action}"}
        return StepResult(success=True, data=data, duration=elapsed_ms(started))

    async def _flaky(self, step: Step, started: float) -> StepResult:
        """Fail ``failCount`` times, retrying with the step's retry config."""
        fail_count = int(step.parameters.get("failCount", 0))
        retry = step.retry_config
        error = None
        for attempt in range(retry.max_retries + 1):
            if attempt >= fail_count:
                return StepResult(
                    success=True,
                    data={"message": f"Succeeded after {attempt} failures"},
                    duration=elapsed_ms(started),
                    retry_count=attempt,
                )
            error = f"Simulated failure {attempt + 1} of {fail_count}"
            logger.warning(f"Flaky step {step.name!r}: {error}")
            if attempt < retry.max_retries:
                await sleep_ms(linear_backoff(attempt + 1, retry.retry_delay))
        return StepResult(
            success=False,
            error=error,
            duration=elapsed_ms(started),
            retry_count=retry.max_retries,
        )
