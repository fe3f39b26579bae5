"""Step executor interface."""

from __future__ import annotations

import abc
import time
from typing import List

from ..contracts import ExecutionContext, Step, StepKind, StepResult


class StepExecutor(metaclass=abc.ABCMeta):
    """Executes exactly one kind of step."""

    kind: StepKind

    @abc.abstractmethod
    def validate(self, step: Step) -> List[str]:
        """Return the configuration problems of ``step`` (empty when valid)."""
        raise NotImplementedError

    @abc.abstractmethod
    async def execute(self, step: Step, context: ExecutionContext) -> StepResult:
        """Run ``step``. Failures are returned, not raised."""
        raise NotImplementedError


def elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000
