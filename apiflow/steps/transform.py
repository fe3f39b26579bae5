"""DATA_TRANSFORM step executor: map, filter and aggregate."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List

from ..contracts import ExecutionContext, Step, StepKind, StepResult
from ..errors import ValidationError
from .base import StepExecutor, elapsed_ms
from .condition import compare
from .substitution import render_item_template

logger = logging.getLogger(__name__)

AGGREGATES = ("sum", "count", "average")


class DataTransformExecutor(StepExecutor):
    kind = StepKind.DATA_TRANSFORM

    def validate(self, step: Step) -> List[str]:
        errors = []
        for key in ("operation", "input", "output"):
            if step.parameters.get(key) is None:
                errors.append(f"Transform step requires parameters.{key}")
        return errors

    async def execute(self, step: Step, context: ExecutionContext) -> StepResult:
        started = time.monotonic()
        operation = step.parameters.get("operation")
        source = step.parameters.get("input") or {}
        output = step.parameters.get("output") or {}
        try:
            if operation == "map":
                data = self._map(self._input(source, context), output)
            elif operation == "filter":
                data = self._filter(self._input(source, context), output)
            elif operation == "aggregate":
                data = self._aggregate(self._input(source, context), output)
            else:
                raise ValidationError(f"Unsupported transform operation: {operation}")
        except Exception as e:
            logger.error(f"Transform step {step.name!r} failed: {e}")
            return StepResult(
                success=False,
                error=str(e),
                duration=elapsed_ms(started),
                retryable=False,
            )
        logger.info(f"Transform step {step.name!r} completed ({operation})")
        return StepResult(success=True, data=data, duration=elapsed_ms(started))

    @staticmethod
    def _input(source: Dict[str, Any], context: ExecutionContext) -> List[Any]:
        if source.get("step") is not None:
            result = context.step_results.get(int(source["step"]))
            data = result.data if result else None
        elif source.get("global") is not None:
            data = context.global_variables.get(source["global"])
        else:
            data = source.get("data")
        if data is None:
            return []
        if not isinstance(data, list):
            raise ValidationError(
                f"Transform input must be a list, got {type(data).__name__}"
            )
        return data

    @staticmethod
    def _map(items: List[Any], output: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [
            {key: render_item_template(template, item) for key, template in output.items()}
            for item in items
        ]

    @staticmethod
    def _filter(items: List[Any], output: Dict[str, Any]) -> List[Any]:
        condition = output.get("condition") or {}
        field = condition.get("field")
        return [
            item
            for item in items
            if isinstance(item, dict)
            and compare(item.get(field), condition.get("operator"), condition.get("value"))
        ]

    @staticmethod
    def _aggregate(items: List[Any], output: Dict[str, Any]) -> Any:
        operation = output.get("operation")
        field = output.get("field")
        if operation == "count":
            return len(items)
        if operation not in AGGREGATES:
            raise ValidationError(f"Unsupported aggregate operation: {operation}")
        total = sum((item.get(field) or 0) for item in items if isinstance(item, dict))
        if operation == "sum":
            return total
        return total / len(items) if items else 0
