"""CONDITION step executor. The outcome is advisory: steps still run in order."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List

from ..contracts import ExecutionContext, Step, StepKind, StepResult
from .base import StepExecutor, elapsed_ms
from .substitution import is_missing, lookup_path, resolve_reference

logger = logging.getLogger(__name__)

OPERATORS = frozenset(
    {
        "equals",
        "not_equals",
        "greater_than",
        "less_than",
        "contains",
        "exists",
        "not_exists",
    }
)


def compare(field_value: Any, operator: str, value: Any) -> bool:
    """Apply one comparator. Unknown operators evaluate to ``False``."""
    if operator == "equals":
        return field_value == value
    if operator == "not_equals":
        return field_value != value
    if operator in ("greater_than", "less_than"):
        if field_value is None or value is None:
            return False
        try:
            if operator == "greater_than":
                return field_value > value
            return field_value < value
        except TypeError:
            return False
    if operator == "contains":
        return str(value) in str(field_value)
    if operator == "exists":
        return field_value is not None
    if operator == "not_exists":
        return field_value is None
    return False


def validate_comparator(condition: Any, label: str = "condition") -> List[str]:
    if not isinstance(condition, dict):
        return [f"{label} must be an object with field, operator and value"]
    errors = []
    if not condition.get("field"):
        errors.append(f"{label}.field is required")
    if condition.get("operator") not in OPERATORS:
        errors.append(
            f"{label}.operator must be one of {', '.join(sorted(OPERATORS))}"
        )
    return errors


class ConditionExecutor(StepExecutor):
    kind = StepKind.CONDITION

    def validate(self, step: Step) -> List[str]:
        condition = step.parameters.get("condition")
        if not condition:
            return ["Condition step requires parameters.condition"]
        return validate_comparator(condition)

    def _field_value(self, field: str, context: ExecutionContext) -> Any:
        scope = field.split(".", 1)[0]
        if scope == "step":
            # step.<order>.<field> reads from the data of that step's result
            parts = field.split(".")
            if len(parts) >= 3 and parts[1].isdigit():
                result = context.step_results.get(int(parts[1]))
                value = lookup_path(result.data if result else None, parts[2:])
                return None if is_missing(value) else value
        if scope in ("step", "global", "param"):
            value = resolve_reference(field, context)
            return None if is_missing(value) else value
        return field

    async def execute(self, step: Step, context: ExecutionContext) -> StepResult:
        started = time.monotonic()
        condition: Dict[str, Any] = step.parameters["condition"]
        field_value = self._field_value(str(condition["field"]), context)
        outcome = compare(field_value, condition["operator"], condition.get("value"))
        params = step.parameters
        next_step = params.get("trueStep", params.get("true_step")) if outcome else params.get(
            "falseStep", params.get("false_step")
        )
        logger.info(f"Condition step {step.name!r} evaluated to {outcome}")
        return StepResult(
            success=True,
            data={"condition": outcome, "next_step": next_step},
            duration=elapsed_ms(started),
        )
