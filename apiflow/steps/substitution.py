"""Placeholder substitution for step parameters.

Supported placeholders::

    {{step.<order>.<path>}}   dotted path into a recorded StepResult
    {{global.<name>}}         execution global variable
    {{param.<name>}}          execution parameter

Placeholders that cannot be resolved are left untouched.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Sequence

from ..contracts import ExecutionContext

PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")

_MISSING = object()


def lookup_path(value: Any, path: Sequence[str]) -> Any:
    """Walk ``path`` through nested mappings, lists and models."""
    current = value
    for part in path:
        if current is None:
            return _MISSING
        if hasattr(current, "model_dump"):
            current = current.model_dump()
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def resolve_reference(expression: str, context: ExecutionContext) -> Any:
    """Resolve one ``step.``/``global.``/``param.`` expression.

    Returns the module-private sentinel when the reference is unknown, so
    that callers can tell a missing value from an explicit ``None``.
    """
    parts = expression.strip().split(".")
    scope, rest = parts[0], parts[1:]
    if scope == "step" and len(rest) >= 2 and rest[0].isdigit():
        result = context.step_results.get(int(rest[0]))
        if result is None:
            return _MISSING
        return lookup_path(result, rest[1:])
    if scope == "global" and rest:
        return lookup_path(context.global_variables, rest)
    if scope == "param" and rest:
        return lookup_path(context.parameters, rest)
    return _MISSING


def is_missing(value: Any) -> bool:
    return value is _MISSING


def render_string(template: str, context: ExecutionContext) -> Any:
    """Substitute placeholders in ``template``.

    A template made of a single placeholder yields the referenced value
    unchanged, so structured data can be passed between steps.
    """
    whole = PLACEHOLDER.fullmatch(template.strip())
    if whole:
        value = resolve_reference(whole.group(1), context)
        if value is _MISSING or value is None:
            return template
        return value

    def replace(match: re.Match) -> str:
        value = resolve_reference(match.group(1), context)
        if value is _MISSING or value is None:
            return match.group(0)
        return str(value)

    return PLACEHOLDER.sub(replace, template)


def substitute_variables(value: Any, context: ExecutionContext) -> Any:
    """Recursively substitute placeholders in every string of ``value``."""
    if isinstance(value, str):
        return render_string(value, context)
    if isinstance(value, Mapping):
        return {k: substitute_variables(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_variables(v, context) for v in value]
    return value


def render_item_template(template: Any, item: Any) -> Any:
    """Render ``{{field}}`` placeholders against one data item as a string."""
    if not isinstance(template, str):
        return template

    def replace(match: re.Match) -> str:
        found = lookup_path(item, match.group(1).strip().split("."))
        if found is _MISSING or found is None:
            return match.group(0)
        return str(found)

    return PLACEHOLDER.sub(replace, template)
