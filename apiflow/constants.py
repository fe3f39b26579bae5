"""Shared constants for the apiflow engine."""

from __future__ import annotations

# Error markers that make an execution ineligible for retry.
PERMANENT_ERRORS = (
    "INVALID_API_KEY",
    "UNAUTHORIZED",
    "FORBIDDEN",
    "NOT_FOUND",
    "VALIDATION_ERROR",
    "INVALID_WORKFLOW",
    "USER_CANCELLED",
)

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH")

CUSTOM_ACTIONS = frozenset({"noop", "wait", "log", "flaky"})

TRANSFORM_OPERATIONS = frozenset({"map", "filter", "aggregate"})

SENSITIVE_FIELDS = ("password", "token", "secret", "key", "credential")

DEFAULT_QUEUE_NAME = "workflow-execution"
DEFAULT_JOB_NAME = "execute-workflow"
DEFAULT_API_KEY_HEADER = "X-API-Key"
