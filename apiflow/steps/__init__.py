"""Step executors and the step runner."""

from __future__ import annotations

from typing import Optional

import httpx

from ..collaborators import ConnectionDirectory, SecretsProvider
from ..persistence import ExecutionRepository
from .api_call import ApiCallExecutor
from .base import StepExecutor
from .condition import ConditionExecutor
from .custom import CustomExecutor
from .runner import StepRunner
from .substitution import substitute_variables
from .transform import DataTransformExecutor


def build_step_runner(
    connections: ConnectionDirectory,
    secrets: SecretsProvider,
    repository: Optional[ExecutionRepository] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> StepRunner:
    """Create a runner with every built-in executor registered."""
    return StepRunner(
        [
            ApiCallExecutor(connections, secrets, http_client=http_client),
            DataTransformExecutor(),
            ConditionExecutor(),
            CustomExecutor(),
        ],
        repository=repository,
    )


__all__ = [
    "ApiCallExecutor",
    "ConditionExecutor",
    "CustomExecutor",
    "DataTransformExecutor",
    "StepExecutor",
    "StepRunner",
    "build_step_runner",
    "substitute_variables",
]
