"""apiflow: durable execution of multi-step API workflows."""

from .contracts import (
    ExecutionStatus,
    Step,
    StepKind,
    StepResult,
    Workflow,
    WorkflowExecution,
    WorkflowExecutionResult,
)
from .engine import Engine, build_engine
from .executor import WorkflowExecutor
from .persistence import get_repository
from .queue import QueueService, get_job_store
from .state import ExecutionStateManager
from .steps import StepRunner

__version__ = "0.1.0"
__all__ = [
    "Engine",
    "ExecutionStateManager",
    "ExecutionStatus",
    "QueueService",
    "Step",
    "StepKind",
    "StepResult",
    "StepRunner",
    "Workflow",
    "WorkflowExecution",
    "WorkflowExecutionResult",
    "WorkflowExecutor",
    "build_engine",
    "get_job_store",
    "get_repository",
]
