"""Core data contracts for the apiflow workflow engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .constants import CUSTOM_ACTIONS, TRANSFORM_OPERATIONS


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    PAUSED = "PAUSED"
    RETRYING = "RETRYING"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class StepKind(str, Enum):
    API_CALL = "API_CALL"
    DATA_TRANSFORM = "DATA_TRANSFORM"
    CONDITION = "CONDITION"
    CUSTOM = "CUSTOM"


class DefinitionModel(BaseModel):
    """Base for externally supplied definitions (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RetryConfig(DefinitionModel):
    """Per-step retry policy used inside the step executors."""

    max_retries: int = Field(default=3, ge=0, le=10)
    retry_delay: int = Field(default=1000, ge=0, description="Milliseconds")


class Step(DefinitionModel):
    """One ordered unit of a workflow definition.

    ``kind`` is classified once, when the model is built, so that dispatch
    never has to sniff the step shape again.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    step_order: int = Field(ge=1)
    name: str = ""
    kind: Optional[StepKind] = None
    api_connection_id: Optional[str] = None
    action: Optional[str] = None
    method: Optional[str] = None
    path: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    retry_config: RetryConfig = Field(default_factory=RetryConfig)
    timeout: Optional[int] = Field(default=None, gt=0, description="Milliseconds")

    @model_validator(mode="after")
    def _classify(self) -> "Step":
        if self.kind is None:
            self.kind = classify_step(self)
        if not self.name:
            self.name = f"Step {self.step_order}"
        return self


def classify_step(step: Step) -> StepKind:
    """Determine the executor kind for ``step`` from its shape."""
    if step.api_connection_id:
        return StepKind.API_CALL
    params = step.parameters or {}
    if params.get("operation") in TRANSFORM_OPERATIONS:
        return StepKind.DATA_TRANSFORM
    if params.get("condition"):
        return StepKind.CONDITION
    if step.action in CUSTOM_ACTIONS:
        return StepKind.CUSTOM
    return StepKind.API_CALL


class Workflow(DefinitionModel):
    """Read-only workflow definition handed to the executor."""

    id: str
    name: str = ""
    steps: List[Step] = Field(default_factory=list)


class StepResult(BaseModel):
    """Outcome of one step attempt."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    duration: float = 0.0
    retry_count: int = 0
    retryable: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExecutionContext(BaseModel):
    """Run-scoped data shared between the steps of one execution."""

    execution_id: str
    workflow_id: str
    user_id: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    step_results: Dict[int, StepResult] = Field(default_factory=dict)
    global_variables: Dict[str, Any] = Field(default_factory=dict)


class WorkflowExecution(BaseModel):
    """Persisted state of one workflow run."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    user_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    attempt_count: int = 0
    max_attempts: int = 3
    retry_after: Optional[datetime] = None
    queue_job_id: Optional[str] = None
    queue_name: Optional[str] = None
    paused_at: Optional[datetime] = None
    paused_by: Optional[str] = None
    resumed_at: Optional[datetime] = None
    resumed_by: Optional[str] = None
    current_step: Optional[int] = None
    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    execution_time: Optional[int] = None
    step_results: Dict[int, StepResult] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    revision: int = 0


class ExecutionProgress(BaseModel):
    current_step: int
    total_steps: int
    completed_steps: int
    failed_steps: int
    progress: int = Field(description="0-100 percentage")
    estimated_time_remaining: Optional[float] = Field(
        default=None, description="Milliseconds"
    )


class ExecutionMetrics(BaseModel):
    total_executions: int
    successful_executions: int
    failed_executions: int
    cancelled_executions: int
    average_execution_time: float
    success_rate: float
    recent_executions: List[WorkflowExecution] = Field(default_factory=list)


class ExecutionLogEntry(BaseModel):
    """Structured log line attached to one execution and step."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str
    step_order: Optional[int] = None
    step_name: Optional[str] = None
    level: str = "INFO"
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)


class WorkflowExecutionResult(BaseModel):
    """Summary returned to callers of the synchronous execution path."""

    success: bool
    execution_id: str
    status: ExecutionStatus
    total_steps: int
    completed_steps: int
    failed_steps: int
    total_duration: float
    results: Dict[int, StepResult] = Field(default_factory=dict)
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    queue_job_id: Optional[str] = None


class SubmittedExecution(BaseModel):
    execution_id: str
    queue_job_id: str
    queue_name: str


class WorkflowJobPayload(DefinitionModel):
    """Job body for queued executions. Contains no secret material."""

    execution_id: str
    workflow_id: str
    user_id: str
    steps: List[Step]
    parameters: Dict[str, Any] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)
