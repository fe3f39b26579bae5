"""Data models for the durable job queue."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, NewType, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..contracts import utcnow

WorkerId = NewType("WorkerId", str)


class JobState(str, Enum):
    CREATED = "created"
    RETRY = "retry"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"


FINISHED_JOB_STATES = frozenset(
    {JobState.COMPLETED, JobState.CANCELLED, JobState.EXPIRED, JobState.FAILED}
)
FETCHABLE_JOB_STATES = frozenset({JobState.CREATED, JobState.RETRY})


class JobOptions(BaseModel):
    """Options the queue service hands to the store for one job."""

    retry_limit: int
    retry_delay: int
    timeout: int
    priority: int = 0
    start_after: Optional[datetime] = None
    expire_in: Optional[int] = None
    key: Optional[str] = None


class Job(BaseModel):
    """A durable unit of work owned by the job store."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    queue_name: str
    name: str
    data: Any = None
    state: JobState = JobState.CREATED
    priority: int = 0
    retry_limit: int = 0
    retry_count: int = 0
    retry_delay: int = 0
    timeout: int = 300000
    expire_in: Optional[int] = None
    key: Optional[str] = None
    start_after: datetime = Field(default_factory=utcnow)
    created_on: datetime = Field(default_factory=utcnow)
    started_on: Optional[datetime] = None
    completed_on: Optional[datetime] = None
    failed_on: Optional[datetime] = None
    output: Any = None


class QueueJob(BaseModel):
    """A job submission as accepted by :class:`QueueService`.

    Durations are milliseconds.
    """

    model_config = ConfigDict(validate_assignment=True)

    queue_name: str = Field(min_length=1)
    name: str = Field(min_length=1)
    data: Any
    retry_limit: Optional[int] = Field(default=None, ge=0, le=10)
    retry_delay: Optional[int] = Field(default=None, ge=100, le=300000)
    timeout: Optional[int] = Field(default=None, ge=1000, le=3600000)
    priority: Optional[int] = Field(default=None, ge=-10, le=10)
    delay: Optional[int] = Field(default=None, ge=0, le=86400000)
    expire_in: Optional[int] = Field(default=None, ge=1000, le=86400000)
    job_key: Optional[str] = None

    @field_validator("queue_name", "name")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("data")
    @classmethod
    def _data_present(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("Job data is required")
        return value


class SubmittedJob(BaseModel):
    queue_name: str
    job_id: str


class JobStatus(BaseModel):
    """Normalized view of a job, independent of the store implementation."""

    id: str
    queue_name: str
    name: str
    data: Any = None
    state: JobState
    retry_limit: Optional[int] = None
    retry_count: Optional[int] = None
    start_after: Optional[datetime] = None
    expire_in: Optional[int] = None
    output: Any = None
    created_on: datetime
    started_on: Optional[datetime] = None
    completed_on: Optional[datetime] = None
    failed_on: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatus":
        return cls(
            id=job.id,
            queue_name=job.queue_name,
            name=job.name,
            data=job.data,
            state=job.state,
            retry_limit=job.retry_limit,
            retry_count=job.retry_count,
            start_after=job.start_after,
            expire_in=job.expire_in,
            output=job.output,
            created_on=job.created_on,
            started_on=job.started_on,
            completed_on=job.completed_on,
            failed_on=job.failed_on,
        )


class WorkOptions(BaseModel):
    team_size: int = Field(ge=1)
    timeout: int
    retry_limit: Optional[int] = None
    poll_interval: int = 200


class WorkerStats(BaseModel):
    worker_id: str
    queue_name: str
    active_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    last_activity: datetime = Field(default_factory=utcnow)
    running: bool = True


class QueueMetrics(BaseModel):
    queue_name: str
    total: int = 0
    created: int = 0
    completed: int = 0
    failed: int = 0
    retry: int = 0
    active: int = 0
    delayed: int = 0
    cancelled: int = 0
    expired: int = 0
    error_rate: float = 0.0
    health: str = "healthy"


class QueueHealth(BaseModel):
    status: str
    message: str
    active_jobs: int = 0
    queued_jobs: int = 0
    failed_jobs: int = 0
    workers: int = 0
    uptime: float = 0.0
    last_health_check: datetime = Field(default_factory=utcnow)
    queues: Dict[str, str] = Field(default_factory=dict)
