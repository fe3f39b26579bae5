"""Durable job queue: models, stores and the queue service."""

from __future__ import annotations

from .models import (
    Job,
    JobState,
    JobStatus,
    QueueHealth,
    QueueJob,
    QueueMetrics,
    SubmittedJob,
    WorkerId,
    WorkerStats,
)
from .service import QueueService, WorkerStatsRegistry, sanitize_job_data
from .stores import BaseJobStore, InMemoryJobStore, get_job_store

__all__ = [
    "BaseJobStore",
    "InMemoryJobStore",
    "Job",
    "JobState",
    "JobStatus",
    "QueueHealth",
    "QueueJob",
    "QueueMetrics",
    "QueueService",
    "SubmittedJob",
    "WorkerId",
    "WorkerStats",
    "WorkerStatsRegistry",
    "get_job_store",
    "sanitize_job_data",
]
