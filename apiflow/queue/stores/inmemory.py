"""In-memory job store for testing and single-process deployments."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

from ...contracts import utcnow
from ..models import FETCHABLE_JOB_STATES, FINISHED_JOB_STATES, Job, JobState
from .base import BaseJobStore


class InMemoryJobStore(BaseJobStore):
    """Simple in-process job store. Jobs do not survive a restart.

    Finished jobs stay queryable for ``retention`` and are then dropped,
    releasing their singleton key; claiming scans the retained jobs.
    """

    def __init__(self, retention: timedelta = timedelta(hours=1)) -> None:
        super().__init__()
        self.retention = retention
        self._queues: Dict[str, List[str]] = {}
        self._jobs: Dict[str, Job] = {}
        self._keys: Dict[Tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def create_queue(self, queue_name: str) -> None:
        self._queues.setdefault(queue_name, [])

    async def list_queues(self) -> List[str]:
        return list(self._queues)

    async def _insert(self, job: Job) -> bool:
        async with self._lock:
            if job.key is not None:
                if (job.queue_name, job.key) in self._keys:
                    return False
                self._keys[(job.queue_name, job.key)] = job.id
            self._jobs[job.id] = job.model_copy(deep=True)
            self._queues.setdefault(job.queue_name, []).append(job.id)
        return True

    def _is_stale(self, job: Job, now) -> bool:
        if job.state not in FINISHED_JOB_STATES:
            return False
        finished = job.completed_on or job.failed_on
        return finished is not None and now - finished > self.retention

    def _drop(self, job: Job) -> None:
        del self._jobs[job.id]
        if job.key is not None and self._keys.get((job.queue_name, job.key)) == job.id:
            del self._keys[(job.queue_name, job.key)]

    async def _claim(self, queue_name: str) -> Optional[Job]:
        async with self._lock:
            now = utcnow()
            ready: List[Job] = []
            kept: List[str] = []
            for job_id in self._queues.get(queue_name, []):
                job = self._jobs[job_id]
                if self._is_stale(job, now):
                    self._drop(job)
                    continue
                kept.append(job_id)
                self._expire_stale(job, now)
                if job.state not in FETCHABLE_JOB_STATES:
                    continue
                if self._is_expired(job, now):
                    job.state = JobState.EXPIRED
                    job.failed_on = now
                    continue
                if job.start_after <= now:
                    ready.append(job)
            if queue_name in self._queues:
                self._queues[queue_name] = kept
            if not ready:
                return None
            job = min(ready, key=lambda j: (-j.priority, j.created_on))
            job.state = JobState.ACTIVE
            job.started_on = now
            return job.model_copy(deep=True)

    async def _load(self, queue_name: str, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None or job.queue_name != queue_name:
            return None
        return job.model_copy(deep=True)

    async def _update(
        self, queue_name: str, job_id: str, change: Callable[[Job], bool]
    ) -> Optional[Job]:
        async with self._lock:
            stored = self._jobs.get(job_id)
            if stored is None or stored.queue_name != queue_name:
                return None
            job = stored.model_copy(deep=True)
            if not change(job):
                return None
            self._jobs[job_id] = job
            return job.model_copy(deep=True)

    async def _list_jobs(self, queue_name: str) -> List[Job]:
        return [
            self._jobs[job_id].model_copy(deep=True)
            for job_id in self._queues.get(queue_name, [])
            if job_id in self._jobs
        ]

    async def truncate(self) -> None:
        async with self._lock:
            self._queues.clear()
            self._jobs.clear()
            self._keys.clear()
