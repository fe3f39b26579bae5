"""Redis job store for cross-process workers."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from ...contracts import utcnow
from ..models import FETCHABLE_JOB_STATES, Job, JobState
from .base import BaseJobStore


def _ready_score(job: Job) -> float:
    # Higher priority first, then oldest first.
    return -job.priority * 1e13 + job.created_on.timestamp() * 1000


def _due_score(value: datetime) -> float:
    return value.timestamp() * 1000


class RedisJobStore(BaseJobStore):
    """Redis-based job store.

    Each job is a JSON document written in a MULTI transaction; per-queue
    sorted sets hold ready, delayed and active (by deadline) job ids, and a
    hash guards singleton keys.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        namespace: str = "apiflow",
    ) -> None:
        super().__init__()
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.namespace = namespace
        self._redis: Optional[Any] = None

    # ------------------------------------------------------------------
    # Key helpers
    def _queues_key(self) -> str:
        return f"{self.namespace}:queues"

    def _job_key(self, job_id: str) -> str:
        return f"{self.namespace}:job:{job_id}"

    def _queue_key(self, queue_name: str, suffix: str) -> str:
        return f"{self.namespace}:q:{queue_name}:{suffix}"

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()
        await super().start()

    async def stop(self) -> None:
        await super().stop()
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    # ------------------------------------------------------------------
    # Storage primitives
    async def create_queue(self, queue_name: str) -> None:
        await self._redis.sadd(self._queues_key(), queue_name)

    async def list_queues(self) -> List[str]:
        return sorted(await self._redis.smembers(self._queues_key()))

    async def _insert(self, job: Job) -> bool:
        if job.key is not None:
            taken = await self._redis.hsetnx(
                self._queue_key(job.queue_name, "keys"), job.key, job.id
            )
            if not taken:
                return False
        await self.create_queue(job.queue_name)
        await self._redis.sadd(self._queue_key(job.queue_name, "jobs"), job.id)
        await self._save(job)
        return True

    def _stage(self, pipe: Any, job: Job) -> None:
        """Queue the writes that store ``job`` and keep the indexes in step."""
        ready_key = self._queue_key(job.queue_name, "ready")
        delayed_key = self._queue_key(job.queue_name, "delayed")
        active_key = self._queue_key(job.queue_name, "active")
        pipe.set(self._job_key(job.id), job.model_dump_json())
        pipe.zrem(ready_key, job.id)
        pipe.zrem(delayed_key, job.id)
        pipe.zrem(active_key, job.id)
        if job.state == JobState.ACTIVE:
            deadline = job.started_on + timedelta(milliseconds=job.timeout)
            pipe.zadd(active_key, {job.id: _due_score(deadline)})
        elif job.state in FETCHABLE_JOB_STATES:
            if job.start_after <= utcnow():
                pipe.zadd(ready_key, {job.id: _ready_score(job)})
            else:
                pipe.zadd(delayed_key, {job.id: _due_score(job.start_after)})

    async def _save(self, job: Job) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            self._stage(pipe, job)
            await pipe.execute()

    async def _update(
        self, queue_name: str, job_id: str, change: Callable[[Job], bool]
    ) -> Optional[Job]:
        key = self._job_key(job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        return None
                    job = Job.model_validate_json(raw)
                    if job.queue_name != queue_name or not change(job):
                        return None
                    pipe.multi()
                    self._stage(pipe, job)
                    await pipe.execute()
                    return job
                except WatchError:
                    # Another writer touched the job; re-read and re-apply.
                    continue

    async def _promote_due(self, queue_name: str) -> None:
        delayed_key = self._queue_key(queue_name, "delayed")
        due = await self._redis.zrangebyscore(delayed_key, "-inf", _due_score(utcnow()))
        for job_id in due:
            # Only the caller that removes the id may move it.
            if await self._redis.zrem(delayed_key, job_id):
                job = await self._load(queue_name, job_id)
                if job is not None and job.state in FETCHABLE_JOB_STATES:
                    await self._redis.zadd(
                        self._queue_key(queue_name, "ready"), {job_id: _ready_score(job)}
                    )

    async def _reclaim_stale(self, queue_name: str) -> None:
        active_key = self._queue_key(queue_name, "active")
        stale = await self._redis.zrangebyscore(active_key, "-inf", _due_score(utcnow()))
        for job_id in stale:
            await self._update(queue_name, job_id, lambda job: self._expire_stale(job, utcnow()))

    async def _claim(self, queue_name: str) -> Optional[Job]:
        await self._reclaim_stale(queue_name)
        await self._promote_due(queue_name)
        ready_key = self._queue_key(queue_name, "ready")

        def take(job: Job) -> bool:
            if job.state not in FETCHABLE_JOB_STATES:
                return False
            now = utcnow()
            if self._is_expired(job, now):
                job.state = JobState.EXPIRED
                job.failed_on = now
            else:
                job.state = JobState.ACTIVE
                job.started_on = now
            return True

        while True:
            popped = await self._redis.zpopmin(ready_key)
            if not popped:
                return None
            job_id, _ = popped[0]
            # A cancel racing the claim either lands first and is seen by
            # ``take`` or aborts the transaction, which then re-reads.
            job = await self._update(queue_name, job_id, take)
            if job is not None and job.state == JobState.ACTIVE:
                return job

    async def _load(self, queue_name: str, job_id: str) -> Optional[Job]:
        raw = await self._redis.get(self._job_key(job_id))
        if raw is None:
            return None
        job = Job.model_validate_json(raw)
        if job.queue_name != queue_name:
            return None
        return job

    async def _list_jobs(self, queue_name: str) -> List[Job]:
        jobs: List[Job] = []
        for job_id in await self._redis.smembers(self._queue_key(queue_name, "jobs")):
            job = await self._load(queue_name, job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def truncate(self) -> None:
        async for key in self._redis.scan_iter(match=f"{self.namespace}:*"):
            await self._redis.delete(key)
