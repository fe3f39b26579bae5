"""Base job store interface for the durable queue."""

from __future__ import annotations

import abc
import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ...contracts import utcnow
from ...errors import JobNotFoundError
from ..models import (
    FETCHABLE_JOB_STATES,
    FINISHED_JOB_STATES,
    Job,
    JobOptions,
    JobState,
    WorkerId,
    WorkOptions,
)

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]


class BaseJobStore(metaclass=abc.ABCMeta):
    """Abstract at-least-once job store.

    Subclasses provide the storage primitives; the consumer loop, retry
    bookkeeping and cancellation rules live here so that every backend
    behaves the same way.
    """

    def __init__(self) -> None:
        self._workers: Dict[WorkerId, List[asyncio.Task]] = {}
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Open the store (no-op by default)."""
        self._started = True

    async def stop(self) -> None:
        """Stop all consumers and close the store."""
        for worker_id in list(self._workers):
            await self.off_work(worker_id)
        self._started = False

    # ------------------------------------------------------------------
    # Storage primitives
    @abc.abstractmethod
    async def create_queue(self, queue_name: str) -> None:
        """Create ``queue_name`` if it does not exist yet."""
        raise NotImplementedError

    @abc.abstractmethod
    async def list_queues(self) -> List[str]:
        raise NotImplementedError

    @abc.abstractmethod
    async def _insert(self, job: Job) -> bool:
        """Store a new job; return ``False`` when its key is already taken."""
        raise NotImplementedError

    @abc.abstractmethod
    async def _claim(self, queue_name: str) -> Optional[Job]:
        """Atomically take the next ready job and mark it active."""
        raise NotImplementedError

    @abc.abstractmethod
    async def _load(self, queue_name: str, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    @abc.abstractmethod
    async def _update(
        self, queue_name: str, job_id: str, change: Callable[[Job], bool]
    ) -> Optional[Job]:
        """Atomically apply ``change`` to the stored job.

        ``change`` mutates the job in place and returns ``False`` to leave it
        untouched. Fetchable jobs become claimable again once written.
        Returns the written job, or ``None`` when nothing was written.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def _list_jobs(self, queue_name: str) -> List[Job]:
        raise NotImplementedError

    @abc.abstractmethod
    async def truncate(self) -> None:
        """Remove every job and queue."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Public API
    async def send(
        self, queue_name: str, name: str, data: Any, options: JobOptions
    ) -> Optional[str]:
        """Enqueue a job and return its id, or ``None`` on a duplicate key."""
        self._ensure_started()
        job = Job(
            queue_name=queue_name,
            name=name,
            data=data,
            priority=options.priority,
            retry_limit=options.retry_limit,
            retry_delay=options.retry_delay,
            timeout=options.timeout,
            expire_in=options.expire_in,
            key=options.key,
            start_after=options.start_after or utcnow(),
        )
        if not await self._insert(job):
            return None
        return job.id

    async def cancel(self, queue_name: str, job_id: str) -> None:
        self._ensure_started()
        if await self._load(queue_name, job_id) is None:
            raise JobNotFoundError(queue_name, job_id)

        def change(job: Job) -> bool:
            if job.state in FINISHED_JOB_STATES:
                return False
            job.state = JobState.CANCELLED
            job.completed_on = utcnow()
            return True

        await self._update(queue_name, job_id, change)

    async def get_job_by_id(self, queue_name: str, job_id: str) -> Optional[Job]:
        self._ensure_started()
        return await self._load(queue_name, job_id)

    async def get_queue_counts(self, queue_name: str) -> Dict[str, int]:
        """Count jobs per state; ``delayed`` counts waiting jobs not yet due."""
        counts: Dict[str, int] = {state.value: 0 for state in JobState}
        counts["delayed"] = 0
        now = utcnow()
        for job in await self._list_jobs(queue_name):
            counts[job.state.value] += 1
            if job.state in FETCHABLE_JOB_STATES and job.start_after > now:
                counts["delayed"] += 1
        return counts

    async def work(
        self, queue_name: str, handler: JobHandler, options: WorkOptions
    ) -> WorkerId:
        """Start ``options.team_size`` consumers for ``queue_name``."""
        self._ensure_started()
        await self.create_queue(queue_name)
        worker_id = WorkerId(f"{queue_name}-{uuid.uuid4().hex[:8]}")
        self._workers[worker_id] = [
            asyncio.create_task(
                self._consume(queue_name, handler, options),
                name=f"{worker_id}-{index}",
            )
            for index in range(options.team_size)
        ]
        return worker_id

    async def off_work(self, worker_id: WorkerId) -> None:
        tasks = self._workers.pop(worker_id, [])
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Consumer loop
    def _ensure_started(self) -> None:
        if not self._started:
            raise RuntimeError("Job store is not started")

    async def _consume(
        self, queue_name: str, handler: JobHandler, options: WorkOptions
    ) -> None:
        while True:
            try:
                job = await self._claim(queue_name)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Failed to fetch job from queue {queue_name}: {e}")
                job = None
            if job is None:
                await asyncio.sleep(options.poll_interval / 1000)
                continue
            await self._process(job, handler, options)

    async def _process(self, job: Job, handler: JobHandler, options: WorkOptions) -> None:
        timeout_ms = min(job.timeout, options.timeout)
        try:
            output = await asyncio.wait_for(handler(job), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            await self._record_failure(
                job, f"Job timed out after {timeout_ms}ms", options, timed_out=True
            )
        except asyncio.CancelledError:
            # The worker is stopping; hand the job to the next consumer.
            await self._release(job)
            raise
        except Exception as e:
            await self._record_failure(job, str(e) or type(e).__name__, options)
        else:
            await self._record_success(job, output)

    @staticmethod
    def _owns(current: Job, claimed: Job) -> bool:
        """``True`` while ``current`` is still the delivery this consumer claimed."""
        return current.state == JobState.ACTIVE and current.started_on == claimed.started_on

    async def _record_success(self, job: Job, output: Any) -> None:
        def change(current: Job) -> bool:
            if not self._owns(current, job):
                return False
            current.state = JobState.COMPLETED
            current.output = output
            current.completed_on = utcnow()
            return True

        await self._update(job.queue_name, job.id, change)

    async def _record_failure(
        self, job: Job, error: str, options: WorkOptions, timed_out: bool = False
    ) -> None:
        retry_limit = job.retry_limit
        if options.retry_limit is not None:
            retry_limit = min(retry_limit, options.retry_limit)

        def change(current: Job) -> bool:
            if not self._owns(current, job):
                return False
            now = utcnow()
            current.output = {"error": error}
            if current.retry_count < retry_limit:
                current.retry_count += 1
                current.state = JobState.RETRY
                current.start_after = now + timedelta(
                    milliseconds=current.retry_delay * current.retry_count
                )
            else:
                current.state = JobState.EXPIRED if timed_out else JobState.FAILED
                current.failed_on = now
            return True

        updated = await self._update(job.queue_name, job.id, change)
        if updated is None:
            return
        if updated.state == JobState.RETRY:
            logger.info(
                f"Job {job.id} on {job.queue_name} scheduled for retry "
                f"{updated.retry_count}/{retry_limit}: {error}"
            )
        else:
            logger.warning(f"Job {job.id} on {job.queue_name} {updated.state.value}: {error}")

    async def _release(self, job: Job) -> None:
        """Make an interrupted delivery claimable again without using a retry."""

        def change(current: Job) -> bool:
            if not self._owns(current, job):
                return False
            current.state = JobState.RETRY
            current.start_after = utcnow()
            return True

        if await self._update(job.queue_name, job.id, change) is not None:
            logger.info(f"Job {job.id} on {job.queue_name} released by a stopping worker")

    @staticmethod
    def _expire_stale(job: Job, now) -> bool:
        """Reclaim an active job whose ``timeout`` elapsed without an outcome.

        Covers consumers that died mid-job. Returns ``True`` when ``job`` was
        changed.
        """
        if job.state != JobState.ACTIVE or job.started_on is None:
            return False
        if now < job.started_on + timedelta(milliseconds=job.timeout):
            return False
        job.output = {"error": f"Job timed out after {job.timeout}ms"}
        if job.retry_count < job.retry_limit:
            job.retry_count += 1
            job.state = JobState.RETRY
            job.start_after = now
        else:
            job.state = JobState.EXPIRED
            job.failed_on = now
        logger.warning(
            f"Job {job.id} on {job.queue_name} was active past its timeout, "
            f"now {job.state.value}"
        )
        return True

    @staticmethod
    def _is_expired(job: Job, now) -> bool:
        """Waiting jobs past ``start_after + expire_in`` are never started."""
        if job.expire_in is None:
            return False
        return now > job.start_after + timedelta(milliseconds=job.expire_in)
