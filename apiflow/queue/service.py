"""Queue service: job submission, worker pools, health and metrics.

The service wraps a :class:`~apiflow.queue.stores.BaseJobStore` and adds
validation, default options, per-worker statistics and periodic health and
metrics snapshots.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import pydantic

from ..config import QueueConfig
from ..constants import SENSITIVE_FIELDS
from ..contracts import utcnow
from ..errors import DuplicateJobError, QueueNotInitializedError, ValidationError
from .models import (
    Job,
    JobOptions,
    JobStatus,
    QueueHealth,
    QueueJob,
    QueueMetrics,
    SubmittedJob,
    WorkerId,
    WorkerStats,
    WorkOptions,
)
from .stores import BaseJobStore

logger = logging.getLogger(__name__)

QueueHandler = Callable[[Any], Awaitable[Any]]

REDACTED = "[REDACTED]"


def sanitize_job_data(data: Any) -> Any:
    """Return a copy of ``data`` with sensitive-looking fields redacted."""
    if isinstance(data, Mapping):
        sanitized = {}
        for key, value in data.items():
            if any(field in str(key).lower() for field in SENSITIVE_FIELDS):
                sanitized[key] = REDACTED
            else:
                sanitized[key] = sanitize_job_data(value)
        return sanitized
    if isinstance(data, (list, tuple)):
        return [sanitize_job_data(item) for item in data]
    return data


class WorkerStatsRegistry:
    """Per-worker counters keyed by :data:`WorkerId`."""

    def __init__(self, ttl_ms: int) -> None:
        self.ttl_ms = ttl_ms
        self._stats: Dict[WorkerId, WorkerStats] = {}

    def register(self, worker_id: WorkerId, queue_name: str) -> WorkerStats:
        stats = WorkerStats(worker_id=worker_id, queue_name=queue_name)
        self._stats[worker_id] = stats
        return stats

    def record(self, worker_id: WorkerId, action: str) -> None:
        stats = self._stats.get(worker_id)
        if stats is None:
            return
        if action == "active":
            stats.active_jobs += 1
        elif action == "completed":
            stats.active_jobs = max(0, stats.active_jobs - 1)
            stats.completed_jobs += 1
        elif action == "failed":
            stats.active_jobs = max(0, stats.active_jobs - 1)
            stats.failed_jobs += 1
        else:
            raise ValueError(f"Unknown worker action: {action}")
        stats.last_activity = utcnow()

    def mark_stopped(self, worker_id: WorkerId) -> None:
        stats = self._stats.get(worker_id)
        if stats is not None:
            stats.running = False
            stats.last_activity = utcnow()

    def evict_idle(self) -> List[WorkerId]:
        """Drop stopped workers that have been idle longer than the TTL."""
        cutoff = utcnow() - timedelta(milliseconds=self.ttl_ms)
        evicted = [
            worker_id
            for worker_id, stats in self._stats.items()
            if not stats.running and stats.last_activity < cutoff
        ]
        for worker_id in evicted:
            del self._stats[worker_id]
        return evicted

    def get(self, worker_id: WorkerId) -> Optional[WorkerStats]:
        return self._stats.get(worker_id)

    def all(self) -> List[WorkerStats]:
        return [stats.model_copy() for stats in self._stats.values()]

    def running(self) -> List[WorkerStats]:
        return [stats for stats in self._stats.values() if stats.running]

    def __len__(self) -> int:
        return len(self._stats)


class QueueService:
    """Durable at-least-once job queue facade."""

    def __init__(self, store: BaseJobStore, config: Optional[QueueConfig] = None):
        self.store = store
        self.config = config or QueueConfig()
        self.worker_stats = WorkerStatsRegistry(self.config.worker_stats_ttl)
        self._initialized = False
        self._started_at: Optional[float] = None
        self._timers: List[asyncio.Task] = []
        self._workers: Dict[WorkerId, str] = {}
        self._last_health: Optional[QueueHealth] = None
        self._last_metrics: Dict[str, QueueMetrics] = {}

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Lifecycle
    async def initialize(self) -> None:
        if self._initialized:
            return
        try:
            await self.store.start()
        except Exception as e:
            logger.error(f"Failed to initialize queue service: {e}")
            raise
        self._initialized = True
        self._started_at = time.monotonic()
        self._timers = [
            asyncio.create_task(self._health_loop(), name="apiflow-queue-health"),
            asyncio.create_task(self._metrics_loop(), name="apiflow-queue-metrics"),
        ]
        logger.info(
            "Queue service initialized "
            f"(max_concurrency={self.config.max_concurrency}, "
            f"retry_limit={self.config.retry_limit}, timeout={self.config.timeout}ms)"
        )

    async def stop(self) -> None:
        if not self._initialized:
            return
        await self._stop_timers()
        for worker_id in list(self._workers):
            await self.unregister_worker(worker_id)
        await self.store.stop()
        self._initialized = False
        logger.info("Queue service stopped")

    async def shutdown(self) -> None:
        await self.stop()

    async def _stop_timers(self) -> None:
        for task in self._timers:
            task.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        self._timers = []

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise QueueNotInitializedError()

    # ------------------------------------------------------------------
    # Jobs
    async def submit_job(self, job: Union[QueueJob, Dict[str, Any]]) -> SubmittedJob:
        """Validate and enqueue ``job``.

        Raises:
            ValidationError: the job violates a range or presence rule.
            DuplicateJobError: ``job_key`` is already used on the queue.
        """
        self._ensure_initialized()
        if not isinstance(job, QueueJob):
            try:
                job = QueueJob.model_validate(job)
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid job: {e}") from e

        options = JobOptions(
            retry_limit=(
                job.retry_limit if job.retry_limit is not None else self.config.retry_limit
            ),
            retry_delay=(
                job.retry_delay if job.retry_delay is not None else self.config.retry_delay
            ),
            timeout=job.timeout if job.timeout is not None else self.config.timeout,
            priority=job.priority or 0,
            expire_in=job.expire_in,
            key=job.job_key,
        )
        if job.delay is not None:
            options.start_after = utcnow() + timedelta(milliseconds=job.delay)

        try:
            await self.store.create_queue(job.queue_name)
            job_id = await self.store.send(job.queue_name, job.name, job.data, options)
        except Exception as e:
            logger.error(
                f"Failed to submit job {job.name} to queue {job.queue_name}: {e} "
                f"(data={sanitize_job_data(job.data)})"
            )
            raise
        if job_id is None:
            logger.error(
                f"Failed to enqueue job {job.name} on {job.queue_name}: "
                f"duplicate job key {job.job_key!r} (data={sanitize_job_data(job.data)})"
            )
            raise DuplicateJobError(
                f"Failed to enqueue job (duplicate job key {job.job_key!r})"
            )

        logger.info(
            f"Job {job_id} submitted to queue {job.queue_name} "
            f"(name={job.name}, priority={options.priority})"
        )
        return SubmittedJob(queue_name=job.queue_name, job_id=job_id)

    async def cancel_job(self, queue_name: str, job_id: str) -> None:
        self._ensure_initialized()
        try:
            await self.store.cancel(queue_name, job_id)
        except Exception as e:
            logger.error(f"Failed to cancel job {job_id} on {queue_name}: {e}")
            raise
        logger.info(f"Job {job_id} on {queue_name} cancelled")

    async def get_job_status(self, queue_name: str, job_id: str) -> Optional[JobStatus]:
        self._ensure_initialized()
        job = await self.store.get_job_by_id(queue_name, job_id)
        if job is None:
            return None
        return JobStatus.from_job(job)

    # ------------------------------------------------------------------
    # Workers
    async def register_worker(
        self,
        queue_name: str,
        handler: QueueHandler,
        team_size: Optional[int] = None,
        timeout: Optional[int] = None,
        retry_limit: Optional[int] = None,
    ) -> WorkerId:
        """Start a pool of consumers that call ``handler(job.data)``."""
        self._ensure_initialized()
        options = WorkOptions(
            team_size=team_size or self.config.max_concurrency,
            timeout=timeout or self.config.timeout,
            retry_limit=retry_limit if retry_limit is not None else self.config.retry_limit,
            poll_interval=self.config.poll_interval,
        )
        worker_ref: Dict[str, WorkerId] = {}

        async def process(job: Job) -> Any:
            worker_id = worker_ref["id"]
            started = time.monotonic()
            self.worker_stats.record(worker_id, "active")
            logger.info(f"Processing job {job.id} on {queue_name} ({worker_id})")
            try:
                result = await handler(job.data)
            except BaseException as e:
                self.worker_stats.record(worker_id, "failed")
                logger.error(
                    f"Job {job.id} on {queue_name} failed after "
                    f"{(time.monotonic() - started) * 1000:.0f}ms: {e!r}"
                )
                raise
            self.worker_stats.record(worker_id, "completed")
            logger.info(
                f"Job {job.id} on {queue_name} completed in "
                f"{(time.monotonic() - started) * 1000:.0f}ms"
            )
            return result

        worker_id = await self.store.work(queue_name, process, options)
        worker_ref["id"] = worker_id
        self.worker_stats.register(worker_id, queue_name)
        self._workers[worker_id] = queue_name
        logger.info(
            f"Worker {worker_id} registered on {queue_name} (team_size={options.team_size})"
        )
        return worker_id

    async def unregister_worker(self, worker_id: WorkerId) -> None:
        if self._workers.pop(worker_id, None) is None:
            return
        try:
            await self.store.off_work(worker_id)
        except Exception as e:
            logger.error(f"Failed to stop worker {worker_id}: {e}")
        self.worker_stats.mark_stopped(worker_id)
        logger.info(f"Worker {worker_id} stopped")

    def get_worker_stats(self) -> List[WorkerStats]:
        return self.worker_stats.all()

    # ------------------------------------------------------------------
    # Health and metrics
    async def get_queue_metrics(self, queue_name: Optional[str] = None) -> List[QueueMetrics]:
        self._ensure_initialized()
        names = [queue_name] if queue_name else await self.store.list_queues()
        metrics = []
        for name in names:
            counts = await self.store.get_queue_counts(name)
            metrics.append(self._build_metrics(name, counts))
        return metrics

    @staticmethod
    def _build_metrics(queue_name: str, counts: Dict[str, int]) -> QueueMetrics:
        failures = counts.get("failed", 0) + counts.get("expired", 0)
        finished = failures + counts.get("completed", 0)
        error_rate = failures / finished if finished else 0.0
        active = counts.get("active", 0)
        if error_rate > 0.10:
            health = "unhealthy"
        elif error_rate > 0.05 or active > 100:
            health = "degraded"
        else:
            health = "healthy"
        return QueueMetrics(
            queue_name=queue_name,
            total=sum(v for k, v in counts.items() if k != "delayed"),
            created=counts.get("created", 0),
            completed=counts.get("completed", 0),
            failed=counts.get("failed", 0),
            retry=counts.get("retry", 0),
            active=active,
            delayed=counts.get("delayed", 0),
            cancelled=counts.get("cancelled", 0),
            expired=counts.get("expired", 0),
            error_rate=error_rate,
            health=health,
        )

    async def get_health_status(self) -> QueueHealth:
        if not self._initialized:
            return QueueHealth(status="error", message="Queue service not initialized")
        try:
            metrics = await self.get_queue_metrics()
        except Exception as e:
            logger.error(f"Failed to get queue health status: {e}")
            return QueueHealth(status="error", message=f"Health check failed: {e}")

        running = len(self.worker_stats.running())
        queues = {m.queue_name: m.health for m in metrics}
        if any(h == "unhealthy" for h in queues.values()):
            status, message = "error", "One or more queues are unhealthy"
        elif any(h == "degraded" for h in queues.values()):
            status, message = "warning", "One or more queues are degraded"
        elif running == 0:
            status, message = "warning", "No workers registered"
        else:
            status, message = "healthy", "Queue service is healthy"

        return QueueHealth(
            status=status,
            message=message,
            active_jobs=sum(m.active for m in metrics),
            queued_jobs=sum(m.created + m.retry for m in metrics),
            failed_jobs=sum(m.failed for m in metrics),
            workers=running,
            uptime=time.monotonic() - (self._started_at or time.monotonic()),
            queues=queues,
        )

    @property
    def last_health(self) -> Optional[QueueHealth]:
        return self._last_health

    @property
    def last_metrics(self) -> Dict[str, QueueMetrics]:
        return dict(self._last_metrics)

    async def render_prometheus(self) -> str:
        """Export queue metrics in Prometheus text format."""
        metrics = await self.get_queue_metrics()
        series = [
            ("apiflow_queue_jobs_total", "gauge", "Jobs per queue and state"),
            ("apiflow_queue_error_rate", "gauge", "Failed share of finished jobs"),
            ("apiflow_queue_workers", "gauge", "Running workers per queue"),
        ]
        lines = []
        for name, metric_type, help_text in series:
            lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} {metric_type}")
            for m in metrics:
                label = f'queue="{m.queue_name}"'
                if name == "apiflow_queue_jobs_total":
                    for state in (
                        "created", "retry", "active", "completed",
                        "failed", "cancelled", "expired", "delayed",
                    ):
                        lines.append(f'{name}{{{label},state="{state}"}} {getattr(m, state)}')
                elif name == "apiflow_queue_error_rate":
                    lines.append(f"{name}{{{label}}} {m.error_rate}")
                else:
                    workers = sum(
                        1 for s in self.worker_stats.running() if s.queue_name == m.queue_name
                    )
                    lines.append(f"{name}{{{label}}} {workers}")
        return "\n".join(lines) + "\n"

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.health_check_interval / 1000)
            try:
                evicted = self.worker_stats.evict_idle()
                if evicted:
                    logger.debug(f"Evicted idle worker stats: {evicted}")
                health = await self.get_health_status()
                self._last_health = health
                if health.status == "error":
                    logger.error(f"Queue health check failed: {health.message}")
                elif health.status == "warning":
                    logger.warning(f"Queue health warning: {health.message}")
            except Exception as e:
                logger.error(f"Health check monitoring failed: {e}")

    async def _metrics_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.metrics_interval / 1000)
            try:
                for m in await self.get_queue_metrics():
                    self._last_metrics[m.queue_name] = m
                    logger.debug(
                        f"Queue {m.queue_name}: total={m.total} active={m.active} "
                        f"failed={m.failed} error_rate={m.error_rate:.2%}"
                    )
            except Exception as e:
                logger.error(f"Metrics collection failed: {e}")

    # ------------------------------------------------------------------
    # Maintenance
    async def purge(self) -> None:
        """Drop every job and queue.

        Workers are stopped and the store is restarted before truncating,
        since truncation needs an open connection. A restart is attempted
        even when truncation fails.
        """
        self._ensure_initialized()
        for worker_id in list(self._workers):
            await self.unregister_worker(worker_id)
        try:
            await self.store.stop()
            await self.store.start()
            await self.store.truncate()
            logger.info("Queue storage purged")
        except Exception as e:
            logger.error(f"Failed to purge queue storage: {e}")
            raise
        finally:
            if not self.store.is_started:
                try:
                    await self.store.start()
                except Exception as e:
                    logger.error(f"Failed to restart job store after purge: {e}")
