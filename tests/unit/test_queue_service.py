"""Tests for the queue service facade."""

import asyncio
from datetime import timedelta

import pytest

from apiflow.config import QueueConfig
from apiflow.contracts import utcnow
from apiflow.errors import DuplicateJobError, QueueNotInitializedError, ValidationError
from apiflow.queue import (
    InMemoryJobStore,
    JobState,
    QueueJob,
    QueueService,
    WorkerStatsRegistry,
    sanitize_job_data,
)


def _service(**config):
    config.setdefault("poll_interval", 5)
    return QueueService(InMemoryJobStore(), QueueConfig(**config))


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_operations_require_initialize():
    service = _service()
    with pytest.raises(QueueNotInitializedError):
        await service.submit_job(QueueJob(queue_name="q", name="job", data={}))
    with pytest.raises(QueueNotInitializedError):
        await service.register_worker("q", lambda data: None)
    health = await service.get_health_status()
    assert health.status == "error"
    assert health.message == "Queue service not initialized"


@pytest.mark.asyncio
async def test_initialize_is_idempotent():
    service = _service()
    await service.initialize()
    await service.initialize()
    assert service.is_initialized
    await service.stop()
    assert not service.is_initialized


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "job",
    [
        {"queue_name": "q", "name": "job", "data": {}, "retry_limit": 11},
        {"queue_name": "q", "name": "job", "data": {}, "timeout": 500},
        {"queue_name": "q", "name": "job", "data": {}, "priority": 20},
        {"queue_name": "q", "name": "job", "data": {}, "retry_delay": 50},
        {"queue_name": "", "name": "job", "data": {}},
        {"queue_name": "q", "name": "job", "data": None},
    ],
)
async def test_invalid_jobs_are_rejected_before_the_store(job):
    service = _service()
    await service.initialize()
    try:
        with pytest.raises(ValidationError):
            await service.submit_job(job)
        assert await service.store.list_queues() == []
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_submit_applies_defaults_and_delay():
    service = _service(retry_limit=4, timeout=60000)
    await service.initialize()
    try:
        submitted = await service.submit_job(
            QueueJob(queue_name="q", name="job", data={"a": 1}, delay=60000, priority=3)
        )
        status = await service.get_job_status("q", submitted.job_id)
        assert status.state == JobState.CREATED
        assert status.retry_limit == 4
        assert status.start_after > utcnow() + timedelta(seconds=50)

        # Lookups have no side effects
        again = await service.get_job_status("q", submitted.job_id)
        assert again == status
        assert await service.get_job_status("q", "missing") is None
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_duplicate_job_key():
    service = _service()
    await service.initialize()
    try:
        job = QueueJob(queue_name="q", name="job", data={}, job_key="exec-1:0")
        await service.submit_job(job)
        with pytest.raises(DuplicateJobError):
            await service.submit_job(job)
        metrics = await service.get_queue_metrics("q")
        assert metrics[0].total == 1
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_worker_runs_handler_and_tracks_stats():
    service = _service()
    await service.initialize()
    try:
        received = []

        async def handler(data):
            received.append(data)
            return {"ok": True}

        worker_id = await service.register_worker("q", handler, team_size=2)
        submitted = await service.submit_job(QueueJob(queue_name="q", name="job", data={"n": 1}))

        async def completed():
            status = await service.get_job_status("q", submitted.job_id)
            return status.state == JobState.COMPLETED

        await _wait_for(completed)
        assert received == [{"n": 1}]
        stats = {s.worker_id: s for s in service.get_worker_stats()}
        assert stats[worker_id].completed_jobs == 1
        assert stats[worker_id].active_jobs == 0

        health = await service.get_health_status()
        assert health.status == "healthy"
        assert health.workers == 1
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_worker_failures_are_retried_and_counted():
    service = _service()
    await service.initialize()
    try:
        calls = []

        async def handler(data):
            calls.append(data)
            raise RuntimeError("downstream unavailable")

        worker_id = await service.register_worker("q", handler)
        submitted = await service.submit_job(
            QueueJob(queue_name="q", name="job", data={}, retry_limit=1, retry_delay=100)
        )

        async def failed():
            status = await service.get_job_status("q", submitted.job_id)
            return status.state == JobState.FAILED

        await _wait_for(failed)
        assert len(calls) == 2
        stats = {s.worker_id: s for s in service.get_worker_stats()}
        assert stats[worker_id].failed_jobs == 2

        metrics = (await service.get_queue_metrics("q"))[0]
        assert metrics.failed == 1
        assert metrics.error_rate == 1.0
        assert metrics.health == "unhealthy"
        health = await service.get_health_status()
        assert health.status == "error"
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_unregister_worker_marks_it_stopped():
    service = _service()
    await service.initialize()
    try:
        async def handler(data):
            return None

        worker_id = await service.register_worker("q", handler)
        await service.unregister_worker(worker_id)
        stats = service.get_worker_stats()
        assert [s.running for s in stats] == [False]
        health = await service.get_health_status()
        assert health.status == "warning"
        assert health.message == "No workers registered"
    finally:
        await service.stop()


def test_worker_stats_registry_evicts_idle_stopped_workers():
    registry = WorkerStatsRegistry(ttl_ms=1000)
    registry.register("q-1", "q")
    registry.register("q-2", "q")
    registry.record("q-1", "active")
    registry.record("q-1", "completed")
    registry.mark_stopped("q-2")
    registry.get("q-2").last_activity = utcnow() - timedelta(seconds=5)

    assert registry.evict_idle() == ["q-2"]
    assert len(registry) == 1
    assert registry.get("q-1").completed_jobs == 1
    with pytest.raises(ValueError):
        registry.record("q-1", "paused")


def test_queue_metrics_health_thresholds():
    build = QueueService._build_metrics
    assert build("q", {"completed": 100, "failed": 5}).health == "healthy"
    assert build("q", {"completed": 93, "failed": 7}).health == "degraded"
    assert build("q", {"completed": 80, "expired": 20}).health == "unhealthy"
    assert build("q", {"active": 101}).health == "degraded"
    assert build("q", {}).error_rate == 0.0


@pytest.mark.asyncio
async def test_prometheus_export():
    service = _service()
    await service.initialize()
    try:
        await service.submit_job(QueueJob(queue_name="q", name="job", data={}))
        text = await service.render_prometheus()
        assert "# TYPE apiflow_queue_jobs_total gauge" in text
        assert 'apiflow_queue_jobs_total{queue="q",state="created"} 1' in text
        assert 'apiflow_queue_error_rate{queue="q"} 0.0' in text
        assert 'apiflow_queue_workers{queue="q"} 0' in text
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_purge_truncates_and_keeps_store_running():
    service = _service()
    await service.initialize()
    try:
        await service.submit_job(QueueJob(queue_name="q", name="job", data={}, job_key="k"))
        await service.purge()
        assert service.store.is_started
        assert await service.get_queue_metrics() == []
        await service.submit_job(QueueJob(queue_name="q", name="job", data={}, job_key="k"))
    finally:
        await service.stop()


def test_sanitize_job_data():
    data = {
        "userId": "u1",
        "apiKey": "k",
        "nested": {"password": "p", "items": [{"accessToken": "t", "n": 1}]},
    }
    assert sanitize_job_data(data) == {
        "userId": "u1",
        "apiKey": "[REDACTED]",
        "nested": {"password": "[REDACTED]", "items": [{"accessToken": "[REDACTED]", "n": 1}]},
    }


@pytest.mark.asyncio
async def test_purge_stops_busy_workers_and_drops_their_jobs():
    service = _service()
    await service.initialize()
    try:
        started = asyncio.Event()

        async def handler(data):
            started.set()
            await asyncio.sleep(10)

        await service.register_worker("q", handler)
        await service.submit_job(QueueJob(queue_name="q", name="job", data={}))
        await asyncio.wait_for(started.wait(), timeout=2)

        await service.purge()
        assert service.store.is_started
        assert [s.running for s in service.get_worker_stats()] == [False]
        assert await service.get_queue_metrics() == []
    finally:
        await service.stop()
