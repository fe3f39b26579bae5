"""Job store tests."""

import asyncio
from datetime import timedelta

import pytest
from redis.exceptions import WatchError

from apiflow.contracts import utcnow
from apiflow.errors import JobNotFoundError
from apiflow.queue.models import Job, JobOptions, JobState, WorkOptions
from apiflow.queue.stores import InMemoryJobStore, get_job_store
from apiflow.queue.stores.redis import RedisJobStore


def _options(**kwargs):
    values = {"retry_limit": 0, "retry_delay": 100, "timeout": 5000}
    values.update(kwargs)
    return JobOptions(**values)


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_store_requires_start():
    store = InMemoryJobStore()
    with pytest.raises(RuntimeError):
        await store.send("q", "job", {}, _options())


@pytest.mark.asyncio
async def test_claim_order_follows_priority_then_age():
    store = InMemoryJobStore()
    await store.start()
    low = await store.send("q", "job", {"n": 1}, _options())
    high = await store.send("q", "job", {"n": 2}, _options(priority=5))
    later = await store.send("q", "job", {"n": 3}, _options())

    claimed = [await store._claim("q") for _ in range(3)]
    assert [job.id for job in claimed] == [high, low, later]
    assert all(job.state == JobState.ACTIVE for job in claimed)
    assert await store._claim("q") is None


@pytest.mark.asyncio
async def test_singleton_key_deduplicates():
    store = InMemoryJobStore()
    await store.start()
    first = await store.send("q", "job", {}, _options(key="exec-1:0"))
    assert first is not None
    assert await store.send("q", "job", {}, _options(key="exec-1:0")) is None
    assert await store.send("other", "job", {}, _options(key="exec-1:0")) is not None
    counts = await store.get_queue_counts("q")
    assert counts["created"] == 1


@pytest.mark.asyncio
async def test_delayed_jobs_wait_for_start_after():
    store = InMemoryJobStore()
    await store.start()
    await store.send("q", "job", {}, _options(start_after=utcnow() + timedelta(minutes=1)))
    assert await store._claim("q") is None
    counts = await store.get_queue_counts("q")
    assert counts["created"] == 1
    assert counts["delayed"] == 1


@pytest.mark.asyncio
async def test_waiting_jobs_expire():
    store = InMemoryJobStore()
    await store.start()
    job_id = await store.send(
        "q",
        "job",
        {},
        _options(start_after=utcnow() - timedelta(seconds=5), expire_in=1000),
    )
    assert await store._claim("q") is None
    job = await store.get_job_by_id("q", job_id)
    assert job.state == JobState.EXPIRED


@pytest.mark.asyncio
async def test_cancel_rules():
    store = InMemoryJobStore()
    await store.start()
    job_id = await store.send("q", "job", {}, _options())
    await store.cancel("q", job_id)
    assert (await store.get_job_by_id("q", job_id)).state == JobState.CANCELLED
    # Cancelling a finished job is a no-op
    await store.cancel("q", job_id)
    assert await store._claim("q") is None

    with pytest.raises(JobNotFoundError):
        await store.cancel("q", "missing")


@pytest.mark.asyncio
async def test_worker_completes_jobs():
    store = InMemoryJobStore()
    await store.start()
    seen = []

    async def handler(job):
        seen.append(job.data["n"])
        return {"double": job.data["n"] * 2}

    job_id = await store.send("q", "job", {"n": 21}, _options())
    worker_id = await store.work("q", handler, WorkOptions(team_size=2, timeout=5000, poll_interval=10))
    assert worker_id.startswith("q-")

    async def done():
        job = await store.get_job_by_id("q", job_id)
        return job.state == JobState.COMPLETED

    await _wait_for(done)
    job = await store.get_job_by_id("q", job_id)
    assert job.output == {"double": 42}
    assert seen == [21]
    await store.stop()


@pytest.mark.asyncio
async def test_failed_jobs_are_retried_then_failed():
    store = InMemoryJobStore()
    await store.start()
    attempts = []

    async def handler(job):
        attempts.append(job.retry_count)
        raise ValueError("bad payload")

    job_id = await store.send("q", "job", {}, _options(retry_limit=2, retry_delay=1))
    await store.work("q", handler, WorkOptions(team_size=1, timeout=5000, poll_interval=5))

    async def failed():
        job = await store.get_job_by_id("q", job_id)
        return job.state == JobState.FAILED

    await _wait_for(failed)
    job = await store.get_job_by_id("q", job_id)
    assert attempts == [0, 1, 2]
    assert job.retry_count == 2
    assert job.output == {"error": "bad payload"}
    await store.stop()


@pytest.mark.asyncio
async def test_timed_out_jobs_expire():
    store = InMemoryJobStore()
    await store.start()

    async def handler(job):
        await asyncio.sleep(1)

    job_id = await store.send("q", "job", {}, _options(timeout=20))
    await store.work("q", handler, WorkOptions(team_size=1, timeout=5000, poll_interval=5))

    async def expired():
        job = await store.get_job_by_id("q", job_id)
        return job.state == JobState.EXPIRED

    await _wait_for(expired)
    await store.stop()


@pytest.mark.asyncio
async def test_cancelled_while_active_stays_cancelled():
    store = InMemoryJobStore()
    await store.start()
    started = asyncio.Event()
    release = asyncio.Event()

    async def handler(job):
        started.set()
        await release.wait()
        return "done"

    job_id = await store.send("q", "job", {}, _options())
    await store.work("q", handler, WorkOptions(team_size=1, timeout=5000, poll_interval=5))
    await asyncio.wait_for(started.wait(), timeout=2)
    await store.cancel("q", job_id)
    release.set()
    await asyncio.sleep(0.05)

    job = await store.get_job_by_id("q", job_id)
    assert job.state == JobState.CANCELLED
    await store.stop()


@pytest.mark.asyncio
async def test_truncate_drops_everything():
    store = InMemoryJobStore()
    await store.start()
    await store.send("q", "job", {}, _options(key="k"))
    await store.truncate()
    assert await store.list_queues() == []
    assert await store.send("q", "job", {}, _options(key="k")) is not None


def test_get_job_store_backends(tmp_path, monkeypatch):
    monkeypatch.delenv("APIFLOW_QUEUE_BACKEND", raising=False)
    monkeypatch.setenv("APIFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    assert isinstance(get_job_store(), InMemoryJobStore)

    store = get_job_store("redis")
    assert isinstance(store, RedisJobStore)
    assert store.host == "localhost"
    assert store.port == 6379
    assert not store.is_started

    with pytest.raises(ValueError):
        get_job_store("kafka")


@pytest.mark.asyncio
async def test_stopping_a_worker_releases_its_active_job():
    store = InMemoryJobStore()
    await store.start()
    started = asyncio.Event()

    async def slow(job):
        started.set()
        await asyncio.sleep(10)

    job_id = await store.send("q", "job", {}, _options(retry_limit=1))
    worker_id = await store.work("q", slow, WorkOptions(team_size=1, timeout=5000, poll_interval=5))
    await asyncio.wait_for(started.wait(), timeout=2)
    await store.off_work(worker_id)

    job = await store.get_job_by_id("q", job_id)
    assert job.state == JobState.RETRY
    assert job.retry_count == 0

    async def quick(job):
        return "done"

    await store.work("q", quick, WorkOptions(team_size=1, timeout=5000, poll_interval=5))

    async def done():
        return (await store.get_job_by_id("q", job_id)).state == JobState.COMPLETED

    await _wait_for(done)
    await store.stop()


@pytest.mark.asyncio
async def test_abandoned_active_jobs_are_reclaimed_after_timeout():
    store = InMemoryJobStore()
    await store.start()
    job_id = await store.send("q", "job", {}, _options(timeout=20, retry_limit=1))

    # A consumer that claims and then disappears
    first = await store._claim("q")
    assert first.id == job_id
    assert await store._claim("q") is None

    await asyncio.sleep(0.05)
    second = await store._claim("q")
    assert second.id == job_id
    assert second.retry_count == 1

    await asyncio.sleep(0.05)
    assert await store._claim("q") is None
    job = await store.get_job_by_id("q", job_id)
    assert job.state == JobState.EXPIRED
    assert job.output == {"error": "Job timed out after 20ms"}


@pytest.mark.asyncio
async def test_late_outcome_of_a_reclaimed_delivery_is_ignored():
    store = InMemoryJobStore()
    await store.start()
    job_id = await store.send("q", "job", {}, _options(timeout=20, retry_limit=1))
    stale = await store._claim("q")
    await asyncio.sleep(0.05)
    current = await store._claim("q")

    await store._record_success(stale, "late")
    job = await store.get_job_by_id("q", job_id)
    assert job.state == JobState.ACTIVE
    assert job.started_on == current.started_on

    await store._record_success(current, "ok")
    assert (await store.get_job_by_id("q", job_id)).output == "ok"


@pytest.mark.asyncio
async def test_finished_jobs_are_pruned_after_retention():
    store = InMemoryJobStore(retention=timedelta(0))
    await store.start()
    job_id = await store.send("q", "job", {}, _options(key="exec-1:0"))
    await store.cancel("q", job_id)
    await asyncio.sleep(0.01)

    assert await store._claim("q") is None
    assert await store.get_job_by_id("q", job_id) is None
    assert (await store.get_queue_counts("q"))["cancelled"] == 0
    assert await store.send("q", "job", {}, _options(key="exec-1:0")) is not None


class _ScriptedRedis:
    """Just enough of ``redis.asyncio.Redis`` to drive the store's writes.

    ``after_get`` runs once after the next watched read, standing in for a
    second client writing between the read and the transaction.
    """

    def __init__(self):
        self.values = {}
        self.sets = {}
        self.zsets = {}
        self.hashes = {}
        self.after_get = None

    def pipeline(self, transaction=True):
        return _ScriptedPipeline(self)

    async def get(self, key):
        return self.values.get(key)

    async def sadd(self, key, member):
        self.sets.setdefault(key, set()).add(member)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def hsetnx(self, key, field, value):
        bucket = self.hashes.setdefault(key, {})
        if field in bucket:
            return False
        bucket[field] = value
        return True

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)

    async def zrem(self, key, member):
        return self.zsets.get(key, {}).pop(member, None) is not None

    async def zpopmin(self, key):
        zset = self.zsets.get(key, {})
        if not zset:
            return []
        member = min(zset, key=zset.get)
        return [(member, zset.pop(member))]

    async def zrangebyscore(self, key, low, high):
        return [m for m, score in self.zsets.get(key, {}).items() if score <= float(high)]


class _ScriptedPipeline:
    def __init__(self, client):
        self.client = client
        self.watched = {}
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.watched = {}
        self.commands = []

    async def watch(self, key):
        self.watched[key] = self.client.values.get(key)

    async def get(self, key):
        value = self.client.values.get(key)
        if self.client.after_get is not None:
            hook, self.client.after_get = self.client.after_get, None
            hook()
        return value

    def multi(self):
        self.commands = []

    def set(self, key, value):
        self.commands.append(lambda: self.client.values.__setitem__(key, value))

    def zadd(self, key, mapping):
        self.commands.append(lambda: self.client.zsets.setdefault(key, {}).update(mapping))

    def zrem(self, key, member):
        self.commands.append(lambda: self.client.zsets.get(key, {}).pop(member, None))

    async def execute(self):
        try:
            for key, value in self.watched.items():
                if self.client.values.get(key) != value:
                    raise WatchError("watched key changed")
            for command in self.commands:
                command()
        finally:
            self.watched = {}
            self.commands = []


@pytest.mark.asyncio
async def test_redis_claim_does_not_overwrite_a_concurrent_cancel():
    store = RedisJobStore()
    client = _ScriptedRedis()
    store._redis = client
    store._started = True
    job_id = await store.send("q", "job", {}, _options())
    job_key = store._job_key(job_id)

    def cancel_from_another_client():
        job = Job.model_validate_json(client.values[job_key])
        job.state = JobState.CANCELLED
        client.values[job_key] = job.model_dump_json()

    client.after_get = cancel_from_another_client
    assert await store._claim("q") is None

    job = await store.get_job_by_id("q", job_id)
    assert job.state == JobState.CANCELLED
    assert client.zsets.get(store._queue_key("q", "active"), {}) == {}
