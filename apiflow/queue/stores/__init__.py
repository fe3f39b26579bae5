"""Job store factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ...config import ApiflowConfig, load_config
from .base import BaseJobStore, JobHandler
from .inmemory import InMemoryJobStore


def get_job_store(
    backend: Optional[str] = None, config: Optional[ApiflowConfig] = None
) -> BaseJobStore:
    """Factory function to get the configured job store."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("APIFLOW_QUEUE_BACKEND")
        or config.store.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryJobStore()
    elif backend == "redis":
        from .redis import RedisJobStore

        redis_conf = config.store.redis
        return RedisJobStore(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            namespace=redis_conf.namespace,
        )
    else:
        raise ValueError(f"Unsupported queue backend: {backend}")


__all__ = ["BaseJobStore", "InMemoryJobStore", "JobHandler", "get_job_store"]
