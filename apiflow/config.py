from __future__ import annotations

import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_API_KEY_HEADER, DEFAULT_QUEUE_NAME


class RedisConfig(BaseModel):
    """Configuration for the Redis job store."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    namespace: str = "apiflow"


class StoreConfig(BaseModel):
    """Durable job store settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class QueueConfig(BaseModel):
    """Queue service defaults. Durations are milliseconds."""

    max_concurrency: int = Field(default=10, ge=1)
    retry_limit: int = Field(default=3, ge=0, le=10)
    retry_delay: int = Field(default=5000, ge=100, le=300000)
    timeout: int = Field(default=300000, ge=1000, le=3600000)
    health_check_interval: int = Field(default=30000, gt=0)
    metrics_interval: int = Field(default=60000, gt=0)
    worker_stats_ttl: int = Field(default=3600000, gt=0)
    poll_interval: int = Field(default=200, gt=0)


class RetryPolicy(BaseModel):
    """Execution level retry policy. Durations are milliseconds."""

    max_attempts: int = Field(default=3, ge=0)
    retry_delay: int = Field(default=5000, ge=0)
    exponential_backoff: bool = True
    max_retry_delay: int = Field(default=300000, ge=0)


class ExecutorConfig(BaseModel):
    """Workflow executor behaviour."""

    max_concurrency: int = 1
    timeout: int = Field(default=300000, description="Queue job timeout, ms")
    continue_on_failure: bool = True
    max_retries: int = Field(default=3, ge=0)
    retry_backoff_base: float = Field(
        default=1.0, ge=0, description="Seconds; delay is base * 2 ** attempt"
    )
    use_queue: bool = True
    queue_name: str = DEFAULT_QUEUE_NAME
    queue_retry_delay: int = Field(default=5000, ge=100, le=300000)
    stuck_execution_timeout: int = Field(default=30, description="Minutes")


class ConnectionConfig(BaseModel):
    """API connection entry served by the config-backed directory."""

    id: str
    base_url: str
    auth_type: Literal[
        "NONE", "API_KEY", "BEARER_TOKEN", "BASIC_AUTH", "OAUTH2", "CUSTOM"
    ] = "NONE"
    auth_header: str = DEFAULT_API_KEY_HEADER


class SecretConfig(BaseModel):
    """Secret entry whose value is read from an environment variable."""

    user_id: str
    connection_id: str
    name: str
    type: str
    value_env: str


class ApiflowConfig(BaseModel):
    """Top-level configuration model."""

    store: StoreConfig = StoreConfig()
    queue: QueueConfig = QueueConfig()
    retry: RetryPolicy = RetryPolicy()
    executor: ExecutorConfig = ExecutorConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"
    connections: List[ConnectionConfig] = Field(default_factory=list)
    secrets: List[SecretConfig] = Field(default_factory=list)


def load_config(path: Optional[str] = None) -> ApiflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to APIFLOW_CONFIG env
            variable or 'apiflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("APIFLOW_CONFIG", "apiflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ApiflowConfig(**data)
    else:
        config = ApiflowConfig()

    env_db_url = os.getenv("APIFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_backend = os.getenv("APIFLOW_QUEUE_BACKEND")
    if env_backend:
        config.store = StoreConfig(
            backend=env_backend.lower(), redis=config.store.redis
        )
    return config
