"""Tests for configuration loading."""

import pytest

from apiflow.collaborators import (
    AuthType,
    InMemoryConnectionDirectory,
    InMemorySecretsProvider,
    SecretType,
)
from apiflow.config import ExecutorConfig, load_config
from apiflow.engine import build_engine
from apiflow.errors import ConfigurationError
from apiflow.queue.stores import get_job_store
from apiflow.queue.stores.redis import RedisJobStore


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
store:
  backend: redis
  redis:
    host: testhost
    port: 1234
retry:
  max_attempts: 5
executor:
  continue_on_failure: false
"""
    )
    monkeypatch.setenv("APIFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("APIFLOW_QUEUE_BACKEND", raising=False)

    config = load_config()
    assert config.store.backend == "redis"
    assert config.store.redis.host == "testhost"
    assert config.store.redis.port == 1234
    assert config.retry.max_attempts == 5
    assert config.retry.max_retry_delay == 300000
    assert config.executor.continue_on_failure is False


def test_get_job_store_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
store:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("APIFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("APIFLOW_QUEUE_BACKEND", raising=False)

    store = get_job_store()
    assert isinstance(store, RedisJobStore)
    assert store.host == "confighost"
    assert store.port == 6380


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("APIFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("APIFLOW_QUEUE_BACKEND", "REDIS")
    monkeypatch.setenv("APIFLOW_DATABASE_URL", "sqlite:///tmp/x.db")

    config = load_config()
    assert config.store.backend == "redis"
    assert config.database_url == "sqlite:///tmp/x.db"


@pytest.mark.asyncio
async def test_connections_and_secrets_from_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
connections:
  - id: crm
    base_url: https://crm.example.com
    auth_type: API_KEY
    auth_header: X-CRM-Key
secrets:
  - user_id: u1
    connection_id: crm
    name: crm-key
    type: api_key
    value_env: CRM_KEY
  - user_id: u1
    connection_id: crm
    name: unset
    type: bearer_token
    value_env: NOT_SET_ANYWHERE
"""
    )
    monkeypatch.setenv("CRM_KEY", "secret-value")
    monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
    config = load_config(str(config_path))

    connection = await InMemoryConnectionDirectory.from_config(config).get_connection("crm")
    assert connection.auth_type == AuthType.API_KEY
    assert connection.auth_header == "X-CRM-Key"

    secrets = InMemorySecretsProvider.from_config(config)
    metadata = await secrets.get_secrets_for_connection("u1", "crm")
    assert [m.name for m in metadata] == ["crm-key"]
    assert await secrets.get_secret_value("u1", "crm-key") == "secret-value"
    validation = await secrets.validate_connection_secrets(
        "u1", "crm", [SecretType.API_KEY, SecretType.BEARER_TOKEN]
    )
    assert not validation.is_valid
    assert validation.missing == ["bearer_token"]


def test_parallel_steps_are_not_supported(tmp_path, monkeypatch):
    monkeypatch.setenv("APIFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    config = load_config()
    config.executor = ExecutorConfig(max_concurrency=4)
    with pytest.raises(ConfigurationError):
        build_engine(config)


def test_executor_config_fields():
    assert set(ExecutorConfig.model_fields) == {
        "max_concurrency",
        "timeout",
        "continue_on_failure",
        "max_retries",
        "retry_backoff_base",
        "use_queue",
        "queue_name",
        "queue_retry_delay",
        "stuck_execution_timeout",
    }
