"""Engine assembly.

:func:`build_engine` creates every component once and wires them together;
nothing in the package keeps module level instances.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .collaborators import (
    ConnectionDirectory,
    InMemoryConnectionDirectory,
    InMemorySecretsProvider,
    SecretsProvider,
)
from .config import ApiflowConfig, load_config
from .errors import ConfigurationError
from .executor import WorkflowExecutor
from .persistence import ExecutionRepository, get_repository
from .queue import BaseJobStore, QueueService, get_job_store
from .state import ExecutionStateManager
from .steps import StepRunner, build_step_runner

logger = logging.getLogger(__name__)


class Engine:
    """Bundle of the wired components of one apiflow engine."""

    def __init__(
        self,
        config: ApiflowConfig,
        repository: ExecutionRepository,
        queue_service: QueueService,
        state_manager: ExecutionStateManager,
        step_runner: StepRunner,
        executor: WorkflowExecutor,
    ) -> None:
        self.config = config
        self.repository = repository
        self.queue_service = queue_service
        self.state_manager = state_manager
        self.step_runner = step_runner
        self.executor = executor

    async def start(self) -> None:
        """Start the queue service when queued execution is enabled."""
        if self.config.executor.use_queue:
            await self.queue_service.initialize()

    async def stop(self) -> None:
        await self.queue_service.stop()

    async def __aenter__(self) -> "Engine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()


def build_engine(
    config: Optional[ApiflowConfig] = None,
    secrets: Optional[SecretsProvider] = None,
    connections: Optional[ConnectionDirectory] = None,
    repository: Optional[ExecutionRepository] = None,
    store: Optional[BaseJobStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Engine:
    """Construct a fully wired :class:`Engine`.

    Collaborators that are not passed in are built from ``config``.
    """
    if config is None:
        config = load_config()
    if config.executor.max_concurrency != 1:
        raise ConfigurationError(
            "Only sequential step execution (max_concurrency=1) is supported"
        )

    if repository is None:
        repository = get_repository(config=config)
    if store is None:
        store = get_job_store(config=config)
    if secrets is None:
        secrets = InMemorySecretsProvider.from_config(config)
    if connections is None:
        connections = InMemoryConnectionDirectory.from_config(config)

    queue_service = QueueService(store, config.queue)
    state_manager = ExecutionStateManager(repository, queue_service, config.retry)
    step_runner = build_step_runner(
        connections, secrets, repository=repository, http_client=http_client
    )
    executor = WorkflowExecutor(state_manager, step_runner, queue_service, config.executor)
    logger.debug(
        f"Engine built (store={type(store).__name__}, "
        f"repository={type(repository).__name__})"
    )
    return Engine(config, repository, queue_service, state_manager, step_runner, executor)
