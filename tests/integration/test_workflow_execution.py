"""End-to-end tests of the synchronous execution path."""

import pytest

from apiflow.collaborators import (
    ApiConnection,
    InMemoryConnectionDirectory,
    InMemorySecretsProvider,
)
from apiflow.config import ApiflowConfig, ExecutorConfig, RetryPolicy
from apiflow.contracts import ExecutionStatus, StepKind, StepResult, Workflow
from apiflow.engine import build_engine
from apiflow.errors import ValidationError
from apiflow.persistence import InMemoryExecutionRepository
from apiflow.queue import InMemoryJobStore
from apiflow.steps import StepExecutor


class ScriptedExecutor(StepExecutor):
    """CUSTOM executor that replays a list of prepared results."""

    kind = StepKind.CUSTOM

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def validate(self, step):
        return []

    async def execute(self, step, context):
        self.calls += 1
        if self.outcomes:
            return self.outcomes.pop(0)
        return StepResult(success=True, data={"call": self.calls})


def _engine(**executor):
    executor.setdefault("retry_backoff_base", 0)
    executor.setdefault("use_queue", False)
    config = ApiflowConfig(
        executor=ExecutorConfig(**executor),
        retry=RetryPolicy(retry_delay=0),
    )
    connections = InMemoryConnectionDirectory(
        [ApiConnection(id="crm", base_url="https://crm.example.com", auth_type="API_KEY")]
    )
    return build_engine(
        config,
        secrets=InMemorySecretsProvider(),
        connections=connections,
        repository=InMemoryExecutionRepository(),
        store=InMemoryJobStore(),
    )


def _workflow(*steps):
    return Workflow.model_validate(
        {
            "id": "wf-1",
            "name": "Test workflow",
            "steps": [dict(step, stepOrder=i + 1) for i, step in enumerate(steps)],
        }
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("count", [1, 3, 5])
async def test_noop_steps_complete(count):
    engine = _engine()
    result = await engine.executor.execute_workflow(
        _workflow(*[{"action": "noop"}] * count), "u1"
    )

    assert result.success
    assert result.status == ExecutionStatus.COMPLETED
    assert result.completed_steps == count
    assert result.failed_steps == 0
    execution = await engine.executor.get_execution_status(result.execution_id)
    assert execution.completed_steps + execution.failed_steps == execution.total_steps
    assert execution.result["results"]["1"] == {"message": "No operation performed"}
    progress = await engine.executor.get_execution_progress(result.execution_id)
    assert progress.progress == 100


@pytest.mark.asyncio
async def test_missing_secret_fails_permanently():
    engine = _engine()
    workflow = _workflow({"apiConnectionId": "crm", "action": "GET /contacts"})

    result = await engine.executor.execute_workflow(workflow, "u1")

    assert result.status == ExecutionStatus.FAILED
    assert result.failed_steps == 1
    assert "api_key" in result.error
    assert not await engine.state_manager.should_retry(result.execution_id)
    assert await engine.executor.get_retryable_executions() == []


@pytest.mark.asyncio
async def test_flaky_step_recovers_inside_the_step():
    engine = _engine()
    workflow = _workflow(
        {
            "action": "flaky",
            "parameters": {"failCount": 2},
            "retryConfig": {"maxRetries": 3, "retryDelay": 1},
        }
    )
    result = await engine.executor.execute_workflow(workflow, "u1")

    assert result.success
    assert result.results[1].retry_count == 2


@pytest.mark.asyncio
async def test_steps_see_earlier_results():
    engine = _engine()
    workflow = _workflow(
        {
            "name": "Numbers",
            "parameters": {
                "operation": "map",
                "input": {"data": [{"n": 1}, {"n": 2}]},
                "output": {"value": "{{n}}"},
            },
        },
        {
            "parameters": {
                "operation": "aggregate",
                "input": {"step": 1},
                "output": {"operation": "count"},
            }
        },
        {
            "parameters": {
                "condition": {"field": "step.2.missing", "operator": "not_exists"},
                "trueStep": 4,
            }
        },
        {"action": "log", "parameters": {"message": "{{param.greeting}}"}},
    )
    result = await engine.executor.execute_workflow(workflow, "u1", {"greeting": "hello"})

    assert result.success
    assert result.results[2].data == 2
    assert result.results[3].data == {"condition": True, "next_step": 4}
    assert result.results[4].data == {"message": "hello"}


@pytest.mark.asyncio
async def test_continue_on_failure():
    invalid = {"action": "fetch all users"}

    engine = _engine()
    result = await engine.executor.execute_workflow(
        _workflow({"action": "noop"}, invalid, {"action": "noop"}), "u1"
    )
    assert result.status == ExecutionStatus.FAILED
    assert (result.completed_steps, result.failed_steps) == (2, 1)
    assert result.error.startswith("1 step(s) failed: step 2 (Step 2): VALIDATION_ERROR")

    engine = _engine(continue_on_failure=False)
    result = await engine.executor.execute_workflow(
        _workflow({"action": "noop"}, invalid, {"action": "noop"}), "u1"
    )
    assert result.status == ExecutionStatus.FAILED
    assert (result.completed_steps, result.failed_steps) == (1, 2)
    assert result.results[3].metadata == {"skipped": True}


@pytest.mark.asyncio
async def test_executor_retries_transient_step_failures():
    engine = _engine(max_retries=2)
    scripted = ScriptedExecutor(
        [
            StepResult(success=False, error="TRANSIENT_ERROR: reset"),
            StepResult(success=False, error="TRANSIENT_ERROR: reset"),
        ]
    )
    engine.step_runner.register_executor(scripted)

    result = await engine.executor.execute_workflow(_workflow({"action": "noop"}), "u1")

    assert result.success
    assert scripted.calls == 3
    logs = await engine.executor.get_execution_logs(result.execution_id)
    assert [entry.level for entry in logs].count("ERROR") == 2


@pytest.mark.asyncio
async def test_permanent_step_failures_are_not_retried():
    engine = _engine(max_retries=3)
    scripted = ScriptedExecutor([StepResult(success=False, error="FORBIDDEN: 403")])
    engine.step_runner.register_executor(scripted)

    result = await engine.executor.execute_workflow(_workflow({"action": "noop"}), "u1")

    assert not result.success
    assert scripted.calls == 1
    assert result.results[1].error == "FORBIDDEN: 403"


@pytest.mark.asyncio
async def test_retry_execution_runs_again():
    engine = _engine(max_retries=0)
    scripted = ScriptedExecutor([StepResult(success=False, error="TRANSIENT_ERROR: reset")])
    engine.step_runner.register_executor(scripted)
    workflow = _workflow({"action": "noop"})

    failed = await engine.executor.execute_workflow(workflow, "u1")
    assert failed.status == ExecutionStatus.FAILED
    assert [e.id for e in await engine.executor.get_retryable_executions()] == [
        failed.execution_id
    ]

    retried = await engine.executor.retry_execution(failed.execution_id, workflow.steps)
    assert retried.success
    execution = await engine.executor.get_execution_status(failed.execution_id)
    assert execution.attempt_count == 1
    assert execution.error is None

    with pytest.raises(ValidationError):
        await engine.executor.retry_execution(failed.execution_id, workflow.steps)


@pytest.mark.asyncio
async def test_cancelled_before_next_step():
    engine = _engine()

    class CancellingExecutor(ScriptedExecutor):
        async def execute(self, step, context):
            await engine.executor.cancel_execution(context.execution_id, "ann")
            return await super().execute(step, context)

    engine.step_runner.register_executor(CancellingExecutor([]))
    result = await engine.executor.execute_workflow(
        _workflow({"action": "noop"}, {"action": "noop"}), "u1"
    )

    assert result.status == ExecutionStatus.CANCELLED
    assert result.error == "USER_CANCELLED: Execution cancelled by user"
    metrics = await engine.executor.get_execution_metrics(workflow_id="wf-1")
    assert metrics.cancelled_executions == 1
    assert metrics.failed_executions == 0


def test_queue_operations_need_queue():
    engine = _engine()
    assert not engine.executor.queue_enabled
