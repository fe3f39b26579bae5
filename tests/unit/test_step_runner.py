"""Tests for step dispatch, validation, timeouts and the log trail."""

import pytest

from apiflow.collaborators import InMemoryConnectionDirectory, InMemorySecretsProvider
from apiflow.contracts import ExecutionContext, Step, StepKind, StepResult
from apiflow.persistence import InMemoryExecutionRepository
from apiflow.steps import StepExecutor, StepRunner, build_step_runner


class ExplodingExecutor(StepExecutor):
    kind = StepKind.CUSTOM

    def validate(self, step):
        return []

    async def execute(self, step, context):
        raise RuntimeError("boom")


def _context():
    return ExecutionContext(execution_id="e1", workflow_id="wf-1", user_id="u1")


def _runner(repository=None):
    return build_step_runner(
        InMemoryConnectionDirectory(), InMemorySecretsProvider(), repository=repository
    )


@pytest.mark.asyncio
async def test_run_step_logs_start_and_success():
    repo = InMemoryExecutionRepository()
    result = await _runner(repo).run_step(Step(step_order=1, action="noop"), _context())

    assert result.success
    logs = await repo.list_log_entries("e1")
    assert [entry.message for entry in logs] == [
        "Step execution started",
        "Step completed successfully",
    ]
    assert logs[1].step_order == 1
    assert set(logs[1].data) == {"duration", "retry_count"}


@pytest.mark.asyncio
async def test_invalid_step_is_rejected_before_execution():
    repo = InMemoryExecutionRepository()
    step = Step(step_order=1, action="lookup")

    result = await _runner(repo).run_step(step, _context())

    assert not result.success
    assert not result.retryable
    assert result.error.startswith(
        "VALIDATION_ERROR: Invalid step configuration for API_CALL 'Step 1'"
    )
    logs = await repo.list_log_entries("e1")
    assert len(logs) == 1
    assert logs[0].level == "ERROR"


@pytest.mark.asyncio
async def test_step_timeout():
    step = Step(step_order=1, action="wait", parameters={"waitTime": 500}, timeout=20)
    result = await _runner().run_step(step, _context())
    assert not result.success
    assert result.error == "TIMEOUT: Step timed out after 20ms"
    assert result.retryable


@pytest.mark.asyncio
async def test_executor_exceptions_become_failed_results():
    repo = InMemoryExecutionRepository()
    runner = StepRunner([ExplodingExecutor()], repository=repo)

    result = await runner.run_step(Step(step_order=1, action="noop"), _context())

    assert result == StepResult(
        success=False, error="boom", duration=result.duration, retryable=True
    )
    logs = await repo.list_log_entries("e1")
    assert logs[-1].message == "Step failed: boom"


@pytest.mark.asyncio
async def test_missing_executor():
    runner = StepRunner()
    result = await runner.run_step(Step(step_order=1, action="noop"), _context())
    assert not result.success
    assert "No executor registered" in result.error
