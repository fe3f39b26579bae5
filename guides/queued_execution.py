"""Example showing queued execution with an API call step.

Run a worker in another terminal first::

    APIFLOW_QUEUE_BACKEND=redis APIFLOW_DATABASE_URL=sqlite://apiflow.db apiflow worker run

then submit with the same environment::

    CRM_API_KEY=... python guides/queued_execution.py
"""

import asyncio
import os

from apiflow import Workflow, build_engine
from apiflow.collaborators import (
    ApiConnection,
    InMemoryConnectionDirectory,
    InMemorySecretsProvider,
)


async def main():
    connections = InMemoryConnectionDirectory(
        [ApiConnection(id="crm", base_url="https://crm.example.com/api", auth_type="API_KEY")]
    )
    secrets = InMemorySecretsProvider()
    secrets.add_secret("user-123", "crm", "crm-key", "api_key", os.environ["CRM_API_KEY"])

    engine = build_engine(connections=connections, secrets=secrets)
    workflow = Workflow.model_validate(
        {
            "id": "sync-contacts",
            "steps": [
                {"stepOrder": 1, "apiConnectionId": "crm", "action": "GET /contacts"},
                {
                    "stepOrder": 2,
                    "apiConnectionId": "crm",
                    "method": "POST",
                    "path": "/sync",
                    "parameters": {"body": {"contacts": "{{step.1.data}}"}},
                },
            ],
        }
    )

    async with engine:
        submitted = await engine.executor.submit_workflow_for_execution(workflow, "user-123")
        print(f"Execution {submitted.execution_id} queued as job {submitted.queue_job_id}")

        # Workers own the run from here; poll its progress
        while True:
            execution = await engine.executor.get_execution_status(submitted.execution_id)
            progress = await engine.executor.get_execution_progress(submitted.execution_id)
            print(f"{execution.status.value}: {progress.progress}%")
            if execution.status.is_terminal:
                break
            await asyncio.sleep(1)


if __name__ == "__main__":
    asyncio.run(main())
