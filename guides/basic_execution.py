"""Simple example showing an inline workflow run."""

import asyncio

from apiflow import Workflow, build_engine


async def main():
    """Run a three step workflow without the queue."""
    engine = build_engine()
    engine.config.executor.use_queue = False

    workflow = Workflow.model_validate(
        {
            "id": "customer-onboarding",
            "name": "Customer onboarding",
            "steps": [
                {"stepOrder": 1, "action": "log", "parameters": {"message": "Onboarding {{param.customer_id}}"}},
                {
                    "stepOrder": 2,
                    "parameters": {
                        "operation": "aggregate",
                        "input": {"data": [{"seats": 3}, {"seats": 7}]},
                        "output": {"operation": "sum", "field": "seats"},
                    },
                },
                {"stepOrder": 3, "action": "wait", "parameters": {"waitTime": 100}},
            ],
        }
    )

    async with engine:
        result = await engine.executor.execute_workflow(
            workflow, user_id="user-123", parameters={"customer_id": "cust-123"}
        )

    print(f"✅ Execution {result.execution_id}: {result.status.value}")
    print(f"📋 Steps: {result.completed_steps}/{result.total_steps} completed")
    print(f"🔢 Seats: {result.results[2].data}")


if __name__ == "__main__":
    asyncio.run(main())
