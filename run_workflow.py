"""
Starts the periodic late-orders sweep on the fulfillment task queue.
Pass a number of sweeps to run a bounded sweep and wait for its result,
e.g. `python run_workflow.py 1` for a one-off check.
"""
import asyncio
import sys
import os

# Add the current directory to Python path for imports
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from temporalio.client import Client
from temporalio.common import WorkflowIDReusePolicy

from config import LATE_SWEEP_INTERVAL_SECONDS, TASK_QUEUE, TEMPORAL_ADDRESS, TEMPORAL_NAMESPACE
from workflows import LateOrdersSweepWorkflow

SWEEP_WORKFLOW_ID = "late-orders-sweep"

async def main(max_sweeps: int = 0):
    """Start the LateOrdersSweepWorkflow."""
    print("Starting late-orders sweep")
    print("-" * 50)

    client = await Client.connect(TEMPORAL_ADDRESS, namespace=TEMPORAL_NAMESPACE)

    try:
        handle = await client.start_workflow(
            LateOrdersSweepWorkflow.run,
            args=[LATE_SWEEP_INTERVAL_SECONDS, max_sweeps],
            id=SWEEP_WORKFLOW_ID if not max_sweeps else f"{SWEEP_WORKFLOW_ID}-bounded",
            task_queue=TASK_QUEUE,
            id_reuse_policy=WorkflowIDReusePolicy.ALLOW_DUPLICATE,
        )
        print(f"Workflow started with ID: {handle.id}")

        if max_sweeps:
            print("Waiting for sweep completion...")
            result = await handle.result()
            print(f"Result: {result}")
        else:
            print(f"Sweeping every {LATE_SWEEP_INTERVAL_SECONDS}s until stopped")

    except Exception as e:
        print(f"Workflow failed: {e}")
        return 1

    return 0

if __name__ == "__main__":
    try:
        sweeps = int(sys.argv[1]) if len(sys.argv) > 1 else 0
        exit_code = asyncio.run(main(sweeps))
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nStopped by user")
        sys.exit(1)
    except ValueError:
        print("Usage: python run_workflow.py [max_sweeps]")
        sys.exit(2)
