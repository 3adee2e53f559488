"""
Temporal worker for time-driven order lifecycle work.
Hosts the deadline watch and late-orders sweep workflows and their activities.
"""
import asyncio
import sys
import os
import logging

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from config import LOG_LEVEL, TASK_QUEUE, TEMPORAL_ADDRESS, TEMPORAL_NAMESPACE

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(levelname)s: %(message)s'
)
# show workflow logs but hide noise
logging.getLogger('temporalio').setLevel(logging.ERROR)
logging.getLogger('temporalio.worker').setLevel(logging.ERROR)
logging.getLogger('temporalio.client').setLevel(logging.ERROR)
logging.getLogger('temporalio.activity').setLevel(logging.ERROR)
logging.getLogger('temporalio.workflow').setLevel(logging.INFO)  # Show workflow logs

from temporalio.client import Client
from temporalio.worker import Worker

from activities import evaluate_lateness_activity, sweep_late_orders_activity
from database import init_db, close_db
from workflows import DeadlineWatchWorkflow, LateOrdersSweepWorkflow

async def main():
    """Run the fulfillment worker."""
    await init_db()
    client = await Client.connect(TEMPORAL_ADDRESS, namespace=TEMPORAL_NAMESPACE)

    worker = Worker(
        client,
        task_queue=TASK_QUEUE,
        workflows=[DeadlineWatchWorkflow, LateOrdersSweepWorkflow],
        activities=[evaluate_lateness_activity, sweep_late_orders_activity],
    )

    print(f"Starting Fulfillment Worker on task queue: {TASK_QUEUE}")
    try:
        await worker.run()
    finally:
        await close_db()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nWorker stopped by user")
    except Exception as e:
        print(f"Worker error: {e}")
        sys.exit(1)
