"""
Tests for Temporal workflows and the activities they run.
"""
import uuid
from datetime import timedelta
from unittest.mock import patch, AsyncMock

import pytest
from temporalio import activity
from temporalio.exceptions import ApplicationError
from temporalio.testing import WorkflowEnvironment
from temporalio.worker import Worker

from activities import evaluate_lateness_activity, sweep_late_orders_activity
from fulfillment import NotFound
from workflows import DeadlineWatchWorkflow, LateOrdersSweepWorkflow

lateness_checks = []


# Mock activities registered under the real activity names
@activity.defn(name="evaluate_lateness_activity")
async def mock_evaluate_lateness(order_id: str) -> bool:
    lateness_checks.append(order_id)
    return True


@activity.defn(name="sweep_late_orders_activity")
async def mock_sweep_late_orders() -> int:
    return 2


async def start_env():
    try:
        return await WorkflowEnvironment.start_time_skipping()
    except Exception as e:
        pytest.skip(f"Temporal test server unavailable: {e}")


@pytest.mark.asyncio
async def test_deadline_watch_evaluates_after_deadline():
    """The watch sleeps until the deadline, then flags the order."""
    lateness_checks.clear()
    task_queue_name = str(uuid.uuid4())

    env = await start_env()
    async with env:
        deadline = (await env.get_current_time()) + timedelta(days=3)
        async with Worker(
            env.client,
            task_queue=task_queue_name,
            workflows=[DeadlineWatchWorkflow],
            activities=[mock_evaluate_lateness],
        ):
            result = await env.client.execute_workflow(
                DeadlineWatchWorkflow.run,
                args=["order-1", deadline.isoformat()],
                id=str(uuid.uuid4()),
                task_queue=task_queue_name,
            )

            assert result == {"order_id": "order-1", "flagged_late": True}
            assert lateness_checks == ["order-1"]
            assert (await env.get_current_time()) >= deadline


@pytest.mark.asyncio
async def test_deadline_watch_past_deadline_checks_immediately():
    lateness_checks.clear()
    task_queue_name = str(uuid.uuid4())

    env = await start_env()
    async with env:
        deadline = (await env.get_current_time()) - timedelta(hours=1)
        async with Worker(
            env.client,
            task_queue=task_queue_name,
            workflows=[DeadlineWatchWorkflow],
            activities=[mock_evaluate_lateness],
        ):
            result = await env.client.execute_workflow(
                DeadlineWatchWorkflow.run,
                args=["order-2", deadline.isoformat()],
                id=str(uuid.uuid4()),
                task_queue=task_queue_name,
            )

            assert result["flagged_late"] is True
            assert lateness_checks == ["order-2"]


@pytest.mark.asyncio
async def test_bounded_sweep():
    """A bounded sweep runs the requested number of sweeps and totals the flags."""
    task_queue_name = str(uuid.uuid4())

    env = await start_env()
    async with env:
        async with Worker(
            env.client,
            task_queue=task_queue_name,
            workflows=[LateOrdersSweepWorkflow],
            activities=[mock_sweep_late_orders],
        ):
            result = await env.client.execute_workflow(
                LateOrdersSweepWorkflow.run,
                args=[60, 3],
                id=str(uuid.uuid4()),
                task_queue=task_queue_name,
            )

            assert result == {"sweeps": 3, "flagged_total": 6}


@pytest.mark.asyncio
async def test_sweep_stops_on_signal():
    task_queue_name = str(uuid.uuid4())

    env = await start_env()
    async with env:
        async with Worker(
            env.client,
            task_queue=task_queue_name,
            workflows=[LateOrdersSweepWorkflow],
            activities=[mock_sweep_late_orders],
        ):
            handle = await env.client.start_workflow(
                LateOrdersSweepWorkflow.run,
                args=[3600, 0],
                id=str(uuid.uuid4()),
                task_queue=task_queue_name,
            )
            await handle.signal(LateOrdersSweepWorkflow.stop)
            result = await handle.result()

            assert result["sweeps"] >= 1
            assert result["flagged_total"] == 2 * result["sweeps"]


@pytest.mark.asyncio
async def test_activity_passes_result_through():
    with patch("business_functions.flag_if_late", new=AsyncMock(return_value=True)) as flag:
        assert await evaluate_lateness_activity("order-3") is True
    flag.assert_awaited_once_with("order-3")

    with patch("business_functions.sweep_late_orders", new=AsyncMock(return_value=4)):
        assert await sweep_late_orders_activity() == 4


@pytest.mark.asyncio
async def test_rejected_operation_is_not_retried():
    missing = NotFound("Order order-4 not found", guard="unknown_order", order_id="order-4")

    with patch("business_functions.flag_if_late", new=AsyncMock(side_effect=missing)):
        with pytest.raises(ApplicationError) as exc:
            await evaluate_lateness_activity("order-4")

    assert exc.value.non_retryable is True
    assert exc.value.type == "not_found"
    assert exc.value.details[0]["guard"] == "unknown_order"
