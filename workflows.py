"""
Temporal workflows for time-driven order lifecycle work.
DeadlineWatchWorkflow sleeps durably until one order's completion deadline and
then evaluates its lateness; LateOrdersSweepWorkflow periodically flags every
overdue order. Both complement the lazy lateness evaluation done on read.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from temporalio import workflow
from temporalio.common import RetryPolicy
from typing import Dict, Any, Optional

# Import activities, passing them through the sandbox without reloading the module
with workflow.unsafe.imports_passed_through():
    from activities import evaluate_lateness_activity, sweep_late_orders_activity

ACTIVITY_TIMEOUT = timedelta(seconds=30)

# Lateness is strictly "now > deadline"
DEADLINE_GRACE = timedelta(seconds=1)

retry_policy = RetryPolicy(
    initial_interval=timedelta(seconds=1),
    maximum_interval=timedelta(seconds=30),
    backoff_coefficient=2.0,
    maximum_attempts=10,
)

@workflow.defn
class DeadlineWatchWorkflow:
    """Started when a seller accepts an order with a completion deadline."""

    def __init__(self):
        self._order_id: str = ""
        self._deadline: str = ""
        self._current_step: str = "initialized"
        self._flagged_late: Optional[bool] = None

    @workflow.query
    def get_status(self) -> Dict[str, Any]:
        """Query to get current watch status."""
        return {
            "order_id": self._order_id,
            "deadline": self._deadline,
            "current_step": self._current_step,
            "flagged_late": self._flagged_late,
        }

    @workflow.run
    async def run(self, order_id: str, deadline: str) -> Dict[str, Any]:
        self._order_id = order_id
        self._deadline = deadline

        due = datetime.fromisoformat(deadline)
        if due.tzinfo is None:
            due = due.replace(tzinfo=timezone.utc)

        wait = due - workflow.now()
        if wait > timedelta(0):
            self._current_step = "waiting_for_deadline"
            workflow.logger.info(f"[DEADLINE] Order {order_id} due at {deadline}, sleeping {wait}")
            await workflow.sleep(wait + DEADLINE_GRACE)

        self._current_step = "evaluating_lateness"
        self._flagged_late = await workflow.execute_activity(
            evaluate_lateness_activity,
            args=[order_id],
            start_to_close_timeout=ACTIVITY_TIMEOUT,
            retry_policy=retry_policy,
        )

        self._current_step = "completed"
        if self._flagged_late:
            workflow.logger.info(f"[DEADLINE] Order {order_id} marked late")
        else:
            workflow.logger.info(f"[DEADLINE] Order {order_id} finished production in time or was already flagged")
        return {"order_id": order_id, "flagged_late": self._flagged_late}

@workflow.defn
class LateOrdersSweepWorkflow:
    """Periodic sweep over all orders in production."""

    # Sweeps per run before continuing as new to keep history bounded
    SWEEPS_PER_RUN = 500

    def __init__(self):
        self._sweeps: int = 0
        self._flagged_total: int = 0
        self._stop_requested: bool = False

    @workflow.signal
    def stop(self) -> None:
        """Signal to finish after the current sweep."""
        self._stop_requested = True

    @workflow.query
    def get_status(self) -> Dict[str, Any]:
        return {
            "sweeps": self._sweeps,
            "flagged_total": self._flagged_total,
            "stop_requested": self._stop_requested,
        }

    @workflow.run
    async def run(self, interval_seconds: int, max_sweeps: int = 0) -> Dict[str, Any]:
        """Sweep every `interval_seconds`; `max_sweeps=0` runs until stopped."""
        while True:
            flagged = await workflow.execute_activity(
                sweep_late_orders_activity,
                start_to_close_timeout=timedelta(minutes=5),
                retry_policy=retry_policy,
            )
            self._sweeps += 1
            self._flagged_total += flagged
            workflow.logger.info(f"[SWEEP] Sweep {self._sweeps} flagged {flagged} orders")

            if self._stop_requested or (max_sweeps and self._sweeps >= max_sweeps):
                return {"sweeps": self._sweeps, "flagged_total": self._flagged_total}

            if not max_sweeps and self._sweeps >= self.SWEEPS_PER_RUN:
                workflow.continue_as_new(args=[interval_seconds, 0])

            try:
                await workflow.wait_condition(
                    lambda: self._stop_requested,
                    timeout=timedelta(seconds=interval_seconds),
                )
            except asyncio.TimeoutError:
                pass
