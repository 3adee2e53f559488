"""
Temporal activities that call business functions.
Keep activities small: parameter unpacking, await the function, return its result.
"""
import logging
from temporalio import activity
from temporalio.exceptions import ApplicationError

import business_functions
from fulfillment import FulfillmentError

async def handle_lifecycle_call(func, *args, **kwargs):
    """Wrapper that stops Temporal from retrying a rejected lifecycle operation."""
    try:
        return await func(*args, **kwargs)
    except FulfillmentError as e:
        logging.info(f"Lifecycle operation rejected ({e.kind}/{e.guard}): {e.message}")
        raise ApplicationError(e.message, e.to_dict(), type=e.kind, non_retryable=True) from e

@activity.defn
async def evaluate_lateness_activity(order_id: str) -> bool:
    """Flag one order as late if its completion deadline has passed."""
    return await handle_lifecycle_call(business_functions.flag_if_late, order_id)

@activity.defn
async def sweep_late_orders_activity() -> int:
    """Flag every overdue order still in production."""
    return await handle_lifecycle_call(business_functions.sweep_late_orders)
