"""Helpers for background asyncio tasks."""

import asyncio
import logging

logger = logging.getLogger(__name__)


async def cancel_and_wait(task: asyncio.Task) -> None:
    """Cancel a task and wait until it has finished.

    Only the task's own cancellation is absorbed. A cancellation aimed at the
    caller while it waits still propagates. An exception the task raised
    instead of being cancelled is retrieved and logged.
    """
    if not task.done():
        task.cancel()
    await asyncio.wait({task})
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Task %s ended with an error", task.get_name(), exc_info=task.exception())
