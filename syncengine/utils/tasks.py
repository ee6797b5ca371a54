"""Fire-and-forget task helper."""

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)

# Strong references so running tasks are not garbage collected
_background_tasks: set[asyncio.Task] = set()


def create_background_task(coro: Coroutine[Any, Any, Any], task_name: str = "background_task") -> asyncio.Task:
    """Schedule ``coro`` and log, rather than lose, anything it raises."""
    async def _run():
        try:
            await coro
        except Exception as e:
            logger.exception(f"Background task '{task_name}' failed: {e}")

    task = asyncio.create_task(_run(), name=task_name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
