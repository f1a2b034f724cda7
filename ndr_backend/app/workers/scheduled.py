"""Simple asyncio scheduler for periodic tasks (deadline sweep, stale job claims)."""
import asyncio
from typing import Callable

from ndr_backend.app.core.logging import get_logger

logger = get_logger(__name__)


async def _periodic_task(interval_seconds: float, coro: Callable, *args, **kwargs):
    while True:
        try:
            await coro(*args, **kwargs)
        except Exception as e:
            logger.error(f"Scheduled task {getattr(coro, '__name__', coro)} error: {e}", exc_info=True)
        await asyncio.sleep(interval_seconds)


def start_scheduler(interval_seconds: float, coro: Callable, *args, **kwargs) -> asyncio.Task:
    """Start periodic coro as background task and return the task."""
    task = asyncio.create_task(_periodic_task(interval_seconds, coro, *args, **kwargs))
    return task
