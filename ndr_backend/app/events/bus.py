"""
In-Memory Event Bus.

asyncio.Queue-based bus that decouples tracking-event intake from detection.

Task-safe, not thread-safe.
Global instance: one queue shared across the FastAPI application lifecycle.
"""
import asyncio
from typing import Any

from ndr_backend.app.core.logging import get_logger
from ndr_backend.app.events.schemas import BaseEvent

logger = get_logger(__name__)

# Global event queue, initialized in app lifespan
_event_bus: Any = None


def get_event_bus() -> asyncio.Queue:
    """
    Get the global event bus queue.

    Raises RuntimeError if bus not initialized.
    """
    if _event_bus is None:
        raise RuntimeError(
            "Event bus not initialized. Call initialize_event_bus() on app startup."
        )
    return _event_bus


def initialize_event_bus(maxsize: int = 10000) -> asyncio.Queue:
    """
    Initialize the global event bus (called during app startup).

    Args:
        maxsize: Maximum queue size (0 = unlimited)

    Returns:
        The initialized asyncio.Queue instance
    """
    global _event_bus
    _event_bus = asyncio.Queue(maxsize=maxsize)
    logger.info(f"Event bus initialized with maxsize={maxsize}")
    return _event_bus


async def publish_event(event: BaseEvent) -> None:
    """
    Publish an event to the bus.

    Raises:
        asyncio.QueueFull: If queue is at capacity
        RuntimeError: If bus not initialized
    """
    bus = get_event_bus()
    try:
        bus.put_nowait(event)
        logger.debug(
            f"Event published: {event.event_type} (tenant={event.tenant_id}, "
            f"id={event.event_id[:8]}..., queue_size={bus.qsize()})"
        )
    except asyncio.QueueFull:
        logger.warning(
            f"Event bus full! Dropped event: {event.event_type} "
            f"(tenant={event.tenant_id}, id={event.event_id[:8]}...)"
        )
        raise
