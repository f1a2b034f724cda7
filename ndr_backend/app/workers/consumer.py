"""
Background Event Consumer.

Async task that runs alongside FastAPI, consuming events from the bus and
dispatching them to registered handlers. Decouples tracking-event intake from
detection.
"""
import asyncio

from ndr_backend.app.core.logging import get_logger
from ndr_backend.app.events.bus import get_event_bus
from ndr_backend.app.workers.handlers import handle_event

logger = get_logger(__name__)


async def event_consumer_loop() -> None:
    """
    Main event consumer loop.

    Waits for the next event, dispatches it, marks it done. Runs as a
    background asyncio.Task and never blocks the API.
    """
    logger.info("Event consumer started")
    bus = get_event_bus()

    try:
        while True:
            event = await bus.get()
            try:
                logger.debug(
                    f"Event dequeued: {event.event_type} "
                    f"(tenant={event.tenant_id}, id={event.event_id[:8]}..., "
                    f"queue_size={bus.qsize()})"
                )
                await handle_event(event)
            except Exception as e:
                logger.error(f"Consumer loop error: {e}", exc_info=True)
                # Keep consuming; one bad event must not stop intake
                await asyncio.sleep(0.1)
            finally:
                bus.task_done()

    except asyncio.CancelledError:
        logger.info("Event consumer cancelled")
        raise


async def start_event_consumer() -> asyncio.Task:
    """Start the event consumer as a background task."""
    task = asyncio.create_task(event_consumer_loop())
    # Give the consumer a moment to start
    await asyncio.sleep(0.1)
    return task
