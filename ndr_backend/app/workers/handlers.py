"""
Handler registry for the NDR event bus.

Maps event types to handler coroutines. Handlers consume events from the bus
and run the domain processing for them.
"""
from typing import Callable, Dict, Optional

from ndr_backend.app.core.logging import correlation_id_ctx, get_logger, tenant_id_ctx
from ndr_backend.app.events.schemas import BaseEvent, TrackingEventReceived
from ndr_backend.app.services.wiring import get_services

logger = get_logger(__name__)

# Handler registry: event_type -> handler function
_handlers: Dict[str, Callable] = {}


def register_handler(event_type: str, handler: Callable) -> None:
    _handlers[event_type] = handler
    logger.info(f"Handler registered: {event_type} -> {handler.__name__}")


def get_handler(event_type: str) -> Optional[Callable]:
    return _handlers.get(event_type)


def has_handler(event_type: str) -> bool:
    return event_type in _handlers


async def handle_event(event: BaseEvent) -> None:
    """Dispatch event to registered handler."""
    handler = get_handler(event.event_type)
    if not handler:
        logger.debug(f"No handler for event type: {event.event_type}")
        return

    corr_token = correlation_id_ctx.set(event.trace_id or event.event_id)
    tenant_token = tenant_id_ctx.set(event.tenant_id)
    try:
        await handler(event)
        logger.debug(f"Event handled: {event.event_type} (id={event.event_id[:8]}...)")
    except Exception as e:
        logger.error(f"Handler failed for {event.event_type}: {e}", exc_info=True)
    finally:
        tenant_id_ctx.reset(tenant_token)
        correlation_id_ctx.reset(corr_token)


async def tracking_event_handler(event: TrackingEventReceived) -> None:
    """Run NDR detection for an accepted tracking update."""
    result = await get_services().detection.process(event.update, event.tenant_id)
    logger.info(
        f"Tracking event for {event.update.shipment_id}: {result.outcome.value}",
        extra={"extra_data": {"failure_event_id": result.failure_event_id}},
    )


register_handler("tracking_event_received", tracking_event_handler)
