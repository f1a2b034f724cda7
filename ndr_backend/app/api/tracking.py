"""
Carrier Tracking Intake API.

Accepts tracking updates and queues them on the event bus; detection runs in
the background consumer so carriers get a fast 202.
"""
import asyncio
from typing import List

from fastapi import APIRouter, HTTPException, Security, status

from ndr_backend.app.core.logging import correlation_id_ctx, get_logger
from ndr_backend.app.core.security import TRACKING_WRITE, User, get_current_user, tenant_for
from ndr_backend.app.events.bus import publish_event
from ndr_backend.app.events.schemas import TrackingEventReceived
from ndr_backend.app.schemas.ndr import TrackingUpdate

logger = get_logger(__name__)
router = APIRouter()


@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def ingest_tracking_events(
    updates: List[TrackingUpdate],
    current_user: User = Security(get_current_user, scopes=[TRACKING_WRITE]),
):
    """Queue a batch of carrier tracking updates for NDR detection."""
    tenant_id = tenant_for(current_user)
    event_ids = []
    for update in updates:
        event = TrackingEventReceived(
            tenant_id=tenant_id,
            update=update,
            trace_id=correlation_id_ctx.get(),
        )
        try:
            await publish_event(event)
        except asyncio.QueueFull:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Tracking intake is saturated; {len(event_ids)} of {len(updates)} events accepted",
            )
        event_ids.append(event.event_id)

    logger.info(f"Accepted {len(event_ids)} tracking events", extra={"extra_data": {"tenant_id": tenant_id}})
    return {"accepted": len(event_ids), "event_ids": event_ids}
