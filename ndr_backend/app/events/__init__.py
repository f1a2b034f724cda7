"""
Event bus and schemas for the NDR resolution engine.

Tracking updates are accepted by the API, published on the bus and consumed
by a background task that runs detection. All events carry tenant_id.
"""

from ndr_backend.app.events.schemas import (
    BaseEvent,
    TrackingEventReceived,
)

__all__ = [
    "BaseEvent",
    "TrackingEventReceived",
]
