"""
Event schema definitions for the NDR event bus.

All events follow a canonical schema with a mandatory tenant_id so tenant
isolation holds across the whole processing pipeline.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

from ndr_backend.app.schemas.ndr import TrackingUpdate


class BaseEvent(BaseModel):
    """
    Base event schema with mandatory tenant isolation fields.

    Every domain event extends this class:
    - Unique event tracking (event_id, trace_id)
    - Tenant isolation (tenant_id is REQUIRED, no default)
    - Temporal tracking (timestamp)
    - Event categorization (event_type)
    """
    model_config = ConfigDict(use_enum_values=True)

    event_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique event identifier (UUID)"
    )

    tenant_id: str = Field(
        ...,  # Required, no default
        description="Tenant identifier for isolation. Must be provided at event creation."
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp when event was created"
    )

    event_type: str = Field(
        description="Event type discriminator (e.g., 'tracking_event_received')"
    )

    trace_id: Optional[str] = Field(
        default=None,
        description="Correlation ID of the request that produced the event"
    )


class TrackingEventReceived(BaseEvent):
    """
    Emitted when a carrier tracking update is accepted by the tracking API.

    Consumed by the detection handler.
    """

    event_type: str = Field(default="tracking_event_received", frozen=True)

    update: TrackingUpdate = Field(
        description="Carrier tracking update as received"
    )
