"""RTO (Return-To-Origin) schemas."""
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class ReturnStatus(str, Enum):
    INITIATED = "initiated"
    IN_TRANSIT = "in_transit"
    DELIVERED_TO_WAREHOUSE = "delivered_to_warehouse"
    QC_PENDING = "qc_pending"
    QC_COMPLETED = "qc_completed"


# Forward-only physical return progression
RETURN_STATUS_ORDER = [
    ReturnStatus.INITIATED,
    ReturnStatus.IN_TRANSIT,
    ReturnStatus.DELIVERED_TO_WAREHOUSE,
    ReturnStatus.QC_PENDING,
    ReturnStatus.QC_COMPLETED,
]

QC_ALLOWED_STATUSES = frozenset({ReturnStatus.DELIVERED_TO_WAREHOUSE.value, ReturnStatus.QC_PENDING.value})


class BookingStatus(str, Enum):
    PENDING_BOOKING = "pending_booking"
    BOOKED = "booked"
    BOOKING_FAILED = "booking_failed"


RTO_REASON_TEXT = {
    "ndr_unresolved": "Delivery attempts exhausted",
    "max_attempts_reached": "Delivery attempts exhausted",
    "max_duration_exceeded": "Resolution window exceeded",
    "deadline_exceeded": "Resolution window exceeded",
    "refused": "Delivery refused by customer",
    "customer_cancellation": "Order cancelled by customer",
    "other": "Unable to complete delivery",
}


def rto_reason_text(reason: str) -> str:
    return RTO_REASON_TEXT.get(reason, "Unable to complete delivery")


class ReturnEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    shipment_id: str
    originating_failure_event_id: str
    triggered_by: str
    reason: str
    reverse_shipment_ref: Optional[str] = None
    charges: Optional[Decimal] = None
    booking_status: BookingStatus
    booking_error: Optional[str] = None
    booking_attempts: int
    return_status: ReturnStatus
    expected_return_date: Optional[datetime] = None
    actual_return_date: Optional[datetime] = None
    qc_outcome: Optional[Dict[str, Any]] = None
    created_at: datetime


class ReturnStatusUpdate(BaseModel):
    status: ReturnStatus
    occurred_at: Optional[datetime] = None


class QCResultRequest(BaseModel):
    passed: bool
    remarks: Optional[str] = Field(default=None, max_length=1000)
    inspected_by: Optional[str] = None
