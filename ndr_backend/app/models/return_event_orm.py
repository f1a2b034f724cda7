"""
ORM Model for RTO (Return-To-Origin) events.

At most one ReturnEvent exists per originating failure event; the unique
constraint is what makes RTO escalation idempotent under concurrency.
"""
import uuid
from sqlalchemy import Column, String, Text, Integer, Numeric, JSON

from ndr_backend.app.core.database import Base, UTCDateTime, utcnow


class ReturnEventORM(Base):
    __tablename__ = "ndr_return_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(50), nullable=False, index=True)
    shipment_id = Column(String(64), nullable=False, index=True)
    originating_failure_event_id = Column(String(36), nullable=False, unique=True)

    triggered_by = Column(String(32), nullable=False)  # workflow_action | deadline_sweep | manual
    reason = Column(String(255), nullable=False)

    # Reverse pickup booking; ref stays NULL until the carrier confirms
    reverse_shipment_ref = Column(String(128), nullable=True)
    charges = Column(Numeric(12, 2), nullable=True)
    booking_status = Column(String(32), nullable=False, default="pending_booking", index=True)
    booking_error = Column(Text, nullable=True)
    booking_attempts = Column(Integer, nullable=False, default=0)

    return_status = Column(String(32), nullable=False, default="initiated", index=True)
    expected_return_date = Column(UTCDateTime, nullable=True)
    actual_return_date = Column(UTCDateTime, nullable=True)

    qc_outcome = Column(JSON, nullable=True)  # {passed, remarks, inspected_by, inspected_at}

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=True, onupdate=utcnow)

    def __repr__(self):
        return f"<ReturnEvent {self.id} shipment={self.shipment_id} booking={self.booking_status}>"
