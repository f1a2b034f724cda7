"""
ORM Model for NDR Failure Events.

One row per delivery failure episode of a shipment. `open_shipment_key`
holds the tenant-scoped shipment key while the row is non-terminal and is NULL afterwards;
its unique index keeps at most one open episode per shipment.
Every lifecycle write is version-checked (see FailureEventRepository).
"""
import uuid
from sqlalchemy import Column, String, Text, Integer, Boolean, JSON, Index

from ndr_backend.app.core.database import Base, UTCDateTime, utcnow


class FailureEventORM(Base):
    __tablename__ = "ndr_failure_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(50), nullable=False, index=True)
    shipment_id = Column(String(64), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False, default=1)

    # Carrier payload
    raw_reason = Column(String(128), nullable=False)
    remarks = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    raw_signature = Column(String(64), nullable=False)
    carrier_events = Column(JSON, nullable=True)  # List[{status, remarks, location, occurred_at, signature}]

    # Classification
    classified_category = Column(String(32), nullable=False, default="other", index=True)
    classification_explanation = Column(Text, nullable=True)
    classification_source = Column(String(32), nullable=True)

    # Lifecycle
    status = Column(String(30), nullable=False, default="detected", index=True)
    detected_at = Column(UTCDateTime, nullable=False, default=utcnow)
    resolution_deadline = Column(UTCDateTime, nullable=False, index=True)
    last_event_at = Column(UTCDateTime, nullable=True)
    open_shipment_key = Column(String(128), nullable=True, unique=True)  # "{tenant_id}:{shipment_id}"
    version = Column(Integer, nullable=False, default=1)

    # Workflow progress
    workflow_snapshot = Column(JSON, nullable=True)
    actions_taken = Column(JSON, nullable=True)  # List[ActionRecord]
    customer_contacted = Column(Boolean, nullable=False, default=False)

    escalated_at = Column(UTCDateTime, nullable=True)
    escalation_notified_at = Column(UTCDateTime, nullable=True)
    resolved_at = Column(UTCDateTime, nullable=True)
    resolution = Column(String(255), nullable=True)
    resolved_by = Column(String(255), nullable=True)
    rto_triggered_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=True, onupdate=utcnow)

    __table_args__ = (
        Index("ix_ndr_failure_events_status_deadline", "status", "resolution_deadline"),
    )

    def __repr__(self):
        return f"<FailureEvent {self.id} shipment={self.shipment_id} status={self.status} v{self.version}>"
