"""
Audit Trail ORM Model.

Append-only record of every manual and automated lifecycle change of a
failure event or its return shipment.
"""
import uuid
from sqlalchemy import Column, String, Text

from ndr_backend.app.core.database import Base, UTCDateTime, utcnow


class NDRAuditEntryORM(Base):
    __tablename__ = "ndr_audit_entries"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    failure_event_id = Column(String(36), index=True, nullable=False)
    tenant_id = Column(String(50), nullable=False, index=True)

    timestamp = Column(UTCDateTime, default=utcnow, nullable=False)
    action = Column(String(100), nullable=False)
    action_type = Column(String(50), nullable=False)  # human | automated
    actor = Column(String(255), nullable=False)
    details = Column(Text, nullable=True)

    trace_id = Column(String(128), nullable=True)

    def __repr__(self):
        return f"<NDRAuditEntry {self.action} by {self.actor} for {self.failure_event_id}>"
