"""
ORM Model for persisted due-at jobs.

Delays between workflow actions, escalation checks and booking retries are
rows in this table rather than sleeping tasks, so they survive restarts.
`dedupe_key` is unique: scheduling the same logical job twice is a no-op.
"""
import uuid
from sqlalchemy import Column, String, Text, Integer, JSON, Index

from ndr_backend.app.core.database import Base, UTCDateTime, utcnow


class ScheduledJobORM(Base):
    __tablename__ = "ndr_scheduled_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_type = Column(String(40), nullable=False)
    tenant_id = Column(String(50), nullable=False)
    failure_event_id = Column(String(36), nullable=True, index=True)
    return_event_id = Column(String(36), nullable=True, index=True)
    payload = Column(JSON, nullable=True)

    due_at = Column(UTCDateTime, nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending | claimed | completed | cancelled | failed
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    dedupe_key = Column(String(200), nullable=False, unique=True)

    claimed_by = Column(String(64), nullable=True)
    claimed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=True, onupdate=utcnow)

    __table_args__ = (
        Index("ix_ndr_scheduled_jobs_status_due", "status", "due_at"),
    )

    def __repr__(self):
        return f"<ScheduledJob {self.job_type} key={self.dedupe_key} status={self.status}>"
