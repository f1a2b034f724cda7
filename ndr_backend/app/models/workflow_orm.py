"""
ORM Model for NDR workflow definitions.

`tenant_id` NULL marks the platform-wide default for a category. The full
validated definition is stored as JSON in `definition`.
"""
import uuid
from sqlalchemy import Column, String, Boolean, JSON, Index

from ndr_backend.app.core.database import Base, UTCDateTime, utcnow


class WorkflowDefinitionORM(Base):
    __tablename__ = "ndr_workflows"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(50), nullable=True, index=True)
    category = Column(String(32), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    definition = Column(JSON, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=True, onupdate=utcnow)

    __table_args__ = (
        Index("ix_ndr_workflows_category_tenant", "category", "tenant_id"),
    )

    def __repr__(self):
        return f"<WorkflowDefinition {self.name} category={self.category} tenant={self.tenant_id}>"
