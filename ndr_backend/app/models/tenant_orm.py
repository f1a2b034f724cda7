from sqlalchemy import Column, String, Integer, JSON

from ndr_backend.app.core.database import Base, UTCDateTime, utcnow


class TenantNDRConfigORM(Base):
    """
    Per-tenant NDR overrides. NULL columns fall back to platform settings.
    """
    __tablename__ = "ndr_tenant_configs"

    tenant_id = Column(String(50), primary_key=True)
    failure_statuses = Column(JSON, nullable=True)  # List[str]
    resolution_window_hours = Column(Integer, nullable=True)
    updated_at = Column(UTCDateTime, nullable=True, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<TenantNDRConfig {self.tenant_id}>"
