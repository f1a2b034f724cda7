"""ORM Model for single-use address update magic-link tokens."""
from sqlalchemy import Column, String

from ndr_backend.app.core.database import Base, UTCDateTime, utcnow


class AddressUpdateTokenORM(Base):
    __tablename__ = "ndr_address_update_tokens"

    token_id = Column(String(36), primary_key=True)  # JWT jti
    shipment_id = Column(String(64), nullable=False, index=True)
    failure_event_id = Column(String(36), nullable=False, index=True)
    purpose = Column(String(32), nullable=False, default="address_update")
    issued_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=False)
    consumed_at = Column(UTCDateTime, nullable=True)

    def __repr__(self):
        return f"<AddressUpdateToken {self.token_id} consumed={self.consumed_at is not None}>"
