"""
Idempotency Record Model

Maps (tenant_id, idempotency_key) to the booking a confirmation produced and
the exact response payload, so a retried confirmation returns the original
result without side effects.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, JSON, Index, UniqueConstraint
from ..database import Base


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    idempotency_key = Column(String(255), nullable=False)

    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    request_fingerprint = Column(String(64), nullable=True)  # SHA256 of the hold id
    response_json = Column(JSON, nullable=False)
    status_code = Column(Integer, default=200)

    created_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_idempotency_tenant_key"),
        Index("ix_idempotency_expires", "expires_at"),
    )

    def __repr__(self):
        return f"<IdempotencyRecord {self.tenant_id}:{self.idempotency_key}>"
