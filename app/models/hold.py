"""
Booking Hold Model

A hold is a short-lived reservation of one slot. It is consumed exactly once
by a confirmation or expires after its TTL; both end states are terminal.

Concurrency:
- Partial unique index on (tenant_id, table_id, slot_time) for ACTIVE bound
  holds, so two racing inserts cannot both succeed
- Every status change is a conditional UPDATE on status = 'active'
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Index, text
from ..database import Base
import enum


class HoldStatus(str, enum.Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    EXPIRED = "expired"


class BookingHold(Base):
    __tablename__ = "booking_holds"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    table_id = Column(String(36), ForeignKey("restaurant_tables.id", ondelete="SET NULL"), nullable=True)

    party_size = Column(Integer, nullable=False)
    slot_time = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)  # slot_time + seating duration

    status = Column(String(20), default=HoldStatus.ACTIVE.value, nullable=False)

    # Caller key of the hold request (optional replay protection)
    request_key = Column(String(255), nullable=True)
    # Idempotency key of the confirmation that consumed this hold
    consumed_by_key = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_booking_holds_active_table_slot",
            "tenant_id", "table_id", "slot_time",
            unique=True,
            postgresql_where=text("status = 'active' AND table_id IS NOT NULL"),
            sqlite_where=text("status = 'active' AND table_id IS NOT NULL"),
        ),
        Index("uq_booking_holds_request_key", "tenant_id", "request_key", unique=True),
        Index("ix_booking_holds_status_expires", "status", "expires_at"),
        Index("ix_booking_holds_tenant_window", "tenant_id", "slot_time", "ends_at"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == HoldStatus.ACTIVE.value

    def is_expired_at(self, now: datetime) -> bool:
        return self.expires_at <= now

    def __repr__(self):
        return f"<BookingHold {self.id} {self.status} slot={self.slot_time}>"
