import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, Text, ForeignKey, DateTime, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SEATED = "seated"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


# Statuses that keep a table occupied for availability purposes
OCCUPYING_STATUSES = (
    BookingStatus.PENDING.value,
    BookingStatus.CONFIRMED.value,
    BookingStatus.SEATED.value,
)


class BookingSource(str, enum.Enum):
    """Where the booking came from"""
    WIDGET = "widget"
    DASHBOARD = "dashboard"
    API = "api"


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    hold_id = Column(String(36), ForeignKey("booking_holds.id", ondelete="SET NULL"), nullable=True)
    table_id = Column(String(36), ForeignKey("restaurant_tables.id", ondelete="SET NULL"), nullable=True)

    guest_name = Column(String(200), nullable=False)
    guest_first_name = Column(String(100), nullable=True)
    guest_last_name = Column(String(100), nullable=True)
    guest_email = Column(String(255), nullable=True)
    guest_phone = Column(String(20), nullable=True)
    special_requests = Column(Text, nullable=True)

    party_size = Column(Integer, nullable=False)
    booking_time = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)

    status = Column(String(20), default=BookingStatus.PENDING.value, nullable=False)
    confirmation_number = Column(String(20), nullable=False)
    idempotency_key = Column(String(255), nullable=False)
    source = Column(String(30), default=BookingSource.WIDGET.value)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Lifecycle timestamps, set by the state machine
    confirmed_at = Column(DateTime, nullable=True)
    seated_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    no_show_at = Column(DateTime, nullable=True)

    status_events = relationship(
        "BookingStatusEvent",
        back_populates="booking",
        order_by="BookingStatusEvent.created_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_bookings_tenant_idempotency_key"),
        UniqueConstraint("tenant_id", "confirmation_number", name="uq_bookings_tenant_confirmation"),
        UniqueConstraint("hold_id", name="uq_bookings_hold"),
        Index("ix_bookings_tenant_time", "tenant_id", "booking_time"),
        Index("ix_bookings_table_window", "table_id", "booking_time", "ends_at"),
        Index("ix_bookings_status", "status"),
    )

    def __repr__(self):
        return f"<Booking {self.confirmation_number} {self.status} - {self.booking_time}>"


class BookingStatusEvent(Base):
    """Audit trail of every status change (from_status is None on creation)"""
    __tablename__ = "booking_status_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    tenant_id = Column(String(36), nullable=False)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    actor = Column(String(100), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    booking = relationship("Booking", back_populates="status_events")

    __table_args__ = (
        Index("ix_booking_status_events_booking", "booking_id", "created_at"),
    )

    def __repr__(self):
        return f"<BookingStatusEvent {self.from_status} -> {self.to_status} by {self.actor}>"
