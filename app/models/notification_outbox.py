"""
Notification Outbox Model

Queue of booking notifications (confirmed / cancelled) handed to the
external notification system. Rows are written after the status change is
committed and drained by the background worker; delivery failures never
affect the booking itself.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Integer, Text, DateTime, JSON, Index
from ..database import Base
import enum


class NotificationStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"  # Claimed by a dispatcher until next_attempt_at
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"  # No dispatcher configured


class NotificationEventType(str, enum.Enum):
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False)
    booking_id = Column(String(36), nullable=False)
    event_type = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=False)

    status = Column(String(20), default=NotificationStatus.PENDING.value, nullable=False)
    attempts = Column(Integer, default=0)
    max_attempts = Column(Integer, default=5)
    next_attempt_at = Column(DateTime, default=datetime.utcnow)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    sent_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_notification_outbox_pending", "status", "next_attempt_at"),
        Index("ix_notification_outbox_booking", "booking_id"),
    )

    def __repr__(self):
        return f"<NotificationOutbox {self.event_type} {self.status}>"
