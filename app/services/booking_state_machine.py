"""
Booking Status State Machine

The single gate for booking status changes.

    pending   -> confirmed | cancelled
    confirmed -> seated | cancelled | no_show
    seated    -> completed | no_show

completed, cancelled and no_show are terminal. Cancelling is only possible
before the party is seated: once seated, a booking ends as completed or
no_show. Each transition is a compare-and-swap on the observed status and
writes a BookingStatusEvent.
"""

from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import and_
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ..models.booking import Booking, BookingStatus, BookingStatusEvent
from ..models.notification_outbox import NotificationEventType
from ..utils.clock import Clock, utcnow
from ..utils.db_helpers import retry_storage_reads
from ..utils.errors import (
    BookingNotFound,
    InvalidRequest,
    InvalidTransition,
    StorageUnavailable,
)
from ..utils.logging_config import get_logger
from ..utils.metrics import record_transition
from .notification_dispatcher import enqueue_notification

logger = get_logger(__name__)

S = BookingStatus

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    S.PENDING.value: frozenset({S.CONFIRMED.value, S.CANCELLED.value}),
    S.CONFIRMED.value: frozenset({S.SEATED.value, S.CANCELLED.value, S.NO_SHOW.value}),
    S.SEATED.value: frozenset({S.COMPLETED.value, S.NO_SHOW.value}),
    S.COMPLETED.value: frozenset(),
    S.CANCELLED.value: frozenset(),
    S.NO_SHOW.value: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)

LIFECYCLE_TIMESTAMPS = {
    S.CONFIRMED.value: "confirmed_at",
    S.SEATED.value: "seated_at",
    S.COMPLETED.value: "completed_at",
    S.CANCELLED.value: "cancelled_at",
    S.NO_SHOW.value: "no_show_at",
}

NOTIFY_ON = {
    (S.PENDING.value, S.CONFIRMED.value): NotificationEventType.BOOKING_CONFIRMED,
    (S.CONFIRMED.value, S.CANCELLED.value): NotificationEventType.BOOKING_CANCELLED,
}


def parse_status(value) -> str:
    if isinstance(value, BookingStatus):
        return value.value
    try:
        return BookingStatus(value).value
    except ValueError:
        raise InvalidRequest(f"Unknown booking status: {value}")


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def validate_transition(from_status: str, to_status: str) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidTransition(f"Cannot move booking from {from_status} to {to_status}")


class BookingStateMachine:
    # Re-read and re-validate this many times when the CAS loses a race
    MAX_CAS_ATTEMPTS = 3

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or utcnow

    @retry_storage_reads
    def get_booking(self, booking_id: str, tenant_id: str) -> Booking:
        """Tenant-scoped read; other tenants' bookings do not exist here"""
        booking = self.db.query(Booking).filter(
            and_(
                Booking.id == booking_id,
                Booking.tenant_id == tenant_id,
            )
        ).populate_existing().first()
        if booking is None:
            raise BookingNotFound(f"Booking {booking_id} not found for tenant {tenant_id}")
        return booking

    def history(self, booking_id: str, tenant_id: str) -> List[BookingStatusEvent]:
        """Audit trail, oldest first"""
        self.get_booking(booking_id, tenant_id)
        return self._events(booking_id, tenant_id)

    @retry_storage_reads
    def _events(self, booking_id: str, tenant_id: str) -> List[BookingStatusEvent]:
        return self.db.query(BookingStatusEvent).filter(
            and_(
                BookingStatusEvent.booking_id == booking_id,
                BookingStatusEvent.tenant_id == tenant_id,
            )
        ).order_by(BookingStatusEvent.created_at, BookingStatusEvent.id).all()

    def transition(
        self,
        booking_id: str,
        tenant_id: str,
        target_status,
        actor: str,
        reason: Optional[str] = None,
    ) -> Booking:
        """
        Move a booking to target_status.

        Raises:
            InvalidRequest: unknown status or missing actor
            BookingNotFound: no such booking for this tenant
            InvalidTransition: target not reachable from the current status
        """
        target = parse_status(target_status)
        if not actor or not str(actor).strip():
            raise InvalidRequest("actor is required")

        for attempt in range(self.MAX_CAS_ATTEMPTS):
            booking = self.get_booking(booking_id, tenant_id)
            current = booking.status
            validate_transition(current, target)

            now = self.clock()
            values = {Booking.status: target, Booking.updated_at: now}
            timestamp_field = LIFECYCLE_TIMESTAMPS.get(target)
            if timestamp_field:
                values[getattr(Booking, timestamp_field)] = now

            try:
                updated = self.db.query(Booking).filter(
                    and_(
                        Booking.id == booking_id,
                        Booking.tenant_id == tenant_id,
                        Booking.status == current,
                    )
                ).update(values, synchronize_session=False)

                if updated != 1:
                    self.db.rollback()
                    logger.info(f"Booking {booking_id} changed under us (attempt {attempt + 1}), re-reading")
                    continue

                self.db.add(BookingStatusEvent(
                    booking_id=booking_id,
                    tenant_id=tenant_id,
                    from_status=current,
                    to_status=target,
                    actor=str(actor).strip(),
                    reason=reason,
                    created_at=now,
                ))
                self.db.commit()
            except OperationalError as e:
                self.db.rollback()
                logger.error(f"Storage error during transition of {booking_id}: {e}")
                raise StorageUnavailable(str(e)) from e

            booking = self.get_booking(booking_id, tenant_id)
            record_transition(current, target)
            logger.booking_status_changed(booking_id, current, target, actor)

            self._notify(booking, current, target)
            return booking

        raise InvalidTransition(f"Booking {booking_id} kept changing concurrently, giving up")

    def _notify(self, booking: Booking, from_status: str, to_status: str) -> None:
        """Queue a notification; failure here never undoes the transition"""
        event_type = NOTIFY_ON.get((from_status, to_status))
        if event_type is None:
            return
        try:
            enqueue_notification(self.db, booking, event_type, clock=self.clock)
        except Exception as e:
            self.db.rollback()
            logger.warning(f"Failed to queue {event_type.value} for booking {booking.id}: {e}")
