"""
Notification Dispatcher

Booking notifications (confirmed / cancelled) go through an outbox:
- enqueue_notification() writes a NotificationOutbox row
- NotificationDispatcher drains pending rows and POSTs them to
  NOTIFICATION_WEBHOOK_URL with httpx

Delivery is fire-and-forget from the booking's point of view: failures are
retried with exponential backoff and never touch the booking.
"""

import logging
from datetime import timedelta
from typing import Dict, Optional

import httpx
from sqlalchemy import and_
from sqlalchemy.orm import Session

from ..config import settings
from ..database import SessionLocal
from ..models.booking import Booking
from ..models.notification_outbox import NotificationOutbox, NotificationStatus, NotificationEventType
from ..utils.clock import Clock, utcnow
from ..utils.db_helpers import get_pending_with_skip_locked
from ..utils.metrics import record_notification

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 3600

# A claimed row left in processing past this is picked up again
PROCESSING_LEASE_SECONDS = 300


def build_payload(booking: Booking, event_type: str) -> Dict:
    return {
        "event": event_type,
        "booking_id": booking.id,
        "tenant_id": booking.tenant_id,
        "confirmation_number": booking.confirmation_number,
        "status": booking.status,
        "booking_time": booking.booking_time.isoformat() + "Z" if booking.booking_time else None,
        "party_size": booking.party_size,
        "guest_name": booking.guest_name,
        "guest_email": booking.guest_email,
        "guest_phone": booking.guest_phone,
    }


def enqueue_notification(
    db: Session,
    booking: Booking,
    event_type: NotificationEventType,
    clock: Optional[Clock] = None,
    commit: bool = True,
) -> NotificationOutbox:
    """Queue a notification for a booking event"""
    now = (clock or utcnow)()
    event_value = event_type.value if isinstance(event_type, NotificationEventType) else event_type

    event = NotificationOutbox(
        tenant_id=booking.tenant_id,
        booking_id=booking.id,
        event_type=event_value,
        payload=build_payload(booking, event_value),
        status=NotificationStatus.PENDING.value,
        attempts=0,
        max_attempts=settings.notification_max_attempts,
        next_attempt_at=now,
        created_at=now,
    )
    db.add(event)
    if commit:
        db.commit()

    logger.info(f"Queued {event_value} notification for booking {booking.id}")
    return event


def backoff_seconds(attempts: int) -> int:
    """Delay after the n-th failed attempt: 60s, 120s, 240s ... capped at one hour"""
    return min((2 ** attempts) * 30, MAX_BACKOFF_SECONDS)


class NotificationDispatcher:
    """
    Drains the notification outbox.

    Runs from the background scheduler; several workers may run at once.
    Due rows are selected with SKIP LOCKED on PostgreSQL and marked
    processing in the same transaction, so a batch stays claimed while it
    is being sent. A worker that dies mid-batch leaves its rows to be
    reclaimed once the lease runs out.
    """

    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        client: Optional[httpx.Client] = None,
        webhook_url: Optional[str] = None,
    ):
        self.db = db
        self.clock = clock or utcnow
        self.client = client
        self.webhook_url = webhook_url if webhook_url is not None else settings.notification_webhook_url

    def get_pending_events(self, limit: int = 50):
        now = self.clock()
        return get_pending_with_skip_locked(
            self.db,
            NotificationOutbox,
            and_(
                NotificationOutbox.status.in_([
                    NotificationStatus.PENDING.value,
                    NotificationStatus.PROCESSING.value,
                ]),
                NotificationOutbox.next_attempt_at <= now,
            ),
            order_by=NotificationOutbox.next_attempt_at,
            limit=limit,
        )

    def dispatch_pending(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Deliver due notifications.

        Returns:
            Counts per outcome: sent, retrying, failed, skipped
        """
        counts = {"sent": 0, "retrying": 0, "failed": 0, "skipped": 0}
        events = self.get_pending_events(limit or settings.notification_batch_size)
        if not events:
            return counts

        if not self.webhook_url:
            for event in events:
                event.status = NotificationStatus.SKIPPED.value
                event.last_error = "NOTIFICATION_WEBHOOK_URL not configured"
                counts["skipped"] += 1
                record_notification(event.event_type, "skipped")
            self.db.commit()
            return counts

        self._claim(events)

        owns_client = self.client is None
        client = self.client
        if owns_client:
            client = httpx.Client(timeout=settings.notification_timeout_seconds)

        try:
            for event in events:
                outcome = self._dispatch_one(client, event)
                counts[outcome] += 1
                record_notification(event.event_type, outcome)
        finally:
            if owns_client:
                client.close()

        if counts["sent"] or counts["failed"] or counts["retrying"]:
            logger.info(
                f"Notifications: {counts['sent']} sent, {counts['retrying']} retrying, "
                f"{counts['failed']} failed"
            )
        return counts

    def _claim(self, events) -> None:
        """Mark the batch processing and count the attempt, in one commit"""
        lease_until = self.clock() + timedelta(seconds=PROCESSING_LEASE_SECONDS)
        for event in events:
            event.status = NotificationStatus.PROCESSING.value
            event.attempts = (event.attempts or 0) + 1
            event.next_attempt_at = lease_until
        self.db.commit()

    def _dispatch_one(self, client: httpx.Client, event: NotificationOutbox) -> str:
        now = self.clock()
        try:
            response = client.post(
                self.webhook_url,
                json={
                    "id": event.id,
                    "event": event.event_type,
                    "tenant_id": event.tenant_id,
                    "booking_id": event.booking_id,
                    "payload": event.payload,
                },
                headers={"Idempotency-Key": event.id},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            event.last_error = str(e)[:500]
            if event.attempts >= (event.max_attempts or settings.notification_max_attempts):
                event.status = NotificationStatus.FAILED.value
                logger.error(f"Notification {event.id} failed permanently after {event.attempts} attempts: {e}")
                outcome = "failed"
            else:
                event.status = NotificationStatus.PENDING.value
                event.next_attempt_at = now + timedelta(seconds=backoff_seconds(event.attempts))
                logger.warning(f"Notification {event.id} attempt {event.attempts} failed: {e}")
                outcome = "retrying"
            self.db.commit()
            return outcome

        event.status = NotificationStatus.SENT.value
        event.sent_at = now
        event.last_error = None
        self.db.commit()
        return "sent"


def run_notification_job() -> Dict[str, int]:
    """Scheduler entry point: own session, never raises"""
    db = SessionLocal()
    try:
        return NotificationDispatcher(db).dispatch_pending()
    except Exception as e:
        logger.error(f"Notification job failed: {e}", exc_info=True)
        db.rollback()
        return {}
    finally:
        db.close()
