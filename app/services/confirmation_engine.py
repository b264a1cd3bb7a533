"""
Confirmation Engine

Turns an active hold into a booking exactly once per idempotency key.

Flow:
1. Validate the idempotency key and guest details (nothing is touched yet)
2. Replay: an IdempotencyRecord, or failing that a Booking carrying the same
   key, returns the original result
3. consume_hold() inside the booking transaction
4. Booking + creation event + idempotency record (+ notification when the
   tenant auto-confirms) commit together

A concurrent confirmation with the same key either blocks on the hold row
and then finds the winner's record, or hits the unique key index and
resolves to the winner's result. Both callers see the same booking.
"""

import hashlib
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError
from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.tenant import Tenant
from ..models.hold import BookingHold
from ..models.booking import Booking, BookingStatus, BookingStatusEvent, BookingSource
from ..models.idempotency import IdempotencyRecord
from ..models.notification_outbox import NotificationEventType
from ..schemas.booking import GuestDetails
from ..utils.clock import Clock, utcnow
from ..utils.db_helpers import retry_storage_reads
from ..utils.errors import (
    HoldAlreadyConsumed,
    HoldExpired,
    HoldNotFound,
    InvalidGuestDetails,
    InvalidRequest,
    StorageUnavailable,
    validation_issues,
)
from ..utils.logging_config import get_logger
from ..utils.metrics import record_confirmation
from ..utils.sanitization import mask_email
from .hold_store import HoldStore
from .notification_dispatcher import enqueue_notification
from .slot_allocator import to_local, zone_named
from .tenant_resolver import TenantResolver

logger = get_logger(__name__)

REPLAY_MESSAGE = "Booking already processed"

CONFIRMATION_PREFIXES = {
    BookingStatus.PENDING.value: "PEND",
    BookingStatus.CONFIRMED.value: "CONF",
}

MAX_KEY_LENGTH = 255


def make_confirmation_number(booking_id: str, status: str) -> str:
    """Status prefix + last 6 hex characters of the booking id"""
    prefix = CONFIRMATION_PREFIXES.get(status, "BOOK")
    return f"{prefix}{booking_id.replace('-', '')[-6:].upper()}"


def request_fingerprint(hold_id: str) -> str:
    return hashlib.sha256(hold_id.encode("utf-8")).hexdigest()


def validate_idempotency_key(key: Optional[str]) -> str:
    if key is None or not str(key).strip():
        raise InvalidRequest("idempotency_key is required")
    key = str(key).strip()
    if len(key) > MAX_KEY_LENGTH:
        raise InvalidRequest(f"idempotency_key must be at most {MAX_KEY_LENGTH} characters")
    return key


def parse_guest_details(value: Union[GuestDetails, Dict[str, Any], None]) -> GuestDetails:
    if isinstance(value, GuestDetails):
        return value
    if not isinstance(value, dict):
        raise InvalidGuestDetails("guest_details must be an object")
    try:
        return GuestDetails.model_validate(value)
    except ValidationError as e:
        raise InvalidGuestDetails("Invalid guest details", issues=validation_issues(e)) from e


@dataclass
class ConfirmationResult:
    reservation_id: str
    status: str
    confirmation_number: str
    booking_time: datetime
    party_size: int
    table_id: Optional[str] = None
    timezone: str = "UTC"
    replayed: bool = False

    def to_response(self) -> Dict[str, Any]:
        """Widget payload; this exact dict (minus replay markers) is stored for replays"""
        local = to_local(self.booking_time, zone_named(self.timezone))
        response = {
            "success": True,
            "reservation_id": self.reservation_id,
            "status": self.status,
            "confirmation_number": self.confirmation_number,
            "booking_time": self.booking_time.isoformat() + "Z",
            "summary": {
                "date": local.date().isoformat(),
                "time": local.strftime("%H:%M"),
                "party_size": self.party_size,
                "table_id": self.table_id,
                "timezone": self.timezone,
            },
            "replayed": self.replayed,
        }
        if self.replayed:
            response["message"] = REPLAY_MESSAGE
        return response

    @classmethod
    def from_response(cls, payload: Dict[str, Any], replayed: bool = True) -> "ConfirmationResult":
        summary = payload.get("summary") or {}
        return cls(
            reservation_id=payload["reservation_id"],
            status=payload["status"],
            confirmation_number=payload["confirmation_number"],
            booking_time=datetime.fromisoformat(payload["booking_time"].rstrip("Z")),
            party_size=summary.get("party_size"),
            table_id=summary.get("table_id"),
            timezone=summary.get("timezone") or "UTC",
            replayed=replayed,
        )


class ConfirmationEngine:
    # New booking ids are drawn again if a confirmation number collides
    MAX_ATTEMPTS = 3

    def __init__(self, db: Session, clock: Optional[Clock] = None, hold_store: Optional[HoldStore] = None):
        self.db = db
        self.clock = clock or utcnow
        self.hold_store = hold_store or HoldStore(db, self.clock)
        self.tenants = TenantResolver(db)

    def confirm(
        self,
        tenant_id: str,
        hold_id: str,
        idempotency_key: Optional[str],
        guest_details: Union[GuestDetails, Dict[str, Any]],
        source: str = BookingSource.WIDGET.value,
    ) -> ConfirmationResult:
        """
        Convert a hold into a booking.

        Safe to retry with the same key: a replay returns the original
        result with replayed=True and has no side effects.

        Raises:
            InvalidRequest / InvalidGuestDetails: before anything is touched
            HoldNotFound / HoldExpired / HoldAlreadyConsumed: hold unusable
            StorageUnavailable: storage failed, nothing was committed
        """
        started = time.perf_counter()

        key = validate_idempotency_key(idempotency_key)
        try:
            guest = parse_guest_details(guest_details)
        except InvalidGuestDetails:
            record_confirmation("invalid_guest_details")
            raise
        if not hold_id:
            raise InvalidRequest("hold_id is required")

        tenant = self.tenants.resolve(tenant_id)

        existing = self.find_existing_result(tenant, key, hold_id)
        if existing is not None:
            return self._replayed(existing, tenant, started)

        for attempt in range(self.MAX_ATTEMPTS):
            try:
                hold = self.hold_store.consume_hold(hold_id, tenant.id, consumed_by_key=key, commit=False)
            except HoldAlreadyConsumed:
                # A concurrent call with the same key may have won
                existing = self.find_existing_result(tenant, key, hold_id)
                if existing is not None:
                    return self._replayed(existing, tenant, started)
                record_confirmation("hold_already_consumed")
                raise
            except HoldExpired:
                record_confirmation("hold_expired")
                raise
            except HoldNotFound:
                record_confirmation("hold_not_found")
                raise

            try:
                result = self._persist_booking(tenant, hold, key, guest, source)
            except IntegrityError as e:
                self.db.rollback()
                existing = self.find_existing_result(tenant, key, hold_id)
                if existing is not None:
                    return self._replayed(existing, tenant, started)
                logger.warning(f"Booking insert conflict on attempt {attempt + 1}, retrying: {e.orig}")
                continue
            except OperationalError as e:
                self.db.rollback()
                logger.error(f"Storage error while confirming hold {hold_id}: {e}")
                record_confirmation("storage_unavailable")
                raise StorageUnavailable(str(e)) from e

            record_confirmation("created")
            logger.booking_confirmed(
                result.reservation_id,
                tenant.id,
                result.status,
                result.confirmation_number,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            logger.debug(f"Booking {result.reservation_id} guest {mask_email(str(guest.email))}")
            return result

        record_confirmation("storage_unavailable")
        raise StorageUnavailable(f"Could not persist booking for hold {hold_id}")

    def _replayed(self, result: ConfirmationResult, tenant: Tenant, started: float) -> ConfirmationResult:
        record_confirmation("replayed")
        logger.booking_confirmed(
            result.reservation_id,
            tenant.id,
            result.status,
            result.confirmation_number,
            replayed=True,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return result

    def _persist_booking(
        self,
        tenant: Tenant,
        hold: BookingHold,
        key: str,
        guest: GuestDetails,
        source: str,
    ) -> ConfirmationResult:
        now = self.clock()
        status = BookingStatus.CONFIRMED.value if tenant.auto_confirm else BookingStatus.PENDING.value
        booking_id = str(uuid.uuid4())

        booking = Booking(
            id=booking_id,
            tenant_id=tenant.id,
            hold_id=hold.id,
            table_id=hold.table_id,
            guest_name=guest.full_name,
            guest_first_name=guest.first_name,
            guest_last_name=guest.last_name,
            guest_email=str(guest.email),
            guest_phone=guest.phone,
            special_requests=guest.special_requests,
            party_size=hold.party_size,
            booking_time=hold.slot_time,
            ends_at=hold.ends_at,
            status=status,
            confirmation_number=make_confirmation_number(booking_id, status),
            idempotency_key=key,
            source=source,
            created_at=now,
            updated_at=now,
            confirmed_at=now if status == BookingStatus.CONFIRMED.value else None,
        )
        self.db.add(booking)

        self.db.add(BookingStatusEvent(
            booking_id=booking_id,
            tenant_id=tenant.id,
            from_status=None,
            to_status=status,
            actor=f"{source}:confirmation",
            reason="auto_confirm" if tenant.auto_confirm else None,
            created_at=now,
        ))

        result = ConfirmationResult(
            reservation_id=booking_id,
            status=status,
            confirmation_number=booking.confirmation_number,
            booking_time=hold.slot_time,
            party_size=hold.party_size,
            table_id=hold.table_id,
            timezone=tenant.timezone or "UTC",
        )

        self.db.add(IdempotencyRecord(
            tenant_id=tenant.id,
            idempotency_key=key,
            booking_id=booking_id,
            request_fingerprint=request_fingerprint(hold.id),
            response_json=result.to_response(),
            status_code=200,
            created_at=now,
            expires_at=now + timedelta(hours=settings.idempotency_retention_hours),
        ))

        if status == BookingStatus.CONFIRMED.value:
            enqueue_notification(self.db, booking, NotificationEventType.BOOKING_CONFIRMED, clock=self.clock, commit=False)

        self.db.commit()
        return result

    # ---------------------------------------------------------------
    # Replay lookup
    # ---------------------------------------------------------------

    @retry_storage_reads
    def _find_record(self, tenant_id: str, key: str) -> Optional[IdempotencyRecord]:
        return self.db.query(IdempotencyRecord).filter(
            and_(
                IdempotencyRecord.tenant_id == tenant_id,
                IdempotencyRecord.idempotency_key == key,
            )
        ).populate_existing().first()

    @retry_storage_reads
    def _find_booking_by_key(self, tenant_id: str, key: str) -> Optional[Booking]:
        return self.db.query(Booking).filter(
            and_(
                Booking.tenant_id == tenant_id,
                Booking.idempotency_key == key,
            )
        ).populate_existing().first()

    def find_existing_result(
        self, tenant: Tenant, key: str, hold_id: Optional[str] = None
    ) -> Optional[ConfirmationResult]:
        """
        Result of an earlier confirmation with this key, if any.

        Falls back to the booking itself when the record is missing (purged
        after retention, or never written) and writes the record back.
        """
        record = self._find_record(tenant.id, key)
        if record is not None:
            if hold_id and record.request_fingerprint and record.request_fingerprint != request_fingerprint(hold_id):
                logger.warning(f"Idempotency key reused with a different hold for tenant {tenant.id}")
            return ConfirmationResult.from_response(record.response_json, replayed=True)

        booking = self._find_booking_by_key(tenant.id, key)
        if booking is None:
            return None

        result = ConfirmationResult(
            reservation_id=booking.id,
            status=self._creation_status(booking),
            confirmation_number=booking.confirmation_number,
            booking_time=booking.booking_time,
            party_size=booking.party_size,
            table_id=booking.table_id,
            timezone=tenant.timezone or "UTC",
        )
        self._backfill_record(tenant, booking, key, result)
        result.replayed = True
        return result

    @staticmethod
    def _creation_status(booking: Booking) -> str:
        """Status the booking was created with (what the first call returned)"""
        for event in booking.status_events:
            if event.from_status is None:
                return event.to_status
        return booking.status

    def _backfill_record(self, tenant: Tenant, booking: Booking, key: str, result: ConfirmationResult) -> None:
        now = self.clock()
        self.db.add(IdempotencyRecord(
            tenant_id=tenant.id,
            idempotency_key=key,
            booking_id=booking.id,
            request_fingerprint=request_fingerprint(booking.hold_id) if booking.hold_id else None,
            response_json=result.to_response(),
            status_code=200,
            created_at=now,
            expires_at=now + timedelta(hours=settings.idempotency_retention_hours),
        ))
        try:
            self.db.commit()
            logger.info(f"Reconciled idempotency record for booking {booking.id}")
        except IntegrityError:
            # Another replay wrote it first
            self.db.rollback()
        except OperationalError as e:
            self.db.rollback()
            logger.warning(f"Could not backfill idempotency record for booking {booking.id}: {e}")
