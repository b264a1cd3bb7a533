"""
Hold Store

Durable, tenant-scoped holds with a TTL.

Race Condition Prevention:
- create_hold locks the tenant row, then the table row for bound holds,
  before the availability check. Every hold passes the aggregate covers
  check. The partial unique index on active (tenant_id, table_id,
  slot_time) turns any remaining race into an IntegrityError ->
  SLOT_UNAVAILABLE
- consume_hold and expiry are both a conditional UPDATE on status='active',
  split on expires_at, so whichever commits first decides the outcome
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.tenant import Tenant, RestaurantTable
from ..models.hold import BookingHold, HoldStatus
from ..models.booking import Booking, OCCUPYING_STATUSES
from ..utils.clock import Clock, utcnow, to_naive_utc
from ..utils.db_helpers import acquire_row_lock, get_pending_with_skip_locked, retry_storage_reads
from ..utils.errors import (
    HoldAlreadyConsumed,
    HoldExpired,
    HoldNotFound,
    InvalidRequest,
    SlotUnavailable,
    StorageUnavailable,
)
from ..utils.logging_config import get_logger
from ..utils.metrics import record_hold, record_holds_expired
from .slot_allocator import SlotAllocator, cover_limit, covers_in_window, validate_party_size
from .tenant_resolver import TenantResolver

logger = get_logger(__name__)


class HoldStore:
    def __init__(self, db: Session, clock: Optional[Clock] = None, ttl_seconds: Optional[int] = None):
        self.db = db
        self.clock = clock or utcnow
        self.ttl_seconds = ttl_seconds
        self.tenants = TenantResolver(db)

    def ttl_for(self, tenant: Tenant) -> int:
        return self.ttl_seconds or tenant.hold_ttl_seconds or settings.hold_ttl_seconds

    # ---------------------------------------------------------------
    # Create
    # ---------------------------------------------------------------

    def create_hold(
        self,
        tenant_id: str,
        party_size: int,
        slot_time: datetime,
        table_id: Optional[str] = None,
        request_key: Optional[str] = None,
    ) -> BookingHold:
        """
        Reserve a slot for the tenant's TTL.

        Args:
            tenant_id: Tenant id or slug
            party_size: Number of guests
            slot_time: Seating start (aware, or naive UTC)
            table_id: Bind the hold to a table; None checks aggregate covers
            request_key: Caller key; a repeated key returns the same hold

        Raises:
            SlotUnavailable: slot taken, full, or outside business hours
            InvalidRequest / TenantNotFound / TenantMismatch: bad input
        """
        tenant = self.tenants.resolve(tenant_id)
        validate_party_size(party_size)
        if request_key is not None and (not request_key.strip() or len(request_key) > 255):
            raise InvalidRequest("idempotency_key must be 1-255 characters")

        slot_time = to_naive_utc(slot_time)
        now = self.clock()
        if slot_time <= now:
            raise InvalidRequest("slot time must be in the future")

        if request_key:
            existing = self._find_by_request_key(tenant.id, request_key)
            if existing is not None:
                return self._replay_hold(existing)

        if slot_time < now + timedelta(minutes=tenant.min_lead_minutes or 0):
            raise SlotUnavailable(f"{slot_time} is inside the booking lead time")

        duration = timedelta(minutes=tenant.seating_duration_minutes)
        ends_at = slot_time + duration
        SlotAllocator(self.db, self.clock).ensure_within_hours(tenant, slot_time, duration)

        table = None
        if table_id:
            table = self.tenants.get_table(tenant, table_id)
            if not table.is_active or not table.seats(party_size):
                record_hold("unavailable")
                raise SlotUnavailable(f"Table {table_id} cannot seat a party of {party_size}")

        try:
            # Stale holds must not block the slot; this is also the first
            # write of the transaction (takes the SQLite write lock)
            self.expire_stale_holds(tenant_id=tenant.id, commit=False)

            # Lock order is tenant then table on every path, so bound and
            # unbound holds of one tenant queue behind each other
            acquire_row_lock(self.db, Tenant, Tenant.id == tenant.id)
            if table is not None:
                self._check_table_free(tenant, table, slot_time, ends_at, now)
            # Unbound holds and their bookings carry no table id, so bound
            # holds are checked against aggregate covers too
            self._check_covers(tenant, slot_time, ends_at, party_size, now)

            hold = BookingHold(
                tenant_id=tenant.id,
                table_id=table.id if table is not None else None,
                party_size=party_size,
                slot_time=slot_time,
                ends_at=ends_at,
                status=HoldStatus.ACTIVE.value,
                request_key=request_key,
                created_at=now,
                expires_at=now + timedelta(seconds=self.ttl_for(tenant)),
            )
            self.db.add(hold)
            self.db.commit()

        except SlotUnavailable:
            self.db.rollback()
            record_hold("unavailable")
            raise
        except IntegrityError:
            self.db.rollback()
            if request_key:
                existing = self._find_by_request_key(tenant.id, request_key)
                if existing is not None:
                    return self._replay_hold(existing)
            record_hold("unavailable")
            logger.info(f"Lost hold race for tenant {tenant.id} table {table_id} at {slot_time}")
            raise SlotUnavailable(f"Concurrent hold for table {table_id} at {slot_time}")
        except OperationalError as e:
            self.db.rollback()
            logger.error(f"Storage error while creating hold: {e}")
            raise StorageUnavailable(str(e)) from e

        record_hold("created")
        logger.hold_created(hold.id, tenant.id, party_size, slot_time, hold.table_id)
        return hold

    def _check_table_free(
        self,
        tenant: Tenant,
        table: RestaurantTable,
        slot_time: datetime,
        ends_at: datetime,
        now: datetime,
    ) -> None:
        locked = acquire_row_lock(self.db, RestaurantTable, RestaurantTable.id == table.id)
        if locked is None or not locked.is_active:
            raise SlotUnavailable(f"Table {table.id} is not available")

        hold_conflict = self.db.query(BookingHold.id).filter(
            and_(
                BookingHold.tenant_id == tenant.id,
                BookingHold.table_id == table.id,
                BookingHold.status == HoldStatus.ACTIVE.value,
                BookingHold.expires_at > now,
                BookingHold.slot_time < ends_at,
                BookingHold.ends_at > slot_time,
            )
        ).first()
        if hold_conflict:
            raise SlotUnavailable(f"Table {table.id} is held at {slot_time}")

        booking_conflict = self.db.query(Booking.id).filter(
            and_(
                Booking.tenant_id == tenant.id,
                Booking.table_id == table.id,
                Booking.status.in_(OCCUPYING_STATUSES),
                Booking.booking_time < ends_at,
                Booking.ends_at > slot_time,
            )
        ).first()
        if booking_conflict:
            raise SlotUnavailable(f"Table {table.id} is booked at {slot_time}")

    def _check_covers(
        self,
        tenant: Tenant,
        slot_time: datetime,
        ends_at: datetime,
        party_size: int,
        now: datetime,
    ) -> None:
        """Aggregate capacity check; caller holds the tenant row lock"""
        tables = self.db.query(RestaurantTable).filter(
            and_(
                RestaurantTable.tenant_id == tenant.id,
                RestaurantTable.is_active == True,  # noqa: E712
            )
        ).all()
        if not any(t.seats(party_size) for t in tables):
            raise SlotUnavailable(f"No table of tenant {tenant.id} seats {party_size}")

        holds = self.db.query(BookingHold.slot_time, BookingHold.ends_at, BookingHold.party_size).filter(
            and_(
                BookingHold.tenant_id == tenant.id,
                BookingHold.status == HoldStatus.ACTIVE.value,
                BookingHold.expires_at > now,
                BookingHold.slot_time < ends_at,
                BookingHold.ends_at > slot_time,
            )
        ).all()
        bookings = self.db.query(Booking.booking_time, Booking.ends_at, Booking.party_size).filter(
            and_(
                Booking.tenant_id == tenant.id,
                Booking.status.in_(OCCUPYING_STATUSES),
                Booking.booking_time < ends_at,
                Booking.ends_at > slot_time,
            )
        ).all()

        intervals = [tuple(row) for row in holds] + [tuple(row) for row in bookings]
        used = covers_in_window(intervals, slot_time, ends_at)
        if used + party_size > cover_limit(tenant, tables):
            raise SlotUnavailable(f"Tenant {tenant.id} is full at {slot_time} ({used} covers)")

    def _replay_hold(self, hold: BookingHold) -> BookingHold:
        """A repeated hold request gets the original hold back while it is live"""
        if hold.status == HoldStatus.CONSUMED.value:
            raise HoldAlreadyConsumed(f"Hold {hold.id} was already confirmed", hold=hold)
        if hold.status == HoldStatus.EXPIRED.value:
            raise HoldExpired(f"Hold {hold.id} expired")
        if hold.is_expired_at(self.clock()):
            self._expire_hold(hold.id)
            raise HoldExpired(f"Hold {hold.id} expired")

        record_hold("replayed")
        logger.info(f"Hold request replayed: {hold.id}")
        return hold

    # ---------------------------------------------------------------
    # Read / consume
    # ---------------------------------------------------------------

    @retry_storage_reads
    def _find_by_request_key(self, tenant_id: str, request_key: str) -> Optional[BookingHold]:
        return self.db.query(BookingHold).filter(
            and_(
                BookingHold.tenant_id == tenant_id,
                BookingHold.request_key == request_key,
            )
        ).populate_existing().first()

    @retry_storage_reads
    def _load_hold(self, hold_id: str, tenant_id: str) -> Optional[BookingHold]:
        return self.db.query(BookingHold).filter(
            and_(
                BookingHold.id == hold_id,
                BookingHold.tenant_id == tenant_id,
            )
        ).populate_existing().first()

    def get_hold(self, hold_id: str, tenant_id: str) -> BookingHold:
        """Tenant-scoped read; an active hold past its TTL is expired on the spot"""
        hold = self._load_hold(hold_id, tenant_id)
        if hold is None:
            raise HoldNotFound(f"Hold {hold_id} not found for tenant {tenant_id}")

        if hold.is_active and hold.is_expired_at(self.clock()):
            self._expire_hold(hold.id)
            hold = self._load_hold(hold_id, tenant_id)
        return hold

    def consume_hold(
        self,
        hold_id: str,
        tenant_id: str,
        consumed_by_key: Optional[str] = None,
        commit: bool = True,
    ) -> BookingHold:
        """
        Atomically mark an active, unexpired hold as consumed.

        With commit=False the caller owns the transaction (the confirmation
        engine commits the booking together with the consumed hold).

        Raises:
            HoldNotFound: no such hold for this tenant
            HoldExpired: TTL elapsed (the hold is marked expired)
            HoldAlreadyConsumed: another confirmation got it first
        """
        now = self.clock()
        try:
            updated = self.db.query(BookingHold).filter(
                and_(
                    BookingHold.id == hold_id,
                    BookingHold.tenant_id == tenant_id,
                    BookingHold.status == HoldStatus.ACTIVE.value,
                    BookingHold.expires_at > now,
                )
            ).update(
                {
                    BookingHold.status: HoldStatus.CONSUMED.value,
                    BookingHold.consumed_at: now,
                    BookingHold.consumed_by_key: consumed_by_key,
                },
                synchronize_session=False,
            )
            if updated == 1 and commit:
                self.db.commit()
        except OperationalError as e:
            self.db.rollback()
            logger.error(f"Storage error while consuming hold {hold_id}: {e}")
            raise StorageUnavailable(str(e)) from e

        if updated == 1:
            return self.db.query(BookingHold).filter(BookingHold.id == hold_id).populate_existing().one()

        # Lost the CAS: work out why
        self.db.rollback()
        hold = self._load_hold(hold_id, tenant_id)
        if hold is None:
            raise HoldNotFound(f"Hold {hold_id} not found for tenant {tenant_id}")
        if hold.status == HoldStatus.CONSUMED.value:
            raise HoldAlreadyConsumed(f"Hold {hold_id} already consumed", hold=hold)
        if hold.status == HoldStatus.ACTIVE.value:
            self._expire_hold(hold.id)
        raise HoldExpired(f"Hold {hold_id} expired at {hold.expires_at}")

    # ---------------------------------------------------------------
    # Expiry
    # ---------------------------------------------------------------

    def _expire_hold(self, hold_id: str) -> bool:
        """Lazy expiry of one hold (same CAS as the sweeper)"""
        now = self.clock()
        try:
            updated = self.db.query(BookingHold).filter(
                and_(
                    BookingHold.id == hold_id,
                    BookingHold.status == HoldStatus.ACTIVE.value,
                    BookingHold.expires_at <= now,
                )
            ).update(
                {BookingHold.status: HoldStatus.EXPIRED.value, BookingHold.expired_at: now},
                synchronize_session=False,
            )
            self.db.commit()
        except OperationalError as e:
            self.db.rollback()
            raise StorageUnavailable(str(e)) from e

        record_holds_expired(updated, path="lazy")
        return updated == 1

    def expire_stale_holds(
        self,
        tenant_id: Optional[str] = None,
        limit: Optional[int] = None,
        commit: bool = True,
    ) -> int:
        """
        Mark active holds past their TTL as expired.

        Without a limit this is one bulk conditional UPDATE. With a limit the
        ids are claimed first (SKIP LOCKED on PostgreSQL, so several sweepers
        do not fight over rows) and then updated with the same condition.

        Returns:
            Number of holds expired by this call
        """
        now = self.clock()
        stale = and_(
            BookingHold.status == HoldStatus.ACTIVE.value,
            BookingHold.expires_at <= now,
        )
        if tenant_id is not None:
            stale = and_(stale, BookingHold.tenant_id == tenant_id)

        query = self.db.query(BookingHold)
        if limit is not None:
            claimed = get_pending_with_skip_locked(
                self.db, BookingHold, stale, order_by=BookingHold.expires_at, limit=limit
            )
            if not claimed:
                return 0
            query = query.filter(BookingHold.id.in_([h.id for h in claimed]))

        expired = query.filter(stale).update(
            {BookingHold.status: HoldStatus.EXPIRED.value, BookingHold.expired_at: now},
            synchronize_session=False,
        )
        if commit:
            self.db.commit()

        if expired:
            logger.info(f"Expired {expired} stale holds" + (f" for tenant {tenant_id}" if tenant_id else ""))
        record_holds_expired(expired, path="sweep" if limit is not None else "lazy")
        return expired
