"""
Slot Allocator

Computes candidate (time, table) slots for a party from:
- the tenant's business hours (local wall clock, overnight services allowed)
- active tables that fit the party
- active holds and occupying bookings overlapping each seating window
- the tenant's aggregate cover limit

The check is read-only and best effort: the authoritative availability
check happens when a hold is created.
"""

import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterator, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import and_
from sqlalchemy.orm import Session

from ..config import settings
from ..models.tenant import Tenant, BusinessHours, RestaurantTable, AllocationPreference
from ..models.hold import BookingHold, HoldStatus
from ..models.booking import Booking, OCCUPYING_STATUSES
from ..utils.clock import Clock, utcnow, to_naive_utc
from ..utils.db_helpers import retry_storage_reads
from ..utils.errors import BusinessHoursNotConfigured, InvalidRequest, SlotUnavailable
from .tenant_resolver import resolve_tenant

logger = logging.getLogger(__name__)

# (start, end, covers)
Interval = Tuple[datetime, datetime, int]


@dataclass(frozen=True)
class Slot:
    """A bookable (time, table) pair; times are naive UTC"""
    slot_time: datetime
    ends_at: datetime
    table_id: Optional[str]
    table_name: Optional[str]
    capacity: int
    party_size: int
    table_priority: int = 100

    @property
    def spare_seats(self) -> int:
        return self.capacity - self.party_size


RANK_KEYS = {
    AllocationPreference.BEST_FIT: lambda s: (s.spare_seats, s.slot_time, s.table_priority),
    AllocationPreference.TABLE_PRIORITY: lambda s: (s.table_priority, s.slot_time, s.spare_seats),
}


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval overlap"""
    return start_a < end_b and start_b < end_a


def covers_in_window(intervals: List[Interval], start: datetime, end: datetime) -> int:
    """Covers of every hold/booking seated at some point in [start, end)"""
    return sum(covers for s, e, covers in intervals if overlaps(s, e, start, end))


def cover_limit(tenant: Tenant, tables: List[RestaurantTable]) -> int:
    if tenant.max_covers_per_slot is not None:
        return tenant.max_covers_per_slot
    return sum(t.capacity for t in tables if t.is_active)


def zone_named(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Invalid timezone {name!r}, using UTC")
        return ZoneInfo("UTC")


def tenant_zone(tenant: Tenant) -> ZoneInfo:
    return zone_named(tenant.timezone)


def to_local(value: datetime, zone: ZoneInfo) -> datetime:
    """Naive UTC -> aware local"""
    return value.replace(tzinfo=timezone.utc).astimezone(zone)


def parse_preference(value) -> Optional[AllocationPreference]:
    if value is None or value == "":
        return None
    if isinstance(value, AllocationPreference):
        return value
    try:
        return AllocationPreference(value)
    except ValueError:
        raise InvalidRequest(f"Unknown allocation preference: {value}")


def in_time_window(value: time, start: Optional[time], end: Optional[time]) -> bool:
    """Local time filter; end < start wraps past midnight"""
    if start is None and end is None:
        return True
    if start is None:
        return value <= end
    if end is None:
        return value >= start
    if start <= end:
        return start <= value <= end
    return value >= start or value <= end


class SlotAllocator:
    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or utcnow

    def find_slots(
        self,
        tenant_id: str,
        party_size: int,
        on_date: date,
        window_start: Optional[time] = None,
        window_end: Optional[time] = None,
        preference=None,
        limit: Optional[int] = None,
    ) -> Iterator[Slot]:
        """
        Ranked candidate slots for a party on a local date.

        Argument, tenant and business-hours errors are raised here; the
        occupancy query runs when the returned iterator is first consumed.

        Returns:
            Iterator of Slot, empty when the day is closed or full

        Raises:
            InvalidRequest: bad party size, limit or preference
            TenantNotFound: unknown or inactive tenant
            BusinessHoursNotConfigured: no hours row for that weekday
        """
        validate_party_size(party_size)
        if limit is not None and limit < 1:
            raise InvalidRequest("limit must be positive")
        requested = parse_preference(preference)

        tenant = resolve_tenant(self.db, tenant_id)
        ranking = requested or self._tenant_preference(tenant)

        hours = self._hours_for_day(tenant, on_date.weekday())
        window = service_window(tenant, on_date, hours)
        if window is None:
            return iter(())

        slots = self._generate(tenant, party_size, window, window_start, window_end, ranking)
        if limit is not None:
            slots = itertools.islice(slots, limit)
        return slots

    def ensure_within_hours(self, tenant: Tenant, slot_time: datetime, duration: timedelta) -> None:
        """
        Reject a seating that does not fit inside a service.

        The service of the previous local day is checked too, for
        restaurants that close after midnight.
        """
        local_day = to_local(slot_time, tenant_zone(tenant)).date()
        configured = False

        for day in (local_day, local_day - timedelta(days=1)):
            hours = self._find_hours(tenant.id, day.weekday())
            if hours is None:
                continue
            configured = True
            window = service_window(tenant, day, hours)
            if window and window[0] <= slot_time and slot_time + duration <= window[1]:
                return

        if not configured:
            raise BusinessHoursNotConfigured(f"No business hours for tenant {tenant.id} on {local_day}")
        raise SlotUnavailable(f"{slot_time} is outside business hours of tenant {tenant.id}")

    # ---------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------

    def _tenant_preference(self, tenant: Tenant) -> AllocationPreference:
        try:
            return parse_preference(tenant.allocation_preference) or AllocationPreference.BEST_FIT
        except InvalidRequest:
            logger.warning(f"Tenant {tenant.id} has unknown allocation preference, using best_fit")
            return AllocationPreference.BEST_FIT

    def _hours_for_day(self, tenant: Tenant, weekday: int) -> BusinessHours:
        hours = self._find_hours(tenant.id, weekday)
        if hours is None:
            raise BusinessHoursNotConfigured(
                f"Tenant {tenant.id} has no business hours for weekday {weekday}"
            )
        return hours

    @retry_storage_reads
    def _find_hours(self, tenant_id: str, weekday: int) -> Optional[BusinessHours]:
        return self.db.query(BusinessHours).filter(
            and_(
                BusinessHours.tenant_id == tenant_id,
                BusinessHours.day_of_week == weekday,
            )
        ).first()

    @retry_storage_reads
    def _active_tables(self, tenant_id: str) -> List[RestaurantTable]:
        return self.db.query(RestaurantTable).filter(
            and_(
                RestaurantTable.tenant_id == tenant_id,
                RestaurantTable.is_active == True,  # noqa: E712
            )
        ).order_by(RestaurantTable.priority, RestaurantTable.name).all()

    @retry_storage_reads
    def _load_occupancy(
        self, tenant_id: str, range_start: datetime, range_end: datetime
    ) -> Tuple[Dict[str, List[Interval]], List[Interval]]:
        """Per-table intervals and all covers of live holds and occupying bookings"""
        now = self.clock()

        holds = self.db.query(BookingHold).filter(
            and_(
                BookingHold.tenant_id == tenant_id,
                BookingHold.status == HoldStatus.ACTIVE.value,
                BookingHold.expires_at > now,
                BookingHold.slot_time < range_end,
                BookingHold.ends_at > range_start,
            )
        ).all()

        bookings = self.db.query(Booking).filter(
            and_(
                Booking.tenant_id == tenant_id,
                Booking.status.in_(OCCUPYING_STATUSES),
                Booking.booking_time < range_end,
                Booking.ends_at > range_start,
            )
        ).all()

        by_table: Dict[str, List[Interval]] = defaultdict(list)
        covers: List[Interval] = []

        for hold in holds:
            interval = (hold.slot_time, hold.ends_at, hold.party_size)
            covers.append(interval)
            if hold.table_id:
                by_table[hold.table_id].append(interval)

        for booking in bookings:
            interval = (booking.booking_time, booking.ends_at, booking.party_size)
            covers.append(interval)
            if booking.table_id:
                by_table[booking.table_id].append(interval)

        return by_table, covers

    def _candidate_times(
        self,
        tenant: Tenant,
        window: Tuple[datetime, datetime],
        window_start: Optional[time],
        window_end: Optional[time],
    ) -> List[datetime]:
        open_at, close_at = window
        duration = timedelta(minutes=tenant.seating_duration_minutes)
        step = timedelta(minutes=max(1, tenant.slot_interval_minutes or 15))
        now = self.clock()
        earliest = now + timedelta(minutes=tenant.min_lead_minutes or 0)
        zone = tenant_zone(tenant)

        times = []
        current = open_at
        while current + duration <= close_at:
            if current > now and current >= earliest:
                if in_time_window(to_local(current, zone).time(), window_start, window_end):
                    times.append(current)
            current += step
        return times

    def _generate(
        self,
        tenant: Tenant,
        party_size: int,
        window: Tuple[datetime, datetime],
        window_start: Optional[time],
        window_end: Optional[time],
        ranking: AllocationPreference,
    ) -> Iterator[Slot]:
        times = self._candidate_times(tenant, window, window_start, window_end)
        if not times:
            return

        tables = self._active_tables(tenant.id)
        fitting = sorted(
            (t for t in tables if t.seats(party_size)),
            key=lambda t: (t.capacity - party_size, t.priority, t.name),
        )
        if not fitting:
            return

        duration = timedelta(minutes=tenant.seating_duration_minutes)
        by_table, covers = self._load_occupancy(tenant.id, times[0], times[-1] + duration)
        limit = cover_limit(tenant, tables)

        def candidates() -> Iterator[Slot]:
            for slot_time in times:
                ends_at = slot_time + duration
                if covers_in_window(covers, slot_time, ends_at) + party_size > limit:
                    continue
                for table in fitting:
                    busy = by_table.get(table.id, ())
                    if any(overlaps(s, e, slot_time, ends_at) for s, e, _ in busy):
                        continue
                    yield Slot(
                        slot_time=slot_time,
                        ends_at=ends_at,
                        table_id=table.id,
                        table_name=table.name,
                        capacity=table.capacity,
                        party_size=party_size,
                        table_priority=table.priority,
                    )

        if ranking == AllocationPreference.EARLIEST:
            yield from candidates()
        else:
            yield from sorted(candidates(), key=RANK_KEYS[ranking])


def validate_party_size(party_size) -> None:
    if not isinstance(party_size, int) or isinstance(party_size, bool):
        raise InvalidRequest("party_size must be an integer")
    if party_size < 1 or party_size > settings.max_party_size:
        raise InvalidRequest(f"party_size must be between 1 and {settings.max_party_size}")


def service_window(tenant: Tenant, on_date: date, hours: BusinessHours) -> Optional[Tuple[datetime, datetime]]:
    """Opening and closing instants (naive UTC) of the service starting on on_date"""
    if hours.is_closed or hours.open_time is None or hours.close_time is None:
        return None

    zone = tenant_zone(tenant)
    open_local = datetime.combine(on_date, hours.open_time, tzinfo=zone)
    close_date = on_date if hours.close_time > hours.open_time else on_date + timedelta(days=1)
    close_local = datetime.combine(close_date, hours.close_time, tzinfo=zone)
    return to_naive_utc(open_local), to_naive_utc(close_local)
