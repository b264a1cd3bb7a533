# Models package
from .tenant import Tenant, BusinessHours, RestaurantTable, AllocationPreference
from .hold import BookingHold, HoldStatus
from .booking import Booking, BookingStatus, BookingStatusEvent, BookingSource, OCCUPYING_STATUSES
from .idempotency import IdempotencyRecord
from .notification_outbox import NotificationOutbox, NotificationStatus, NotificationEventType

__all__ = [
    "Tenant", "BusinessHours", "RestaurantTable", "AllocationPreference",
    "BookingHold", "HoldStatus",
    "Booking", "BookingStatus", "BookingStatusEvent", "BookingSource", "OCCUPYING_STATUSES",
    "IdempotencyRecord",
    "NotificationOutbox", "NotificationStatus", "NotificationEventType",
]
