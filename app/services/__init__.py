# Services package
from .tenant_resolver import TenantResolver, resolve_tenant, ensure_same_tenant
from .slot_allocator import SlotAllocator, Slot
from .hold_store import HoldStore
from .confirmation_engine import ConfirmationEngine, ConfirmationResult, make_confirmation_number
from .booking_state_machine import (
    BookingStateMachine,
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    can_transition,
)
from .notification_dispatcher import NotificationDispatcher, enqueue_notification
from .hold_sweeper import HoldSweeper, SweepResult, run_sweep_once, start_sweeper, stop_sweeper

__all__ = [
    "TenantResolver", "resolve_tenant", "ensure_same_tenant",
    "SlotAllocator", "Slot",
    "HoldStore",
    "ConfirmationEngine", "ConfirmationResult", "make_confirmation_number",
    "BookingStateMachine", "ALLOWED_TRANSITIONS", "TERMINAL_STATUSES", "can_transition",
    "NotificationDispatcher", "enqueue_notification",
    "HoldSweeper", "SweepResult", "run_sweep_once", "start_sweeper", "stop_sweeper",
]
