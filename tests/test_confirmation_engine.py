"""
Tests for the Confirmation Engine

Test Coverage:
1. Pending vs auto-confirmed bookings
2. Idempotent replays (record, and booking fallback when the record is lost)
3. Expired / consumed / unknown holds
4. Guest detail validation happens before the hold is touched
"""

import pytest
from datetime import datetime
from unittest.mock import patch

from app.models.booking import Booking, BookingStatus, BookingStatusEvent
from app.models.hold import HoldStatus
from app.models.idempotency import IdempotencyRecord
from app.models.notification_outbox import NotificationOutbox
from app.services.confirmation_engine import (
    ConfirmationEngine,
    ConfirmationResult,
    REPLAY_MESSAGE,
    make_confirmation_number,
)
from app.services.hold_store import HoldStore
from app.utils.errors import (
    HoldAlreadyConsumed,
    HoldExpired,
    HoldNotFound,
    InvalidGuestDetails,
    InvalidRequest,
)

from conftest import seed_tenant, table_named

SLOT = datetime(2030, 6, 3, 19, 0)


def make_hold(db, tenant, clock, ttl_seconds=None, table="T1"):
    table_id = table_named(db, tenant, table).id if table else None
    return HoldStore(db, clock, ttl_seconds=ttl_seconds).create_hold(tenant.id, 2, SLOT, table_id=table_id)


class TestConfirm:
    """Happy paths"""

    def test_pending_booking_created(self, db, tenant, clock, guest):
        hold = make_hold(db, tenant, clock)

        result = ConfirmationEngine(db, clock).confirm(tenant.id, hold.id, "idem-1", guest)

        assert result.status == BookingStatus.PENDING.value
        assert result.confirmation_number.startswith("PEND")
        assert result.replayed is False

        booking = db.query(Booking).filter(Booking.id == result.reservation_id).one()
        assert booking.guest_name == "Ada Lovelace"
        assert booking.guest_phone == "+442079460958"
        assert booking.booking_time == SLOT
        assert booking.hold_id == hold.id
        assert booking.confirmed_at is None

        db.refresh(hold)
        assert hold.status == HoldStatus.CONSUMED.value
        assert hold.consumed_by_key == "idem-1"

        events = db.query(BookingStatusEvent).filter(BookingStatusEvent.booking_id == booking.id).all()
        assert len(events) == 1
        assert events[0].from_status is None
        assert events[0].to_status == BookingStatus.PENDING.value

        # Pending bookings are not announced
        assert db.query(NotificationOutbox).count() == 0

    def test_auto_confirm_tenant(self, db, clock, guest):
        tenant = seed_tenant(db, auto_confirm=True)
        hold = make_hold(db, tenant, clock)

        result = ConfirmationEngine(db, clock).confirm(tenant.id, hold.id, "idem-auto", guest)

        assert result.status == BookingStatus.CONFIRMED.value
        assert result.confirmation_number.startswith("CONF")

        booking = db.query(Booking).filter(Booking.id == result.reservation_id).one()
        assert booking.confirmed_at == clock()

        outbox = db.query(NotificationOutbox).one()
        assert outbox.event_type == "booking_confirmed"
        assert outbox.booking_id == booking.id

    def test_response_summary_in_tenant_timezone(self, db, clock, guest):
        tenant = seed_tenant(db, timezone="Europe/Berlin")
        hold = make_hold(db, tenant, clock)

        response = ConfirmationEngine(db, clock).confirm(tenant.id, hold.id, "idem-tz", guest).to_response()

        assert response["booking_time"] == "2030-06-03T19:00:00Z"
        assert response["summary"]["date"] == "2030-06-03"
        assert response["summary"]["time"] == "21:00"
        assert response["summary"]["timezone"] == "Europe/Berlin"

    def test_single_name_field(self, db, tenant, clock):
        hold = make_hold(db, tenant, clock)
        guest = {"name": "Grace Hopper", "email": "grace@example.com"}

        result = ConfirmationEngine(db, clock).confirm(tenant.id, hold.id, "idem-name", guest)

        booking = db.query(Booking).filter(Booking.id == result.reservation_id).one()
        assert booking.guest_name == "Grace Hopper"
        assert booking.guest_phone is None


class TestIdempotency:
    """Replays return the original result without side effects"""

    def test_replay_returns_same_booking(self, db, tenant, clock, guest):
        hold = make_hold(db, tenant, clock)
        engine = ConfirmationEngine(db, clock)

        first = engine.confirm(tenant.id, hold.id, "idem-replay", guest)
        second = engine.confirm(tenant.id, hold.id, "idem-replay", guest)

        assert second.replayed is True
        assert second.reservation_id == first.reservation_id
        assert second.confirmation_number == first.confirmation_number
        assert db.query(Booking).count() == 1

        payload = second.to_response()
        assert payload["replayed"] is True
        assert payload["message"] == REPLAY_MESSAGE

    def test_replay_after_hold_expired(self, db, tenant, clock, guest):
        hold = make_hold(db, tenant, clock, ttl_seconds=300)
        engine = ConfirmationEngine(db, clock)
        first = engine.confirm(tenant.id, hold.id, "idem-late", guest)

        clock.advance(minutes=30)
        again = engine.confirm(tenant.id, hold.id, "idem-late", guest)

        assert again.reservation_id == first.reservation_id

    def test_replay_keeps_creation_status(self, db, tenant, clock, guest):
        hold = make_hold(db, tenant, clock)
        engine = ConfirmationEngine(db, clock)
        first = engine.confirm(tenant.id, hold.id, "idem-status", guest)

        booking = db.query(Booking).filter(Booking.id == first.reservation_id).one()
        booking.status = BookingStatus.CONFIRMED.value
        db.commit()

        again = engine.confirm(tenant.id, hold.id, "idem-status", guest)
        assert again.status == BookingStatus.PENDING.value

    def test_lost_record_reconciled_from_booking(self, db, tenant, clock, guest):
        hold = make_hold(db, tenant, clock)
        engine = ConfirmationEngine(db, clock)
        first = engine.confirm(tenant.id, hold.id, "idem-crash", guest)

        # Simulates a crash between the booking and the record write
        db.query(IdempotencyRecord).delete()
        db.commit()

        again = engine.confirm(tenant.id, hold.id, "idem-crash", guest)

        assert again.replayed is True
        assert again.reservation_id == first.reservation_id
        assert again.status == first.status
        assert db.query(IdempotencyRecord).count() == 1
        assert db.query(Booking).count() == 1

    def test_key_reused_for_other_hold_returns_original(self, db, tenant, clock, guest):
        engine = ConfirmationEngine(db, clock)
        first_hold = make_hold(db, tenant, clock, table="T1")
        second_hold = make_hold(db, tenant, clock, table="T2")

        first = engine.confirm(tenant.id, first_hold.id, "idem-shared", guest)
        again = engine.confirm(tenant.id, second_hold.id, "idem-shared", guest)

        assert again.reservation_id == first.reservation_id
        db.refresh(second_hold)
        assert second_hold.status == HoldStatus.ACTIVE.value

    def test_keys_are_scoped_per_tenant(self, db, tenant, clock, guest):
        other = seed_tenant(db)
        engine = ConfirmationEngine(db, clock)

        a = engine.confirm(tenant.id, make_hold(db, tenant, clock).id, "same-key", guest)
        b = engine.confirm(other.id, make_hold(db, other, clock).id, "same-key", guest)

        assert a.reservation_id != b.reservation_id
        assert b.replayed is False


class TestHoldErrors:
    """Unusable holds"""

    def test_expired_hold(self, db, tenant, clock, guest):
        hold = make_hold(db, tenant, clock, ttl_seconds=300)
        clock.advance(minutes=6)

        with pytest.raises(HoldExpired):
            ConfirmationEngine(db, clock).confirm(tenant.id, hold.id, "idem-expired", guest)

        assert db.query(Booking).count() == 0
        db.refresh(hold)
        assert hold.status == HoldStatus.EXPIRED.value

    def test_consumed_hold_with_new_key(self, db, tenant, clock, guest):
        hold = make_hold(db, tenant, clock)
        engine = ConfirmationEngine(db, clock)
        engine.confirm(tenant.id, hold.id, "idem-a", guest)

        with pytest.raises(HoldAlreadyConsumed):
            engine.confirm(tenant.id, hold.id, "idem-b", guest)

    def test_unknown_hold(self, db, tenant, clock, guest):
        with pytest.raises(HoldNotFound):
            ConfirmationEngine(db, clock).confirm(tenant.id, "no-such-hold", "idem-x", guest)

    def test_hold_of_other_tenant(self, db, tenant, clock, guest):
        other = seed_tenant(db)
        hold = make_hold(db, other, clock)

        with pytest.raises(HoldNotFound):
            ConfirmationEngine(db, clock).confirm(tenant.id, hold.id, "idem-y", guest)


class TestValidation:
    """Input errors leave the hold untouched"""

    @pytest.mark.parametrize("details", [
        {"first_name": "Ada", "last_name": "Lovelace", "email": "not-an-email"},
        {"first_name": "Ada", "last_name": "Lovelace"},
        {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com", "phone": "12"},
        {"first_name": "A", "email": "ada@example.com"},
        {"first_name": "R2D2", "email": "ada@example.com"},
        {"name": "Ada", "email": "ada@example.com", "special_requests": "<script>alert(1)</script>"},
    ])
    def test_invalid_guest_details_keep_hold(self, db, tenant, clock, details):
        hold = make_hold(db, tenant, clock)

        with pytest.raises(InvalidGuestDetails) as exc_info:
            ConfirmationEngine(db, clock).confirm(tenant.id, hold.id, "idem-bad", details)

        assert exc_info.value.issues
        db.refresh(hold)
        assert hold.status == HoldStatus.ACTIVE.value

    def test_guest_details_must_be_object(self, db, tenant, clock):
        hold = make_hold(db, tenant, clock)
        with pytest.raises(InvalidGuestDetails):
            ConfirmationEngine(db, clock).confirm(tenant.id, hold.id, "idem-list", ["Ada"])

    @pytest.mark.parametrize("key", [None, "", "   ", "k" * 256])
    def test_bad_idempotency_key(self, db, tenant, clock, guest, key):
        hold = make_hold(db, tenant, clock)
        with pytest.raises(InvalidRequest):
            ConfirmationEngine(db, clock).confirm(tenant.id, hold.id, key, guest)


class TestConfirmationNumber:
    """Confirmation number format and collisions"""

    def test_prefix_by_status(self):
        booking_id = "0f8fad5b-d9cb-469f-a165-70867728950e"
        assert make_confirmation_number(booking_id, "pending") == "PEND28950E"
        assert make_confirmation_number(booking_id, "confirmed") == "CONF28950E"
        assert make_confirmation_number(booking_id, "seated") == "BOOK28950E"

    def test_collision_retried_with_new_number(self, db, tenant, clock, guest):
        engine = ConfirmationEngine(db, clock)
        first = engine.confirm(tenant.id, make_hold(db, tenant, clock, table="T1").id, "idem-c1", guest)

        hold = make_hold(db, tenant, clock, table="T2")
        with patch(
            "app.services.confirmation_engine.make_confirmation_number",
            side_effect=[first.confirmation_number, "PENDABCDEF"],
        ):
            result = engine.confirm(tenant.id, hold.id, "idem-c2", guest)

        assert result.confirmation_number == "PENDABCDEF"
        assert result.replayed is False
        assert db.query(Booking).count() == 2
        db.refresh(hold)
        assert hold.status == HoldStatus.CONSUMED.value

    def test_result_round_trips_through_stored_payload(self):
        result = ConfirmationResult(
            reservation_id="b-1",
            status="pending",
            confirmation_number="PEND000001",
            booking_time=SLOT,
            party_size=2,
            table_id="t-1",
        )
        restored = ConfirmationResult.from_response(result.to_response())

        assert restored.booking_time == SLOT
        assert restored.party_size == 2
        assert restored.replayed is True
