"""
Tests for the Hold Store

Test Coverage:
1. create_hold: bound and unbound holds, conflicts, hours and lead time
2. Request-key replays
3. consume_hold: exactly once, expiry at the TTL boundary
4. Lazy and batch expiry
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from app.models.hold import BookingHold, HoldStatus
from app.models.tenant import Tenant, RestaurantTable
from app.services import hold_store as hold_store_module
from app.services.confirmation_engine import ConfirmationEngine
from app.services.hold_store import HoldStore
from app.utils.db_helpers import acquire_row_lock
from app.utils.errors import (
    HoldAlreadyConsumed,
    HoldExpired,
    HoldNotFound,
    InvalidRequest,
    SlotUnavailable,
    TenantMismatch,
)

from conftest import seed_tenant, table_named

SLOT = datetime(2030, 6, 3, 19, 0)


class TestCreateHold:
    """Creating holds"""

    def test_bound_hold_created(self, db, tenant, clock):
        table = table_named(db, tenant, "T1")
        store = HoldStore(db, clock, ttl_seconds=300)

        hold = store.create_hold(tenant.id, 2, SLOT, table_id=table.id)

        assert hold.status == HoldStatus.ACTIVE.value
        assert hold.table_id == table.id
        assert hold.slot_time == SLOT
        assert hold.ends_at == SLOT + timedelta(minutes=120)
        assert hold.expires_at == clock() + timedelta(seconds=300)

    def test_tenant_slug_accepted(self, db, tenant, clock):
        hold = HoldStore(db, clock).create_hold(tenant.slug, 2, SLOT)
        assert hold.tenant_id == tenant.id

    def test_aware_slot_time_normalized(self, db, tenant, clock):
        aware = datetime(2030, 6, 3, 21, 0, tzinfo=timezone(timedelta(hours=2)))
        hold = HoldStore(db, clock).create_hold(tenant.id, 2, aware)
        assert hold.slot_time == SLOT

    def test_ttl_from_tenant_then_settings(self, db, clock):
        tenant = seed_tenant(db, hold_ttl_seconds=120)
        hold = HoldStore(db, clock).create_hold(tenant.id, 2, SLOT)
        assert hold.expires_at == clock() + timedelta(seconds=120)

    def test_second_hold_same_table_rejected(self, db, tenant, clock):
        table = table_named(db, tenant, "T1")
        store = HoldStore(db, clock)
        store.create_hold(tenant.id, 2, SLOT, table_id=table.id)

        with pytest.raises(SlotUnavailable):
            store.create_hold(tenant.id, 2, SLOT + timedelta(minutes=30), table_id=table.id)

    def test_adjacent_window_allowed(self, db, tenant, clock):
        table = table_named(db, tenant, "T1")
        store = HoldStore(db, clock)
        store.create_hold(tenant.id, 2, SLOT, table_id=table.id)

        hold = store.create_hold(tenant.id, 2, SLOT + timedelta(hours=2), table_id=table.id)
        assert hold.status == HoldStatus.ACTIVE.value

    def test_expired_hold_frees_table(self, db, tenant, clock):
        table = table_named(db, tenant, "T1")
        store = HoldStore(db, clock, ttl_seconds=60)
        first = store.create_hold(tenant.id, 2, SLOT, table_id=table.id)

        clock.advance(seconds=60)
        second = store.create_hold(tenant.id, 2, SLOT, table_id=table.id)

        db.refresh(first)
        assert first.status == HoldStatus.EXPIRED.value
        assert second.status == HoldStatus.ACTIVE.value

    def test_table_too_small(self, db, tenant, clock):
        table = table_named(db, tenant, "T1")
        with pytest.raises(SlotUnavailable):
            HoldStore(db, clock).create_hold(tenant.id, 4, SLOT, table_id=table.id)

    def test_foreign_table_is_tenant_mismatch(self, db, tenant, clock):
        other = seed_tenant(db)
        foreign = table_named(db, other, "T1")

        with pytest.raises(TenantMismatch):
            HoldStore(db, clock).create_hold(tenant.id, 2, SLOT, table_id=foreign.id)

    def test_outside_business_hours(self, db, tenant, clock):
        with pytest.raises(SlotUnavailable):
            HoldStore(db, clock).create_hold(tenant.id, 2, datetime(2030, 6, 3, 22, 0))

    def test_past_slot_rejected(self, db, tenant, clock):
        with pytest.raises(InvalidRequest):
            HoldStore(db, clock).create_hold(tenant.id, 2, clock() - timedelta(minutes=1))

    @pytest.mark.parametrize("party_size", [0, 51])
    def test_party_size_bounds(self, db, tenant, clock, party_size):
        with pytest.raises(InvalidRequest):
            HoldStore(db, clock).create_hold(tenant.id, party_size, SLOT)

    def test_unbound_holds_respect_capacity(self, db, clock):
        tenant = seed_tenant(db, capacities=(4,))
        store = HoldStore(db, clock)
        store.create_hold(tenant.id, 3, SLOT)

        with pytest.raises(SlotUnavailable):
            store.create_hold(tenant.id, 2, SLOT + timedelta(minutes=30))

        # One cover left
        assert store.create_hold(tenant.id, 1, SLOT).party_size == 1

    def test_max_covers_applies_to_bound_holds(self, db, clock):
        tenant = seed_tenant(db, max_covers_per_slot=6)
        store = HoldStore(db, clock)
        store.create_hold(tenant.id, 4, SLOT, table_id=table_named(db, tenant, "T2").id)

        with pytest.raises(SlotUnavailable):
            store.create_hold(tenant.id, 4, SLOT, table_id=table_named(db, tenant, "T3").id)

    def test_unbound_hold_blocks_bound_hold_on_last_table(self, db, clock):
        tenant = seed_tenant(db, capacities=(4,))
        store = HoldStore(db, clock)
        store.create_hold(tenant.id, 4, SLOT)

        with pytest.raises(SlotUnavailable):
            store.create_hold(tenant.id, 4, SLOT, table_id=table_named(db, tenant, "T1").id)

    def test_unbound_booking_blocks_bound_hold_on_last_table(self, db, clock, guest):
        tenant = seed_tenant(db, capacities=(4,))
        store = HoldStore(db, clock)
        unbound = store.create_hold(tenant.id, 4, SLOT)
        ConfirmationEngine(db, clock, hold_store=store).confirm(tenant.id, unbound.id, "idem-unbound", guest)

        with pytest.raises(SlotUnavailable):
            store.create_hold(tenant.id, 4, SLOT, table_id=table_named(db, tenant, "T1").id)
        assert db.query(BookingHold).filter(BookingHold.status == HoldStatus.ACTIVE.value).count() == 0

    @pytest.mark.parametrize("bound", [True, False])
    def test_tenant_row_locked_before_table(self, db, tenant, clock, bound):
        table_id = table_named(db, tenant, "T2").id if bound else None
        locked = []

        def record(session, model, *conditions, **kwargs):
            locked.append(model)
            return acquire_row_lock(session, model, *conditions, **kwargs)

        with patch.object(hold_store_module, "acquire_row_lock", side_effect=record):
            HoldStore(db, clock).create_hold(tenant.id, 2, SLOT, table_id=table_id)

        assert locked == ([Tenant, RestaurantTable] if bound else [Tenant])


class TestRequestKeyReplay:
    """Repeated hold requests with the same key"""

    def test_same_key_returns_same_hold(self, db, tenant, clock):
        store = HoldStore(db, clock)
        first = store.create_hold(tenant.id, 2, SLOT, request_key="req-1")
        again = store.create_hold(tenant.id, 2, SLOT, request_key="req-1")

        assert again.id == first.id
        assert db.query(BookingHold).count() == 1

    def test_replay_after_consume(self, db, tenant, clock):
        store = HoldStore(db, clock)
        hold = store.create_hold(tenant.id, 2, SLOT, request_key="req-2")
        store.consume_hold(hold.id, tenant.id)

        with pytest.raises(HoldAlreadyConsumed):
            store.create_hold(tenant.id, 2, SLOT, request_key="req-2")

    def test_replay_after_expiry(self, db, tenant, clock):
        store = HoldStore(db, clock, ttl_seconds=60)
        store.create_hold(tenant.id, 2, SLOT, request_key="req-3")
        clock.advance(seconds=61)

        with pytest.raises(HoldExpired):
            store.create_hold(tenant.id, 2, SLOT, request_key="req-3")

    def test_oversized_key_rejected(self, db, tenant, clock):
        with pytest.raises(InvalidRequest):
            HoldStore(db, clock).create_hold(tenant.id, 2, SLOT, request_key="k" * 256)


class TestConsumeHold:
    """Consuming holds exactly once"""

    def test_consume_once(self, db, tenant, clock):
        store = HoldStore(db, clock)
        hold = store.create_hold(tenant.id, 2, SLOT)

        consumed = store.consume_hold(hold.id, tenant.id, consumed_by_key="idem-1")

        assert consumed.status == HoldStatus.CONSUMED.value
        assert consumed.consumed_by_key == "idem-1"
        assert consumed.consumed_at == clock()

        with pytest.raises(HoldAlreadyConsumed):
            store.consume_hold(hold.id, tenant.id)

    def test_consume_at_expiry_instant_fails(self, db, tenant, clock):
        store = HoldStore(db, clock, ttl_seconds=300)
        hold = store.create_hold(tenant.id, 2, SLOT)

        clock.advance(seconds=300)

        with pytest.raises(HoldExpired):
            store.consume_hold(hold.id, tenant.id)
        assert store.get_hold(hold.id, tenant.id).status == HoldStatus.EXPIRED.value

    def test_consume_just_before_expiry(self, db, tenant, clock):
        store = HoldStore(db, clock, ttl_seconds=300)
        hold = store.create_hold(tenant.id, 2, SLOT)

        clock.advance(seconds=299)

        assert store.consume_hold(hold.id, tenant.id).status == HoldStatus.CONSUMED.value

    def test_consume_other_tenant_not_found(self, db, tenant, clock):
        other = seed_tenant(db)
        hold = HoldStore(db, clock).create_hold(tenant.id, 2, SLOT)

        with pytest.raises(HoldNotFound):
            HoldStore(db, clock).consume_hold(hold.id, other.id)

    def test_consume_unknown_hold(self, db, tenant, clock):
        with pytest.raises(HoldNotFound):
            HoldStore(db, clock).consume_hold("missing", tenant.id)


class TestExpiry:
    """Lazy and batch expiry"""

    def test_get_hold_expires_lazily(self, db, tenant, clock):
        store = HoldStore(db, clock, ttl_seconds=60)
        hold = store.create_hold(tenant.id, 2, SLOT)

        clock.advance(minutes=2)
        loaded = store.get_hold(hold.id, tenant.id)

        assert loaded.status == HoldStatus.EXPIRED.value
        assert loaded.expired_at == clock()

    def test_batch_expiry_respects_limit(self, db, tenant, clock):
        store = HoldStore(db, clock, ttl_seconds=60)
        for minutes in (0, 30, 60):
            store.create_hold(tenant.id, 1, SLOT + timedelta(minutes=minutes))

        clock.advance(minutes=5)

        assert store.expire_stale_holds(limit=2) == 2
        assert store.expire_stale_holds(limit=2) == 1
        assert store.expire_stale_holds(limit=2) == 0

    def test_expiry_leaves_consumed_holds(self, db, tenant, clock):
        store = HoldStore(db, clock, ttl_seconds=60)
        hold = store.create_hold(tenant.id, 2, SLOT)
        store.consume_hold(hold.id, tenant.id)

        clock.advance(minutes=5)

        assert store.expire_stale_holds() == 0
        assert store.get_hold(hold.id, tenant.id).status == HoldStatus.CONSUMED.value
