"""
Concurrency Tests for Race Condition Prevention

Tests cover:
- Two holds racing for the same table and slot
- Two confirmations racing with the same idempotency key
- A confirmation racing the expiry sweep
- Row locking helpers per dialect

Every worker uses its own session against a shared SQLite file, the way
separate requests would. SQLite serializes all writers on one database
lock, so these races cannot tell the tenant and table row locks apart;
the lock order itself is covered in test_hold_store.py.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from app.models.booking import Booking
from app.models.hold import BookingHold, HoldStatus
from app.models.tenant import RestaurantTable
from app.services import hold_store as hold_store_module
from app.services.confirmation_engine import ConfirmationEngine
from app.services.hold_store import HoldStore
from app.services.hold_sweeper import HoldSweeper
from app.utils.errors import ReservationError, SlotUnavailable, HoldExpired, HoldAlreadyConsumed

from conftest import FakeClock, seed_tenant, table_named

SLOT = datetime(2030, 6, 3, 19, 0)


def run_in_threads(session_factory, fn, count):
    """Run fn(session) in `count` threads released at the same time"""
    barrier = threading.Barrier(count)

    def worker(_):
        session = session_factory()
        try:
            barrier.wait()
            return ("ok", fn(session))
        except ReservationError as e:
            return ("error", e)
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(worker, range(count)))


class TestHoldRace:
    """Only one hold per table and slot"""

    @pytest.mark.parametrize("round_", range(3))
    def test_two_holds_same_table(self, session_factory, db, tenant, clock, round_):
        table_id = table_named(db, tenant, "T2").id
        tenant_id = tenant.id

        results = run_in_threads(
            session_factory,
            lambda s: HoldStore(s, clock).create_hold(tenant_id, 2, SLOT, table_id=table_id).id,
            2,
        )

        outcomes = sorted(kind for kind, _ in results)
        assert outcomes == ["error", "ok"]
        error = next(value for kind, value in results if kind == "error")
        assert isinstance(error, SlotUnavailable)
        assert db.query(BookingHold).filter(BookingHold.status == HoldStatus.ACTIVE.value).count() == 1

    def test_unbound_holds_do_not_oversell(self, session_factory, db, clock):
        tenant_id = seed_tenant(db, capacities=(4,)).id

        results = run_in_threads(
            session_factory,
            lambda s: HoldStore(s, clock).create_hold(tenant_id, 2, SLOT).id,
            4,
        )

        assert sum(1 for kind, _ in results if kind == "ok") == 2
        assert all(isinstance(v, SlotUnavailable) for kind, v in results if kind == "error")


class TestConfirmRace:
    """Same key, same hold, concurrent confirmations"""

    def test_same_key_yields_one_booking(self, session_factory, db, tenant, clock, guest):
        tenant_id = tenant.id
        hold_id = HoldStore(db, clock).create_hold(tenant.id, 2, SLOT).id

        results = run_in_threads(
            session_factory,
            lambda s: ConfirmationEngine(s, clock).confirm(tenant_id, hold_id, "idem-race", guest),
            2,
        )

        assert [kind for kind, _ in results] == ["ok", "ok"]
        first, second = (value for _, value in results)
        assert first.reservation_id == second.reservation_id
        assert sorted([first.replayed, second.replayed]) == [False, True]
        assert db.query(Booking).count() == 1

    def test_different_keys_one_winner(self, session_factory, db, tenant, clock, guest):
        tenant_id = tenant.id
        hold_id = HoldStore(db, clock).create_hold(tenant.id, 2, SLOT).id
        keys = iter(["idem-a", "idem-b"])
        lock = threading.Lock()

        def confirm(session):
            with lock:
                key = next(keys)
            return ConfirmationEngine(session, clock).confirm(tenant_id, hold_id, key, guest)

        results = run_in_threads(session_factory, confirm, 2)

        assert sorted(kind for kind, _ in results) == ["error", "ok"]
        error = next(value for kind, value in results if kind == "error")
        assert isinstance(error, HoldAlreadyConsumed)
        assert db.query(Booking).count() == 1


class TestConsumeVersusSweep:
    """Consume and expiry are decided by whichever commits first"""

    def test_sweep_claim_then_consume_wins(self, session_factory, db, tenant, guest):
        created_at = datetime(2030, 6, 3, 12, 0)
        hold = HoldStore(db, FakeClock(created_at), ttl_seconds=300).create_hold(tenant.id, 2, SLOT)
        tenant_id, hold_id = tenant.id, hold.id

        confirm_clock = FakeClock(created_at + timedelta(seconds=299))
        sweep_clock = FakeClock(created_at + timedelta(seconds=301))

        claimed = threading.Event()
        consumed = threading.Event()
        original = hold_store_module.get_pending_with_skip_locked

        def slow_claim(*args, **kwargs):
            rows = original(*args, **kwargs)
            claimed.set()
            consumed.wait(timeout=10)
            return rows

        def sweep():
            session = session_factory()
            try:
                return HoldSweeper(session, sweep_clock).expire_holds()
            finally:
                session.close()

        def confirm():
            claimed.wait(timeout=10)
            session = session_factory()
            try:
                return ConfirmationEngine(session, confirm_clock).confirm(tenant_id, hold_id, "idem-edge", guest)
            finally:
                consumed.set()
                session.close()

        with patch.object(hold_store_module, "get_pending_with_skip_locked", side_effect=slow_claim):
            with ThreadPoolExecutor(max_workers=2) as pool:
                sweep_future = pool.submit(sweep)
                confirm_future = pool.submit(confirm)
                expired = sweep_future.result(timeout=30)
                result = confirm_future.result(timeout=30)

        assert expired == 0
        assert result.replayed is False
        db.expire_all()
        assert db.query(BookingHold).filter(BookingHold.id == hold_id).one().status == HoldStatus.CONSUMED.value

    def test_expired_first_then_consume_fails(self, db, tenant, guest):
        created_at = datetime(2030, 6, 3, 12, 0)
        clock = FakeClock(created_at)
        hold = HoldStore(db, clock, ttl_seconds=300).create_hold(tenant.id, 2, SLOT)

        clock.advance(seconds=301)
        assert HoldSweeper(db, clock).expire_holds() == 1

        with pytest.raises(HoldExpired):
            ConfirmationEngine(db, clock).confirm(tenant.id, hold.id, "idem-late", guest)
        assert db.query(Booking).count() == 0


class TestRowLocking:
    """acquire_row_lock per dialect"""

    def test_acquire_row_lock_uses_for_update_on_postgres(self):
        from app.utils.db_helpers import acquire_row_lock

        db = MagicMock()
        db.bind.dialect.name = 'postgresql'

        query_mock = MagicMock()
        filter_mock = MagicMock()
        query_mock.filter.return_value = filter_mock
        db.query.return_value = query_mock

        acquire_row_lock(db, RestaurantTable, RestaurantTable.id == 'table-1', nowait=True)

        filter_mock.with_for_update.assert_called_once_with(nowait=True)

    def test_acquire_row_lock_skips_locking_on_sqlite(self):
        from app.utils.db_helpers import acquire_row_lock

        db = MagicMock()
        db.bind.dialect.name = 'sqlite'

        query_mock = MagicMock()
        filter_mock = MagicMock()
        query_mock.filter.return_value = filter_mock
        db.query.return_value = query_mock

        acquire_row_lock(db, RestaurantTable, RestaurantTable.id == 'table-1')

        filter_mock.with_for_update.assert_not_called()

    def test_skip_locked_claim_on_postgres(self):
        from app.utils.db_helpers import get_pending_with_skip_locked

        db = MagicMock()
        db.bind.dialect.name = 'postgresql'
        query = db.query.return_value.filter.return_value.order_by.return_value

        get_pending_with_skip_locked(db, BookingHold, BookingHold.status == 'active',
                                     order_by=BookingHold.expires_at, limit=10)

        query.with_for_update.assert_called_once_with(skip_locked=True)
        query.with_for_update.return_value.limit.assert_called_once_with(10)
