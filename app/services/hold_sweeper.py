"""
Hold Sweeper

Periodic housekeeping for the reservation core:
- expires active holds past their TTL (same CAS as consume_hold, so a
  racing confirmation and the sweep cannot both win)
- purges idempotency records past their retention window
- optionally marks confirmed bookings as no_show after a grace period,
  through the state machine

Uses APScheduler (AsyncIOScheduler) inside the API process; worker.py runs
the same jobs standalone.
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import and_
from sqlalchemy.orm import Session

from ..config import settings
from ..database import SessionLocal
from ..models.booking import Booking, BookingStatus
from ..models.idempotency import IdempotencyRecord
from ..utils.clock import Clock, utcnow
from ..utils.errors import ReservationError
from .booking_state_machine import BookingStateMachine
from .hold_store import HoldStore
from .notification_dispatcher import run_notification_job

logger = logging.getLogger(__name__)

NO_SHOW_ACTOR = "system:no_show_timer"

# Global scheduler instance
_scheduler: Optional[AsyncIOScheduler] = None
_last_sweep_time: Optional[datetime] = None
_last_sweep_result: Optional[Dict] = None


@dataclass
class SweepResult:
    holds_expired: int = 0
    idempotency_purged: int = 0
    no_shows_marked: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)


class HoldSweeper:
    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        batch_size: Optional[int] = None,
        no_show_grace_minutes: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock or utcnow
        self.batch_size = batch_size or settings.sweeper_batch_size
        self.no_show_grace_minutes = (
            settings.no_show_grace_minutes if no_show_grace_minutes is None else no_show_grace_minutes
        )

    def sweep(self) -> SweepResult:
        """One pass; running it twice over the same data changes nothing more"""
        result = SweepResult()
        result.holds_expired = self.expire_holds()
        result.idempotency_purged = self.purge_idempotency_records()
        if self.no_show_grace_minutes > 0:
            result.no_shows_marked = self.mark_no_shows(result)
        return result

    def expire_holds(self) -> int:
        """Expire stale holds in batches until none are left"""
        store = HoldStore(self.db, self.clock)
        total = 0
        while True:
            expired = store.expire_stale_holds(limit=self.batch_size)
            total += expired
            if expired < self.batch_size:
                return total

    def purge_idempotency_records(self) -> int:
        now = self.clock()
        purged = self.db.query(IdempotencyRecord).filter(
            IdempotencyRecord.expires_at <= now
        ).delete(synchronize_session=False)
        self.db.commit()
        if purged:
            logger.info(f"Purged {purged} expired idempotency records")
        return purged

    def mark_no_shows(self, result: Optional[SweepResult] = None) -> int:
        """Confirmed bookings whose start passed more than the grace period ago"""
        cutoff = self.clock() - timedelta(minutes=self.no_show_grace_minutes)
        overdue = self.db.query(Booking.id, Booking.tenant_id).filter(
            and_(
                Booking.status == BookingStatus.CONFIRMED.value,
                Booking.booking_time <= cutoff,
            )
        ).order_by(Booking.booking_time).limit(self.batch_size).all()

        machine = BookingStateMachine(self.db, self.clock)
        marked = 0
        for booking_id, tenant_id in overdue:
            try:
                machine.transition(
                    booking_id,
                    tenant_id,
                    BookingStatus.NO_SHOW,
                    actor=NO_SHOW_ACTOR,
                    reason=f"Not seated {self.no_show_grace_minutes} minutes after booking time",
                )
                marked += 1
            except ReservationError as e:
                # Seated or cancelled meanwhile
                logger.info(f"Skipped no-show for booking {booking_id}: {e.code.value}")
                if result is not None:
                    result.errors.append(f"{booking_id}: {e.code.value}")

        if marked:
            logger.info(f"Marked {marked} bookings as no_show")
        return marked


def run_sweep_once(session_factory=SessionLocal, clock: Optional[Clock] = None) -> SweepResult:
    """Run one sweep with its own session"""
    global _last_sweep_time, _last_sweep_result

    db = session_factory()
    try:
        result = HoldSweeper(db, clock).sweep()
    except Exception as e:
        db.rollback()
        logger.error(f"Sweep failed: {e}", exc_info=True)
        result = SweepResult(errors=[str(e)])
    finally:
        db.close()

    _last_sweep_time = utcnow()
    _last_sweep_result = result.to_dict()
    if result.holds_expired or result.idempotency_purged or result.no_shows_marked:
        logger.info(f"Sweep result: {_last_sweep_result}")
    return result


def start_sweeper() -> bool:
    """
    Start the sweeper and notification jobs.

    Returns:
        True if the scheduler is running
    """
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Sweeper is already running")
        return True

    try:
        _scheduler = AsyncIOScheduler(timezone="UTC")

        _scheduler.add_job(
            run_sweep_once,
            IntervalTrigger(seconds=settings.sweeper_interval_seconds),
            id="hold_sweeper",
            name="Expire holds / purge idempotency records",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        _scheduler.add_job(
            run_notification_job,
            IntervalTrigger(seconds=settings.sweeper_interval_seconds),
            id="notification_dispatcher",
            name="Drain notification outbox",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        _scheduler.start()
        logger.info(f"Sweeper started (every {settings.sweeper_interval_seconds}s)")
        return True

    except Exception as e:
        logger.error(f"Failed to start sweeper: {e}")
        return False


def stop_sweeper() -> bool:
    global _scheduler

    if _scheduler is None or not _scheduler.running:
        return True

    try:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Sweeper stopped")
        return True
    except Exception as e:
        logger.error(f"Failed to stop sweeper: {e}")
        return False


def get_sweeper_status() -> Dict:
    return {
        "running": _scheduler is not None and _scheduler.running,
        "interval_seconds": settings.sweeper_interval_seconds,
        "last_sweep_time": _last_sweep_time.isoformat() if _last_sweep_time else None,
        "last_sweep_result": _last_sweep_result,
    }
