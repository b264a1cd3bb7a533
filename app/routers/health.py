"""
Health Check Endpoints

- /health/live - process is up
- /health/ready - database reachable; sweeper state reported alongside

A lagging sweeper does not fail readiness: holds past their TTL are
still refused at confirmation time, only the table is freed later.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from datetime import datetime, timedelta, timezone
import time

from ..database import get_db
from ..config import settings
from ..services.hold_sweeper import get_sweeper_status
from ..utils.clock import utcnow

router = APIRouter(prefix="/health", tags=["Health"])

# Missed sweeps tolerated before the sweeper is reported as lagging
SWEEP_LAG_INTERVALS = 3


def get_db_health(db: Session) -> dict:
    """Round trip to the database"""
    try:
        start = time.perf_counter()
        db.execute(text("SELECT 1"))
        return {
            "status": "up",
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            "type": db.bind.dialect.name,
        }
    except SQLAlchemyError as e:
        return {"status": "down", "error": str(e)[:100]}


def get_sweeper_health(now: datetime = None) -> dict:
    if not settings.sweeper_enabled:
        return {"status": "disabled"}

    sweeper = get_sweeper_status()
    if not sweeper["running"]:
        return {"status": "stopped"}

    last = sweeper["last_sweep_time"]
    health = {"status": "up", "last_sweep_time": last}
    if last:
        now = now or utcnow()
        allowed = timedelta(seconds=settings.sweeper_interval_seconds * SWEEP_LAG_INTERVALS)
        if now - datetime.fromisoformat(last) > allowed:
            health["status"] = "lagging"
    return health


@router.get("/live")
@router.get("/live/")
async def liveness_check():
    return {
        "status": "alive",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/ready")
@router.get("/ready/")
def readiness_check(db: Session = Depends(get_db)):
    """Ready once the database answers"""
    db_health = get_db_health(db)
    if db_health["status"] != "up":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "not_ready",
                "reason": "database_unavailable",
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )

    return {
        "status": "ready",
        "database": db_health,
        "sweeper": get_sweeper_health(),
        "hold_ttl_seconds": settings.hold_ttl_seconds,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
