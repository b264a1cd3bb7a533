"""
Metrics Router - Prometheus Metrics Endpoint

Exposes /metrics for Prometheus scraping: in-process counters plus gauges
read from the database at scrape time.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from ..database import get_db
from ..models.hold import BookingHold, HoldStatus
from ..models.notification_outbox import NotificationOutbox, NotificationStatus
from ..utils.metrics import format_prometheus_metrics

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/metrics", tags=["Metrics"])


def format_gauges(db: Session) -> str:
    """Queue sizes as Prometheus gauges"""
    try:
        active_holds = db.query(func.count(BookingHold.id)).filter(
            BookingHold.status == HoldStatus.ACTIVE.value
        ).scalar() or 0
        pending_notifications = db.query(func.count(NotificationOutbox.id)).filter(
            NotificationOutbox.status.in_([NotificationStatus.PENDING.value, NotificationStatus.PROCESSING.value])
        ).scalar() or 0
    except SQLAlchemyError as e:
        logger.warning(f"Could not read gauges: {e}")
        return ""

    return "\n".join([
        "# HELP active_holds Holds currently in active status",
        "# TYPE active_holds gauge",
        f"active_holds {active_holds}",
        "# HELP notification_outbox_pending Notifications waiting for delivery",
        "# TYPE notification_outbox_pending gauge",
        f"notification_outbox_pending {pending_notifications}",
    ]) + "\n"


@router.get("")
@router.get("/")
def get_metrics(db: Session = Depends(get_db)):
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    """
    metrics_text = format_prometheus_metrics() + format_gauges(db)
    return PlainTextResponse(
        content=metrics_text,
        media_type="text/plain; charset=utf-8"
    )
