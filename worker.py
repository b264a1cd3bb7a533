#!/usr/bin/env python
"""
Sweeper Worker

Background process that:
1. Expires stale holds and purges old idempotency records
2. Marks no-shows (when NO_SHOW_GRACE_MINUTES > 0)
3. Delivers queued booking notifications

Use it when the API runs with SWEEPER_ENABLED=false, e.g. several API
replicas and one worker.

Run with:
    python worker.py

Or with environment:
    SWEEPER_INTERVAL_SECONDS=10 python worker.py
"""

import os
import sys
import time
import logging
import signal

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from app.config import settings
from app.database import SessionLocal
from app.services.hold_sweeper import run_sweep_once
from app.services.notification_dispatcher import NotificationDispatcher
from app.utils.logging_config import setup_logging

logger = logging.getLogger("worker")

RUNNING = True


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global RUNNING
    logger.info("Received shutdown signal, finishing current cycle...")
    RUNNING = False


def process_notifications(db):
    """Deliver due notifications"""
    try:
        return NotificationDispatcher(db).dispatch_pending()
    except Exception as e:
        db.rollback()
        logger.error(f"Error in notification processing: {e}")
        return {}


def run_worker():
    """Main worker loop"""
    interval = settings.sweeper_interval_seconds

    logger.info("=" * 50)
    logger.info("Starting Sweeper Worker")
    logger.info(f"Interval: {interval}s")
    logger.info(f"Batch size: {settings.sweeper_batch_size}")
    logger.info("=" * 50)

    cycle = 0

    while RUNNING:
        cycle += 1
        start_time = time.time()

        sweep = run_sweep_once(SessionLocal)

        db = SessionLocal()
        try:
            counts = process_notifications(db)
        finally:
            db.close()

        if sweep.holds_expired or sweep.no_shows_marked or counts.get("sent") or counts.get("failed"):
            duration = time.time() - start_time
            logger.info(
                f"Cycle {cycle}: "
                f"holds expired {sweep.holds_expired} | "
                f"no-shows {sweep.no_shows_marked} | "
                f"notifications {counts.get('sent', 0)} sent/{counts.get('failed', 0)} failed | "
                f"{duration:.2f}s"
            )

        # Sleep until next cycle
        if RUNNING:
            time.sleep(interval)

    logger.info("Worker shutdown complete")


if __name__ == "__main__":
    setup_logging(level=settings.log_level, json_format=settings.log_json, include_uvicorn=False)

    # Register signal handlers for graceful shutdown
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        run_worker()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.critical(f"Worker crashed: {e}")
        sys.exit(1)
