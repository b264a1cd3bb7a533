"""
Dashboard booking endpoints.

Tenant identity comes from the X-Tenant-ID header set by the upstream
identity layer. Every status change goes through BookingStateMachine.
"""

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session
from typing import List
import logging

from ..database import get_db
from ..models.tenant import Tenant
from ..schemas.booking import BookingResponse, StatusEventResponse, StatusTransitionRequest
from ..services.booking_state_machine import BookingStateMachine
from ..services.tenant_resolver import ensure_same_tenant, resolve_tenant
from ..utils.logging_config import set_request_context
from ..utils.rate_limiter import limiter, get_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["Bookings"])


def get_request_tenant(
    request: Request,
    x_tenant_id: str = Header(..., alias="X-Tenant-ID"),
    db: Session = Depends(get_db),
) -> Tenant:
    tenant = resolve_tenant(db, x_tenant_id)
    set_request_context(getattr(request.state, "request_id", ""), tenant.id)
    return tenant


@router.get("/{booking_id}", response_model=BookingResponse)
@router.get("/{booking_id}/", response_model=BookingResponse)
@limiter.limit(get_rate_limit("booking_get"))
def get_booking(
    request: Request,
    booking_id: str,
    tenant: Tenant = Depends(get_request_tenant),
    db: Session = Depends(get_db),
):
    """Booking of the caller's tenant"""
    return BookingStateMachine(db).get_booking(booking_id, tenant.id)


@router.post("/{booking_id}/status", response_model=BookingResponse)
@router.post("/{booking_id}/status/", response_model=BookingResponse)
@limiter.limit(get_rate_limit("booking_status"))
def change_booking_status(
    request: Request,
    booking_id: str,
    data: StatusTransitionRequest,
    x_tenant_id: str = Header(..., alias="X-Tenant-ID"),
    db: Session = Depends(get_db),
):
    """
    Move a booking through its lifecycle.

    - pending -> confirmed | cancelled
    - confirmed -> seated | cancelled | no_show
    - seated -> completed | no_show
    """
    tenant = ensure_same_tenant(db, x_tenant_id, data.tenant_id)
    set_request_context(getattr(request.state, "request_id", ""), tenant.id)

    booking = BookingStateMachine(db).transition(
        booking_id,
        tenant.id,
        data.target_status,
        actor=data.actor,
        reason=data.reason,
    )
    logger.info(f"Booking {booking_id} -> {booking.status} by {data.actor}")
    return booking


@router.get("/{booking_id}/history", response_model=List[StatusEventResponse])
@router.get("/{booking_id}/history/", response_model=List[StatusEventResponse])
@limiter.limit(get_rate_limit("booking_get"))
def get_booking_history(
    request: Request,
    booking_id: str,
    tenant: Tenant = Depends(get_request_tenant),
    db: Session = Depends(get_db),
):
    """Status audit trail, oldest first"""
    return BookingStateMachine(db).history(booking_id, tenant.id)
