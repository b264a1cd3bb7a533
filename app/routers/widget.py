"""
Public booking widget endpoint.

A single POST with an `action` field, as the embeddable widget sends it:
- ping     health check for the widget
- search   candidate slots for a party and date
- hold     reserve a slot for the hold TTL
- confirm  turn a hold into a booking (idempotent)

Domain errors are not caught here; the app-level handler renders them.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Type

from fastapi import APIRouter, Body, Depends, Header, Request, Response
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from ..database import get_db
from ..schemas.availability import SearchRequest, SlotResponse, SearchResponse
from ..schemas.booking import ConfirmRequest
from ..schemas.hold import HoldRequest, HoldResponse
from ..services.confirmation_engine import ConfirmationEngine
from ..services.hold_store import HoldStore
from ..services.slot_allocator import SlotAllocator, tenant_zone, to_local
from ..services.tenant_resolver import ensure_same_tenant
from ..utils.errors import InvalidRequest, validation_issues
from ..utils.logging_config import set_request_context
from ..utils.rate_limiter import limiter, get_rate_limit

router = APIRouter(prefix="/api/widget", tags=["Widget"])


def as_utc(value: datetime) -> datetime:
    """Naive UTC column value -> aware UTC for responses"""
    return value.replace(tzinfo=timezone.utc)


def parse_action(model: Type[BaseModel], payload: Dict[str, Any]):
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise InvalidRequest("Invalid request: " + "; ".join(
            f"{i['field']}: {i['message']}" for i in validation_issues(e)
        ), issues=validation_issues(e))


def handle_ping(db: Session, payload: Dict[str, Any], request: Request, response: Response, **_) -> Dict:
    return {"success": True, "pong": True, "time": datetime.now(timezone.utc).isoformat()}


def handle_search(db: Session, payload: Dict[str, Any], request: Request, response: Response,
                  tenant_header: Optional[str] = None, **_) -> Dict:
    data = parse_action(SearchRequest, payload)
    tenant = ensure_same_tenant(db, tenant_header, data.tenant_id)
    set_request_context(getattr(request.state, "request_id", ""), tenant.id)

    window = data.time_window
    slots = SlotAllocator(db).find_slots(
        tenant.id,
        data.party_size,
        data.date,
        window_start=window.start if window else None,
        window_end=window.end if window else None,
        preference=data.preference,
        limit=data.limit,
    )

    zone = tenant_zone(tenant)
    result = SearchResponse(slots=[
        SlotResponse(
            time=as_utc(slot.slot_time),
            ends_at=as_utc(slot.ends_at),
            local_time=to_local(slot.slot_time, zone).strftime("%Y-%m-%dT%H:%M"),
            table_id=slot.table_id,
            table_name=slot.table_name,
            capacity=slot.capacity,
        )
        for slot in slots
    ])
    return result.model_dump(mode="json")


def handle_hold(db: Session, payload: Dict[str, Any], request: Request, response: Response,
                tenant_header: Optional[str] = None, idempotency_header: Optional[str] = None, **_) -> Dict:
    data = parse_action(HoldRequest, payload)
    tenant = ensure_same_tenant(db, tenant_header, data.tenant_id)
    set_request_context(getattr(request.state, "request_id", ""), tenant.id)

    hold = HoldStore(db).create_hold(
        tenant.id,
        data.party_size,
        data.slot.time,
        table_id=data.slot.table_id,
        request_key=data.idempotency_key or idempotency_header,
    )
    return HoldResponse(
        hold_id=hold.id,
        expires_at=as_utc(hold.expires_at),
        slot_time=as_utc(hold.slot_time),
        table_id=hold.table_id,
        party_size=hold.party_size,
    ).model_dump(mode="json")


def handle_confirm(db: Session, payload: Dict[str, Any], request: Request, response: Response,
                   tenant_header: Optional[str] = None, idempotency_header: Optional[str] = None, **_) -> Dict:
    # guest_details stay a dict here; the engine validates them (INVALID_GUEST_DETAILS)
    data = parse_action(ConfirmRequest, payload)
    tenant = ensure_same_tenant(db, tenant_header, data.tenant_id)
    set_request_context(getattr(request.state, "request_id", ""), tenant.id)

    result = ConfirmationEngine(db).confirm(
        tenant.id,
        data.hold_id,
        data.idempotency_key or idempotency_header,
        data.guest_details,
    )
    if result.replayed:
        response.headers["Idempotent-Replayed"] = "true"
    return result.to_response()


ACTIONS: Dict[str, Callable[..., Dict]] = {
    "ping": handle_ping,
    "search": handle_search,
    "hold": handle_hold,
    "confirm": handle_confirm,
}


@router.post("")
@router.post("/")
@limiter.limit(get_rate_limit("widget"))
def widget_action(
    request: Request,
    response: Response,
    payload: Dict[str, Any] = Body(...),
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
    x_idempotency_key: Optional[str] = Header(None, alias="X-Idempotency-Key"),
    db: Session = Depends(get_db),
):
    """Dispatch a widget action"""
    action = payload.get("action")
    handler = ACTIONS.get(action) if isinstance(action, str) else None
    if handler is None:
        raise InvalidRequest(f"Unknown action: {action!r}")

    return handler(
        db,
        payload,
        request,
        response,
        tenant_header=x_tenant_id,
        idempotency_header=x_idempotency_key,
    )
