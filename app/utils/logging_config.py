"""
Structured Logging Configuration

Every record carries the request id and tenant of the call that produced it,
so a hold can be followed from search to confirmation across log lines.

Output is one JSON object per line in production and a readable single line
in development.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional, Any, Dict
from contextvars import ContextVar

request_id_var: ContextVar[str] = ContextVar('request_id', default='')
tenant_id_var: ContextVar[str] = ContextVar('tenant_id', default='')

# Record attributes copied into the JSON payload when present
DOMAIN_FIELDS = ("entity", "entity_id", "duration_ms", "fields")

PLAIN_FORMAT = '%(asctime)s %(levelname)s [%(request_id)s %(tenant_id)s] %(name)s: %(message)s'

NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "apscheduler")


class RequestContextFilter(logging.Filter):
    """Stamps request and tenant ids onto each record"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or '-'
        record.tenant_id = tenant_id_var.get() or '-'
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        for key in ("request_id", "tenant_id"):
            value = getattr(record, key, '-')
            if value and value != '-':
                payload[key] = value

        for key in DOMAIN_FIELDS:
            if hasattr(record, key):
                payload[key] = getattr(record, key)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class StructuredLogger(logging.LoggerAdapter):
    """
    Adapter with one helper per domain event.

    Helpers never receive guest contact details; callers mask those
    before logging.
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs

    def event(
        self,
        level: int,
        msg: str,
        entity: str,
        entity_id: str,
        duration_ms: Optional[float] = None,
        **fields
    ):
        extra: Dict[str, Any] = {'entity': entity, 'entity_id': entity_id}
        if duration_ms is not None:
            extra['duration_ms'] = duration_ms
        if fields:
            extra['fields'] = fields
        self.log(level, msg, extra=extra)

    def hold_created(self, hold_id: str, tenant_id: str, party_size: int, slot_time: Any, table_id: Optional[str]):
        self.event(
            logging.INFO,
            f"Hold {hold_id} placed for {party_size} at {slot_time}",
            "hold",
            hold_id,
            tenant=tenant_id,
            party_size=party_size,
            table_id=table_id,
        )

    def booking_confirmed(self, booking_id: str, tenant_id: str, status: str, confirmation_number: str,
                          replayed: bool = False, duration_ms: float = None):
        verb = "replayed" if replayed else "created"
        self.event(
            logging.INFO,
            f"Booking {confirmation_number} {verb} as {status}",
            "booking",
            booking_id,
            duration_ms=duration_ms,
            tenant=tenant_id,
            status=status,
            replayed=replayed,
        )

    def booking_status_changed(self, booking_id: str, old_status: str, new_status: str, actor: str):
        self.event(
            logging.INFO,
            f"Booking {booking_id}: {old_status} -> {new_status} by {actor}",
            "booking",
            booking_id,
            from_status=old_status,
            to_status=new_status,
            actor=actor,
        )


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_uvicorn: bool = True
) -> None:
    """
    Install a single stdout handler on the root logger.

    Args:
        level: Log level name
        json_format: One JSON object per line (production)
        include_uvicorn: Route uvicorn's loggers through the same handler
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.addFilter(RequestContextFilter())
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(PLAIN_FORMAT))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
            uvicorn_logger = logging.getLogger(name)
            uvicorn_logger.handlers = [handler]
            uvicorn_logger.propagate = False

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name), {})


def set_request_context(request_id: str, tenant_id: Optional[str] = None):
    """Bind the request id, and the tenant once it has been resolved"""
    request_id_var.set(request_id)
    if tenant_id:
        tenant_id_var.set(tenant_id)


def clear_request_context():
    request_id_var.set('')
    tenant_id_var.set('')
