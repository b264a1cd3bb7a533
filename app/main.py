from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from contextlib import asynccontextmanager
from slowapi.errors import RateLimitExceeded
import logging
import uuid

from .config import settings
from .database import create_tables
from .utils.errors import ReservationError, InvalidRequest, ErrorCode, validation_issues
from .utils.logging_config import setup_logging, set_request_context, clear_request_context
from .utils.metrics import RequestTimer
from .utils.rate_limiter import limiter
from .utils.sanitization import sanitize_for_log
from .services.hold_sweeper import start_sweeper, stop_sweeper

# Import all routers
from .routers import widget, bookings, health, metrics

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    setup_logging(level=settings.log_level, json_format=settings.log_json)

    logger.info("🚀 Starting table-hold-service...")
    logger.info(f"📍 Environment: {settings.environment}")
    logger.info(f"🔐 CORS Origins: {settings.cors_origins}")

    create_tables()
    logger.info("✅ Database ready")

    # ==========================================
    # START BACKGROUND SWEEPER
    # ==========================================
    sweeper_started = False
    if settings.sweeper_enabled:
        sweeper_started = start_sweeper()
    else:
        logger.info("⚠️  Sweeper disabled, run worker.py to expire holds")

    yield

    # Shutdown
    logger.info("👋 Shutting down table-hold-service...")
    if sweeper_started:
        stop_sweeper()


# Create FastAPI app
app = FastAPI(
    title="Table Hold Service",
    description="Restaurant reservation holds, confirmations and booking lifecycle",
    version="1.0.0",
    lifespan=lifespan
)

# Rate limiter state
app.state.limiter = limiter


# ================================
# CORS MIDDLEWARE - MUST BE FIRST!
# ================================
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Idempotent-Replayed"],
)


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


# Request ID Middleware
class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        set_request_context(request_id)

        with RequestTimer(request.method, request.url.path) as timer:
            try:
                response = await call_next(request)
                timer.status_code = response.status_code
            finally:
                # Templated route path keeps metric labels bounded
                route = request.scope.get("route")
                timer.path = getattr(route, "path", request.url.path)
                clear_request_context()

        response.headers["X-Request-ID"] = request_id
        return response


# Add other middleware AFTER CORS
app.add_middleware(RequestIdMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


def error_response(request: Request, exc: ReservationError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.to_dict(getattr(request.state, "request_id", None)),
        },
    )


@app.exception_handler(ReservationError)
async def reservation_error_handler(request: Request, exc: ReservationError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code.value} on {request.url.path}: {sanitize_for_log(exc.message)}")
    else:
        logger.info(f"{exc.code.value} on {request.url.path}: {sanitize_for_log(exc.message)}")
    return error_response(request, exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_response(request, InvalidRequest("Invalid request", issues=validation_issues(exc)))


# Rate limit handler
@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "error": {
                "code": ErrorCode.RATE_LIMITED.value,
                "message": "Too many requests, please try again later",
                "requestId": getattr(request.state, "request_id", None),
            },
        },
    )


# Include routers
app.include_router(widget.router)
app.include_router(bookings.router)
app.include_router(health.router)
app.include_router(metrics.router)


@app.get("")
@app.get("/")
async def root():
    return {
        "message": "Table Hold Service",
        "version": "1.0.0",
        "docs": "/docs",
        "status": "running",
    }
