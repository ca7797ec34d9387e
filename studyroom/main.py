from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from contextlib import asynccontextmanager
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import OperationalError
import logging
import time
import uuid

from .config import settings
from .database import create_tables
from .exceptions import EngineError
from .utils.logging_config import setup_logging, set_request_context, clear_request_context
from .utils.metrics import record_http_request
from .utils.rate_limiter import limiter
from .services.sweeper_scheduler import start_sweeper_scheduler, stop_sweeper_scheduler

from .routers import reservations, memberships, seats, sweeper, health, metrics

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    setup_logging(level=settings.log_level, json_format=settings.log_json)

    logger.info(f"Starting studyroom ({settings.environment})")
    logger.info(f"CORS origins: {settings.cors_origins}")

    create_tables()

    if settings.sweeper_enabled:
        start_sweeper_scheduler()
    else:
        logger.warning("Lifecycle sweeper disabled, reservations will not activate or expire on their own")

    yield

    logger.info("Shutting down studyroom")
    stop_sweeper_scheduler()


app = FastAPI(
    title="Study Room Reservations API",
    description="Seat allocation, payments and membership lifecycle for a study room",
    version="1.0.0",
    lifespan=lifespan
)

# Rate limiter state
app.state.limiter = limiter


# CORS must be registered first
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        set_request_context(request_id, request.headers.get("X-User-Id"))

        start = time.time()
        try:
            response = await call_next(request)
        finally:
            clear_request_context()

        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        record_http_request(request.method, path, response.status_code, time.time() - start)

        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(RequestIdMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(OperationalError)
async def storage_error_handler(request: Request, exc: OperationalError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc.__class__.__name__}")
    return JSONResponse(
        status_code=503,
        content={"detail": "Storage temporarily unavailable, retry later", "code": "storage_unavailable"}
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests, slow down", "code": "rate_limited"}
    )


app.include_router(reservations.router)
app.include_router(memberships.router)
app.include_router(seats.router)
app.include_router(sweeper.router)
app.include_router(health.router)
app.include_router(metrics.router)


@app.get("")
@app.get("/")
async def root():
    return {
        "message": "Study Room Reservations API",
        "version": "1.0.0",
        "docs": "/docs",
        "status": "running"
    }
