import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.routes import admin, bookings, health, slots
from app.core.config import settings, _ENV_FILE
from app.core.db import async_session_maker
from app.core.errors import BookingEngineError, ValidationError
from app.services.cache_service import CacheService
from app.services.registry import build_services

if os.getenv("ENV") != "production":
    logging.basicConfig(level=logging.DEBUG)
else:
    logging.basicConfig(
        level=logging.INFO,
        format='{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s"}',
    )
logger = logging.getLogger(__name__)


def _purge_expired_cache(cache: CacheService) -> None:
    n = cache.purge_expired()
    if n:
        logger.debug("Cache maintenance: dropped %d expired key(s)", n)


def _log_startup() -> None:
    logger.info("Loading .env from: %s (exists: %s)", _ENV_FILE, _ENV_FILE.exists())
    logger.info(
        "Cache TTL %ds (sweep every %ds); store retries %d; meeting provider %s",
        settings.cache_ttl_seconds,
        settings.cache_check_period_seconds,
        settings.db_max_retries,
        settings.meeting_provider,
    )
    if not settings.email_enabled:
        logger.warning("SMTP not configured; booking notifications will not be sent")


async def _cache_maintenance_loop(cache: CacheService) -> None:
    while True:
        await asyncio.sleep(settings.cache_check_period_seconds)
        _purge_expired_cache(cache)


@asynccontextmanager
async def lifespan(app: FastAPI):
    _log_startup()
    services = build_services(settings, async_session_maker)
    app.state.services = services
    task = asyncio.create_task(_cache_maintenance_loop(services.cache))
    yield
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    services.cache.clear()


app = FastAPI(
    title="JustHear Booking API",
    description="Slot inventory and booking lifecycle for JustHear listening sessions",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

app.include_router(slots.router, prefix="/api/v1")
app.include_router(bookings.router, prefix="/api/v1")
app.include_router(admin.router, prefix="/api/v1")
app.include_router(health.router)


def _cors_headers(origin: str | None) -> dict[str, str]:
    """Add CORS headers to error responses so the browser doesn't block them."""
    headers = {
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Authorization, Content-Type",
    }
    if origin and origin in settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = origin
    elif settings.cors_origins_list:
        headers["Access-Control-Allow-Origin"] = settings.cors_origins_list[0]
    return headers


@app.exception_handler(BookingEngineError)
async def engine_error_handler(request: Request, exc: BookingEngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.code, exc)
    else:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=_cors_headers(request.headers.get("origin")),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]
    body = ValidationError("Invalid request", code="VALIDATION_ERROR", details={"errors": errors}).to_dict()
    return JSONResponse(status_code=400, content=body, headers=_cors_headers(request.headers.get("origin")))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=_cors_headers(request.headers.get("origin")),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the real error; the client only sees a generic 500 (with CORS headers)."""
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "type": "INTERNAL_ERROR"},
        headers=_cors_headers(request.headers.get("origin")),
    )
