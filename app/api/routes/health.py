import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.api.deps import get_services
from app.services.registry import EngineServices

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@router.get("/health/deep")
async def deep_health(services: EngineServices = Depends(get_services)) -> JSONResponse:
    """Store round-trip plus cache and runner counters. 503 when the store is unreachable."""
    cache_stats = services.cache.stats()
    body = {
        "cache": {k: cache_stats[k] for k in ("size", "hits", "misses")},
        "queries": services.runner.stats(),
    }
    try:
        await services.gateway.ping()
    except Exception as e:
        logger.error("Deep health check failed: %s", e)
        return JSONResponse(status_code=503, content={"status": "unhealthy", "database": "unreachable", **body})
    return JSONResponse(status_code=200, content={"status": "ok", "database": "ok", **body})
