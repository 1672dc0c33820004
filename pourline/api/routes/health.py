import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from pourline.db.base import get_session_factory
from pourline.db.redis import get_redis

logger = structlog.get_logger(__name__)

router = APIRouter()

SERVICE_NAME = "pourline-api"


async def _database_reachable() -> bool:
    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        return True
    except (RuntimeError, SQLAlchemyError, OSError) as exc:
        logger.error("readiness_database_failed", error=str(exc))
        return False


async def _redis_reachable() -> bool:
    try:
        await get_redis().ping()
        return True
    except (RuntimeError, RedisError, OSError) as exc:
        logger.warning("readiness_redis_failed", error=str(exc))
        return False


@router.get("/health")
async def health_check(request: Request):
    """Liveness. 503 once SIGTERM arrives so in-flight scans can drain."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(status_code=503, content={"status": "shutting_down", "service": SERVICE_NAME})
    return {"status": "healthy", "service": SERVICE_NAME}


@router.get("/ready")
async def readiness_check():
    """Readiness gates on the database only.

    Redis backs rate limiting, which fails open, so an unreachable Redis
    reports ``degraded`` while the instance keeps taking traffic.
    """
    checks = {"database": await _database_reachable(), "redis": await _redis_reachable()}

    if not checks["database"]:
        return JSONResponse(status_code=503, content={"status": "unavailable", "checks": checks})
    return {"status": "ready" if checks["redis"] else "degraded", "checks": checks}
