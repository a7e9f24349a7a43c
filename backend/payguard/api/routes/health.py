"""Liveness and readiness checks."""

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from payguard.db.base import get_session_factory
from payguard.db.redis import get_redis

logger = structlog.get_logger(__name__)

router = APIRouter()

SERVICE = "payguard"


async def _database_answers() -> bool:
    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:  # any failure means not ready
        logger.warning("readiness_check_failed", dependency="database", error=str(exc))
        return False
    return True


async def _redis_answers() -> bool:
    try:
        await get_redis().ping()
    except Exception as exc:
        logger.warning("readiness_check_failed", dependency="redis", error=str(exc))
        return False
    return True


@router.get("/health")
async def health_check(request: Request):
    """503 once shutdown has begun so the load balancer drains this instance."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse({"status": "shutting_down", "service": SERVICE}, status_code=503)
    return {"status": "healthy", "service": SERVICE}


@router.get("/ready")
async def readiness_check():
    checks = {"database": await _database_answers(), "redis": await _redis_answers()}
    ready = all(checks.values())
    body = {"status": "ready" if ready else "degraded", "checks": checks}
    return JSONResponse(body, status_code=200 if ready else 503)
