"""
Liveness and readiness endpoints.

Readiness covers what delivery depends on: the campaign store and the Redis
instance behind the send limiter and the Celery broker.
"""

from fastapi import APIRouter, HTTPException

from piper_dispatch.core.config import settings
from piper_dispatch.db.postgres import check_database
from piper_dispatch.db.redis import redis_client
from piper_dispatch.services.delivery_scheduler import delivery_scheduler

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("")
async def readiness():
    """503 when the campaign store or Redis is unreachable."""
    checks = {}
    try:
        await check_database()
        checks["postgres"] = {"status": "healthy"}
    except Exception as e:
        checks["postgres"] = {"status": "unhealthy", "error": str(e) or e.__class__.__name__}

    checks["redis"] = {"status": "healthy" if await redis_client.ping() else "unhealthy"}

    ready = all(check["status"] == "healthy" for check in checks.values())
    report = {
        "status": "healthy" if ready else "unhealthy",
        "version": settings.app_version,
        "checks": checks,
        "delivery": delivery_scheduler.queue_status(),
    }
    if not ready:
        raise HTTPException(status_code=503, detail=report)
    return report


@router.get("/live")
async def liveness():
    return {"status": "alive", "version": settings.app_version}
