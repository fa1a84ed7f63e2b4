"""
Probe endpoints for the operator pod.

Liveness only shows the event loop answers; readiness also checks the
API server and, under leader election, Redis.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from oradb_operator.config.redis import RedisConnection
from oradb_operator.config.settings import settings

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/")
async def health_check():
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": _now(),
    }


@router.get("/live")
async def liveness():
    return {"status": "alive", "timestamp": _now()}


@router.get("/ready")
async def readiness(request: Request):
    """
    A standby replica is ready even though its controller is not running.
    """
    store = getattr(request.app.state, "store", None)
    controller = getattr(request.app.state, "controller", None)

    kubernetes_healthy = store is not None and await store.ping()
    redis_healthy = True
    if settings.leader_election_enabled:
        redis_healthy = await RedisConnection.ping()

    body = {
        "kubernetes": "healthy" if kubernetes_healthy else "unhealthy",
        "redis": ("healthy" if redis_healthy else "unhealthy") if settings.leader_election_enabled else "disabled",
        "controller": "running" if controller is not None and controller.running else "standby",
        "queue_depth": len(controller.queue) if controller is not None else 0,
        "timestamp": _now(),
    }

    if not kubernetes_healthy or not redis_healthy:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", **body},
        )

    return {"status": "ready", **body}
