"""
Operator entry point.

One process serves the health and metrics endpoints (FastAPI) and runs the
controller, under Redis leader election when more than one replica is
deployed.
"""
import asyncio
import os
import socket
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional, Tuple

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from oradb_operator.api.v1 import health
from oradb_operator.config.logging import configure_logging, get_logger
from oradb_operator.config.redis import RedisConnection
from oradb_operator.config.settings import Settings, settings
from oradb_operator.core.reconciler import Reconciler
from oradb_operator.core.retry_policy import ReconcilerConfig
from oradb_operator.exceptions import OperatorException
from oradb_operator.services.actuator import ActuatorRegistry
from oradb_operator.services.resource_store import KubernetesResourceStore
from oradb_operator.workers.controller import OperatorController
from oradb_operator.workers.leader_election import LeaderElection

configure_logging()
logger = get_logger(__name__)

if settings.sentry_dsn and settings.is_production:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        environment=settings.environment,
        release=settings.app_version,
    )

SHUTDOWN_GRACE_SECONDS = 30.0


async def build_controller(config: Settings) -> Tuple[KubernetesResourceStore, ActuatorRegistry, OperatorController]:
    """Wire the store, actuator registry, reconciler and controller."""
    store = await KubernetesResourceStore.connect(config)
    actuators = ActuatorRegistry(store, config)
    reconciler = Reconciler(store, actuators, ReconcilerConfig.from_settings(config))
    controller = OperatorController(
        store,
        reconciler,
        namespace=config.watch_namespace,
        workers=config.max_concurrent_reconciles,
        resync_interval=config.resync_interval_seconds,
    )
    return store, actuators, controller


async def _start(controller: OperatorController, config: Settings) -> Optional[asyncio.Task]:
    """Start reconciling now, or hand the controller to leader election."""
    if not config.leader_election_enabled:
        await controller.start()
        return None

    await RedisConnection.connect()
    instance_id = f"{os.environ.get('POD_NAME') or socket.gethostname()}-{os.getpid()}"
    election = LeaderElection(instance_id=instance_id, lease_duration=config.leader_lease_seconds)
    logger.info("leader_election_started", instance_id=instance_id)
    return asyncio.create_task(election.run(controller), name="leader-election")


async def _shutdown(
    election: Optional[asyncio.Task],
    controller: OperatorController,
    actuators: ActuatorRegistry,
    store: KubernetesResourceStore,
) -> None:
    if election is not None:
        election.cancel()
        try:
            await asyncio.wait_for(asyncio.gather(election, return_exceptions=True), SHUTDOWN_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("leader_election_shutdown_timeout")
        await RedisConnection.close()

    await controller.stop()
    await actuators.close()
    await store.close()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    logger.info(
        "operator_starting",
        version=settings.app_version,
        environment=settings.environment,
        namespace=settings.watch_namespace or "*",
        leader_election=settings.leader_election_enabled,
    )

    try:
        store, actuators, controller = await build_controller(settings)
        app.state.store = store
        app.state.controller = controller
        election = await _start(controller, settings)
    except Exception as e:
        logger.error("operator_startup_failed", error=str(e), exc_info=True)
        raise

    logger.info("operator_started")
    yield

    logger.info("operator_shutting_down")
    await _shutdown(election, controller, actuators, store)
    logger.info("operator_shutdown_complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Kubernetes operator for Oracle Autonomous and pluggable databases",
    docs_url=None,
    redoc_url=None,
    lifespan=lifespan,
)


@app.exception_handler(OperatorException)
async def operator_exception_handler(request: Request, exc: OperatorException) -> JSONResponse:
    logger.error(
        "operator_exception",
        path=request.url.path,
        error=exc.message,
        details=exc.details,
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": {"message": exc.message, "details": exc.details}},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "message": "Internal server error",
                "details": {} if settings.is_production else {"error": str(exc)},
            }
        },
    )


if settings.prometheus_enabled:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")

app.include_router(health.router, prefix="/health", tags=["Health"])


@app.get("/", include_in_schema=False)
async def root(request: Request):
    controller = getattr(request.app.state, "controller", None)
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "status": "running",
        "reconciling": bool(controller is not None and controller.running),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "oradb_operator.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
