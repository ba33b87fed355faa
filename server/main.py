"""
FastAPI backend for the workflow execution engine and trigger scheduler.

Wires the dependency injection container, starts the job queue workers, the
cron scheduler, the polling sweeper and the recovery sweeper.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.health import set_startup_time, get_health_status
from core.logging import configure_logging, get_logger
from routers import workflow, executions
from services.execution import (
    InfrastructureFault,
    QuotaExceeded,
    ResourceNotFound,
    WorkflowValidationError,
)

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting workflow engine")
    set_startup_time()

    await container.database().startup()
    await container.cache().startup()

    queue = container.queue()
    scheduler = container.scheduler()
    polling = container.polling()
    recovery = container.recovery()

    # Workers hand every workflow/execute job to the controller
    queue.set_handler(container.controller().run_job)
    await queue.start()

    # Cron path: arm one job per active scheduled workflow
    scheduler.start()
    rearmed = await scheduler.rearm_orphans()
    logger.info("Cron triggers armed", count=rearmed)

    if settings.polling_enabled:
        await polling.start()

    if settings.recovery_enabled:
        recovery.set_recovery_callback(lambda job: queue.enqueue(job, force=True))
        recovery.set_rearm_callback(scheduler.rearm_orphans)
        await recovery.start()

    logger.info("Services started successfully")
    yield

    # Shutdown
    if settings.recovery_enabled:
        await recovery.stop()
    if settings.polling_enabled:
        await polling.stop()
    scheduler.shutdown()
    await queue.stop()
    await container.cache().shutdown()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Workflow Engine",
    version="1.0.0",
    description="Workflow execution engine with cron and polling triggers",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


@app.exception_handler(WorkflowValidationError)
async def validation_error_handler(request: Request, exc: WorkflowValidationError):
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"success": False, "error": str(exc), "problems": exc.problems},
    )


@app.exception_handler(QuotaExceeded)
async def quota_error_handler(request: Request, exc: QuotaExceeded):
    return ORJSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "success": False,
            "error": str(exc),
            "resource": exc.resource,
            "used": exc.used,
            "limit": exc.limit,
        },
    )


@app.exception_handler(ResourceNotFound)
async def not_found_handler(request: Request, exc: ResourceNotFound):
    return ORJSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"success": False, "error": str(exc)},
    )


@app.exception_handler(InfrastructureFault)
async def infrastructure_error_handler(request: Request, exc: InfrastructureFault):
    logger.error("Infrastructure fault", path=request.url.path, error=str(exc))
    return ORJSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"success": False, "error": str(exc)},
    )


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unhandled exception: {type(e).__name__}: {str(e)}", exc_info=True)
            return ORJSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


app.add_middleware(CatchAllExceptionsMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(workflow.router)
app.include_router(executions.router)


@app.get("/api/capabilities")
async def list_capabilities():
    """Registered node types with their config schema."""
    return {"capabilities": container.registry().describe()}


@app.get("/health")
async def health_check():
    health = await get_health_status(
        database=container.database(),
        cache=container.cache(),
        queue=container.queue(),
        scheduler=container.scheduler(),
        settings=settings,
    )
    health["timestamp"] = datetime.now(timezone.utc).isoformat()
    return health


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting workflow engine", host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
