"""
ledger_sync/main.py
FastAPI application: supervisor lifecycle plus a minimal liveness surface.

Run with:
    ledger-sync serve
    uvicorn ledger_sync.main:app --port 3000
"""
import logging
import os
import signal
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ledger_sync import __version__
from ledger_sync.config.settings import Settings, get_settings
from ledger_sync.tasks.context import ServiceContext, ServiceStatus
from ledger_sync.tasks.supervisor import ServiceSupervisor
from ledger_sync.schemas.status import HealthResponse, RootResponse, StatusResponse

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)


def _terminate_process(error: BaseException) -> None:
    """Exit policy: ask the server to shut down so the process supervisor restarts us."""
    logger.critical(f"Fatal startup fault ({error}); sending SIGTERM to self")
    signal.raise_signal(signal.SIGTERM)


def create_app(
    settings: Optional[Settings] = None,
    supervisor: Optional[ServiceSupervisor] = None,
) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = supervisor
        if active is None:
            active = ServiceSupervisor(settings or get_settings(), on_fatal=_terminate_process)
        app.state.supervisor = active
        app.state.service_context = active.context
        active.start()

        yield

        try:
            await active.stop()
        except Exception as e:
            logger.error(f"Error during shutdown: {str(e)}")

    app = FastAPI(
        title="Ledger Vote Sync",
        description="Keeps the relational vote store in step with the election contract",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service_context = supervisor.context if supervisor is not None else ServiceContext()

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        log_id = str(uuid.uuid4())[:8]
        logger.error(f"[{log_id}] Unhandled exception on {request.url.path}: {type(exc).__name__}: {str(exc)}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "Internal Error",
                "message": "An unexpected error occurred.",
                "details": {"log_id": log_id}
            }
        )

    @app.get("/", response_model=RootResponse, tags=["Health"])
    async def root():
        return RootResponse(timestamp=datetime.now(timezone.utc))

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(request: Request):
        context: ServiceContext = request.app.state.service_context
        if context.is_healthy:
            label = "healthy" if context.status == ServiceStatus.running else context.status.value
            code = status.HTTP_200_OK
        else:
            label = "unhealthy"
            code = status.HTTP_503_SERVICE_UNAVAILABLE
        body = HealthResponse(status=label, service_status=context.status.value, version=__version__)
        return JSONResponse(status_code=code, content=body.model_dump())

    @app.get("/status", response_model=StatusResponse, tags=["Health"])
    async def service_status(request: Request):
        context: ServiceContext = request.app.state.service_context
        return StatusResponse(**context.to_dict())

    return app


app = create_app()
