"""Newsweave FastAPI application."""

import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from newsweave.api.schemas import (
    SubmitRequest, SubmitResponse, TriggerRequest, TriggerResponse,
    WorkflowStatusResponse, RunResponse, ErrorResponse, ErrorDetail,
)
from newsweave.api.submit import ApiError, check_internal_token
from newsweave.core.logging import setup_logging, get_logger
from newsweave.core.settings import get_settings
from newsweave.ingestor.pipeline import run_ingest
from newsweave.services import Services
from newsweave.workflow.messages import BatchProcessMessage
from newsweave.workflow.orchestrator import get_instance_status
from newsweave.workflow.sweep import sweep_incomplete_items

setup_logging("api")
logger = get_logger(__name__)


def check_manual_run_enabled():
    """Check if manual runs are enabled via environment flag."""
    allow_manual_run = os.getenv("ALLOW_MANUAL_RUN", "false").lower() == "true"
    if not allow_manual_run:
        raise ApiError(403, "FORBIDDEN", "Manual runs are disabled. Set ALLOW_MANUAL_RUN=true to enable.")
    return True


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise ApiError(503, "UNAVAILABLE", "Service is starting")
    return services


def client_ip(request: Request) -> Optional[str]:
    """cf-connecting-ip, then the first x-forwarded-for hop, then the peer."""
    ip = request.headers.get("cf-connecting-ip")
    if ip:
        return ip.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    With `services` given (tests), the app uses them as-is and never
    starts the background consumer; otherwise they are built from
    settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.services is None
        if owned:
            app.state.services = Services.build()
            if app.state.services.settings.run_queue_consumer:
                app.state.services.start_consumer()
        yield
        if owned:
            await app.state.services.aclose()
            app.state.services = None

    app = FastAPI(title="Newsweave", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
            headers=exc.headers,
        )

    @app.get("/healthz")
    async def health_check():
        """Health check endpoint."""
        return {"ok": True, "service": "newsweave"}

    @app.post("/submit", response_model=SubmitResponse)
    async def submit(
        request: Request,
        x_internal_token: Optional[str] = Header(default=None),
        authorization: Optional[str] = Header(default=None),
        svc: Services = Depends(get_services),
    ):
        """Submit one URL or a batch; enrichment continues in the background."""
        check_internal_token(svc.settings.internal_token, x_internal_token, authorization)
        try:
            body = SubmitRequest(**(await request.json()))
        except Exception:
            raise ApiError(400, "INVALID_REQUEST", "Body must be a JSON object with 'url' or 'urls'")
        return await svc.submit.submit(body, client_ip=client_ip(request))

    @app.get("/workflows/{instance_id}", response_model=WorkflowStatusResponse)
    async def workflow_status(instance_id: str, svc: Services = Depends(get_services)):
        status = await get_instance_status(instance_id, svc.session_factory)
        if status is None:
            raise ApiError(404, "NOT_FOUND", f"Unknown workflow instance {instance_id}")
        return status

    @app.post("/trigger", response_model=TriggerResponse)
    async def trigger(
        body: TriggerRequest,
        _: bool = Depends(check_manual_run_enabled),
        svc: Services = Depends(get_services),
    ):
        """Queue a batch of existing items for reprocessing."""
        message = BatchProcessMessage(item_ids=body.item_ids, triggered_by=body.triggered_by)
        await svc.queue.send(message)
        logger.info(f"Manual trigger queued {len(message.item_ids)} items", extra={"endpoint": "/trigger"})
        return TriggerResponse(queued=len(message.item_ids))

    @app.post("/ingest/run", response_model=RunResponse)
    async def run_ingestion(
        _: bool = Depends(check_manual_run_enabled),
        svc: Services = Depends(get_services),
    ):
        """Poll all feeds once."""
        stats = await run_ingest(queue=svc.queue, extractor=svc.extractor, session_factory=svc.session_factory)
        status = "success" if stats['feeds_error'] == 0 else "partial_success"
        message = (
            f"Ingestion completed in {stats['runtime_seconds']}s: "
            f"{stats['items']['inserted']}/{stats['items']['total']} items inserted"
        )
        return RunResponse(status=status, message=message, stats=stats)

    @app.post("/sweep/run", response_model=RunResponse)
    async def run_sweep(
        _: bool = Depends(check_manual_run_enabled),
        svc: Services = Depends(get_services),
    ):
        """Re-queue recent items with incomplete enrichment."""
        stats = await sweep_incomplete_items(svc.queue, svc.session_factory, translate=svc.provider.available)
        return RunResponse(status="success", message=f"Queued {stats['items']} items", stats=stats)

    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "newsweave.api.app:app",
        host=settings.service_host,
        port=settings.service_port or 8000,
        reload=settings.debug,
    )
