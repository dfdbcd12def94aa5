from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from contact_coordinator.api.schemas import ErrorResponse
from contact_coordinator.core.config import CoordinatorConfig, settings
from contact_coordinator.models import Handler
from contact_coordinator.services.coordinator import build_coordinator
from contact_coordinator.services.retrying_sender import OutboundNotifier, Transport
from contact_coordinator.services.wework_service import get_wework_service
from contact_coordinator.api.routes.admin import router as admin_router
from contact_coordinator.api.routes.wework import router as wework_router


logger = logging.getLogger(__name__)
logging.getLogger("contact_coordinator").setLevel(settings.LOG_LEVEL.upper())


def _default_transport() -> Optional[Transport]:
    service = get_wework_service()
    if service.configured:
        return service
    logger.warning("WeWork transport not configured; outbound sends are disabled")
    return None


def create_app(
    handler: Optional[Handler] = None,
    transport: Optional[Transport] = None,
    config: Optional[CoordinatorConfig] = None,
    notifier: Optional[OutboundNotifier] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        coordinator = build_coordinator(
            config or CoordinatorConfig.from_settings(settings),
            transport=transport if transport is not None else _default_transport(),
            notifier=notifier,
        )
        coordinator.start()
        app.state.coordinator = coordinator
        try:
            yield
        finally:
            await coordinator.shutdown()
            app.state.coordinator = None

    app = FastAPI(title=settings.APP_NAME, version="0.1.0", description="Per-contact message coordination", lifespan=lifespan)
    app.state.coordinator = None
    app.state.message_handler = handler

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc):
        body = ErrorResponse(error_type="not_found", message="Not Found")
        return JSONResponse(status_code=404, content=body.model_dump())

    @app.exception_handler(500)
    async def server_error_handler(request: Request, exc):
        body = ErrorResponse(error_type="internal_error", message="Internal Server Error")
        return JSONResponse(status_code=500, content=body.model_dump())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        body = ErrorResponse(error_type="validation_error", message=str(exc))
        return JSONResponse(status_code=422, content=body.model_dump())

    @app.get("/api/health")
    def health(request: Request):
        coordinator = request.app.state.coordinator
        return {
            "status": "healthy" if coordinator is not None else "starting",
            "coordinator": {
                "active_contacts": coordinator.registry.count_active(),
                "queued_messages": coordinator.registry.count_queued(),
                "janitor_running": coordinator.janitor.running,
            }
            if coordinator is not None
            else None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # Routers
    app.include_router(admin_router)
    app.include_router(wework_router)
    return app


app = create_app()
