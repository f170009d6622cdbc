"""FastAPI application entrypoint."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.adapters.engine import build_engine
from app.core.config import get_settings
from app.errors import ApiError
from app.repositories.memory import InMemoryStore
from app.routes import accounts_router, admin_router, internal_router, jobs_router, transcribers_router
from app.schemas.error import ErrorResponse
from app.services.jobs import JobService
from app.services.ledger import LedgerService
from app.services.status_sync import StatusPoller, StatusSyncService

logger = logging.getLogger(__name__)

_PAYMENT_EVENT_VALIDATION_PATHS: set[tuple[str, str]] = {
    ("POST", "/api/v1/internal/payments/events"),
}

_CALLBACK_VALIDATION_PATHS: set[tuple[str, str]] = {
    ("POST", "/api/v1/internal/engine/callbacks/{token}"),
}


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    if getattr(app.state, "engine", None) is None:
        app.state.engine = build_engine(settings)

    poller = None
    if not settings.status_poller_enabled and not settings.engine_callback_base_url:
        logger.warning("status_poller.disabled engine_callback_base_url=unset jobs_will_not_settle=true")
    if settings.status_poller_enabled:
        store = app.state.store
        ledger = LedgerService(store, settings)
        jobs = JobService(store, ledger, app.state.engine, settings)
        poller = StatusPoller(
            StatusSyncService(store, app.state.engine, jobs, settings),
            tick_seconds=settings.status_poller_tick_seconds,
        )
        poller.start()
    app.state.status_poller = poller
    try:
        yield
    finally:
        if poller is not None:
            await poller.stop()
        app.state.status_poller = None


def create_app() -> FastAPI:
    app = FastAPI(title="TalkLedger API", version="1.0.0", lifespan=_lifespan)
    app.state.store = InMemoryStore()
    app.state.engine = None
    app.state.status_poller = None

    @app.exception_handler(ApiError)
    async def handle_api_error(_, exc: ApiError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.payload.model_dump(mode="json", exclude_none=True),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        route = request.scope.get("route")
        route_path = getattr(route, "path", request.url.path)
        route_key = (request.method.upper(), route_path)
        details = {"errors": jsonable_encoder(exc.errors())}
        if route_key in _PAYMENT_EVENT_VALIDATION_PATHS:
            logger.warning("payment.rejected code=PAYMENT_EVENT_MALFORMED reason=schema_validation")
            payload = ErrorResponse(code="PAYMENT_EVENT_MALFORMED", message="Invalid payment event payload", details=details)
            return JSONResponse(status_code=422, content=payload.model_dump())
        if route_key in _CALLBACK_VALIDATION_PATHS:
            payload = ErrorResponse(code="VALIDATION_ERROR", message="Invalid callback payload")
            return JSONResponse(status_code=409, content=payload.model_dump())

        payload = ErrorResponse(code="VALIDATION_ERROR", message="Invalid request payload", details=details)
        return JSONResponse(status_code=422, content=payload.model_dump())

    api_prefix = "/api/v1"
    app.include_router(accounts_router, prefix=api_prefix)
    app.include_router(jobs_router, prefix=api_prefix)
    app.include_router(transcribers_router, prefix=api_prefix)
    app.include_router(admin_router, prefix=api_prefix)
    app.include_router(internal_router, prefix=api_prefix)

    return app


app = create_app()
