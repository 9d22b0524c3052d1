from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatdesk.apps.api.deps import get_dispatcher, get_session_registry
from chatdesk.apps.api.errors import (
    chatdesk_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from chatdesk.apps.api.routes.chat import router as chat_router
from chatdesk.apps.api.routes.health import router as health_router
from chatdesk.core.config import get_settings
from chatdesk.core.errors import ChatDeskError
from chatdesk.core.logging import configure_logging
from chatdesk.services.sessions import run_session_sweeper
from chatdesk.services.telemetry import record_request


logger = logging.getLogger(__name__)

_DRAIN_TIMEOUT_S = 10.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Start the session sweeper with the app and flush pending side effects on shutdown.
    settings = get_settings()
    sweeper = asyncio.create_task(
        run_session_sweeper(get_session_registry(), interval_s=settings.session_sweep_interval_s)
    )
    logger.info("app_started name=%s", settings.app_name)
    try:
        yield
    finally:
        sweeper.cancel()
        await get_dispatcher().drain(timeout_s=_DRAIN_TIMEOUT_S)
        logger.info("app_stopped name=%s", settings.app_name)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="chatdesk API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-ID", request_id)
        return response

    @app.exception_handler(ChatDeskError)
    async def _chatdesk_exception_handler(request: Request, exc: ChatDeskError):
        return await chatdesk_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(chat_router)
    return app


app = create_app()
