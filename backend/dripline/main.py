import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from dripline.api.problem_details import register_problem_handlers
from dripline.api.routes_cron import router as cron_router
from dripline.api.routes_events import router as events_router
from dripline.api.routes_health import router as health_router
from dripline.infra.db import dispose_engine, get_session_factory
from dripline.infra.logging import clear_log_context, configure_logging, update_log_context
from dripline.services import build_app_services
from dripline.settings import settings

request_logger = logging.getLogger("dripline.request")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assign a request id, bind it to the log context and log one line per request."""

    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers.setdefault("X-Request-ID", request_id)
            return response
        finally:
            latency_ms = int((time.perf_counter() - started) * 1000)
            request_logger.info("request", extra={"extra": {"status_code": status_code, "latency_ms": latency_ms}})
            clear_log_context()


def create_app(app_settings) -> FastAPI:
    configure_logging(app_settings.log_level)
    services = build_app_services(app_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Tests install their own services and session factory before startup.
        app.state.services = getattr(app.state, "services", None) or services
        app.state.metrics = app.state.services.metrics
        app.state.app_settings = app_settings
        app.state.db_session_factory = getattr(app.state, "db_session_factory", None) or get_session_factory()
        yield
        await dispose_engine()

    app = FastAPI(title="Dripline", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(RequestContextMiddleware)
    register_problem_handlers(app)

    app.include_router(health_router)
    app.include_router(cron_router)
    app.include_router(events_router)
    return app


app = create_app(settings)
