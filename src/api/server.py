"""FastAPI server for the home-lab dashboard.

There is no authentication. Run it on a private network only.
"""

from __future__ import annotations

import logging
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.api.app_routes import app_router
from src.api.health_routes import health_router
from src.api.settings_routes import settings_router
from src.api.upload_routes import upload_router
from src.apps.store import AppStore
from src.config import Settings, settings
from src.health.engine import HealthChecker
from src.health.scheduler import HealthScheduler
from src.settings.store import SettingsStore
from src.uploads.store import UploadStore

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
}


# ── Security headers ─────────────────────────────────────────────────────────


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add baseline security headers. CSP is left off so inline scripts work."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


# ── Storage wiring ───────────────────────────────────────────────────────────


@dataclass
class Storage:
    apps: AppStore
    settings: SettingsStore
    uploads: UploadStore


def init_storage(config: Settings) -> Storage:
    """Create tables, ensure default settings and optionally seed example apps."""
    app_store = AppStore(config.db_path)
    settings_store = SettingsStore(config.db_path)
    upload_store = UploadStore(config.db_path, config.uploads_dir, config.max_upload_bytes)

    settings_store.ensure_defaults()
    if config.seed_examples:
        app_store.seed_examples()

    logger.info("Database ready at %s", config.db_path)
    return Storage(apps=app_store, settings=settings_store, uploads=upload_store)


def build_checker(config: Settings) -> HealthChecker:
    return HealthChecker(
        timeout_ms=config.health_timeout_ms,
        max_redirects=config.health_max_redirects,
        user_agent=config.health_user_agent,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Initialize shared resources on startup."""
    config: Settings = app.state.config
    storage = init_storage(config)
    app.state.app_store = storage.apps
    app.state.settings_store = storage.settings
    app.state.upload_store = storage.uploads

    checker = build_checker(config)
    app.state.health_checker = checker

    scheduler = HealthScheduler(
        storage.apps, checker,
        settings_store=storage.settings,
        default_interval_ms=config.health_poll_interval_ms,
    )
    app.state.health_scheduler = scheduler
    if config.health_poll_enabled:
        try:
            await scheduler.start()
        except Exception:
            logger.exception("Health poller failed to start")

    yield

    # Shutdown
    await scheduler.stop()
    storage.apps.close()
    storage.settings.close()
    storage.uploads.close()


# ── Error rendering ──────────────────────────────────────────────────────────


def _install_error_handlers(app: FastAPI, config: Settings) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail: Any = exc.detail
        if exc.status_code == 404 and detail == "Not Found":
            detail = "Not found"
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            messages.append(f"{location}: {err['msg']}" if location else err["msg"])
        return JSONResponse(status_code=400, content={"error": ", ".join(messages)})

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        content: dict[str, Any] = {"error": "Internal server error"}
        if config.is_development:
            content["stack"] = "".join(traceback.format_exception(exc))
        return JSONResponse(status_code=500, content=content)


# ── App factory ──────────────────────────────────────────────────────────────


def create_app(config: Settings | None = None) -> FastAPI:
    config = config or settings
    app = FastAPI(
        title="Tabloo - Home-Lab Dashboard",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config

    app.add_middleware(SecurityHeadersMiddleware)
    _install_error_handlers(app, config)

    # Health routes first so /apps/health/* is never read as an app id
    app.include_router(health_router, prefix="/api")
    app.include_router(app_router, prefix="/api")
    app.include_router(upload_router, prefix="/api")
    app.include_router(settings_router, prefix="/api")

    static_dir = config.static_dir

    @app.get("/", include_in_schema=False)
    async def dashboard():
        return FileResponse(static_dir / "index.html")

    @app.get("/admin", include_in_schema=False)
    async def admin():
        return FileResponse(static_dir / "admin.html")

    config.uploads_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=str(config.uploads_dir)), name="uploads")
    if static_dir.is_dir():
        app.mount("/static", StaticFiles(directory=str(static_dir)), name="static")

    return app
