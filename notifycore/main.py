"""
NotifyCore: FastAPI application entrypoint.
Configures logging, lifespan, CORS, rate limiting, exception handlers and routers.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from notifycore.api.v1.notifications import limiter
from notifycore.api.v1.router import api_router
from notifycore.core.config import Settings, settings
from notifycore.core.exceptions import register_exception_handlers
from notifycore.core.runtime import NotificationRuntime
from notifycore.services.audit_service import AuditSink

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


# ── Application factory ───────────────────────────────────────────────────────
def create_application(
    config: Settings = settings,
    audit_sink: AuditSink | None = None,
) -> FastAPI:
    runtime = NotificationRuntime.build(config, audit_sink=audit_sink)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifespan handler.
        Starts the expiry sweep before yield, stops it and closes sockets after.
        """
        logger.info("Starting %s v%s", config.APP_NAME, config.APP_VERSION)
        runtime.start()
        yield
        logger.info("Shutting down %s", config.APP_NAME)
        await runtime.stop()

    app = FastAPI(
        title=config.APP_NAME,
        version=config.APP_VERSION,
        description=(
            "Real-time notification core: filtered notification store, "
            "owner-enforced read/delete, and WebSocket fan-out."
        ),
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.notifications = runtime

    # ── CORS ──────────────────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Rate limiting middleware ───────────────────────────────────────────────
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]

    # ── Custom exception handlers ─────────────────────────────────────────────
    register_exception_handlers(app)

    # ── API routers ───────────────────────────────────────────────────────────
    app.include_router(api_router, prefix=config.API_V1_STR)

    # ── Health check ──────────────────────────────────────────────────────────
    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check() -> dict[str, str | int]:
        return {
            "status": "ok",
            "service": config.APP_NAME,
            "connected_users": runtime.publisher.connected_user_count,
        }

    return app


configure_logging(settings.LOG_LEVEL)
app = create_application()
