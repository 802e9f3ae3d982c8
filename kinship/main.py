"""
FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException

from kinship.api.dm.ws import router as dm_ws_router
from kinship.api.router import api_router
from kinship.core.config import settings
from kinship.core.errors import (
    AppError,
    app_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from kinship.core.logging import RequestIDMiddleware, RequestLoggingMiddleware, get_logger, setup_logging
from kinship.infra.db import close_db_connection, init_models
from kinship.realtime.feed import feed

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    setup_logging()
    if not settings.is_production:
        await init_models()
    logger.info("app.startup", env=settings.env)

    yield

    # Shutdown
    logger.info("app.shutdown", subscriptions=feed.subscription_count())
    await close_db_connection()


tags_metadata = [
    {
        "name": "friend",
        "description": "Friend requests and friendship grants.",
    },
    {
        "name": "access",
        "description": "What other users have shared with me.",
    },
    {
        "name": "dm",
        "description": "Direct messages between friends.",
    },
    {
        "name": "dm-ws",
        "description": "Realtime direct-message stream over WebSocket.",
    },
    {
        "name": "health",
        "description": "System health check.",
    },
]


def create_app() -> FastAPI:
    app = FastAPI(
        title="Kinship Backend",
        description="""
Kinship API lets families share calendars with the people they trust and chat with them.

## Features
* **Friends**: Request, accept and manage friendships with per-friend access roles.
* **Shared profiles**: See the profiles and events other users have granted you.
* **Direct messages**: One conversation per pair of friends, with realtime delivery and unread counts.
""",
        version="0.1.0",
        openapi_tags=tags_metadata,
        openapi_url=f"{settings.api_prefix}/openapi.json",
        docs_url="/docs",
        redoc_url="/redoc",
        swagger_ui_parameters={
            "persistAuthorization": True,
            "displayRequestDuration": True
        },
        lifespan=lifespan,
    )

    # Middleware
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/", tags=["health"], include_in_schema=False)
    async def root():
        return {
            "message": "Welcome to Kinship Backend API",
            "docs": "/docs",
            "status": "operational"
        }

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok", "realtime": feed.get_stats()}

    # WebSocket Router (bypasses api_prefix, mounted directly)
    app.include_router(dm_ws_router)

    # Routes
    app.include_router(api_router, prefix=settings.api_prefix)

    # Exception Handlers
    app.add_exception_handler(AppError, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    return app


app = create_app()
