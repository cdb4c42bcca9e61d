import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from famsync.config import settings
from famsync.core.dependencies import (
    EngineComponents,
    build_components,
    build_remote_backend,
    get_components,
)
from famsync.database import async_session, create_tables
from famsync.routers import families, memberships, sync

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan context manager
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: runs on startup and shutdown."""
    await create_tables()
    remote = build_remote_backend()
    components = build_components(async_session, remote=remote)
    app.state.components = components
    if remote is None:
        logger.info("No remote backend configured; running local-only")

    sync_task = None
    if remote is not None and settings.SYNC_INTERVAL_SECONDS > 0:
        sync_task = asyncio.create_task(
            components.sync.run_periodic(settings.SYNC_INTERVAL_SECONDS)
        )
    logger.info("famsync API started")
    yield
    if sync_task is not None:
        sync_task.cancel()
    if remote is not None:
        await remote.close()
    logger.info("famsync API shutting down")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    openapi_url="/openapi.json" if settings.DEBUG else None,
)

app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "X-Identity-Subject", "X-Display-Name"],
)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------
@app.get("/health", tags=["health"])
async def health_check(components: EngineComponents = Depends(get_components)):
    """Health check with DB connectivity and sync backlog size."""
    checks: dict[str, str] = {"db": "ok", "remote": "ok" if components.remote else "unavailable"}
    pending = None
    try:
        pending = await components.data.count_records_needing_sync()
    except Exception:
        logger.exception("Health check: database error")
        checks["db"] = "error"

    # "unavailable" = optional service not configured; only "error" = degraded
    degraded = any(v == "error" for v in checks.values())
    return {
        "status": "degraded" if degraded else "ok",
        "app": settings.APP_NAME,
        "pending_sync": pending,
        **checks,
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
app.include_router(families.router, prefix=settings.API_V1_PREFIX)
app.include_router(memberships.router, prefix=settings.API_V1_PREFIX)
app.include_router(sync.router, prefix=settings.API_V1_PREFIX)
