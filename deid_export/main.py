"""De-identified export service FastAPI application.

Entry point: uvicorn deid_export.main:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from deid_export.config import settings
from deid_export.deps import Redis
from deid_export.log import configure_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    configure_logging()
    logger.info("app_startup", env=settings.APP_ENV)
    yield
    from deid_export.db.session import engine

    await engine.dispose()
    logger.info("app_shutdown")


app = FastAPI(
    title="De-identified Export API",
    description="Safe Harbour research exports and incremental OMOP CDM exports",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.APP_ENV == "development" else None,
    redoc_url="/redoc" if settings.APP_ENV == "development" else None,
)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Exception handlers ---

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# --- Routers ---

from deid_export.routers.research import router as research_router  # noqa: E402
from deid_export.routers.omop import router as omop_router  # noqa: E402

app.include_router(research_router, prefix="/api", tags=["research"])
app.include_router(omop_router, prefix="/api", tags=["omop"])


# --- Health check ---

@app.get("/api/health")
async def health_check(redis: Redis):
    """Liveness plus reachability of the Celery broker."""
    try:
        broker = "ok" if await redis.ping() else "unavailable"
    except Exception as e:
        logger.warning("broker_ping_failed", error=str(e))
        broker = "unavailable"
    return {"status": "ok", "version": "0.1.0", "broker": broker}
