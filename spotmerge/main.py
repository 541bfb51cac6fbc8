"""FastAPI application: health, metrics, CORS and merge APIs."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    generate_latest,
    multiprocess,
)
from starlette.responses import PlainTextResponse, Response

from spotmerge.api.merges import router as merges_router
from spotmerge.api.merges import spots_router
from spotmerge.config import settings
from spotmerge.db import init_models
from spotmerge.dependencies import build_service
from spotmerge.errors import SpotMergeError
from spotmerge.logging_config import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: setup / teardown."""
    setup_logging()
    if settings.STORAGE_BACKEND == "sql" and settings.DB_AUTO_CREATE:
        await init_models()
    # Tests may pre-install a service wired to their own backend.
    if getattr(app.state, "merge_service", None) is None:
        app.state.merge_service = build_service(settings)
    logger.info("Spot merge API starting", extra={"env": settings.APP_ENV})
    yield
    logger.info("Spot merge API shutting down")


app = FastAPI(
    title="Spot Merge",
    version="0.1.0",
    description="Duplicate detection and community merge workflow for hitchhiking spots",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.APP_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(spots_router)
app.include_router(merges_router)


@app.exception_handler(SpotMergeError)
async def spot_merge_error_handler(request: Request, exc: SpotMergeError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("Merge request failed: %s", exc, extra={"code": exc.code, "path": request.url.path})
    return JSONResponse(status_code=exc.http_status, content={"detail": str(exc), "code": exc.code})


# ── Health ──
@app.get("/health", tags=["ops"])
async def health() -> dict[str, str]:
    """Liveness check."""
    return {"status": "ok", "service": "spotmerge"}


# ── Prometheus Metrics ──
@app.get("/metrics", tags=["ops"])
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    try:
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        data = generate_latest(registry)
    except ValueError:
        # Not running in multiprocess mode
        data = generate_latest()
    return PlainTextResponse(content=data, media_type=CONTENT_TYPE_LATEST)
