"""
api/main.py -- FastAPI application entry point for the Lattice CMDB.

Exposes CI types, configuration items, relationships, graph analytics and the
audit trail over HTTP. Every mutation is routed through CMDBService so the
primary store, graph index, cache and audit trail stay consistent.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (stores, graph reconcile, background loops) and
shutdown (cancel loops, close stores) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.audit import router as audit_router
from api.routes.v1.ci import router as ci_router
from api.routes.v1.ci_types import router as ci_types_router
from api.routes.v1.dashboard import router as dashboard_router
from api.routes.v1.graph import router as graph_router
from api.routes.v1.relationships import router as relationships_router
from auth.dependencies import get_current_user
from auth.models import User
from cmdb.errors import (
    CMDBError,
    ConflictError,
    InternalError,
    InvalidReferenceError,
    NotFoundError,
    ValidationFailedError,
)
from cmdb.service import CMDBService, build_service
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_settings = get_settings()

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("lattice.api")

# ---------------------------------------------------------------------------
# Background tasks
# ---------------------------------------------------------------------------


async def _drain_loop(app: FastAPI) -> None:
    """Retry pending graph mirror operations every GRAPH_SYNC_INTERVAL_SECONDS.

    The drain itself is blocking SQLAlchemy + networkx work, so it runs in a
    worker thread. A failing iteration is logged and the loop carries on;
    CancelledError from task.cancel() during shutdown unwinds it cleanly.
    """
    service: CMDBService = app.state.service
    interval = app.state.settings.graph_sync_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(service.drain_graph_outbox)
        except Exception:
            logger.exception("Graph outbox drain iteration failed")


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired cache entries every CACHE_PURGE_INTERVAL_SECONDS."""
    interval = app.state.settings.cache_purge_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(app.state.cache.purge_expired)
            logger.debug("Cache purge removed %d entries", removed)
        except Exception:
            logger.exception("Cache purge iteration failed")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Stores and service -- everything else hangs off app.state.service.
      2. Graph reconcile -- the index is process-local and starts empty, so it
         is rebuilt from the primary store before the first request.
      3. Background loops last -- they reference the service and cache.
    """
    logger.info("Lattice API starting up")
    app.state.settings = _settings
    service = build_service(_settings)
    app.state.service = service
    app.state.user_store = service.users
    app.state.audit_store = service.audit
    app.state.cache = service.cache
    report = service.reconcile_graph()
    logger.info("Graph index ready (%d nodes, %d edges)", report.nodes, report.edges)
    app.state.drain_task = asyncio.create_task(_drain_loop(app))
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.drain_task.cancel()
    app.state.purge_task.cancel()
    service.close()
    logger.info("Lattice API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Lattice CMDB API",
    description="Configuration items, CI type schemas, relationships and dependency analysis.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.split_list(_settings.allowed_hosts) or ["*"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.split_list(_settings.cors_origins),
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(ci_types_router, prefix="/api/v1", tags=["CI Types"])
app.include_router(ci_router, prefix="/api/v1", tags=["Configuration Items"])
app.include_router(relationships_router, prefix="/api/v1", tags=["Relationships"])
app.include_router(graph_router, prefix="/api/v1", tags=["Graph"])
app.include_router(dashboard_router, prefix="/api/v1", tags=["Dashboard"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Lattice CMDB API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Lattice CMDB API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

_CMDB_ERROR_STATUS: dict[type[CMDBError], int] = {
    NotFoundError: 404,
    ValidationFailedError: 422,
    ConflictError: 409,
    InvalidReferenceError: 400,
    InternalError: 500,
}


@app.exception_handler(CMDBError)
async def cmdb_error_handler(request: Request, exc: CMDBError) -> JSONResponse:
    """Map service outcomes onto HTTP statuses.

    Validation failures list every {field, message}; other errors carry their
    structured details (if any). Only InternalError is logged -- the rest are
    expected outcomes of bad input or state.
    """
    status = _CMDB_ERROR_STATUS.get(type(exc), 500)
    if isinstance(exc, ValidationFailedError):
        detail = [asdict(e) for e in exc.errors]
    else:
        detail = exc.details or None
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message, detail=detail)).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail=ErrorDetail(...).model_dump()
    (a dict). When detail is already a structured dict, use it directly as the
    error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No auth and no rate limit --
# monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and graph index status.

    pending_outbox > 0 for longer than a few drain intervals means the graph
    index is lagging the primary store.
    """
    status = request.app.state.service.graph_status()
    return HealthResponse(
        version=VERSION,
        graph_nodes=status["nodes"],
        graph_edges=status["edges"],
        pending_outbox=status["pending_outbox"],
    )
