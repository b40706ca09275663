"""FastAPI application for the rendering service.

Responsibilities:
- Create the FastAPI app with lifespan context
- Attach middleware: request id binding, security headers, open CORS
- Map validation and unexpected errors to the service's JSON error shape
- Include the rendering routes

Notes:
- Logging is configured in orora.bootstrap when the context is created.
- We ensure context initialization in lifespan so routes can rely on it.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator
import asyncio
import uuid

from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
from structlog import contextvars as struct_contextvars

from orora.bootstrap import get_context
from .routes import router as core_router


# ------------------------------------------------------------
# Lifespan: initialize global context once app starts
# ------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:  # noqa: D401
    ctx = await get_context()
    log_method = ctx.logger.debug if ctx.settings.quiet_startup else ctx.logger.info
    log_method(
        "api_startup",
        port=ctx.settings.render_port,
        render_concurrency=ctx.settings.render_concurrency,
        render_timeout_seconds=ctx.settings.render_timeout_seconds,
    )
    try:
        yield
    except asyncio.CancelledError:  # graceful shutdown triggered
        log_method("api_shutdown_cancelled")
    finally:
        log_method("api_shutdown")


app = FastAPI(title="Orora rendering service", version="0.1.0", lifespan=lifespan)

# The browser client posts from another origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------------------------------------------------
# Middleware
# ------------------------------------------------------------
@app.middleware("http")
async def request_context(request: Request, call_next):  # noqa: D401
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    struct_contextvars.bind_contextvars(request_id=rid)
    try:
        response: Response = await call_next(request)
    finally:
        # Clear contextvars to avoid leakage
        struct_contextvars.clear_contextvars()
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("X-Request-ID", rid)
    return response


# ------------------------------------------------------------
# Error handlers
# ------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"error": "Validation error", "detail": jsonable_encoder(exc.errors())},
        status_code=422,
    )


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    structlog.get_logger().bind(component="api").exception(
        "unhandled_error", path=request.url.path, error=str(exc)
    )
    return JSONResponse({"error": "Internal server error"}, status_code=500)


app.include_router(core_router)


# For local dev run: uvicorn server.main:app --reload --port 16842
