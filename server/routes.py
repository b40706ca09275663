"""HTTP routes of the rendering service.

Endpoints:
- POST /convert-latex : render a LaTeX document and return the PDF bytes
- GET  /health        : liveness plus render pool figures
- GET  /metrics       : Prometheus exposition (404 when ENABLE_METRICS is off)
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, StrictStr
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from orora.bootstrap import AppContext, get_context
from orora.render import RenderFailure

RENDER_ERROR = "Failed to convert LaTeX to PDF"

router = APIRouter()


class ConvertRequest(BaseModel):
    latex: StrictStr


@router.post("/convert-latex")
async def convert_latex(payload: ConvertRequest, ctx: AppContext = Depends(get_context)):
    logger = ctx.logger.bind(component="api", route="convert_latex")
    if ctx.render_runner is None:  # pragma: no cover
        logger.error("render_runner_missing")
        return JSONResponse({"error": RENDER_ERROR}, status_code=500)
    try:
        pdf = await ctx.render_runner.render(payload.latex)
    except RenderFailure as exc:
        logger.warning("convert_failed", error=str(exc))
        return JSONResponse({"error": RENDER_ERROR}, status_code=500)
    return Response(content=pdf, media_type="application/pdf")


@router.get("/health")
async def health(ctx: AppContext = Depends(get_context)):
    runner = ctx.render_runner
    data: dict[str, Any] = {
        "status": "ok",
        "render_concurrency": ctx.settings.render_concurrency,
        "render_in_flight": runner.in_flight if runner is not None else 0,
        "scratch_dir": ctx.settings.scratch_dir,
    }
    return data


@router.get("/metrics")
async def metrics(ctx: AppContext = Depends(get_context)):
    if not ctx.settings.enable_metrics:
        return Response(status_code=404)
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
