"""FastAPI route definitions for the control surface.

Endpoints:
- GET /events          : SSE stream of build/runtime output
- GET|POST /restart    : Manual build + restart (returns immediately)
- GET /status          : Runtime state and current artifacts
- GET /compiled-files  : Content of the current artifacts
- GET /execute         : Synchronous one-shot run, captured output
- GET /health          : Simple liveness check
- GET /metrics         : Prometheus metrics

Handlers never raise for pipeline problems: they report state, and failures
show up on the event stream.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, Response, status
from fastapi.responses import JSONResponse, StreamingResponse

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from harness.bootstrap import AppContext, get_context
from harness.errors import ToolInvocationError
from harness.models import Trigger
from harness.supervisor import execute_once
from .events import sse_event_iter

router = APIRouter()


async def get_app_context() -> AppContext:
    return await get_context()


@router.get("/events")
async def events(ctx: AppContext = Depends(get_app_context)):
    """SSE stream endpoint delivering build and runtime lines.

    Client JS example:
        const es = new EventSource('/events');
        es.onmessage = ev => console.log(ev.data);
    """
    return StreamingResponse(
        sse_event_iter(ctx.broadcaster),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@router.api_route("/restart", methods=["GET", "POST"])
async def restart(ctx: AppContext = Depends(get_app_context)):
    ctx.logger.info("manual_restart_requested")
    job = ctx.coordinator.request_build(Trigger.MANUAL)
    return {"status": "restarting", "job": job.id}


@router.get("/status")
async def runtime_status(ctx: AppContext = Depends(get_app_context)):
    data: dict[str, Any] = ctx.supervisor.status()
    data.update({
        "file": str(ctx.settings.target_file),
        "mode": ctx.settings.build_mode,
        "building": ctx.coordinator.building,
        "current_artifacts": [str(p) for p in ctx.coordinator.last_artifacts],
        "last_build": ctx.coordinator.last_job.summary() if ctx.coordinator.last_job else None,
        "subscribers": ctx.broadcaster.subscriber_count,
    })
    return data


def _read_artifact(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        return f"[error] could not read {path.name}: {exc.strerror or exc}"


@router.get("/compiled-files")
async def compiled_files(ctx: AppContext = Depends(get_app_context)):
    return {path.name: _read_artifact(path) for path in ctx.coordinator.last_artifacts}


@router.get("/execute")
async def execute(ctx: AppContext = Depends(get_app_context)):
    artifacts = list(ctx.coordinator.last_artifacts)
    if not artifacts:
        return JSONResponse(
            {"error": "no build artifacts available yet"},
            status_code=status.HTTP_409_CONFLICT,
        )
    try:
        result = await execute_once(ctx.settings, artifacts)
    except ToolInvocationError as exc:
        ctx.logger.error("execute_failed", error=str(exc))
        return JSONResponse({"error": str(exc)}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    body = {
        "exit_code": result.exit_code,
        "stdout": result.stdout,
        "stderr": result.stderr,
        "duration_seconds": round(result.duration_seconds, 3),
    }
    if not result.ok:
        body["error"] = f"BRS exited with code {result.exit_code}"
        return JSONResponse(body, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    return body


@router.get("/health")
async def health(ctx: AppContext = Depends(get_app_context)):
    return {
        "status": "ok",
        "running": ctx.supervisor.running,
        "watching": bool(ctx.watcher and ctx.watcher.is_running),
        "target_exists": ctx.target_exists(),
    }


@router.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
