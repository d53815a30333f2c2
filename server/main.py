"""FastAPI application entrypoint.

Responsibilities:
- Create the FastAPI app with lifespan context
- Start the pipeline: supervisor loop, source watcher, initial build
- Attach middleware: request id + basic security headers
- Include control routes and serve the browser UI

Notes:
- Logging is configured in harness.bootstrap when the context is created.
- We ensure context initialization in lifespan so routes can rely on it.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator
import contextlib
import uuid

from fastapi import FastAPI, Request, Response
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException
from structlog import contextvars as struct_contextvars

from harness.bootstrap import get_context
from harness.models import Trigger
from .routes import router as core_router

_STATIC_DIR = Path(__file__).resolve().parent / "static"


class UIStaticFiles(StaticFiles):
    """Static UI where any unknown path falls back to index.html."""

    async def get_response(self, path: str, scope) -> Response:
        try:
            response = await super().get_response(path, scope)
        except StarletteHTTPException as exc:
            if exc.status_code != 404:
                raise
            return await super().get_response("index.html", scope)
        if response.status_code == 404:
            return await super().get_response("index.html", scope)
        return response


# ------------------------------------------------------------
# Lifespan: initialize global context and background tasks once app starts
# ------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:  # noqa: D401
    ctx = await get_context()
    log_method = ctx.logger.debug if ctx.settings.quiet_startup else ctx.logger.info
    log_method(
        "api_startup",
        url=f"http://localhost:{ctx.settings.port}",
        project_root=str(ctx.settings.project_root),
        target=str(ctx.settings.target_file),
    )
    ctx.supervisor.start()
    if ctx.watcher is not None:
        ctx.watcher.start()
    if ctx.settings.initial_run:
        ctx.coordinator.request_build(Trigger.STARTUP)
    try:
        yield
    finally:
        if ctx.watcher is not None:
            await ctx.watcher.stop()
        # Let an in-flight build settle so it cannot spawn after the supervisor closes
        with contextlib.suppress(Exception):
            await ctx.coordinator.wait_idle()
        await ctx.supervisor.close()
        await ctx.broadcaster.close()
        log_method("api_shutdown")


app = FastAPI(title="BrightScript Live Harness", version="0.1.0", lifespan=lifespan)


# ------------------------------------------------------------
# Basic middleware
# ------------------------------------------------------------
@app.middleware("http")
async def request_context(request: Request, call_next):  # noqa: D401
    rid = str(uuid.uuid4())
    struct_contextvars.bind_contextvars(request_id=rid)
    try:
        response: Response = await call_next(request)
    finally:
        # Clear contextvars to avoid leakage
        struct_contextvars.clear_contextvars()
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Request-ID", rid)
    return response


# ------------------------------------------------------------
# Include routes, then the static UI (index.html for / and unknown paths)
# ------------------------------------------------------------
app.include_router(core_router)

if _STATIC_DIR.exists():
    app.mount("/", UIStaticFiles(directory=str(_STATIC_DIR), html=True), name="ui")


# For local dev run: uvicorn server.main:app
