"""FastAPI server exposing the WebDriver session surface over TCP."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from android_espresso_driver import __version__
from android_espresso_driver.daemon.core import DaemonCore
from android_espresso_driver.daemon.models import NewSessionRequest
from android_espresso_driver.errors import DriverError

logger = structlog.get_logger()

ResponsePayload = dict[str, Any]
EndpointResponse = Response | ResponsePayload


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage daemon lifecycle."""
    logger.info("daemon_starting")
    app.state.core = DaemonCore()
    await app.state.core.start()
    yield
    logger.info("daemon_stopping")
    await app.state.core.stop()


app = FastAPI(
    title="Android Espresso Driver",
    version=__version__,
    lifespan=lifespan,
)


def _error_response(error: DriverError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_w3c())


@app.get("/status")
async def status() -> dict[str, Any]:
    """Driver readiness, W3C shaped."""
    core: DaemonCore = app.state.core
    return {
        "value": {
            "ready": core.is_running,
            "message": "android-espresso-driver is ready" if core.is_running else "starting",
            "build": {"version": __version__},
            "activeSessions": len(core.sessions),
        }
    }


@app.get("/sessions")
async def session_list() -> dict[str, Any]:
    """List active sessions."""
    core: DaemonCore = app.state.core
    return {"value": core.list_sessions()}


@app.post("/session", response_model=None)
async def session_create(req: NewSessionRequest) -> EndpointResponse:
    """Create a new session."""
    core: DaemonCore = app.state.core
    try:
        session_id, caps = await core.create_session(req.payload())
    except DriverError as exc:
        return _error_response(exc)
    return {"value": {"sessionId": session_id, "capabilities": caps}}


@app.get("/session/{session_id}", response_model=None)
async def session_info(session_id: str) -> EndpointResponse:
    """Return the capabilities reported for a session."""
    core: DaemonCore = app.state.core
    try:
        orchestrator = core.get_session(session_id)
    except DriverError as exc:
        return _error_response(exc)
    return {"value": orchestrator.ctx.caps}


@app.delete("/session/{session_id}", response_model=None)
async def session_delete(session_id: str) -> EndpointResponse:
    """Delete a session."""
    core: DaemonCore = app.state.core
    try:
        await core.delete_session(session_id)
    except DriverError as exc:
        return _error_response(exc)
    return {"value": None}


@app.api_route(
    "/session/{session_id}/{command_path:path}",
    methods=["GET", "POST", "DELETE"],
    response_model=None,
)
async def session_command(session_id: str, command_path: str, request: Request) -> Response:
    """Route one session command locally or to a proxy target."""
    core: DaemonCore = app.state.core
    path = f"/session/{session_id}/{command_path}"
    body = await request.body()
    try:
        orchestrator = core.get_session(session_id)
        result = await orchestrator.execute(request.method, path, body or None)
    except DriverError as exc:
        logger.info("command_failed", method=request.method, path=path, code=exc.code)
        return _error_response(exc)
    return Response(
        content=result.content,
        status_code=result.status_code,
        media_type=result.media_type,
    )
