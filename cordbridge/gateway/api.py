"""Diagnostics HTTP API (local control plane).

Runs inside the bridge process so it can read the orchestrator's in-memory
channel state:
- health and project count
- active sessions (export) and saved sessions per channel
- per-channel queue/invocation state, with an abort action
- the captured error log
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.status import HTTP_401_UNAUTHORIZED

from cordbridge import __version__
from cordbridge.agent.orchestrator import QueryOrchestrator
from cordbridge.logging.error_store import clear_errors, get_errors
from cordbridge.projects.registry import ProjectRegistry
from cordbridge.sessions.store import SessionStore


def _require_token(token: str):
    def _dep(request: Request) -> None:
        auth_header = request.headers.get("Authorization", "")
        if not token or not auth_header.startswith("Bearer "):
            raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        provided = auth_header[len("Bearer ") :].strip()
        if provided != token:
            raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    return _dep


def create_gateway_app(
    orchestrator: QueryOrchestrator,
    sessions: SessionStore,
    projects: ProjectRegistry,
    token: str,
) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    require = _require_token(token)

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"ok": True, "version": __version__, "projects": projects.count()})

    @app.get("/sessions", dependencies=[Depends(require)])
    async def list_sessions() -> JSONResponse:
        return JSONResponse({"sessions": [asdict(r) for r in sessions.get_all()]})

    @app.get("/sessions/{channel_id}/saved", dependencies=[Depends(require)])
    async def list_saved_sessions(channel_id: str) -> JSONResponse:
        return JSONResponse({"saved": [asdict(s) for s in sessions.list_saved(channel_id)]})

    @app.get("/channels", dependencies=[Depends(require)])
    async def list_channels() -> JSONResponse:
        return JSONResponse({"channels": orchestrator.snapshot()})

    @app.post("/channels/{channel_id}/abort", dependencies=[Depends(require)])
    async def abort_channel(channel_id: str) -> JSONResponse:
        aborted = await orchestrator.abort(channel_id)
        return JSONResponse({"ok": True, "aborted": aborted})

    @app.get("/errors", dependencies=[Depends(require)])
    async def list_errors(limit: int = 200) -> JSONResponse:
        return JSONResponse({"errors": get_errors(limit=limit)})

    @app.post("/errors/clear", dependencies=[Depends(require)])
    async def clear_error_log() -> JSONResponse:
        clear_errors()
        return JSONResponse({"ok": True})

    return app
