"""
FastAPI application — REST API for Beat Pilot.

Endpoints:
  GET  /health                                  — Health check
  GET  /beats, /beats/{id}, /workflows          — Read through the routed backend
  POST /orchestration/sessions                  — Start an orchestration session
  GET  /orchestration/sessions[/{id}]           — Session descriptors
  GET  /orchestration/sessions/{id}/events      — SSE stream of session events
  POST /orchestration/sessions/{id}/abort       — Abort a running session
  POST /orchestration/sessions/{id}/apply       — Materialize the plan as waves
  POST /orchestration/restage                   — Register an existing plan
  POST /verification/agent-complete             — Trigger auto-verification
  GET  /verification/events                     — Recent verification events
  POST /backends/cache/clear                    — Drop backend detection caches
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

import config
from features.backends import ErrorCode, clear_repo_cache, get_backend
from features.backends.errors import BackendError, BackendResult
from features.orchestration import (
    ApplyOverrides,
    OrchestrationError,
    SessionNotFoundError,
    SessionStateError,
    get_manager,
)
from features.verification import get_orchestrator
from models.schemas import BeatFilters

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Backend type %s (default repo %s)", config.BACKEND_TYPE, config.DEFAULT_REPO_PATH)
    log.info("Verification %s", "enabled" if config.VERIFICATION_ENABLED else "disabled")
    yield


app = FastAPI(
    title="Beat Pilot",
    description="Beat tracking, agent-planned orchestration waves and auto-verification",
    version="1.0.0",
    lifespan=lifespan,
)


_STATUS_BY_CODE = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.ALREADY_EXISTS: 409,
    ErrorCode.LOCKED: 409,
    ErrorCode.PERMISSION_DENIED: 403,
    ErrorCode.UNSUPPORTED: 501,
    ErrorCode.RATE_LIMITED: 429,
}


def _raise_for(error: BackendError | None) -> None:
    if error is None:
        raise HTTPException(status_code=502, detail="Backend returned no data")
    raise HTTPException(status_code=_STATUS_BY_CODE.get(error.code, 502), detail=error.to_dict())


def _data(result: BackendResult) -> Any:
    if not result.ok:
        _raise_for(result.error)
    return result.data


def _repo(repo_path: str | None) -> str:
    repo = repo_path or config.DEFAULT_REPO_PATH or os.getcwd()
    if not Path(repo).is_dir():
        raise HTTPException(status_code=400, detail=f"Repository not found: {repo}")
    return repo


# ── Health ────────────────────────────────────────────────────────────

@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "beat-pilot",
        "backend_type": config.BACKEND_TYPE,
        "verification_enabled": config.VERIFICATION_ENABLED,
    }


# ── Beats ─────────────────────────────────────────────────────────────

@app.get("/beats")
async def list_beats(repo_path: str | None = None, status: str | None = None, type: str | None = None,
                     label: str | None = None, parent: str | None = None, q: str | None = None,
                     ready: bool = False):
    """List beats, optionally filtered, searched or restricted to ready ones."""
    repo = _repo(repo_path)
    filters = BeatFilters(status=status, type=type, label=label, parent=parent)
    backend = get_backend()
    if q:
        result = await backend.search(q, filters, repo)
    elif ready:
        result = await backend.list_ready(filters, repo)
    else:
        result = await backend.list(filters, repo)
    beats = _data(result) or []
    return {"beats": [asdict(b) for b in beats], "count": len(beats)}


@app.get("/beats/{beat_id}")
async def get_beat(beat_id: str, repo_path: str | None = None):
    repo = _repo(repo_path)
    backend = get_backend()
    beat = _data(await backend.get(beat_id, repo))
    deps = _data(await backend.list_dependencies(beat_id, None, repo)) or []
    return {**asdict(beat), "dependencies": [asdict(d) for d in deps]}


@app.get("/workflows")
async def list_workflows(repo_path: str | None = None):
    repo = _repo(repo_path)
    workflows = _data(await get_backend().list_workflows(repo)) or []
    return {"workflows": [w.to_dict() for w in workflows]}


# ── Orchestration ─────────────────────────────────────────────────────

class StartSessionRequest(BaseModel):
    repo_path: str | None = None
    objective: str | None = None


class ApplySessionRequest(BaseModel):
    repo_path: str | None = None
    wave_names: dict[str, str] = Field(default_factory=dict)
    wave_slugs: dict[str, str] = Field(default_factory=dict)


class RestageRequest(BaseModel):
    repo_path: str | None = None
    plan: dict[str, Any]
    objective: str | None = None


@app.post("/orchestration/sessions")
async def start_session(req: StartSessionRequest):
    """Ask the planning agent for a wave plan over the repository's open beats."""
    repo = _repo(req.repo_path)
    try:
        session = await get_manager().start(repo, req.objective)
    except OrchestrationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return session.to_dict()


@app.get("/orchestration/sessions")
async def list_sessions():
    return {"sessions": [s.to_dict() for s in get_manager().list_sessions()]}


@app.get("/orchestration/sessions/{session_id}")
async def get_session(session_id: str):
    try:
        return get_manager().get(session_id).session.to_dict()
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/orchestration/sessions/{session_id}/events")
async def stream_session_events(session_id: str):
    """Server-sent events: buffered history first, then live events until exit."""
    manager = get_manager()
    try:
        manager.get(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    async def _events():
        async for event in manager.subscribe(session_id):
            yield f"data: {json.dumps(event.to_dict(), default=str)}\n\n"

    return StreamingResponse(
        _events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.post("/orchestration/sessions/{session_id}/abort")
async def abort_session(session_id: str):
    if not get_manager().abort(session_id):
        raise HTTPException(status_code=404, detail=f"No running session: {session_id}")
    return {"session_id": session_id, "status": "aborted"}


@app.post("/orchestration/sessions/{session_id}/apply")
async def apply_session(session_id: str, req: ApplySessionRequest):
    """Create wave epics for the session's plan and reparent its beats under them."""
    repo = _repo(req.repo_path)
    overrides = ApplyOverrides(wave_names=req.wave_names, wave_slugs=req.wave_slugs)
    try:
        result = await get_manager().apply(session_id, repo, overrides)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except OrchestrationError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return result.to_dict()


@app.post("/orchestration/restage")
async def restage_plan(req: RestageRequest):
    repo = _repo(req.repo_path)
    try:
        session = await get_manager().restage(repo, req.plan, req.objective)
    except OrchestrationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return session.to_dict()


# ── Verification ──────────────────────────────────────────────────────

class AgentCompleteRequest(BaseModel):
    bead_ids: list[str]
    action: str
    repo_path: str | None = None
    exit_code: int | None = 0


@app.post("/verification/agent-complete")
async def agent_complete(req: AgentCompleteRequest):
    """Verify the beats an agent just finished; returns once every workflow settles."""
    repo = _repo(req.repo_path)
    orchestrator = get_orchestrator()
    await orchestrator.on_agent_complete(req.bead_ids, req.action, repo, req.exit_code)
    return {"events": [e.to_dict() for e in orchestrator.events()]}


@app.get("/verification/events")
async def verification_events(limit: int = 50):
    return {"events": [e.to_dict() for e in get_orchestrator().events(limit)]}


# ── Backend caches ────────────────────────────────────────────────────

class CacheClearRequest(BaseModel):
    repo_path: str | None = None


@app.post("/backends/cache/clear")
async def clear_backend_cache(req: CacheClearRequest):
    clear_repo_cache(req.repo_path)
    return {"cleared": req.repo_path or "all"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app:app", host=config.API_HOST, port=config.API_PORT)
