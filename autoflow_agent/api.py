"""FastAPI service for the AutoFlow agent.

Four groups of routes, all under /api:

  /api/chat/*         generate → (preview) → modify / explain → deploy
  /api/flows/*        thin pass-through to the Activepieces flow API
  /api/connections/*  list app connections, check which ones a flow still needs
  /api/pieces/*       catalog inspection and manual sync

Conversation state lives in an in-memory SessionStore: the last
MAX_HISTORY messages per session plus the last generated flow, which is the
default target of /deploy and /modify.

Errors are mapped once, by kind, in the exception handlers below:
  SchemaError / SafetyBlock / ProviderError → 422
  EngineError                               → remote status, else 502
  AuthError                                 → 503
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from autoflow_agent.errors import (
    AuthError,
    EngineError,
    ProviderError,
    SafetyBlock,
    SchemaError,
)

logger = logging.getLogger("autoflow_agent.api")

MAX_HISTORY = 20

# ---------------------------------------------------------------------------
# API key authentication (enabled when AGENT_API_KEY is set)
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def _verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> None:
    """Verify Bearer token matches AGENT_API_KEY. Unset means open access."""
    api_key = os.getenv("AGENT_API_KEY")
    if not api_key:
        return
    if not credentials or credentials.credentials != api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@dataclass
class Session:
    history: list[dict[str, str]] = field(default_factory=list)
    last_flow: dict[str, Any] | None = None


class SessionStore:
    """Process-local conversation store. Not shared across workers."""

    def __init__(self, max_history: int = MAX_HISTORY) -> None:
        self._sessions: dict[str, Session] = {}
        self._max_history = max_history

    def get(self, session_id: str | None) -> Session | None:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    def record(self, session_id: str, user: str, flow: dict[str, Any]) -> Session:
        """Append one user/assistant exchange and remember `flow` as the latest."""
        session = self._sessions.setdefault(session_id, Session())
        session.history.append({"role": "user", "content": user})
        session.history.append({"role": "assistant", "content": json.dumps(flow, ensure_ascii=False)})
        session.history = session.history[-self._max_history:]
        session.last_flow = flow
        return session


# ---------------------------------------------------------------------------
# Lifespan: wire services once at startup, close them on shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the pipeline from the environment, load the catalog, start refresh."""
    load_dotenv()

    from autoflow_agent.agent.pipeline import create_services
    from autoflow_agent.client import Settings
    from autoflow_agent.reasoning import ReasoningSettings

    settings = Settings.from_env()
    reasoning_settings = ReasoningSettings()

    logger.info(
        "Starting AutoFlow agent | Activepieces: %s | AI provider: %s",
        settings.base_url, reasoning_settings.provider,
    )

    services = create_services(settings, reasoning_settings)
    await services.registry.refresh()
    services.registry.start_periodic_refresh(settings.catalog_refresh_hours * 3600)

    app.state.pipeline = services.pipeline
    app.state.client = services.client
    app.state.registry = services.registry
    app.state.sessions = SessionStore()

    yield

    await services.close()
    logger.info("Shutting down AutoFlow agent")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

_RATE_LIMIT = f"{os.getenv('RATE_LIMIT_PER_MIN', '30')}/minute"
limiter = Limiter(key_func=get_remote_address)

app = FastAPI(
    title="AutoFlow Agent API",
    description="Turns natural-language requests into Activepieces flows.",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

_CORS_ORIGINS: list[str] = [
    o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ORIGINS,
    allow_credentials="*" not in _CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


@app.exception_handler(SchemaError)
async def _schema_error(request: Request, exc: SchemaError) -> JSONResponse:
    return JSONResponse(status_code=422, content={
        "error": "The generated flow is invalid",
        "errors": exc.errors,
        "warnings": exc.warnings,
        "isUserError": exc.is_user_error,
    })


@app.exception_handler(SafetyBlock)
async def _safety_block(request: Request, exc: SafetyBlock) -> JSONResponse:
    return JSONResponse(status_code=422, content={
        "error": "The flow was blocked by safety policy",
        "blocks": exc.blocks,
        "warnings": exc.warnings,
    })


@app.exception_handler(ProviderError)
async def _provider_error(request: Request, exc: ProviderError) -> JSONResponse:
    return JSONResponse(status_code=422, content={
        "error": str(exc),
        "code": exc.code,
        "suggestion": "Try describing the automation more simply, e.g. "
                      '"every day at 8am email me the sales report".',
    })


@app.exception_handler(EngineError)
async def _engine_error(request: Request, exc: EngineError) -> JSONResponse:
    status = exc.status_code if exc.status_code and 400 <= exc.status_code < 600 else 502
    return JSONResponse(status_code=status, content={
        "error": str(exc),
        "details": exc.response_body,
        "path": exc.path,
    })


@app.exception_handler(AuthError)
async def _auth_error(request: Request, exc: AuthError) -> JSONResponse:
    return JSONResponse(status_code=503, content={
        "error": "Could not authenticate with Activepieces",
        "details": str(exc),
    })


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class GenerateRequest(BaseModel):
    message: str = Field(..., description="Natural-language description of the automation.")
    sessionId: str | None = Field(None, description="Existing session to continue.")


class DeployRequest(BaseModel):
    sessionId: str | None = None
    flowJson: dict[str, Any] | None = Field(
        None, description="Flow to deploy; defaults to the session's last flow.",
    )
    autoPublish: bool = False
    folderId: str | None = None


class ModifyRequest(BaseModel):
    sessionId: str | None = None
    modification: str = ""


class ExplainRequest(BaseModel):
    sessionId: str | None = None
    flowJson: dict[str, Any] | None = None


class StatusRequest(BaseModel):
    enabled: bool


class ConnectionsCheckRequest(BaseModel):
    needed: list[str]


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def _pipeline(request: Request):
    return request.app.state.pipeline


def _client(request: Request):
    return request.app.state.client


def _registry(request: Request):
    return request.app.state.registry


def _sessions(request: Request) -> SessionStore:
    return request.app.state.sessions


def _preview(session_id: str, result) -> dict[str, Any]:
    return {
        "sessionId": session_id,
        "flow": result.flow_json,
        "warnings": result.warnings,
        "explanation": result.explanation,
        "connectionsNeeded": result.connections_needed,
        "status": "PREVIEW",
        "retried": result.repaired,
    }


# ---------------------------------------------------------------------------
# Chat routes
# ---------------------------------------------------------------------------


@app.post("/api/chat/generate", tags=["chat"], dependencies=[Depends(_verify_api_key)])
@limiter.limit(_RATE_LIMIT)
async def generate(request: Request, body: GenerateRequest) -> dict:
    """Generate a flow preview from a natural-language request."""
    message = body.message.strip()
    if len(message) < 3:
        raise HTTPException(
            status_code=400,
            detail="Message too short; describe the automation you want",
        )

    sessions = _sessions(request)
    session = sessions.get(body.sessionId)
    session_id = body.sessionId or str(uuid4())

    result = await _pipeline(request).generate(message, session.history if session else [])
    sessions.record(session_id, message, result.flow_json)
    return _preview(session_id, result)


@app.post("/api/chat/deploy", tags=["chat"], dependencies=[Depends(_verify_api_key)])
@limiter.limit(_RATE_LIMIT)
async def deploy(request: Request, body: DeployRequest) -> dict:
    """Materialize a flow on Activepieces (draft unless autoPublish)."""
    flow = body.flowJson
    if flow is None:
        session = _sessions(request).get(body.sessionId)
        flow = session.last_flow if session else None
    if flow is None:
        raise HTTPException(
            status_code=400, detail="No flow to deploy; call /api/chat/generate first",
        )

    result = await _pipeline(request).deploy(
        flow, auto_publish=body.autoPublish, folder_id=body.folderId,
    )
    compiled = result.compiled
    return {
        "success": True,
        "flowId": compiled.flow_id,
        "flowUrl": compiled.url,
        "status": compiled.status,
        "stepsCreated": compiled.step_count,
        "warnings": result.warnings,
    }


@app.post("/api/chat/modify", tags=["chat"], dependencies=[Depends(_verify_api_key)])
async def modify(request: Request, body: ModifyRequest) -> dict:
    """Modify the session's last flow according to a change request."""
    if not body.modification.strip():
        raise HTTPException(status_code=400, detail="Describe the change you want")

    sessions = _sessions(request)
    session = sessions.get(body.sessionId)
    if session is None or session.last_flow is None:
        raise HTTPException(status_code=400, detail="No previous flow in this session")

    result = await _pipeline(request).modify(session.last_flow, body.modification)
    sessions.record(body.sessionId, f"Modify: {body.modification}", result.flow_json)
    return _preview(body.sessionId, result)


@app.post("/api/chat/explain", tags=["chat"], dependencies=[Depends(_verify_api_key)])
async def explain(request: Request, body: ExplainRequest) -> dict:
    flow = body.flowJson
    if flow is None:
        session = _sessions(request).get(body.sessionId)
        flow = session.last_flow if session else None
    if flow is None:
        raise HTTPException(status_code=400, detail="Send flowJson or a sessionId with a flow")
    return {"explanation": await _pipeline(request).explain(flow)}


# ---------------------------------------------------------------------------
# Flow routes
# ---------------------------------------------------------------------------


@app.get("/api/flows", tags=["flows"], dependencies=[Depends(_verify_api_key)])
async def list_flows(request: Request, limit: int = 50) -> Any:
    return await _client(request).list_flows(limit=limit)


@app.get("/api/flows/{flow_id}", tags=["flows"], dependencies=[Depends(_verify_api_key)])
async def get_flow(request: Request, flow_id: str) -> Any:
    return await _client(request).get_flow(flow_id)


@app.post("/api/flows/{flow_id}/publish", tags=["flows"], dependencies=[Depends(_verify_api_key)])
async def publish_flow(request: Request, flow_id: str) -> dict:
    await _client(request).publish_flow(flow_id)
    return {"success": True, "status": "PUBLISHED"}


@app.post("/api/flows/{flow_id}/status", tags=["flows"], dependencies=[Depends(_verify_api_key)])
async def set_flow_status(request: Request, flow_id: str, body: StatusRequest) -> dict:
    await _client(request).set_flow_status(flow_id, body.enabled)
    return {"success": True, "status": "ENABLED" if body.enabled else "DISABLED"}


@app.delete("/api/flows/{flow_id}", tags=["flows"], dependencies=[Depends(_verify_api_key)])
async def delete_flow(request: Request, flow_id: str) -> dict:
    await _client(request).delete_flow(flow_id)
    return {"success": True}


@app.get("/api/flows/{flow_id}/runs", tags=["flows"], dependencies=[Depends(_verify_api_key)])
async def list_runs(request: Request, flow_id: str, limit: int = 10) -> Any:
    return await _client(request).list_runs(flow_id=flow_id, limit=limit)


# ---------------------------------------------------------------------------
# Connection routes
# ---------------------------------------------------------------------------


@app.get("/api/connections", tags=["connections"], dependencies=[Depends(_verify_api_key)])
async def list_connections(request: Request) -> Any:
    return await _client(request).list_connections()


@app.post("/api/connections/check", tags=["connections"], dependencies=[Depends(_verify_api_key)])
async def check_connections(request: Request, body: ConnectionsCheckRequest) -> dict:
    report = await _pipeline(request).check_connections(body.needed)
    report["message"] = (
        f"Connections required: {', '.join(report['missing'])}"
        if report["missing"] else "All connections are ready"
    )
    return report


# ---------------------------------------------------------------------------
# Piece routes
# ---------------------------------------------------------------------------


@app.get("/api/pieces", tags=["pieces"], dependencies=[Depends(_verify_api_key)])
async def list_pieces(request: Request) -> dict:
    catalog = _registry(request).catalog
    return {
        "pieces": [
            {
                "name": p.name,
                "displayName": p.display_name,
                "description": p.description,
                "logoUrl": p.logo_url,
                "triggersCount": len(p.triggers),
                "actionsCount": len(p.actions),
            }
            for p in catalog.pieces.values()
        ],
        "total": len(catalog),
        "mode": catalog.mode,
        "lastSync": catalog.synced_at.isoformat() if catalog.synced_at else None,
    }


@app.get("/api/pieces/stats", tags=["pieces"], dependencies=[Depends(_verify_api_key)])
async def piece_stats(request: Request) -> dict:
    return _registry(request).catalog.stats()


@app.post("/api/pieces/sync", tags=["pieces"], dependencies=[Depends(_verify_api_key)])
async def sync_pieces(request: Request) -> dict:
    catalog = await _registry(request).refresh()
    return {
        "success": True,
        "total": len(catalog),
        "mode": catalog.mode,
        "lastSync": catalog.synced_at.isoformat() if catalog.synced_at else None,
    }


@app.get("/api/pieces/{name:path}", tags=["pieces"], dependencies=[Depends(_verify_api_key)])
async def get_piece(request: Request, name: str) -> dict:
    piece = _registry(request).catalog.lookup(name)
    if piece is None:
        raise HTTPException(status_code=404, detail=f"Piece '{name}' not found")
    return {
        "name": piece.name,
        "displayName": piece.display_name,
        "description": piece.description,
        "version": piece.version,
        "logoUrl": piece.logo_url,
        "categories": list(piece.categories),
        "triggers": {k: {"displayName": t.display_name, "description": t.description}
                     for k, t in piece.triggers.items()},
        "actions": {k: {"displayName": a.display_name, "description": a.description}
                    for k, a in piece.actions.items()},
    }


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["system"])
async def health(request: Request) -> dict:
    """Health check. Verifies the API and the Activepieces connection."""
    engine_ok = await _client(request).ping()
    catalog = _registry(request).catalog
    return {
        "api": "ok",
        "activepieces": "ok" if engine_ok else "unreachable",
        "catalog": {"mode": catalog.mode, "pieces": len(catalog)},
    }


# ---------------------------------------------------------------------------
# Entry point (for uvicorn programmatic launch)
# ---------------------------------------------------------------------------


def serve(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    """Launch the FastAPI server via uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=os.getenv("AUTOFLOW_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "autoflow_agent.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    serve()
