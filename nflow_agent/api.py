"""FastAPI service for the NFlow agent.

Wraps CoordinatorService in a small HTTP API:

  POST /runs                 process one request (optionally continuing a session)
  GET  /runs                 every known session with its checkpointed state
  GET  /runs/{session_id}    checkpointed state of a session, without advancing it
  GET  /health               liveness

POST /runs always answers 200 with the {success, message, data} envelope;
a failed request is reported in the body, never as a 5xx.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

logger = logging.getLogger("nflow_agent.api")

# ---------------------------------------------------------------------------
# API key authentication (optional; enabled when AGENT_API_KEY is set)
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def _verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> None:
    """Require 'Authorization: Bearer <AGENT_API_KEY>' when AGENT_API_KEY is set."""
    api_key = os.getenv("AGENT_API_KEY")
    if not api_key:
        return
    if not credentials or credentials.credentials != api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ---------------------------------------------------------------------------
# Lifespan: build the service once at startup
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("NFLOW_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    from nflow_agent.service import CoordinatorService

    async with CoordinatorService.from_env() as service:
        app.state.service = service
        yield

    logger.info("Shutting down NFlow agent")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

_rate_limit = os.getenv("RATE_LIMIT_RUNS_PER_MIN", "30")
limiter = Limiter(key_func=get_remote_address, default_limits=[f"{_rate_limit}/minute"])

app = FastAPI(
    title="NFlow Agent API",
    description="Turns natural-language requests into NFlow application, object and field changes.",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

_CORS_ORIGINS: list[str] = [
    o.strip()
    for o in os.environ.get("CORS_ORIGINS", "http://localhost:3001,http://localhost:3000").split(",")
    if o.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class RunRequest(BaseModel):
    """Request body for POST /runs."""

    message: str = Field(
        ...,
        min_length=1,
        description="What the user wants done on the platform (or just a chat message).",
        examples=["Create a CRM application with a contact object"],
    )
    session_id: str | None = Field(
        None,
        alias="sessionId",
        description="Session to continue. A new one is generated when omitted.",
    )

    model_config = {"populate_by_name": True}


class RunResponse(BaseModel):
    success: bool
    message: str
    data: dict[str, Any] = Field(default_factory=dict)


class SessionState(BaseModel):
    session_id: str
    is_completed: bool
    current_node: str | None = None
    error: str | None = None
    summary: str | None = None
    chat_reply: str | None = None
    processed_intents: list[int] = Field(default_factory=list)
    created_entities: list[dict[str, Any]] = Field(default_factory=list)
    message_count: int = 0


def _get_service(request: Request):
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Agent is not initialized")
    return service


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"])
async def health() -> dict:
    return {"api": "ok"}


@app.post("/runs", response_model=RunResponse, tags=["runs"], dependencies=[Depends(_verify_api_key)])
@limiter.limit(f"{_rate_limit}/minute")
async def create_run(request: Request, body: RunRequest) -> RunResponse:
    """Process one request. Failures are reported in the body (success=false)."""
    service = _get_service(request)
    session_id = body.session_id or str(uuid4())
    result = await service.run({"message": body.message, "sessionId": session_id})
    return RunResponse(**result)


@app.get("/runs/{session_id}", response_model=SessionState, tags=["runs"], dependencies=[Depends(_verify_api_key)])
async def get_run(session_id: str, request: Request) -> SessionState:
    """Current checkpointed state of a session without advancing it."""
    service = _get_service(request)
    try:
        state = await service.get_session(session_id)
    except Exception as e:
        logger.exception("Session %s lookup failed", session_id)
        raise HTTPException(status_code=500, detail=str(e))
    if state is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found.")
    return SessionState(**state)


@app.get("/runs", response_model=list[SessionState], tags=["runs"], dependencies=[Depends(_verify_api_key)])
async def list_runs(request: Request) -> list[SessionState]:
    """All sessions known to the checkpointer, with their current state."""
    service = _get_service(request)
    try:
        sessions = await service.list_sessions()
    except Exception as e:
        logger.exception("Session listing failed")
        raise HTTPException(status_code=500, detail=str(e))
    return [SessionState(**s) for s in sessions]
