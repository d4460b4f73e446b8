from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Header, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from contextlib import asynccontextmanager
from typing import Optional
import asyncio
import logging
import sys
import time

import config
import copilot_client
from errors import NotFound, QuizError
from game import GameController
from models import SessionConfig, generate_id
from logger import (
    setup_logging, get_logger, get_request_id, set_request_id, summarize_token_usage,
)

# Initialise structured, file-based logging
setup_logging(console_level=logging.INFO)
logger = get_logger("PromptQuiz")

# WebSocket connections per session
# session_id -> { connection_id -> websocket }
ws_connections: dict[str, dict[str, WebSocket]] = {}

# Event storage for polling fallback
session_events: dict[str, list[dict]] = {}
_event_counter = 0

controller: GameController


def add_session_event(session_id: str, event: dict) -> dict:
    """Add an event to the session's queue for polling clients"""
    global _event_counter
    _event_counter += 1
    stored = {**event, '_eventId': _event_counter, '_timestamp': time.time()}
    events = session_events.setdefault(session_id, [])
    events.append(stored)
    # Keep only last N events
    if len(events) > config.MAX_EVENTS_PER_SESSION:
        session_events[session_id] = events[-config.MAX_EVENTS_PER_SESSION:]
    return stored


async def broadcast_event(session_id: str, event: dict) -> None:
    """Controller listener: queue the event and push it with a fresh snapshot"""
    stored = add_session_event(session_id, event)

    connections = ws_connections.get(session_id)
    if not connections:
        return

    session = controller.store.read().get_session(session_id)
    state = controller.get_live_session(session.join_code).model_dump() if session else None

    dead_connections = []
    for conn_id, ws in connections.items():
        try:
            await ws.send_json(stored)
            if state is not None:
                await ws.send_json({'type': 'session_state', 'state': state})
        except Exception:
            dead_connections.append(conn_id)

    for conn_id in dead_connections:
        connections.pop(conn_id, None)
    if dead_connections:
        logger.debug(f"🧹 Cleaned {len(dead_connections)} dead connection(s) in session {session_id}")


def set_controller(new_controller: GameController) -> GameController:
    """Install the controller the endpoints talk to"""
    global controller
    controller = new_controller
    controller.subscribe(broadcast_event)
    return controller


set_controller(GameController())


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await controller.scheduler.shutdown()


app = FastAPI(title="PromptQuiz API", lifespan=lifespan)

# CORS - allow all origins for simplicity (adjust for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,  # Must be False when using allow_origins=["*"]
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    rid = set_request_id(request.headers.get("X-Request-Id"))
    response = await call_next(request)
    response.headers["X-Request-Id"] = rid
    return response


@app.exception_handler(QuizError)
async def quiz_error_handler(request: Request, exc: QuizError):
    if exc.status_code >= 500:
        logger.error(f"❌ {exc.reason}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "reason": exc.reason, "request_id": get_request_id()},
    )


# --- Identity ---

def verify_auth_token(token: str) -> bool:
    """Verify the shared secret for host endpoints"""
    if not config.QUIZ_AUTH_SECRET:
        return True  # Allow if not configured (dev mode)
    return token == config.QUIZ_AUTH_SECRET


def current_caller_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    x_auth_token: str = Header(default="", alias="X-Auth-Token"),
) -> Optional[str]:
    """Host identity as asserted by the upstream auth proxy"""
    if not verify_auth_token(x_auth_token):
        return None
    return x_user_id or None


# --- Request/Response Models ---

class CreateSessionRequest(BaseModel):
    name: str
    config: SessionConfig = SessionConfig()
    hostName: str = "Host"


class CreateSessionResponse(BaseModel):
    sessionId: str
    joinCode: str
    joinLinkSlug: str


class UpdateConfigRequest(BaseModel):
    config: SessionConfig


class JoinRequest(BaseModel):
    joinCode: str
    name: str = Field(default="", max_length=100)
    deviceFingerprint: str


class JoinResponse(BaseModel):
    playerId: str
    sessionId: str
    reconnected: bool = False


class PromptRequest(BaseModel):
    text: str = Field(max_length=2000)
    deviceFingerprint: str


class AnswerRequest(BaseModel):
    optionId: str
    deviceFingerprint: str


# --- Host endpoints ---

@app.post("/api/session", response_model=CreateSessionResponse)
async def create_session(request: CreateSessionRequest, caller_id: Optional[str] = Depends(current_caller_id)):
    """Create a new quiz session (signed-in host)"""
    result = await controller.create_session(caller_id, request.name, request.config, request.hostName)
    return CreateSessionResponse(**result)


@app.get("/api/sessions")
async def list_sessions(caller_id: Optional[str] = Depends(current_caller_id)):
    """List the caller's sessions, newest first"""
    return {"sessions": [s.model_dump() for s in controller.list_sessions_for_owner(caller_id)]}


@app.patch("/api/session/{session_id}/config")
async def update_config(
    session_id: str,
    request: UpdateConfigRequest,
    caller_id: Optional[str] = Depends(current_caller_id),
):
    """Change round count / timers while still in the lobby (host only)"""
    view = await controller.update_session_config(caller_id, session_id, request.config)
    return {"session": view.model_dump()}


@app.post("/api/session/{session_id}/start")
async def start_game(session_id: str, caller_id: Optional[str] = Depends(current_caller_id)):
    """Start the first round (host only)"""
    return (await controller.start_game(caller_id, session_id)).model_dump()


@app.post("/api/session/{session_id}/rounds/{round_id}/lock")
async def lock_answers_early(session_id: str, round_id: str, caller_id: Optional[str] = Depends(current_caller_id)):
    """Close answering now and reveal (host only)"""
    return (await controller.lock_answers_early(caller_id, session_id, round_id)).model_dump()


@app.post("/api/session/{session_id}/advance")
async def advance_phase(session_id: str, caller_id: Optional[str] = Depends(current_caller_id)):
    """reveal -> scoreboard -> next round / finished (host only)"""
    return (await controller.advance_phase(caller_id, session_id)).model_dump()


@app.post("/api/session/{session_id}/skip")
async def skip_round(session_id: str, caller_id: Optional[str] = Depends(current_caller_id)):
    """Abandon the current round (host only)"""
    return (await controller.skip_round(caller_id, session_id)).model_dump()


@app.post("/api/session/{session_id}/retry-generation")
async def retry_generation(session_id: str, caller_id: Optional[str] = Depends(current_caller_id)):
    """Re-run question generation after a failure (host only)"""
    return (await controller.retry_generation(caller_id, session_id)).model_dump()


@app.post("/api/session/{session_id}/end")
async def end_quiz(session_id: str, caller_id: Optional[str] = Depends(current_caller_id)):
    """Finish the quiz immediately (host only)"""
    return (await controller.end_quiz(caller_id, session_id)).model_dump()


@app.post("/api/session/{session_id}/players/{player_id}/kick")
async def kick_player(session_id: str, player_id: str, caller_id: Optional[str] = Depends(current_caller_id)):
    """Remove a player from the game (host only)"""
    return await controller.kick_player(caller_id, session_id, player_id)


# --- Player endpoints ---

@app.get("/api/join-link/{slug}")
async def resolve_join_link(slug: str):
    """Resolve a shared join link to the quiz's join code"""
    return controller.resolve_join_link(slug)


@app.post("/api/join", response_model=JoinResponse)
async def join_session(request: JoinRequest):
    """Join a quiz in the lobby, or reconnect from the same device"""
    result = await controller.join_session(request.joinCode, request.name, request.deviceFingerprint)
    return JoinResponse(**result)


@app.post("/api/session/{session_id}/rounds/{round_id}/prompt")
async def submit_prompt(session_id: str, round_id: str, request: PromptRequest):
    """Submit this round's topic (the round's prompter only)"""
    result = await controller.submit_prompt(session_id, round_id, request.text, request.deviceFingerprint)
    return result.model_dump()


@app.post("/api/session/{session_id}/rounds/{round_id}/answer")
async def submit_answer(session_id: str, round_id: str, request: AnswerRequest):
    """Submit an answer to the current question (player)"""
    return await controller.submit_answer(session_id, round_id, request.optionId, request.deviceFingerprint)


# --- Reads ---

@app.get("/api/live/{join_code}")
async def get_live_session(join_code: str):
    """Current session, players, active round and answer count"""
    return controller.get_live_session(join_code).model_dump()


@app.get("/api/session/{session_id}/leaderboard")
async def get_leaderboard(session_id: str):
    """Players by score, ties broken by name"""
    return {"leaderboard": [e.model_dump() for e in controller.get_leaderboard(session_id)]}


@app.get("/api/live/{join_code}/events")
async def get_session_events(join_code: str, since_id: int = 0):
    """Events since a given event ID (polling fallback for WebSocket)"""
    session = controller.store.read().session_by_join_code(join_code)
    if session is None:
        raise NotFound("Quiz not found")
    events = session_events.get(session.id, [])
    return {
        'events': [e for e in events if e['_eventId'] > since_id],
        'lastEventId': events[-1]['_eventId'] if events else since_id,
    }


@app.websocket("/ws/live/{join_code}")
async def websocket_session(websocket: WebSocket, join_code: str):
    """WebSocket connection for real-time session updates"""
    session = controller.store.read().session_by_join_code(join_code)
    if session is None:
        await websocket.close(code=4004, reason="Session not found")
        return

    await websocket.accept()
    conn_id = generate_id()
    ws_connections.setdefault(session.id, {})[conn_id] = websocket
    logger.info(f"🔌 WebSocket connected: session={session.id}")

    try:
        await websocket.send_json({
            'type': 'session_state',
            'state': controller.get_live_session(join_code).model_dump(),
        })
        # Nothing is expected from clients; keep reading to notice disconnects
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"🔌 WebSocket error for session {session.id}: {e}", exc_info=True)
    finally:
        ws_connections.get(session.id, {}).pop(conn_id, None)
        logger.info(f"🔌 WebSocket disconnected: session={session.id}")


# --- Diagnostics ---

@app.get("/health")
async def health():
    """Health check endpoint"""
    return {"status": "ok", "pendingTasks": controller.scheduler.pending}


@app.get("/api/ai-status")
async def get_ai_status():
    """AI / search configuration - useful for debugging"""
    cli_path = await asyncio.to_thread(copilot_client.find_copilot_cli)
    return {
        "sdk_available": copilot_client.COPILOT_SDK_AVAILABLE,
        "sdk_info": copilot_client.COPILOT_MODULE_INFO,
        "cli_found": bool(cli_path),
        "model": config.QUIZ_COPILOT_MODEL,
        "agent_max_steps": config.QUIZ_AGENT_MAX_STEPS,
        "search_configured": bool(config.SERPER_API_KEY),
        "auth_secret_set": bool(config.QUIZ_AUTH_SECRET),
        "python_version": sys.version,
    }


@app.get("/api/token-usage")
async def get_token_usage(hours: float = 24):
    """Aggregated Copilot token-usage stats from the JSONL log."""
    return summarize_token_usage(since_hours=hours)


if __name__ == "__main__":
    import uvicorn
    print("\n🎮 PromptQuiz Server")
    print("   URL: http://localhost:8000\n")
    uvicorn.run(app, host="0.0.0.0", port=8000)
