"""
FastAPI application — the MultiMind entry point.

Endpoints:
  - POST /chat               stream a completion as SSE
  - GET  /chat/models        public model catalog
  - /history                 list / get / create / delete chat sessions
  - GET  /                   health check
"""

import asyncio
import logging
import sqlite3
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from multimind import __version__
from multimind.backends.base import ChatRequest
from multimind.backends.router import CompletionRouter
from multimind.config import get_config
from multimind.errors import (
    ImageNotSupported,
    ModelNotFound,
    PersistenceFailure,
    ProviderError,
    UnknownProvider,
)
from multimind.registry import ModelRegistry
from multimind.relay import StreamSession
from multimind.storage.models import ConversationTurn
from multimind.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are MultiMind AI, a helpful, creative, and intelligent assistant."

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
registry: ModelRegistry | None = None
completion_router: CompletionRouter | None = None
sqlite_store: SQLiteStore | None = None
default_system_prompt: str = DEFAULT_SYSTEM_PROMPT


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, log_cfg.get("level", "INFO").upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global registry, completion_router, sqlite_store, default_system_prompt

    cfg = get_config()
    _setup_logging(cfg)

    registry = ModelRegistry.from_config(cfg.get("models"))
    completion_router = CompletionRouter.from_config(cfg, registry=registry)
    sqlite_store = SQLiteStore(cfg.get("storage", {}).get("sqlite_path", "./data/multimind.db"))
    default_system_prompt = cfg.get("sessions", {}).get("default_system_prompt", DEFAULT_SYSTEM_PROMPT)

    server_cfg = cfg.get("server", {})
    logger.info(
        "MultiMind started — listening on %s:%s, %d models",
        server_cfg.get("host", "0.0.0.0"), server_cfg.get("port", 5000), len(registry),
    )
    for tag, adapter in completion_router.adapters.items():
        logger.info(
            "Provider %s: %s",
            tag.value, "configured" if adapter.api_key else f"missing {adapter.env_var}",
        )

    yield

    logger.info("MultiMind shutting down")


def _cors_origins() -> list[str]:
    try:
        return get_config().get("server", {}).get("cors_origins", ["*"])
    except FileNotFoundError:
        return ["*"]


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="MultiMind",
    description="One chat stream, many providers.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One line per request: method, path, status, time to first byte."""
    start = time.monotonic()
    response = await call_next(request)
    duration = (time.monotonic() - start) * 1000
    logger.info("%s %s %d %.0fms", request.method, request.url.path, response.status_code, duration)
    return response


@app.get("/")
async def root():
    """Health check."""
    return JSONResponse({
        "status": "ok",
        "message": "MultiMind AI Chat API is running",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

@app.get("/chat/models")
async def list_models():
    """Model catalog for the client dropdown."""
    return JSONResponse({"models": registry.catalog()})


def _parse_history(raw) -> list[ConversationTurn]:
    return [ConversationTurn.from_dict(m) for m in raw if isinstance(m, dict)]


def _make_persister(chat_request: ChatRequest, model_id: str):
    """Build the completion callback that saves the finished conversation."""

    async def _persist(session: StreamSession):
        turns = list(chat_request.conversation)
        turns.append(ConversationTurn(role="user", content=chat_request.new_user_content))
        turns.append(ConversationTurn(role="assistant", content=session.text))
        try:
            await asyncio.to_thread(
                sqlite_store.upsert,
                chat_request.session_id,
                model_id,
                turns,
                title=chat_request.new_user_content,
            )
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not save session {chat_request.session_id}: {e}") from e

    return _persist


@app.post("/chat")
async def chat(request: Request):
    """
    Main streaming endpoint.
    Validation errors come back as plain JSON before any stream is opened;
    once streaming starts every failure is a single error frame.
    """
    body = await request.json()
    message = body.get("message")
    model_id = body.get("selectedModelId") or body.get("publicModelId")

    if not message or not model_id:
        return JSONResponse({"error": "Message and model ID are required"}, status_code=400)

    history = body.get("chatHistory") or []
    if not isinstance(history, list):
        return JSONResponse({"error": "chatHistory must be a list"}, status_code=400)

    image = body.get("imageBase64") or None
    if image is not None and not isinstance(image, str):
        return JSONResponse({"error": "imageBase64 must be a base64 string"}, status_code=400)

    chat_request = ChatRequest(
        public_model_id=model_id,
        new_user_content=message,
        conversation=_parse_history(history),
        new_user_image=image,
        session_id=body.get("sessionId") or None,
    )

    try:
        deltas = completion_router.route(chat_request)
    except (ModelNotFound, ImageNotSupported) as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except (UnknownProvider, ProviderError) as e:
        logger.error("AI service error for model '%s': %s", model_id, e)
        return JSONResponse(
            {"error": "AI service error", "message": str(e)},
            status_code=500,
        )

    on_complete = None
    if chat_request.session_id and sqlite_store is not None:
        on_complete = _make_persister(chat_request, model_id)

    session = StreamSession(
        deltas,
        model_id=model_id,
        session_id=chat_request.session_id,
        on_complete=on_complete,
    )
    return StreamingResponse(
        session.frames(is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

@app.get("/history")
async def list_history():
    """Session metadata, most recently updated first."""
    sessions = sqlite_store.list_sessions()
    return JSONResponse({"chats": [s.to_summary() for s in sessions]})


@app.get("/history/{session_id}")
async def get_history(session_id: str):
    session = sqlite_store.get_session(session_id)
    if session is None:
        return JSONResponse({"error": "Chat session not found"}, status_code=404)
    return JSONResponse({"chat": session.to_dict()})


@app.post("/history")
async def create_history(request: Request):
    """Create a new session seeded with the default system prompt."""
    body = await request.json() if await request.body() else {}
    model_id = body.get("modelId") or registry.ids()[0]
    if model_id not in registry:
        return JSONResponse({"error": f"Model ID not found: {model_id}"}, status_code=400)

    session_id = f"chat_{int(time.time() * 1000)}_{uuid4().hex[:8]}"
    session = sqlite_store.create_session(
        session_id=session_id,
        model_id=model_id,
        title=body.get("title") or "New Chat",
        messages=[ConversationTurn(role="system", content=default_system_prompt)],
    )
    logger.info("Created session %s (model=%s)", session_id, model_id)
    return JSONResponse(
        {
            "sessionId": session.session_id,
            "title": session.title,
            "modelId": session.model_id,
            "createdAt": session.created_at,
        },
        status_code=201,
    )


@app.delete("/history/{session_id}")
async def delete_history(session_id: str):
    if not sqlite_store.delete_session(session_id):
        return JSONResponse({"error": "Chat session not found"}, status_code=404)
    return JSONResponse({"message": "Chat session deleted successfully"})
