"""
FastAPI application: the ragdesk entry point.

Routes:
  POST /api/chat-stream        live SSE relay of one chat turn
  POST /api/chat               same turn, blocking JSON
  GET  /api/conversations      caller's history, newest first
  GET  /api/conversations/{id} one record (owner only)
  DELETE /api/conversations/{id}
  GET  /api/me                 who the session belongs to
  GET  /auth/login|callback|logout
  GET  /, /chat                the chat page
  GET  /health
"""

import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import (
    FileResponse,
    JSONResponse,
    RedirectResponse,
    Response,
    StreamingResponse,
)
from fastapi.staticfiles import StaticFiles

from ragdesk import __version__
from ragdesk.auth import EntraIdentityProvider, GraphDirectory
from ragdesk.config import get_config
from ragdesk.errors import AppError, ErrorCode
from ragdesk.relay import (
    STREAM_HEADERS,
    STREAM_MEDIA_TYPE,
    ChatTurn,
    StreamRelay,
    validate_chat_payload,
)
from ragdesk.session import MemorySessionStore, SessionManager, TokenGuard
from ragdesk.session.cleanup import run_session_sweeper
from ragdesk.storage import ConversationStore, make_store
from ragdesk.upstream import RetryingChatClient

logger = logging.getLogger(__name__)

WEB_DIR = Path(__file__).parent / "web"
STATE_COOKIE = "oauth_state"

# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
session_store: MemorySessionStore | None = None
session_manager: SessionManager | None = None
token_guard: TokenGuard | None = None
conversation_store: ConversationStore | None = None
chat_client: RetryingChatClient | None = None
stream_relay: StreamRelay | None = None
identity: EntraIdentityProvider | None = None
directory: GraphDirectory | None = None
max_message_length: int = 2000


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            log_file,
            maxBytes=log_cfg.get("max_bytes", 10 * 1024 * 1024),
            backupCount=log_cfg.get("backup_count", 5),
        ))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _make_conversation_store(cfg: dict) -> ConversationStore:
    storage_cfg = cfg.get("storage", {})
    backend = storage_cfg.get("backend", "memory")
    if backend == "sqlite":
        return make_store("sqlite", path=storage_cfg.get("sqlite_path", "./data/ragdesk.db"))
    return make_store(backend)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global session_store, session_manager, token_guard, conversation_store
    global chat_client, stream_relay, identity, directory, max_message_length

    cfg = get_config()
    _setup_logging(cfg)

    sess_cfg = cfg.get("session", {})
    session_store = MemorySessionStore()
    session_manager = SessionManager.from_config(cfg, session_store)
    identity = EntraIdentityProvider.from_config(cfg)
    directory = GraphDirectory.from_config(cfg)
    token_guard = TokenGuard(
        session_store, identity, refresh_buffer=sess_cfg.get("refresh_buffer", 300)
    )

    conversation_store = _make_conversation_store(cfg)
    chat_client = RetryingChatClient.from_config(cfg)
    stream_relay = StreamRelay(chat_client, conversation_store)
    max_message_length = cfg.get("chat", {}).get("max_message_length", 2000)

    sweeper = asyncio.create_task(run_session_sweeper(
        session_store,
        idle_timeout=sess_cfg.get("idle_timeout", 86400),
        interval=sess_cfg.get("sweep_interval", 3600),
    ))

    server_cfg = cfg.get("server", {})
    logger.info(
        "ragdesk %s started, listening on %s:%s, upstream %s",
        __version__,
        server_cfg.get("host", "0.0.0.0"),
        server_cfg.get("port", 8000),
        chat_client.base_url,
    )
    logger.info(
        "Storage: %s, retries: %d, max message length: %d",
        cfg.get("storage", {}).get("backend", "memory"),
        chat_client.max_retries,
        max_message_length,
    )

    yield

    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass
    logger.info("ragdesk shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="ragdesk",
    description="Department-scoped chat over a RAG backend.",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %r", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %r", request.method, request.url.path, exc)
    return JSONResponse(
        {"error": exc.to_dict(), "timestamp": exc.timestamp},
        status_code=exc.status_code,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        {
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "Internal server error",
            },
            "timestamp": time.time(),
        },
        status_code=500,
    )


def _require_session(request: Request):
    resolved = session_manager.resolve_request(request)
    if resolved is None:
        raise AppError(ErrorCode.INVALID_SESSION, "Not signed in", 401)
    return resolved


async def _read_chat_turn(request: Request, session) -> ChatTurn:
    try:
        payload = await request.json()
    except ValueError:
        raise AppError(ErrorCode.VALIDATION_ERROR, "Invalid JSON payload", 400)
    query, conversation_id = validate_chat_payload(payload, max_message_length)
    return ChatTurn(
        query=query,
        user_id=session.user_id,
        user_email=session.user_email,
        department_code=session.department_code,
        conversation_id=conversation_id,
    )


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

@app.post("/api/chat-stream")
async def chat_stream(request: Request):
    """
    Relay one turn as SSE. Everything that can be rejected is rejected here,
    before the response starts; after that, failures arrive as error frames.
    """
    resolved = session_manager.resolve_request(request)
    if resolved is None:
        return Response(status_code=401)
    session_id, session = resolved

    try:
        session = await token_guard.ensure_valid_token(session_id, session)
    except AppError as e:
        if e.code != ErrorCode.TOKEN_EXPIRED:
            raise
        return Response(status_code=401)

    try:
        turn = await _read_chat_turn(request, session)
    except AppError as e:
        return JSONResponse({"error": e.message}, status_code=e.status_code)

    return StreamingResponse(
        stream_relay.relay(turn),
        media_type=STREAM_MEDIA_TYPE,
        headers=STREAM_HEADERS,
    )


@app.post("/api/chat")
async def chat_blocking(request: Request):
    session_id, session = _require_session(request)
    session = await token_guard.ensure_valid_token(session_id, session)

    try:
        turn = await _read_chat_turn(request, session)
    except AppError as e:
        return JSONResponse({"error": e.message}, status_code=e.status_code)

    response = await stream_relay.send(turn)
    return JSONResponse({
        "answer": response.answer,
        "conversationId": response.conversation_id,
        "messageId": response.message_id,
    })


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

def _owned_record(conversation_id: str, user_id: str):
    record = conversation_store.get(conversation_id)
    # Someone else's record looks exactly like a missing one
    if record is None or record.user_id != user_id:
        raise AppError(ErrorCode.NOT_FOUND, "Conversation not found", 404)
    return record


@app.get("/api/conversations")
async def list_conversations(request: Request, limit: int = 20):
    _, session = _require_session(request)
    if not 1 <= limit <= 100:
        raise AppError(ErrorCode.VALIDATION_ERROR, "limit must be between 1 and 100", 400)
    records = conversation_store.list_for_user(session.user_id, limit=limit)
    return JSONResponse({
        "conversations": [r.summary() for r in records],
        "count": len(records),
    })


@app.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, request: Request):
    _, session = _require_session(request)
    record = _owned_record(conversation_id, session.user_id)
    return JSONResponse(record.to_dict())


@app.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, request: Request):
    _, session = _require_session(request)
    _owned_record(conversation_id, session.user_id)
    conversation_store.delete(conversation_id)
    logger.info("Conversation %s deleted by %s", conversation_id, session.user_email)
    return JSONResponse({"deleted": conversation_id, "ok": True})


@app.get("/api/me")
async def me(request: Request):
    _, session = _require_session(request)
    return JSONResponse(session.public_profile())


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------

@app.get("/auth/login")
async def login():
    state = secrets.token_urlsafe(24)
    response = RedirectResponse(identity.authorization_url(state), status_code=302)
    response.set_cookie(
        key=STATE_COOKIE,
        value=state,
        max_age=600,
        path="/auth",
        secure=session_manager.cookie.secure,
        httponly=True,
        samesite="lax",
    )
    return response


@app.get("/auth/callback")
async def auth_callback(request: Request):
    params = request.query_params
    if params.get("error"):
        logger.warning(
            "Sign-in refused by identity provider: %s %s",
            params.get("error"),
            params.get("error_description", ""),
        )
        raise AppError(ErrorCode.INVALID_TOKEN, "Sign-in was not completed", 401)

    code = params.get("code")
    state = params.get("state")
    expected = request.cookies.get(STATE_COOKIE)
    if not code or not state or not expected or not secrets.compare_digest(state, expected):
        raise AppError(ErrorCode.INVALID_TOKEN, "Invalid sign-in state", 400)

    tokens = await identity.exchange_token(code)
    user = await directory.get_user(tokens.access_token)
    departments = await directory.get_departments(tokens.access_token)
    if not departments:
        logger.warning("Sign-in rejected for %s: no department group", user.email)
        raise AppError(
            ErrorCode.DEPARTMENT_NOT_FOUND,
            "Your account is not assigned to a department",
            403,
        )

    primary = departments[0]
    _, signed = session_manager.create(
        user_id=user.id,
        user_email=user.email,
        display_name=user.display_name,
        department_code=primary.code,
        department_name=primary.name,
        department_codes=[d.code for d in departments],
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_expires_at=time.time() + tokens.expires_in,
    )
    logger.info("Sign-in: %s (department %s)", user.email, primary.code)

    response = RedirectResponse("/chat", status_code=302)
    session_manager.set_cookie(response, signed)
    response.delete_cookie(STATE_COOKIE, path="/auth")
    return response


@app.get("/auth/logout")
async def logout(request: Request):
    signed = request.cookies.get(session_manager.cookie.name)
    if session_manager.destroy(signed):
        logger.info("Session ended by logout")
    response = RedirectResponse(identity.logout_url(), status_code=302)
    session_manager.clear_cookie(response)
    return response


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------

@app.get("/")
@app.get("/chat")
async def chat_page(request: Request):
    if session_manager.resolve_request(request) is None:
        return RedirectResponse("/auth/login", status_code=302)
    return FileResponse(WEB_DIR / "index.html")


@app.get("/health")
async def health():
    return JSONResponse({"status": "ok", "version": __version__})


app.mount("/web", StaticFiles(directory=WEB_DIR), name="web")


# ---------------------------------------------------------------------------
# Run with: python -m ragdesk.main
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    cfg = get_config()
    uvicorn.run(
        "ragdesk.main:app",
        host=cfg.get("server", {}).get("host", "0.0.0.0"),
        port=cfg.get("server", {}).get("port", 8000),
        reload=False,
    )
