from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .agent_pipeline import SupportAgent
from .config import Settings
from .corpus import CorpusSnapshot
from .errors import CorpusUnavailableError, InvalidRequestError
from .memory import MemoryManager, resolve_session_id, resolve_user_id
from .models import AskRequest, AskResponse, ResetRequest, ResetResponse, SessionTurn, SessionView

logger = logging.getLogger("duki.app")

PREVIEW_TURNS = 5
PREVIEW_CHARS = 200
SESSION_HEADERS_ALLOWED = ["Content-Type", "X-Session-ID", "X-SessionID", "X-Client-Session", "X-User-ID"]


def _request_session_id(request: Request, body_session_id: Optional[str] = None) -> str:
    client_host = request.client.host if request.client else ""
    return resolve_session_id(
        body_session_id,
        request.headers,
        request.cookies,
        client_host=client_host,
        user_agent=request.headers.get("user-agent", ""),
    )


def create_app(
    settings: Settings,
    agent: SupportAgent,
    memory: MemoryManager,
    corpus: Callable[[], CorpusSnapshot],
) -> FastAPI:
    """Purpose: Build the FastAPI application around an already-wired agent.
    Inputs/Outputs: Inputs are Settings, the agent, the memory manager, and a corpus
        accessor; output is a FastAPI app.
    Side Effects / State: Registers routes, CORS middleware, and exception handlers.
    Dependencies: Uses SupportAgent.handle_message and MemoryManager.
    Failure Modes: Handler exceptions are mapped to 400/503/500 JSON bodies.
    If Removed: The assistant cannot be reached over HTTP.
    Testing Notes: Drive it with fastapi.testclient.TestClient and fake collaborators.
    """
    started_at = time.time()
    app = FastAPI(title=f"{settings.bot_name} Product Assistant")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=SESSION_HEADERS_ALLOWED,
    )

    @app.exception_handler(InvalidRequestError)
    def handle_invalid_request(request: Request, exc: InvalidRequestError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(CorpusUnavailableError)
    def handle_corpus_unavailable(request: Request, exc: CorpusUnavailableError) -> JSONResponse:
        logger.error("route=%s knowledge base unavailable: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"error": "knowledge_base_unavailable"})

    @app.exception_handler(Exception)
    def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        # The message is logged, never echoed: SDK errors can carry keys or tokens.
        logger.exception("route=%s unhandled error type=%s", request.url.path, type(exc).__name__)
        return JSONResponse(status_code=500, content={"error": "server_error", "type": type(exc).__name__})

    @app.post("/api/ask", response_model=AskResponse)
    def ask(payload: AskRequest, request: Request) -> AskResponse:
        """Purpose: Answer one chat message through the agent pipeline.
        Inputs/Outputs: Input is AskRequest; output is AskResponse with citations.
        Side Effects / State: Appends the exchange to session history; commands may
            change stored user facts.
        Dependencies: Uses resolve_session_id/resolve_user_id and SupportAgent.
        Failure Modes: Blank message on a non-first turn -> 400; no corpus -> 503.
        If Removed: Core chat functionality is unavailable.
        Testing Notes: Post {"message": "hi", "isFirstTurn": true} and check the reply.
        """
        session_id = _request_session_id(request, payload.session_id)
        user_id = resolve_user_id(payload.user_id, request.headers, session_id)
        context = agent.handle_message(
            session_id,
            user_id,
            payload.text(),
            is_first_turn=payload.is_first_turn,
            page_hints=payload.page_hints,
        )
        return AskResponse(
            answer=context.answer_text,
            mode=context.mode.value,
            bot=settings.bot_name,
            intent=context.intent,
            citations=context.citations,
            session_id=session_id,
        )

    @app.get("/api/health")
    def health() -> dict:
        # Diagnostics only report presence flags; no secrets.
        try:
            corpus_entries = len(corpus().entries)
        except CorpusUnavailableError:
            corpus_entries = 0
        return {
            "ok": True,
            "service": "duki",
            "bot": settings.bot_name,
            "ts": int(time.time() * 1000),
            "uptime": round(time.time() - started_at, 3),
            "diagnostics": {
                "google_api_key_present": bool(settings.google_api_key),
                "redis_configured": bool(settings.redis_url),
                "corpus_entries": corpus_entries,
                "embedding_model": settings.embedding_model,
                "generation_model": settings.generation_model,
            },
        }

    @app.post("/api/reset", response_model=ResetResponse)
    def reset(request: Request, payload: Optional[ResetRequest] = None) -> ResetResponse:
        session_id = _request_session_id(request, payload.session_id if payload else None)
        memory.clear_session(session_id)
        logger.info("session=%s route=reset cleared", session_id)
        return ResetResponse(bot=settings.bot_name, session_id=session_id, message="Session cleared successfully")

    @app.get("/api/session", response_model=SessionView)
    def session(request: Request) -> SessionView:
        """Purpose: Show what the server remembers for the caller's session.
        Inputs/Outputs: No body; output is SessionView with a truncated preview.
        Side Effects / State: None; read-only.
        Dependencies: Uses MemoryManager.all_turns.
        Failure Modes: Unknown sessions return an empty history.
        If Removed: Support staff cannot inspect a conversation.
        Testing Notes: Preview holds at most 5 turns of at most 200 characters.
        """
        session_id = _request_session_id(request)
        turns = memory.all_turns(session_id)
        preview = [
            SessionTurn(timestamp=turn.timestamp, role=turn.role, text=turn.text[:PREVIEW_CHARS])
            for turn in turns[-PREVIEW_TURNS:]
        ]
        return SessionView(
            bot=settings.bot_name,
            session_id=session_id,
            history_length=len(turns),
            messages=turns,
            preview=preview,
        )

    return app
