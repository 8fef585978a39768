from __future__ import annotations
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Literal, Optional
import logging

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field
from sse_starlette.sse import EventSourceResponse

from .config import Settings
from .core import ApplicationCore
from .errors import ChatError
from .events import to_sse
from .identity import Identity
from .messages import ChatMessage
from .retrieval import RetrievalService
from .storage import Storage

log = logging.getLogger(__name__)


# ---------- Models ----------
class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    messages: List[ChatMessage]
    model_id: str = Field(alias="modelId")


class VoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(alias="chatId")
    message_id: str = Field(alias="messageId")
    type: Literal["up", "down"]


class VisibilityRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(alias="chatId")
    visibility: Literal["public", "private"]


class DocumentSaveRequest(BaseModel):
    title: str
    kind: Literal["text", "code", "image"]
    content: str = ""


class DocumentTruncateRequest(BaseModel):
    timestamp: datetime


def create_app(
    _settings: Settings,
    storage: Storage,
    core: ApplicationCore,
    retrieval: Optional[RetrievalService],
) -> FastAPI:
    """
    Baut die FastAPI-App. Abhängigkeiten werden übergeben, damit main.py die
    echten Dienste und die Tests Fakes verdrahten können.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await storage.init()
        await core.llm.startup()
        yield
        # Shutdown: laufende Turns zu Ende bringen, dann Ressourcen schließen
        await core.drain()
        await core.llm.shutdown()
        await core.http.aclose()
        await storage.close()

    app = FastAPI(title="RINCK Coaching Chat", version="0.3.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    # ---------- Identität ----------
    def current_identity(request: Request) -> Identity:
        user_id = request.headers.get("x-user-id")
        if user_id:
            return Identity(user_id=user_id, authenticated=True)
        return Identity(user_id=_settings.DEFAULT_USER_ID)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        log.exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    # ---------- Endpoints ----------
    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/chat")
    async def chat(payload: ChatRequest, request: Request, identity: Identity = Depends(current_identity)):
        """
        POST /chat
        Body:
          {"id": "...", "messages": [{"role": "user", "content": "What is RINCK?"}], "modelId": "gpt-4o-mini"}
        Server-Sent Events (data = JSON des Events):
          - event: text         Assistant-Text
          - event: data         id/title/kind/clear/*-delta/suggestion/finish
          - event: tool_call / tool_result / step_finish
          - event: annotation   {"messageIdFromServer": "..."}
          - event: error, done
        """
        try:
            turn = await core.prepare_turn(payload.id, payload.messages, payload.model_id, identity)
        except ChatError as e:
            return PlainTextResponse(str(e), status_code=e.status_code)

        async def gen():
            async for evt in core.stream_turn(turn):
                if await request.is_disconnected():
                    break
                yield to_sse(evt)

        return EventSourceResponse(
            gen(),
            ping=_settings.PING_INTERVAL_SECONDS,
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.delete("/chat")
    async def delete_chat(id: Optional[str] = None, identity: Identity = Depends(current_identity)):
        if not id:
            return PlainTextResponse("Not Found", status_code=404)
        if not identity.authenticated:
            return PlainTextResponse("Unauthorized", status_code=401)

        try:
            conversation = await storage.get_conversation(id)
            if conversation is None:
                return PlainTextResponse("Not Found", status_code=404)
            if conversation.user_id != identity.user_id:
                return PlainTextResponse("Unauthorized", status_code=401)
            await storage.delete_conversation(id)
            return PlainTextResponse("Chat deleted", status_code=200)
        except Exception:
            log.exception("Failed to delete chat %s", id)
            return PlainTextResponse("An error occurred while processing your request", status_code=500)

    @app.patch("/chat/visibility")
    async def chat_visibility(payload: VisibilityRequest, identity: Identity = Depends(current_identity)):
        conversation = await storage.get_conversation(payload.chat_id)
        if conversation is None:
            return PlainTextResponse("Not Found", status_code=404)
        if not identity.authenticated or conversation.user_id != identity.user_id:
            return PlainTextResponse("Unauthorized", status_code=401)
        await storage.update_conversation_visibility(payload.chat_id, payload.visibility)
        return PlainTextResponse("Visibility updated", status_code=200)

    @app.get("/history")
    async def history(identity: Identity = Depends(current_identity)):
        return await storage.get_conversations_by_user(identity.user_id)

    @app.delete("/messages/trailing")
    async def delete_trailing_messages(id: Optional[str] = None, identity: Identity = Depends(current_identity)):
        """Löscht eine Nachricht und alle späteren derselben Conversation."""
        if not id:
            return PlainTextResponse("Not Found", status_code=404)
        message = await storage.get_message_by_id(id)
        if message is None:
            return PlainTextResponse("Not Found", status_code=404)
        conversation = await storage.get_conversation(message.conversation_id)
        if not identity.authenticated or conversation is None or conversation.user_id != identity.user_id:
            return PlainTextResponse("Unauthorized", status_code=401)
        await storage.delete_messages_after(message.conversation_id, message.created_at)
        return PlainTextResponse("Messages deleted", status_code=200)

    @app.post("/retrieve")
    async def retrieve(request: Request):
        """
        POST /retrieve  {"query": "...", "k"?: 5}
        Antwort immer 200: {"results": [...], "message"?: "..."}
        """
        try:
            body = await request.json()
            query = (body or {}).get("query") if isinstance(body, dict) else None
            if not query or not isinstance(query, str):
                return {"results": [], "message": 'Please include a "query" field in your JSON body.'}
            if retrieval is None:
                return {"results": [], "message": "Retrieval is not configured"}
            k = body.get("k")
            if not isinstance(k, int) or isinstance(k, bool) or k < 1:
                k = _settings.TOP_K
            passages = await run_in_threadpool(retrieval.search, query, k)
            return {"results": [p.model_dump() for p in passages]}
        except Exception as e:
            log.error("[retrieve] %s", e)
            return {"results": [], "message": str(e) or "Something went wrong"}

    @app.get("/vote")
    async def get_votes(chatId: Optional[str] = None):
        if not chatId:
            return PlainTextResponse("chatId is required", status_code=400)
        return await storage.get_votes_by_conversation(chatId)

    @app.patch("/vote")
    async def vote(payload: VoteRequest):
        if await storage.get_conversation(payload.chat_id) is None:
            return PlainTextResponse("Chat not found", status_code=404)
        await storage.vote_message(payload.chat_id, payload.message_id, up=payload.type == "up")
        return PlainTextResponse("Message voted", status_code=200)

    @app.get("/document")
    async def get_document(id: Optional[str] = None):
        if not id:
            return PlainTextResponse("Missing id", status_code=400)
        documents = await storage.get_documents_by_id(id)
        if not documents:
            return PlainTextResponse("Not Found", status_code=404)
        return documents

    @app.post("/document")
    async def save_document(
        payload: DocumentSaveRequest,
        id: Optional[str] = None,
        identity: Identity = Depends(current_identity),
    ):
        if not id:
            return PlainTextResponse("Missing id", status_code=400)
        current = await storage.get_document_by_id(id)
        if current is not None and current.user_id != identity.user_id:
            return PlainTextResponse("Unauthorized", status_code=401)
        return await storage.save_document(
            id=id, title=payload.title, kind=payload.kind, content=payload.content, user_id=identity.user_id,
        )

    @app.patch("/document")
    async def truncate_document(
        payload: DocumentTruncateRequest,
        id: Optional[str] = None,
        identity: Identity = Depends(current_identity),
    ):
        """Verwirft alle Versionen nach timestamp (inkl. daran gebundener Suggestions)."""
        if not id:
            return PlainTextResponse("Missing id", status_code=400)
        if not identity.authenticated:
            return PlainTextResponse("Unauthorized", status_code=401)
        current = await storage.get_document_by_id(id)
        if current is None:
            return PlainTextResponse("Not Found", status_code=404)
        if current.user_id != identity.user_id:
            return PlainTextResponse("Unauthorized", status_code=401)
        timestamp = payload.timestamp
        if timestamp.tzinfo is None:
            # ohne Offset gilt UTC
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        await storage.delete_documents_after(id, timestamp)
        return PlainTextResponse("Deleted", status_code=200)

    @app.get("/suggestions")
    async def suggestions(documentId: Optional[str] = None):
        if not documentId:
            return PlainTextResponse("Not Found", status_code=404)
        return await storage.get_suggestions_by_document(documentId)

    return app
