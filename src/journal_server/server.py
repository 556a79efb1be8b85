"""FastAPI application exposing per-room journaling chat."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from .chat import DEFAULT_ROOM, SYSTEM_PROMPT, ChatService
from .config import load_config
from .errors import JournalServerError
from .llm import DEFAULT_REPLY, InferenceClient, create_from_config
from .rooms import RoomRegistry, TranscriptEntry
from .storage import TranscriptStore, create_store

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).resolve().parent / "static"
INDEX_FILE = STATIC_DIR / "index.html"

CORS_METHODS = ["GET", "POST", "OPTIONS"]
CORS_HEADERS = ["Content-Type"]


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    room_id: Optional[str] = Field(default=None, alias="roomId", description="Conversation room key.")
    user: Optional[str] = Field(default=None, description="Display name; logged, not stored.")
    message: Optional[str] = None

    @field_validator("room_id", "user", "message", mode="before")
    @classmethod
    def _coerce_str(cls, v: Any) -> Any:
        return v if v is None else str(v)


class EntryOut(BaseModel):
    role: str
    content: str
    timestamp: int

    @classmethod
    def from_entry(cls, entry: TranscriptEntry) -> "EntryOut":
        return cls(**entry.to_dict())


class ChatResponse(BaseModel):
    reply: str
    messages: List[EntryOut]


class HistoryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(serialization_alias="roomId")
    messages: List[EntryOut]


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    inference: Optional[InferenceClient] = None,
    store: Optional[TranscriptStore] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    chat_cfg: Dict[str, Any] = cfg.get("chat", {}) or {}
    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])
    allowed_origins = [str(o) for o in (cors_origins or ["*"])]

    owns_inference = inference is None
    inference = inference or create_from_config(cfg)
    registry = RoomRegistry(store or create_store(cfg))
    service = ChatService(
        registry,
        inference,
        system_prompt=str(chat_cfg.get("system_prompt") or SYSTEM_PROMPT).strip(),
        default_room=str(chat_cfg.get("default_room") or DEFAULT_ROOM),
        fallback_reply=str(chat_cfg.get("fallback_reply") or DEFAULT_REPLY),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_inference:
            await inference.aclose()

    app = FastAPI(title="Journal Room Server", version="0.1.0", lifespan=lifespan)
    app.state.service = service

    @app.middleware("http")
    async def bare_options(request: Request, call_next):
        # Real browser preflights carry Origin headers and are answered by
        # CORSMiddleware (outermost); any other OPTIONS gets an empty 204.
        if request.method == "OPTIONS":
            headers = {
                "Access-Control-Allow-Methods": ",".join(CORS_METHODS),
                "Access-Control-Allow-Headers": ",".join(CORS_HEADERS),
            }
            origin = request.headers.get("origin")
            if "*" in allowed_origins:
                headers["Access-Control-Allow-Origin"] = "*"
            elif origin in allowed_origins:
                headers["Access-Control-Allow-Origin"] = origin
                headers["Vary"] = "Origin"
            return Response(status_code=204, headers=headers)
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_methods=CORS_METHODS,
        allow_headers=CORS_HEADERS,
    )

    @app.exception_handler(JournalServerError)
    async def _journal_error(request: Request, exc: JournalServerError) -> JSONResponse:
        logger.info("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc.message)
        return _error(exc.status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(500, "Internal server error.")

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        return {"ok": True}

    @app.post("/api/chat", response_model=ChatResponse)
    async def chat(request: Request) -> ChatResponse:
        try:
            raw = await request.json()
        except ValueError:
            raw = {}
        req = ChatRequest.model_validate(raw if isinstance(raw, dict) else {})

        result = await service.turn(req.room_id, req.message, user=req.user)
        return ChatResponse(
            reply=result.reply,
            messages=[EntryOut.from_entry(e) for e in result.messages],
        )

    @app.get("/api/rooms/{room_id}/messages")
    async def room_messages(room_id: str) -> JSONResponse:
        entries = await service.history(room_id)
        body = HistoryResponse(room_id=room_id, messages=[EntryOut.from_entry(e) for e in entries])
        return JSONResponse(body.model_dump(by_alias=True))

    @app.get("/", include_in_schema=False)
    @app.get("/index.html", include_in_schema=False)
    async def index() -> FileResponse:
        return FileResponse(str(INDEX_FILE), media_type="text/html; charset=utf-8")

    return app
