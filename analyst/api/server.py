"""
HTTP surface for the analytics chat.

Sessions are created explicitly and addressed by id; each message is answered
as a Server-Sent Events stream of projection events.
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ValidationError

from analyst.chat.errors import ChatError, LLMConfigError, SessionBusyError
from analyst.chat.runtime_streaming import ChatSession, SessionStore, stream_message
from analyst.chat.tools import build_default_registry
from analyst.config import load_analytics_config, load_chat_config
from analyst.llm.client import _provider, mock_enabled
from analyst.llm.client_streaming import create_stream_backend

logger = logging.getLogger(__name__)

app = FastAPI(title="Analytics chat")

_store: Optional[SessionStore] = None
_config_error: Optional[LLMConfigError] = None

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


class ChatSendRequest(BaseModel):
    message: str


def set_session_store(store: Optional[SessionStore]) -> None:
    """Install a prebuilt store (or clear it so the next request rebuilds from env)."""
    global _store, _config_error
    _store = store
    _config_error = None


def get_session_store() -> SessionStore:
    global _store, _config_error
    if _store is not None:
        return _store
    if _config_error is not None:
        raise HTTPException(status_code=503, detail=_config_error.to_dict())

    config = load_chat_config()
    registry = build_default_registry()
    try:
        backend = create_stream_backend(registry, config)
    except LLMConfigError as e:
        # Reported once; every later request gets the cached error.
        _config_error = e
        logger.error(f"Chat is unavailable: {e.error_code}")
        raise HTTPException(status_code=503, detail=e.to_dict())

    _store = SessionStore(backend=backend, registry=registry, config=config)
    return _store


def _get_session(session_id: str) -> ChatSession:
    try:
        return get_session_store().get(session_id)
    except ChatError as e:
        raise HTTPException(status_code=404, detail=e.to_dict())


def _session_view(session: ChatSession) -> Dict[str, Any]:
    return {
        "session_id": session.handle,
        "state": session.state,
        "busy": session.busy,
        "messages": [m.model_dump(mode="json") for m in session.messages],
    }


def _format_sse_event(event_type: str, data: Dict[str, Any]) -> str:
    """Format data as Server-Sent Event."""
    return f"event: {event_type}\ndata: {json.dumps(data, default=str)}\n\n"


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    logger.debug(
        "%s %s -> %d (%.0fms)",
        request.method,
        request.url.path,
        response.status_code,
        (time.time() - start_time) * 1000,
    )
    return response


@app.get("/healthz")
async def healthz() -> Dict[str, Any]:
    return {"ok": True}


@app.get("/api/v1/chat/config")
async def chat_config() -> Dict[str, Any]:
    cfg = load_chat_config()
    analytics = load_analytics_config()
    return {
        "provider": "mock" if mock_enabled() else _provider(),
        "ready": _config_error is None,
        "config_error": _config_error.to_dict() if _config_error is not None else None,
        "max_turns": cfg.max_turns,
        "tool_timeout_seconds": cfg.tool_timeout_seconds,
        "stream_idle_timeout_seconds": cfg.stream_idle_timeout_seconds,
        "analytics_fallback": analytics.fallback,
    }


@app.post("/api/v1/chat/sessions")
async def chat_session_create() -> Dict[str, Any]:
    session = get_session_store().create()
    logger.info(f"Created conversation {session.handle}")
    return {"session_id": session.handle}


@app.get("/api/v1/chat/sessions/{session_id}")
async def chat_session_get(session_id: str) -> Dict[str, Any]:
    return _session_view(_get_session(session_id))


@app.delete("/api/v1/chat/sessions/{session_id}")
async def chat_session_delete(session_id: str) -> Dict[str, Any]:
    if not get_session_store().delete(session_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"ok": True}


@app.post("/api/v1/chat/sessions/{session_id}/reset")
async def chat_session_reset(session_id: str) -> Dict[str, Any]:
    session = _get_session(session_id)
    try:
        session.reset()
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=e.to_dict())
    return _session_view(session)


@app.post("/api/v1/chat/sessions/{session_id}/cancel")
async def chat_session_cancel(session_id: str) -> Dict[str, Any]:
    return {"cancelled": _get_session(session_id).cancel()}


async def _send_stream(session: ChatSession, message: str) -> AsyncGenerator[str, None]:
    try:
        async for event in stream_message(session, message):
            data: Dict[str, Any] = {"content": event.content}
            if event.tool:
                data["tool"] = event.tool
            if event.metadata:
                data["metadata"] = event.metadata
            yield _format_sse_event(event.event_type, data)
    except Exception as e:
        logger.exception("Stream error")
        yield _format_sse_event("error", {"content": str(e)})


@app.post("/api/v1/chat/sessions/{session_id}/send")
async def chat_session_send(session_id: str, req: Dict[str, Any]) -> StreamingResponse:
    """Streaming chat endpoint using Server-Sent Events."""
    session = _get_session(session_id)
    try:
        sreq = ChatSendRequest.model_validate(req)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid chat request")

    message = sreq.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is empty")
    # Best-effort check; a concurrent send that slips past it is reported
    # in-stream as an `error` event with error_code session_busy.
    if session.busy:
        raise HTTPException(status_code=409, detail=SessionBusyError(session.handle).to_dict())

    return StreamingResponse(_send_stream(session, message), media_type="text/event-stream", headers=SSE_HEADERS)


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    logger.info("Starting chat server on %s:%d (log_level=%s)", host, port, log_level)
    uvicorn.run(app, host=host, port=port, log_level=uvicorn_log_level)
