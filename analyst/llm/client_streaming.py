"""
Streaming model backends.

A backend turns one request (user text or a batch of tool results) into a lazy
sequence of stream events, and keeps the per-conversation message history so
the orchestrator never resends earlier turns.

Key behaviors:
- Text chunks are emitted as soon as they arrive, each with a running index
- Tool calls are emitted once the stream has ended and the calls are complete
- Provider exceptions surface as ModelStreamError with a stable error code
- History is committed per user message; a failed message is rolled back

Usage:
    backend = create_stream_backend(registry, load_chat_config())
    async for event in backend.open(handle, UserMessage(text="hi")):
        ...
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Set

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from analyst.chat.errors import ChatError, ModelStreamError
from analyst.chat.registry import ToolHandlerRegistry
from analyst.chat.types import (
    ModelRequest,
    ResponseBatch,
    StreamEvent,
    TextDelta,
    ToolCallRequested,
    ToolInvocation,
    UserMessage,
    new_call_id,
)
from analyst.config import ChatConfig
from analyst.llm.client import _classify_error, get_chat_model, is_retryable_error_code, mock_enabled

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an analytics assistant for a product and data team.
You answer questions about the product's Google Analytics 4 property by querying it with tools.

Tools:
- get_analytics_data: query one GA4 metric grouped by one dimension over the last N days.
- render_chart: show a chart to the user.

How to work:
- When the user asks about metrics, query the data first with get_analytics_data.
- Once you have data, visualize it with render_chart unless the user asked not to.
- After the chart, summarize the key insights in a few sentences.
- If no dimension is given, pick the most useful one (date for trends, deviceCategory or sessionSource for breakdowns).
- For trends, look back 14 or 30 days unless the user specifies a range.
- Use standard GA4 API names: activeUsers, totalUsers, sessions, screenPageViews, itemRevenue, conversions, bounceRate;
  date, deviceCategory, sessionSource, sessionMedium, pagePath, itemName, defaultChannelGroup.
- If a tool returns an error, say so plainly. Never invent numbers.
- If a result is marked "source": "simulated", tell the user the figures are placeholders, not live data.
"""

MOCK_REPLY = "LLM_MOCK enabled: no model was called."


class ModelStreamBackend(Protocol):
    def open(self, handle: str, message: ModelRequest) -> AsyncIterator[StreamEvent]: ...

    def commit(self, handle: str) -> None: ...

    def abandon(self, handle: str) -> None: ...

    def forget(self, handle: str) -> None: ...


def _chunk_text(chunk: Any) -> str:
    content = getattr(chunk, "content", None)
    if isinstance(content, str):
        return content
    text = ""
    if isinstance(content, list):
        # Anthropic returns a list of content blocks
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                text += str(block.get("text") or "")
            elif isinstance(block, str):
                text += block
    return text


def _unparseable_call_ids(gathered: Any) -> Set[str]:
    """
    Ids of streamed tool calls whose argument text is not a JSON object.

    Depending on the langchain-core version such calls land in
    `invalid_tool_calls` or in `tool_calls` with empty args; check the raw
    chunks so both behave the same.
    """
    bad: Set[str] = set()
    for chunk in getattr(gathered, "tool_call_chunks", None) or []:
        call_id, raw = chunk.get("id"), chunk.get("args")
        if not call_id or not isinstance(raw, str) or not raw.strip():
            continue
        try:
            parsed = json.loads(raw)
        except ValueError:
            bad.add(str(call_id))
            continue
        if not isinstance(parsed, dict):
            bad.add(str(call_id))
    return bad


def _to_langchain_messages(message: ModelRequest) -> List[BaseMessage]:
    if isinstance(message, UserMessage):
        return [HumanMessage(content=message.text)]
    if isinstance(message, ResponseBatch):
        return [
            ToolMessage(
                content=json.dumps({"result": r.result}, ensure_ascii=False, default=str),
                tool_call_id=r.invocation_id,
                name=r.name,
            )
            for r in message.responses
        ]
    raise TypeError(f"unsupported model request: {type(message).__name__}")


class LangChainStreamBackend:
    """Streams a tool-bound LangChain chat model (ChatVertexAI, ChatAnthropic, ...)."""

    def __init__(
        self,
        llm: Any,
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        system_prompt: str = SYSTEM_PROMPT,
        model_name: str = "",
    ) -> None:
        self._llm = llm.bind_tools(tools) if tools else llm
        self._system_prompt = system_prompt
        self._model_name = model_name or str(getattr(llm, "model", "") or "unknown")
        self._history: Dict[str, List[BaseMessage]] = {}
        self._committed: Dict[str, int] = {}

    def history(self, handle: str) -> List[BaseMessage]:
        if handle not in self._history:
            self._history[handle] = [SystemMessage(content=self._system_prompt)]
            self._committed[handle] = 1
        return self._history[handle]

    def commit(self, handle: str) -> None:
        self._committed[handle] = len(self.history(handle))

    def abandon(self, handle: str) -> None:
        history = self.history(handle)
        keep = self._committed.get(handle, 1)
        if len(history) > keep:
            logger.info(f"Rolling back {len(history) - keep} uncommitted message(s) for conversation {handle}")
            del history[keep:]

    def forget(self, handle: str) -> None:
        self._history.pop(handle, None)
        self._committed.pop(handle, None)

    async def open(self, handle: str, message: ModelRequest) -> AsyncIterator[StreamEvent]:
        history = self.history(handle)
        history.extend(_to_langchain_messages(message))

        gathered: Any = None
        index = 0
        try:
            async for chunk in self._llm.astream(list(history)):
                gathered = chunk if gathered is None else gathered + chunk
                text = _chunk_text(chunk)
                if not text:
                    continue
                yield TextDelta(text=text, index=index)
                index += 1
        except ChatError:
            raise
        except Exception as e:
            code = _classify_error(e, model=self._model_name)
            logger.error(f"Model stream failed for conversation {handle}: {code} ({type(e).__name__})")
            raise ModelStreamError(
                code, f"Model stream failed: {code}", is_retryable=is_retryable_error_code(code)
            ) from e

        unparseable = _unparseable_call_ids(gathered)
        tool_calls: List[Dict[str, Any]] = []
        for tc in getattr(gathered, "tool_calls", None) or []:
            if tc.get("id") and str(tc["id"]) in unparseable:
                logger.warning(f"Dropping tool call with unparseable arguments: {tc.get('name')} (id={tc['id']})")
                continue
            tool_calls.append(
                {
                    "name": str(tc.get("name") or ""),
                    "args": tc.get("args") if isinstance(tc.get("args"), dict) else {},
                    "id": str(tc.get("id") or "").strip() or new_call_id(),
                    "type": "tool_call",
                }
            )
        for bad in getattr(gathered, "invalid_tool_calls", None) or []:
            logger.warning(f"Dropping malformed tool call from model: {bad.get('name')} ({bad.get('error')})")

        content = gathered.content if gathered is not None else ""
        history.append(AIMessage(content=content, tool_calls=tool_calls))

        for tc in tool_calls:
            yield ToolCallRequested(invocation=ToolInvocation(id=tc["id"], name=tc["name"], arguments=tc["args"]))


class MockStreamBackend:
    """Offline backend for LLM_MOCK=1: replies with a fixed sentence and never calls tools."""

    def __init__(self, reply: str = MOCK_REPLY) -> None:
        self._reply = reply

    async def open(self, handle: str, message: ModelRequest) -> AsyncIterator[StreamEvent]:
        yield TextDelta(text=self._reply, index=0)

    def commit(self, handle: str) -> None:
        return None

    def abandon(self, handle: str) -> None:
        return None

    def forget(self, handle: str) -> None:
        return None


def create_stream_backend(registry: ToolHandlerRegistry, config: ChatConfig) -> ModelStreamBackend:
    """
    Build the backend for the configured provider.

    Raises LLMConfigError when the provider is not usable.
    """
    if mock_enabled():
        logger.info("LLM_MOCK enabled: using mock stream backend")
        return MockStreamBackend()

    llm, cfg = get_chat_model()
    logger.info(f"Using model {cfg.model} with tools {registry.names()}")
    return LangChainStreamBackend(
        llm,
        tools=registry.definitions(),
        system_prompt=config.system_prompt or SYSTEM_PROMPT,
        model_name=cfg.model,
    )
