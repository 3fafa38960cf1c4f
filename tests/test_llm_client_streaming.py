"""
Unit tests for the streaming model backends.

A fake chat model streams real langchain_core message chunks, so text
accumulation and tool-call parsing go through LangChain's own merging.
"""

from __future__ import annotations

import json
from typing import Any, List

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage, ToolMessage


def _tool_chunk(name: str, args: Any, id=None, index: int = 0) -> AIMessageChunk:
    return AIMessageChunk(
        content="",
        tool_call_chunks=[
            {
                "name": name,
                "args": json.dumps(args) if not isinstance(args, str) else args,
                "id": id,
                "index": index,
                "type": "tool_call_chunk",
            }
        ],
    )


class _FakeChatModel:
    def __init__(self, turns: List[List[Any]]) -> None:
        self.turns = list(turns)
        self.bound_tools: Any = None
        self.calls: List[List[Any]] = []
        self.model = "fake-model"

    def bind_tools(self, tools):
        self.bound_tools = tools
        return self

    async def astream(self, messages):
        self.calls.append(list(messages))
        for chunk in self.turns.pop(0):
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk


async def _drain(agen) -> List[Any]:
    return [e async for e in agen]


def _backend(llm, **kwargs):
    from analyst.llm.client_streaming import LangChainStreamBackend

    return LangChainStreamBackend(llm, **kwargs)


@pytest.mark.asyncio
async def test_text_chunks_are_streamed_with_index() -> None:
    from analyst.chat.types import TextDelta, UserMessage

    llm = _FakeChatModel([[AIMessageChunk(content="Hel"), AIMessageChunk(content=""), AIMessageChunk(content="lo")]])
    backend = _backend(llm)

    events = await _drain(backend.open("h", UserMessage(text="hi")))

    assert events == [TextDelta(text="Hel", index=0), TextDelta(text="lo", index=1)]
    history = backend.history("h")
    assert [type(m) for m in history] == [SystemMessage, HumanMessage, AIMessage]
    assert history[-1].content == "Hello"
    assert history[-1].tool_calls == []


@pytest.mark.asyncio
async def test_tool_calls_emitted_after_text() -> None:
    from analyst.chat.types import TextDelta, ToolCallRequested, UserMessage

    llm = _FakeChatModel(
        [
            [
                AIMessageChunk(content="Checking."),
                _tool_chunk("get_analytics_data", {"metric": "activeUsers", "dimension": "date"}, id="call_1"),
            ]
        ]
    )
    backend = _backend(llm)

    events = await _drain(backend.open("h", UserMessage(text="users?")))

    assert isinstance(events[0], TextDelta)
    assert isinstance(events[1], ToolCallRequested)
    inv = events[1].invocation
    assert inv.id == "call_1"
    assert inv.name == "get_analytics_data"
    assert inv.arguments == {"metric": "activeUsers", "dimension": "date"}
    assert backend.history("h")[-1].tool_calls[0]["id"] == "call_1"


@pytest.mark.asyncio
async def test_missing_tool_call_id_is_synthesized() -> None:
    from analyst.chat.types import UserMessage

    llm = _FakeChatModel([[_tool_chunk("render_chart", {"type": "bar"}, id=None)]])
    backend = _backend(llm)

    events = await _drain(backend.open("h", UserMessage(text="chart")))

    inv = events[0].invocation
    assert inv.id.startswith("call-")
    # History must carry the same id so the tool result can be matched.
    assert backend.history("h")[-1].tool_calls[0]["id"] == inv.id


@pytest.mark.asyncio
async def test_malformed_tool_call_is_dropped() -> None:
    from analyst.chat.types import UserMessage

    llm = _FakeChatModel([[_tool_chunk("get_analytics_data", "{not json", id="call_1")]])
    backend = _backend(llm)

    events = await _drain(backend.open("h", UserMessage(text="x")))

    assert events == []
    assert backend.history("h")[-1].tool_calls == []


@pytest.mark.asyncio
async def test_malformed_tool_call_does_not_drop_siblings() -> None:
    from analyst.chat.types import UserMessage

    chunk = _tool_chunk("get_analytics_data", "{not json", id="call_1", index=0) + _tool_chunk(
        "render_chart", {"type": "bar"}, id="call_2", index=1
    )
    llm = _FakeChatModel([[chunk]])
    backend = _backend(llm)

    events = await _drain(backend.open("h", UserMessage(text="x")))

    assert [e.invocation.id for e in events] == ["call_2"]
    assert events[0].invocation.arguments == {"type": "bar"}
    assert [tc["id"] for tc in backend.history("h")[-1].tool_calls] == ["call_2"]


@pytest.mark.asyncio
async def test_response_batch_becomes_tool_messages() -> None:
    from analyst.chat.types import ResponseBatch, ToolInvocation, UserMessage

    llm = _FakeChatModel(
        [
            [_tool_chunk("get_analytics_data", {"metric": "sessions", "dimension": "date"}, id="call_1")],
            [AIMessageChunk(content="Sessions are up.")],
        ]
    )
    backend = _backend(llm)

    first = await _drain(backend.open("h", UserMessage(text="sessions?")))
    inv: ToolInvocation = first[0].invocation
    inv.result = {"rows": [{"date": "20250101", "sessions": 5}]}
    await _drain(backend.open("h", ResponseBatch.from_invocations([inv])))

    sent = llm.calls[1]
    assert [type(m) for m in sent] == [SystemMessage, HumanMessage, AIMessage, ToolMessage]
    tool_msg = sent[-1]
    assert tool_msg.tool_call_id == "call_1"
    assert tool_msg.name == "get_analytics_data"
    assert json.loads(tool_msg.content) == {"result": {"rows": [{"date": "20250101", "sessions": 5}]}}
    assert backend.history("h")[-1].content == "Sessions are up."


def test_tools_are_bound_from_definitions() -> None:
    from analyst.chat.tools import build_default_registry
    from analyst.config import AnalyticsConfig

    reg = build_default_registry(analytics_config=AnalyticsConfig())
    llm = _FakeChatModel([])
    _backend(llm, tools=reg.definitions())

    assert [t["function"]["name"] for t in llm.bound_tools] == ["get_analytics_data", "render_chart"]


@pytest.mark.asyncio
async def test_provider_error_is_classified() -> None:
    from analyst.chat.errors import ModelStreamError
    from analyst.chat.types import UserMessage

    llm = _FakeChatModel([[AIMessageChunk(content="par"), RuntimeError("429 rate limit exceeded")]])
    backend = _backend(llm)

    with pytest.raises(ModelStreamError) as ei:
        await _drain(backend.open("h", UserMessage(text="x")))

    assert ei.value.error_code == "rate_limited"
    assert ei.value.is_retryable is True


@pytest.mark.asyncio
async def test_abandon_rolls_back_to_last_commit() -> None:
    from analyst.chat.errors import ModelStreamError
    from analyst.chat.types import UserMessage

    llm = _FakeChatModel([[AIMessageChunk(content="one")], [RuntimeError("boom")]])
    backend = _backend(llm, system_prompt="sys")

    await _drain(backend.open("h", UserMessage(text="first")))
    backend.commit("h")
    with pytest.raises(ModelStreamError):
        await _drain(backend.open("h", UserMessage(text="second")))
    backend.abandon("h")

    history = backend.history("h")
    assert [m.content for m in history] == ["sys", "first", "one"]


@pytest.mark.asyncio
async def test_forget_drops_history() -> None:
    from analyst.chat.types import UserMessage

    llm = _FakeChatModel([[AIMessageChunk(content="one")]])
    backend = _backend(llm, system_prompt="sys")
    await _drain(backend.open("h", UserMessage(text="first")))

    backend.forget("h")

    assert [m.content for m in backend.history("h")] == ["sys"]


@pytest.mark.asyncio
async def test_content_blocks_are_flattened() -> None:
    from analyst.chat.types import UserMessage

    llm = _FakeChatModel([[AIMessageChunk(content=[{"type": "text", "text": "Hi", "index": 0}])]])
    backend = _backend(llm)

    events = await _drain(backend.open("h", UserMessage(text="x")))

    assert [e.text for e in events] == ["Hi"]


@pytest.mark.asyncio
async def test_mock_backend_replies_without_model(monkeypatch) -> None:
    from analyst.chat.registry import ToolHandlerRegistry
    from analyst.chat.types import UserMessage
    from analyst.config import ChatConfig
    from analyst.llm.client_streaming import MOCK_REPLY, MockStreamBackend, create_stream_backend

    monkeypatch.setenv("LLM_MOCK", "1")
    backend = create_stream_backend(ToolHandlerRegistry(), ChatConfig())

    assert isinstance(backend, MockStreamBackend)
    events = await _drain(backend.open("h", UserMessage(text="x")))
    assert [e.text for e in events] == [MOCK_REPLY]
    assert [e.index for e in events] == [0]


def test_create_backend_without_provider_raises(monkeypatch) -> None:
    from analyst.chat.errors import LLMConfigError
    from analyst.chat.registry import ToolHandlerRegistry
    from analyst.config import ChatConfig
    from analyst.llm.client_streaming import create_stream_backend

    monkeypatch.setenv("LLM_PROVIDER", "anthropic")
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

    with pytest.raises(LLMConfigError):
        create_stream_backend(ToolHandlerRegistry(), ChatConfig())


def test_create_backend_uses_configured_prompt(monkeypatch) -> None:
    from analyst.chat.registry import ToolHandlerRegistry
    from analyst.config import ChatConfig
    from analyst.llm import client_streaming

    llm = _FakeChatModel([])
    monkeypatch.setattr(client_streaming, "get_chat_model", lambda: (llm, type("C", (), {"model": "m"})()))

    backend = client_streaming.create_stream_backend(ToolHandlerRegistry(), ChatConfig(system_prompt="Be brief."))

    assert backend.history("h")[0].content == "Be brief."
