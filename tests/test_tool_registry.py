"""Unit tests for the tool handler registry."""

from __future__ import annotations

import pytest


async def _noop(args):
    return {"ok": True}


def test_register_and_resolve() -> None:
    from analyst.chat.registry import ToolHandlerRegistry

    reg = ToolHandlerRegistry()
    reg.register("fetch", _noop, description="Fetch things")

    assert reg.resolve("fetch") is _noop
    assert "fetch" in reg
    assert len(reg) == 1
    assert reg.names() == ["fetch"]


def test_resolve_unknown_returns_none() -> None:
    from analyst.chat.registry import ToolHandlerRegistry

    reg = ToolHandlerRegistry()
    assert reg.resolve("missing") is None
    assert reg.spec("missing") is None
    assert "missing" not in reg
    assert 42 not in reg


def test_register_requires_name() -> None:
    from analyst.chat.registry import ToolHandlerRegistry

    reg = ToolHandlerRegistry()
    with pytest.raises(ValueError):
        reg.register("  ", _noop)


def test_register_replaces_existing_handler() -> None:
    from analyst.chat.registry import ToolHandlerRegistry

    async def other(args):
        return None

    reg = ToolHandlerRegistry()
    reg.register("fetch", _noop)
    reg.register("fetch", other)

    assert reg.resolve("fetch") is other
    assert len(reg) == 1


def test_definitions_use_argument_schema() -> None:
    """Definitions carry the pydantic JSON schema (aliases included) for bind_tools()."""
    from analyst.chat.registry import ToolHandlerRegistry
    from analyst.chat.tools import RenderChartArgs

    reg = ToolHandlerRegistry()
    reg.register("render_chart", _noop, description="Draw", args_model=RenderChartArgs)
    reg.register("ping", _noop)

    defs = {d["function"]["name"]: d for d in reg.definitions()}
    assert set(defs) == {"render_chart", "ping"}

    chart = defs["render_chart"]
    assert chart["type"] == "function"
    assert chart["function"]["description"] == "Draw"
    params = chart["function"]["parameters"]
    assert "title" not in params
    assert "xAxisKey" in params["properties"]
    assert "dataKeys" in params["properties"]
    assert set(params["required"]) >= {"type", "title", "xAxisKey", "dataKeys", "data"}

    assert defs["ping"]["function"]["parameters"] == {"type": "object", "properties": {}}
