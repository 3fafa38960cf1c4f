"""Unit tests for env-driven chat and analytics configuration."""

from __future__ import annotations


def test_chat_config_defaults() -> None:
    from analyst.config import load_chat_config

    cfg = load_chat_config()

    assert cfg.max_turns == 8
    assert cfg.tool_timeout_seconds == 30.0
    assert cfg.stream_idle_timeout_seconds == 120.0
    assert cfg.system_prompt is None


def test_chat_config_reads_env(monkeypatch) -> None:
    from analyst.config import load_chat_config

    monkeypatch.setenv("CHAT_MAX_TURNS", "4")
    monkeypatch.setenv("CHAT_TOOL_TIMEOUT_SECONDS", "12.5")
    monkeypatch.setenv("CHAT_STREAM_IDLE_TIMEOUT_SECONDS", "60")
    monkeypatch.setenv("CHAT_SYSTEM_PROMPT", "  Be brief.  ")

    cfg = load_chat_config()

    assert cfg.max_turns == 4
    assert cfg.tool_timeout_seconds == 12.5
    assert cfg.stream_idle_timeout_seconds == 60.0
    assert cfg.system_prompt == "Be brief."


def test_chat_config_clamps_out_of_range(monkeypatch) -> None:
    from analyst.config import load_chat_config

    monkeypatch.setenv("CHAT_MAX_TURNS", "0")
    monkeypatch.setenv("CHAT_TOOL_TIMEOUT_SECONDS", "9999")
    monkeypatch.setenv("CHAT_STREAM_IDLE_TIMEOUT_SECONDS", "1")
    cfg = load_chat_config()
    assert cfg.max_turns == 1
    assert cfg.tool_timeout_seconds == 300.0
    assert cfg.stream_idle_timeout_seconds == 5.0

    monkeypatch.setenv("CHAT_MAX_TURNS", "100")
    assert load_chat_config().max_turns == 32


def test_chat_config_ignores_garbage(monkeypatch) -> None:
    from analyst.config import load_chat_config

    monkeypatch.setenv("CHAT_MAX_TURNS", "lots")
    monkeypatch.setenv("CHAT_TOOL_TIMEOUT_SECONDS", "fast")

    cfg = load_chat_config()

    assert cfg.max_turns == 8
    assert cfg.tool_timeout_seconds == 30.0


def test_analytics_config_defaults() -> None:
    from analyst.config import DEFAULT_ANALYTICS_ENDPOINT, DEFAULT_ANALYTICS_PROPERTY_ID, load_analytics_config

    cfg = load_analytics_config()

    assert cfg.endpoint == DEFAULT_ANALYTICS_ENDPOINT
    assert cfg.property_id == DEFAULT_ANALYTICS_PROPERTY_ID
    assert cfg.timeout_seconds == 30.0
    assert cfg.fallback == "raise"


def test_analytics_fallback_is_opt_in(monkeypatch) -> None:
    from analyst.config import load_analytics_config

    monkeypatch.setenv("ANALYTICS_FALLBACK", "SIMULATE")
    assert load_analytics_config().fallback == "simulate"

    monkeypatch.setenv("ANALYTICS_FALLBACK", "whatever")
    assert load_analytics_config().fallback == "raise"


def test_analytics_timeout_is_clamped(monkeypatch) -> None:
    from analyst.config import load_analytics_config

    monkeypatch.setenv("ANALYTICS_TIMEOUT_SECONDS", "0")
    assert load_analytics_config().timeout_seconds == 1.0
    monkeypatch.setenv("ANALYTICS_TIMEOUT_SECONDS", "1000")
    assert load_analytics_config().timeout_seconds == 120.0
