from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal, Optional

AnalyticsFallback = Literal["raise", "simulate"]

DEFAULT_ANALYTICS_ENDPOINT = "https://ga4-mcp-server-ciyqx2rz4q-uc.a.run.app/tools/run_report"
DEFAULT_ANALYTICS_PROPERTY_ID = "413266651"


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


@dataclass(frozen=True)
class ChatConfig:
    # Model requests allowed per user message (first request + one per tool round)
    max_turns: int = 8

    # Timeouts
    tool_timeout_seconds: float = 30.0
    stream_idle_timeout_seconds: float = 120.0

    system_prompt: Optional[str] = None


@dataclass(frozen=True)
class AnalyticsConfig:
    endpoint: str = DEFAULT_ANALYTICS_ENDPOINT
    property_id: str = DEFAULT_ANALYTICS_PROPERTY_ID
    timeout_seconds: float = 30.0
    # raise: transport failures surface as tool errors.
    # simulate: placeholder rows are returned and tagged source="simulated".
    fallback: AnalyticsFallback = "raise"


def load_chat_config() -> ChatConfig:
    """
    Load orchestration limits from env.

    Recognized vars:
    - CHAT_MAX_TURNS=8
    - CHAT_TOOL_TIMEOUT_SECONDS=30
    - CHAT_STREAM_IDLE_TIMEOUT_SECONDS=120
    - CHAT_SYSTEM_PROMPT=...
    """
    max_turns = _env_int("CHAT_MAX_TURNS", 8)
    tool_timeout = _env_float("CHAT_TOOL_TIMEOUT_SECONDS", 30.0)
    idle_timeout = _env_float("CHAT_STREAM_IDLE_TIMEOUT_SECONDS", 120.0)
    prompt = (os.getenv("CHAT_SYSTEM_PROMPT") or "").strip() or None

    return ChatConfig(
        max_turns=max(1, min(max_turns, 32)),
        tool_timeout_seconds=max(1.0, min(tool_timeout, 300.0)),
        stream_idle_timeout_seconds=max(5.0, min(idle_timeout, 600.0)),
        system_prompt=prompt,
    )


def load_analytics_config() -> AnalyticsConfig:
    """
    Load the analytics collaborator settings from env.

    Recognized vars:
    - ANALYTICS_ENDPOINT=https://.../tools/run_report
    - ANALYTICS_PROPERTY_ID=413266651
    - ANALYTICS_TIMEOUT_SECONDS=30
    - ANALYTICS_FALLBACK=raise|simulate
    """
    fallback_raw = (os.getenv("ANALYTICS_FALLBACK") or "").strip().lower()
    fallback: AnalyticsFallback = "simulate" if fallback_raw == "simulate" else "raise"
    timeout = _env_float("ANALYTICS_TIMEOUT_SECONDS", 30.0)

    return AnalyticsConfig(
        endpoint=(os.getenv("ANALYTICS_ENDPOINT") or "").strip() or DEFAULT_ANALYTICS_ENDPOINT,
        property_id=(os.getenv("ANALYTICS_PROPERTY_ID") or "").strip() or DEFAULT_ANALYTICS_PROPERTY_ID,
        timeout_seconds=max(1.0, min(timeout, 120.0)),
        fallback=fallback,
    )
