"""
UI-facing conversation state.

The projector folds orchestration events into a list of `ProjectedMessage`s and
forwards each change to registered listeners (SSE stream, CLI printer, ...).
Merges are idempotent: a replayed tool notification or a replayed indexed text
delta leaves the projected message unchanged.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol, Set, Tuple

from analyst.chat.types import ProjectedMessage, ToolInvocation, TurnOutcome

logger = logging.getLogger(__name__)

_InvocationKey = Tuple[int, str]
_TextKey = Tuple[int, int]


class ProjectionListener(Protocol):
    def on_text_delta(self, turn_id: str, text: str) -> None: ...

    def on_tool_invocation(self, turn_id: str, invocation: ToolInvocation) -> None: ...

    def on_tool_started(self, turn_id: str, invocation: ToolInvocation) -> None: ...

    def on_tool_result(self, turn_id: str, invocation: ToolInvocation) -> None: ...

    def on_turn_end(self, turn_id: str, outcome: TurnOutcome) -> None: ...


def failure_text(reason: str) -> str:
    return (
        "I ran into a problem while working on that.\n\n"
        f"Details: {reason}\n\n"
        "Please check the model configuration and your connection, then try again."
    )


class ClientStateProjector:
    def __init__(self) -> None:
        self.messages: List[ProjectedMessage] = []
        self._listeners: List[ProjectionListener] = []
        self._invocation_keys: Dict[str, Set[_InvocationKey]] = {}
        self._text_keys: Dict[str, Set[_TextKey]] = {}

    # ---- listeners ----

    def add_listener(self, listener: ProjectionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ProjectionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, method: str, *args: object) -> None:
        for listener in list(self._listeners):
            # Listeners may implement a subset of the callbacks.
            callback = getattr(listener, method, None)
            if callback is None:
                continue
            try:
                callback(*args)
            except Exception:
                logger.exception(f"Projection listener failed in {method}")

    # ---- messages ----

    def get(self, turn_id: str) -> Optional[ProjectedMessage]:
        for m in reversed(self.messages):
            if m.id == turn_id:
                return m
        return None

    def _require(self, turn_id: str) -> ProjectedMessage:
        msg = self.get(turn_id)
        if msg is None:
            raise KeyError(f"unknown turn: {turn_id}")
        return msg

    def add_user_message(self, text: str) -> ProjectedMessage:
        msg = ProjectedMessage(role="user", text=text)
        self.messages.append(msg)
        return msg

    def begin_turn(self) -> ProjectedMessage:
        msg = ProjectedMessage(role="model", is_loading=True)
        self.messages.append(msg)
        self._invocation_keys[msg.id] = set()
        self._text_keys[msg.id] = set()
        return msg

    def append_text(self, turn_id: str, delta: str, *, key: Optional[_TextKey] = None) -> None:
        msg = self._require(turn_id)
        if key is not None:
            seen = self._text_keys.setdefault(turn_id, set())
            if key in seen:
                return
            seen.add(key)
        msg.text += delta
        msg.is_loading = False
        self._emit("on_text_delta", turn_id, delta)

    def notify_invocation(self, turn_id: str, invocation: ToolInvocation) -> bool:
        """Add a pending invocation unless one with the same id (same round) is already shown."""
        msg = self._require(turn_id)
        seen = self._invocation_keys.setdefault(turn_id, set())
        key = (invocation.round, invocation.id)
        if key in seen:
            return False
        seen.add(key)
        entry = invocation.model_copy(deep=True)
        msg.tool_invocations.append(entry)
        self._emit("on_tool_invocation", turn_id, entry)
        return True

    def _entry(self, turn_id: str, invocation: ToolInvocation) -> Optional[ToolInvocation]:
        for entry in self._require(turn_id).tool_invocations:
            if entry.round == invocation.round and entry.id == invocation.id:
                return entry
        logger.warning(f"Invocation {invocation.id} was never projected (turn={turn_id})")
        return None

    def mark_executing(self, turn_id: str, invocation: ToolInvocation) -> None:
        entry = self._entry(turn_id, invocation)
        if entry is None or entry.is_terminal:
            return
        entry.status = "executing"
        self._emit("on_tool_started", turn_id, entry)

    def record_result(self, turn_id: str, invocation: ToolInvocation) -> None:
        entry = self._entry(turn_id, invocation)
        if entry is None:
            return
        entry.status = invocation.status
        entry.result = invocation.result
        self._emit("on_tool_result", turn_id, entry)

    def end_turn(self, turn_id: str, outcome: TurnOutcome) -> None:
        msg = self._require(turn_id)
        if not outcome.ok:
            msg.text = failure_text(outcome.error or "unknown error")
            msg.error_code = outcome.error_code
            for entry in msg.tool_invocations:
                if not entry.is_terminal:
                    entry.status = "failed"
                    entry.result = {"error": "turn_aborted"}
        msg.is_loading = False
        self._emit("on_turn_end", turn_id, outcome)

    def reset(self) -> None:
        self.messages = []
        self._invocation_keys.clear()
        self._text_keys.clear()
