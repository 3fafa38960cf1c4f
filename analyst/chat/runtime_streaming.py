"""
Streaming multi-turn tool-calling orchestration.

One user message drives this loop:

    AwaitingUserInput -> StreamingTurn -> (ExecutingTools -> StreamingTurn)* -> TurnComplete

1. Open a model stream with the user's text and drain it, projecting text and
   tool intentions as they arrive.
2. If the model asked for tools, run them all (concurrently, joined) and submit
   their results as the next model request.
3. Repeat until a model turn asks for no tools, or the turn ceiling is hit.

Tool failures are reported back to the model. Transport failures, the turn
ceiling and cancellation end the exchange with a diagnostic message instead.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, List, Literal, Optional

from analyst.chat.dispatcher import ToolDispatcher
from analyst.chat.errors import ChatError, SessionBusyError, SessionNotFoundError, TurnLimitExceededError
from analyst.chat.projector import ClientStateProjector, ProjectionListener
from analyst.chat.registry import ToolHandlerRegistry
from analyst.chat.stream_processor import process_stream
from analyst.chat.types import ModelRequest, ProjectedMessage, ResponseBatch, ToolInvocation, TurnOutcome, UserMessage
from analyst.config import ChatConfig, load_chat_config
from analyst.llm.client_streaming import ModelStreamBackend

logger = logging.getLogger(__name__)

LoopState = Literal["awaiting_user_input", "streaming_turn", "executing_tools", "turn_complete", "failed"]


class ChatSession:
    """
    One isolated conversation. Only one user message may be in flight at a time.
    """

    def __init__(
        self,
        handle: str,
        *,
        backend: ModelStreamBackend,
        registry: ToolHandlerRegistry,
        config: Optional[ChatConfig] = None,
    ) -> None:
        self.handle = handle
        self.config = config or load_chat_config()
        self.projector = ClientStateProjector()
        self.state: LoopState = "awaiting_user_input"
        self._backend = backend
        self._dispatcher = ToolDispatcher(registry, timeout_seconds=self.config.tool_timeout_seconds)
        self._lock = asyncio.Lock()
        self._task: Optional["asyncio.Task[Any]"] = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def messages(self) -> List[ProjectedMessage]:
        return self.projector.messages

    async def send_message(self, text: str, listener: Optional[ProjectionListener] = None) -> ProjectedMessage:
        """
        Run the full orchestration loop for one user message.

        Returns the projected model message. Transport errors do not raise: they
        are reflected in the returned message. Raises SessionBusyError if another
        message is still in flight, and re-raises cancellation.
        """
        if self._lock.locked():
            raise SessionBusyError(self.handle)
        async with self._lock:
            self._task = asyncio.current_task()
            if listener is not None:
                self.projector.add_listener(listener)
            try:
                return await self._run_exchange(text)
            finally:
                if listener is not None:
                    self.projector.remove_listener(listener)
                self._task = None

    def cancel(self) -> bool:
        """Cancel the in-flight message, if any. Returns True if something was cancelled."""
        if self._task is None or self._task.done():
            return False
        logger.info(f"Cancelling in-flight message for conversation {self.handle}")
        self._task.cancel()
        return True

    def reset(self) -> None:
        """Start over: drop the projected conversation and the model-side history."""
        if self.busy:
            raise SessionBusyError(self.handle)
        self.projector.reset()
        self._backend.forget(self.handle)
        self.state = "awaiting_user_input"

    async def _run_exchange(self, text: str) -> ProjectedMessage:
        self.projector.add_user_message(text)
        turn = self.projector.begin_turn()
        request: ModelRequest = UserMessage(text=text)
        max_turns = self.config.max_turns
        round_index = 0

        try:
            while True:
                if round_index >= max_turns:
                    raise TurnLimitExceededError(max_turns)

                self.state = "streaming_turn"
                logger.info(f"Conversation {self.handle}: model request {round_index + 1}/{max_turns}")
                invocations = await process_stream(
                    self._backend.open(self.handle, request),
                    projector=self.projector,
                    turn_id=turn.id,
                    round_index=round_index,
                    idle_timeout=self.config.stream_idle_timeout_seconds,
                )
                round_index += 1

                if not invocations:
                    break

                self.state = "executing_tools"
                logger.info(f"Conversation {self.handle}: executing {[i.name for i in invocations]}")
                await self._dispatcher.dispatch(
                    invocations,
                    on_result=self._projecting(self.projector.record_result, turn.id),
                    on_start=self._projecting(self.projector.mark_executing, turn.id),
                )
                request = ResponseBatch.from_invocations(invocations)

        except asyncio.CancelledError:
            self._fail(turn, TurnOutcome.failure("The request was cancelled.", "cancelled"))
            raise
        except ChatError as e:
            logger.error(f"Conversation {self.handle} failed: {e.error_code}: {e.message}")
            self._fail(turn, TurnOutcome.failure(e.message, e.error_code))
            return turn
        except Exception as e:
            logger.exception(f"Conversation {self.handle} failed")
            self._fail(turn, TurnOutcome.failure(f"{type(e).__name__}: {e}", "unknown_error"))
            return turn

        self._backend.commit(self.handle)
        self.projector.end_turn(turn.id, TurnOutcome.success())
        self.state = "turn_complete"
        return turn

    @staticmethod
    def _projecting(update, turn_id: str):
        def _apply(inv: ToolInvocation) -> None:
            update(turn_id, inv)

        return _apply

    def _fail(self, turn: ProjectedMessage, outcome: TurnOutcome) -> None:
        self._backend.abandon(self.handle)
        self.projector.end_turn(turn.id, outcome)
        self.state = "failed"


class SessionStore:
    """In-memory registry of isolated conversations, addressed by handle."""

    def __init__(
        self,
        *,
        backend: ModelStreamBackend,
        registry: ToolHandlerRegistry,
        config: Optional[ChatConfig] = None,
    ) -> None:
        self._backend = backend
        self._registry = registry
        self._config = config or load_chat_config()
        self._sessions: Dict[str, ChatSession] = {}

    def create(self) -> ChatSession:
        handle = uuid.uuid4().hex
        session = ChatSession(handle, backend=self._backend, registry=self._registry, config=self._config)
        self._sessions[handle] = session
        return session

    def get(self, handle: str) -> ChatSession:
        session = self._sessions.get(handle)
        if session is None:
            raise SessionNotFoundError(handle)
        return session

    def delete(self, handle: str) -> bool:
        session = self._sessions.pop(handle, None)
        if session is None:
            return False
        session.cancel()
        self._backend.forget(handle)
        return True

    def __len__(self) -> int:
        return len(self._sessions)


@dataclass
class ChatStreamEvent:
    """Single event in the chat stream."""

    event_type: Literal["token", "tool_call", "tool_started", "tool_result", "turn_end", "error", "done"]
    content: str = ""
    tool: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class QueueProjectionListener:
    """Forwards projector callbacks into an asyncio queue as ChatStreamEvents."""

    def __init__(self, queue: "asyncio.Queue[Optional[ChatStreamEvent]]") -> None:
        self._queue = queue

    def on_text_delta(self, turn_id: str, text: str) -> None:
        self._queue.put_nowait(ChatStreamEvent(event_type="token", content=text, metadata={"turn_id": turn_id}))

    def on_tool_invocation(self, turn_id: str, invocation: ToolInvocation) -> None:
        self._queue.put_nowait(
            ChatStreamEvent(
                event_type="tool_call",
                tool=invocation.name,
                metadata={"turn_id": turn_id, "invocation": invocation.model_dump(mode="json")},
            )
        )

    def on_tool_started(self, turn_id: str, invocation: ToolInvocation) -> None:
        self._queue.put_nowait(
            ChatStreamEvent(
                event_type="tool_started",
                tool=invocation.name,
                metadata={"turn_id": turn_id, "invocation": invocation.model_dump(mode="json")},
            )
        )

    def on_tool_result(self, turn_id: str, invocation: ToolInvocation) -> None:
        self._queue.put_nowait(
            ChatStreamEvent(
                event_type="tool_result",
                tool=invocation.name,
                metadata={"turn_id": turn_id, "invocation": invocation.model_dump(mode="json")},
            )
        )

    def on_turn_end(self, turn_id: str, outcome: TurnOutcome) -> None:
        self._queue.put_nowait(
            ChatStreamEvent(
                event_type="turn_end",
                content=outcome.error or "",
                metadata={"turn_id": turn_id, "outcome": outcome.model_dump(mode="json")},
            )
        )


async def stream_message(session: ChatSession, text: str) -> AsyncGenerator[ChatStreamEvent, None]:
    """
    Run one user message and yield projection events as they happen.

    Flow:
    1. token / tool_call / tool_started / tool_result events while the loop runs
    2. turn_end with the outcome
    3. done with the final projected message (or error if the session was busy)

    Closing the generator early cancels the in-flight message.
    """
    queue: "asyncio.Queue[Optional[ChatStreamEvent]]" = asyncio.Queue()
    task = asyncio.create_task(session.send_message(text, listener=QueueProjectionListener(queue)))
    task.add_done_callback(lambda _t: queue.put_nowait(None))

    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            yield event

        if task.cancelled():
            yield ChatStreamEvent(event_type="done", metadata={"cancelled": True})
            return
        exc = task.exception()
        if isinstance(exc, ChatError):
            yield ChatStreamEvent(event_type="error", content=exc.message, metadata=exc.to_dict())
            return
        if exc is not None:
            logger.error(f"Chat stream failed: {type(exc).__name__}: {exc}")
            yield ChatStreamEvent(event_type="error", content=str(exc), metadata={"error_code": "unknown_error"})
            return

        msg = task.result()
        yield ChatStreamEvent(event_type="done", content=msg.text, metadata={"message": msg.model_dump(mode="json")})
    finally:
        if not task.done():
            task.cancel()
