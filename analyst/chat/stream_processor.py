from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, List, Optional, Set

from analyst.chat.errors import ModelStreamError
from analyst.chat.projector import ClientStateProjector
from analyst.chat.types import StreamEvent, TextDelta, ToolCallRequested, ToolInvocation

logger = logging.getLogger(__name__)


async def process_stream(
    events: AsyncIterator[StreamEvent],
    *,
    projector: ClientStateProjector,
    turn_id: str,
    round_index: int = 0,
    idle_timeout: Optional[float] = None,
) -> List[ToolInvocation]:
    """
    Drain one model stream, projecting text and tool intentions as they arrive.

    Returns the turn's tool invocations in request order, one per distinct id.
    The stream is always fully consumed (or closed on failure) before returning,
    so the caller may safely open the next request on the same conversation.
    """
    collected: List[ToolInvocation] = []
    seen_ids: Set[str] = set()
    iterator = events.__aiter__()

    try:
        while True:
            try:
                if idle_timeout:
                    event = await asyncio.wait_for(iterator.__anext__(), timeout=idle_timeout)
                else:
                    event = await iterator.__anext__()
            except StopAsyncIteration:
                break
            except asyncio.TimeoutError:
                raise ModelStreamError(
                    "stream_timeout", f"No response from the model for {idle_timeout:.0f}s"
                ) from None

            if isinstance(event, TextDelta):
                if not event.text:
                    continue
                key = (round_index, event.index) if event.index is not None else None
                projector.append_text(turn_id, event.text, key=key)

            elif isinstance(event, ToolCallRequested):
                inv = event.invocation
                inv.round = round_index
                projector.notify_invocation(turn_id, inv)
                if inv.id in seen_ids:
                    logger.debug(f"Ignoring repeated tool call {inv.id} ({inv.name}) in round {round_index}")
                    continue
                seen_ids.add(inv.id)
                collected.append(inv)

            else:
                logger.warning(f"Ignoring unexpected stream event type {type(event).__name__}")
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    return collected
