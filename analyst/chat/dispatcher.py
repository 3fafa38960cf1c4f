from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from analyst.chat.registry import ToolHandlerRegistry
from analyst.chat.types import ToolInvocation

logger = logging.getLogger(__name__)

ResultCallback = Callable[[ToolInvocation], None]


def _error_result(reason: str) -> Dict[str, Any]:
    return {"error": reason[:300]}


def _describe_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors()[:4]:
        loc = ".".join(str(x) for x in err.get("loc", ()) if x != "__root__")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "invalid arguments"


class ToolDispatcher:
    """
    Executes one turn's tool invocations concurrently and waits for all of them.

    Never raises for a tool failure: unknown tools, invalid arguments, handler
    exceptions and timeouts all become `{"error": ...}` results.
    """

    def __init__(self, registry: ToolHandlerRegistry, *, timeout_seconds: float = 30.0) -> None:
        self._registry = registry
        self._timeout = timeout_seconds

    async def dispatch(
        self,
        invocations: List[ToolInvocation],
        on_result: Optional[ResultCallback] = None,
        on_start: Optional[ResultCallback] = None,
    ) -> List[ToolInvocation]:
        """
        `on_start` fires when a handler begins (status `executing`), `on_result`
        once the invocation is terminal.
        """
        if not invocations:
            return []
        # Join barrier: return only once every invocation is terminal.
        await asyncio.gather(*(self._run_one(inv, on_result, on_start) for inv in invocations))
        return invocations

    async def _run_one(
        self,
        inv: ToolInvocation,
        on_result: Optional[ResultCallback],
        on_start: Optional[ResultCallback] = None,
    ) -> None:
        spec = self._registry.spec(inv.name)
        if spec is None:
            logger.warning(f"Tool call for unknown tool {inv.name!r} (id={inv.id})")
            self._finish(inv, _error_result(f"unknown_tool:{inv.name}"), on_result)
            return

        try:
            args: Any = spec.args_model.model_validate(inv.arguments) if spec.args_model else dict(inv.arguments)
        except ValidationError as e:
            self._finish(inv, _error_result(f"invalid_arguments: {_describe_validation_error(e)}"), on_result)
            return

        inv.status = "executing"
        if on_start is not None:
            on_start(inv)
        logger.info(f"Tool call: {inv.name} id={inv.id} args={inv.arguments}")
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(spec.handler(args), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Tool {inv.name} timed out after {self._timeout:.0f}s (id={inv.id})")
            result = _error_result("tool_timeout")
        except Exception as e:
            logger.exception(f"Tool {inv.name} raised unhandled exception")
            result = _error_result(f"{type(e).__name__}: {e}")

        elapsed_ms = (time.monotonic() - start) * 1000
        logger.debug(f"Tool {inv.name} finished in {elapsed_ms:.0f}ms (id={inv.id})")
        self._finish(inv, result, on_result)

    @staticmethod
    def _finish(inv: ToolInvocation, result: Any, on_result: Optional[ResultCallback]) -> None:
        inv.result = result
        inv.status = "failed" if isinstance(result, dict) and "error" in result else "completed"
        if on_result is not None:
            on_result(inv)
