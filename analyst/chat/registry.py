from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Handlers receive the validated argument model (or the raw dict when the tool
# declares no schema) and return a JSON-serializable result.
ToolHandler = Callable[[Any], Awaitable[Any]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    handler: ToolHandler
    description: str = ""
    args_model: Optional[Type[BaseModel]] = None

    def parameters_schema(self) -> Dict[str, Any]:
        if self.args_model is None:
            return {"type": "object", "properties": {}}
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        return schema

    def to_llm_definition(self) -> Dict[str, Any]:
        """OpenAI-style function definition, accepted by LangChain's bind_tools()."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema(),
            },
        }


class ToolHandlerRegistry:
    """Maps tool names to handlers. Argument validation happens in the dispatcher."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        *,
        description: str = "",
        args_model: Optional[Type[BaseModel]] = None,
    ) -> None:
        key = (name or "").strip()
        if not key:
            raise ValueError("tool name is required")
        if key in self._tools:
            logger.warning(f"Replacing handler for tool {key}")
        self._tools[key] = ToolSpec(name=key, handler=handler, description=description, args_model=args_model)

    def resolve(self, name: str) -> Optional[ToolHandler]:
        spec = self.spec(name)
        return spec.handler if spec is not None else None

    def spec(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get((name or "").strip())

    def names(self) -> List[str]:
        return list(self._tools)

    def definitions(self) -> List[Dict[str, Any]]:
        return [s.to_llm_definition() for s in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.spec(name) is not None

    def __len__(self) -> int:
        return len(self._tools)
